"""
Transfer Execution Module

Moves money between accounts. Every debit, credit and transaction record
belonging to one transfer is written in a single atomic unit of work that
locks the accounts involved, so a transfer is either fully applied or leaves
no trace, and concurrent transfers on the same account serialize.
"""

from decimal import Decimal
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field
from typing import Dict, Optional, Any
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from .accounts import Account, AccountStore, ACCOUNTS_TABLE
from .async_storage import AsyncStorageInterface, AtomicUnit
from .audit import AuditTrail, AuditEventType
from .config import PaymentsConfig
from .currency import Money, to_decimal
from .exceptions import (
    PaymentsError, InsufficientFundsError, AccountInactiveError, CurrencyMismatchError,
    InvalidStateTransitionError
)
from .limits import LimitChecker
from .logging_config import get_logger, log_action
from .notifications import NotificationDispatcher, NotificationKind
from .transactions import (
    Transaction, TransactionRecorder, TransactionStatus, TransactionType, TRANSACTIONS_TABLE
)


class TransferSpeed(Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    INSTANT = "instant"


class DepositMethod(Enum):
    CASH = "cash"
    CHECK = "check"          # Held pending clearance, no balance effect
    TRANSFER = "transfer"
    MOBILE = "mobile"


_ARRIVAL_DELAYS = {
    TransferSpeed.INSTANT: timedelta(minutes=5),
    TransferSpeed.EXPRESS: timedelta(hours=2),
    TransferSpeed.STANDARD: timedelta(hours=24),
}

# Types that debit the source without crediting an internal account
_DEBIT_ONLY_TYPES = frozenset({
    TransactionType.WITHDRAWAL,
    TransactionType.PAYMENT,
    TransactionType.BILL_PAYMENT,
    TransactionType.EXTERNAL_TRANSFER,
})


class TransferRequest(BaseModel):
    """Validated intent to move money out of an account"""
    from_account_id: str
    to_account_id: Optional[str] = None
    amount: Decimal = Field(..., gt=0)
    description: str = ""
    category: str = "transfer"
    transaction_type: TransactionType = TransactionType.TRANSFER
    owner_id: Optional[str] = None
    fee: Decimal = Field(Decimal("0"), ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    existing_transaction_id: Optional[str] = None  # Pre-created record to complete

    @model_validator(mode="after")
    def check_accounts(self) -> 'TransferRequest':
        if self.transaction_type == TransactionType.TRANSFER:
            if not self.to_account_id:
                raise ValueError("Internal transfers require to_account_id")
            if self.to_account_id == self.from_account_id:
                raise ValueError("Cannot transfer to the same account")
        elif self.transaction_type in _DEBIT_ONLY_TYPES:
            if self.to_account_id:
                raise ValueError(f"{self.transaction_type.value} does not credit an internal account")
        else:
            raise ValueError(f"{self.transaction_type.value} cannot be executed as a transfer")
        return self


@dataclass
class TransferResult:
    transaction: Transaction
    from_balance: Money
    to_balance: Optional[Money] = None
    fee_transaction: Optional[Transaction] = None
    source: Optional[Account] = field(default=None, repr=False)
    destination: Optional[Account] = field(default=None, repr=False)


def estimate_arrival(speed: TransferSpeed, now: Optional[datetime] = None) -> datetime:
    """Estimated arrival time of an outgoing transfer"""
    now = now or datetime.now(timezone.utc)
    return now + _ARRIVAL_DELAYS[speed]


class TransferExecutor:
    """
    Atomic debit/credit execution with fee legs, deposits and withdrawals
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        accounts: AccountStore,
        recorder: TransactionRecorder,
        limit_checker: LimitChecker,
        notifier: NotificationDispatcher,
        audit_trail: AuditTrail,
        config: PaymentsConfig
    ):
        self.storage = storage
        self.accounts = accounts
        self.recorder = recorder
        self.limit_checker = limit_checker
        self.notifier = notifier
        self.audit_trail = audit_trail
        self.config = config
        self.logger = get_logger("payments.transfers")

    def calculate_transfer_fee(self, category: str, speed: TransferSpeed = TransferSpeed.STANDARD) -> Decimal:
        """
        Fee for a transfer

        Internal transfers are free; external transfers are priced by speed.
        """
        if category != "external":
            return Decimal("0")
        return {
            TransferSpeed.STANDARD: self.config.external_fee_standard,
            TransferSpeed.EXPRESS: self.config.external_fee_express,
            TransferSpeed.INSTANT: self.config.external_fee_instant,
        }[speed]

    def _check_minimum(self, amount: Decimal) -> None:
        if amount < self.config.min_transaction_amount:
            raise ValueError(f"Amount must be at least {self.config.min_transaction_amount}")

    @staticmethod
    def _require_active(account: Account) -> None:
        if not account.is_active:
            raise AccountInactiveError(account.id, account.status.value)

    async def execute_transfer(
        self,
        request: TransferRequest,
        enforce_limits: bool = True,
        now: Optional[datetime] = None,
        unit: Optional[AtomicUnit] = None
    ) -> TransferResult:
        """
        Execute a transfer as one atomic unit

        Args:
            request: Validated transfer intent
            enforce_limits: Run the limit checker inside the unit, against the
                locked source account
            now: Clock override for the transaction timestamps and limit windows
            unit: Caller's open unit to join instead of opening one. The writes
                then commit with the caller's unit, and the caller reports the
                outcome with ``report_success`` once that unit has committed.

        Returns:
            TransferResult with the completed transaction and post-transfer balances

        Raises:
            InsufficientFundsError, AccountInactiveError, LimitExceededError,
            CurrencyMismatchError, RecordNotFoundError, PersistenceError
        """
        self._check_minimum(request.amount)
        now = now or datetime.now(timezone.utc)

        lock_keys = [(ACCOUNTS_TABLE, request.from_account_id)]
        if request.to_account_id:
            lock_keys.append((ACCOUNTS_TABLE, request.to_account_id))
        if request.existing_transaction_id:
            lock_keys.append((TRANSACTIONS_TABLE, request.existing_transaction_id))

        try:
            if unit is not None:
                await unit.lock(lock_keys)
                return await self._transfer_in_unit(unit, request, enforce_limits, now)

            async with self.storage.atomic(lock_keys) as own_unit:
                result = await self._transfer_in_unit(own_unit, request, enforce_limits, now)
        except PaymentsError as e:
            await self._report_failure(request, e)
            raise

        await self.report_success(result)
        return result

    async def _transfer_in_unit(self, unit: AtomicUnit, request: TransferRequest,
                                enforce_limits: bool, now: datetime) -> TransferResult:
        """Stage every write of one transfer; nothing is written before all checks pass"""
        source = await self.accounts.load_in_unit(unit, request.from_account_id)
        destination = None
        if request.to_account_id:
            destination = await self.accounts.load_in_unit(unit, request.to_account_id)

        self._require_active(source)
        if destination:
            self._require_active(destination)
            if destination.currency != source.currency:
                raise CurrencyMismatchError(source.currency.code, destination.currency.code)

        amount = Money(request.amount, source.currency)
        fee = Money(request.fee, source.currency)
        total_debit = amount + fee

        if enforce_limits:
            await self.limit_checker.enforce_limits(
                source, total_debit, request.transaction_type, now, unit=unit
            )

        if source.balance < total_debit:
            raise InsufficientFundsError(
                source.id, source.balance.to_string(), total_debit.to_string()
            )

        transaction = await self._primary_record(unit, request, amount, now)

        source.balance = source.balance - amount
        source.updated_at = now
        balance_after_primary = source.balance

        if destination:
            destination.balance = destination.balance + amount
            destination.updated_at = now

        self.recorder.apply_status(
            transaction,
            TransactionStatus.COMPLETED,
            balance_after=balance_after_primary,
            fee_amount=fee if fee.is_positive() else None,
            processed_at=now
        )

        fee_transaction = None
        if fee.is_positive():
            source.balance = source.balance - fee
            fee_transaction = self.recorder.new_transaction(
                transaction_type=TransactionType.FEE,
                amount=fee,
                from_account_id=source.id,
                description=f"Fee for {transaction.transaction_id}",
                category="fees",
                owner_id=transaction.owner_id,
                status=TransactionStatus.COMPLETED,
                now=now
            )
            fee_transaction.related_transaction_id = transaction.id
            fee_transaction.balance_after = source.balance
            fee_transaction.processed_at = now
            transaction.related_transaction_id = fee_transaction.id

        await self.accounts.save_in_unit(unit, source)
        if destination:
            await self.accounts.save_in_unit(unit, destination)
        await self.recorder.save_in_unit(unit, transaction)
        if fee_transaction:
            await self.recorder.save_in_unit(unit, fee_transaction)

        return TransferResult(
            transaction=transaction,
            from_balance=source.balance,
            to_balance=destination.balance if destination else None,
            fee_transaction=fee_transaction,
            source=source,
            destination=destination
        )

    async def _primary_record(self, unit, request: TransferRequest, amount: Money,
                              now: datetime) -> Transaction:
        """Load the pre-created transaction or build a new one"""
        if not request.existing_transaction_id:
            return self.recorder.new_transaction(
                transaction_type=request.transaction_type,
                amount=amount,
                from_account_id=request.from_account_id,
                to_account_id=request.to_account_id,
                description=request.description,
                category=request.category,
                owner_id=request.owner_id,
                metadata=request.metadata,
                now=now
            )

        transaction = await self.recorder.load_in_unit(unit, request.existing_transaction_id)
        if transaction.is_terminal:
            raise InvalidStateTransitionError(
                "transaction", transaction.id, transaction.status.value, "execute"
            )
        if (transaction.amount != amount
                or transaction.from_account_id != request.from_account_id
                or transaction.to_account_id != request.to_account_id):
            raise ValueError(f"Transfer request does not match transaction {transaction.id}")
        return transaction

    async def report_success(self, result: TransferResult) -> None:
        """Log, audit and notify a committed transfer"""
        transaction = result.transaction
        source = result.source
        destination = result.destination

        log_action(
            self.logger, "info", f"Transfer completed: {transaction.transaction_id}",
            user_id=transaction.owner_id, action="execute_transfer",
            resource=f"transaction:{transaction.id}",
            extra={
                "transaction_type": transaction.transaction_type.value,
                "amount": transaction.amount.to_string(),
                "from_account": transaction.from_account_id,
                "to_account": transaction.to_account_id,
                "fee": result.fee_transaction.amount.to_string() if result.fee_transaction else None
            }
        )

        await self.audit_trail.try_log_event(
            event_type=AuditEventType.TRANSACTION_COMPLETED,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={
                "transaction_id": transaction.transaction_id,
                "transaction_type": transaction.transaction_type.value,
                "amount": transaction.amount.to_string(),
                "from_account": transaction.from_account_id,
                "to_account": transaction.to_account_id,
                "balance_after": transaction.balance_after.to_string(),
                "fee_transaction": result.fee_transaction.id if result.fee_transaction else None
            },
            user_id=transaction.owner_id
        )

        payload = {
            "transaction_id": transaction.transaction_id,
            "transaction_type": transaction.transaction_type.value,
            "amount": str(transaction.amount.amount),
            "currency": transaction.currency.code,
            "balance": str(result.from_balance.amount),
            "role": "sender"
        }
        await self.notifier.emit(transaction.owner_id or source.owner_id,
                                 NotificationKind.TRANSFER_COMPLETED, payload)

        if destination and destination.owner_id != (transaction.owner_id or source.owner_id):
            await self.notifier.emit(
                destination.owner_id,
                NotificationKind.TRANSFER_COMPLETED,
                {**payload, "balance": str(result.to_balance.amount), "role": "recipient"}
            )

    async def _report_failure(self, request: TransferRequest, error: PaymentsError) -> None:
        log_action(
            self.logger, "warning", f"Transfer failed: {error}",
            user_id=request.owner_id, action="execute_transfer",
            resource=f"account:{request.from_account_id}",
            extra={
                "error": type(error).__name__,
                "amount": str(request.amount),
                "to_account": request.to_account_id
            }
        )

        await self.audit_trail.try_log_event(
            event_type=AuditEventType.TRANSACTION_FAILED,
            entity_type="account",
            entity_id=request.from_account_id,
            metadata={
                "error": type(error).__name__,
                "reason": str(error),
                "amount": request.amount,
                "transaction_type": request.transaction_type.value,
                "existing_transaction_id": request.existing_transaction_id
            },
            user_id=request.owner_id
        )

        await self.notifier.emit(request.owner_id, NotificationKind.TRANSFER_FAILED, {
            "amount": str(request.amount),
            "transaction_type": request.transaction_type.value,
            "reason": str(error)
        })

    async def execute_withdrawal(
        self,
        account_id: str,
        amount: Decimal,
        description: str = "Withdrawal",
        owner_id: Optional[str] = None,
        enforce_limits: bool = True,
        now: Optional[datetime] = None
    ) -> TransferResult:
        """Debit-only movement out of an account"""
        request = TransferRequest(
            from_account_id=account_id,
            amount=amount,
            description=description,
            category="withdrawal",
            transaction_type=TransactionType.WITHDRAWAL,
            owner_id=owner_id
        )
        return await self.execute_transfer(request, enforce_limits=enforce_limits, now=now)

    async def execute_deposit(
        self,
        account_id: str,
        amount: Decimal,
        description: str = "Deposit",
        method: DepositMethod = DepositMethod.CASH,
        owner_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TransferResult:
        """
        Credit an account

        Check deposits are recorded ``pending`` with no balance change until
        they clear; every other method credits immediately.
        """
        self._check_minimum(to_decimal(amount))
        now = now or datetime.now(timezone.utc)

        async with self.storage.atomic([(ACCOUNTS_TABLE, account_id)]) as unit:
            account = await self.accounts.load_in_unit(unit, account_id)
            self._require_active(account)
            credit = Money(amount, account.currency)

            transaction = self.recorder.new_transaction(
                transaction_type=TransactionType.DEPOSIT,
                amount=credit,
                to_account_id=account.id,
                description=description,
                category="deposit",
                owner_id=owner_id or account.owner_id,
                metadata={"method": method.value},
                now=now
            )

            if method != DepositMethod.CHECK:
                account.balance = account.balance + credit
                account.updated_at = now
                await self.accounts.save_in_unit(unit, account)
                transaction.status = TransactionStatus.COMPLETED
                transaction.processed_at = now

            transaction.balance_after = account.balance
            await self.recorder.save_in_unit(unit, transaction)

        log_action(
            self.logger, "info", f"Deposit {transaction.status.value}: {transaction.transaction_id}",
            user_id=transaction.owner_id, action="execute_deposit",
            resource=f"transaction:{transaction.id}",
            extra={"amount": credit.to_string(), "method": method.value}
        )

        await self.audit_trail.try_log_event(
            event_type=(AuditEventType.TRANSACTION_COMPLETED if transaction.is_completed
                        else AuditEventType.TRANSACTION_PENDING),
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={
                "transaction_id": transaction.transaction_id,
                "transaction_type": TransactionType.DEPOSIT.value,
                "amount": credit.to_string(),
                "to_account": account.id,
                "method": method.value
            },
            user_id=transaction.owner_id
        )

        if transaction.is_completed:
            await self.notifier.emit(transaction.owner_id, NotificationKind.TRANSFER_COMPLETED, {
                "transaction_id": transaction.transaction_id,
                "transaction_type": TransactionType.DEPOSIT.value,
                "amount": str(credit.amount),
                "currency": credit.currency.code,
                "balance": str(account.balance.amount),
                "role": "recipient"
            })

        return TransferResult(transaction=transaction, from_balance=account.balance, to_balance=account.balance)
