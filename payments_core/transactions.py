"""
Transaction Recording Module

Durable record of every money-movement attempt and its outcome. Records are
created by the transfer executor inside its atomic unit of work, or up front in
``pending_confirmation`` when a transfer needs step-up verification, and are
moved through their lifecycle with ``update_transaction_status``.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import secrets
import uuid

from .async_storage import AsyncStorageInterface, AtomicUnit
from .currency import Money, Currency
from .exceptions import InvalidStateTransitionError, RecordNotFoundError
from .logging_config import get_logger, log_action
from .storage import StorageRecord, parse_datetime, format_datetime

TRANSACTIONS_TABLE = "transactions"


class TransactionType(Enum):
    """Types of money movements"""
    DEPOSIT = "deposit"                        # Credit only
    WITHDRAWAL = "withdrawal"                  # Debit only
    TRANSFER = "transfer"                      # Between two internal accounts
    PAYMENT = "payment"                        # Debit to an outside payee
    BILL_PAYMENT = "bill_payment"              # Debit to a registered biller
    EXTERNAL_TRANSFER = "external_transfer"    # Debit to another bank
    FEE = "fee"                                # Fee leg linked to a primary transaction

    @property
    def credits_destination(self) -> bool:
        """Whether this type moves money into an internal destination account"""
        return self in (TransactionType.TRANSFER, TransactionType.DEPOSIT)

    @property
    def is_debit(self) -> bool:
        return self is not TransactionType.DEPOSIT


class TransactionStatus(Enum):
    """States of a transaction"""
    PENDING = "pending"
    PENDING_CONFIRMATION = "pending_confirmation"
    PENDING_VERIFICATION = "pending_verification"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
    TransactionStatus.EXPIRED,
})

# Statuses that count against daily and monthly limits
LIMIT_COUNTED_STATUSES = frozenset({TransactionStatus.COMPLETED, TransactionStatus.PENDING})

# Fields that may never change once a transaction is completed
_IMMUTABLE_WHEN_COMPLETED = frozenset({'amount', 'currency', 'from_account_id', 'to_account_id'})

_UPDATABLE_FIELDS = frozenset({
    'balance_after', 'verification', 'failure_reason', 'processed_at',
    'verified_at', 'cancelled_at', 'related_transaction_id', 'fee_amount', 'metadata',
}) | _IMMUTABLE_WHEN_COMPLETED


@dataclass
class VerificationInfo:
    """Step-up verification state; only a hash of the code is kept"""
    code_hash: str
    expires_at: datetime
    attempts: int = 0


@dataclass
class Transaction(StorageRecord):
    """
    Record of one money movement attempt
    """
    transaction_id: str              # External identifier, TXN...
    transaction_type: TransactionType
    amount: Money
    currency: Currency
    from_account_id: Optional[str]   # None for pure deposits
    to_account_id: Optional[str]     # None for withdrawals and external payees
    description: str = ""
    category: str = "transfer"
    owner_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING

    balance_after: Optional[Money] = None
    verification: Optional[VerificationInfo] = None
    related_transaction_id: Optional[str] = None
    fee_amount: Optional[Money] = None
    failure_reason: Optional[str] = None

    processed_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.from_account_id and not self.to_account_id:
            raise ValueError("Transaction must have at least one account (from_account_id or to_account_id)")

        if not self.amount.is_positive():
            raise ValueError("Transaction amount must be positive")

        if self.amount.currency != self.currency:
            raise ValueError("Transaction amount currency must match transaction currency")

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


def generate_transaction_id() -> str:
    """External transaction identifier: TXN + millisecond timestamp + random suffix"""
    timestamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"TXN{timestamp}{secrets.token_hex(3).upper()}"


def _money_field(data: Dict, key: str, currency: Currency) -> Optional[Money]:
    value = data.get(key)
    if value is None:
        return None
    return Money(Decimal(value), currency)


def transaction_to_dict(transaction: Transaction) -> Dict:
    """Convert Transaction to dictionary for storage"""
    result = transaction.to_dict()
    result['transaction_type'] = transaction.transaction_type.value
    result['currency'] = transaction.currency.code
    result['amount'] = str(transaction.amount.amount)
    result['status'] = transaction.status.value
    result['balance_after'] = str(transaction.balance_after.amount) if transaction.balance_after else None
    result['fee_amount'] = str(transaction.fee_amount.amount) if transaction.fee_amount else None
    result['processed_at'] = format_datetime(transaction.processed_at)
    result['verified_at'] = format_datetime(transaction.verified_at)
    result['cancelled_at'] = format_datetime(transaction.cancelled_at)

    if transaction.verification:
        result['verification'] = {
            'code_hash': transaction.verification.code_hash,
            'expires_at': transaction.verification.expires_at.isoformat(),
            'attempts': transaction.verification.attempts
        }

    return result


def transaction_from_dict(data: Dict) -> Transaction:
    """Convert dictionary to Transaction"""
    currency = Currency[data['currency']]

    verification = None
    if data.get('verification'):
        verification = VerificationInfo(
            code_hash=data['verification']['code_hash'],
            expires_at=parse_datetime(data['verification']['expires_at']),
            attempts=data['verification'].get('attempts', 0)
        )

    return Transaction(
        id=data['id'],
        created_at=parse_datetime(data['created_at']),
        updated_at=parse_datetime(data['updated_at']),
        transaction_id=data['transaction_id'],
        transaction_type=TransactionType(data['transaction_type']),
        amount=Money(Decimal(data['amount']), currency),
        currency=currency,
        from_account_id=data.get('from_account_id'),
        to_account_id=data.get('to_account_id'),
        description=data.get('description', ""),
        category=data.get('category', "transfer"),
        owner_id=data.get('owner_id'),
        status=TransactionStatus(data['status']),
        balance_after=_money_field(data, 'balance_after', currency),
        verification=verification,
        related_transaction_id=data.get('related_transaction_id'),
        fee_amount=_money_field(data, 'fee_amount', currency),
        failure_reason=data.get('failure_reason'),
        processed_at=parse_datetime(data.get('processed_at')),
        verified_at=parse_datetime(data.get('verified_at')),
        cancelled_at=parse_datetime(data.get('cancelled_at')),
        metadata=data.get('metadata', {})
    )


class TransactionRecorder:
    """
    Creates, reads and moves transaction records through their lifecycle
    """

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage
        self.table_name = TRANSACTIONS_TABLE
        self.logger = get_logger("payments.transactions")

    def new_transaction(
        self,
        transaction_type: TransactionType,
        amount: Money,
        from_account_id: Optional[str] = None,
        to_account_id: Optional[str] = None,
        description: str = "",
        category: str = "transfer",
        owner_id: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.PENDING,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> Transaction:
        """Build a transaction record without persisting it"""
        now = now or datetime.now(timezone.utc)
        return Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            transaction_id=generate_transaction_id(),
            transaction_type=transaction_type,
            amount=amount,
            currency=amount.currency,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            description=description,
            category=category,
            owner_id=owner_id,
            status=status,
            metadata=metadata or {}
        )

    async def create_transaction(self, **fields) -> Transaction:
        """
        Create and persist a transaction record outside any unit of work

        Accepts the keyword arguments of ``new_transaction``.
        """
        transaction = self.new_transaction(**fields)
        await self.storage.save(self.table_name, transaction.id, transaction_to_dict(transaction))

        log_action(
            self.logger, "info", f"Transaction created: {transaction.transaction_type.value}",
            user_id=transaction.owner_id, action="create_transaction",
            resource=f"transaction:{transaction.id}",
            extra={
                "transaction_id": transaction.transaction_id,
                "status": transaction.status.value,
                "amount": transaction.amount.to_string(),
                "from_account": transaction.from_account_id,
                "to_account": transaction.to_account_id
            }
        )
        return transaction

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by record ID"""
        data = await self.storage.load(self.table_name, transaction_id)
        if data:
            return transaction_from_dict(data)
        return None

    async def require_transaction(self, transaction_id: str) -> Transaction:
        transaction = await self.get_transaction(transaction_id)
        if transaction is None:
            raise RecordNotFoundError("transaction", transaction_id)
        return transaction

    async def get_by_reference(self, reference: str) -> Optional[Transaction]:
        """Get transaction by its external TXN identifier"""
        records = await self.storage.find(self.table_name, {"transaction_id": reference})
        if records:
            return transaction_from_dict(records[0])
        return None

    async def update_transaction_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        **fields
    ) -> Transaction:
        """
        Move a transaction to a new status, updating the named fields

        Raises:
            InvalidStateTransitionError: if the transaction is already terminal
            ValueError: for unknown fields or attempts to alter a completed
                transaction's amount or accounts
        """
        async with self.storage.atomic([(self.table_name, transaction_id)]) as unit:
            transaction = await self.load_in_unit(unit, transaction_id)
            self.apply_status(transaction, status, **fields)
            await self.save_in_unit(unit, transaction)

        log_action(
            self.logger, "info", f"Transaction {transaction.transaction_id} -> {status.value}",
            user_id=transaction.owner_id, action="update_transaction_status",
            resource=f"transaction:{transaction.id}",
            extra={"failure_reason": transaction.failure_reason} if transaction.failure_reason else None
        )
        return transaction

    def apply_status(self, transaction: Transaction, status: TransactionStatus, **fields) -> None:
        """Apply a status change to an in-memory transaction record"""
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update transaction fields: {sorted(unknown)}")

        if transaction.is_completed:
            frozen = set(fields) & _IMMUTABLE_WHEN_COMPLETED
            if frozen:
                raise ValueError(f"Completed transaction {transaction.id} cannot change {sorted(frozen)}")

        if transaction.is_terminal and status != transaction.status:
            raise InvalidStateTransitionError(
                "transaction", transaction.id, transaction.status.value, f"move to {status.value}"
            )

        for name, value in fields.items():
            setattr(transaction, name, value)
        transaction.status = status
        transaction.updated_at = datetime.now(timezone.utc)

    async def load_in_unit(self, unit: AtomicUnit, transaction_id: str) -> Transaction:
        """Read a transaction inside an atomic unit"""
        data = await unit.load(self.table_name, transaction_id)
        if data is None:
            raise RecordNotFoundError("transaction", transaction_id)
        return transaction_from_dict(data)

    async def save_in_unit(self, unit: AtomicUnit, transaction: Transaction) -> None:
        """Stage a transaction write inside an atomic unit"""
        await unit.save(self.table_name, transaction.id, transaction_to_dict(transaction))

    async def get_account_transactions(self, account_id: str) -> List[Transaction]:
        """All transactions touching an account, oldest first"""
        debits = await self.storage.find(self.table_name, {"from_account_id": account_id})
        credits = await self.storage.find(self.table_name, {"to_account_id": account_id})

        seen = {}
        for data in debits + credits:
            seen[data['id']] = data

        transactions = [transaction_from_dict(data) for data in seen.values()]
        transactions.sort(key=lambda t: t.created_at)
        return transactions

    async def find_debits_since(
        self,
        account_id: str,
        since: datetime,
        until: Optional[datetime] = None,
        unit: Optional[AtomicUnit] = None
    ) -> List[Transaction]:
        """
        Transactions debiting the account in [since, until] whose status counts
        against limits (completed or pending)

        Inside an atomic unit the query runs on that unit, so it sees the
        unit's locks and staged writes and holds no second connection.
        """
        records = await (unit or self.storage).find(self.table_name, {"from_account_id": account_id})
        results = []
        for data in records:
            transaction = transaction_from_dict(data)
            if transaction.status not in LIMIT_COUNTED_STATUSES:
                continue
            if transaction.created_at < since:
                continue
            if until is not None and transaction.created_at > until:
                continue
            results.append(transaction)
        return results
