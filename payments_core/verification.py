"""
Step-up Verification Module

State machine for transfers that need a one-time code before they execute:

    pending_confirmation -> pending_verification -> completed | failed | expired | cancelled

Only a SHA-256 hash of the code is stored. Expiry is always evaluated before
the code is compared.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional
import hashlib
import hmac
import secrets

from .accounts import AccountStore
from .async_storage import AsyncStorageInterface
from .audit import AuditTrail, AuditEventType
from .config import PaymentsConfig
from .currency import Money
from .exceptions import (
    AccountInactiveError, ExecutionFailureError, InvalidStateTransitionError, PaymentsError,
    PersistenceError, VerificationExpiredError, VerificationFailedMaxAttemptsError, InvalidVerificationCodeError
)
from .limits import LimitChecker
from .logging_config import get_logger, log_action
from .notifications import NotificationDispatcher, NotificationKind
from .transactions import (
    Transaction, TransactionRecorder, TransactionStatus, VerificationInfo, TRANSACTIONS_TABLE
)
from .transfers import TransferExecutor, TransferRequest, TransferResult

CANCELLABLE_STATUSES = frozenset({
    TransactionStatus.PENDING,
    TransactionStatus.PENDING_CONFIRMATION,
    TransactionStatus.PENDING_VERIFICATION,
})

MAX_ATTEMPTS_REASON = "verification_failed_max_attempts"
EXPIRED_REASON = "verification_expired"


def generate_verification_code(length: int = 6) -> str:
    """Numeric one-time code from a cryptographically secure source"""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def hash_verification_code(transaction_id: str, code: str) -> str:
    return hashlib.sha256(f"{transaction_id}:{code}".encode('utf-8')).hexdigest()


class VerificationService:
    """
    Drives verified transfers from intent to execution
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        accounts: AccountStore,
        recorder: TransactionRecorder,
        limit_checker: LimitChecker,
        executor: TransferExecutor,
        notifier: NotificationDispatcher,
        audit_trail: AuditTrail,
        config: PaymentsConfig,
        code_generator: Optional[Callable[[int], str]] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.recorder = recorder
        self.limit_checker = limit_checker
        self.executor = executor
        self.notifier = notifier
        self.audit_trail = audit_trail
        self.config = config
        self.code_generator = code_generator or generate_verification_code
        self.logger = get_logger("payments.verification")

    async def initiate(self, request: TransferRequest, now: Optional[datetime] = None) -> Transaction:
        """
        Record a transfer intent awaiting confirmation

        The source account must be active and the limits must allow the
        amount now; both are checked again when the transfer executes.
        """
        now = now or datetime.now(timezone.utc)
        source = await self.accounts.require_account(request.from_account_id)
        if not source.is_active:
            raise AccountInactiveError(source.id, source.status.value)

        amount = Money(request.amount, source.currency)
        await self.limit_checker.enforce_limits(
            source, amount + Money(request.fee, source.currency), request.transaction_type, now
        )

        metadata = dict(request.metadata)
        if request.fee:
            metadata['fee'] = str(request.fee)

        transaction = await self.recorder.create_transaction(
            transaction_type=request.transaction_type,
            amount=amount,
            from_account_id=request.from_account_id,
            to_account_id=request.to_account_id,
            description=request.description,
            category=request.category,
            owner_id=request.owner_id or source.owner_id,
            status=TransactionStatus.PENDING_CONFIRMATION,
            metadata=metadata,
            now=now
        )

        await self.audit_trail.try_log_event(
            event_type=AuditEventType.VERIFICATION_INITIATED,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={
                "transaction_id": transaction.transaction_id,
                "amount": amount.to_string(),
                "from_account": transaction.from_account_id,
                "to_account": transaction.to_account_id
            },
            user_id=transaction.owner_id
        )
        return transaction

    async def confirm(self, transaction_id: str, now: Optional[datetime] = None) -> Transaction:
        """
        Move pending_confirmation -> pending_verification and issue a code

        The code travels only in the notification intent; the record keeps its hash.
        """
        now = now or datetime.now(timezone.utc)
        code = self.code_generator(self.config.verification_code_length)

        async with self.storage.atomic([(TRANSACTIONS_TABLE, transaction_id)]) as unit:
            transaction = await self.recorder.load_in_unit(unit, transaction_id)
            if transaction.status != TransactionStatus.PENDING_CONFIRMATION:
                raise InvalidStateTransitionError(
                    "transaction", transaction_id, transaction.status.value, "confirm"
                )

            transaction.verification = VerificationInfo(
                code_hash=hash_verification_code(transaction.id, code),
                expires_at=now + timedelta(minutes=self.config.verification_code_ttl_minutes),
                attempts=0
            )
            transaction.status = TransactionStatus.PENDING_VERIFICATION
            transaction.updated_at = now
            await self.recorder.save_in_unit(unit, transaction)

        log_action(
            self.logger, "info", f"Verification code issued for {transaction.transaction_id}",
            user_id=transaction.owner_id, action="confirm_transfer",
            resource=f"transaction:{transaction.id}",
            extra={"expires_at": transaction.verification.expires_at.isoformat()}
        )

        await self.audit_trail.try_log_event(
            event_type=AuditEventType.VERIFICATION_CODE_ISSUED,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={"expires_at": transaction.verification.expires_at},
            user_id=transaction.owner_id
        )

        await self.notifier.emit(transaction.owner_id, NotificationKind.VERIFICATION_CODE_ISSUED, {
            "transaction_id": transaction.transaction_id,
            "code": code,
            "amount": str(transaction.amount.amount),
            "currency": transaction.currency.code,
            "expires_at": transaction.verification.expires_at.isoformat()
        })
        return transaction

    async def verify(self, transaction_id: str, code: str, now: Optional[datetime] = None) -> TransferResult:
        """
        Check a submitted code and, on a match, execute the transfer

        Raises:
            VerificationExpiredError: the code expired; the transaction is now expired
            InvalidVerificationCodeError: wrong code, attempts remain
            VerificationFailedMaxAttemptsError: wrong code on the last attempt;
                the transaction is now failed
            ExecutionFailureError: the code matched but the transfer did not
                execute; the transaction is now failed
            InvalidStateTransitionError: the transaction is not awaiting verification
            PersistenceError: the store failed while executing; the transaction
                stays pending_verification and the same code can be resubmitted
        """
        now = now or datetime.now(timezone.utc)
        max_attempts = self.config.verification_max_attempts

        async with self.storage.atomic([(TRANSACTIONS_TABLE, transaction_id)]) as unit:
            transaction = await self.recorder.load_in_unit(unit, transaction_id)
            self._check_verifiable(transaction)
            verification = transaction.verification

            if now > verification.expires_at:
                outcome = "expired"
                transaction.status = TransactionStatus.EXPIRED
                transaction.failure_reason = EXPIRED_REASON
            elif hmac.compare_digest(hash_verification_code(transaction.id, code), verification.code_hash):
                outcome = "verified"
                transaction.verified_at = now
            else:
                verification.attempts += 1
                if verification.attempts >= max_attempts:
                    outcome = "exhausted"
                    transaction.status = TransactionStatus.FAILED
                    transaction.failure_reason = MAX_ATTEMPTS_REASON
                    transaction.processed_at = now
                else:
                    outcome = "mismatch"

            transaction.updated_at = now
            await self.recorder.save_in_unit(unit, transaction)

        if outcome == "expired":
            await self._report_rejection(transaction, AuditEventType.VERIFICATION_EXPIRED)
            raise VerificationExpiredError(f"Verification code for {transaction.transaction_id} has expired")

        if outcome == "exhausted":
            await self._report_rejection(transaction, AuditEventType.TRANSACTION_FAILED)
            raise VerificationFailedMaxAttemptsError(
                f"Too many invalid verification attempts for {transaction.transaction_id}"
            )

        if outcome == "mismatch":
            await self.audit_trail.try_log_event(
                event_type=AuditEventType.VERIFICATION_ATTEMPT_FAILED,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={"attempts": verification.attempts},
                user_id=transaction.owner_id
            )
            raise InvalidVerificationCodeError(max_attempts - verification.attempts)

        return await self._execute_verified(transaction, now)

    def _check_verifiable(self, transaction: Transaction) -> None:
        status = transaction.status
        if status == TransactionStatus.PENDING_VERIFICATION and transaction.verification:
            return
        if status == TransactionStatus.EXPIRED:
            raise VerificationExpiredError(f"Verification for {transaction.transaction_id} has expired")
        if status == TransactionStatus.FAILED and transaction.failure_reason == MAX_ATTEMPTS_REASON:
            raise VerificationFailedMaxAttemptsError(
                f"Verification for {transaction.transaction_id} already failed"
            )
        raise InvalidStateTransitionError("transaction", transaction.id, status.value, "verify")

    async def _execute_verified(self, transaction: Transaction, now: datetime) -> TransferResult:
        request = TransferRequest(
            from_account_id=transaction.from_account_id,
            to_account_id=transaction.to_account_id,
            amount=transaction.amount.amount,
            description=transaction.description,
            category=transaction.category,
            transaction_type=transaction.transaction_type,
            owner_id=transaction.owner_id,
            fee=Decimal(transaction.metadata.get('fee', '0')),
            existing_transaction_id=transaction.id
        )

        try:
            return await self.executor.execute_transfer(request, now=now)
        except (InvalidStateTransitionError, PersistenceError):
            # Cancelled or completed by a concurrent call, or the store failed and
            # the transaction is still pending_verification
            raise
        except (PaymentsError, ValueError) as e:
            await self.recorder.update_transaction_status(
                transaction.id,
                TransactionStatus.FAILED,
                failure_reason=str(e),
                processed_at=now
            )
            log_action(
                self.logger, "warning", f"Verified transfer {transaction.transaction_id} failed to execute",
                user_id=transaction.owner_id, action="verify_transfer",
                resource=f"transaction:{transaction.id}",
                extra={"error": type(e).__name__, "reason": str(e)}
            )
            raise ExecutionFailureError(str(e), cause=e) from e

    async def _report_rejection(self, transaction: Transaction, event_type: AuditEventType) -> None:
        log_action(
            self.logger, "warning", f"Verification rejected for {transaction.transaction_id}",
            user_id=transaction.owner_id, action="verify_transfer",
            resource=f"transaction:{transaction.id}",
            extra={"status": transaction.status.value, "reason": transaction.failure_reason}
        )

        await self.audit_trail.try_log_event(
            event_type=event_type,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={"status": transaction.status.value, "reason": transaction.failure_reason},
            user_id=transaction.owner_id
        )

        await self.notifier.emit(transaction.owner_id, NotificationKind.TRANSFER_FAILED, {
            "transaction_id": transaction.transaction_id,
            "amount": str(transaction.amount.amount),
            "reason": transaction.failure_reason
        })

    async def cancel(self, transaction_id: str, reason: str,
                     user_id: Optional[str] = None, now: Optional[datetime] = None) -> Transaction:
        """
        Cancel a transaction that has not reached a terminal state

        Raises:
            InvalidStateTransitionError: the transaction is not pending
        """
        now = now or datetime.now(timezone.utc)

        async with self.storage.atomic([(TRANSACTIONS_TABLE, transaction_id)]) as unit:
            transaction = await self.recorder.load_in_unit(unit, transaction_id)
            if transaction.status not in CANCELLABLE_STATUSES:
                raise InvalidStateTransitionError(
                    "transaction", transaction_id, transaction.status.value, "cancel"
                )
            transaction.status = TransactionStatus.CANCELLED
            transaction.cancelled_at = now
            transaction.updated_at = now
            transaction.metadata['cancel_reason'] = reason
            await self.recorder.save_in_unit(unit, transaction)

        log_action(
            self.logger, "info", f"Transaction {transaction.transaction_id} cancelled",
            user_id=user_id or transaction.owner_id, action="cancel_transaction",
            resource=f"transaction:{transaction.id}", extra={"reason": reason}
        )

        await self.audit_trail.try_log_event(
            event_type=AuditEventType.VERIFICATION_CANCELLED,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={"reason": reason},
            user_id=user_id or transaction.owner_id
        )
        return transaction
