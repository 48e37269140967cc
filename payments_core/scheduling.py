"""
Scheduled and Recurring Transactions Module

Domain model and repository for scheduled transactions. Next-date arithmetic
is pure; state changes (execution bookkeeping, pause, resume, cancel, approval,
updates) are methods on the plain ScheduledTransaction dataclass, and the
ScheduleManager maps schedules to and from storage.

Month-based frequencies clamp to the last day of the target month and always
step from the current next execution date, so a schedule starting on Jan 31
runs Feb 29 (leap year), then Mar 29.
"""

import calendar
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Any
import math
import uuid

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .accounts import AccountStore
from .async_storage import AsyncStorageInterface, AtomicUnit
from .audit import AuditTrail, AuditEventType
from .config import PaymentsConfig
from .currency import Money, Currency
from .exceptions import InvalidStateTransitionError, RecordNotFoundError, ScheduleValidationError
from .logging_config import get_logger, log_action
from .storage import StorageRecord, parse_datetime, format_datetime
from .transactions import TransactionType

SCHEDULES_TABLE = "scheduled_transactions"


class Frequency(Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    BI_WEEKLY = "bi_weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUALLY = "semi_annually"
    ANNUALLY = "annually"


class ScheduleStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScheduleStatus.COMPLETED, ScheduleStatus.CANCELLED, ScheduleStatus.FAILED)


class RecipientType(Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"
    BILL_PAYEE = "bill_payee"


# Transaction types a scheduled transaction may produce, by recipient type
_RECIPIENT_TRANSACTION_TYPES = {
    RecipientType.INTERNAL: {TransactionType.TRANSFER},
    RecipientType.EXTERNAL: {TransactionType.EXTERNAL_TRANSFER, TransactionType.PAYMENT},
    RecipientType.BILL_PAYEE: {TransactionType.BILL_PAYMENT, TransactionType.PAYMENT},
}

_DAY_STEPS = {
    Frequency.DAILY: 1,
    Frequency.WEEKLY: 7,
    Frequency.BI_WEEKLY: 14,
}

_MONTH_STEPS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.SEMI_ANNUALLY: 6,
    Frequency.ANNUALLY: 12,
}


def add_months(value: datetime, months: int) -> datetime:
    """Add months to a datetime, clamping to the last day of the target month"""
    month = value.month - 1 + months
    year = value.year + month // 12
    month = month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calculate_next_execution_date(current: datetime, frequency: Frequency) -> Optional[datetime]:
    """
    Next occurrence after ``current``; None for one-off schedules.

    Pure calendar arithmetic: the same inputs always give the same date.
    """
    if frequency in _DAY_STEPS:
        return current + timedelta(days=_DAY_STEPS[frequency])
    if frequency in _MONTH_STEPS:
        return add_months(current, _MONTH_STEPS[frequency])
    return None


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Validation models for inbound schedule requests

class RecipientModel(BaseModel):
    recipient_type: RecipientType
    account_id: Optional[str] = None
    name: Optional[str] = None
    account_number: Optional[str] = None
    routing_number: Optional[str] = None
    bank_name: Optional[str] = None

    @model_validator(mode="after")
    def check_details(self) -> 'RecipientModel':
        if self.recipient_type == RecipientType.INTERNAL and not self.account_id:
            raise ValueError("Internal recipient requires account_id")
        if self.recipient_type == RecipientType.EXTERNAL:
            if not (self.name and self.account_number and self.routing_number):
                raise ValueError("External recipient requires name, account number, and routing number")
        if self.recipient_type == RecipientType.BILL_PAYEE and not self.name:
            raise ValueError("Bill payee requires a name")
        return self


class NotificationSettingsModel(BaseModel):
    before_execution: bool = False
    days_before: int = Field(1, ge=0, le=30)
    after_execution: bool = True
    on_failure: bool = True


class ScheduleCreate(BaseModel):
    """Request to schedule a one-off or recurring transaction"""
    model_config = ConfigDict(extra="forbid")

    owner_id: str
    account_id: str
    transaction_type: TransactionType = TransactionType.TRANSFER
    category: str = "other"
    amount: Decimal = Field(..., gt=0)
    recipient: RecipientModel
    frequency: Frequency
    start_date: datetime
    end_date: Optional[datetime] = None
    max_executions: Optional[int] = Field(None, ge=1)
    max_retries: int = Field(3, ge=0, le=10)
    retry_interval_minutes: int = Field(60, ge=1)
    notification_settings: NotificationSettingsModel = Field(default_factory=NotificationSettingsModel)
    requires_approval: bool = False
    description: str = ""
    reference: Optional[str] = None
    created_by: Optional[str] = None

    @model_validator(mode="after")
    def check_schedule(self) -> 'ScheduleCreate':
        if self.end_date and as_utc(self.end_date) <= as_utc(self.start_date):
            raise ValueError("End date must be after start date")
        allowed = _RECIPIENT_TRANSACTION_TYPES[self.recipient.recipient_type]
        if self.transaction_type not in allowed:
            raise ValueError(
                f"{self.recipient.recipient_type.value} recipients cannot receive {self.transaction_type.value}"
            )
        if self.recipient.account_id and self.recipient.account_id == self.account_id:
            raise ValueError("Cannot schedule a transfer to the same account")
        return self


class ScheduleUpdate(BaseModel):
    """
    Fields an owner may change on an existing schedule

    Anything else (status, counters, accounts, recipient) is rejected; status
    changes go through pause, resume and cancel.
    """
    model_config = ConfigDict(extra="forbid")

    amount: Optional[Decimal] = Field(None, gt=0)
    description: Optional[str] = None
    category: Optional[str] = None
    reference: Optional[str] = None
    frequency: Optional[Frequency] = None
    end_date: Optional[datetime] = None
    max_executions: Optional[int] = Field(None, ge=1)
    notification_settings: Optional[NotificationSettingsModel] = None


# Domain objects

@dataclass
class Recipient:
    recipient_type: RecipientType
    account_id: Optional[str] = None
    name: Optional[str] = None
    account_number: Optional[str] = None
    routing_number: Optional[str] = None
    bank_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_type": self.recipient_type.value,
            "account_id": self.account_id,
            "name": self.name,
            "account_number": self.account_number,
            "routing_number": self.routing_number,
            "bank_name": self.bank_name
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Recipient':
        return cls(**{**data, "recipient_type": RecipientType(data["recipient_type"])})


@dataclass
class NotificationSettings:
    before_execution: bool = False
    days_before: int = 1
    after_execution: bool = True
    on_failure: bool = True


@dataclass
class ExecutionResult:
    success: bool
    executed_at: datetime
    transaction_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "executed_at": self.executed_at.isoformat(),
            "transaction_id": self.transaction_id,
            "error": self.error
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExecutionResult':
        return cls(
            success=data["success"],
            executed_at=parse_datetime(data["executed_at"]),
            transaction_id=data.get("transaction_id"),
            error=data.get("error")
        )


@dataclass
class ScheduledTransaction(StorageRecord):
    """
    A one-off or recurring money movement and its execution state

    ``execution_count`` counts successful executions. Failed attempts raise
    ``failure_count`` (reset on success) and appear in ``execution_history``.
    """
    owner_id: str
    account_id: str
    transaction_type: TransactionType
    amount: Money
    currency: Currency
    recipient: Recipient
    frequency: Frequency
    start_date: datetime
    end_date: Optional[datetime] = None
    next_execution_date: Optional[datetime] = None
    max_executions: Optional[int] = None
    execution_count: int = 0
    failure_count: int = 0
    max_retries: int = 3
    retry_interval_minutes: int = 60
    retry_after: Optional[datetime] = None
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    last_executed_at: Optional[datetime] = None
    last_execution_result: Optional[ExecutionResult] = None
    execution_history: List[ExecutionResult] = field(default_factory=list)
    notification_settings: NotificationSettings = field(default_factory=NotificationSettings)
    requires_approval: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    category: str = "other"
    description: str = ""
    reference: Optional[str] = None
    paused_at: Optional[datetime] = None
    pause_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    reminder_sent_for: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    def __post_init__(self):
        if self.next_execution_date is None and not self.status.is_terminal:
            self.next_execution_date = self.start_date

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_approved(self) -> bool:
        return not self.requires_approval or self.approved_by is not None

    @property
    def remaining_executions(self) -> Optional[int]:
        if not self.max_executions:
            return None
        return max(0, self.max_executions - self.execution_count)

    @property
    def total_amount_scheduled(self) -> Optional[Money]:
        if not self.max_executions:
            return None
        return self.amount * self.max_executions

    @property
    def amount_executed(self) -> Money:
        return self.amount * self.execution_count

    def days_until_execution(self, now: Optional[datetime] = None) -> Optional[int]:
        if not self.next_execution_date:
            return None
        now = now or datetime.now(timezone.utc)
        return math.ceil((self.next_execution_date - now).total_seconds() / 86400)

    def is_due(self, as_of: datetime, apply_backoff: bool = True) -> bool:
        """Active, approved, next execution reached and not backing off"""
        if self.status != ScheduleStatus.ACTIVE or not self.is_approved:
            return False
        if self.next_execution_date is None or self.next_execution_date > as_of:
            return False
        if apply_backoff and self.retry_after and self.retry_after > as_of:
            return False
        return True

    def _terminate(self, status: ScheduleStatus, now: datetime) -> None:
        self.status = status
        self.next_execution_date = None
        self.retry_after = None
        self.updated_at = now

    def update_next_execution(self, now: Optional[datetime] = None) -> None:
        """
        Advance to the next occurrence, or complete the schedule when it is a
        one-off, when the next occurrence falls after the end date, or when
        the maximum number of executions has been reached
        """
        now = now or datetime.now(timezone.utc)

        if self.max_executions and self.execution_count >= self.max_executions:
            self._terminate(ScheduleStatus.COMPLETED, now)
            return

        next_date = None
        if self.next_execution_date is not None:
            next_date = calculate_next_execution_date(self.next_execution_date, self.frequency)

        if next_date is None or (self.end_date and next_date > self.end_date):
            self._terminate(ScheduleStatus.COMPLETED, now)
            return

        self.next_execution_date = next_date
        self.updated_at = now

    def record_execution(
        self,
        success: bool,
        transaction_id: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
        apply_backoff: bool = True
    ) -> ExecutionResult:
        """
        Record the outcome of one execution attempt

        Success resets the failure count and advances (or completes) the
        schedule. Failure keeps the same next execution date; once
        ``max_retries`` consecutive failures accumulate the schedule fails,
        otherwise it is held back until ``retry_after`` when backoff applies.
        """
        if self.status != ScheduleStatus.ACTIVE:
            raise InvalidStateTransitionError("schedule", self.id, self.status.value, "record execution for")

        now = now or datetime.now(timezone.utc)
        result = ExecutionResult(success=success, executed_at=now, transaction_id=transaction_id, error=error)
        self.last_executed_at = now
        self.last_execution_result = result
        self.execution_history.append(result)
        self.updated_at = now

        if success:
            self.execution_count += 1
            self.failure_count = 0
            self.retry_after = None
            self.update_next_execution(now)
        else:
            self.failure_count += 1
            if self.failure_count >= self.max_retries:
                self._terminate(ScheduleStatus.FAILED, now)
            elif apply_backoff:
                self.retry_after = now + timedelta(minutes=self.retry_interval_minutes)

        return result

    def pause(self, reason: Optional[str] = None, now: Optional[datetime] = None) -> None:
        if self.status != ScheduleStatus.ACTIVE:
            raise InvalidStateTransitionError("schedule", self.id, self.status.value, "pause")
        now = now or datetime.now(timezone.utc)
        self.status = ScheduleStatus.PAUSED
        self.paused_at = now
        self.pause_reason = reason
        self.updated_at = now

    def resume(self, now: Optional[datetime] = None) -> None:
        if self.status != ScheduleStatus.PAUSED:
            raise InvalidStateTransitionError("schedule", self.id, self.status.value, "resume")
        now = now or datetime.now(timezone.utc)
        self.status = ScheduleStatus.ACTIVE
        self.paused_at = None
        self.pause_reason = None
        self.updated_at = now

    def cancel(self, reason: Optional[str] = None, now: Optional[datetime] = None) -> None:
        if self.is_terminal:
            raise InvalidStateTransitionError("schedule", self.id, self.status.value, "cancel")
        now = now or datetime.now(timezone.utc)
        self.cancelled_at = now
        self.cancel_reason = reason
        self._terminate(ScheduleStatus.CANCELLED, now)

    def approve(self, user_id: str, now: Optional[datetime] = None) -> None:
        if self.is_terminal:
            raise InvalidStateTransitionError("schedule", self.id, self.status.value, "approve")
        if not self.requires_approval or self.approved_by:
            raise InvalidStateTransitionError("schedule", self.id, "approved", "approve")
        now = now or datetime.now(timezone.utc)
        self.approved_by = user_id
        self.approved_at = now
        self.updated_at = now

    def apply_update(self, update: ScheduleUpdate, updated_by: Optional[str] = None,
                     now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Apply the fields explicitly set on ``update``

        Returns the previous values of the changed fields.
        """
        if self.is_terminal:
            raise InvalidStateTransitionError("schedule", self.id, self.status.value, "update")

        changes = update.model_dump(exclude_unset=True)
        for name in ("amount", "frequency", "description", "category", "notification_settings"):
            if name in changes and changes[name] is None:
                raise ScheduleValidationError(f"{name} cannot be cleared")

        if changes.get("end_date") is not None:
            end_date = as_utc(changes["end_date"])
            if end_date <= self.start_date:
                raise ScheduleValidationError("End date must be after start date")
            if self.next_execution_date and end_date < self.next_execution_date:
                raise ScheduleValidationError("End date cannot precede the next execution date")
            changes["end_date"] = end_date

        if changes.get("max_executions") is not None and changes["max_executions"] <= self.execution_count:
            raise ScheduleValidationError(
                f"max_executions must exceed the {self.execution_count} executions already made"
            )

        previous = {}
        for name, value in changes.items():
            previous[name] = getattr(self, name)
            if name == "amount":
                value = Money(value, self.currency)
            elif name == "frequency":
                value = Frequency(value)
            elif name == "notification_settings":
                value = NotificationSettings(**value)
            setattr(self, name, value)

        now = now or datetime.now(timezone.utc)
        self.updated_by = updated_by
        self.updated_at = now
        return previous


def schedule_to_dict(schedule: ScheduledTransaction) -> Dict:
    """Convert ScheduledTransaction to dictionary for storage"""
    result = schedule.to_dict()
    result['transaction_type'] = schedule.transaction_type.value
    result['amount'] = str(schedule.amount.amount)
    result['currency'] = schedule.currency.code
    result['recipient'] = schedule.recipient.to_dict()
    result['frequency'] = schedule.frequency.value
    result['status'] = schedule.status.value
    result['last_execution_result'] = (
        schedule.last_execution_result.to_dict() if schedule.last_execution_result else None
    )
    result['execution_history'] = [entry.to_dict() for entry in schedule.execution_history]
    for name in ('start_date', 'end_date', 'next_execution_date', 'retry_after', 'last_executed_at',
                 'approved_at', 'paused_at', 'cancelled_at', 'reminder_sent_for'):
        result[name] = format_datetime(getattr(schedule, name))
    return result


def schedule_from_dict(data: Dict) -> ScheduledTransaction:
    """Convert dictionary to ScheduledTransaction"""
    currency = Currency[data['currency']]
    last_result = data.get('last_execution_result')

    return ScheduledTransaction(
        id=data['id'],
        created_at=parse_datetime(data['created_at']),
        updated_at=parse_datetime(data['updated_at']),
        owner_id=data['owner_id'],
        account_id=data['account_id'],
        transaction_type=TransactionType(data['transaction_type']),
        amount=Money(Decimal(data['amount']), currency),
        currency=currency,
        recipient=Recipient.from_dict(data['recipient']),
        frequency=Frequency(data['frequency']),
        start_date=parse_datetime(data['start_date']),
        end_date=parse_datetime(data.get('end_date')),
        next_execution_date=parse_datetime(data.get('next_execution_date')),
        max_executions=data.get('max_executions'),
        execution_count=data.get('execution_count', 0),
        failure_count=data.get('failure_count', 0),
        max_retries=data.get('max_retries', 3),
        retry_interval_minutes=data.get('retry_interval_minutes', 60),
        retry_after=parse_datetime(data.get('retry_after')),
        status=ScheduleStatus(data['status']),
        last_executed_at=parse_datetime(data.get('last_executed_at')),
        last_execution_result=ExecutionResult.from_dict(last_result) if last_result else None,
        execution_history=[ExecutionResult.from_dict(entry) for entry in data.get('execution_history', [])],
        notification_settings=NotificationSettings(**data.get('notification_settings', {})),
        requires_approval=data.get('requires_approval', False),
        approved_by=data.get('approved_by'),
        approved_at=parse_datetime(data.get('approved_at')),
        category=data.get('category', "other"),
        description=data.get('description', ""),
        reference=data.get('reference'),
        paused_at=parse_datetime(data.get('paused_at')),
        pause_reason=data.get('pause_reason'),
        cancelled_at=parse_datetime(data.get('cancelled_at')),
        cancel_reason=data.get('cancel_reason'),
        reminder_sent_for=parse_datetime(data.get('reminder_sent_for')),
        created_by=data.get('created_by'),
        updated_by=data.get('updated_by')
    )


def _plain(value):
    """Audit-friendly form of a schedule field value"""
    if isinstance(value, Money):
        return str(value.amount)
    if isinstance(value, NotificationSettings):
        return asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _by_next_execution(schedule: ScheduledTransaction):
    # Terminal schedules (no next date) sort last
    return (schedule.next_execution_date is None,
            schedule.next_execution_date or schedule.created_at)


class ScheduleManager:
    """
    Repository and lifecycle operations for scheduled transactions
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        accounts: AccountStore,
        audit_trail: AuditTrail,
        config: PaymentsConfig
    ):
        self.storage = storage
        self.accounts = accounts
        self.audit_trail = audit_trail
        self.config = config
        self.table_name = SCHEDULES_TABLE
        self.logger = get_logger("payments.scheduling")

    async def create_schedule(self, request: ScheduleCreate, now: Optional[datetime] = None) -> ScheduledTransaction:
        """
        Create a scheduled transaction starting in the future

        Raises:
            ScheduleValidationError: start date not in the future, source account
                not owned by the requester, or internal recipient missing
        """
        now = now or datetime.now(timezone.utc)
        start_date = as_utc(request.start_date)
        if start_date <= now:
            raise ScheduleValidationError("Start date must be in the future")

        account = await self.accounts.get_account(request.account_id)
        if account is None or account.owner_id != request.owner_id:
            raise ScheduleValidationError(f"Account {request.account_id} not found for owner {request.owner_id}")

        if request.recipient.recipient_type == RecipientType.INTERNAL:
            recipient_account = await self.accounts.get_account(request.recipient.account_id)
            if recipient_account is None:
                raise ScheduleValidationError(f"Recipient account {request.recipient.account_id} not found")

        schedule = ScheduledTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=request.owner_id,
            account_id=request.account_id,
            transaction_type=request.transaction_type,
            amount=Money(request.amount, account.currency),
            currency=account.currency,
            recipient=Recipient(**request.recipient.model_dump()),
            frequency=request.frequency,
            start_date=start_date,
            end_date=as_utc(request.end_date) if request.end_date else None,
            max_executions=request.max_executions,
            max_retries=request.max_retries,
            retry_interval_minutes=request.retry_interval_minutes,
            notification_settings=NotificationSettings(**request.notification_settings.model_dump()),
            requires_approval=request.requires_approval,
            category=request.category,
            description=request.description,
            reference=request.reference,
            created_by=request.created_by or request.owner_id
        )

        await self.storage.save(self.table_name, schedule.id, schedule_to_dict(schedule))

        log_action(
            self.logger, "info", f"Scheduled {schedule.frequency.value} {schedule.transaction_type.value}",
            user_id=schedule.owner_id, action="create_schedule", resource=f"schedule:{schedule.id}",
            extra={
                "amount": schedule.amount.to_string(),
                "start_date": schedule.start_date.isoformat(),
                "requires_approval": schedule.requires_approval
            }
        )

        await self.audit_trail.try_log_event(
            event_type=AuditEventType.SCHEDULE_CREATED,
            entity_type="schedule",
            entity_id=schedule.id,
            metadata={
                "account_id": schedule.account_id,
                "amount": schedule.amount.to_string(),
                "frequency": schedule.frequency.value,
                "start_date": schedule.start_date,
                "recipient_type": schedule.recipient.recipient_type.value
            },
            user_id=schedule.created_by
        )
        return schedule

    async def get_schedule(self, schedule_id: str) -> Optional[ScheduledTransaction]:
        data = await self.storage.load(self.table_name, schedule_id)
        if data:
            return schedule_from_dict(data)
        return None

    async def require_schedule(self, schedule_id: str) -> ScheduledTransaction:
        schedule = await self.get_schedule(schedule_id)
        if schedule is None:
            raise RecordNotFoundError("schedule", schedule_id)
        return schedule

    async def _find(self, filters: Dict[str, Any],
                    status: Optional[ScheduleStatus] = None) -> List[ScheduledTransaction]:
        if status:
            filters = {**filters, "status": status.value}
        schedules = [schedule_from_dict(data) for data in await self.storage.find(self.table_name, filters)]
        schedules.sort(key=_by_next_execution)
        return schedules

    async def list_for_owner(self, owner_id: str,
                             status: Optional[ScheduleStatus] = None) -> List[ScheduledTransaction]:
        """Owner's schedules ordered by next execution date"""
        return await self._find({"owner_id": owner_id}, status)

    async def list_for_account(self, account_id: str,
                               status: Optional[ScheduleStatus] = None) -> List[ScheduledTransaction]:
        """Schedules debiting an account ordered by next execution date"""
        return await self._find({"account_id": account_id}, status)

    async def find_due(self, as_of: Optional[datetime] = None) -> List[ScheduledTransaction]:
        """Active schedules whose next execution date is at or before ``as_of``"""
        as_of = as_of or datetime.now(timezone.utc)
        active = await self._find({}, ScheduleStatus.ACTIVE)
        return [s for s in active if s.is_due(as_of, self.config.scheduler_apply_retry_backoff)]

    async def find_upcoming(self, owner_id: str, days: int = 7,
                            now: Optional[datetime] = None) -> List[ScheduledTransaction]:
        """Owner's active schedules running within the next ``days`` days"""
        now = now or datetime.now(timezone.utc)
        horizon = now + timedelta(days=days)
        active = await self.list_for_owner(owner_id, ScheduleStatus.ACTIVE)
        return [s for s in active if s.next_execution_date and s.next_execution_date <= horizon]

    async def find_reminders_due(self, as_of: Optional[datetime] = None) -> List[ScheduledTransaction]:
        """
        Active schedules with pre-execution reminders enabled whose reminder
        window has opened and whose reminder for the coming run was not yet sent
        """
        as_of = as_of or datetime.now(timezone.utc)
        due = []
        for schedule in await self._find({}, ScheduleStatus.ACTIVE):
            settings = schedule.notification_settings
            if not settings.before_execution or not schedule.is_approved:
                continue
            next_date = schedule.next_execution_date
            if next_date is None or next_date <= as_of:
                continue
            if schedule.reminder_sent_for == next_date:
                continue
            if next_date - timedelta(days=settings.days_before) <= as_of:
                due.append(schedule)
        return due

    async def mark_reminder_sent(self, schedule_id: str, for_date: datetime) -> None:
        async with self.storage.atomic([(self.table_name, schedule_id)]) as unit:
            schedule = await self.load_in_unit(unit, schedule_id)
            schedule.reminder_sent_for = for_date
            await self.save_in_unit(unit, schedule)

    async def _transition(self, schedule_id: str, action: str, event_type: AuditEventType,
                          user_id: Optional[str], apply, metadata: Optional[Dict[str, Any]] = None
                          ) -> ScheduledTransaction:
        """Load, change and save a schedule under its record lock, then log and audit"""
        async with self.storage.atomic([(self.table_name, schedule_id)]) as unit:
            schedule = await self.load_in_unit(unit, schedule_id)
            previous_status = schedule.status
            extra = apply(schedule)
            schedule.updated_by = user_id or schedule.updated_by
            await self.save_in_unit(unit, schedule)

        metadata = {**(metadata or {}), **(extra or {})}
        metadata.update({"old_status": previous_status.value, "new_status": schedule.status.value})

        log_action(
            self.logger, "info", f"Schedule {schedule_id} {action}",
            user_id=user_id, action=f"{action}_schedule", resource=f"schedule:{schedule_id}",
            extra=metadata
        )

        await self.audit_trail.try_log_event(
            event_type=event_type,
            entity_type="schedule",
            entity_id=schedule_id,
            metadata=metadata,
            user_id=user_id
        )
        return schedule

    async def update_schedule(self, schedule_id: str, update: ScheduleUpdate,
                              updated_by: Optional[str] = None) -> ScheduledTransaction:
        """Apply an allow-listed update to a non-terminal schedule"""
        def apply(schedule: ScheduledTransaction):
            previous = schedule.apply_update(update, updated_by)
            return {
                "original_values": {name: _plain(value) for name, value in previous.items()},
                "new_values": update.model_dump(exclude_unset=True, mode="json")
            }

        return await self._transition(
            schedule_id, "updated", AuditEventType.SCHEDULE_UPDATED, updated_by, apply
        )

    async def pause_schedule(self, schedule_id: str, reason: Optional[str] = None,
                             user_id: Optional[str] = None) -> ScheduledTransaction:
        return await self._transition(
            schedule_id, "paused", AuditEventType.SCHEDULE_PAUSED, user_id,
            lambda schedule: schedule.pause(reason), {"reason": reason}
        )

    async def resume_schedule(self, schedule_id: str,
                              user_id: Optional[str] = None) -> ScheduledTransaction:
        return await self._transition(
            schedule_id, "resumed", AuditEventType.SCHEDULE_RESUMED, user_id,
            lambda schedule: schedule.resume()
        )

    async def cancel_schedule(self, schedule_id: str, reason: Optional[str] = None,
                              user_id: Optional[str] = None) -> ScheduledTransaction:
        """Cancel a schedule; rejected once it is terminal"""
        return await self._transition(
            schedule_id, "cancelled", AuditEventType.SCHEDULE_CANCELLED, user_id,
            lambda schedule: schedule.cancel(reason), {"reason": reason}
        )

    async def approve_schedule(self, schedule_id: str, user_id: str) -> ScheduledTransaction:
        return await self._transition(
            schedule_id, "approved", AuditEventType.SCHEDULE_APPROVED, user_id,
            lambda schedule: schedule.approve(user_id)
        )

    async def get_execution_history(self, schedule_id: str) -> List[ExecutionResult]:
        """Every recorded execution attempt, newest first"""
        schedule = await self.require_schedule(schedule_id)
        return sorted(schedule.execution_history, key=lambda entry: entry.executed_at, reverse=True)

    async def load_in_unit(self, unit: AtomicUnit, schedule_id: str) -> ScheduledTransaction:
        data = await unit.load(self.table_name, schedule_id)
        if data is None:
            raise RecordNotFoundError("schedule", schedule_id)
        return schedule_from_dict(data)

    async def save_in_unit(self, unit: AtomicUnit, schedule: ScheduledTransaction) -> None:
        await unit.save(self.table_name, schedule.id, schedule_to_dict(schedule))
