"""
Recurring Transaction Runner

Sweeps due schedules and executes them through the limit checker and transfer
executor. Each schedule runs as its own task under its own record lock, so one
failing schedule never holds up or aborts the others in a sweep.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from .async_storage import AsyncStorageInterface
from .audit import AuditTrail, AuditEventType
from .config import PaymentsConfig
from .exceptions import PaymentsError, PersistenceError
from .logging_config import get_logger, log_action
from .notifications import NotificationDispatcher, NotificationKind
from .scheduling import ScheduleManager, ScheduledTransaction, ScheduleStatus, SCHEDULES_TABLE
from .transactions import TransactionType
from .transfers import TransferExecutor, TransferRequest

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"
ERRORED = "errored"


@dataclass
class SweepReport:
    """Outcome counts of one sweep"""
    started_at: datetime
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errored: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.skipped) + len(self.errored)


class ScheduleRunner:
    """
    Drives due scheduled transactions
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        manager: ScheduleManager,
        executor: TransferExecutor,
        notifier: NotificationDispatcher,
        audit_trail: AuditTrail,
        config: PaymentsConfig
    ):
        self.storage = storage
        self.manager = manager
        self.executor = executor
        self.notifier = notifier
        self.audit_trail = audit_trail
        self.config = config
        self.logger = get_logger("payments.scheduler")

    def _build_request(self, schedule: ScheduledTransaction) -> TransferRequest:
        fee = self.executor.calculate_transfer_fee(
            "external" if schedule.transaction_type == TransactionType.EXTERNAL_TRANSFER else "internal"
        )
        return TransferRequest(
            from_account_id=schedule.account_id,
            to_account_id=(schedule.recipient.account_id
                           if schedule.transaction_type == TransactionType.TRANSFER else None),
            amount=schedule.amount.amount,
            description=schedule.description or f"Scheduled {schedule.transaction_type.value}",
            category=schedule.category,
            transaction_type=schedule.transaction_type,
            owner_id=schedule.owner_id,
            fee=fee,
            metadata={
                "scheduled_transaction_id": schedule.id,
                "recipient": schedule.recipient.to_dict(),
                "reference": schedule.reference
            }
        )

    async def execute_schedule(self, schedule_id: str, as_of: Optional[datetime] = None) -> str:
        """
        Execute one schedule if it is still due

        The transfer joins the schedule's unit: the debit, the credit and the
        saved execution result commit together or not at all.

        Returns:
            "succeeded", "failed" or "skipped"

        Raises:
            PersistenceError: the store failed; nothing was written and the
                schedule stays due
        """
        as_of = as_of or datetime.now(timezone.utc)
        apply_backoff = self.config.scheduler_apply_retry_backoff

        async with self.storage.atomic([(SCHEDULES_TABLE, schedule_id)]) as unit:
            schedule = await self.manager.load_in_unit(unit, schedule_id)
            if not schedule.is_due(as_of, apply_backoff):
                return SKIPPED

            result = None
            error = None
            transaction_id = None
            try:
                result = await self.executor.execute_transfer(
                    self._build_request(schedule), now=as_of, unit=unit
                )
                transaction_id = result.transaction.transaction_id
            except PersistenceError:
                raise
            except (PaymentsError, ValueError) as e:
                error = str(e)

            execution = schedule.record_execution(
                success=error is None,
                transaction_id=transaction_id,
                error=error,
                now=as_of,
                apply_backoff=apply_backoff
            )
            await self.manager.save_in_unit(unit, schedule)

        if result is not None:
            await self.executor.report_success(result)
        await self._report_execution(schedule, execution.success, transaction_id, error)
        return SUCCEEDED if execution.success else FAILED

    async def _report_execution(self, schedule: ScheduledTransaction, success: bool,
                                transaction_id: Optional[str], error: Optional[str]) -> None:
        log_action(
            self.logger, "info" if success else "warning",
            f"Scheduled transaction {schedule.id} {'executed' if success else 'failed'}",
            user_id=schedule.owner_id, action="execute_schedule", resource=f"schedule:{schedule.id}",
            extra={
                "transaction_id": transaction_id,
                "error": error,
                "status": schedule.status.value,
                "execution_count": schedule.execution_count,
                "failure_count": schedule.failure_count
            }
        )

        await self.audit_trail.try_log_event(
            event_type=(AuditEventType.SCHEDULE_EXECUTED if success
                        else AuditEventType.SCHEDULE_EXECUTION_FAILED),
            entity_type="schedule",
            entity_id=schedule.id,
            metadata={
                "transaction_id": transaction_id,
                "error": error,
                "status": schedule.status.value,
                "next_execution_date": schedule.next_execution_date
            }
        )

        payload = {
            "schedule_id": schedule.id,
            "amount": str(schedule.amount.amount),
            "currency": schedule.currency.code,
            "status": schedule.status.value,
            "execution_count": schedule.execution_count,
            "next_execution_date": (schedule.next_execution_date.isoformat()
                                    if schedule.next_execution_date else None)
        }
        settings = schedule.notification_settings
        if success and settings.after_execution:
            await self.notifier.emit(schedule.owner_id, NotificationKind.SCHEDULE_EXECUTION_SUCCEEDED,
                                     {**payload, "transaction_id": transaction_id})
        elif not success and settings.on_failure:
            await self.notifier.emit(schedule.owner_id, NotificationKind.SCHEDULE_EXECUTION_FAILED, {
                **payload,
                "error": error,
                "failure_count": schedule.failure_count,
                "retry_after": schedule.retry_after.isoformat() if schedule.retry_after else None,
                "terminal": schedule.status == ScheduleStatus.FAILED
            })

    async def run_due(self, as_of: Optional[datetime] = None) -> SweepReport:
        """
        Execute every schedule due at ``as_of`` concurrently

        Concurrency is bounded by ``scheduler_max_concurrency``. An unexpected
        error in one schedule is logged and counted; the sweep continues.
        """
        as_of = as_of or datetime.now(timezone.utc)
        report = SweepReport(started_at=as_of)
        due = await self.manager.find_due(as_of)
        semaphore = asyncio.Semaphore(self.config.scheduler_max_concurrency)

        async def run_one(schedule_id: str) -> str:
            async with semaphore:
                try:
                    return await self.execute_schedule(schedule_id, as_of)
                except Exception:
                    log_action(
                        self.logger, "error", f"Scheduled transaction {schedule_id} errored",
                        action="execute_schedule", resource=f"schedule:{schedule_id}", exc_info=True
                    )
                    return ERRORED

        outcomes = await asyncio.gather(*(run_one(schedule.id) for schedule in due))
        for schedule, outcome in zip(due, outcomes):
            getattr(report, outcome).append(schedule.id)

        if due:
            log_action(
                self.logger, "info", f"Sweep processed {report.total} due schedules",
                action="run_due",
                extra={
                    "succeeded": len(report.succeeded),
                    "failed": len(report.failed),
                    "skipped": len(report.skipped),
                    "errored": len(report.errored)
                }
            )
        return report

    async def send_reminders(self, as_of: Optional[datetime] = None) -> int:
        """Emit upcoming-execution reminders; returns how many were sent"""
        as_of = as_of or datetime.now(timezone.utc)
        sent = 0
        for schedule in await self.manager.find_reminders_due(as_of):
            await self.notifier.emit(schedule.owner_id, NotificationKind.SCHEDULE_EXECUTION_UPCOMING, {
                "schedule_id": schedule.id,
                "amount": str(schedule.amount.amount),
                "currency": schedule.currency.code,
                "next_execution_date": schedule.next_execution_date.isoformat(),
                "days_until_execution": schedule.days_until_execution(as_of)
            })
            await self.manager.mark_reminder_sent(schedule.id, schedule.next_execution_date)
            sent += 1
        return sent

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Poll for due schedules until ``stop_event`` is set"""
        interval = self.config.scheduler_poll_interval_seconds
        self.logger.info(f"Scheduler started, polling every {interval}s")

        while not stop_event.is_set():
            try:
                await self.run_due()
                await self.send_reminders()
            except PaymentsError:
                # Store unavailable for the whole sweep; try again next poll
                self.logger.exception("Scheduler sweep failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        self.logger.info("Scheduler stopped")
