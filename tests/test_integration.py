"""
Integration tests for the money-movement core

End-to-end flows across accounts, transfers, limits, verification,
scheduling, notifications and the audit trail over one storage backend.
"""

import pytest
import pytest_asyncio
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from payments_core.async_storage import AsyncInMemoryStorage
from payments_core.config import PaymentsConfig
from payments_core.core import PaymentsCore
from payments_core.currency import Money, Currency
from payments_core.exceptions import InsufficientFundsError, LimitExceededError
from payments_core.notifications import NotificationKind, StorageNotifier, LogNotifier
from payments_core.scheduling import Frequency, ScheduleCreate
from payments_core.transactions import TransactionStatus
from payments_core.transfers import TransferRequest


pytest_plugins = ('pytest_asyncio',)

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


class TestEndToEnd:
    """Full flows through PaymentsCore"""

    @pytest_asyncio.fixture
    async def storage(self):
        return AsyncInMemoryStorage()

    @pytest_asyncio.fixture
    async def notifications(self, storage):
        return StorageNotifier(storage)

    @pytest_asyncio.fixture
    async def core(self, storage, notifications):
        core = PaymentsCore(
            PaymentsConfig(), storage=storage, notifiers=[notifications, LogNotifier()],
            code_generator=lambda length: "424242"
        )
        await core.start()
        yield core
        await core.close()

    @pytest.mark.asyncio
    async def test_transfer_then_daily_limit(self, core):
        a = await core.accounts.create_account("OWNER_A", opening_balance=Decimal("1000"),
                                               daily_transaction_limit=Decimal("5000"))
        b = await core.accounts.create_account("OWNER_B", opening_balance=Decimal("200"))

        result = await core.executor.execute_transfer(
            TransferRequest(from_account_id=a.id, to_account_id=b.id, amount=Decimal("300")), now=NOW
        )

        assert (await core.accounts.require_account(a.id)).balance == usd("700.00")
        assert (await core.accounts.require_account(b.id)).balance == usd("500.00")
        history = await core.recorder.get_account_transactions(a.id)
        assert len(history) == 1
        assert history[0].status == TransactionStatus.COMPLETED
        assert history[0].balance_after == usd("700.00")
        assert result.transaction.id == history[0].id

        with pytest.raises(LimitExceededError) as exc_info:
            await core.executor.execute_transfer(
                TransferRequest(from_account_id=a.id, to_account_id=b.id, amount=Decimal("4800")), now=NOW
            )

        assert exc_info.value.limit_type == "daily"
        assert (await core.accounts.require_account(a.id)).balance == usd("700.00")
        assert (await core.accounts.require_account(b.id)).balance == usd("500.00")
        assert len(await core.recorder.get_account_transactions(a.id)) == 1

    @pytest.mark.asyncio
    async def test_verified_transfer_flow(self, core, notifications):
        a = await core.accounts.create_account("OWNER_A", opening_balance=Decimal("1000"))
        b = await core.accounts.create_account("OWNER_B")

        pending = await core.verification.initiate(
            TransferRequest(from_account_id=a.id, to_account_id=b.id, amount=Decimal("125.50")), now=NOW
        )
        await core.verification.confirm(pending.id, now=NOW)
        issued = await notifications.get_notifications("OWNER_A", NotificationKind.VERIFICATION_CODE_ISSUED)
        code = issued[-1]["payload"]["code"]

        result = await core.verification.verify(pending.id, code, now=NOW + timedelta(minutes=1))

        assert result.transaction.status == TransactionStatus.COMPLETED
        assert (await core.accounts.require_account(b.id)).balance == usd("125.50")
        received = await notifications.get_notifications("OWNER_B", NotificationKind.TRANSFER_COMPLETED)
        assert received[0]["payload"]["role"] == "recipient"

    @pytest.mark.asyncio
    async def test_scheduled_rent_over_three_months(self, core):
        tenant = await core.accounts.create_account("TENANT", opening_balance=Decimal("5000"))
        landlord = await core.accounts.create_account("LANDLORD")

        schedule = await core.schedules.create_schedule(ScheduleCreate(
            owner_id="TENANT",
            account_id=tenant.id,
            amount=Decimal("1200"),
            recipient={"recipient_type": "internal", "account_id": landlord.id},
            frequency=Frequency.MONTHLY,
            start_date=datetime(2024, 1, 31, 8, tzinfo=timezone.utc),
            max_executions=3,
            description="Rent"
        ), now=datetime(2024, 1, 1, tzinfo=timezone.utc))

        for run in (datetime(2024, 1, 31, 8), datetime(2024, 2, 29, 8), datetime(2024, 3, 29, 8)):
            report = await core.scheduler.run_due(run.replace(tzinfo=timezone.utc))
            assert report.succeeded == [schedule.id]

        stored = await core.schedules.require_schedule(schedule.id)
        assert stored.is_terminal
        assert stored.execution_count == 3
        assert (await core.accounts.require_account(landlord.id)).balance == usd("3600.00")
        assert (await core.accounts.require_account(tenant.id)).balance == usd("1400.00")

    @pytest.mark.asyncio
    async def test_audit_chain_intact_after_activity(self, core):
        a = await core.accounts.create_account("OWNER_A", opening_balance=Decimal("100"))
        b = await core.accounts.create_account("OWNER_B")
        await core.executor.execute_transfer(
            TransferRequest(from_account_id=a.id, to_account_id=b.id, amount=Decimal("40")), now=NOW
        )
        with pytest.raises(InsufficientFundsError):
            await core.executor.execute_transfer(
                TransferRequest(from_account_id=a.id, to_account_id=b.id, amount=Decimal("400")), now=NOW
            )

        result = await core.audit_trail.verify_integrity()

        assert result["valid"] is True
        assert result["total_events"] == 4
