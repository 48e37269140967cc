"""
Test suite for transfer execution

Tests atomic debit/credit, fee legs, deposits, withdrawals, rejection paths,
concurrency on a shared account, and all-or-nothing persistence.
"""

import pytest
import pytest_asyncio
import asyncio
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from payments_core.accounts import AccountStatus
from payments_core.async_storage import AsyncInMemoryStorage
from payments_core.audit import AuditEventType
from payments_core.config import PaymentsConfig
from payments_core.core import PaymentsCore
from payments_core.currency import Money, Currency
from payments_core.exceptions import (
    AccountInactiveError, CurrencyMismatchError, InsufficientFundsError, LimitExceededError, PersistenceError,
    RecordNotFoundError
)
from payments_core.notifications import NotificationKind, StorageNotifier
from payments_core.transactions import TransactionStatus, TransactionType
from payments_core.transfers import (
    DepositMethod, TransferRequest, TransferSpeed, estimate_arrival
)


pytest_plugins = ('pytest_asyncio',)

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


class FailingCommitStorage(AsyncInMemoryStorage):
    """Accepts reads and plain saves but fails every unit-of-work commit"""

    async def _apply(self, writes):
        raise PersistenceError("ledger store unavailable")


class TestTransferRequest:
    """Test TransferRequest validation"""

    def test_internal_transfer_requires_destination(self):
        with pytest.raises(ValidationError, match="require to_account_id"):
            TransferRequest(from_account_id="A", amount=Decimal("10"))

    def test_same_account_rejected(self):
        with pytest.raises(ValidationError, match="same account"):
            TransferRequest(from_account_id="A", to_account_id="A", amount=Decimal("10"))

    def test_amount_must_be_positive(self):
        with pytest.raises(ValidationError):
            TransferRequest(from_account_id="A", to_account_id="B", amount=Decimal("0"))

    def test_payment_cannot_credit_internal_account(self):
        with pytest.raises(ValidationError, match="does not credit"):
            TransferRequest(from_account_id="A", to_account_id="B", amount=Decimal("10"),
                            transaction_type=TransactionType.PAYMENT)

    def test_deposit_is_not_a_transfer(self):
        with pytest.raises(ValidationError, match="cannot be executed"):
            TransferRequest(from_account_id="A", amount=Decimal("10"),
                            transaction_type=TransactionType.DEPOSIT)


class TestFees:

    @pytest.fixture
    def core(self):
        return PaymentsCore(PaymentsConfig(), storage=AsyncInMemoryStorage(), notifiers=[])

    def test_internal_transfers_are_free(self, core):
        assert core.executor.calculate_transfer_fee("internal") == Decimal("0")

    def test_external_fee_by_speed(self, core):
        assert core.executor.calculate_transfer_fee("external") == Decimal("2.50")
        assert core.executor.calculate_transfer_fee("external", TransferSpeed.EXPRESS) == Decimal("5.00")
        assert core.executor.calculate_transfer_fee("external", TransferSpeed.INSTANT) == Decimal("10.00")

    def test_estimate_arrival(self):
        assert estimate_arrival(TransferSpeed.INSTANT, NOW) == NOW + timedelta(minutes=5)
        assert estimate_arrival(TransferSpeed.STANDARD, NOW) == NOW + timedelta(hours=24)


class TestTransferExecutor:
    """Test TransferExecutor money movement"""

    @pytest_asyncio.fixture
    async def storage(self):
        return AsyncInMemoryStorage()

    @pytest_asyncio.fixture
    async def notifications(self, storage):
        return StorageNotifier(storage)

    @pytest_asyncio.fixture
    async def core(self, storage, notifications):
        return PaymentsCore(PaymentsConfig(), storage=storage, notifiers=[notifications])

    @pytest_asyncio.fixture
    async def alice(self, core):
        return await core.accounts.create_account(
            "ALICE", opening_balance=Decimal("1000.00"), daily_transaction_limit=Decimal("5000")
        )

    @pytest_asyncio.fixture
    async def bob(self, core):
        return await core.accounts.create_account("BOB", opening_balance=Decimal("200.00"))

    def _request(self, source, destination, amount, **overrides):
        fields = dict(
            from_account_id=source.id,
            to_account_id=destination.id if destination else None,
            amount=Decimal(amount),
            description="Rent share",
            owner_id=source.owner_id
        )
        fields.update(overrides)
        return TransferRequest(**fields)

    @pytest.mark.asyncio
    async def test_successful_transfer(self, core, alice, bob, notifications):
        result = await core.executor.execute_transfer(self._request(alice, bob, "300.00"), now=NOW)

        assert result.from_balance == usd("700.00")
        assert result.to_balance == usd("500.00")
        assert result.transaction.status == TransactionStatus.COMPLETED
        assert result.transaction.balance_after == usd("700.00")
        assert result.transaction.processed_at == NOW

        assert (await core.accounts.require_account(alice.id)).balance == usd("700.00")
        assert (await core.accounts.require_account(bob.id)).balance == usd("500.00")
        stored = await core.recorder.require_transaction(result.transaction.id)
        assert stored.status == TransactionStatus.COMPLETED

        sender = await notifications.get_notifications("ALICE", NotificationKind.TRANSFER_COMPLETED)
        recipient = await notifications.get_notifications("BOB", NotificationKind.TRANSFER_COMPLETED)
        assert sender[0]["payload"]["role"] == "sender"
        assert recipient[0]["payload"]["balance"] == "500.00"

        events = await core.audit_trail.get_events_for_entity("transaction", result.transaction.id)
        assert events[-1].event_type == AuditEventType.TRANSACTION_COMPLETED

    @pytest.mark.asyncio
    async def test_transfer_of_entire_balance(self, core, alice, bob):
        result = await core.executor.execute_transfer(self._request(alice, bob, "1000.00"), now=NOW)
        assert result.from_balance == usd("0.00")

    @pytest.mark.asyncio
    async def test_insufficient_funds_changes_nothing(self, core, alice, bob, notifications):
        with pytest.raises(InsufficientFundsError):
            await core.executor.execute_transfer(self._request(bob, alice, "200.01"), now=NOW)

        assert (await core.accounts.require_account(bob.id)).balance == usd("200.00")
        assert (await core.accounts.require_account(alice.id)).balance == usd("1000.00")
        assert await core.recorder.get_account_transactions(bob.id) == []
        failed = await notifications.get_notifications("BOB", NotificationKind.TRANSFER_FAILED)
        assert len(failed) == 1

    @pytest.mark.asyncio
    async def test_below_minimum_rejected(self, core, alice, bob):
        with pytest.raises(ValueError, match="at least"):
            await core.executor.execute_transfer(self._request(alice, bob, "0.001"), now=NOW)

    @pytest.mark.asyncio
    async def test_inactive_destination_rejected(self, core, alice, bob):
        await core.accounts.set_status(bob.id, AccountStatus.FROZEN, "review")

        with pytest.raises(AccountInactiveError):
            await core.executor.execute_transfer(self._request(alice, bob, "10.00"), now=NOW)
        assert (await core.accounts.require_account(alice.id)).balance == usd("1000.00")

    @pytest.mark.asyncio
    async def test_missing_destination_rejected(self, core, alice):
        request = TransferRequest(from_account_id=alice.id, to_account_id="missing", amount=Decimal("5"))
        with pytest.raises(RecordNotFoundError):
            await core.executor.execute_transfer(request, now=NOW)

    @pytest.mark.asyncio
    async def test_limit_checked_at_execution(self, core, alice, bob):
        await core.executor.execute_transfer(self._request(alice, bob, "300.00"), now=NOW)

        big = await core.accounts.create_account(
            "CAROL", opening_balance=Decimal("10000"), daily_transaction_limit=Decimal("500")
        )
        await core.executor.execute_transfer(self._request(big, bob, "400.00"), now=NOW)
        with pytest.raises(LimitExceededError) as exc_info:
            await core.executor.execute_transfer(self._request(big, bob, "100.01"), now=NOW)
        assert exc_info.value.limit_type == "daily"

        # Next day the window has reset
        await core.executor.execute_transfer(self._request(big, bob, "100.01"), now=NOW + timedelta(days=1))

    @pytest.mark.asyncio
    async def test_external_transfer_with_fee(self, core, alice):
        fee = core.executor.calculate_transfer_fee("external")
        request = self._request(alice, None, "100.00", transaction_type=TransactionType.EXTERNAL_TRANSFER,
                                category="external", fee=fee)

        result = await core.executor.execute_transfer(request, now=NOW)

        assert result.from_balance == usd("897.50")
        assert result.to_balance is None
        assert result.transaction.fee_amount == usd("2.50")
        assert result.transaction.balance_after == usd("900.00")

        fee_txn = result.fee_transaction
        assert fee_txn.transaction_type == TransactionType.FEE
        assert fee_txn.amount == usd("2.50")
        assert fee_txn.balance_after == usd("897.50")
        assert fee_txn.related_transaction_id == result.transaction.id
        assert result.transaction.related_transaction_id == fee_txn.id
        assert (await core.recorder.require_transaction(fee_txn.id)).status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_fee_counts_toward_available_funds(self, core, bob):
        request = self._request(bob, None, "199.00", transaction_type=TransactionType.EXTERNAL_TRANSFER,
                                category="external", fee=Decimal("2.50"))

        with pytest.raises(InsufficientFundsError):
            await core.executor.execute_transfer(request, now=NOW)

    @pytest.mark.asyncio
    async def test_fee_counts_toward_daily_limit(self, core, alice):
        await core.executor.execute_deposit(alice.id, Decimal("5000"), now=NOW)
        over = self._request(alice, None, "4999.00", transaction_type=TransactionType.EXTERNAL_TRANSFER,
                             category="external", fee=Decimal("2.50"))

        with pytest.raises(LimitExceededError) as exc_info:
            await core.executor.execute_transfer(over, now=NOW)

        assert exc_info.value.limit_type == "daily"
        assert (await core.accounts.require_account(alice.id)).balance == usd("6000.00")

        at_limit = self._request(alice, None, "4997.50", transaction_type=TransactionType.EXTERNAL_TRANSFER,
                                 category="external", fee=Decimal("2.50"))
        result = await core.executor.execute_transfer(at_limit, now=NOW)

        assert result.from_balance == usd("1000.00")
        debits = await core.recorder.find_debits_since(alice.id, NOW - timedelta(hours=1), NOW)
        assert sum((t.amount for t in debits), usd("0")) == usd("5000.00")

    @pytest.mark.asyncio
    async def test_currency_mismatch_rejected(self, core, alice, notifications):
        euro = await core.accounts.create_account("ERIN", currency=Currency.EUR)

        with pytest.raises(CurrencyMismatchError):
            await core.executor.execute_transfer(self._request(alice, euro, "10.00"), now=NOW)

        assert (await core.accounts.require_account(alice.id)).balance == usd("1000.00")
        assert (await core.accounts.require_account(euro.id)).balance.is_zero()
        failed = await notifications.get_notifications("ALICE", NotificationKind.TRANSFER_FAILED)
        assert len(failed) == 1

    @pytest.mark.asyncio
    async def test_joined_unit_commits_with_caller(self, core, storage, alice, bob, notifications):
        with pytest.raises(RuntimeError):
            async with storage.atomic([("scheduled_transactions", "S1")]) as unit:
                result = await core.executor.execute_transfer(
                    self._request(alice, bob, "100.00"), now=NOW, unit=unit
                )
                assert result.from_balance == usd("900.00")
                raise RuntimeError("caller failed after the transfer")

        assert (await core.accounts.require_account(alice.id)).balance == usd("1000.00")
        assert (await core.accounts.require_account(bob.id)).balance == usd("200.00")
        assert await core.recorder.get_account_transactions(alice.id) == []
        assert await notifications.get_notifications("ALICE", NotificationKind.TRANSFER_COMPLETED) == []

    @pytest.mark.asyncio
    async def test_joined_unit_reports_after_commit(self, core, storage, alice, bob, notifications):
        async with storage.atomic([("scheduled_transactions", "S1")]) as unit:
            result = await core.executor.execute_transfer(
                self._request(alice, bob, "100.00"), now=NOW, unit=unit
            )
        await core.executor.report_success(result)

        assert (await core.accounts.require_account(bob.id)).balance == usd("300.00")
        completed = await notifications.get_notifications("ALICE", NotificationKind.TRANSFER_COMPLETED)
        assert completed[0]["payload"]["transaction_id"] == result.transaction.transaction_id

    @pytest.mark.asyncio
    async def test_withdrawal(self, core, alice):
        result = await core.executor.execute_withdrawal(alice.id, Decimal("50"), now=NOW)

        assert result.transaction.transaction_type == TransactionType.WITHDRAWAL
        assert result.transaction.to_account_id is None
        assert result.from_balance == usd("950.00")

    @pytest.mark.asyncio
    async def test_cash_deposit_credits_immediately(self, core, bob):
        result = await core.executor.execute_deposit(bob.id, Decimal("75.25"), now=NOW)

        assert result.transaction.status == TransactionStatus.COMPLETED
        assert result.to_balance == usd("275.25")
        assert (await core.accounts.require_account(bob.id)).balance == usd("275.25")

    @pytest.mark.asyncio
    async def test_check_deposit_is_held_pending(self, core, bob):
        result = await core.executor.execute_deposit(bob.id, Decimal("75"), method=DepositMethod.CHECK, now=NOW)

        assert result.transaction.status == TransactionStatus.PENDING
        assert result.transaction.metadata["method"] == "check"
        assert (await core.accounts.require_account(bob.id)).balance == usd("200.00")

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_overdraw(self, core, bob):
        target = await core.accounts.create_account("DAVE")
        requests = [self._request(bob, target, "30.00") for _ in range(10)]

        results = await asyncio.gather(
            *(core.executor.execute_transfer(request, now=NOW) for request in requests),
            return_exceptions=True
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, InsufficientFundsError)]
        assert len(succeeded) == 6
        assert len(failed) == 4
        assert (await core.accounts.require_account(bob.id)).balance == usd("20.00")
        assert (await core.accounts.require_account(target.id)).balance == usd("180.00")

    @pytest.mark.asyncio
    async def test_opposite_transfers_do_not_deadlock(self, core, alice, bob):
        transfers = []
        for i in range(10):
            source, destination = (alice, bob) if i % 2 else (bob, alice)
            transfers.append(core.executor.execute_transfer(self._request(source, destination, "10.00"), now=NOW))

        await asyncio.wait_for(asyncio.gather(*transfers), timeout=5)

        total = (await core.accounts.require_account(alice.id)).balance + \
            (await core.accounts.require_account(bob.id)).balance
        assert total == usd("1200.00")


class TestTransferAtomicity:
    """A failed commit leaves balances and transaction records untouched"""

    @pytest.mark.asyncio
    async def test_commit_failure_leaves_no_trace(self):
        storage = FailingCommitStorage()
        core = PaymentsCore(PaymentsConfig(), storage=storage, notifiers=[StorageNotifier(storage)])
        alice = await core.accounts.create_account("ALICE", opening_balance=Decimal("100"))
        bob = await core.accounts.create_account("BOB", opening_balance=Decimal("0"))

        with pytest.raises(PersistenceError) as exc_info:
            await core.executor.execute_transfer(
                TransferRequest(from_account_id=alice.id, to_account_id=bob.id,
                                amount=Decimal("40"), owner_id="ALICE"),
                now=NOW
            )

        assert exc_info.value.retryable
        assert (await core.accounts.require_account(alice.id)).balance == usd("100.00")
        assert (await core.accounts.require_account(bob.id)).balance == usd("0.00")
        assert await core.recorder.get_account_transactions(alice.id) == []
