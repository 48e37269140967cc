"""
Tests for Async Storage Interface

Tests the async storage implementations including AsyncInMemoryStorage
and AsyncPostgreSQLStorage for CRUD operations and atomic units of work.
"""

import os
import pytest
import pytest_asyncio
import asyncio
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from payments_core.async_storage import (
    AsyncInMemoryStorage,
    AsyncPostgreSQLStorage,
    create_async_storage
)
from payments_core.config import PaymentsConfig
from payments_core.core import PaymentsCore
from payments_core.exceptions import PersistenceError
from payments_core.scheduling import Frequency, ScheduleCreate


# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


class TestAsyncInMemoryStorage:
    """Test AsyncInMemoryStorage functionality"""

    @pytest_asyncio.fixture
    async def storage(self):
        """Create async in-memory storage instance"""
        return AsyncInMemoryStorage()

    @pytest.mark.asyncio
    async def test_basic_crud_operations(self, storage):
        """Test basic CRUD operations"""
        table = "test_table"
        record_id = "test_record"
        data = {
            "id": record_id,
            "name": "Test Record",
            "amount": "123.45",
            "created_at": "2024-01-01T00:00:00Z"
        }

        await storage.save(table, record_id, data)
        assert await storage.load(table, record_id) == data
        assert await storage.exists(table, record_id) is True
        assert await storage.count(table) == 1

        assert await storage.delete(table, record_id) is True
        assert await storage.load(table, record_id) is None
        assert await storage.exists(table, record_id) is False

    @pytest.mark.asyncio
    async def test_find_operations(self, storage):
        """Test find with equality filters"""
        table = "customers"
        for record_id, status in [("c1", "active"), ("c2", "inactive"), ("c3", "active")]:
            await storage.save(table, record_id, {"id": record_id, "status": status})

        active = await storage.find(table, {"status": "active"})
        assert sorted(r["id"] for r in active) == ["c1", "c3"]
        assert len(await storage.load_all(table)) == 3

        await storage.clear_table(table)
        assert await storage.count(table) == 0


class TestAtomicUnits:
    """Test all-or-nothing units of work and record locking"""

    @pytest_asyncio.fixture
    async def storage(self):
        return AsyncInMemoryStorage()

    @pytest.mark.asyncio
    async def test_unit_commits_on_normal_exit(self, storage):
        async with storage.atomic([("accounts", "a"), ("accounts", "b")]) as unit:
            await unit.save("accounts", "a", {"id": "a", "balance": "90"})
            await unit.save("accounts", "b", {"id": "b", "balance": "110"})

            # Writes are staged, visible inside the unit only
            assert (await unit.load("accounts", "a"))["balance"] == "90"
            assert await storage.load("accounts", "a") is None

        assert (await storage.load("accounts", "a"))["balance"] == "90"
        assert (await storage.load("accounts", "b"))["balance"] == "110"

    @pytest.mark.asyncio
    async def test_unit_discards_writes_on_exception(self, storage):
        await storage.save("accounts", "a", {"id": "a", "balance": "100"})

        with pytest.raises(RuntimeError):
            async with storage.atomic([("accounts", "a")]) as unit:
                await unit.save("accounts", "a", {"id": "a", "balance": "0"})
                await unit.save("transactions", "t1", {"id": "t1"})
                raise RuntimeError("boom")

        assert (await storage.load("accounts", "a"))["balance"] == "100"
        assert await storage.exists("transactions", "t1") is False

    @pytest.mark.asyncio
    async def test_unit_reads_do_not_leak_mutation(self, storage):
        await storage.save("accounts", "a", {"id": "a", "tags": ["x"]})

        async with storage.atomic([("accounts", "a")]) as unit:
            record = await unit.load("accounts", "a")
            record["tags"].append("y")
            await unit.save("accounts", "a", record)
            record["tags"].append("z")

        assert (await storage.load("accounts", "a"))["tags"] == ["x", "y"]

    @pytest.mark.asyncio
    async def test_units_on_same_record_serialize(self, storage):
        await storage.save("counters", "c", {"id": "c", "value": 0})

        async def increment():
            async with storage.atomic([("counters", "c")]) as unit:
                record = await unit.load("counters", "c")
                await asyncio.sleep(0)
                record["value"] += 1
                await unit.save("counters", "c", record)

        await asyncio.gather(*(increment() for _ in range(20)))

        assert (await storage.load("counters", "c"))["value"] == 20

    @pytest.mark.asyncio
    async def test_opposite_lock_order_does_not_deadlock(self, storage):
        await storage.save("accounts", "a", {"id": "a", "n": 0})
        await storage.save("accounts", "b", {"id": "b", "n": 0})

        async def touch(first, second):
            async with storage.atomic([("accounts", first), ("accounts", second)]) as unit:
                for key in (first, second):
                    record = await unit.load("accounts", key)
                    await asyncio.sleep(0)
                    record["n"] += 1
                    await unit.save("accounts", key, record)

        await asyncio.wait_for(
            asyncio.gather(*(touch("a", "b") if i % 2 else touch("b", "a") for i in range(10))),
            timeout=5
        )

        assert (await storage.load("accounts", "a"))["n"] == 10
        assert (await storage.load("accounts", "b"))["n"] == 10

    @pytest.mark.asyncio
    async def test_unit_find_sees_staged_writes(self, storage):
        await storage.save("transactions", "t1", {"id": "t1", "from_account_id": "a"})
        await storage.save("transactions", "t2", {"id": "t2", "from_account_id": "a"})

        async with storage.atomic([("accounts", "a")]) as unit:
            await unit.save("transactions", "t3", {"id": "t3", "from_account_id": "a"})
            await unit.save("transactions", "t2", {"id": "t2", "from_account_id": "b"})

            found = await unit.find("transactions", {"from_account_id": "a"})
            assert sorted(record["id"] for record in found) == ["t1", "t3"]

        assert len(await storage.find("transactions", {"from_account_id": "a"})) == 2

    @pytest.mark.asyncio
    async def test_extended_unit_holds_added_locks(self, storage):
        await storage.save("accounts", "a", {"id": "a", "n": 0})
        order = []

        async def outer():
            async with storage.atomic([("schedules", "s1")]) as unit:
                await unit.lock([("accounts", "a"), ("schedules", "s1")])
                order.append("outer locked")
                await asyncio.sleep(0.05)
                record = await unit.load("accounts", "a")
                record["n"] += 1
                await unit.save("accounts", "a", record)
                order.append("outer done")

        async def inner():
            await asyncio.sleep(0.01)
            async with storage.atomic([("accounts", "a")]) as unit:
                order.append("inner locked")
                record = await unit.load("accounts", "a")
                record["n"] += 1
                await unit.save("accounts", "a", record)

        await asyncio.wait_for(asyncio.gather(outer(), inner()), timeout=5)

        assert order == ["outer locked", "outer done", "inner locked"]
        assert (await storage.load("accounts", "a"))["n"] == 2


class TestAsyncPostgreSQLStorage:
    """Test AsyncPostgreSQLStorage functionality (if available)"""

    @pytest_asyncio.fixture
    async def postgresql_storage(self):
        """Create async PostgreSQL storage instance (skip if not available)"""
        url = os.environ.get("PAYMENTS_TEST_DATABASE_URL", "postgresql://localhost/test_payments")
        storage = AsyncPostgreSQLStorage(url, pool_size=4)
        try:
            await storage.initialize()
        except PersistenceError:
            pytest.skip("PostgreSQL not available for testing")
        yield storage
        await storage.close()

    @pytest.mark.asyncio
    async def test_postgresql_crud_operations(self, postgresql_storage):
        """Test basic CRUD operations with PostgreSQL"""
        table = "test_records"
        await postgresql_storage.clear_table(table)

        data = {"id": "pg_1", "name": "PostgreSQL Test Record", "amount": "99.99"}
        await postgresql_storage.save(table, "pg_1", data)

        assert await postgresql_storage.load(table, "pg_1") == data
        assert await postgresql_storage.exists(table, "pg_1") is True
        assert await postgresql_storage.count(table) == 1
        assert await postgresql_storage.find(table, {"name": "PostgreSQL Test Record"}) == [data]

        assert await postgresql_storage.delete(table, "pg_1") is True
        assert await postgresql_storage.load(table, "pg_1") is None

    @pytest.mark.asyncio
    async def test_postgresql_unit_rolls_back(self, postgresql_storage):
        table = "test_units"
        await postgresql_storage.clear_table(table)
        await postgresql_storage.save(table, "a", {"id": "a", "balance": "100"})

        with pytest.raises(RuntimeError):
            async with postgresql_storage.atomic([(table, "a")]) as unit:
                await unit.save(table, "a", {"id": "a", "balance": "0"})
                raise RuntimeError("boom")

        assert (await postgresql_storage.load(table, "a"))["balance"] == "100"

    @pytest.mark.asyncio
    async def test_postgresql_unit_find_and_lock_use_unit_connection(self, postgresql_storage):
        table = "test_unit_reads"
        await postgresql_storage.clear_table(table)
        await postgresql_storage.save(table, "a", {"id": "a", "owner": "x"})

        async with postgresql_storage.atomic([(table, "a")]) as unit:
            await unit.lock([(table, "b"), (table, "a")])
            await unit.save(table, "b", {"id": "b", "owner": "x"})
            found = await unit.find(table, {"owner": "x"})
            assert sorted(record["id"] for record in found) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_postgresql_sweep_fits_small_pool(self):
        url = os.environ.get("PAYMENTS_TEST_DATABASE_URL", "postgresql://localhost/test_payments")
        storage = AsyncPostgreSQLStorage(url, pool_size=2)
        try:
            await storage.initialize()
        except PersistenceError:
            pytest.skip("PostgreSQL not available for testing")

        try:
            for table in ("accounts", "transactions", "scheduled_transactions"):
                await storage.clear_table(table)

            config = PaymentsConfig(scheduler_max_concurrency=6)
            core = PaymentsCore(config, storage=storage, notifiers=[])
            now = datetime(2024, 3, 1, 9, tzinfo=timezone.utc)
            payee = await core.accounts.create_account("PAYEE")
            for i in range(6):
                payer = await core.accounts.create_account(f"PAYER_{i}", opening_balance=Decimal("500"))
                await core.schedules.create_schedule(ScheduleCreate(
                    owner_id=payer.owner_id,
                    account_id=payer.id,
                    amount=Decimal("50"),
                    recipient={"recipient_type": "internal", "account_id": payee.id},
                    frequency=Frequency.MONTHLY,
                    start_date=now + timedelta(hours=1)
                ), now=now)

            report = await asyncio.wait_for(core.scheduler.run_due(now + timedelta(hours=1)), timeout=30)

            assert len(report.succeeded) == 6
            assert (await core.accounts.require_account(payee.id)).balance.amount == Decimal("300.00")
        finally:
            await storage.close()


class TestStorageFactory:
    """Test the storage factory"""

    def test_memory_storage_by_default(self):
        assert isinstance(create_async_storage(PaymentsConfig()), AsyncInMemoryStorage)

    def test_postgresql_storage_from_config(self):
        storage = create_async_storage(PaymentsConfig(
            storage_type="postgresql", database_url="postgresql://localhost/payments"
        ))
        assert isinstance(storage, AsyncPostgreSQLStorage)
        assert storage.pool is None

    def test_postgresql_storage_without_url(self):
        with pytest.raises(ValueError, match="DATABASE_URL"):
            create_async_storage(PaymentsConfig(storage_type="postgresql", database_url=None))

    def test_unknown_storage_type_falls_back_to_memory(self):
        assert isinstance(create_async_storage(PaymentsConfig(storage_type="mongo")), AsyncInMemoryStorage)

    @pytest.mark.asyncio
    async def test_uninitialized_pool_raises_persistence_error(self):
        storage = AsyncPostgreSQLStorage("postgresql://localhost/payments")
        with pytest.raises(PersistenceError):
            await storage.save("t", "1", {"id": "1"})
