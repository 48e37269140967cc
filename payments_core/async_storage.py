"""
Async Storage Backend Module

Provides the async ledger store interface used by every core component, with
an in-memory implementation and a production PostgreSQL implementation using
asyncpg. Money movements go through atomic units of work: writes made inside a
unit are applied all together on commit or not at all, and the records named
when the unit is opened are locked against concurrent units.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Iterable, Tuple
from contextlib import asynccontextmanager, AsyncExitStack
import asyncio
import copy
import json
import weakref

import asyncpg

from .config import PaymentsConfig
from .exceptions import PersistenceError
from .logging_config import get_logger
from .storage import InMemoryStorage

LockKey = Tuple[str, str]

logger = get_logger("payments.storage")


class AtomicUnit(ABC):
    """Reads and writes performed inside one unit of work"""

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, seeing this unit's own uncommitted writes"""

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Write a record as part of this unit"""

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching equality filters, as seen from inside this unit"""

    @abstractmethod
    async def lock(self, lock_keys: Iterable[LockKey]) -> None:
        """
        Take further record locks for the rest of this unit

        Keys the unit already holds are skipped. A unit is only ever extended
        down the lock hierarchy: schedules, then accounts, then transactions.
        """


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""

    @abstractmethod
    async def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching equality filters"""

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records in table"""

    @abstractmethod
    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""

    @abstractmethod
    def atomic(self, lock_keys: Iterable[LockKey] = ()):
        """
        Open an atomic unit of work.

        Usage::

            async with storage.atomic([("accounts", a_id), ("accounts", b_id)]) as unit:
                account = await unit.load("accounts", a_id)
                await unit.save("accounts", a_id, account)

        Locks on ``lock_keys`` are taken in sorted order. Leaving the block
        normally commits every write; an exception discards them all.
        """

    async def close(self) -> None:
        """Close storage connection (default no-op)"""


class _InMemoryUnit(AtomicUnit):
    """Stages writes until the owning unit commits"""

    def __init__(self, storage: 'AsyncInMemoryStorage', stack: AsyncExitStack):
        self._storage = storage
        self._stack = stack
        self._held = set()
        self._writes: Dict[LockKey, Dict[str, Any]] = {}

    async def lock(self, lock_keys: Iterable[LockKey]) -> None:
        for key in sorted(set(lock_keys) - self._held):
            await self._stack.enter_async_context(self._storage._record_lock(key))
            self._held.add(key)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        staged = self._writes.get((table, record_id))
        if staged is not None:
            return copy.deepcopy(staged)
        return await self._storage.load(table, record_id)

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._writes[(table, record_id)] = copy.deepcopy(data)

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        staged = {record_id: data for (staged_table, record_id), data in self._writes.items()
                  if staged_table == table}
        results = [record for record in await self._storage.find(table, filters)
                   if record.get('id') not in staged]
        for data in staged.values():
            if all(key in data and data[key] == value for key, value in filters.items()):
                results.append(copy.deepcopy(data))
        return results

    def pending_writes(self) -> List[Tuple[str, str, Dict[str, Any]]]:
        return [(table, record_id, data) for (table, record_id), data in self._writes.items()]


class AsyncInMemoryStorage(AsyncStorageInterface):
    """Async wrapper around InMemoryStorage with per-record unit-of-work locks"""

    def __init__(self):
        self._sync_storage = InMemoryStorage()
        self._record_locks: 'weakref.WeakValueDictionary[LockKey, asyncio.Lock]' = weakref.WeakValueDictionary()

    def _record_lock(self, key: LockKey) -> asyncio.Lock:
        lock = self._record_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._record_locks[key] = lock
        return lock

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        await asyncio.to_thread(self._sync_storage.save, table, record_id, data)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        return await asyncio.to_thread(self._sync_storage.load, table, record_id)

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return await asyncio.to_thread(self._sync_storage.load_all, table)

    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        return await asyncio.to_thread(self._sync_storage.delete, table, record_id)

    async def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return await asyncio.to_thread(self._sync_storage.exists, table, record_id)

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return await asyncio.to_thread(self._sync_storage.find, table, filters)

    async def count(self, table: str) -> int:
        """Count records in table"""
        return await asyncio.to_thread(self._sync_storage.count, table)

    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        await asyncio.to_thread(self._sync_storage.clear_table, table)

    async def _apply(self, writes: List[Tuple[str, str, Dict[str, Any]]]) -> None:
        """Apply a committed unit's writes in a single step"""
        await asyncio.to_thread(self._sync_storage.save_many, writes)

    @asynccontextmanager
    async def atomic(self, lock_keys: Iterable[LockKey] = ()):
        async with AsyncExitStack() as stack:
            unit = _InMemoryUnit(self, stack)
            await unit.lock(lock_keys)
            yield unit
            # Reached only when the block exited without an exception
            await self._apply(unit.pending_writes())


class _PostgreSQLUnit(AtomicUnit):
    """Unit of work bound to one connection and one database transaction"""

    def __init__(self, storage: 'AsyncPostgreSQLStorage', conn):
        self._storage = storage
        self._conn = conn
        self._held = set()

    async def lock(self, lock_keys: Iterable[LockKey]) -> None:
        # Row locks in (table, id) order so concurrent units cannot deadlock
        for table, record_id in sorted(set(lock_keys) - self._held):
            await self._storage._ensure_table(table, self._conn)
            await self._conn.execute(f'SELECT 1 FROM "{table}" WHERE id = $1 FOR UPDATE', record_id)
            self._held.add((table, record_id))

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        await self._storage._ensure_table(table, self._conn)
        row = await self._conn.fetchrow(f'SELECT data FROM "{table}" WHERE id = $1', record_id)
        return self._storage._decode_row(row) if row else None

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await self._storage._ensure_table(table, self._conn)
        await self._conn.execute(self._storage._upsert_sql(table), record_id, json.dumps(data, default=str))

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        await self._storage._ensure_table(table, self._conn)
        rows = await self._conn.fetch(self._storage._find_sql(table), json.dumps(filters, default=str))
        return [self._storage._decode_row(row) for row in rows]


class AsyncPostgreSQLStorage(AsyncStorageInterface):
    """True async PostgreSQL using asyncpg, one JSONB document per record"""

    def __init__(self, connection_string: str, pool_size: int = 10):
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.pool = None
        self._known_tables = set()

    async def initialize(self):
        """Create connection pool; call on app startup"""
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=2,
                max_size=self.pool_size,
                command_timeout=60
            )
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError(f"Could not connect to PostgreSQL: {e}") from e

    async def close(self):
        """Close pool; call on app shutdown"""
        if self.pool:
            await self.pool.close()

    @asynccontextmanager
    async def _connection(self):
        if not self.pool:
            raise PersistenceError("Pool not initialized. Call initialize() first.")
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            raise PersistenceError(str(e)) from e

    @staticmethod
    def _decode_row(row) -> Dict[str, Any]:
        data = row['data']
        if isinstance(data, str):
            data = json.loads(data)
        return data

    @staticmethod
    def _upsert_sql(table: str) -> str:
        return f'''
            INSERT INTO "{table}" (id, data, updated_at)
            VALUES ($1, $2::jsonb, NOW())
            ON CONFLICT (id)
            DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
        '''

    @staticmethod
    def _find_sql(table: str) -> str:
        return f'SELECT data FROM "{table}" WHERE data @> $1::jsonb ORDER BY created_at'

    @staticmethod
    def _create_table_sql(table: str) -> str:
        return f'''
            CREATE TABLE IF NOT EXISTS "{table}" (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
            )
        '''

    async def _ensure_table(self, table: str, conn=None) -> None:
        """Ensure table exists, on ``conn`` when called from inside a unit"""
        if table in self._known_tables:
            return
        if conn is not None:
            # Rolled back with the unit, so not remembered until seen outside one
            await conn.execute(self._create_table_sql(table))
            return
        async with self._connection() as own_conn:
            await own_conn.execute(self._create_table_sql(table))
        self._known_tables.add(table)

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL"""
        await self._ensure_table(table)
        async with self._connection() as conn:
            await conn.execute(self._upsert_sql(table), record_id, json.dumps(data, default=str))

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        await self._ensure_table(table)
        async with self._connection() as conn:
            row = await conn.fetchrow(f'SELECT data FROM "{table}" WHERE id = $1', record_id)
            return self._decode_row(row) if row else None

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        await self._ensure_table(table)
        async with self._connection() as conn:
            rows = await conn.fetch(f'SELECT data FROM "{table}" ORDER BY created_at')
            return [self._decode_row(row) for row in rows]

    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        await self._ensure_table(table)
        async with self._connection() as conn:
            result = await conn.execute(f'DELETE FROM "{table}" WHERE id = $1', record_id)
            return result != 'DELETE 0'

    async def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        await self._ensure_table(table)
        async with self._connection() as conn:
            row = await conn.fetchrow(f'SELECT 1 FROM "{table}" WHERE id = $1', record_id)
            return row is not None

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        await self._ensure_table(table)
        async with self._connection() as conn:
            rows = await conn.fetch(
                self._find_sql(table),
                json.dumps(filters, default=str)
            )
            return [self._decode_row(row) for row in rows]

    async def count(self, table: str) -> int:
        """Count records in table"""
        await self._ensure_table(table)
        async with self._connection() as conn:
            row = await conn.fetchrow(f'SELECT COUNT(*) FROM "{table}"')
            return row[0]

    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        await self._ensure_table(table)
        async with self._connection() as conn:
            await conn.execute(f'DELETE FROM "{table}"')

    @asynccontextmanager
    async def atomic(self, lock_keys: Iterable[LockKey] = ()):
        keys = sorted(set(lock_keys))
        for table in {table for table, _ in keys}:
            await self._ensure_table(table)

        async with self._connection() as conn:
            transaction = conn.transaction()
            await transaction.start()
            try:
                unit = _PostgreSQLUnit(self, conn)
                await unit.lock(keys)
                yield unit
            except BaseException:
                await transaction.rollback()
                raise
            else:
                await transaction.commit()


def create_async_storage(app_config: PaymentsConfig) -> AsyncStorageInterface:
    """Factory function to create the configured async storage backend"""
    storage_type = app_config.storage_type.lower()

    if storage_type == 'postgresql':
        if not app_config.database_url:
            raise ValueError("PAYMENTS_DATABASE_URL is required for PostgreSQL storage")
        return AsyncPostgreSQLStorage(app_config.database_url, app_config.database_pool_size)

    if storage_type != 'memory':
        logger.warning(f"Unknown storage type '{app_config.storage_type}', using in-memory storage")
    return AsyncInMemoryStorage()
