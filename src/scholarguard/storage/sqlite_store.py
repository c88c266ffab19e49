"""
SQLite-backed scholarship store.

Every mutation is a single statement committed on its own, which gives
single-record atomicity. A partial unique index keeps at most one active
record per deduplication key even when two writers race.
"""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, List, Mapping, Optional

import aiosqlite
import structlog
from sqlalchemy import create_engine
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from scholarguard.config.config import StorageConfig
from scholarguard.exceptions import DuplicateRecordError, RecordNotFoundError, StorageError
from scholarguard.protocols import Scholarship

from .records import apply_patch, coerce_filter, coerce_patch, from_row, to_column, to_row
from .schema import metadata as db_metadata

logger = structlog.get_logger(__name__)

# Incremented whenever the schema in schema.py changes.
CURRENT_SCHEMA_VERSION = 1

_COLUMNS = Scholarship.field_names()

_retry_when_locked = retry(
    retry=retry_if_exception_type(sqlite3.OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    reraise=True,
)


class SQLiteScholarshipStore:
    """``ScholarshipStore`` on an aiosqlite connection pool."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self.db_path = Path(config.db_path)
        self._pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=config.pool_size)
        self._initialized = False

    async def initialize(self) -> None:
        """Create the database file, the connection pool and the schema."""
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            for _ in range(self.config.pool_size):
                conn = await self._create_connection()
                await self._pool.put(conn)

            async with self.get_connection() as conn:
                await self._run_migrations(conn)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open scholarship store at {self.db_path}: {e}") from e
        self._initialized = True
        logger.info("Scholarship store initialized", db_path=str(self.db_path))

    async def _create_connection(self) -> aiosqlite.Connection:
        """Creates and configures a new database connection."""
        conn = await aiosqlite.connect(self.db_path)
        if self.config.wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA busy_timeout = 5000;")
        conn.row_factory = aiosqlite.Row
        return conn

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Gets a connection from the pool."""
        conn = await self._pool.get()
        try:
            yield conn
        finally:
            await self._pool.put(conn)

    async def _run_migrations(self, conn: aiosqlite.Connection) -> None:
        cursor = await conn.execute("PRAGMA user_version;")
        version_row = await cursor.fetchone()
        current_version = version_row[0] if version_row is not None else 0

        if current_version < CURRENT_SCHEMA_VERSION:
            logger.info("Migrating scholarship store", from_version=current_version, to_version=CURRENT_SCHEMA_VERSION)
            engine = create_engine(f"sqlite:///{self.db_path}")
            try:
                db_metadata.create_all(engine)
            finally:
                engine.dispose()
            await conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION};")
            await conn.commit()

    async def close(self) -> None:
        """Closes all connections in the pool."""
        while not self._pool.empty():
            conn = await self._pool.get()
            await conn.close()
        self._initialized = False

    async def __aenter__(self) -> "SQLiteScholarshipStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # ScholarshipStore
    # ------------------------------------------------------------------

    async def find(self, filter: Optional[Mapping[str, Any]] = None) -> List[Scholarship]:
        criteria = coerce_filter(filter)
        sql = "SELECT * FROM scholarships"
        params: List[Any] = []
        if criteria:
            clauses = []
            for name, value in criteria.items():
                if value is None:
                    clauses.append(f"{name} IS NULL")
                else:
                    clauses.append(f"{name} = ?")
                    params.append(to_column(name, value))
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, id"

        try:
            rows = await self._fetchall(sql, params)
        except sqlite3.Error as e:
            raise StorageError(f"find failed: {e}") from e
        return [from_row(row) for row in rows]

    async def get(self, record_id: str) -> Scholarship:
        try:
            rows = await self._fetchall("SELECT * FROM scholarships WHERE id = ?", [record_id])
        except sqlite3.Error as e:
            raise StorageError(f"get failed: {e}") from e
        if not rows:
            raise RecordNotFoundError(record_id)
        return from_row(rows[0])

    async def save(self, record: Scholarship) -> Scholarship:
        row = to_row(record)
        sql = f"INSERT INTO scholarships ({', '.join(_COLUMNS)}) VALUES ({', '.join('?' for _ in _COLUMNS)})"
        try:
            await self._execute(sql, [row[name] for name in _COLUMNS])
        except sqlite3.IntegrityError as e:
            if "dedup_key" in str(e):
                raise DuplicateRecordError(record.dedup_key) from e
            raise StorageError(f"save failed for {record.id}: {e}") from e
        except sqlite3.Error as e:
            raise StorageError(f"save failed for {record.id}: {e}") from e
        logger.debug("Record saved", record_id=record.id, title=record.title)
        return record

    async def update(self, record_id: str, patch: Mapping[str, Any]) -> Scholarship:
        changes = coerce_patch(patch)
        if not changes:
            return await self.get(record_id)

        assignments = ", ".join(f"{name} = ?" for name in changes)
        sql = f"UPDATE scholarships SET {assignments} WHERE id = ?"
        params = [to_column(name, value) for name, value in changes.items()]
        try:
            updated_rows = await self._execute(sql, [*params, record_id])
        except sqlite3.IntegrityError as e:
            current = await self.get(record_id)
            raise DuplicateRecordError(apply_patch(current, changes).dedup_key) from e
        except sqlite3.Error as e:
            raise StorageError(f"update failed for {record_id}: {e}") from e
        if updated_rows == 0:
            raise RecordNotFoundError(record_id)
        return await self.get(record_id)

    # ------------------------------------------------------------------
    # Statement helpers
    # ------------------------------------------------------------------

    @_retry_when_locked
    async def _execute(self, sql: str, params: List[Any]) -> int:
        async with self.get_connection() as conn:
            try:
                cursor = await conn.execute(sql, params)
                await conn.commit()
            except sqlite3.Error:
                await conn.rollback()
                raise
            return cursor.rowcount

    @_retry_when_locked
    async def _fetchall(self, sql: str, params: List[Any]) -> List[aiosqlite.Row]:
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
            return list(rows)
