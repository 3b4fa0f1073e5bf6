"""
Durable ledger of uploads that ended in local fallback.

Records survive restarts so a failed proof photo can be retried later.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from ..exceptions import StorageError
from ..models.upload import LocalFallbackRecord

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS upload_fallbacks (
    task_id TEXT PRIMARY KEY,
    source_ref TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    destination_name TEXT NOT NULL,
    error_kind TEXT NOT NULL,
    error_message TEXT,
    retryable INTEGER NOT NULL DEFAULT 0,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    failed_at TEXT NOT NULL,
    orphaned_remote_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_upload_fallbacks_owner ON upload_fallbacks(owner_id);
"""


class FallbackRepository(ABC):
    """Abstract repository for local fallback records."""

    @abstractmethod
    async def save(self, record: LocalFallbackRecord) -> None:
        pass

    @abstractmethod
    async def get(self, task_id: str) -> Optional[LocalFallbackRecord]:
        pass

    @abstractmethod
    async def list_pending(
        self,
        owner_id: Optional[str] = None,
        retryable_only: bool = False,
    ) -> List[LocalFallbackRecord]:
        pass

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        pass


class SQLiteFallbackRepository(FallbackRepository):
    """SQLite implementation of the fallback ledger."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the database and create the schema if needed."""
        async with self._lock:
            if self._conn is not None:
                return
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = await aiosqlite.connect(str(self.db_path))
                conn.row_factory = aiosqlite.Row
                await conn.executescript(SCHEMA)
                await conn.commit()
            except (aiosqlite.Error, OSError) as e:
                raise StorageError(f"Failed to open fallback ledger {self.db_path}: {e}") from e
            self._conn = conn
            logger.debug(f"Fallback ledger ready at {self.db_path}")

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await self._conn.close()
                self._conn = None

    @asynccontextmanager
    async def _connection(self):
        if self._conn is None:
            await self.initialize()
        async with self._lock:
            try:
                yield self._conn
            except aiosqlite.Error as e:
                raise StorageError(f"Fallback ledger query failed: {e}") from e

    async def save(self, record: LocalFallbackRecord) -> None:
        """Insert or replace the record for a task."""
        query = """
        INSERT OR REPLACE INTO upload_fallbacks (
            task_id, source_ref, owner_id, destination_name, error_kind,
            error_message, retryable, attempt_count, failed_at, orphaned_remote_id
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            record.task_id,
            record.source_ref,
            record.owner_id,
            record.destination_name,
            record.error_kind.value,
            record.error_message,
            1 if record.retryable else 0,
            record.attempt_count,
            record.failed_at.isoformat(),
            record.orphaned_remote_id,
        )
        async with self._connection() as conn:
            await conn.execute(query, params)
            await conn.commit()

    async def get(self, task_id: str) -> Optional[LocalFallbackRecord]:
        async with self._connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM upload_fallbacks WHERE task_id = ?", (task_id,)
            )
            row = await cursor.fetchone()
        return self._row_to_record(dict(row)) if row else None

    async def list_pending(
        self,
        owner_id: Optional[str] = None,
        retryable_only: bool = False,
    ) -> List[LocalFallbackRecord]:
        """
        List fallback records, oldest first.

        Args:
            owner_id: Only records for this owner
            retryable_only: Skip records that need the flow restarted

        Returns:
            Matching records
        """
        conditions = []
        params: List[Any] = []

        if owner_id:
            conditions.append("owner_id = ?")
            params.append(owner_id)
        if retryable_only:
            conditions.append("retryable = 1")

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        query = f"SELECT * FROM upload_fallbacks {where_clause} ORDER BY failed_at ASC"

        async with self._connection() as conn:
            cursor = await conn.execute(query, tuple(params))
            rows = await cursor.fetchall()
        return [self._row_to_record(dict(row)) for row in rows]

    async def delete(self, task_id: str) -> bool:
        async with self._connection() as conn:
            cursor = await conn.execute(
                "DELETE FROM upload_fallbacks WHERE task_id = ?", (task_id,)
            )
            await conn.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _row_to_record(row: Dict[str, Any]) -> LocalFallbackRecord:
        row["retryable"] = bool(row["retryable"])
        return LocalFallbackRecord.from_dict(row)
