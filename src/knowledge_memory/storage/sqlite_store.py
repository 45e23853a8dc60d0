"""SQLite extended storage backend.

Stores offloaded entry records as JSON text in a single table, using
aiosqlite for async access. Suitable when thousands of offloaded entries
would otherwise mean thousands of small files.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
from loguru import logger

from ..exceptions import StorageError


class SQLiteExtendedStorage:
    """SQLite key-value store for offloaded entries.

    Uses WAL mode for concurrent reads. The connection is opened lazily on
    first use, or explicitly via ``initialize()``.
    """

    def __init__(self, db_path: str = "./memory/extended.db"):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        logger.info(f"SQLiteExtendedStorage initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create the database file and table if they don't exist."""
        if self._db is not None:
            return

        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS extended_records (
                record_key TEXT PRIMARY KEY,
                partition_id TEXT NOT NULL,
                body TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_extended_partition "
            "ON extended_records(partition_id)"
        )
        await self._db.commit()
        logger.info("SQLite extended storage initialized successfully")

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db

    def _location(self, key: str) -> str:
        return f"sqlite://{self.db_path}#{key}"

    async def put(self, key: str, record: dict[str, Any]) -> str:
        partition_id = key.partition("/")[0]
        try:
            db = await self._conn()
            await db.execute(
                """
                INSERT INTO extended_records (record_key, partition_id, body, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(record_key) DO UPDATE SET
                    body = excluded.body,
                    updated_at = excluded.updated_at
                """,
                (
                    key,
                    partition_id,
                    json.dumps(record, ensure_ascii=False),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            await db.commit()
        except (aiosqlite.Error, OSError) as e:
            raise StorageError(f"Failed to write record {key}: {e}", path=self.db_path) from e
        return self._location(key)

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            db = await self._conn()
            async with db.execute(
                "SELECT body FROM extended_records WHERE record_key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()
        except (aiosqlite.Error, OSError) as e:
            raise StorageError(f"Failed to read record {key}: {e}", path=self.db_path) from e

        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupted record {key}: {e}", path=self.db_path) from e

    async def delete(self, key: str) -> bool:
        try:
            db = await self._conn()
            cursor = await db.execute(
                "DELETE FROM extended_records WHERE record_key = ?", (key,)
            )
            await db.commit()
            return cursor.rowcount > 0
        except (aiosqlite.Error, OSError) as e:
            logger.error(f"Failed to delete extended record {key}: {e}")
            return False

    async def list_prefix(self, prefix: str) -> list[str]:
        try:
            db = await self._conn()
            async with db.execute(
                "SELECT record_key FROM extended_records "
                "WHERE substr(record_key, 1, ?) = ? ORDER BY record_key",
                (len(prefix), prefix),
            ) as cursor:
                rows = await cursor.fetchall()
        except (aiosqlite.Error, OSError) as e:
            raise StorageError(
                f"Failed to list records under {prefix!r}: {e}", path=self.db_path
            ) from e
        return [row[0] for row in rows]

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite extended storage connection closed")
