"""SQLite metrics store for pool holder counts."""

import aiosqlite
import os
from datetime import datetime, timezone
from typing import List, Optional
from contextlib import asynccontextmanager

from holder_sync.config import get_settings
from holder_sync.models import Chain, HolderMetric, MetricStatus, Pool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MetricsStore:
    """
    Async SQLite store.

    ``holder_metrics`` holds exactly one row per pool (upsert, never append).
    ``chains`` and ``pools`` are owned by collaborators and only read here;
    the register helpers exist so they can be seeded.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or get_settings().database_path
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Initialize database connection and create tables."""
        # Ensure directory exists
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()

    async def close(self):
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @asynccontextmanager
    async def get_connection(self):
        """Get database connection context manager."""
        if not self._connection:
            await self.connect()
        yield self._connection

    async def _create_tables(self):
        """Create database tables if they don't exist."""
        async with self.get_connection() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS chains (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS pools (
                    id TEXT PRIMARY KEY,
                    contract_address TEXT,
                    chain_id TEXT NOT NULL,
                    is_active INTEGER DEFAULT 1,
                    FOREIGN KEY (chain_id) REFERENCES chains(id)
                )
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_pools_active
                ON pools(is_active)
            """)

            # One row per pool - pool_id is the upsert key
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS holder_metrics (
                    pool_id TEXT PRIMARY KEY,
                    holders_count INTEGER NOT NULL CHECK (holders_count >= 0),
                    status TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (pool_id) REFERENCES pools(id)
                )
            """)

            await conn.commit()

    # Chain / pool methods (collaborator-owned data)
    async def register_chain(self, chain_id: str, name: str):
        """Register or rename a chain."""
        async with self.get_connection() as conn:
            await conn.execute("""
                INSERT OR REPLACE INTO chains (id, name) VALUES (?, ?)
            """, (chain_id, name))
            await conn.commit()

    async def register_pool(self, pool_id: str, contract_address: Optional[str],
                            chain_id: str, is_active: bool = True):
        """Register or update a pool."""
        async with self.get_connection() as conn:
            await conn.execute("""
                INSERT OR REPLACE INTO pools (id, contract_address, chain_id, is_active)
                VALUES (?, ?, ?, ?)
            """, (pool_id, contract_address, chain_id, 1 if is_active else 0))
            await conn.commit()

    async def get_chain(self, chain_id: str) -> Optional[Chain]:
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT id, name FROM chains WHERE id = ?",
                (chain_id,)
            )
            row = await cursor.fetchone()
            return Chain(**dict(row)) if row else None

    async def get_pool(self, pool_id: str) -> Optional[Pool]:
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT id, contract_address, chain_id, is_active FROM pools WHERE id = ?",
                (pool_id,)
            )
            row = await cursor.fetchone()
            return Pool(**dict(row)) if row else None

    async def get_active_pools(self) -> List[Pool]:
        """Active pools that have a non-empty contract address."""
        async with self.get_connection() as conn:
            cursor = await conn.execute("""
                SELECT id, contract_address, chain_id, is_active
                FROM pools
                WHERE is_active = 1
                  AND contract_address IS NOT NULL
                  AND TRIM(contract_address) != ''
                ORDER BY id
            """)
            rows = await cursor.fetchall()
            return [Pool(**dict(row)) for row in rows]

    async def count_active_pools(self) -> int:
        async with self.get_connection() as conn:
            cursor = await conn.execute("""
                SELECT COUNT(*) as count
                FROM pools
                WHERE is_active = 1
                  AND contract_address IS NOT NULL
                  AND TRIM(contract_address) != ''
            """)
            row = await cursor.fetchone()
            return row["count"] if row else 0

    # Holder metric methods
    async def get_metric(self, pool_id: str) -> Optional[HolderMetric]:
        """Get the current holder metric for a pool, or None."""
        async with self.get_connection() as conn:
            cursor = await conn.execute("""
                SELECT pool_id, holders_count, status, updated_at
                FROM holder_metrics
                WHERE pool_id = ?
            """, (pool_id,))
            row = await cursor.fetchone()
            if not row:
                return None
            return HolderMetric(
                pool_id=row["pool_id"],
                holders_count=row["holders_count"],
                status=MetricStatus(row["status"]),
                updated_at=_parse_timestamp(row["updated_at"]),
            )

    async def upsert_metric(self, pool_id: str, holders_count: int, status: MetricStatus,
                            updated_at: Optional[datetime] = None) -> HolderMetric:
        """
        Insert the pool's metric row or overwrite it in place.

        Single-statement upsert, so each pool's write is atomic on its own.
        """
        if holders_count < 0:
            raise ValueError(f"holders_count must be non-negative, got {holders_count}")

        timestamp = updated_at or _utcnow()
        async with self.get_connection() as conn:
            await conn.execute("""
                INSERT INTO holder_metrics (pool_id, holders_count, status, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(pool_id) DO UPDATE SET
                    holders_count = excluded.holders_count,
                    status = excluded.status,
                    updated_at = excluded.updated_at
            """, (pool_id, holders_count, MetricStatus(status).value, timestamp.isoformat()))
            await conn.commit()

        return HolderMetric(
            pool_id=pool_id,
            holders_count=holders_count,
            status=MetricStatus(status),
            updated_at=timestamp,
        )

    async def count_metrics(self) -> int:
        async with self.get_connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) as count FROM holder_metrics")
            row = await cursor.fetchone()
            return row["count"] if row else 0


# Global store instance
db = MetricsStore()
