"""Application database adapter using asyncpg."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import asyncpg
import structlog

logger = structlog.get_logger()


class AppDatabase:
    """Application database for members, teams, flags and webhook events."""

    def __init__(self, dsn: str):
        """Initialize the app database adapter."""
        self.dsn = dsn
        self.pool: asyncpg.Pool[asyncpg.Connection[asyncpg.Record]] | None = None

    async def connect(self) -> None:
        """Create connection pool."""
        self.pool = await asyncpg.create_pool(
            self.dsn,
            min_size=2,
            max_size=10,
            command_timeout=60,
        )
        logger.info("app_database_connected", dsn=self.dsn.split("@")[-1])

    async def close(self) -> None:
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("app_database_disconnected")

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection[asyncpg.Record]]:
        """Acquire a connection from the pool."""
        if self.pool is None:
            raise RuntimeError("Database pool not initialized")
        async with self.pool.acquire() as conn:
            yield conn

    async def fetch_one(self, query: str, *args: Any) -> dict[str, Any] | None:
        """Fetch a single row."""
        async with self.acquire() as conn:
            row = await conn.fetchrow(query, *args)
            if row:
                return dict(row)
            return None

    async def fetch_all(self, query: str, *args: Any) -> list[dict[str, Any]]:
        """Fetch all rows."""
        async with self.acquire() as conn:
            rows = await conn.fetch(query, *args)
            return [dict(row) for row in rows]

    async def execute(self, query: str, *args: Any) -> str:
        """Execute a query and return status."""
        async with self.acquire() as conn:
            result: str = await conn.execute(query, *args)
            return result

    # Feature flag operations
    async def load_all(self) -> dict[str, bool]:
        """Load every feature flag."""
        rows = await self.fetch_all("SELECT key, enabled FROM feature_flags")
        return {row["key"]: bool(row["enabled"]) for row in rows}

    async def upsert(self, key: str, enabled: bool, updated_by: str) -> None:
        """Create or update a feature flag."""
        await self.execute(
            """INSERT INTO feature_flags (key, enabled, updated_by, updated_at)
               VALUES ($1, $2, $3, NOW())
               ON CONFLICT (key) DO UPDATE
               SET enabled = EXCLUDED.enabled,
                   updated_by = EXCLUDED.updated_by,
                   updated_at = NOW()""",
            key,
            enabled,
            updated_by,
        )

    # Webhook event operations
    async def record_if_new(self, event_id: str, event_type: str, payload: dict[str, Any]) -> bool:
        """Record a processed webhook event; False if it was seen before."""
        status = await self.execute(
            """INSERT INTO stripe_events (event_id, type, payload)
               VALUES ($1, $2, $3)
               ON CONFLICT (event_id) DO NOTHING""",
            event_id,
            event_type,
            json.dumps(payload, default=str),
        )
        # asyncpg returns "INSERT 0 <rowcount>"
        return status.endswith(" 1")
