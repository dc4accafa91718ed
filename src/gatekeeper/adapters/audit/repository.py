"""Audit log repository."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog
from asyncpg import Pool

from gatekeeper.adapters.audit.types import AuditLogCreate, AuditLogEntry

if TYPE_CHECKING:
    from gatekeeper.core.interfaces import AuditSink

logger = structlog.get_logger()


class AuditRepository:
    """Append-only repository for audit log entries."""

    def __init__(self, pool: Pool) -> None:
        """Initialize the repository.

        Args:
            pool: Database connection pool.
        """
        self._pool = pool

    async def record(self, entry: AuditLogCreate) -> UUID:
        """Record an audit log entry.

        Args:
            entry: Audit log entry to record.

        Returns:
            ID of the created entry.
        """
        query = """
            INSERT INTO audit_logs (action, entity_type, entity_id, details, performed_by)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                entry.action.value,
                entry.entity_type,
                entry.entity_id,
                json.dumps(entry.details or {}, default=str),
                entry.performed_by,
            )
            result: UUID = row["id"]
            return result

    async def list_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: int = 50,
    ) -> list[AuditLogEntry]:
        """Get recent audit entries for one entity, newest first.

        Args:
            entity_type: Entity type (e.g. "Member").
            entity_id: Entity identifier.
            limit: Maximum entries to return.

        Returns:
            List of audit log entries.
        """
        query = """
            SELECT id, action, entity_type, entity_id, details, performed_by, created_at
            FROM audit_logs
            WHERE entity_type = $1 AND entity_id = $2
            ORDER BY created_at DESC
            LIMIT $3
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, entity_type, entity_id, limit)

        return [self._row_to_entry(row) for row in rows]

    def _row_to_entry(self, row: Any) -> AuditLogEntry:
        """Convert a database row to an entry."""
        details = row["details"]
        if isinstance(details, str):
            details = json.loads(details)
        return AuditLogEntry(
            id=row["id"],
            action=row["action"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            details=details,
            performed_by=row["performed_by"],
            created_at=row["created_at"],
        )


async def record_safely(audit: AuditSink | None, entry: AuditLogCreate) -> None:
    """Record an entry, logging instead of raising on failure.

    Audit failures must never abort the action being audited.
    """
    if audit is None:
        return
    try:
        await audit.record(entry)
    except Exception as e:
        logger.error(
            "audit_record_failed",
            action=entry.action.value,
            entity_id=entry.entity_id,
            error=str(e),
        )
