"""Tests for audit repository."""

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from gatekeeper.adapters.audit import AuditAction, AuditLogCreate, record_safely
from gatekeeper.adapters.audit.repository import AuditRepository


class TestAuditRepository:
    """Tests for AuditRepository."""

    @pytest.fixture
    def mock_conn(self) -> AsyncMock:
        """Create a mock connection."""
        return AsyncMock()

    @pytest.fixture
    def mock_pool(self, mock_conn: AsyncMock) -> MagicMock:
        """Create a mock database pool."""
        pool = MagicMock()
        pool.acquire.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
        pool.acquire.return_value.__aexit__ = AsyncMock(return_value=None)
        return pool

    @pytest.fixture
    def repository(self, mock_pool: MagicMock) -> AuditRepository:
        """Create repository with mock pool."""
        return AuditRepository(pool=mock_pool)

    async def test_record_creates_entry(
        self, repository: AuditRepository, mock_conn: AsyncMock
    ) -> None:
        """Test recording an audit log entry."""
        entry_id = uuid4()
        mock_conn.fetchrow.return_value = {"id": entry_id}

        result = await repository.record(
            AuditLogCreate(
                action=AuditAction.ROLE_ASSIGNED,
                entity_type="PlatformUser",
                entity_id="42",
                details={"role": "Lord"},
            )
        )

        assert result == entry_id
        args = mock_conn.fetchrow.call_args.args
        assert args[1:4] == ("ROLE_ASSIGNED", "PlatformUser", "42")
        assert json.loads(args[4]) == {"role": "Lord"}
        assert args[5] == "system"

    async def test_list_for_entity(
        self, repository: AuditRepository, mock_conn: AsyncMock
    ) -> None:
        """Test listing entries for one entity."""
        mock_conn.fetch.return_value = [
            {
                "id": uuid4(),
                "action": "MEMBER_EXPELLED",
                "entity_type": "Member",
                "entity_id": "m1",
                "details": '{"kicked": true}',
                "performed_by": "system",
                "created_at": datetime.now(UTC),
            }
        ]

        entries = await repository.list_for_entity("Member", "m1", limit=10)

        assert len(entries) == 1
        assert entries[0].details == {"kicked": True}
        assert mock_conn.fetch.call_args.args[1:] == ("Member", "m1", 10)


class TestRecordSafely:
    """Tests for record_safely."""

    async def test_failure_is_swallowed(self) -> None:
        """Audit failures never abort the audited action."""
        audit = AsyncMock()
        audit.record.side_effect = RuntimeError("db down")

        await record_safely(
            audit,
            AuditLogCreate(
                action=AuditAction.ROLE_REMOVED, entity_type="PlatformUser", entity_id="1"
            ),
        )

        audit.record.assert_awaited_once()

    async def test_no_sink(self) -> None:
        """A missing sink is a no-op."""
        await record_safely(
            None,
            AuditLogCreate(
                action=AuditAction.ROLE_REMOVED, entity_type="PlatformUser", entity_id="1"
            ),
        )
