"""Tests for the PostgreSQL membership repository and app database."""

from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from gatekeeper.adapters.db import AppDatabase, MembershipRepository
from gatekeeper.core.domain_types import SeatTier, SubscriptionStatus
from gatekeeper.core.exceptions import TransactionError


def member_row(**overrides: Any) -> dict[str, Any]:
    """A members table row."""
    row: dict[str, Any] = {
        "id": uuid4(),
        "email": "member@example.com",
        "stripe_customer_id": "cus_1",
        "subscription_status": "ACTIVE",
        "discord_id": "42",
        "intro_completed": True,
        "is_in_debtor_state": False,
        "payment_failed_at": None,
        "grace_period_ends_at": None,
        "debtor_state_ends_at": None,
        "seat_tier": "TEAM_MEMBER",
        "team_id": None,
        "sent_billing_notifications": None,
    }
    row.update(overrides)
    return row


class TestMembershipRepository:
    """Tests for MembershipRepository."""

    @pytest.fixture
    def db(self) -> MagicMock:
        """Mock AppDatabase."""
        db = MagicMock(spec=AppDatabase)
        db.fetch_one = AsyncMock()
        db.fetch_all = AsyncMock(return_value=[])
        return db

    @pytest.fixture
    def repository(self, db: MagicMock) -> MembershipRepository:
        """Repository over the mock database."""
        return MembershipRepository(db)

    async def test_row_mapping(self, repository: MembershipRepository, db: MagicMock) -> None:
        """Columns map onto domain attributes."""
        db.fetch_one.return_value = member_row()

        member = await repository.get_member_by_customer("cus_1")

        assert member is not None
        assert member.billing_customer_id == "cus_1"
        assert member.platform_user_id == "42"
        assert member.subscription_status is SubscriptionStatus.ACTIVE
        assert member.seat_tier is SeatTier.TEAM_MEMBER
        assert member.sent_billing_notifications == []

    async def test_missing_member(self, repository: MembershipRepository, db: MagicMock) -> None:
        """No row, no member."""
        db.fetch_one.return_value = None

        assert await repository.get_member(uuid4()) is None

    async def test_update_member_translates_columns(
        self, repository: MembershipRepository, db: MagicMock
    ) -> None:
        """Domain names become column names and enums become values."""
        member_id = uuid4()
        db.fetch_one.return_value = member_row(id=member_id, subscription_status="PAST_DUE")

        updated = await repository.update_member(
            member_id,
            subscription_status=SubscriptionStatus.PAST_DUE,
            platform_user_id="43",
        )

        query, *args = db.fetch_one.call_args.args
        assert "subscription_status = $2" in query
        assert "discord_id = $3" in query
        assert args == [member_id, "PAST_DUE", "43"]
        assert updated is not None
        assert updated.subscription_status is SubscriptionStatus.PAST_DUE

    async def test_update_member_rejects_unknown_field(
        self, repository: MembershipRepository
    ) -> None:
        """Unknown attributes are refused before hitting the database."""
        with pytest.raises(ValueError):
            await repository.update_member(uuid4(), favourite_colour="blue")

    async def test_grace_start_is_guarded(
        self, repository: MembershipRepository, db: MagicMock
    ) -> None:
        """Only a member with no recorded failure enters grace."""
        db.fetch_one.return_value = None
        now = datetime(2025, 1, 1, tzinfo=UTC)

        updated = await repository.start_member_grace(uuid4(), payment_failed_at=now)

        query = db.fetch_one.call_args.args[0]
        assert "payment_failed_at IS NULL" in query
        assert updated is None

    async def test_expired_grace_query_filters_individuals(
        self, repository: MembershipRepository, db: MagicMock
    ) -> None:
        """Team members are swept through their team."""
        now = datetime(2025, 1, 1, tzinfo=UTC)

        await repository.list_expired_grace_members(now)

        query, arg = db.fetch_all.call_args.args
        assert "team_id IS NULL" in query
        assert "is_in_debtor_state = false" in query
        assert arg == now


class TestTeamTransaction:
    """Tests for update_team_and_members."""

    @pytest.fixture
    def conn(self) -> MagicMock:
        """Connection with a working transaction context."""
        conn = MagicMock()
        transaction = MagicMock()
        transaction.__aenter__ = AsyncMock(return_value=None)
        transaction.__aexit__ = AsyncMock(return_value=None)
        conn.transaction.return_value = transaction
        conn.execute = AsyncMock(return_value="UPDATE 1")
        conn.fetch = AsyncMock(return_value=[member_row(), member_row()])
        return conn

    @pytest.fixture
    def repository(self, conn: MagicMock) -> MembershipRepository:
        """Repository whose database hands out the mocked connection."""
        db = AppDatabase("postgresql://localhost/test")
        pool = MagicMock()
        acquired = MagicMock()
        acquired.__aenter__ = AsyncMock(return_value=conn)
        acquired.__aexit__ = AsyncMock(return_value=None)
        pool.acquire.return_value = acquired
        db.pool = pool
        return MembershipRepository(db)

    async def test_updates_inside_one_transaction(
        self, repository: MembershipRepository, conn: MagicMock
    ) -> None:
        """Team and member updates share the transaction."""
        team_id = uuid4()

        members = await repository.update_team_and_members(
            team_id,
            team_fields={"subscription_status": SubscriptionStatus.PAST_DUE},
            member_fields={"subscription_status": SubscriptionStatus.PAST_DUE},
        )

        assert len(members) == 2
        conn.transaction.assert_called_once()
        assert conn.execute.call_args.args[1:] == (team_id, "PAST_DUE")

    async def test_failure_raises_transaction_error(
        self, repository: MembershipRepository, conn: MagicMock
    ) -> None:
        """Any database failure surfaces as TransactionError."""
        conn.fetch.side_effect = RuntimeError("connection reset")

        with pytest.raises(TransactionError):
            await repository.update_team_and_members(
                uuid4(),
                team_fields={"debtor_state_ends_at": None},
                member_fields={"is_in_debtor_state": True},
            )

    async def test_team_grace_start_is_guarded(
        self, repository: MembershipRepository, conn: MagicMock
    ) -> None:
        """The team row is claimed first; members change only if it was free."""
        conn.fetchval = AsyncMock(return_value=uuid4())

        members = await repository.start_team_grace(
            uuid4(),
            team_fields={"subscription_status": SubscriptionStatus.PAST_DUE},
            member_fields={"subscription_status": SubscriptionStatus.PAST_DUE},
        )

        assert members is not None
        assert len(members) == 2
        assert "payment_failed_at IS NULL" in conn.fetchval.call_args.args[0]

    async def test_team_already_in_grace(
        self, repository: MembershipRepository, conn: MagicMock
    ) -> None:
        """A team with a recorded failure is left alone."""
        conn.fetchval = AsyncMock(return_value=None)

        members = await repository.start_team_grace(
            uuid4(),
            team_fields={"subscription_status": SubscriptionStatus.PAST_DUE},
            member_fields={"subscription_status": SubscriptionStatus.PAST_DUE},
        )

        assert members is None
        conn.fetch.assert_not_awaited()

    async def test_requires_fields(self, repository: MembershipRepository) -> None:
        """Empty updates are a programming error."""
        with pytest.raises(ValueError):
            await repository.update_team_and_members(uuid4(), team_fields={}, member_fields={})


class TestAppDatabaseLedger:
    """Tests for the flag and webhook event tables."""

    @pytest.fixture
    def db(self) -> AppDatabase:
        """AppDatabase with execute/fetch_all mocked."""
        db = AppDatabase("postgresql://localhost/test")
        db.execute = AsyncMock()  # type: ignore[method-assign]
        db.fetch_all = AsyncMock()  # type: ignore[method-assign]
        return db

    async def test_record_new_event(self, db: AppDatabase) -> None:
        """An inserted row means first delivery."""
        db.execute.return_value = "INSERT 0 1"  # type: ignore[attr-defined]

        assert await db.record_if_new("evt_1", "invoice.paid", {}) is True

    async def test_duplicate_event(self, db: AppDatabase) -> None:
        """A conflict means the event was seen before."""
        db.execute.return_value = "INSERT 0 0"  # type: ignore[attr-defined]

        assert await db.record_if_new("evt_1", "invoice.paid", {}) is False

    async def test_load_flags(self, db: AppDatabase) -> None:
        """Flags load as a key to bool map."""
        db.fetch_all.return_value = [  # type: ignore[attr-defined]
            {"key": "auto_fix_reconciliation", "enabled": True},
            {"key": "maintenance_mode", "enabled": False},
        ]

        assert await db.load_all() == {
            "auto_fix_reconciliation": True,
            "maintenance_mode": False,
        }

    async def test_acquire_requires_connect(self) -> None:
        """Using the database before connect() fails loudly."""
        db = AppDatabase("postgresql://localhost/test")

        with pytest.raises(RuntimeError):
            await db.fetch_one("SELECT 1")
