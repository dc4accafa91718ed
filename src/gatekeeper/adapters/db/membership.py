"""Members and teams repository backed by PostgreSQL."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from gatekeeper.adapters.db.app_db import AppDatabase
from gatekeeper.core.domain_types import Member, SeatTier, SubscriptionStatus, Team
from gatekeeper.core.exceptions import TransactionError

logger = logging.getLogger(__name__)

# Domain attribute -> column name, for the attributes that differ.
_MEMBER_COLUMNS = {
    "email": "email",
    "billing_customer_id": "stripe_customer_id",
    "subscription_status": "subscription_status",
    "platform_user_id": "discord_id",
    "intro_completed": "intro_completed",
    "is_in_debtor_state": "is_in_debtor_state",
    "payment_failed_at": "payment_failed_at",
    "grace_period_ends_at": "grace_period_ends_at",
    "debtor_state_ends_at": "debtor_state_ends_at",
    "seat_tier": "seat_tier",
    "team_id": "team_id",
    "sent_billing_notifications": "sent_billing_notifications",
}

_TEAM_COLUMNS = {
    "name": "name",
    "billing_customer_id": "stripe_customer_id",
    "subscription_status": "subscription_status",
    "owner_seat_count": "owner_seat_count",
    "team_seat_count": "team_seat_count",
    "payment_failed_at": "payment_failed_at",
    "grace_period_ends_at": "grace_period_ends_at",
    "debtor_state_ends_at": "debtor_state_ends_at",
}

_MEMBER_SELECT = """
    SELECT id, email, stripe_customer_id, subscription_status, discord_id,
           intro_completed, is_in_debtor_state, payment_failed_at,
           grace_period_ends_at, debtor_state_ends_at, seat_tier, team_id,
           sent_billing_notifications
    FROM members
"""

_TEAM_SELECT = """
    SELECT id, name, stripe_customer_id, subscription_status, owner_seat_count,
           team_seat_count, payment_failed_at, grace_period_ends_at, debtor_state_ends_at
    FROM teams
"""


def _set_clause(
    columns: dict[str, str], fields: dict[str, Any], start: int
) -> tuple[str, list[Any]]:
    """Build `col = $n, ...` for an UPDATE from domain attribute names."""
    parts: list[str] = []
    values: list[Any] = []
    for offset, (attr, value) in enumerate(fields.items()):
        if attr not in columns:
            raise ValueError(f"Unknown column: {attr}")
        parts.append(f"{columns[attr]} = ${start + offset}")
        values.append(value.value if isinstance(value, Enum) else value)
    return ", ".join(parts), values


class MembershipRepository:
    """Repository for member and team billing state."""

    def __init__(self, db: AppDatabase) -> None:
        """Initialize the repository."""
        self._db = db

    async def get_member(self, member_id: UUID) -> Member | None:
        """Get member by ID."""
        row = await self._db.fetch_one(f"{_MEMBER_SELECT} WHERE id = $1", member_id)
        return self._row_to_member(row) if row else None

    async def get_member_by_customer(self, customer_id: str) -> Member | None:
        """Get member by billing customer reference."""
        row = await self._db.fetch_one(
            f"{_MEMBER_SELECT} WHERE stripe_customer_id = $1", customer_id
        )
        return self._row_to_member(row) if row else None

    async def get_team(self, team_id: UUID) -> Team | None:
        """Get team by ID."""
        row = await self._db.fetch_one(f"{_TEAM_SELECT} WHERE id = $1", team_id)
        return self._row_to_team(row) if row else None

    async def get_team_by_customer(self, customer_id: str) -> Team | None:
        """Get team by billing customer reference."""
        row = await self._db.fetch_one(f"{_TEAM_SELECT} WHERE stripe_customer_id = $1", customer_id)
        return self._row_to_team(row) if row else None

    async def list_linked_members(self) -> list[Member]:
        """List all members with a Discord account linked."""
        rows = await self._db.fetch_all(f"{_MEMBER_SELECT} WHERE discord_id IS NOT NULL")
        return [self._row_to_member(row) for row in rows]

    async def list_teams(self) -> list[Team]:
        """List all teams."""
        rows = await self._db.fetch_all(f"{_TEAM_SELECT} ORDER BY name")
        return [self._row_to_team(row) for row in rows]

    async def list_team_members(self, team_id: UUID) -> list[Member]:
        """List the members of a team."""
        rows = await self._db.fetch_all(f"{_MEMBER_SELECT} WHERE team_id = $1", team_id)
        return [self._row_to_member(row) for row in rows]

    async def update_member(self, member_id: UUID, **fields: Any) -> Member | None:
        """Update member columns and return the new row."""
        if not fields:
            return await self.get_member(member_id)
        clause, values = _set_clause(_MEMBER_COLUMNS, fields, start=2)
        row = await self._db.fetch_one(
            f"UPDATE members SET {clause}, updated_at = NOW() WHERE id = $1 RETURNING *",
            member_id,
            *values,
        )
        return self._row_to_member(row) if row else None

    async def update_team_and_members(
        self,
        team_id: UUID,
        team_fields: dict[str, Any],
        member_fields: dict[str, Any],
    ) -> list[Member]:
        """Update a team and all its members inside one transaction."""
        team_clause, team_values = _set_clause(_TEAM_COLUMNS, team_fields, start=2)
        member_clause, member_values = _set_clause(_MEMBER_COLUMNS, member_fields, start=2)
        if not team_clause or not member_clause:
            raise ValueError("Both team and member fields are required")

        try:
            async with self._db.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        f"UPDATE teams SET {team_clause}, updated_at = NOW() WHERE id = $1",
                        team_id,
                        *team_values,
                    )
                    rows = await conn.fetch(
                        f"UPDATE members SET {member_clause}, updated_at = NOW() "
                        "WHERE team_id = $1 RETURNING *",
                        team_id,
                        *member_values,
                    )
        except Exception as e:
            logger.error(f"Team transition rolled back for team {team_id}: {e}")
            raise TransactionError(f"Team {team_id} update rolled back: {e}") from e

        return [self._row_to_member(dict(row)) for row in rows]

    async def start_member_grace(self, member_id: UUID, **fields: Any) -> Member | None:
        """Apply grace-period fields unless a payment failure is already recorded.

        Returns None when another delivery of the same failure got there first.
        """
        clause, values = _set_clause(_MEMBER_COLUMNS, fields, start=2)
        row = await self._db.fetch_one(
            f"UPDATE members SET {clause}, updated_at = NOW() "
            "WHERE id = $1 AND payment_failed_at IS NULL RETURNING *",
            member_id,
            *values,
        )
        return self._row_to_member(row) if row else None

    async def start_team_grace(
        self,
        team_id: UUID,
        team_fields: dict[str, Any],
        member_fields: dict[str, Any],
    ) -> list[Member] | None:
        """Start a team grace period, guarded like start_member_grace.

        Returns None, with nothing written, when the team already had a
        payment failure recorded.
        """
        team_clause, team_values = _set_clause(_TEAM_COLUMNS, team_fields, start=2)
        member_clause, member_values = _set_clause(_MEMBER_COLUMNS, member_fields, start=2)
        if not team_clause or not member_clause:
            raise ValueError("Both team and member fields are required")

        try:
            async with self._db.acquire() as conn:
                async with conn.transaction():
                    claimed = await conn.fetchval(
                        f"UPDATE teams SET {team_clause}, updated_at = NOW() "
                        "WHERE id = $1 AND payment_failed_at IS NULL RETURNING id",
                        team_id,
                        *team_values,
                    )
                    if claimed is None:
                        return None
                    rows = await conn.fetch(
                        f"UPDATE members SET {member_clause}, updated_at = NOW() "
                        "WHERE team_id = $1 RETURNING *",
                        team_id,
                        *member_values,
                    )
        except Exception as e:
            logger.error(f"Team grace start rolled back for team {team_id}: {e}")
            raise TransactionError(f"Team {team_id} update rolled back: {e}") from e

        return [self._row_to_member(dict(row)) for row in rows]

    async def list_expired_grace_members(self, now: datetime) -> list[Member]:
        """Individual members whose grace period has ended."""
        rows = await self._db.fetch_all(
            f"""{_MEMBER_SELECT}
            WHERE grace_period_ends_at <= $1
              AND is_in_debtor_state = false
              AND payment_failed_at IS NOT NULL
              AND team_id IS NULL""",
            now,
        )
        return [self._row_to_member(row) for row in rows]

    async def list_expired_grace_teams(self, now: datetime) -> list[Team]:
        """Teams whose grace period has ended."""
        rows = await self._db.fetch_all(
            f"""{_TEAM_SELECT}
            WHERE grace_period_ends_at <= $1
              AND debtor_state_ends_at IS NULL
              AND payment_failed_at IS NOT NULL""",
            now,
        )
        return [self._row_to_team(row) for row in rows]

    async def list_expired_debtor_members(self, now: datetime) -> list[Member]:
        """Individual members whose debtor period has ended."""
        rows = await self._db.fetch_all(
            f"""{_MEMBER_SELECT}
            WHERE debtor_state_ends_at <= $1
              AND is_in_debtor_state = true
              AND team_id IS NULL""",
            now,
        )
        return [self._row_to_member(row) for row in rows]

    async def list_expired_debtor_teams(self, now: datetime) -> list[Team]:
        """Teams whose debtor period has ended."""
        rows = await self._db.fetch_all(
            f"""{_TEAM_SELECT}
            WHERE debtor_state_ends_at <= $1
              AND payment_failed_at IS NOT NULL""",
            now,
        )
        return [self._row_to_team(row) for row in rows]

    def _row_to_member(self, row: dict[str, Any]) -> Member:
        """Convert a database row to a Member."""
        return Member(
            id=row["id"],
            email=row["email"],
            billing_customer_id=row["stripe_customer_id"],
            subscription_status=SubscriptionStatus(row["subscription_status"]),
            platform_user_id=row["discord_id"],
            intro_completed=row["intro_completed"],
            is_in_debtor_state=row["is_in_debtor_state"],
            payment_failed_at=row["payment_failed_at"],
            grace_period_ends_at=row["grace_period_ends_at"],
            debtor_state_ends_at=row["debtor_state_ends_at"],
            seat_tier=SeatTier(row["seat_tier"]),
            team_id=row["team_id"],
            sent_billing_notifications=list(row["sent_billing_notifications"] or []),
        )

    def _row_to_team(self, row: dict[str, Any]) -> Team:
        """Convert a database row to a Team."""
        return Team(
            id=row["id"],
            name=row["name"],
            billing_customer_id=row["stripe_customer_id"],
            subscription_status=SubscriptionStatus(row["subscription_status"]),
            owner_seat_count=row["owner_seat_count"],
            team_seat_count=row["team_seat_count"],
            payment_failed_at=row["payment_failed_at"],
            grace_period_ends_at=row["grace_period_ends_at"],
            debtor_state_ends_at=row["debtor_state_ends_at"],
        )
