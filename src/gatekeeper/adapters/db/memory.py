"""In-memory membership store for testing and local development."""

from __future__ import annotations

import copy
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import UUID

from gatekeeper.core.domain_types import Member, Team
from gatekeeper.core.exceptions import TransactionError


class InMemoryMembershipStore:
    """Dict-backed store with the same transactional guarantees as Postgres.

    Multi-row updates are staged on a copy and swapped in only once every
    row succeeded, so an injected failure leaves no partial state behind.

    Attributes:
        members: Member rows keyed by id.
        teams: Team rows keyed by id.
        fail_member_update: Optional hook called before each member row is
            written inside a team transaction; raise from it to simulate a
            mid-transaction failure.
        feature_flags: Flag values served through the FlagSource methods.
    """

    def __init__(
        self,
        members: list[Member] | None = None,
        teams: list[Team] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            members: Initial member rows.
            teams: Initial team rows.
        """
        self.members: dict[UUID, Member] = {m.id: m for m in members or []}
        self.teams: dict[UUID, Team] = {t.id: t for t in teams or []}
        self.fail_member_update: Callable[[Member], None] | None = None
        self.feature_flags: dict[str, bool] = {}
        self.recorded_events: dict[str, dict[str, Any]] = {}

    def add_member(self, member: Member) -> Member:
        """Insert a member row."""
        self.members[member.id] = member
        return member

    def add_team(self, team: Team) -> Team:
        """Insert a team row."""
        self.teams[team.id] = team
        return team

    async def get_member(self, member_id: UUID) -> Member | None:
        """Get member by ID."""
        member = self.members.get(member_id)
        return copy.deepcopy(member) if member else None

    async def get_member_by_customer(self, customer_id: str) -> Member | None:
        """Get member by billing customer reference."""
        for member in self.members.values():
            if member.billing_customer_id == customer_id:
                return copy.deepcopy(member)
        return None

    async def get_team(self, team_id: UUID) -> Team | None:
        """Get team by ID."""
        team = self.teams.get(team_id)
        return copy.deepcopy(team) if team else None

    async def get_team_by_customer(self, customer_id: str) -> Team | None:
        """Get team by billing customer reference."""
        for team in self.teams.values():
            if team.billing_customer_id == customer_id:
                return copy.deepcopy(team)
        return None

    async def list_linked_members(self) -> list[Member]:
        """List members with a platform account."""
        return [copy.deepcopy(m) for m in self.members.values() if m.is_platform_linked]

    async def list_teams(self) -> list[Team]:
        """List all teams."""
        return [copy.deepcopy(t) for t in self.teams.values()]

    async def list_team_members(self, team_id: UUID) -> list[Member]:
        """List the members of a team."""
        return [copy.deepcopy(m) for m in self.members.values() if m.team_id == team_id]

    async def update_member(self, member_id: UUID, **fields: Any) -> Member | None:
        """Update member fields in place."""
        member = self.members.get(member_id)
        if member is None:
            return None
        updated = replace(member, **fields)
        self.members[member_id] = updated
        return copy.deepcopy(updated)

    async def update_team_and_members(
        self,
        team_id: UUID,
        team_fields: dict[str, Any],
        member_fields: dict[str, Any],
    ) -> list[Member]:
        """Stage the team and member updates, then commit all at once."""
        team = self.teams.get(team_id)
        if team is None:
            raise TransactionError(f"Team {team_id} not found")

        staged_team = replace(team, **team_fields)
        staged_members: dict[UUID, Member] = {}
        try:
            for member in self.members.values():
                if member.team_id != team_id:
                    continue
                if self.fail_member_update is not None:
                    self.fail_member_update(member)
                staged_members[member.id] = replace(member, **member_fields)
        except Exception as e:
            raise TransactionError(f"Team {team_id} update rolled back: {e}") from e

        self.teams[team_id] = staged_team
        self.members.update(staged_members)
        return [copy.deepcopy(m) for m in staged_members.values()]

    async def start_member_grace(self, member_id: UUID, **fields: Any) -> Member | None:
        """Apply grace fields unless a payment failure is already recorded."""
        member = self.members.get(member_id)
        if member is None or member.payment_failed_at is not None:
            return None
        return await self.update_member(member_id, **fields)

    async def start_team_grace(
        self,
        team_id: UUID,
        team_fields: dict[str, Any],
        member_fields: dict[str, Any],
    ) -> list[Member] | None:
        """Team variant of start_member_grace; None when already in grace."""
        team = self.teams.get(team_id)
        if team is not None and team.payment_failed_at is not None:
            return None
        return await self.update_team_and_members(team_id, team_fields, member_fields)

    async def list_expired_grace_members(self, now: datetime) -> list[Member]:
        """Individual members whose grace period has ended."""
        return [
            copy.deepcopy(m)
            for m in self.members.values()
            if m.team_id is None
            and m.payment_failed_at is not None
            and not m.is_in_debtor_state
            and m.grace_period_ends_at is not None
            and m.grace_period_ends_at <= now
        ]

    async def list_expired_grace_teams(self, now: datetime) -> list[Team]:
        """Teams whose grace period has ended."""
        return [
            copy.deepcopy(t)
            for t in self.teams.values()
            if t.payment_failed_at is not None
            and t.debtor_state_ends_at is None
            and t.grace_period_ends_at is not None
            and t.grace_period_ends_at <= now
        ]

    async def list_expired_debtor_members(self, now: datetime) -> list[Member]:
        """Individual members whose debtor period has ended."""
        return [
            copy.deepcopy(m)
            for m in self.members.values()
            if m.team_id is None
            and m.is_in_debtor_state
            and m.debtor_state_ends_at is not None
            and m.debtor_state_ends_at <= now
        ]

    async def list_expired_debtor_teams(self, now: datetime) -> list[Team]:
        """Teams whose debtor period has ended."""
        return [
            copy.deepcopy(t)
            for t in self.teams.values()
            if t.payment_failed_at is not None
            and t.debtor_state_ends_at is not None
            and t.debtor_state_ends_at <= now
        ]

    # FlagSource
    async def load_all(self) -> dict[str, bool]:
        """Return every stored flag."""
        return dict(self.feature_flags)

    async def upsert(self, key: str, enabled: bool, updated_by: str) -> None:
        """Store a flag value."""
        self.feature_flags[key] = enabled

    # EventLedger
    async def record_if_new(self, event_id: str, event_type: str, payload: dict[str, Any]) -> bool:
        """Record the event id; False if already seen."""
        if event_id in self.recorded_events:
            return False
        self.recorded_events[event_id] = {"type": event_type, "payload": payload}
        return True
