"""Protocol definitions for all external dependencies.

This module defines the interfaces (Protocols) that adapters must implement.
The core domain only depends on these protocols, never on concrete
implementations: the relational store, the chat platform, the payment
processor, the audit sink and the flag source are all swapped for fakes
in tests.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from uuid import UUID

if TYPE_CHECKING:
    from gatekeeper.adapters.audit.types import AuditLogCreate

    from .domain_types import Member, Team


@runtime_checkable
class PlatformClient(Protocol):
    """Interface for the chat platform (one server/guild).

    Every mutating call raises PlatformError on failure. Role mutations are
    set operations: adding a held role or removing an absent one succeeds.
    """

    async def fetch_member_roles(self, platform_user_id: str) -> set[str]:
        """Return the names of all roles the user holds.

        Raises:
            MemberNotInGuildError: If the user is not in the server.
        """
        ...

    async def fetch_all_member_roles(self) -> dict[str, set[str]]:
        """Return role names for every member of the server, keyed by user id."""
        ...

    async def add_role(self, platform_user_id: str, role_name: str, reason: str) -> None:
        """Add a role by name."""
        ...

    async def remove_roles(
        self, platform_user_id: str, role_names: Iterable[str], reason: str
    ) -> None:
        """Remove roles by name; roles the user does not hold are ignored."""
        ...

    async def kick(self, platform_user_id: str, reason: str) -> None:
        """Expel the user from the server."""
        ...

    async def send_direct_message(self, platform_user_id: str, content: str) -> None:
        """Send a direct message to the user."""
        ...

    async def send_channel_message(self, channel_id: str, content: str) -> None:
        """Post a message in a server channel."""
        ...


@runtime_checkable
class MembershipStore(Protocol):
    """Interface for the relational store of members and teams.

    Multi-row transitions (team + all its members) are atomic: either every
    row reflects the new state or none does.
    """

    async def get_member(self, member_id: UUID) -> Member | None:
        """Get a member by id."""
        ...

    async def get_member_by_customer(self, customer_id: str) -> Member | None:
        """Get an individual member by billing customer reference."""
        ...

    async def get_team(self, team_id: UUID) -> Team | None:
        """Get a team by id."""
        ...

    async def get_team_by_customer(self, customer_id: str) -> Team | None:
        """Get a team by billing customer reference."""
        ...

    async def list_linked_members(self) -> list[Member]:
        """List all members with a platform account linked."""
        ...

    async def list_teams(self) -> list[Team]:
        """List all teams."""
        ...

    async def list_team_members(self, team_id: UUID) -> list[Member]:
        """List the members of a team."""
        ...

    async def update_member(self, member_id: UUID, **fields: Any) -> Member | None:
        """Update member columns in place and return the new row."""
        ...

    async def update_team_and_members(
        self,
        team_id: UUID,
        team_fields: dict[str, Any],
        member_fields: dict[str, Any],
    ) -> list[Member]:
        """Atomically update a team and every one of its members.

        Returns:
            The updated member rows.

        Raises:
            TransactionError: If any row update failed; nothing is applied.
        """
        ...

    async def start_member_grace(self, member_id: UUID, **fields: Any) -> Member | None:
        """Apply grace-period fields only if no payment failure is recorded yet.

        Returns:
            The updated row, or None if the member was already in grace.
        """
        ...

    async def start_team_grace(
        self,
        team_id: UUID,
        team_fields: dict[str, Any],
        member_fields: dict[str, Any],
    ) -> list[Member] | None:
        """Atomic team grace start, skipped when the team is already in grace.

        Returns:
            The updated member rows, or None if nothing was written.

        Raises:
            TransactionError: If any row update failed; nothing is applied.
        """
        ...

    async def list_expired_grace_members(self, now: datetime) -> list[Member]:
        """Individual members whose grace period ended and are not debtors yet."""
        ...

    async def list_expired_grace_teams(self, now: datetime) -> list[Team]:
        """Teams whose grace period ended and are not debtors yet."""
        ...

    async def list_expired_debtor_members(self, now: datetime) -> list[Member]:
        """Individual members whose debtor period ended."""
        ...

    async def list_expired_debtor_teams(self, now: datetime) -> list[Team]:
        """Teams whose debtor period ended."""
        ...


@runtime_checkable
class BillingProvider(Protocol):
    """Interface for the payment processor (read-only plus portal links)."""

    async def subscription_statuses(self) -> dict[str, str]:
        """Map customer id to the status of its most recent subscription."""
        ...

    async def create_portal_url(self, customer_id: str, return_url: str) -> str:
        """Create a self-service billing portal link for a customer."""
        ...


class AuditSink(Protocol):
    """Append-only audit log."""

    async def record(self, entry: AuditLogCreate) -> UUID:
        """Append an entry and return its id."""
        ...


class FlagSource(Protocol):
    """Persistent storage for boolean feature flags."""

    async def load_all(self) -> dict[str, bool]:
        """Load every flag."""
        ...

    async def upsert(self, key: str, enabled: bool, updated_by: str) -> None:
        """Create or update a flag."""
        ...


class EventLedger(Protocol):
    """Records processed webhook event ids for de-duplication."""

    async def record_if_new(self, event_id: str, event_type: str, payload: dict[str, Any]) -> bool:
        """Record the event; return False if it was already recorded."""
        ...

