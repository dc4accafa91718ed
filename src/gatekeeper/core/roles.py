"""The single source of truth for which managed role a member should hold."""

from __future__ import annotations

from typing import assert_never

from .domain_types import (
    ACCESS_GRANTING_STATUSES,
    MANAGED_ROLE_NAMES,
    ManagedRole,
    Member,
    SeatTier,
    SubscriptionStatus,
)


def expected_role(
    seat_tier: SeatTier,
    intro_completed: bool,
    is_in_debtor_state: bool,
) -> ManagedRole:
    """Map (seat tier, intro status, debtor state) to exactly one role.

    Debtor wins over everything, then unintroduced members are Squires,
    then owners and individuals are Lords and team members are Knights.
    """
    if is_in_debtor_state:
        return ManagedRole.DEBTOR
    if not intro_completed:
        return ManagedRole.SQUIRE
    if seat_tier is SeatTier.OWNER or seat_tier is SeatTier.INDIVIDUAL:
        return ManagedRole.LORD
    if seat_tier is SeatTier.TEAM_MEMBER:
        return ManagedRole.KNIGHT
    assert_never(seat_tier)


def expected_role_for(member: Member) -> ManagedRole:
    """Convenience wrapper reading the inputs off a member row."""
    return expected_role(member.seat_tier, member.intro_completed, member.is_in_debtor_state)


def entitled_role(member: Member, has_access: bool | None = None) -> ManagedRole:
    """Role the member should hold right now, NONE when access is not granted.

    Args:
        member: Fresh member row.
        has_access: Billing verdict; derived from the database status if omitted.
    """
    if member.is_in_debtor_state:
        return ManagedRole.DEBTOR
    if has_access is None:
        has_access = grants_access(member.subscription_status)
    if not has_access:
        return ManagedRole.NONE
    return expected_role_for(member)


def grants_access(status: SubscriptionStatus) -> bool:
    """Whether a database subscription status keeps platform access."""
    return status in ACCESS_GRANTING_STATUSES


def parse_managed_roles(role_names: set[str] | frozenset[str]) -> frozenset[ManagedRole]:
    """Keep only the managed roles out of a platform role-name set."""
    return frozenset(ManagedRole(name) for name in role_names if name in MANAGED_ROLE_NAMES)


# Payment processor statuses that keep platform access.
BILLING_ACCESS_STATUSES = frozenset({"active", "trialing", "past_due"})


def billing_disagrees(billing_status: str | None, database_status: SubscriptionStatus) -> bool:
    """Whether the processor's access verdict differs from the database's.

    Only reported; the database status alone decides the intended role.
    """
    if billing_status is None:
        return False
    return (billing_status in BILLING_ACCESS_STATUSES) != grants_access(database_status)
