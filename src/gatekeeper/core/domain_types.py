"""Domain types - the three systems of record as seen by the access engine.

Member and Team mirror rows of the relational store, which is the
authority for the *intended* state of a membership. DriftIssue and
ReconciliationResult are produced fresh on every reconciliation run and
are never persisted beyond logs, notifications and audit entries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    """Subscription status as recorded in the relational store."""

    NONE = "NONE"
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"


# Statuses that keep platform access (PAST_DUE covers the grace period).
ACCESS_GRANTING_STATUSES = frozenset(
    {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
)


class SeatTier(str, Enum):
    """Classification of a member's subscription slot."""

    INDIVIDUAL = "INDIVIDUAL"
    OWNER = "OWNER"
    TEAM_MEMBER = "TEAM_MEMBER"


class ManagedRole(str, Enum):
    """Platform roles controlled exclusively by this system.

    NONE is the absence of any managed role; it is never sent to the
    platform.
    """

    SQUIRE = "Squire"
    KNIGHT = "Knight"
    LORD = "Lord"
    DEBTOR = "Debtor"
    NONE = "None"


MANAGED_ROLES: tuple[ManagedRole, ...] = (
    ManagedRole.SQUIRE,
    ManagedRole.KNIGHT,
    ManagedRole.LORD,
    ManagedRole.DEBTOR,
)
MANAGED_ROLE_NAMES = frozenset(role.value for role in MANAGED_ROLES)
MEMBERSHIP_ROLES = frozenset({ManagedRole.SQUIRE, ManagedRole.KNIGHT, ManagedRole.LORD})


class DriftType(str, Enum):
    """Kinds of divergence between billing, database and platform state."""

    MISSING_ACCESS = "MISSING_ACCESS"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    ROLE_MISMATCH = "ROLE_MISMATCH"
    DEBTOR_MISMATCH = "DEBTOR_MISMATCH"


class DriftSeverity(str, Enum):
    """How urgent a drift issue is."""

    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass
class Member:
    """A paying (or formerly paying) member of the community.

    Attributes:
        id: Database identifier.
        email: Contact address for billing email.
        billing_customer_id: Payment processor customer reference.
        subscription_status: Status recorded in the database.
        platform_user_id: Chat platform user id, None until claimed.
        intro_completed: Whether the member posted their introduction.
        is_in_debtor_state: Billing failure progressed past the grace period.
        payment_failed_at: Start of the current failure episode (set once).
        grace_period_ends_at: End of the 48h grace window.
        debtor_state_ends_at: When a debtor gets expelled.
        seat_tier: Subscription slot classification.
        team_id: Owning team, if any.
        sent_billing_notifications: Keys of billing notices already sent.
    """

    id: UUID
    email: str | None = None
    billing_customer_id: str | None = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    platform_user_id: str | None = None
    intro_completed: bool = False
    is_in_debtor_state: bool = False
    payment_failed_at: datetime | None = None
    grace_period_ends_at: datetime | None = None
    debtor_state_ends_at: datetime | None = None
    seat_tier: SeatTier = SeatTier.INDIVIDUAL
    team_id: UUID | None = None
    sent_billing_notifications: list[str] = field(default_factory=list)

    @property
    def is_platform_linked(self) -> bool:
        """Whether the member has claimed their platform account."""
        return self.platform_user_id is not None

    @property
    def is_owner(self) -> bool:
        """Team owners receive full billing details."""
        return self.seat_tier == SeatTier.OWNER


@dataclass
class Team:
    """A company subscription that owns a set of member seats."""

    id: UUID
    name: str
    billing_customer_id: str | None = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    owner_seat_count: int = 1
    team_seat_count: int = 0
    payment_failed_at: datetime | None = None
    grace_period_ends_at: datetime | None = None
    debtor_state_ends_at: datetime | None = None


class DriftIssue(BaseModel):
    """A single divergence detected during a reconciliation run.

    Attributes:
        type: Classification of the drift.
        member_id: Affected member.
        platform_user_id: Affected platform account.
        description: Human readable explanation.
        billing_status: Status observed at the payment processor.
        database_status: Status observed in the database.
        platform_roles: Managed roles observed on the platform.
        severity: How urgent the issue is.
    """

    model_config = ConfigDict(frozen=True)

    type: DriftType
    member_id: UUID
    platform_user_id: str | None
    description: str
    billing_status: str | None
    database_status: str | None
    platform_roles: tuple[str, ...] = ()
    severity: DriftSeverity


class BillingMismatch(BaseModel):
    """Processor and database disagree on whether a member keeps access.

    The database decides the intended role; the mismatch is only reported.
    """

    model_config = ConfigDict(frozen=True)

    member_id: UUID
    billing_status: str
    database_status: str


class ReconciliationResult(BaseModel):
    """Outcome of one reconciliation run."""

    model_config = ConfigDict(frozen=True)

    run_id: UUID
    issues_found: int
    issues_fixed: int
    issues: list[DriftIssue] = Field(default_factory=list)
    billing_mismatches: list[BillingMismatch] = Field(default_factory=list)
    auto_fix_enabled: bool
    triggered_by: str = "scheduled"
    members_checked: int = 0
    teams_checked: int = 0
    duration_ms: int = 0
