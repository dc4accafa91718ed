"""Core domain - Pure business logic with zero infrastructure dependencies."""

from .domain_types import (
    MANAGED_ROLES,
    DriftIssue,
    DriftSeverity,
    DriftType,
    ManagedRole,
    Member,
    ReconciliationResult,
    SeatTier,
    SubscriptionStatus,
    Team,
)
from .exceptions import (
    BillingProviderError,
    ConfigurationError,
    GatekeeperError,
    MemberNotInGuildError,
    PlatformError,
    RoleNotFoundError,
    TransactionError,
    WebhookVerificationError,
)
from .interfaces import BillingProvider, MembershipStore, PlatformClient
from .roles import entitled_role, expected_role, expected_role_for

__all__ = [
    # Domain types
    "MANAGED_ROLES",
    "DriftIssue",
    "DriftSeverity",
    "DriftType",
    "ManagedRole",
    "Member",
    "ReconciliationResult",
    "SeatTier",
    "SubscriptionStatus",
    "Team",
    # Exceptions
    "GatekeeperError",
    "PlatformError",
    "MemberNotInGuildError",
    "RoleNotFoundError",
    "BillingProviderError",
    "WebhookVerificationError",
    "ConfigurationError",
    "TransactionError",
    # Interfaces
    "BillingProvider",
    "MembershipStore",
    "PlatformClient",
    # Roles
    "entitled_role",
    "expected_role",
    "expected_role_for",
]
