"""Domain-specific exceptions.

All exceptions in the gatekeeper system inherit from GatekeeperError,
making it easy to catch all system errors while still being able
to handle specific error types.
"""

from __future__ import annotations


class GatekeeperError(Exception):
    """Base exception for all gatekeeper errors."""

    pass


class PlatformError(GatekeeperError):
    """A chat platform call failed.

    The `retryable` attribute tells the retry layer whether another attempt
    can succeed (network errors, rate limits) or not (missing member).

    Attributes:
        retryable: Whether this error is likely transient.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        """Initialize PlatformError.

        Args:
            message: Error description.
            retryable: Whether error is transient and retryable.
        """
        super().__init__(message)
        self.retryable = retryable


class MemberNotInGuildError(PlatformError):
    """The platform user is not (or no longer) in the server."""

    def __init__(self, platform_user_id: str) -> None:
        """Initialize with the missing user id."""
        super().__init__(f"Platform user {platform_user_id} not found in guild", retryable=False)
        self.platform_user_id = platform_user_id


class RoleNotFoundError(PlatformError):
    """A managed role does not exist on the server."""

    def __init__(self, role_name: str) -> None:
        """Initialize with the missing role name."""
        super().__init__(f"Role not found: {role_name}", retryable=False)
        self.role_name = role_name


class BillingProviderError(GatekeeperError):
    """A payment processor call failed."""

    pass


class WebhookVerificationError(GatekeeperError):
    """Webhook payload signature did not verify."""

    pass


class ConfigurationError(GatekeeperError):
    """Invalid scheduler or environment configuration."""

    pass


class TransactionError(GatekeeperError):
    """A store transaction failed and was rolled back."""

    pass
