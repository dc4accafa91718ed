"""Member-facing billing notifications.

Every send here is best effort: a closed DM channel or an SMTP outage is
logged and reported as ``False`` but never raised, because the billing
state change that triggered the message is already committed.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from gatekeeper.core.exceptions import BillingProviderError

if TYPE_CHECKING:
    from gatekeeper.adapters.notifications.email import EmailNotifier
    from gatekeeper.core.domain_types import Member
    from gatekeeper.core.interfaces import BillingProvider, PlatformClient

logger = structlog.get_logger()

PAYMENT_FAILED_MESSAGE = (
    "Hark! The Treasury reports a matter requiring thy attention.\n\n"
    "A payment for thy membership hath encountered difficulties. "
    "Fear not - thou hast 48 hours to resolve this matter whilst retaining full access.\n\n"
    "Visit thy Stripe billing portal to update thy payment details.\n\n"
    "The Council values thy presence and awaits thy resolution."
)

TEAM_OWNER_PAYMENT_FAILED_MESSAGE = (
    "Hark! The Treasury reports a matter requiring thy attention.\n\n"
    "A payment for thy organization's membership hath encountered difficulties. "
    "Fear not - thy team hath 48 hours to resolve this matter whilst retaining full access.\n\n"
    "Visit thy Stripe billing portal to update thy payment details.\n\n"
    "The Council values thy organization's presence and awaits thy resolution."
)

TEAM_MEMBER_PAYMENT_FAILED_MESSAGE = (
    "Hail, member of The Revenue Council!\n\n"
    "Thy organization hath encountered a billing matter. "
    "Please contact thy organization administrator for details.\n\n"
    "Thy access may be affected if this matter is not resolved."
)

DEBTOR_MESSAGE = (
    "Thy grace period hath expired.\n\n"
    "Thy access to The Revenue Council is now restricted to the #billing-support channel "
    "until thy payment matter is resolved.\n\n"
    "Visit thy Stripe billing portal to update thy payment details.\n\n"
    "The Council awaits thy return to full standing."
)

RECOVERY_MESSAGE = (
    "Rejoice! The Treasury confirms thy payment hath been received.\n\n"
    "Thy full access to The Revenue Council is restored."
)


def farewell_message(app_url: str) -> str:
    """DM sent right before a debtor is expelled."""
    return (
        "Hail, former member of The Revenue Council!\n\n"
        "Thy billing matter hath remained unresolved for 30 days. "
        "As such, thy access to the guild hath ended.\n\n"
        f"Should thy circumstances change, The Gatekeeper awaits: {app_url}\n\n"
        "We hope to see thee return in better times."
    )


class NotificationService:
    """Sends billing DMs and emails to members."""

    def __init__(
        self,
        platform: PlatformClient,
        email: EmailNotifier | None = None,
        billing: BillingProvider | None = None,
        app_url: str = "http://localhost:3000",
    ) -> None:
        self._platform = platform
        self._email = email
        self._billing = billing
        self.app_url = app_url

    async def _dm(self, member: Member, content: str, kind: str) -> bool:
        if not member.platform_user_id:
            logger.warning("dm_skipped_not_linked", member_id=str(member.id), kind=kind)
            return False
        try:
            await self._platform.send_direct_message(member.platform_user_id, content)
        except Exception as e:
            logger.warning(
                "dm_failed",
                member_id=str(member.id),
                kind=kind,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        logger.info("dm_sent", member_id=str(member.id), kind=kind)
        return True

    async def send_payment_failed_dm(self, member: Member) -> bool:
        """Notify an individual member of a renewal failure."""
        return await self._dm(member, PAYMENT_FAILED_MESSAGE, "payment_failed")

    async def send_team_payment_failed_dm(self, member: Member, is_owner: bool) -> bool:
        """Owners get full billing details, seat holders a brief notice."""
        content = (
            TEAM_OWNER_PAYMENT_FAILED_MESSAGE if is_owner else TEAM_MEMBER_PAYMENT_FAILED_MESSAGE
        )
        return await self._dm(member, content, "team_payment_failed")

    async def send_debtor_dm(self, member: Member) -> bool:
        """Tell a member their access is now restricted."""
        return await self._dm(member, DEBTOR_MESSAGE, "debtor_state")

    async def send_recovery_dm(self, member: Member) -> bool:
        """Confirm restored access after a successful payment."""
        return await self._dm(member, RECOVERY_MESSAGE, "payment_recovered")

    def farewell_message(self) -> str:
        """Farewell DM text pointing back at the signup page."""
        return farewell_message(self.app_url)

    async def send_payment_failure_email(
        self,
        member: Member,
        customer_id: str,
        is_team_owner: bool = False,
    ) -> bool:
        """Email a billing-portal link to whoever pays."""
        if self._email is None or self._billing is None or not member.email:
            return False
        try:
            portal_url = await self._billing.create_portal_url(
                customer_id, f"{self.app_url}/dashboard"
            )
        except BillingProviderError as e:
            logger.error("portal_link_failed", member_id=str(member.id), error=str(e))
            return False
        return await asyncio.to_thread(
            self._email.send_payment_failure, member.email, portal_url, is_team_owner
        )
