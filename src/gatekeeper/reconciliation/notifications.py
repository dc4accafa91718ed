"""Admin alerts for reconciliation runs."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from gatekeeper.core.exceptions import PlatformError
from gatekeeper.reconciliation.summary import format_summary

if TYPE_CHECKING:
    from gatekeeper.adapters.notifications.email import EmailNotifier
    from gatekeeper.core.domain_types import ReconciliationResult
    from gatekeeper.core.interfaces import PlatformClient

logger = structlog.get_logger()

ALERT_PREFIX = "**[Reconciliation Alert]**"


class AdminNotifier:
    """Posts the summary to the admin channel and emails the admin.

    A clean run sends nothing. Each channel fails independently.
    """

    def __init__(
        self,
        platform: PlatformClient,
        admin_channel_id: str | None = None,
        email: EmailNotifier | None = None,
        admin_email: str | None = None,
    ) -> None:
        self._platform = platform
        self._channel_id = admin_channel_id
        self._email = email
        self._admin_email = admin_email

    async def notify(self, result: ReconciliationResult) -> bool:
        """Send alerts for a run with issues. Returns whether anything was sent."""
        if result.issues_found == 0:
            logger.info("reconciliation_clean", run_id=str(result.run_id))
            return False

        summary = format_summary(result)
        sent = False

        if self._channel_id:
            try:
                await self._platform.send_channel_message(
                    self._channel_id, f"{ALERT_PREFIX}\n\n{summary}"
                )
                sent = True
                logger.info("reconciliation_alert_posted", channel_id=self._channel_id)
            except PlatformError as e:
                logger.error("reconciliation_alert_failed", error=str(e))

        if self._email is not None and self._admin_email:
            delivered = await asyncio.to_thread(
                self._email.send_reconciliation_report,
                self._admin_email,
                result.issues_found,
                summary,
            )
            sent = sent or delivered

        return sent
