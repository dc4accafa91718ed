"""Stripe implementation of the billing provider."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import stripe
import structlog

from gatekeeper.core.exceptions import BillingProviderError, WebhookVerificationError

logger = structlog.get_logger()


class StripeBillingClient:
    """Read-only view of Stripe subscriptions plus portal links.

    The stripe SDK is synchronous; every call runs in a worker thread so
    the event loop is never blocked.
    """

    def __init__(self, api_key: str) -> None:
        """Initialize the client.

        Args:
            api_key: Stripe secret key.
        """
        self._api_key = api_key

    def _list_subscriptions(self) -> dict[str, str]:
        newest: dict[str, tuple[int, str]] = {}
        subscriptions = stripe.Subscription.list(status="all", limit=100, api_key=self._api_key)
        for sub in subscriptions.auto_paging_iter():
            customer = sub["customer"]
            customer_id = customer if isinstance(customer, str) else customer["id"]
            created = int(sub["created"])
            if customer_id not in newest or created > newest[customer_id][0]:
                newest[customer_id] = (created, sub["status"])
        return {customer_id: status for customer_id, (_, status) in newest.items()}

    async def subscription_statuses(self) -> dict[str, str]:
        """Map each customer id to the status of its newest subscription."""
        try:
            statuses = await asyncio.to_thread(self._list_subscriptions)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Failed to list subscriptions: {e}") from e
        logger.info("billing_statuses_fetched", customers=len(statuses))
        return statuses

    async def create_portal_url(self, customer_id: str, return_url: str) -> str:
        """Create a billing portal session and return its URL."""
        try:
            session = await asyncio.to_thread(
                stripe.billing_portal.Session.create,
                customer=customer_id,
                return_url=return_url,
                api_key=self._api_key,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Failed to create portal session: {e}") from e
        url: str = session["url"]
        return url


def construct_event(payload: bytes, signature: str, webhook_secret: str) -> dict[str, Any]:
    """Verify a webhook signature and return the parsed event.

    Raises:
        WebhookVerificationError: If the payload or signature is invalid.
    """
    try:
        stripe.Webhook.construct_event(payload, signature, webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        raise WebhookVerificationError(str(e)) from e
    result: dict[str, Any] = json.loads(payload)
    return result
