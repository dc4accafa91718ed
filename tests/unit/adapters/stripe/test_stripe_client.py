"""Tests for the Stripe billing adapter."""

import json
from unittest.mock import MagicMock

import pytest
import stripe
from gatekeeper.adapters.stripe import StripeBillingClient, construct_event
from gatekeeper.core.exceptions import BillingProviderError, WebhookVerificationError


class TestSubscriptionStatuses:
    """Tests for subscription_statuses."""

    async def test_newest_subscription_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A customer's latest subscription decides their status."""
        listing = MagicMock()
        listing.auto_paging_iter.return_value = iter(
            [
                {"customer": "cus_1", "status": "canceled", "created": 100},
                {"customer": "cus_1", "status": "active", "created": 200},
                {"customer": {"id": "cus_2"}, "status": "past_due", "created": 150},
            ]
        )
        monkeypatch.setattr(stripe.Subscription, "list", MagicMock(return_value=listing))

        statuses = await StripeBillingClient("sk_test").subscription_statuses()

        assert statuses == {"cus_1": "active", "cus_2": "past_due"}

    async def test_api_error_wrapped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Stripe errors become BillingProviderError."""
        monkeypatch.setattr(
            stripe.Subscription, "list", MagicMock(side_effect=stripe.APIConnectionError("down"))
        )

        with pytest.raises(BillingProviderError):
            await StripeBillingClient("sk_test").subscription_statuses()


class TestPortal:
    """Tests for create_portal_url."""

    async def test_returns_session_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """The session URL is returned."""
        create = MagicMock(return_value={"url": "https://billing.stripe.com/p/session"})
        monkeypatch.setattr(stripe.billing_portal.Session, "create", create)

        url = await StripeBillingClient("sk_test").create_portal_url("cus_1", "https://app/x")

        assert url == "https://billing.stripe.com/p/session"
        assert create.call_args.kwargs["customer"] == "cus_1"


class TestConstructEvent:
    """Tests for webhook verification."""

    def test_valid_signature(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A verified payload is parsed to a dict."""
        monkeypatch.setattr(stripe.Webhook, "construct_event", MagicMock())
        payload = json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode()

        event = construct_event(payload, "t=1,v1=abc", "whsec_test")

        assert event["type"] == "invoice.paid"

    def test_invalid_signature(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Bad signatures raise WebhookVerificationError."""
        monkeypatch.setattr(
            stripe.Webhook,
            "construct_event",
            MagicMock(side_effect=stripe.SignatureVerificationError("bad", "t=1,v1=abc")),
        )

        with pytest.raises(WebhookVerificationError):
            construct_event(b"{}", "t=1,v1=abc", "whsec_test")
