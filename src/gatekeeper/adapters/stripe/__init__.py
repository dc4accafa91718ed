"""Stripe billing adapter."""

from .client import StripeBillingClient, construct_event

__all__ = ["StripeBillingClient", "construct_event"]
