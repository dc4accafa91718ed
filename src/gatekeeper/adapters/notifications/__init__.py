"""Notification adapters."""

from .email import EmailConfig, EmailNotifier

__all__ = ["EmailConfig", "EmailNotifier"]
