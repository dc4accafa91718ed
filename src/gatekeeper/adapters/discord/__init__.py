"""Discord platform adapter."""

from .client import DiscordPlatformClient

__all__ = ["DiscordPlatformClient"]
