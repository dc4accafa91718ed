"""Discord implementation of the platform client."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import aiohttp
import discord
import structlog

from gatekeeper.core.exceptions import MemberNotInGuildError, PlatformError, RoleNotFoundError

logger = structlog.get_logger()

# discord.py lets connection-level failures from its HTTP session escape as-is.
PLATFORM_ERRORS = (discord.DiscordException, aiohttp.ClientError, asyncio.TimeoutError, OSError)


def _translate(e: BaseException, action: str) -> PlatformError:
    """Map a discord.py or transport exception to the platform error taxonomy."""
    if isinstance(e, discord.RateLimited):
        return PlatformError(f"{action}: rate limited for {e.retry_after:.1f}s", retryable=True)
    if isinstance(e, discord.Forbidden):
        return PlatformError(f"{action}: missing permissions", retryable=False)
    if isinstance(e, discord.HTTPException):
        retryable = e.status == 429 or e.status >= 500
        return PlatformError(f"{action}: HTTP {e.status} {e.text}", retryable=retryable)
    if isinstance(e, (aiohttp.ClientError, asyncio.TimeoutError, OSError)):
        return PlatformError(f"{action}: {type(e).__name__}: {e}", retryable=True)
    return PlatformError(f"{action}: {e}")


class DiscordPlatformClient:
    """Platform client bound to a single guild.

    The discord.Client must already be logged in; this adapter only issues
    REST calls and never relies on the member cache being warm.
    """

    def __init__(self, client: discord.Client, guild_id: int) -> None:
        """Initialize the adapter.

        Args:
            client: Logged-in discord.py client.
            guild_id: The server whose roles are managed.
        """
        self._client = client
        self._guild_id = guild_id

    async def _guild(self) -> discord.Guild:
        guild = self._client.get_guild(self._guild_id)
        if guild is not None:
            return guild
        try:
            return await self._client.fetch_guild(self._guild_id)
        except PLATFORM_ERRORS as e:
            raise _translate(e, "fetch_guild") from e

    async def _member(self, guild: discord.Guild, platform_user_id: str) -> discord.Member:
        try:
            return await guild.fetch_member(int(platform_user_id))
        except discord.NotFound as e:
            raise MemberNotInGuildError(platform_user_id) from e
        except PLATFORM_ERRORS as e:
            raise _translate(e, "fetch_member") from e

    def _role(self, guild: discord.Guild, role_name: str) -> discord.Role:
        role = discord.utils.get(guild.roles, name=role_name)
        if role is None:
            raise RoleNotFoundError(role_name)
        return role

    async def fetch_member_roles(self, platform_user_id: str) -> set[str]:
        """Return the names of the roles the user holds."""
        guild = await self._guild()
        member = await self._member(guild, platform_user_id)
        return {role.name for role in member.roles}

    async def fetch_all_member_roles(self) -> dict[str, set[str]]:
        """Return role names for every guild member."""
        guild = await self._guild()
        roles: dict[str, set[str]] = {}
        try:
            async for member in guild.fetch_members(limit=None):
                roles[str(member.id)] = {role.name for role in member.roles}
        except PLATFORM_ERRORS as e:
            raise _translate(e, "fetch_members") from e
        logger.debug("guild_members_fetched", guild_id=self._guild_id, count=len(roles))
        return roles

    async def add_role(self, platform_user_id: str, role_name: str, reason: str) -> None:
        """Add a role by name."""
        guild = await self._guild()
        member = await self._member(guild, platform_user_id)
        role = self._role(guild, role_name)
        try:
            await member.add_roles(role, reason=reason)
        except PLATFORM_ERRORS as e:
            raise _translate(e, "add_roles") from e

    async def remove_roles(
        self, platform_user_id: str, role_names: Iterable[str], reason: str
    ) -> None:
        """Remove the named roles the user actually holds."""
        guild = await self._guild()
        member = await self._member(guild, platform_user_id)
        wanted = set(role_names)
        held = [role for role in member.roles if role.name in wanted]
        if not held:
            return
        try:
            await member.remove_roles(*held, reason=reason)
        except PLATFORM_ERRORS as e:
            raise _translate(e, "remove_roles") from e

    async def kick(self, platform_user_id: str, reason: str) -> None:
        """Kick the user from the guild."""
        guild = await self._guild()
        member = await self._member(guild, platform_user_id)
        try:
            await member.kick(reason=reason)
        except PLATFORM_ERRORS as e:
            raise _translate(e, "kick") from e

    async def send_direct_message(self, platform_user_id: str, content: str) -> None:
        """DM the user; raises if their DMs are closed."""
        try:
            user = await self._client.fetch_user(int(platform_user_id))
            await user.send(content)
        except PLATFORM_ERRORS as e:
            raise _translate(e, "send_dm") from e

    async def send_channel_message(self, channel_id: str, content: str) -> None:
        """Post in a guild channel."""
        try:
            channel = self._client.get_channel(int(channel_id)) or await self._client.fetch_channel(
                int(channel_id)
            )
            if not isinstance(channel, discord.abc.Messageable):
                raise PlatformError(f"Channel {channel_id} is not messageable", retryable=False)
            await channel.send(content)
        except PLATFORM_ERRORS as e:
            raise _translate(e, "send_channel_message") from e
