"""Retrying role mutation primitives.

Every platform write in the system goes through RoleAssignmentService.
Role add/remove are set operations on the platform side, so repeating a
call (duplicate webhook delivery, a second reconciliation pass) is safe.
Failures that outlast the retry policy are logged and reported as a
``False`` return; callers decide whether that matters.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from gatekeeper.adapters.audit import AuditAction, AuditLogCreate, record_safely
from gatekeeper.core.domain_types import MANAGED_ROLE_NAMES, ManagedRole, SubscriptionStatus
from gatekeeper.core.exceptions import MemberNotInGuildError, PlatformError

if TYPE_CHECKING:
    from gatekeeper.core.interfaces import AuditSink, MembershipStore, PlatformClient
    from gatekeeper.services.tasks import BackgroundTask, BackgroundTaskQueue

logger = structlog.get_logger()


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for platform calls.

    Attributes:
        attempts: Total attempts, including the first.
        min_wait: Lower bound of the backoff in seconds.
        max_wait: Upper bound of the backoff in seconds.
    """

    attempts: int = 5
    min_wait: float = 1.0
    max_wait: float = 30.0


DEFAULT_POLICY = RetryPolicy(attempts=5, min_wait=1.0, max_wait=30.0)
KICK_POLICY = RetryPolicy(attempts=4, min_wait=1.0, max_wait=30.0)


Throttle = Callable[[], Awaitable[None]]


def _is_retryable(exc: BaseException) -> bool:
    # Connection resets and timeouts that slipped past the adapter are transient.
    if isinstance(exc, OSError):
        return True
    return isinstance(exc, PlatformError) and exc.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "platform_call_retrying",
        attempt=retry_state.attempt_number,
        error=str(exc),
        next_wait=retry_state.next_action.sleep if retry_state.next_action else None,
    )


class RoleAssignmentService:
    """Idempotent, retrying add/remove/swap/kick of managed roles."""

    def __init__(
        self,
        platform: PlatformClient,
        store: MembershipStore,
        audit: AuditSink | None = None,
        queue: BackgroundTaskQueue | None = None,
        policy: RetryPolicy = DEFAULT_POLICY,
        kick_policy: RetryPolicy = KICK_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the service.

        Args:
            platform: Chat platform client.
            store: Membership store, written by remove_and_kick.
            audit: Optional audit sink.
            queue: Background queue used by assign_in_background.
            policy: Retry policy for role changes.
            kick_policy: Retry policy for expelling a member.
            sleep: Awaitable sleep used between retries.
        """
        self._platform = platform
        self._store = store
        self._audit = audit
        self._queue = queue
        self._policy = policy
        self._kick_policy = kick_policy
        self._sleep = sleep

    async def _execute(
        self,
        action: str,
        platform_id: str,
        call: Callable[[], Awaitable[None]],
        policy: RetryPolicy,
        absent_ok: bool = False,
        throttle: Throttle | None = None,
    ) -> bool:
        """Run a platform call under the retry policy; True on success.

        ``throttle`` is awaited before every attempt, retries included.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.attempts),
            wait=wait_exponential(min=policy.min_wait, max=policy.max_wait),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if throttle is not None:
                        await throttle()
                    await call()
        except MemberNotInGuildError:
            if absent_ok:
                logger.info(f"{action}_member_absent", platform_id=platform_id)
                return True
            logger.error(f"{action}_failed", platform_id=platform_id, error="member not in guild")
            return False
        except PlatformError as e:
            logger.error(
                f"{action}_failed",
                platform_id=platform_id,
                error=str(e),
                retryable=e.retryable,
            )
            return False
        except Exception as e:
            logger.error(
                f"{action}_failed",
                platform_id=platform_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return False
        return True

    async def assign(
        self,
        platform_id: str,
        role: ManagedRole,
        reason: str = "Membership role assignment",
        policy: RetryPolicy | None = None,
        throttle: Throttle | None = None,
    ) -> bool:
        """Add a managed role. Assigning ManagedRole.NONE is a no-op."""
        if role is ManagedRole.NONE:
            return True

        ok = await self._execute(
            "role_assign",
            platform_id,
            lambda: self._platform.add_role(platform_id, role.value, reason),
            policy or self._policy,
            throttle=throttle,
        )
        if ok:
            logger.info("role_assigned", platform_id=platform_id, role=role.value)
            await self._record(AuditAction.ROLE_ASSIGNED, platform_id, {"role": role.value})
        return ok

    async def remove(
        self,
        platform_id: str,
        role: ManagedRole,
        reason: str = "Membership role removal",
        policy: RetryPolicy | None = None,
        throttle: Throttle | None = None,
    ) -> bool:
        """Remove one managed role; removing an absent role succeeds."""
        if role is ManagedRole.NONE:
            return True

        ok = await self._execute(
            "role_remove",
            platform_id,
            lambda: self._platform.remove_roles(platform_id, [role.value], reason),
            policy or self._policy,
            throttle=throttle,
            absent_ok=True,
        )
        if ok:
            logger.info("role_removed", platform_id=platform_id, role=role.value)
            await self._record(AuditAction.ROLE_REMOVED, platform_id, {"roles": [role.value]})
        return ok

    async def remove_all_managed(
        self,
        platform_id: str,
        reason: str = "Membership access revoked",
        policy: RetryPolicy | None = None,
        throttle: Throttle | None = None,
    ) -> bool:
        """Strip every managed role, leaving other roles alone."""
        names = sorted(MANAGED_ROLE_NAMES)
        ok = await self._execute(
            "role_remove_all",
            platform_id,
            lambda: self._platform.remove_roles(platform_id, names, reason),
            policy or self._policy,
            throttle=throttle,
            absent_ok=True,
        )
        if ok:
            logger.info("managed_roles_removed", platform_id=platform_id)
            await self._record(AuditAction.ROLE_REMOVED, platform_id, {"roles": names})
        return ok

    async def swap(
        self,
        platform_id: str,
        remove_role: ManagedRole,
        add_role: ManagedRole,
        reason: str = "Membership role change",
        policy: RetryPolicy | None = None,
    ) -> bool:
        """Replace one managed role with another.

        The old role is removed first. If that fails nothing is granted. If
        the new role cannot be added, the old role is put back so the member
        is not left without access; only when that also fails does the
        member stay role-less until the next reconciliation pass.
        """
        if remove_role == add_role:
            return await self.assign(platform_id, add_role, reason, policy)

        if not await self.remove(platform_id, remove_role, reason, policy):
            logger.error(
                "role_swap_aborted",
                platform_id=platform_id,
                remove_role=remove_role.value,
                add_role=add_role.value,
            )
            return False

        if await self.assign(platform_id, add_role, reason, policy):
            return True

        restored = await self.assign(
            platform_id, remove_role, "Restoring role after failed change", policy
        )
        logger.error(
            "role_swap_failed",
            platform_id=platform_id,
            remove_role=remove_role.value,
            add_role=add_role.value,
            restored=restored,
        )
        return False

    async def remove_and_kick(
        self,
        platform_id: str,
        member_id: UUID,
        farewell_message: str | None = None,
    ) -> bool:
        """Expel a member and cancel their membership.

        The database is updated even when the platform calls fail so the
        membership never waits on platform success.

        Args:
            platform_id: Platform user to expel.
            member_id: Member row to cancel.
            farewell_message: Optional direct message sent first.

        Returns:
            Whether the kick itself succeeded.
        """
        if farewell_message:
            try:
                await self._platform.send_direct_message(platform_id, farewell_message)
            except Exception as e:
                logger.info("farewell_dm_failed", platform_id=platform_id, error=str(e))

        roles_removed = await self.remove_all_managed(platform_id, "Debtor period expired")
        kicked = await self._execute(
            "member_kick",
            platform_id,
            lambda: self._platform.kick(platform_id, "Debtor period expired"),
            self._kick_policy,
            absent_ok=True,
        )

        await self._store.update_member(
            member_id,
            subscription_status=SubscriptionStatus.CANCELLED,
            payment_failed_at=None,
            grace_period_ends_at=None,
            debtor_state_ends_at=None,
            is_in_debtor_state=False,
            intro_completed=False,
            sent_billing_notifications=[],
        )

        logger.info(
            "member_expelled",
            platform_id=platform_id,
            member_id=str(member_id),
            roles_removed=roles_removed,
            kicked=kicked,
        )
        await record_safely(
            self._audit,
            AuditLogCreate(
                action=AuditAction.MEMBER_EXPELLED,
                entity_type="Member",
                entity_id=str(member_id),
                details={"platform_id": platform_id, "kicked": kicked},
            ),
        )
        return kicked

    def assign_in_background(
        self,
        platform_id: str,
        role: ManagedRole,
        reason: str = "Membership role assignment",
    ) -> BackgroundTask:
        """Queue an assign and return its handle without waiting."""
        if self._queue is None:
            raise RuntimeError("No background queue configured")
        return self._queue.submit(
            f"assign:{role.value}:{platform_id}",
            lambda: self.assign(platform_id, role, reason),
        )

    async def _record(self, action: AuditAction, platform_id: str, details: dict[str, Any]) -> None:
        await record_safely(
            self._audit,
            AuditLogCreate(
                action=action,
                entity_type="PlatformUser",
                entity_id=platform_id,
                details=details,
            ),
        )
