"""Applies corrective role operations for detected drift."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

from gatekeeper.adapters.audit import AuditAction, AuditLogCreate, record_safely
from gatekeeper.core.domain_types import DriftIssue, DriftType, ManagedRole
from gatekeeper.core.roles import entitled_role, expected_role_for
from gatekeeper.services.roles import RetryPolicy

if TYPE_CHECKING:
    from gatekeeper.core.interfaces import AuditSink, MembershipStore
    from gatekeeper.services.roles import RoleAssignmentService

logger = structlog.get_logger()

# Platform quota is 10 role operations per 10 seconds.
BATCH_SIZE = 5
BATCH_DELAY_SECONDS = 2.0
FIX_POLICY = RetryPolicy(attempts=2, min_wait=1.0, max_wait=5.0)


class AutoFixer:
    """Fixes drift issues while pacing the role operations they need.

    At most ``batch_size`` platform role calls (retries included) go out
    before the fixer pauses for ``batch_delay`` seconds. A fix may need one
    call (grant or revoke) or two (strip then grant).

    The correct role is always re-derived from a fresh member read; the
    issue only says what kind of repair is needed.
    """

    def __init__(
        self,
        store: MembershipStore,
        roles: RoleAssignmentService,
        audit: AuditSink | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY_SECONDS,
        policy: RetryPolicy = FIX_POLICY,
    ) -> None:
        self._store = store
        self._roles = roles
        self._audit = audit
        self._sleep = sleep
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._policy = policy
        self._ops_in_batch = 0

    async def apply_fixes(self, issues: list[DriftIssue]) -> int:
        """Fix every issue; returns how many were fixed."""
        self._ops_in_batch = 0
        fixed = 0
        for issue in issues:
            if await self.apply_fix(issue):
                fixed += 1

        logger.info("auto_fix_complete", issues=len(issues), fixed=fixed)
        return fixed

    async def apply_fix(self, issue: DriftIssue) -> bool:
        """Apply one corrective action. Never raises."""
        try:
            return await self._apply(issue)
        except Exception as e:
            logger.error(
                "reconciliation_fix_failed",
                type=issue.type.value,
                member_id=str(issue.member_id),
                error=str(e),
                exc_info=True,
            )
            return False

    async def _apply(self, issue: DriftIssue) -> bool:
        member = await self._store.get_member(issue.member_id)
        if member is None:
            logger.warning("auto_fix_member_not_found", member_id=str(issue.member_id))
            return False
        platform_id = member.platform_user_id
        if not platform_id:
            logger.warning("auto_fix_member_not_linked", member_id=str(member.id))
            return False

        if issue.type is DriftType.MISSING_ACCESS:
            ok = await self._assign(platform_id, expected_role_for(member))
        elif issue.type is DriftType.UNAUTHORIZED_ACCESS:
            ok = await self._roles.remove_all_managed(
                platform_id,
                reason="Reconciliation: unauthorized access",
                policy=self._policy,
                throttle=self._throttle,
            )
        elif issue.type is DriftType.ROLE_MISMATCH:
            ok = await self._reset(platform_id, expected_role_for(member))
        else:
            ok = await self._reset(platform_id, entitled_role(member))

        if ok:
            logger.info(
                "reconciliation_fix_applied",
                type=issue.type.value,
                member_id=str(member.id),
                platform_id=platform_id,
            )
            await record_safely(
                self._audit,
                AuditLogCreate(
                    action=AuditAction.RECONCILIATION_FIX_APPLIED,
                    entity_type="Member",
                    entity_id=str(member.id),
                    details={"type": issue.type.value, "description": issue.description},
                ),
            )
        else:
            logger.error(
                "reconciliation_fix_failed", type=issue.type.value, member_id=str(member.id)
            )
        return ok

    async def _throttle(self) -> None:
        """Pause once a full batch of role calls has gone out."""
        if self._ops_in_batch >= self.batch_size:
            await self._sleep(self.batch_delay)
            self._ops_in_batch = 0
        self._ops_in_batch += 1

    async def _assign(self, platform_id: str, role: ManagedRole) -> bool:
        return await self._roles.assign(
            platform_id,
            role,
            reason="Reconciliation fix",
            policy=self._policy,
            throttle=self._throttle,
        )

    async def _reset(self, platform_id: str, role: ManagedRole) -> bool:
        """Strip every managed role, then grant the single correct one."""
        removed = await self._roles.remove_all_managed(
            platform_id, reason="Reconciliation fix", policy=self._policy, throttle=self._throttle
        )
        if not removed:
            return False
        return await self._assign(platform_id, role)
