"""Periodic sweep moving expired grace periods to debtor state and
expelling members whose debtor period ran out."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from gatekeeper.adapters.audit import AuditAction, AuditLogCreate, record_safely
from gatekeeper.core.domain_types import ManagedRole, Member, SubscriptionStatus, Team
from gatekeeper.scheduling.clock import Clock, SystemClock
from gatekeeper.services.flags import FeatureFlag

if TYPE_CHECKING:
    from gatekeeper.core.interfaces import AuditSink, MembershipStore
    from gatekeeper.services.flags import FeatureFlagCache
    from gatekeeper.services.notification import NotificationService
    from gatekeeper.services.roles import RoleAssignmentService

logger = structlog.get_logger()

DEBTOR_STATE_DURATION = timedelta(days=30)


@dataclass
class SweepResult:
    """Counts from one enforcement sweep."""

    moved_to_debtor: int = 0
    expelled: int = 0
    failed: int = 0
    skipped: bool = False


class BillingEnforcer:
    """Drives the GRACE -> RESTRICTED -> CANCELLED transitions on a timer."""

    def __init__(
        self,
        store: MembershipStore,
        roles: RoleAssignmentService,
        notifications: NotificationService,
        flags: FeatureFlagCache | None = None,
        audit: AuditSink | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._roles = roles
        self._notifications = notifications
        self._flags = flags
        self._audit = audit
        self._clock = clock or SystemClock()

    async def sweep(self, triggered_by: str = "scheduled") -> SweepResult:
        """Run one pass over expired grace and debtor periods."""
        if (
            triggered_by == "scheduled"
            and self._flags is not None
            and await self._flags.is_enabled(FeatureFlag.MAINTENANCE_MODE)
        ):
            logger.info("billing_sweep_skipped_maintenance")
            return SweepResult(skipped=True)

        now = self._clock.now()
        result = SweepResult()

        # One bad row must not stop the rest of the sweep.
        for member in await self._store.list_expired_grace_members(now):
            try:
                await self.move_to_debtor_state(member)
            except Exception as e:
                result.failed += 1
                _log_failure("move_to_debtor", "Member", member.id, e)
                continue
            result.moved_to_debtor += 1
        for team in await self._store.list_expired_grace_teams(now):
            try:
                result.moved_to_debtor += await self.move_team_to_debtor_state(team)
            except Exception as e:
                result.failed += 1
                _log_failure("move_to_debtor", "Team", team.id, e)

        for member in await self._store.list_expired_debtor_members(now):
            try:
                await self.expel(member)
            except Exception as e:
                result.failed += 1
                _log_failure("expel", "Member", member.id, e)
                continue
            result.expelled += 1
        for team in await self._store.list_expired_debtor_teams(now):
            try:
                result.expelled += await self.expel_team(team)
            except Exception as e:
                result.failed += 1
                _log_failure("expel", "Team", team.id, e)

        logger.info(
            "billing_sweep_complete",
            moved_to_debtor=result.moved_to_debtor,
            expelled=result.expelled,
            failed=result.failed,
        )
        return result

    async def move_to_debtor_state(self, member: Member) -> None:
        """Restrict one individual member. The database is written first."""
        debtor_ends = self._clock.now() + DEBTOR_STATE_DURATION
        updated = await self._store.update_member(
            member.id,
            is_in_debtor_state=True,
            debtor_state_ends_at=debtor_ends,
        )
        await self._record(AuditAction.BILLING_DEBTOR_STARTED, "Member", str(member.id))
        if updated is not None:
            await self._restrict(updated)
        logger.info(
            "member_moved_to_debtor",
            member_id=str(member.id),
            debtor_state_ends_at=debtor_ends.isoformat(),
        )

    async def move_team_to_debtor_state(self, team: Team) -> int:
        """Restrict a team and all its members atomically; returns member count."""
        debtor_ends = self._clock.now() + DEBTOR_STATE_DURATION
        members = await self._store.update_team_and_members(
            team.id,
            team_fields={"debtor_state_ends_at": debtor_ends},
            member_fields={"is_in_debtor_state": True, "debtor_state_ends_at": debtor_ends},
        )
        await self._record(AuditAction.BILLING_DEBTOR_STARTED, "Team", str(team.id))
        for member in members:
            await self._restrict(member)
        logger.info("team_moved_to_debtor", team_id=str(team.id), members=len(members))
        return len(members)

    async def _restrict(self, member: Member) -> None:
        if not member.platform_user_id:
            return
        removed = await self._roles.remove_all_managed(
            member.platform_user_id, reason="Grace period expired"
        )
        if removed:
            await self._roles.assign(
                member.platform_user_id, ManagedRole.DEBTOR, reason="Grace period expired"
            )
        await self._notifications.send_debtor_dm(member)

    async def expel(self, member: Member) -> None:
        """Remove an individual whose debtor period ended."""
        if member.platform_user_id:
            await self._roles.remove_and_kick(
                member.platform_user_id,
                member.id,
                farewell_message=self._notifications.farewell_message(),
            )
        else:
            await self._store.update_member(member.id, **_cancelled_member_fields())
        logger.info("member_debtor_expired", member_id=str(member.id))

    async def expel_team(self, team: Team) -> int:
        """Remove every member of a team, then cancel the team."""
        members = await self._store.list_team_members(team.id)
        for member in members:
            if member.platform_user_id:
                await self._roles.remove_and_kick(
                    member.platform_user_id,
                    member.id,
                    farewell_message=self._notifications.farewell_message(),
                )

        await self._store.update_team_and_members(
            team.id,
            team_fields={
                "subscription_status": SubscriptionStatus.CANCELLED,
                "payment_failed_at": None,
                "grace_period_ends_at": None,
                "debtor_state_ends_at": None,
            },
            member_fields=_cancelled_member_fields(),
        )
        await self._record(AuditAction.SUBSCRIPTION_CANCELLED, "Team", str(team.id))
        logger.info("team_debtor_expired", team_id=str(team.id), members=len(members))
        return len(members)

    async def _record(self, action: AuditAction, entity_type: str, entity_id: str) -> None:
        await record_safely(
            self._audit,
            AuditLogCreate(action=action, entity_type=entity_type, entity_id=entity_id),
        )


def _log_failure(step: str, entity_type: str, entity_id: object, error: Exception) -> None:
    logger.error(
        "billing_sweep_entity_failed",
        step=step,
        entity_type=entity_type,
        entity_id=str(entity_id),
        error=str(error),
        exc_info=True,
    )


def _cancelled_member_fields() -> dict[str, object]:
    return {
        "subscription_status": SubscriptionStatus.CANCELLED,
        "payment_failed_at": None,
        "grace_period_ends_at": None,
        "debtor_state_ends_at": None,
        "is_in_debtor_state": False,
        "intro_completed": False,
        "sent_billing_notifications": [],
    }
