"""Payment failure, recovery and cancellation state machine.

States per member or team:

    CURRENT --payment failed--> GRACE --grace expired--> RESTRICTED --debtor expired--> CANCELLED
       ^                          |                          |
       +-------- paid ------------+--------------------------+

This module drives the webhook transitions. Expiry transitions are swept
by BillingEnforcer. Team transitions update the team row and every member
row in one transaction; messages go out only after it commits.
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict

from gatekeeper.adapters.audit import AuditAction, AuditLogCreate, record_safely
from gatekeeper.core.domain_types import ManagedRole, Member, SubscriptionStatus, Team
from gatekeeper.core.roles import expected_role_for
from gatekeeper.scheduling.clock import Clock, SystemClock

if TYPE_CHECKING:
    from gatekeeper.core.interfaces import AuditSink, MembershipStore
    from gatekeeper.services.notification import NotificationService
    from gatekeeper.services.roles import RoleAssignmentService

logger = structlog.get_logger()

GRACE_PERIOD = timedelta(hours=48)
RENEWAL_BILLING_REASON = "subscription_cycle"
IMMEDIATE_NOTIFICATION = "immediate"


class InvoiceEvent(BaseModel):
    """The invoice fields the state machine reads."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    customer: str
    billing_reason: str | None = None
    subscription: str | None = None

    @property
    def is_renewal(self) -> bool:
        """Renewal charges, as opposed to the initial checkout."""
        return self.billing_reason == RENEWAL_BILLING_REASON


class SubscriptionEvent(BaseModel):
    """The subscription fields read on deletion."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    customer: str
    status: str | None = None


class BillingOutcome(str, Enum):
    """What a billing event did."""

    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    ALREADY_IN_GRACE = "already_in_grace"
    GRACE_STARTED = "grace_started"
    NO_PRIOR_FAILURE = "no_prior_failure"
    RECOVERED = "recovered"
    CANCELLED = "cancelled"


def _cleared_billing_fields() -> dict[str, Any]:
    return {
        "payment_failed_at": None,
        "grace_period_ends_at": None,
        "debtor_state_ends_at": None,
    }


def _cleared_member_fields() -> dict[str, Any]:
    return {
        **_cleared_billing_fields(),
        "is_in_debtor_state": False,
        "sent_billing_notifications": [],
    }


class BillingFailureHandler:
    """Applies payment webhook events to members and teams."""

    def __init__(
        self,
        store: MembershipStore,
        roles: RoleAssignmentService,
        notifications: NotificationService,
        audit: AuditSink | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the handler.

        Args:
            store: Membership store.
            roles: Role mutation service, used on recovery and cancellation.
            notifications: Member DM/email sender.
            audit: Optional audit sink.
            clock: Time source for grace deadlines.
        """
        self._store = store
        self._roles = roles
        self._notifications = notifications
        self._audit = audit
        self._clock = clock or SystemClock()

    async def handle_payment_failed(self, invoice: InvoiceEvent) -> BillingOutcome:
        """Start a grace period for a failed renewal.

        Repeated failure events (dunning retries) for the same episode do
        not move the grace deadline.
        """
        if not invoice.is_renewal:
            logger.debug(
                "payment_failure_ignored",
                invoice_id=invoice.id,
                billing_reason=invoice.billing_reason,
            )
            return BillingOutcome.IGNORED

        team = await self._store.get_team_by_customer(invoice.customer)
        if team is not None:
            return await self._team_payment_failed(team, invoice)

        member = await self._store.get_member_by_customer(invoice.customer)
        if member is None:
            logger.warning(
                "payment_failure_member_not_found",
                customer_id=invoice.customer,
                invoice_id=invoice.id,
            )
            return BillingOutcome.NOT_FOUND

        if member.team_id is not None:
            logger.warning(
                "payment_failure_team_not_found",
                member_id=str(member.id),
                team_id=str(member.team_id),
            )
            return BillingOutcome.NOT_FOUND

        if member.payment_failed_at is not None:
            logger.info(
                "payment_failure_already_in_grace",
                member_id=str(member.id),
                payment_failed_at=member.payment_failed_at.isoformat(),
            )
            return BillingOutcome.ALREADY_IN_GRACE

        now = self._clock.now()
        grace_ends = now + GRACE_PERIOD
        updated = await self._store.start_member_grace(
            member.id,
            payment_failed_at=now,
            grace_period_ends_at=grace_ends,
            subscription_status=SubscriptionStatus.PAST_DUE,
            sent_billing_notifications=[*member.sent_billing_notifications, IMMEDIATE_NOTIFICATION],
        )
        if updated is None:
            # A concurrent delivery of the same failure started grace first.
            logger.info("payment_failure_already_in_grace", member_id=str(member.id))
            return BillingOutcome.ALREADY_IN_GRACE
        logger.info(
            "grace_period_started",
            member_id=str(member.id),
            grace_period_ends_at=grace_ends.isoformat(),
        )
        await self._record(
            AuditAction.BILLING_GRACE_STARTED,
            "Member",
            member.id,
            {"invoice_id": invoice.id, "grace_period_ends_at": grace_ends.isoformat()},
        )

        await self._notifications.send_payment_failed_dm(updated)
        await self._notifications.send_payment_failure_email(updated, invoice.customer)
        return BillingOutcome.GRACE_STARTED

    async def _team_payment_failed(self, team: Team, invoice: InvoiceEvent) -> BillingOutcome:
        if team.payment_failed_at is not None:
            logger.info(
                "team_payment_failure_already_in_grace",
                team_id=str(team.id),
                payment_failed_at=team.payment_failed_at.isoformat(),
            )
            return BillingOutcome.ALREADY_IN_GRACE

        now = self._clock.now()
        grace_ends = now + GRACE_PERIOD
        shared = {
            "payment_failed_at": now,
            "grace_period_ends_at": grace_ends,
            "subscription_status": SubscriptionStatus.PAST_DUE,
        }
        members = await self._store.start_team_grace(
            team.id,
            team_fields=shared,
            member_fields={**shared, "sent_billing_notifications": [IMMEDIATE_NOTIFICATION]},
        )
        if members is None:
            logger.info("team_payment_failure_already_in_grace", team_id=str(team.id))
            return BillingOutcome.ALREADY_IN_GRACE
        logger.info(
            "team_grace_period_started",
            team_id=str(team.id),
            members=len(members),
            grace_period_ends_at=grace_ends.isoformat(),
        )
        await self._record(
            AuditAction.BILLING_GRACE_STARTED,
            "Team",
            team.id,
            {"invoice_id": invoice.id, "members": len(members)},
        )

        # Committed; from here on a failed send only gets logged.
        for member in members:
            await self._notifications.send_team_payment_failed_dm(member, member.is_owner)
            if member.is_owner:
                await self._notifications.send_payment_failure_email(
                    member, invoice.customer, is_team_owner=True
                )
        return BillingOutcome.GRACE_STARTED

    async def handle_payment_recovered(self, invoice: InvoiceEvent) -> BillingOutcome:
        """Restore full standing after a successful renewal charge."""
        if not invoice.is_renewal:
            return BillingOutcome.IGNORED

        team = await self._store.get_team_by_customer(invoice.customer)
        if team is not None:
            if team.payment_failed_at is None:
                logger.debug("team_renewal_paid", team_id=str(team.id))
                return BillingOutcome.NO_PRIOR_FAILURE
            before = await self._store.list_team_members(team.id)
            after = await self._store.update_team_and_members(
                team.id,
                team_fields={
                    **_cleared_billing_fields(),
                    "subscription_status": SubscriptionStatus.ACTIVE,
                },
                member_fields={
                    **_cleared_member_fields(),
                    "subscription_status": SubscriptionStatus.ACTIVE,
                },
            )
            await self._record(
                AuditAction.BILLING_RECOVERED, "Team", team.id, {"invoice_id": invoice.id}
            )
            await self._restore_members(before, after)
            logger.info("team_payment_recovered", team_id=str(team.id), members=len(after))
            return BillingOutcome.RECOVERED

        member = await self._store.get_member_by_customer(invoice.customer)
        if member is None:
            logger.warning("payment_recovery_member_not_found", customer_id=invoice.customer)
            return BillingOutcome.NOT_FOUND
        if member.payment_failed_at is None:
            logger.debug("renewal_paid", member_id=str(member.id))
            return BillingOutcome.NO_PRIOR_FAILURE
        if member.team_id is not None:
            logger.debug(
                "payment_recovery_team_not_found",
                member_id=str(member.id),
                team_id=str(member.team_id),
            )
            return BillingOutcome.NOT_FOUND

        updated = await self._store.update_member(
            member.id,
            **_cleared_member_fields(),
            subscription_status=SubscriptionStatus.ACTIVE,
        )
        await self._record(
            AuditAction.BILLING_RECOVERED, "Member", member.id, {"invoice_id": invoice.id}
        )
        await self._restore_members([member], [updated] if updated else [])
        logger.info("payment_recovered", member_id=str(member.id))
        return BillingOutcome.RECOVERED

    async def _restore_members(self, before: list[Member], after: list[Member]) -> None:
        was_debtor = {m.id for m in before if m.is_in_debtor_state}
        for member in after:
            if not member.platform_user_id:
                continue
            if member.id in was_debtor:
                await self._roles.swap(
                    member.platform_user_id,
                    ManagedRole.DEBTOR,
                    expected_role_for(member),
                    reason="Payment recovered",
                )
            await self._notifications.send_recovery_dm(member)

    async def handle_subscription_deleted(self, subscription: SubscriptionEvent) -> BillingOutcome:
        """Cancel the membership and strip managed roles."""
        team = await self._store.get_team_by_customer(subscription.customer)
        if team is not None:
            members = await self._store.update_team_and_members(
                team.id,
                team_fields={
                    **_cleared_billing_fields(),
                    "subscription_status": SubscriptionStatus.CANCELLED,
                },
                member_fields={
                    **_cleared_member_fields(),
                    "subscription_status": SubscriptionStatus.CANCELLED,
                },
            )
            await self._record(
                AuditAction.SUBSCRIPTION_CANCELLED,
                "Team",
                team.id,
                {"subscription_id": subscription.id},
            )
        else:
            member = await self._store.get_member_by_customer(subscription.customer)
            if member is None:
                logger.warning(
                    "subscription_deleted_member_not_found", customer_id=subscription.customer
                )
                return BillingOutcome.NOT_FOUND
            updated = await self._store.update_member(
                member.id,
                **_cleared_member_fields(),
                subscription_status=SubscriptionStatus.CANCELLED,
            )
            members = [updated] if updated else []
            await self._record(
                AuditAction.SUBSCRIPTION_CANCELLED,
                "Member",
                member.id,
                {"subscription_id": subscription.id},
            )

        for member in members:
            if member.platform_user_id:
                await self._roles.remove_all_managed(
                    member.platform_user_id, reason="Subscription cancelled"
                )
        logger.info(
            "subscription_cancelled", customer_id=subscription.customer, members=len(members)
        )
        return BillingOutcome.CANCELLED

    async def _record(
        self, action: AuditAction, entity_type: str, entity_id: Any, details: dict[str, Any]
    ) -> None:
        await record_safely(
            self._audit,
            AuditLogCreate(
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id),
                details=details,
            ),
        )

    async def handle_event(self, event: dict[str, Any]) -> BillingOutcome:
        """Dispatch a verified webhook event by type."""
        event_type = event.get("type", "")
        obj = event.get("data", {}).get("object", {})
        if event_type == "invoice.payment_failed":
            return await self.handle_payment_failed(InvoiceEvent.model_validate(obj))
        if event_type == "invoice.paid":
            return await self.handle_payment_recovered(InvoiceEvent.model_validate(obj))
        if event_type == "customer.subscription.deleted":
            return await self.handle_subscription_deleted(SubscriptionEvent.model_validate(obj))
        logger.debug("webhook_event_ignored", event_type=event_type, event_id=event.get("id"))
        return BillingOutcome.IGNORED
