"""Drift detection between billing, database and platform role state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from gatekeeper.core.domain_types import (
    MEMBERSHIP_ROLES,
    BillingMismatch,
    DriftIssue,
    DriftSeverity,
    DriftType,
    ManagedRole,
    Member,
    Team,
)
from gatekeeper.core.roles import (
    billing_disagrees,
    expected_role_for,
    grants_access,
    parse_managed_roles,
)

if TYPE_CHECKING:
    from gatekeeper.core.interfaces import BillingProvider, MembershipStore, PlatformClient

logger = structlog.get_logger()


@dataclass
class DriftReport:
    """Everything one detection pass found."""

    issues: list[DriftIssue] = field(default_factory=list)
    billing_mismatches: list[BillingMismatch] = field(default_factory=list)
    members_checked: int = 0
    teams_checked: int = 0


def _names(roles: frozenset[ManagedRole]) -> str:
    return ", ".join(sorted(role.value for role in roles)) or "no managed role"


def classify_member(
    member: Member,
    billing_status: str | None,
    platform_roles: set[str],
    context: str = "",
) -> list[DriftIssue]:
    """Compare one member's intended state with their platform roles.

    Args:
        member: Fresh member row.
        billing_status: Processor status for the paying customer, None if
            the processor has no subscription on record. Recorded on the
            issue; access itself follows the database status.
        platform_roles: Every role name the member holds on the platform.
        context: Prefix for descriptions (e.g. the team name).

    Returns:
        Issues for this member, at most one per drift type.
    """
    actual = parse_managed_roles(platform_roles)
    membership = actual & MEMBERSHIP_ROLES
    has_debtor = ManagedRole.DEBTOR in actual
    observed = tuple(sorted(role.value for role in actual))
    prefix = f"{context}: " if context else ""

    def issue(kind: DriftType, severity: DriftSeverity, description: str) -> DriftIssue:
        return DriftIssue(
            type=kind,
            member_id=member.id,
            platform_user_id=member.platform_user_id,
            description=f"{prefix}{description}",
            billing_status=billing_status,
            database_status=member.subscription_status.value,
            platform_roles=observed,
            severity=severity,
        )

    issues: list[DriftIssue] = []
    if member.is_in_debtor_state:
        if not has_debtor:
            issues.append(
                issue(
                    DriftType.DEBTOR_MISMATCH,
                    DriftSeverity.LOW,
                    "Member in Debtor state but platform missing Debtor role",
                )
            )
        elif membership:
            issues.append(
                issue(
                    DriftType.ROLE_MISMATCH,
                    DriftSeverity.MEDIUM,
                    f"Debtor also holds {_names(membership)}",
                )
            )
        return issues

    if has_debtor:
        issues.append(
            issue(
                DriftType.DEBTOR_MISMATCH,
                DriftSeverity.LOW,
                "Platform has Debtor role but member is not in Debtor state",
            )
        )

    # The database is the authority for intended access; the processor
    # status only annotates the description.
    active = grants_access(member.subscription_status)
    status_label = f"database {member.subscription_status.value}"
    if billing_status is not None:
        status_label += f", processor {billing_status}"
    if active:
        expected = expected_role_for(member)
        if not membership and not has_debtor:
            issues.append(
                issue(
                    DriftType.MISSING_ACCESS,
                    DriftSeverity.HIGH,
                    f"Membership {status_label} but platform has no member role",
                )
            )
        elif membership and membership != {expected}:
            issues.append(
                issue(
                    DriftType.ROLE_MISMATCH,
                    DriftSeverity.MEDIUM,
                    f"Expected {expected.value} but has {_names(membership)}",
                )
            )
    elif membership:
        issues.append(
            issue(
                DriftType.UNAUTHORIZED_ACCESS,
                DriftSeverity.HIGH,
                f"Platform has {_names(membership)} but membership {status_label}",
            )
        )
    return issues


class DriftDetector:
    """Read-only scan producing the drift issues of one run."""

    def __init__(
        self,
        store: MembershipStore,
        platform: PlatformClient,
        billing: BillingProvider | None = None,
    ) -> None:
        """Initialize the detector.

        Args:
            store: Membership store.
            platform: Chat platform client, only read from.
            billing: Payment processor, compared against the database to
                report mismatches; when omitted none are reported.
        """
        self._store = store
        self._platform = platform
        self._billing = billing

    async def detect(self) -> DriftReport:
        """Scan every linked member and every team member."""
        statuses = await self._billing.subscription_statuses() if self._billing else {}
        roles_by_user = await self._platform.fetch_all_member_roles()

        members = await self._store.list_linked_members()
        teams = await self._store.list_teams()
        teams_by_id: dict[object, Team] = {team.id: team for team in teams}

        found: dict[tuple[object, DriftType], DriftIssue] = {}
        mismatches: dict[object, BillingMismatch] = {}

        def check(member: Member, team: Team | None, context: str = "") -> None:
            billing_status = self._billing_status(member, team, statuses)
            if (
                billing_status is not None
                and member.id not in mismatches
                and billing_disagrees(billing_status, member.subscription_status)
            ):
                logger.warning(
                    "billing_status_mismatch",
                    member_id=str(member.id),
                    billing_status=billing_status,
                    database_status=member.subscription_status.value,
                )
                mismatches[member.id] = BillingMismatch(
                    member_id=member.id,
                    billing_status=billing_status,
                    database_status=member.subscription_status.value,
                )
            for drift in classify_member(
                member, billing_status, self._roles_for(member, roles_by_user), context
            ):
                found.setdefault((drift.member_id, drift.type), drift)

        for member in members:
            check(member, teams_by_id.get(member.team_id) if member.team_id else None)

        for team in teams:
            for member in await self._store.list_team_members(team.id):
                if not member.platform_user_id:
                    continue
                check(member, team, context=f"Team {team.name}")

        report = DriftReport(
            issues=list(found.values()),
            billing_mismatches=list(mismatches.values()),
            members_checked=len(members),
            teams_checked=len(teams),
        )
        logger.info(
            "drift_detected",
            issues=len(report.issues),
            billing_mismatches=len(report.billing_mismatches),
            members_checked=report.members_checked,
            teams_checked=report.teams_checked,
        )
        return report

    @staticmethod
    def _billing_status(member: Member, team: Team | None, statuses: dict[str, str]) -> str | None:
        """Team seats are paid by the team's customer, individuals by their own."""
        customer = team.billing_customer_id if team is not None else member.billing_customer_id
        if not customer:
            return None
        return statuses.get(customer)

    @staticmethod
    def _roles_for(member: Member, roles_by_user: dict[str, set[str]]) -> set[str]:
        # A linked member who left the server holds no roles.
        if not member.platform_user_id:
            return set()
        return roles_by_user.get(member.platform_user_id, set())
