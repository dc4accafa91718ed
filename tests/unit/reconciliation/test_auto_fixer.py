"""Tests for AutoFixer."""

from datetime import timedelta
from uuid import UUID

import pytest
from gatekeeper.adapters.db import InMemoryMembershipStore
from gatekeeper.core.domain_types import (
    DriftIssue,
    DriftSeverity,
    DriftType,
    Member,
    SeatTier,
    SubscriptionStatus,
)
from gatekeeper.core.exceptions import PlatformError
from gatekeeper.reconciliation.auto_fixer import AutoFixer
from gatekeeper.services.roles import RoleAssignmentService

from tests.fixtures.domain_objects import make_member
from tests.fixtures.mocks import FakeAuditSink, FakeClock, FakePlatformClient


def issue_for(member: Member, kind: DriftType, billing_status: str | None = "active") -> DriftIssue:
    """Build a drift issue for a member."""
    return DriftIssue(
        type=kind,
        member_id=member.id,
        platform_user_id=member.platform_user_id,
        description=f"{kind.value} for {member.id}",
        billing_status=billing_status,
        database_status=member.subscription_status.value,
        severity=DriftSeverity.HIGH,
    )


@pytest.fixture
def fixer(
    store: InMemoryMembershipStore,
    role_service: RoleAssignmentService,
    audit: FakeAuditSink,
    clock: FakeClock,
) -> AutoFixer:
    """Create a fixer sleeping on the fake clock."""
    return AutoFixer(store, role_service, audit=audit, sleep=clock.sleep)


class TestApplyFix:
    """Tests for single fixes."""

    async def test_missing_access_assigns_expected_role(
        self, fixer: AutoFixer, store: InMemoryMembershipStore, platform: FakePlatformClient
    ) -> None:
        """An unintroduced member gets Squire."""
        member = store.add_member(make_member(platform_user_id="1", intro_completed=False))
        platform.roles["1"] = set()

        assert await fixer.apply_fix(issue_for(member, DriftType.MISSING_ACCESS)) is True
        assert platform.roles["1"] == {"Squire"}

    async def test_role_derived_from_fresh_read(
        self, fixer: AutoFixer, store: InMemoryMembershipStore, platform: FakePlatformClient
    ) -> None:
        """A member who finished the intro after detection gets the new role."""
        member = store.add_member(make_member(platform_user_id="1", intro_completed=False))
        issue = issue_for(member, DriftType.MISSING_ACCESS)
        await store.update_member(member.id, intro_completed=True)
        platform.roles["1"] = set()

        await fixer.apply_fix(issue)

        assert platform.roles["1"] == {"Lord"}

    async def test_unauthorized_access_strips_roles(
        self, fixer: AutoFixer, store: InMemoryMembershipStore, platform: FakePlatformClient
    ) -> None:
        """Managed roles are removed, others kept."""
        member = store.add_member(
            make_member(platform_user_id="1", subscription_status=SubscriptionStatus.CANCELLED)
        )
        platform.roles["1"] = {"Lord", "Moderator"}

        assert await fixer.apply_fix(issue_for(member, DriftType.UNAUTHORIZED_ACCESS, "canceled"))
        assert platform.roles["1"] == {"Moderator"}

    async def test_role_mismatch_resets_to_single_role(
        self, fixer: AutoFixer, store: InMemoryMembershipStore, platform: FakePlatformClient
    ) -> None:
        """Extra roles go, the right one stays."""
        member = store.add_member(
            make_member(platform_user_id="1", seat_tier=SeatTier.TEAM_MEMBER)
        )
        platform.roles["1"] = {"Lord", "Squire"}

        assert await fixer.apply_fix(issue_for(member, DriftType.ROLE_MISMATCH))
        assert platform.roles["1"] == {"Knight"}

    async def test_debtor_mismatch_assigns_debtor(
        self, fixer: AutoFixer, store: InMemoryMembershipStore, platform: FakePlatformClient
    ) -> None:
        """Debtors end up with Debtor only."""
        member = store.add_member(make_member(platform_user_id="1", is_in_debtor_state=True))
        platform.roles["1"] = {"Lord"}

        assert await fixer.apply_fix(issue_for(member, DriftType.DEBTOR_MISMATCH, "past_due"))
        assert platform.roles["1"] == {"Debtor"}

    async def test_stale_debtor_role_restores_membership(
        self, fixer: AutoFixer, store: InMemoryMembershipStore, platform: FakePlatformClient
    ) -> None:
        """A recovered member loses Debtor and regains their role."""
        member = store.add_member(make_member(platform_user_id="1"))
        platform.roles["1"] = {"Debtor"}

        assert await fixer.apply_fix(issue_for(member, DriftType.DEBTOR_MISMATCH))
        assert platform.roles["1"] == {"Lord"}

    async def test_deleted_member_is_skipped(
        self, fixer: AutoFixer, store: InMemoryMembershipStore, platform: FakePlatformClient
    ) -> None:
        """A member row gone since detection is not fixed."""
        member = make_member(platform_user_id="1")

        assert await fixer.apply_fix(issue_for(member, DriftType.MISSING_ACCESS)) is False
        assert platform.calls == []


class TestApplyFixes:
    """Tests for batching."""

    async def test_rate_limited_batches(
        self,
        fixer: AutoFixer,
        store: InMemoryMembershipStore,
        platform: FakePlatformClient,
        clock: FakeClock,
    ) -> None:
        """12 fixes never exceed 5 role operations in any 2-second window."""
        issues = []
        for n in range(12):
            member = store.add_member(make_member(platform_user_id=str(n)))
            platform.roles[str(n)] = set()
            issues.append(issue_for(member, DriftType.MISSING_ACCESS))

        fixed = await fixer.apply_fixes(issues)

        assert fixed == 12
        assert clock.sleeps == [2.0, 2.0]
        stamps = [call.at for call in platform.role_ops()]
        assert len(stamps) == 12
        window = timedelta(seconds=2)
        for start in stamps:
            assert sum(1 for t in stamps if start <= t < start + window) <= 5

    async def test_two_step_fixes_share_the_rate_limit(
        self,
        fixer: AutoFixer,
        store: InMemoryMembershipStore,
        platform: FakePlatformClient,
        clock: FakeClock,
    ) -> None:
        """Strip-then-grant fixes count both calls against the window."""
        issues = []
        for n in range(12):
            member = store.add_member(
                make_member(platform_user_id=str(n), seat_tier=SeatTier.TEAM_MEMBER)
            )
            platform.roles[str(n)] = {"Lord"}
            issues.append(issue_for(member, DriftType.ROLE_MISMATCH))

        fixed = await fixer.apply_fixes(issues)

        assert fixed == 12
        assert all(platform.roles[str(n)] == {"Knight"} for n in range(12))
        stamps = [call.at for call in platform.role_ops()]
        assert len(stamps) == 24
        window = timedelta(seconds=2)
        for start in stamps:
            assert sum(1 for t in stamps if start <= t < start + window) <= 5

    async def test_connection_reset_is_retried(
        self,
        fixer: AutoFixer,
        store: InMemoryMembershipStore,
        platform: FakePlatformClient,
    ) -> None:
        """A dropped connection on one fix is retried and every fix lands."""
        issues = []
        for n in range(3):
            member = store.add_member(make_member(platform_user_id=str(n)))
            platform.roles[str(n)] = set()
            issues.append(issue_for(member, DriftType.MISSING_ACCESS))
        platform.failures["add_role"] = [ConnectionResetError("connection reset by peer")]

        assert await fixer.apply_fixes(issues) == 3

    async def test_unexpected_error_does_not_abort_run(
        self,
        fixer: AutoFixer,
        store: InMemoryMembershipStore,
        platform: FakePlatformClient,
    ) -> None:
        """A fix blowing up outside the platform call is skipped, siblings still run."""
        issues = []
        for n in range(3):
            member = store.add_member(make_member(platform_user_id=str(n)))
            platform.roles[str(n)] = set()
            issues.append(issue_for(member, DriftType.MISSING_ACCESS))
        broken = issues[0].member_id
        read_member = store.get_member

        async def flaky_get_member(member_id: UUID) -> Member | None:
            if member_id == broken:
                raise RuntimeError("connection pool exhausted")
            return await read_member(member_id)

        store.get_member = flaky_get_member  # type: ignore[method-assign]

        assert await fixer.apply_fixes(issues) == 2
        assert platform.roles["0"] == set()
        assert platform.roles["1"] == {"Lord"}

    async def test_one_failure_does_not_abort_batch(
        self,
        fixer: AutoFixer,
        store: InMemoryMembershipStore,
        platform: FakePlatformClient,
        audit: FakeAuditSink,
    ) -> None:
        """Sibling fixes still run when one fails."""
        issues = []
        for n in range(3):
            member = store.add_member(make_member(platform_user_id=str(n)))
            platform.roles[str(n)] = set()
            issues.append(issue_for(member, DriftType.MISSING_ACCESS))
        platform.failures["add_role"] = [PlatformError("forbidden", retryable=False)]

        fixed = await fixer.apply_fixes(issues)

        assert fixed == 2
        assert audit.actions().count("RECONCILIATION_FIX_APPLIED") == 2

    async def test_no_delay_for_single_batch(self, fixer: AutoFixer, clock: FakeClock) -> None:
        """An empty or single-batch run never sleeps."""
        assert await fixer.apply_fixes([]) == 0
        assert clock.sleeps == []
