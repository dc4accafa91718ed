"""Tests for the reconciliation summary and admin alerts."""

from unittest.mock import MagicMock
from uuid import uuid4

from gatekeeper.core.domain_types import (
    BillingMismatch,
    DriftIssue,
    DriftSeverity,
    DriftType,
    ReconciliationResult,
)
from gatekeeper.core.exceptions import PlatformError
from gatekeeper.reconciliation.notifications import ALERT_PREFIX, AdminNotifier
from gatekeeper.reconciliation.summary import format_summary

from tests.fixtures.mocks import FakePlatformClient


def make_result(issue_count: int, fixed: int = 0, auto_fix: bool = False) -> ReconciliationResult:
    """Build a result with `issue_count` missing-access issues."""
    issues = [
        DriftIssue(
            type=DriftType.MISSING_ACCESS,
            member_id=uuid4(),
            platform_user_id=str(n),
            description=f"member {n} missing role",
            billing_status="active",
            database_status="ACTIVE",
            severity=DriftSeverity.HIGH,
        )
        for n in range(issue_count)
    ]
    return ReconciliationResult(
        run_id=uuid4(),
        issues_found=issue_count,
        issues_fixed=fixed,
        issues=issues,
        auto_fix_enabled=auto_fix,
    )


class TestFormatSummary:
    """Tests for format_summary."""

    def test_caps_examples_per_type(self) -> None:
        """At most five examples, then a count of the rest."""
        text = format_summary(make_result(8))

        assert "**Issues Found:** 8" in text
        assert "**MISSING_ACCESS:** 8" in text
        assert "- member 4 missing role" in text
        assert "- member 5 missing role" not in text
        assert "- ... and 3 more" in text

    def test_report_only_mode(self) -> None:
        """Disabled auto-fix is labelled and shows no fix count."""
        text = format_summary(make_result(1))

        assert "**Auto-Fix:** Disabled (report only)" in text
        assert "Issues Fixed" not in text

    def test_fixed_count_shown(self) -> None:
        """Fixed issues are reported when auto-fix ran."""
        result = make_result(2, fixed=2, auto_fix=True)

        text = format_summary(result)

        assert "**Issues Fixed:** 2" in text
        assert text.endswith(f"Run ID: {result.run_id}")

    def test_billing_mismatches_listed(self) -> None:
        """Processor disagreements get their own capped section."""
        mismatches = [
            BillingMismatch(member_id=uuid4(), billing_status="active", database_status="CANCELLED")
            for _ in range(7)
        ]
        result = make_result(0).model_copy(update={"billing_mismatches": mismatches})

        text = format_summary(result)

        assert "**Billing Mismatches:** 7" in text
        assert f"- {mismatches[0].member_id}: processor active, database CANCELLED" in text
        assert str(mismatches[5].member_id) not in text
        assert "- ... and 2 more" in text

    def test_no_mismatch_section_when_in_agreement(self) -> None:
        """The section is omitted when processor and database agree."""
        assert "Billing Mismatches" not in format_summary(make_result(1))


class TestAdminNotifier:
    """Tests for AdminNotifier."""

    async def test_clean_run_sends_nothing(self, platform: FakePlatformClient) -> None:
        """No issues, no alert."""
        email = MagicMock()
        notifier = AdminNotifier(platform, "chan", email=email, admin_email="admin@example.com")

        assert await notifier.notify(make_result(0)) is False
        assert platform.channel_messages == []
        email.send_reconciliation_report.assert_not_called()

    async def test_posts_and_emails(self, platform: FakePlatformClient) -> None:
        """Both channels get the summary."""
        email = MagicMock()
        email.send_reconciliation_report.return_value = True
        notifier = AdminNotifier(platform, "chan", email=email, admin_email="admin@example.com")

        assert await notifier.notify(make_result(2)) is True

        channel, content = platform.channel_messages[0]
        assert channel == "chan"
        assert content.startswith(ALERT_PREFIX)
        email.send_reconciliation_report.assert_called_once()
        assert email.send_reconciliation_report.call_args.args[:2] == ("admin@example.com", 2)

    async def test_channel_failure_does_not_block_email(self, platform: FakePlatformClient) -> None:
        """Each delivery channel fails on its own."""
        platform.failures["send_channel_message"] = [PlatformError("missing access")]
        email = MagicMock()
        email.send_reconciliation_report.return_value = True
        notifier = AdminNotifier(platform, "chan", email=email, admin_email="admin@example.com")

        assert await notifier.notify(make_result(1)) is True
        email.send_reconciliation_report.assert_called_once()
