"""Human-readable reconciliation summary."""

from __future__ import annotations

from gatekeeper.core.domain_types import DriftIssue, ReconciliationResult

MAX_EXAMPLES_PER_TYPE = 5


def group_by_type(issues: list[DriftIssue]) -> dict[str, list[DriftIssue]]:
    """Group issues by drift type, keeping first-seen order."""
    groups: dict[str, list[DriftIssue]] = {}
    for issue in issues:
        groups.setdefault(issue.type.value, []).append(issue)
    return groups


def format_summary(result: ReconciliationResult) -> str:
    """Render the admin summary (markdown, for chat and email)."""
    lines = [
        f"**Issues Found:** {result.issues_found}",
        f"**Auto-Fix:** {'Enabled' if result.auto_fix_enabled else 'Disabled (report only)'}",
    ]
    if result.auto_fix_enabled and result.issues_fixed > 0:
        lines.append(f"**Issues Fixed:** {result.issues_fixed}")

    for kind, issues in group_by_type(result.issues).items():
        lines.append(f"\n**{kind}:** {len(issues)}")
        for issue in issues[:MAX_EXAMPLES_PER_TYPE]:
            lines.append(f"- {issue.description}")
        if len(issues) > MAX_EXAMPLES_PER_TYPE:
            lines.append(f"- ... and {len(issues) - MAX_EXAMPLES_PER_TYPE} more")

    if result.billing_mismatches:
        lines.append(f"\n**Billing Mismatches:** {len(result.billing_mismatches)}")
        for mismatch in result.billing_mismatches[:MAX_EXAMPLES_PER_TYPE]:
            lines.append(
                f"- {mismatch.member_id}: processor {mismatch.billing_status}, "
                f"database {mismatch.database_status}"
            )
        hidden = len(result.billing_mismatches) - MAX_EXAMPLES_PER_TYPE
        if hidden > 0:
            lines.append(f"- ... and {hidden} more")

    lines.append(f"\nRun ID: {result.run_id}")
    return "\n".join(lines)
