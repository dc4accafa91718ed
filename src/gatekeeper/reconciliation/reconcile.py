"""Reconciliation pipeline: detect drift, optionally fix it, alert admins."""

from __future__ import annotations

import os
import time
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING
from uuid import uuid4

import structlog

from gatekeeper.core.domain_types import ReconciliationResult
from gatekeeper.scheduling.scheduler import DailyTrigger
from gatekeeper.services.flags import FeatureFlag

if TYPE_CHECKING:
    from gatekeeper.reconciliation.auto_fixer import AutoFixer
    from gatekeeper.reconciliation.drift_detector import DriftDetector
    from gatekeeper.reconciliation.notifications import AdminNotifier
    from gatekeeper.scheduling.scheduler import Scheduler
    from gatekeeper.services.flags import FeatureFlagCache

logger = structlog.get_logger()

VERIFICATION_DELAY = timedelta(hours=1)
RECONCILIATION_JOB = "reconciliation"
VERIFICATION_JOB = "reconciliation-verification"


def paused_from_env() -> bool:
    """Read the pause override at call time, not at startup."""
    return os.getenv("RECONCILIATION_PAUSED", "false").strip().lower() in ("1", "true", "yes")


class ReconciliationService:
    """Runs DriftDetector -> AutoFixer -> AdminNotifier.

    The same pipeline serves the daily schedule, the one-hour verification
    re-run and the manual admin trigger.
    """

    def __init__(
        self,
        detector: DriftDetector,
        fixer: AutoFixer,
        flags: FeatureFlagCache,
        notifier: AdminNotifier | None = None,
        scheduler: Scheduler | None = None,
        is_paused: Callable[[], bool] = paused_from_env,
    ) -> None:
        """Initialize the service.

        Args:
            detector: Drift detector.
            fixer: Auto fixer, used when the auto-fix flag is on.
            flags: Feature flag cache.
            notifier: Admin alert sender.
            scheduler: Used to schedule the verification re-run.
            is_paused: Pause override consulted before each scheduled run.
        """
        self._detector = detector
        self._fixer = fixer
        self._flags = flags
        self._notifier = notifier
        self._scheduler = scheduler
        self._is_paused = is_paused

    def register(self, scheduler: Scheduler, hour: int, timezone: str) -> DailyTrigger:
        """Add the daily job to a scheduler.

        Raises:
            ConfigurationError: If hour or timezone is invalid.
        """
        trigger = DailyTrigger(hour, timezone)
        self._scheduler = scheduler
        scheduler.add_job(RECONCILIATION_JOB, trigger, self.run_scheduled)
        logger.info(
            "reconciliation_scheduled",
            cron=trigger.cron_expression,
            timezone=timezone,
        )
        return trigger

    async def run_scheduled(self) -> ReconciliationResult | None:
        """Scheduled entry point honoring the pause override and maintenance mode."""
        if self._is_paused():
            logger.info("reconciliation_paused")
            return None
        if await self._flags.is_enabled(FeatureFlag.MAINTENANCE_MODE):
            logger.info("reconciliation_skipped_maintenance")
            return None
        return await self.run(triggered_by="scheduled")

    async def run(
        self,
        triggered_by: str = "manual",
        is_verification_run: bool = False,
    ) -> ReconciliationResult:
        """Run the full pipeline once and return its result."""
        started = time.monotonic()
        run_id = uuid4()
        auto_fix = await self._flags.is_enabled(FeatureFlag.AUTO_FIX_RECONCILIATION)
        logger.info(
            "reconciliation_started",
            run_id=str(run_id),
            triggered_by=triggered_by,
            auto_fix=auto_fix,
            verification=is_verification_run,
        )

        report = await self._detector.detect()

        fixed = 0
        if auto_fix and report.issues:
            fixed = await self._fixer.apply_fixes(report.issues)
            if fixed > 0 and not is_verification_run:
                self._schedule_verification()

        result = ReconciliationResult(
            run_id=run_id,
            issues_found=len(report.issues),
            issues_fixed=fixed,
            issues=report.issues,
            billing_mismatches=report.billing_mismatches,
            auto_fix_enabled=auto_fix,
            triggered_by=triggered_by,
            members_checked=report.members_checked,
            teams_checked=report.teams_checked,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            "reconciliation_complete",
            run_id=str(run_id),
            issues_found=result.issues_found,
            issues_fixed=result.issues_fixed,
            duration_ms=result.duration_ms,
        )

        if self._notifier is not None:
            await self._notifier.notify(result)
        return result

    def _schedule_verification(self) -> None:
        if self._scheduler is None:
            logger.warning("verification_not_scheduled", reason="no scheduler")
            return

        async def verify() -> None:
            await self.run(triggered_by="verification", is_verification_run=True)

        self._scheduler.schedule_once(VERIFICATION_JOB, VERIFICATION_DELAY, verify)
