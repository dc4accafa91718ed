"""Feature flag lookup with an explicit, invalidatable TTL cache."""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from gatekeeper.adapters.audit import AuditAction, AuditLogCreate, record_safely

if TYPE_CHECKING:
    from gatekeeper.core.interfaces import AuditSink, FlagSource

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 60.0


class FeatureFlag(str, Enum):
    """Flags consulted by the access engine."""

    AUTO_FIX_RECONCILIATION = "auto_fix_reconciliation"
    MAINTENANCE_MODE = "maintenance_mode"


class FeatureFlagCache:
    """Caches every flag for `ttl_seconds` after a single bulk load.

    Constructed once and handed to the services that need it. Unknown
    flags read as disabled.

    Usage:
        flags = FeatureFlagCache(app_db)  # any FlagSource, e.g. AppDatabase
        if await flags.is_enabled(FeatureFlag.AUTO_FIX_RECONCILIATION):
            ...
    """

    def __init__(
        self,
        source: FlagSource,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        audit: AuditSink | None = None,
    ) -> None:
        """Initialize the cache.

        Args:
            source: Where flags are persisted.
            ttl_seconds: How long a bulk load stays valid.
            clock: Monotonic time source, injectable for tests.
            audit: Optional audit sink for flag changes.
        """
        self._source = source
        self._ttl = ttl_seconds
        self._clock = clock
        self._audit = audit
        self._flags: dict[str, bool] | None = None
        self._expires_at = 0.0

    async def is_enabled(self, key: FeatureFlag | str) -> bool:
        """Return the flag value, reloading from the source when stale."""
        name = key.value if isinstance(key, FeatureFlag) else key
        if self._flags is None or self._clock() >= self._expires_at:
            self._flags = await self._source.load_all()
            self._expires_at = self._clock() + self._ttl
            logger.debug("feature_flags_loaded", count=len(self._flags))
        return self._flags.get(name, False)

    async def set_flag(self, key: FeatureFlag | str, enabled: bool, performed_by: str) -> None:
        """Persist a flag and make the change visible immediately."""
        name = key.value if isinstance(key, FeatureFlag) else key
        await self._source.upsert(name, enabled, performed_by)
        self.invalidate()

        await record_safely(
            self._audit,
            AuditLogCreate(
                action=AuditAction.FEATURE_FLAG_TOGGLED,
                entity_type="FeatureFlag",
                entity_id=name,
                details={"enabled": enabled},
                performed_by=performed_by,
            ),
        )

        logger.info("feature_flag_set", key=name, enabled=enabled, performed_by=performed_by)

    def invalidate(self) -> None:
        """Drop the cache so the next lookup reloads."""
        self._flags = None
        self._expires_at = 0.0
