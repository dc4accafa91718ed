"""Dependency injection and application lifespan management."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import discord
from fastapi import Request

from gatekeeper.adapters.audit import AuditRepository
from gatekeeper.adapters.db import AppDatabase, MembershipRepository
from gatekeeper.adapters.discord import DiscordPlatformClient
from gatekeeper.adapters.notifications import EmailConfig, EmailNotifier
from gatekeeper.adapters.stripe import StripeBillingClient, construct_event
from gatekeeper.reconciliation import AdminNotifier, AutoFixer, DriftDetector, ReconciliationService
from gatekeeper.scheduling import Clock, IntervalTrigger, Scheduler, SystemClock
from gatekeeper.services import (
    BackgroundTaskQueue,
    BillingEnforcer,
    BillingFailureHandler,
    FeatureFlagCache,
    NotificationService,
    RoleAssignmentService,
)

if TYPE_CHECKING:
    from fastapi import FastAPI

    from gatekeeper.core.interfaces import (
        AuditSink,
        BillingProvider,
        EventLedger,
        FlagSource,
        MembershipStore,
        PlatformClient,
    )

logger = logging.getLogger(__name__)

BILLING_SWEEP_JOB = "billing-enforcement"


class Settings:
    """Application settings loaded from environment."""

    def __init__(self) -> None:
        """Load settings from environment variables."""
        self.database_url = os.getenv("DATABASE_URL", "postgresql://localhost:5432/gatekeeper")
        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY", "")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET", "")
        self.discord_bot_token = os.getenv("DISCORD_BOT_TOKEN", "")
        self.discord_guild_id = os.getenv("DISCORD_GUILD_ID", "")
        self.discord_admin_channel_id = os.getenv("DISCORD_ADMIN_CHANNEL_ID") or None
        self.admin_email = os.getenv("ADMIN_EMAIL") or None
        self.admin_api_token = os.getenv("ADMIN_API_TOKEN") or None
        self.app_url = os.getenv("APP_URL", "http://localhost:3000")

        # SMTP settings
        self.smtp_host = os.getenv("SMTP_HOST", "")
        self.smtp_port = int(os.getenv("SMTP_PORT", "587"))
        self.smtp_user = os.getenv("SMTP_USER") or None
        self.smtp_password = os.getenv("SMTP_PASSWORD") or None
        self.email_from = os.getenv("EMAIL_FROM", "gatekeeper@example.com")

        # Scheduling settings
        self.reconciliation_hour = int(os.getenv("RECONCILIATION_HOUR", "3"))
        self.reconciliation_timezone = os.getenv("RECONCILIATION_TIMEZONE", "America/New_York")
        self.billing_poll_seconds = float(os.getenv("BILLING_POLL_SECONDS", "300"))
        self.feature_flag_ttl_seconds = float(os.getenv("FEATURE_FLAG_TTL_SECONDS", "60"))

    def email_config(self) -> EmailConfig | None:
        """SMTP config, None when email is not configured."""
        if not self.smtp_host:
            return None
        return EmailConfig(
            smtp_host=self.smtp_host,
            smtp_port=self.smtp_port,
            smtp_user=self.smtp_user,
            smtp_password=self.smtp_password,
            from_email=self.email_from,
        )


settings = Settings()


@dataclass
class Container:
    """Wired services shared by routes, jobs and the scheduler."""

    settings: Settings
    store: MembershipStore
    platform: PlatformClient
    ledger: EventLedger
    queue: BackgroundTaskQueue
    scheduler: Scheduler
    flags: FeatureFlagCache
    roles: RoleAssignmentService
    notifications: NotificationService
    billing_handler: BillingFailureHandler
    enforcer: BillingEnforcer
    reconciliation: ReconciliationService
    audit: AuditSink | None = None


def build_container(
    config: Settings,
    store: MembershipStore,
    platform: PlatformClient,
    flag_source: FlagSource,
    ledger: EventLedger,
    billing: BillingProvider | None = None,
    audit: AuditSink | None = None,
    email: EmailNotifier | None = None,
    clock: Clock | None = None,
) -> Container:
    """Wire every service from its collaborators."""
    clock = clock or SystemClock()
    queue = BackgroundTaskQueue()
    scheduler = Scheduler(clock=clock)
    flags = FeatureFlagCache(flag_source, ttl_seconds=config.feature_flag_ttl_seconds, audit=audit)
    roles = RoleAssignmentService(platform, store, audit=audit, queue=queue, sleep=clock.sleep)
    notifications = NotificationService(
        platform, email=email, billing=billing, app_url=config.app_url
    )
    reconciliation = ReconciliationService(
        DriftDetector(store, platform, billing),
        AutoFixer(store, roles, audit=audit, sleep=clock.sleep),
        flags,
        AdminNotifier(platform, config.discord_admin_channel_id, email, config.admin_email),
        scheduler=scheduler,
    )
    return Container(
        settings=config,
        store=store,
        platform=platform,
        ledger=ledger,
        queue=queue,
        scheduler=scheduler,
        flags=flags,
        roles=roles,
        notifications=notifications,
        billing_handler=BillingFailureHandler(
            store, roles, notifications, audit=audit, clock=clock
        ),
        enforcer=BillingEnforcer(
            store, roles, notifications, flags=flags, audit=audit, clock=clock
        ),
        reconciliation=reconciliation,
        audit=audit,
    )


@asynccontextmanager
async def open_container(config: Settings) -> AsyncIterator[Container]:
    """Connect the database, log in to Discord and build the container."""
    app_db = AppDatabase(config.database_url)
    await app_db.connect()
    if app_db.pool is None:
        raise RuntimeError("Database pool not initialized")

    client = discord.Client(intents=discord.Intents(guilds=True, members=True))
    await client.login(config.discord_bot_token)

    email_config = config.email_config()
    try:
        yield build_container(
            config,
            store=MembershipRepository(app_db),
            platform=DiscordPlatformClient(client, int(config.discord_guild_id)),
            flag_source=app_db,
            ledger=app_db,
            billing=StripeBillingClient(config.stripe_secret_key),
            audit=AuditRepository(app_db.pool),
            email=EmailNotifier(email_config) if email_config else None,
        )
    finally:
        await client.close()
        await app_db.close()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan - setup and teardown.

    This context manager handles:
    - Database pool and Discord login
    - Background task queue workers
    - Daily reconciliation and billing enforcement schedules
    """
    async with open_container(settings) as container:
        container.reconciliation.register(
            container.scheduler,
            settings.reconciliation_hour,
            settings.reconciliation_timezone,
        )
        container.scheduler.add_job(
            BILLING_SWEEP_JOB,
            IntervalTrigger(settings.billing_poll_seconds),
            container.enforcer.sweep,
        )
        await container.queue.start()
        await container.scheduler.start()

        app.state.container = container
        logger.info("gatekeeper_started")

        yield

        await container.scheduler.stop()
        await container.queue.stop()
        logger.info("gatekeeper_stopped")


def get_container(request: Request) -> Container:
    """Get the service container from app state."""
    container: Container = request.app.state.container
    return container


def get_settings() -> Settings:
    """Get application settings."""
    return settings


EventVerifier = Callable[[bytes, str], dict[str, Any]]


def get_event_verifier() -> EventVerifier:
    """Webhook signature verifier bound to the configured secret."""

    def verify(payload: bytes, signature: str) -> dict[str, Any]:
        return construct_event(payload, signature, settings.stripe_webhook_secret)

    return verify
