"""Manual reconciliation run.

Run via: python -m gatekeeper.jobs.reconcile
"""

import asyncio

import structlog

from gatekeeper.entrypoints.api.deps import Settings, open_container

logger = structlog.get_logger()


async def main() -> None:
    """Run the reconciliation pipeline once and log the result."""
    config = Settings()
    if not config.discord_bot_token or not config.discord_guild_id:
        logger.error("DISCORD_BOT_TOKEN and DISCORD_GUILD_ID must be set")
        return

    try:
        async with open_container(config) as container:
            result = await container.reconciliation.run(triggered_by="manual")
    except Exception as e:
        logger.error("manual_reconciliation_failed", error=str(e), exc_info=True)
        return

    logger.info(
        "manual_reconciliation_finished",
        run_id=str(result.run_id),
        issues_found=result.issues_found,
        issues_fixed=result.issues_fixed,
        auto_fix_enabled=result.auto_fix_enabled,
    )
    for issue in result.issues:
        logger.info(
            "drift_issue",
            type=issue.type.value,
            severity=issue.severity.value,
            member_id=str(issue.member_id),
            description=issue.description,
        )


if __name__ == "__main__":
    asyncio.run(main())
