"""Long-running process that hosts the rewards job scheduler."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

from loguru import logger

from waitlist_referrals.core.logging import configure_logging
from waitlist_referrals.core.settings import settings
from waitlist_referrals.db.session import async_session
from waitlist_referrals.scheduling import RewardsJobScheduler


async def run_worker(stop_event: asyncio.Event | None = None) -> int:
    """Start the scheduler and block until ``stop_event`` is set or a signal arrives."""

    if not settings.rewards_job_scheduler_enabled:
        logger.info(
            "Rewards job scheduler disabled",
            reason="rewards_job_scheduler_enabled is false",
        )
        return 0

    schedule_path = Path(settings.rewards_job_schedule_path)
    scheduler = RewardsJobScheduler(session_factory=async_session, config_path=schedule_path)
    try:
        scheduler.start()
    except FileNotFoundError as exc:
        logger.exception("Rewards job scheduler failed to start", error=str(exc))
        return 1
    logger.info("Rewards job scheduler enabled", schedule_path=str(schedule_path))

    stop = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover - non-POSIX loops
            pass

    try:
        await stop.wait()
    finally:
        await scheduler.stop()
    return 0


def main() -> int:
    configure_logging(
        service_name=settings.service_name,
        environment=settings.environment,
        version=settings.service_version,
    )
    return asyncio.run(run_worker())
