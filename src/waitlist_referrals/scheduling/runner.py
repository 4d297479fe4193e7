"""APScheduler runtime for the reward repair jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from waitlist_referrals.observability.scheduler import get_rewards_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


class RewardsJobScheduler:
    """Runs leaderboard reconciliation and reward resolution on cron schedules."""

    # meta: scheduler: rewards-repair

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        config_path: Path,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._sleep = sleep
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._callables: dict[str, JobCallable] = {}
        self._observability = get_rewards_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def load(self) -> ScheduleConfig:
        """Read the schedule file and resolve every enabled task path."""

        config = load_job_definitions(self._config_path)
        self._callables = {job.id: resolve_task(job.task) for job in config.enabled_jobs}
        self._config = config
        return config

    def start(self) -> None:
        config = self.load()
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)
        for job in config.enabled_jobs:
            scheduler.add_job(
                self.run_job,
                trigger=CronTrigger.from_crontab(job.cron, timezone=timezone),
                args=[job.id],
                id=job.id,
                replace_existing=True,
            )
            logger.info("Registered rewards job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._scheduler = scheduler
        logger.info("Rewards job scheduler started", jobs=len(config.enabled_jobs))

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Rewards job scheduler stopped")

    async def run_job(self, job_id: str) -> Any:
        """Run one configured job now, retrying with backoff. Returns the job summary or None."""

        if self._config is None:
            self.load()
        assert self._config is not None
        job = next((entry for entry in self._config.jobs if entry.id == job_id), None)
        if job is None or job.id not in self._callables:
            raise KeyError(f"Unknown or disabled job: {job_id}")
        return await self._run_with_retries(job, self._callables[job.id])

    async def _run_with_retries(self, job: JobDefinition, func: JobCallable) -> Any:
        policy = job.retry
        self._observability.record_dispatch(job.id, job.task)
        started_at = time.perf_counter()

        for attempt in range(1, policy.max_attempts + 1):
            try:
                summary = await func(session_factory=self._session_factory, **job.kwargs)
            except Exception as exc:
                error_message = str(exc) or exc.__class__.__name__
                self._observability.record_attempt_failure(job.id, job.task, attempts=attempt, error=error_message)
                if attempt >= policy.max_attempts:
                    self._observability.record_run_failure(
                        job.id,
                        job.task,
                        runtime_seconds=time.perf_counter() - started_at,
                        attempts=attempt,
                        error=error_message,
                    )
                    logger.exception(
                        "Rewards job failed after retries",
                        job_id=job.id,
                        task=job.task,
                        attempts=attempt,
                    )
                    return None

                delay = policy.delay_for(attempt)
                if policy.jitter_seconds:
                    delay += random.uniform(0, policy.jitter_seconds)
                self._observability.record_retry(job.id, job.task, delay_seconds=delay, attempts=attempt + 1)
                logger.warning(
                    "Rewards job retrying",
                    job_id=job.id,
                    task=job.task,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                )
                if delay:
                    await self._sleep(delay)
                continue

            runtime_seconds = time.perf_counter() - started_at
            self._observability.record_success(
                job.id,
                job.task,
                runtime_seconds=runtime_seconds,
                attempts=attempt,
                summary=summary if isinstance(summary, dict) else None,
            )
            logger.info(
                "Rewards job completed",
                job_id=job.id,
                task=job.task,
                attempts=attempt,
                runtime_seconds=runtime_seconds,
            )
            return summary
        return None

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        configured = self._config.jobs if self._config else []
        return {
            "running": self.is_running,
            "configured_jobs": len(configured),
            "totals": snapshot.totals,
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "enabled": job.enabled,
                    "max_attempts": job.retry.max_attempts,
                    "metrics": snapshot.jobs[job.id].as_dict() if job.id in snapshot.jobs else None,
                }
                for job in configured
            ],
        }


def resolve_task(task_path: str) -> JobCallable:
    """Import ``package.module.function`` and require it to be a coroutine function."""

    module_name, _, attr = task_path.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {task_path}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {task_path} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {task_path} must be an async function")
    return func


__all__ = ["RewardsJobScheduler", "resolve_task"]
