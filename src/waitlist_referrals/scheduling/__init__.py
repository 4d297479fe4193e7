"""Cron scheduling for the reward repair jobs."""

from .config import JobDefinition, RetryPolicy, ScheduleConfig, load_job_definitions
from .runner import RewardsJobScheduler, resolve_task

__all__ = [
    "JobDefinition",
    "RetryPolicy",
    "RewardsJobScheduler",
    "ScheduleConfig",
    "load_job_definitions",
    "resolve_task",
]
