"""Recurring job scheduling."""

from .config import JobDefinition, RetrySettings, ScheduleConfig, load_job_definitions
from .runner import JobScheduler, resolve_task

__all__ = [
    "JobDefinition",
    "JobScheduler",
    "RetrySettings",
    "ScheduleConfig",
    "load_job_definitions",
    "resolve_task",
]
