"""Per-job run metrics for the recurring job scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Dict

from loyalty_engine.core.clock import utcnow

_COUNTERS = ("runs", "success", "run_failures", "attempt_failures", "retries")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class JobRunStats:
    job_id: str
    task: str
    counters: Dict[str, int] = field(default_factory=lambda: dict.fromkeys(_COUNTERS, 0))
    consecutive_failures: int = 0
    total_runtime_seconds: float = 0.0
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None
    last_attempts: int = 0
    last_retry_delay_seconds: float | None = None

    def copy(self) -> "JobRunStats":
        return JobRunStats(**{**self.__dict__, "counters": dict(self.counters)})

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "totals": {**self.counters, "consecutive_failures": self.consecutive_failures},
            "total_runtime_seconds": self.total_runtime_seconds,
            "last_started_at": _iso(self.last_started_at),
            "last_finished_at": _iso(self.last_finished_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error": self.last_error,
            "last_error_at": _iso(self.last_error_at),
            "last_attempts": self.last_attempts,
            "last_retry_delay_seconds": self.last_retry_delay_seconds,
        }


@dataclass
class SchedulerSnapshot:
    totals: Dict[str, int]
    jobs: Dict[str, JobRunStats]

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": dict(self.totals),
            "jobs": {job_id: stats.as_dict() for job_id, stats in self.jobs.items()},
        }


class JobSchedulerObservabilityStore:
    """Thread-safe counters for scheduler dispatches, retries and failures."""

    # meta: observability: job-scheduler

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, JobRunStats] = {}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()

    def _stats(self, job_id: str, task: str) -> JobRunStats:
        stats = self._jobs.setdefault(job_id, JobRunStats(job_id=job_id, task=task))
        stats.task = task
        return stats

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            stats = self._stats(job_id, task)
            stats.counters["runs"] += 1
            stats.last_started_at = utcnow()
            stats.last_attempts = 0
            stats.last_retry_delay_seconds = None

    def record_attempt_failure(self, job_id: str, task: str, *, attempts: int, error: str) -> None:
        with self._lock:
            stats = self._stats(job_id, task)
            stats.counters["attempt_failures"] += 1
            stats.consecutive_failures += 1
            stats.last_attempts = attempts
            stats.last_error = error
            stats.last_error_at = utcnow()

    def record_retry(self, job_id: str, task: str, *, delay_seconds: float, attempts: int) -> None:
        with self._lock:
            stats = self._stats(job_id, task)
            stats.counters["retries"] += 1
            stats.last_attempts = attempts
            stats.last_retry_delay_seconds = delay_seconds

    def record_success(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int) -> None:
        with self._lock:
            stats = self._stats(job_id, task)
            stats.counters["success"] += 1
            stats.total_runtime_seconds += runtime_seconds
            stats.last_finished_at = stats.last_success_at = utcnow()
            stats.last_attempts = attempts
            stats.consecutive_failures = 0
            stats.last_error = None

    def record_run_failure(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int, error: str) -> None:
        with self._lock:
            stats = self._stats(job_id, task)
            stats.counters["run_failures"] += 1
            stats.total_runtime_seconds += runtime_seconds
            stats.last_finished_at = stats.last_error_at = utcnow()
            stats.last_attempts = attempts
            stats.last_error = error

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            jobs = {job_id: stats.copy() for job_id, stats in self._jobs.items()}
        totals = {name: sum(stats.counters[name] for stats in jobs.values()) for name in _COUNTERS}
        return SchedulerSnapshot(totals=totals, jobs=jobs)


_SCHEDULER_STORE = JobSchedulerObservabilityStore()


def get_scheduler_store() -> JobSchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = [
    "JobRunStats",
    "JobSchedulerObservabilityStore",
    "SchedulerSnapshot",
    "get_scheduler_store",
]
