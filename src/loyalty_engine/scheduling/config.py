"""Loader for the recurring job schedule (``config/schedules.toml``)."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib


@dataclass(slots=True)
class RetrySettings:
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based), without jitter."""

        delay = self.base_backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
        if self.max_backoff_seconds:
            delay = min(delay, self.max_backoff_seconds)
        return max(delay, 0.0)


@dataclass(slots=True)
class JobDefinition:
    id: str
    task: str
    cron: str
    enabled: bool = True
    description: str | None = None
    kwargs: dict[str, Any] = field(default_factory=dict)
    retry: RetrySettings = field(default_factory=RetrySettings)


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]

    def enabled_jobs(self) -> list[JobDefinition]:
        return [job for job in self.jobs if job.enabled]


def _float(payload: dict[str, Any], key: str, default: float, minimum: float) -> float:
    value = payload.get(key, default)
    try:
        return max(float(value), minimum)
    except (TypeError, ValueError):
        return default


def _parse_job(key: str, payload: dict[str, Any]) -> JobDefinition | None:
    task = payload.get("task")
    cron = payload.get("cron")
    if not isinstance(task, str) or not isinstance(cron, str):
        return None
    kwargs = payload.get("kwargs", {})
    retry = RetrySettings(
        max_attempts=max(int(payload.get("max_attempts", 1) or 1), 1),
        base_backoff_seconds=_float(payload, "base_backoff_seconds", 5.0, 0.0),
        backoff_multiplier=_float(payload, "backoff_multiplier", 2.0, 1.0),
        max_backoff_seconds=_float(payload, "max_backoff_seconds", 60.0, 0.0),
        jitter_seconds=_float(payload, "jitter_seconds", 0.0, 0.0),
    )
    return JobDefinition(
        id=str(payload.get("id") or key),
        task=task,
        cron=cron,
        enabled=bool(payload.get("enabled", True)),
        description=payload.get("description"),
        kwargs=kwargs if isinstance(kwargs, dict) else {},
        retry=retry,
    )


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    """Parse the TOML schedule; malformed job tables are skipped."""

    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    jobs: list[JobDefinition] = []
    for key, payload in (data.get("jobs") or {}).items():
        if not isinstance(payload, dict):
            continue
        job = _parse_job(key, payload)
        if job is not None:
            jobs.append(job)
    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["JobDefinition", "RetrySettings", "ScheduleConfig", "load_job_definitions"]
