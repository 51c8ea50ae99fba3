"""Job queue contract shared by the in-process and Celery backends."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Mapping, Protocol

from loyalty_engine.core.settings import Settings

JobHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with fixed or exponential backoff between them."""

    attempts: int = 3
    backoff: Literal["exponential", "fixed"] = "exponential"
    delay_seconds: float = 5.0
    max_delay_seconds: float | None = None

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1 for the first retry)."""

        if self.backoff == "exponential":
            delay = self.delay_seconds * (2 ** max(retry_number - 1, 0))
        else:
            delay = self.delay_seconds
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        return delay

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            attempts=settings.job_retry_attempts,
            delay_seconds=settings.job_retry_backoff_seconds,
            max_delay_seconds=settings.job_retry_max_backoff_seconds,
        )


class JobHandle(Protocol):
    id: str
    queue_name: str
    job_name: str

    @property
    def status(self) -> JobStatus: ...

    async def wait(self, timeout: float | None = None) -> Any: ...


class JobQueue(Protocol):
    def register(self, queue_name: str, job_name: str, handler: JobHandler) -> None: ...

    async def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: Mapping[str, Any],
        *,
        retry_policy: RetryPolicy | None = None,
        dedupe_key: str | None = None,
    ) -> JobHandle: ...

    async def start(self) -> None: ...

    async def close(self) -> None: ...


class JobFailedError(RuntimeError):
    """Raised by ``wait()`` when a job exhausted its attempts."""

    def __init__(self, job_id: str, error: str) -> None:
        super().__init__(f"Job {job_id} failed: {error}")
        self.job_id = job_id
        self.error = error


__all__ = [
    "JobFailedError",
    "JobHandle",
    "JobHandler",
    "JobQueue",
    "JobStatus",
    "RetryPolicy",
]
