"""Job queue backends."""

from .base import JobFailedError, JobHandle, JobHandler, JobQueue, JobStatus, RetryPolicy
from .job_queue import InProcessJobQueue, Job

__all__ = [
    "InProcessJobQueue",
    "Job",
    "JobFailedError",
    "JobHandle",
    "JobHandler",
    "JobQueue",
    "JobStatus",
    "RetryPolicy",
]
