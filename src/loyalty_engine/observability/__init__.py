"""In-process telemetry stores."""

from .loyalty import LoyaltyObservabilityStore, get_loyalty_store
from .scheduler import JobSchedulerObservabilityStore, get_scheduler_store

__all__ = [
    "JobSchedulerObservabilityStore",
    "LoyaltyObservabilityStore",
    "get_loyalty_store",
    "get_scheduler_store",
]
