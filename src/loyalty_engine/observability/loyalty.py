from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    ledger: Dict[str, int]
    conversions: Dict[str, int]
    segments: Dict[str, int]
    jobs: Dict[str, Dict[str, int]]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "conversions": dict(self.conversions),
            "segments": dict(self.segments),
            "jobs": {key: dict(value) for key, value in self.jobs.items()},
        }


class LoyaltyObservabilityStore:
    """Collect ledger, conversion, segmentation and queue telemetry."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._conversions: Dict[str, int] = defaultdict(int)
        self._segments: Dict[str, int] = defaultdict(int)
        self._job_outcomes: Dict[str, int] = defaultdict(int)
        self._job_queues: Dict[str, int] = defaultdict(int)

    def record_ledger_event(self, event: str, *, points: int = 0) -> None:
        with self._lock:
            self._ledger[event] += 1
            if points:
                self._ledger[f"{event}:points"] += points

    def record_conversion(self, *, points: int, coins: int) -> None:
        with self._lock:
            self._conversions["total"] += 1
            self._conversions["points"] += points
            self._conversions["coins"] += coins

    def record_conversion_rejected(self, reason: str) -> None:
        with self._lock:
            self._conversions[f"rejected:{reason}"] += 1

    def record_segment_refresh(self, *, added: int, removed: int, skipped: bool = False) -> None:
        with self._lock:
            if skipped:
                self._segments["skipped"] += 1
                return
            self._segments["refreshes"] += 1
            self._segments["members_added"] += added
            self._segments["members_removed"] += removed

    def record_job_outcome(self, queue_name: str, outcome: str) -> None:
        with self._lock:
            self._job_outcomes[outcome] += 1
            self._job_queues[f"{queue_name}:{outcome}"] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            ledger = dict(self._ledger)
            conversions = dict(self._conversions)
            segments = dict(self._segments)
            jobs = {
                "by_outcome": dict(self._job_outcomes),
                "by_queue": dict(self._job_queues),
            }
        return LoyaltySnapshot(ledger=ledger, conversions=conversions, segments=segments, jobs=jobs)

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._conversions.clear()
            self._segments.clear()
            self._job_outcomes.clear()
            self._job_queues.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
