"""Audit sink collaborators for mutating core operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Literal, Protocol

from loguru import logger

from loyalty_engine.core.clock import utcnow

AuditStatus = Literal["success", "failure"]


@dataclass
class AuditEvent:
    action: str
    actor: str
    target: str
    status: AuditStatus
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    error: str | None = None
    occurred_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "actor": self.actor,
            "target": self.target,
            "status": self.status,
            "before": self.before,
            "after": self.after,
            "error": self.error,
            "occurred_at": self.occurred_at.isoformat(),
        }


class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None: ...


def redact(snapshot: dict[str, Any] | None, fields: Iterable[str]) -> dict[str, Any] | None:
    if snapshot is None:
        return None
    hidden = set(fields)
    return {key: ("[redacted]" if key in hidden and value is not None else value) for key, value in snapshot.items()}


class LoggingAuditSink:
    """Emit audit events as structured log records."""

    def __init__(self, *, redact_fields: Iterable[str] = ()) -> None:
        self._redact_fields = tuple(redact_fields)

    async def record(self, event: AuditEvent) -> None:
        payload = event.as_dict()
        payload["before"] = redact(event.before, self._redact_fields)
        payload["after"] = redact(event.after, self._redact_fields)
        logger.bind(audit=payload).info("Audit event recorded", action=event.action, status=event.status)


class InMemoryAuditSink:
    """Keeps events in memory; handy for tests and local tooling."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


__all__ = [
    "AuditEvent",
    "AuditSink",
    "InMemoryAuditSink",
    "LoggingAuditSink",
    "redact",
]
