"""Result-returning facade over the ledger, conversion and segmentation services.

Every call runs in its own unit of work and returns an ``OperationResult``;
errors are reported as values with a stable ``ErrorKind`` and never raised to
the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Mapping, TypeVar
from uuid import UUID

import pydantic
from loguru import logger
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.errors import ErrorKind, LoyaltyError
from loyalty_engine.core.logging import loyalty_context
from loyalty_engine.core.settings import settings
from loyalty_engine.db.session import SessionFactory, open_session, unit_of_work
from loyalty_engine.models.ledger import LedgerEntry
from loyalty_engine.queue.base import JobHandle, JobQueue
from loyalty_engine.schemas.conversion import (
    CalculationRequest,
    ConversionHistoryView,
    ConversionQuoteView,
    ConversionRequest,
)
from loyalty_engine.schemas.ledger import LedgerEntryView, TransactionCreate, TransactionStatusUpdate
from loyalty_engine.schemas.segment import (
    SegmentCreate,
    SegmentCustomersPage,
    SegmentUpdate,
    SegmentView,
)
from loyalty_engine.services.audit import AuditEvent, AuditSink, LoggingAuditSink
from loyalty_engine.services.conversion import ConversionService, format_rate
from loyalty_engine.services.ledger import LedgerService
from loyalty_engine.services.segments import SegmentService

T = TypeVar("T")

_tracer = trace.get_tracer("loyalty_engine.operations")


@dataclass(frozen=True)
class OperationError:
    kind: ErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    ok: bool
    value: T | None = None
    error: OperationError | None = None

    @classmethod
    def success(cls, value: T) -> "OperationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: OperationError) -> "OperationResult[T]":
        return cls(ok=False, error=error)


@dataclass
class SegmentChange:
    """Outcome of a segment create or update, with its refresh job if one was queued."""

    segment: SegmentView
    refresh_job: JobHandle | None = None
    refresh_error: str | None = None


@dataclass
class _AuditScope:
    action: str
    actor: str
    target: str = ""
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None


def _entry_snapshot(entry: LedgerEntry) -> dict[str, Any]:
    return LedgerEntryView.model_validate(entry).model_dump(mode="json")


def _parse(model: type[pydantic.BaseModel], payload: Any) -> Any:
    if isinstance(payload, model):
        return payload
    return model.model_validate(payload)


class LoyaltyOperations:
    """Entry points for callers of the loyalty core; one unit of work per call."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        job_queue: JobQueue | None = None,
        audit_sink: AuditSink | None = None,
        default_actor: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._job_queue = job_queue
        self._audit = audit_sink or LoggingAuditSink(redact_fields=settings.audit_redact_fields)
        self._default_actor = default_actor or settings.audit_actor_default

    # Ledger

    async def record_transaction(self, payload: TransactionCreate | Mapping[str, Any]) -> OperationResult[LedgerEntryView]:
        async def work(session: AsyncSession, scope: _AuditScope) -> LedgerEntryView:
            request = _parse(TransactionCreate, payload)
            scope.actor = request.actor or scope.actor
            scope.target = f"customer:{request.customer_id}"
            ledger = LedgerService(session)
            scope.before = {"points_balance": await ledger.get_balance(request.customer_id)}
            entry = await ledger.record_transaction(
                request.customer_id,
                kind=request.kind,
                points=request.points,
                status=request.status,
                source=request.source,
                transaction_id=request.transaction_id,
                spend_amount=request.spend_amount,
                metadata=request.metadata,
                notes=request.notes,
                occurred_at=request.occurred_at,
            )
            scope.after = {
                "points_balance": await ledger.get_balance(request.customer_id),
                "entry": _entry_snapshot(entry),
            }
            return LedgerEntryView.model_validate(entry)

        return await self._execute("ledger.record_transaction", work, payload=payload)

    async def update_status(self, payload: TransactionStatusUpdate | Mapping[str, Any]) -> OperationResult[LedgerEntryView]:
        async def work(session: AsyncSession, scope: _AuditScope) -> LedgerEntryView:
            request = _parse(TransactionStatusUpdate, payload)
            scope.actor = request.actor or scope.actor
            scope.target = f"ledger_entry:{request.entry_id}"
            ledger = LedgerService(session)
            entry = await ledger.get_entry(request.entry_id)
            scope.before = {
                "entry": _entry_snapshot(entry),
                "points_balance": await ledger.get_balance(entry.customer_id),
            }
            entry = await ledger.update_status(request.entry_id, request.status, notes=request.notes)
            scope.after = {
                "entry": _entry_snapshot(entry),
                "points_balance": await ledger.get_balance(entry.customer_id),
            }
            return LedgerEntryView.model_validate(entry)

        return await self._execute("ledger.update_status", work, payload=payload)

    async def delete_transaction(self, entry_id: UUID, *, actor: str | None = None) -> OperationResult[LedgerEntryView]:
        async def work(session: AsyncSession, scope: _AuditScope) -> LedgerEntryView:
            scope.target = f"ledger_entry:{entry_id}"
            ledger = LedgerService(session)
            scope.before = _entry_snapshot(await ledger.get_entry(entry_id))
            entry = await ledger.delete_transaction(entry_id)
            scope.after = _entry_snapshot(entry)
            return LedgerEntryView.model_validate(entry)

        return await self._execute("ledger.delete_transaction", work, actor=actor)

    # Conversion

    async def calculate_conversion(
        self, payload: CalculationRequest | Mapping[str, Any]
    ) -> OperationResult[ConversionQuoteView]:
        async def work(session: AsyncSession, scope: _AuditScope) -> ConversionQuoteView:
            request = _parse(CalculationRequest, payload)
            rule, quote = await ConversionService(session).quote(request.points, rule_id=request.rule_id)
            return ConversionQuoteView(
                rule_id=rule.id,
                points=quote.points,
                base_coins=quote.base_coins,
                bonus_coins=quote.bonus_coins,
                total_coins=quote.total_coins,
                conversion_rate=format_rate(rule),
            )

        return await self._execute("conversion.calculate", work, payload=payload, audited=False)

    async def convert_points(self, payload: ConversionRequest | Mapping[str, Any]) -> OperationResult[ConversionHistoryView]:
        async def work(session: AsyncSession, scope: _AuditScope) -> ConversionHistoryView:
            request = _parse(ConversionRequest, payload)
            scope.actor = request.actor or scope.actor
            scope.target = f"customer:{request.customer_id}"
            service = ConversionService(session)
            customer = await LedgerService(session).lock_customer(request.customer_id)
            scope.before = {
                "points_balance": int(customer.points_balance or 0),
                "coins_balance": int(customer.coins_balance or 0),
            }
            history = await service.convert(request.customer_id, request.points, rule_id=request.rule_id)
            view = ConversionHistoryView.model_validate(history)
            scope.after = {
                "points_balance": int(customer.points_balance or 0),
                "coins_balance": int(customer.coins_balance or 0),
                "conversion": view.model_dump(mode="json"),
            }
            return view

        return await self._execute("conversion.convert", work, payload=payload)

    # Segmentation

    async def create_segment(self, payload: SegmentCreate | Mapping[str, Any]) -> OperationResult[SegmentChange]:
        async def work(session: AsyncSession, scope: _AuditScope) -> SegmentView:
            request = _parse(SegmentCreate, payload)
            scope.actor = request.actor or scope.actor
            if request.actor is None:
                request = request.model_copy(update={"actor": scope.actor})
            segment = await SegmentService(session).create_segment(request)
            view = SegmentView.model_validate(segment)
            scope.target = f"segment:{view.id}"
            scope.after = view.model_dump(mode="json")
            return view

        result = await self._execute("segment.create", work, payload=payload)
        return await self._with_refresh(result, refresh=lambda view: view.status.value == "active")

    async def update_segment(
        self, segment_id: UUID, payload: SegmentUpdate | Mapping[str, Any]
    ) -> OperationResult[SegmentChange]:
        needs_refresh = False

        async def work(session: AsyncSession, scope: _AuditScope) -> SegmentView:
            nonlocal needs_refresh
            request = _parse(SegmentUpdate, payload)
            scope.actor = request.actor or scope.actor
            if request.actor is None:
                request = request.model_copy(update={"actor": scope.actor})
            scope.target = f"segment:{segment_id}"
            service = SegmentService(session)
            scope.before = SegmentView.model_validate(await service.get_segment(segment_id)).model_dump(mode="json")
            segment, needs_refresh = await service.update_segment(segment_id, request)
            view = SegmentView.model_validate(segment)
            scope.after = view.model_dump(mode="json")
            return view

        result = await self._execute("segment.update", work, payload=payload)
        return await self._with_refresh(result, refresh=lambda _view: needs_refresh)

    async def delete_segment(self, segment_id: UUID, *, actor: str | None = None) -> OperationResult[SegmentView]:
        async def work(session: AsyncSession, scope: _AuditScope) -> SegmentView:
            scope.target = f"segment:{segment_id}"
            service = SegmentService(session)
            view = SegmentView.model_validate(await service.get_segment(segment_id))
            scope.before = view.model_dump(mode="json")
            await service.delete_segment(segment_id)
            return view

        return await self._execute("segment.delete", work, actor=actor)

    async def refresh_segment(self, segment_id: UUID, *, actor: str | None = None) -> OperationResult[JobHandle]:
        async def work(session: AsyncSession, scope: _AuditScope) -> JobHandle:
            scope.target = f"segment:{segment_id}"
            handle = await SegmentService(session, job_queue=self._job_queue).refresh_segment(segment_id)
            scope.after = {"job_id": handle.id}
            return handle

        return await self._execute("segment.refresh", work, actor=actor)

    async def get_segment_customers(
        self,
        segment_id: UUID,
        *,
        limit: int | None = None,
        offset: int = 0,
        sort: str = "added_at_desc",
    ) -> OperationResult[SegmentCustomersPage]:
        async def work(session: AsyncSession, scope: _AuditScope) -> SegmentCustomersPage:
            return await SegmentService(session).get_segment_customers(
                segment_id, limit=limit, offset=offset, sort=sort  # type: ignore[arg-type]
            )

        return await self._execute("segment.customers", work, audited=False)

    # Plumbing

    async def _with_refresh(
        self,
        result: OperationResult[SegmentView],
        *,
        refresh: Callable[[SegmentView], bool],
    ) -> OperationResult[SegmentChange]:
        if not result.ok or result.value is None:
            return OperationResult.failure(result.error)  # type: ignore[arg-type]
        change = SegmentChange(segment=result.value)
        if not refresh(result.value):
            return OperationResult.success(change)
        if self._job_queue is None:
            change.refresh_error = "No job queue configured"
            logger.warning("Segment refresh skipped; no job queue", segment_id=str(result.value.id))
            return OperationResult.success(change)

        session = await open_session(self._session_factory)
        async with session as managed_session:
            service = SegmentService(managed_session, job_queue=self._job_queue)
            try:
                change.refresh_job = await service.enqueue_refresh(result.value.id)
            except Exception as exc:
                change.refresh_error = str(exc) or exc.__class__.__name__
                logger.exception("Failed to enqueue segment refresh", segment_id=str(result.value.id))
        return OperationResult.success(change)

    async def _execute(
        self,
        action: str,
        work: Callable[[AsyncSession, _AuditScope], Awaitable[T]],
        *,
        payload: Any = None,
        actor: str | None = None,
        audited: bool = True,
    ) -> OperationResult[T]:
        scope = _AuditScope(action=action, actor=actor or self._actor_from(payload))
        try:
            with loyalty_context(operation=action), _tracer.start_as_current_span(action):
                session = await open_session(self._session_factory)
                async with session as managed_session:
                    async with unit_of_work(managed_session):
                        value = await work(managed_session, scope)
        except LoyaltyError as exc:
            error = OperationError(kind=exc.kind, message=exc.message, details=dict(exc.details))
        except pydantic.ValidationError as exc:
            error = OperationError(
                kind=ErrorKind.VALIDATION,
                message="Invalid request payload",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            )
        except Exception as exc:
            logger.exception("Unexpected failure in core operation", action=action)
            error = OperationError(kind=ErrorKind.INFRASTRUCTURE, message=str(exc) or exc.__class__.__name__)
        else:
            if audited:
                await self._record_audit(scope, status="success")
            return OperationResult.success(value)

        logger.info("Core operation rejected", action=action, kind=error.kind.value, message=error.message)
        if audited:
            await self._record_audit(scope, status="failure", error=error.message)
        return OperationResult.failure(error)

    async def _record_audit(self, scope: _AuditScope, *, status: str, error: str | None = None) -> None:
        event = AuditEvent(
            action=scope.action,
            actor=scope.actor,
            target=scope.target,
            status=status,  # type: ignore[arg-type]
            before=scope.before,
            after=scope.after if status == "success" else None,
            error=error,
        )
        try:
            await self._audit.record(event)
        except Exception:
            logger.exception("Audit sink failed", action=scope.action)

    def _actor_from(self, payload: Any) -> str:
        if isinstance(payload, pydantic.BaseModel):
            actor = getattr(payload, "actor", None)
        elif isinstance(payload, Mapping):
            actor = payload.get("actor")
        else:
            actor = None
        return actor or self._default_actor


__all__ = ["LoyaltyOperations", "OperationError", "OperationResult", "SegmentChange"]
