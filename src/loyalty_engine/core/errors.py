"""Typed error taxonomy shared by the ledger, conversion and segmentation services."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Stable error kinds surfaced to callers of the core operations."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    STATE = "state"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INFRASTRUCTURE = "infrastructure"


class LoyaltyError(RuntimeError):
    """Base exception for loyalty engine failures."""

    kind: ErrorKind = ErrorKind.INFRASTRUCTURE

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(LoyaltyError):
    """Raised when input or a rule limit is violated."""

    kind = ErrorKind.VALIDATION


class NotFoundError(LoyaltyError):
    """Raised when a customer, rule, segment or ledger entry is missing."""

    kind = ErrorKind.NOT_FOUND


class ConflictError(LoyaltyError):
    """Raised on duplicate transaction ids or segment names."""

    kind = ErrorKind.CONFLICT


class StateError(LoyaltyError):
    """Raised when a status transition is not allowed."""

    kind = ErrorKind.STATE

    def __init__(self, current_status: str, requested_status: str) -> None:
        super().__init__(
            f"Cannot transition from {current_status} to {requested_status}",
            current_status=current_status,
            requested_status=requested_status,
        )
        self.current_status = current_status
        self.requested_status = requested_status


class InsufficientFundsError(LoyaltyError):
    """Raised when a customer's balance cannot cover a debit."""

    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, *, balance: int, requested: int) -> None:
        super().__init__(
            f"Insufficient points: balance {balance}, requested {requested}",
            balance=balance,
            requested=requested,
        )
        self.balance = balance
        self.requested = requested


class InfrastructureError(LoyaltyError):
    """Raised when the datastore or queue is unavailable."""

    kind = ErrorKind.INFRASTRUCTURE


__all__ = [
    "ConflictError",
    "ErrorKind",
    "InfrastructureError",
    "InsufficientFundsError",
    "LoyaltyError",
    "NotFoundError",
    "StateError",
    "ValidationError",
]
