"""Recurring job entrypoints for the loyalty engine."""

__all__ = [
    "ledger",
    "segments",
]
