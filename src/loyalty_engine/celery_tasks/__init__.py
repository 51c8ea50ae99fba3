"""Celery task modules for the loyalty engine."""

# Import submodules so Celery autodiscovery registers tasks.
from . import segments as _segments  # noqa: F401

__all__ = ["_segments"]
