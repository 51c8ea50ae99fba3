"""Database engine, session and declarative base helpers."""

from .base import Base
from .session import build_engine, build_session_factory, open_session, unit_of_work

__all__ = ["Base", "build_engine", "build_session_factory", "open_session", "unit_of_work"]
