"""Pydantic payloads accepted and returned by the core operations."""
