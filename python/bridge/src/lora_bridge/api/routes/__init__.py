"""Introspection API routes."""

from . import memory, sessions

__all__ = ["memory", "sessions"]
