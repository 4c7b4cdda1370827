"""API routes."""

from . import epic, pipeline, sessions

__all__ = ["epic", "pipeline", "sessions"]
