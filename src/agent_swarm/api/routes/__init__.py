"""API routes for the dashboard."""

from . import status, messages, coordination, control

__all__ = ["status", "messages", "coordination", "control"]
