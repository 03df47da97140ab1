"""Dashboard API for the agent swarm.

Provides REST endpoints for monitoring agents, answering their questions
and stopping work.
"""

from .main import create_app, run_dashboard

__all__ = ["create_app", "run_dashboard"]
