"""Orchestration components for the agent swarm.

- ControlCoordinator: Decomposes a task and drives specialist agents through phases
- ShutdownHandler: Handles signals, stop requests, and stopping running agents
"""

from .coordinator import ControlCoordinator, decompose_task, plan_phases
from .shutdown import ShutdownHandler

__all__ = [
    "ControlCoordinator",
    "ShutdownHandler",
    "decompose_task",
    "plan_phases",
]
