"""Coordination endpoints."""

from fastapi import APIRouter, Request

from ...models import CoordinationStatus
from .status import get_context

router = APIRouter()


@router.get("/coordination", response_model=CoordinationStatus)
def get_coordination(request: Request) -> CoordinationStatus:
    """Published coordination status (defaults when no run has started)."""
    return get_context(request).coordinator.current_status()


@router.get("/coordination/summary")
def get_coordination_summary(request: Request) -> dict:
    return get_context(request).coordinator.worker_summary()


@router.post("/coordination/stop", response_model=CoordinationStatus)
def stop_coordination(request: Request) -> CoordinationStatus:
    """Stop the coordinator process and the agents it started."""
    coordinator = get_context(request).coordinator
    coordinator.stop()
    return coordinator.current_status()
