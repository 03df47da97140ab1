"""Control endpoints for stopping agents."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from .status import get_context

router = APIRouter()


class StopRequest(BaseModel):
    """Request body for stop endpoint."""
    reason: Optional[str] = "Stop requested via API"


class StopResponse(BaseModel):
    """Response for stop request."""
    success: bool
    message: str
    stop_file: Optional[str] = None


class StopStatus(BaseModel):
    """Response for stop status check."""
    stop_requested: bool
    stop_file: Optional[str] = None
    requested_at: Optional[str] = None
    reason: Optional[str] = None


@router.post("/control/stop", response_model=StopResponse)
def request_stop(request: Request, body: StopRequest = StopRequest()):
    """Request graceful shutdown of a running watch or coordinate command.

    Creates a stop request file that those commands check on every poll.
    """
    ctx = get_context(request)
    ctx.shutdown.request_stop(body.reason or "Stop requested via API")
    return StopResponse(
        success=True,
        message="Stop request sent. Agents will be stopped on the next poll.",
        stop_file=str(ctx.workspace.stop_request_file),
    )


@router.get("/control/stop-status", response_model=StopStatus)
def get_stop_status(request: Request):
    """Check if a stop has been requested."""
    stop_file = get_context(request).workspace.stop_request_file

    if not stop_file.exists():
        return StopStatus(stop_requested=False)

    lines = stop_file.read_text().strip().split("\n", 1)
    return StopStatus(
        stop_requested=True,
        stop_file=str(stop_file),
        requested_at=lines[0] if lines else None,
        reason=lines[1] if len(lines) > 1 else None,
    )


@router.delete("/control/stop", response_model=StopResponse)
def cancel_stop(request: Request):
    ctx = get_context(request)
    ctx.shutdown.clear_stop_request()
    return StopResponse(success=True, message="Stop request cleared")


@router.post("/control/agents/{pid}/stop", response_model=StopResponse)
def stop_agent(request: Request, pid: int):
    """Terminate one agent and mark it stopped."""
    ctx = get_context(request)
    session = ctx.sessions.read_session()
    if session is None or session.find_agent(pid) is None:
        raise HTTPException(status_code=404, detail=f"No agent with PID {pid}")

    if not ctx.spawner.stop(pid):
        raise HTTPException(status_code=500, detail=f"Could not signal agent {pid}")
    return StopResponse(success=True, message=f"Agent {pid} stopped at {datetime.now().isoformat()}")
