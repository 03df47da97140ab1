"""Status endpoints for the session, its agents and resource usage."""

from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ...context import SwarmContext
from ...models import AgentRecord, ResourceSnapshot, SessionSummary, SpawnCheck

router = APIRouter()


class SwarmStatus(BaseModel):
    """Overview shown at the top of the dashboard."""
    project_path: Optional[str] = None
    project_name: Optional[str] = None
    session: SessionSummary = SessionSummary()
    coordination_status: Optional[str] = None
    coordination_progress: int = 0
    pending_messages: int = 0
    last_updated: datetime


class ResourceStatus(BaseModel):
    """Current usage and whether another agent may start."""
    snapshot: ResourceSnapshot
    admission: SpawnCheck


def get_project_path(request: Request) -> Optional[Path]:
    """Get project path from app state."""
    return getattr(request.app.state, "project_path", None)


def get_context(request: Request) -> SwarmContext:
    project_path = get_project_path(request)
    if not project_path or not project_path.exists():
        raise HTTPException(status_code=404, detail="Project path not configured")
    return SwarmContext.create(project_path, quiet=True)


@router.get("/status", response_model=SwarmStatus)
def get_status(request: Request) -> SwarmStatus:
    """Session summary plus coordination progress and pending questions."""
    project_path = get_project_path(request)
    if not project_path or not project_path.exists():
        return SwarmStatus(last_updated=datetime.now())

    ctx = SwarmContext.create(project_path, quiet=True)
    coordination = ctx.coordinator.current_status()
    return SwarmStatus(
        project_path=str(project_path),
        project_name=ctx.config.project_name,
        session=ctx.sessions.session_status(),
        coordination_status=coordination.status.value,
        coordination_progress=coordination.progress_percentage,
        pending_messages=len(ctx.messages.pending_messages()),
        last_updated=datetime.now(),
    )


@router.get("/agents", response_model=list[AgentRecord])
def get_agents(request: Request, running: bool = False) -> list[AgentRecord]:
    """Agents in the current session, optionally only the running ones."""
    ctx = get_context(request)
    return ctx.sessions.get_active_agents() if running else ctx.sessions.get_all_agents()


@router.get("/resources", response_model=ResourceStatus)
def get_resources(request: Request) -> ResourceStatus:
    ctx = get_context(request)
    return ResourceStatus(
        snapshot=ctx.resources.get_resource_stats(),
        admission=ctx.resources.can_spawn_agent(),
    )
