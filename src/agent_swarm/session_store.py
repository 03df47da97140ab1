"""Session document storage.

CRUD over .swarm/session.json. Every mutation runs under an exclusive
lock on .swarm/session.lock and rewrites the document atomically, so two
orchestrators working on the same project serialize per operation instead
of overwriting each other's changes.
"""

import secrets
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, TypeVar

from pydantic import ValidationError

from .event_log import EventLogger
from .models import (
    AgentRecord, AgentRole, AgentStatus, SessionStatus, SessionSummary, SwarmSession
)
from .workspace import SwarmWorkspace, atomic_write_json, file_lock, read_json

T = TypeVar("T")


def generate_session_id() -> str:
    """Session ids are <unix seconds>_<8 hex chars>."""
    return f"{int(time.time())}_{secrets.token_hex(4)}"


class SessionStore:
    """Reads and writes the session document.

    All public methods are safe to call from several threads or processes;
    none of them hold the lock while calling back into other components.
    """

    def __init__(self, workspace: SwarmWorkspace, logger: Optional[EventLogger] = None):
        """Initialize the store.

        Args:
            workspace: Workspace owning .swarm/
            logger: Event logger (silent file-less logger if omitted)
        """
        self.workspace = workspace
        self.logger = logger or EventLogger(component="session", quiet=True)

    @property
    def session_file(self) -> Path:
        return self.workspace.session_file

    # =========================================================================
    # Internal helpers
    # =========================================================================

    def _load_unlocked(self) -> Optional[SwarmSession]:
        data = read_json(self.session_file)
        if data is None:
            return None
        try:
            return SwarmSession.model_validate(data)
        except ValidationError as e:
            print(f"[SessionStore] Warning: Could not parse session.json: {e}")
            return None

    def _save_unlocked(self, session: SwarmSession) -> None:
        atomic_write_json(self.session_file, session.model_dump(mode="json"))

    def _mutate(self, fn: Callable[[Optional[SwarmSession]], tuple[T, bool]]) -> T:
        """Run fn on the current session under the lock.

        fn returns (result, changed); the document is rewritten only when
        changed is True.
        """
        self.workspace.swarm_dir.mkdir(parents=True, exist_ok=True)
        with file_lock(self.workspace.session_lock):
            session = self._load_unlocked()
            result, changed = fn(session)
            if changed and session is not None:
                self._save_unlocked(session)
            return result

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def create_session(self, task_description: Optional[str] = None) -> SwarmSession:
        """Start a new active session, replacing any existing document.

        Args:
            task_description: What this run is working on

        Returns:
            The new session
        """
        session = SwarmSession(
            session_id=generate_session_id(),
            task_description=task_description,
        )
        self.workspace.swarm_dir.mkdir(parents=True, exist_ok=True)
        with file_lock(self.workspace.session_lock):
            previous = self._load_unlocked()
            if previous and previous.running_agents():
                self.logger.warn(
                    f"Replacing session {previous.session_id} with "
                    f"{len(previous.running_agents())} running agents"
                )
            self._save_unlocked(session)

        self.logger.info(f"Created session {session.session_id}", session_id=session.session_id)
        return session

    def ensure_session(self, task_description: Optional[str] = None) -> SwarmSession:
        """Return the active session, creating one if there is none."""
        session = self.read_session()
        if session and session.status == SessionStatus.ACTIVE:
            return session
        return self.create_session(task_description)

    def read_session(self) -> Optional[SwarmSession]:
        """Load the current session document, or None if there is none."""
        return self._load_unlocked()

    def session_exists(self) -> bool:
        return self.read_session() is not None

    def close_session(self) -> bool:
        """Mark the session completed and stamp its end time.

        Idempotent: closing an already completed session keeps its original
        end time and still returns True.

        Returns:
            False only when there is no session
        """
        def close(session: Optional[SwarmSession]) -> tuple[bool, bool]:
            if session is None:
                return False, False
            if session.status == SessionStatus.COMPLETED:
                return True, False
            session.status = SessionStatus.COMPLETED
            session.end_time = datetime.now()
            return True, True

        closed = self._mutate(close)
        if closed:
            self.logger.info("Session closed")
        return closed

    def cleanup_session(self) -> Optional[Path]:
        """Archive the session document and remove it.

        Returns:
            Path of the archive, or None if there was no session
        """
        self.workspace.swarm_dir.mkdir(parents=True, exist_ok=True)
        with file_lock(self.workspace.session_lock):
            session = self._load_unlocked()
            if session is None:
                return None

            self.workspace.archives_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            archive = self.workspace.archives_dir / f"session_{session.session_id}_{stamp}.json"
            atomic_write_json(archive, session.model_dump(mode="json"))
            self.session_file.unlink(missing_ok=True)

        self.logger.info(f"Archived session to {archive.name}", archive=str(archive))
        return archive

    def list_archives(self) -> list[Path]:
        """Archived session files, newest first."""
        if not self.workspace.archives_dir.exists():
            return []
        return sorted(self.workspace.archives_dir.glob("session_*.json"), reverse=True)

    # =========================================================================
    # Agent records
    # =========================================================================

    def add_agent(
        self,
        role: AgentRole,
        pid: int,
        worktree_path: Optional[str] = None,
        task: Optional[str] = None,
    ) -> bool:
        """Append a running record for a freshly spawned worker.

        Returns:
            False if there is no active session, or another running record
            already uses this pid or worktree
        """
        def add(session: Optional[SwarmSession]) -> tuple[bool, bool]:
            if session is None or session.status != SessionStatus.ACTIVE:
                return False, False
            for agent in session.running_agents():
                if agent.pid == pid:
                    return False, False
                if worktree_path and agent.worktree_path == worktree_path:
                    return False, False
            session.agents.append(AgentRecord(
                role=AgentRole(role),
                pid=pid,
                worktree_path=worktree_path,
                task=task,
            ))
            return True, True

        added = self._mutate(add)
        if added:
            self.logger.info(f"Registered {AgentRole(role).value} agent (PID: {pid})", pid=pid)
        else:
            self.logger.warn(f"Could not register agent (PID: {pid})", pid=pid)
        return added

    def update_agent_status(
        self,
        pid: int,
        status: AgentStatus,
        completion_time: Optional[datetime] = None,
    ) -> bool:
        """Move a worker to a new status.

        Terminal records never transition again; re-applying the status a
        record already has is a no-op that returns True.

        Returns:
            False if no record has this pid or the transition isn't allowed
        """
        status = AgentStatus(status)

        def update(session: Optional[SwarmSession]) -> tuple[bool, bool]:
            if session is None:
                return False, False
            agent = session.find_agent(pid)
            if agent is None:
                return False, False
            if agent.status == status:
                return True, False
            if agent.status.is_terminal:
                return False, False
            agent.status = status
            if status.is_terminal:
                agent.completion_time = completion_time or datetime.now()
            return True, True

        updated = self._mutate(update)
        if updated:
            self.logger.debug(f"Agent {pid} -> {status.value}", pid=pid, status=status.value)
        return updated

    def remove_agent(self, pid: int) -> bool:
        """Drop every record for a pid. Returns False if none existed."""
        def remove(session: Optional[SwarmSession]) -> tuple[bool, bool]:
            if session is None:
                return False, False
            remaining = [a for a in session.agents if a.pid != pid]
            if len(remaining) == len(session.agents):
                return False, False
            session.agents = remaining
            return True, True

        return self._mutate(remove)

    def get_active_agents(self) -> list[AgentRecord]:
        """Records with status running."""
        session = self.read_session()
        return session.running_agents() if session else []

    def get_all_agents(self) -> list[AgentRecord]:
        session = self.read_session()
        return list(session.agents) if session else []

    def session_status(self) -> SessionSummary:
        """Aggregate counts for the current session."""
        session = self.read_session()
        if session is None:
            return SessionSummary(exists=False)

        def count(status: AgentStatus) -> int:
            return sum(1 for a in session.agents if a.status == status)

        return SessionSummary(
            exists=True,
            session_id=session.session_id,
            start_time=session.start_time,
            end_time=session.end_time,
            task_description=session.task_description,
            status=session.status,
            total=len(session.agents),
            active=count(AgentStatus.RUNNING),
            completed=count(AgentStatus.COMPLETED),
            failed=count(AgentStatus.FAILED),
            stopped=count(AgentStatus.STOPPED),
            agents=list(session.agents),
        )
