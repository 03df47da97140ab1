"""Multi-agent coordination.

Breaks a high-level task into role-tagged subtasks, spawns them tier by
tier (backend, then frontend/ux, then qa) with parallel spawns inside a
tier, and publishes a status document that the CLI and the dashboard API
poll.
"""

import os
import re
import signal
import subprocess
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import ValidationError

from ..error_recovery import ErrorRecovery
from ..errors import RetryError, SwarmError
from ..event_log import EventLogger
from ..message_bus import MessageBus
from ..models import (
    AgentRole, AgentStatus, CoordinationPhase, CoordinationState,
    CoordinationStatus, SpawnResult, Subtask, SwarmConfig,
)
from ..process_monitor import ProcessMonitor
from ..processes import is_process_alive, send_signal, terminate_process
from ..retry import with_retry
from ..session_store import SessionStore
from ..spawner import WorkerSpawner, sanitize_task
from ..workspace import SwarmWorkspace, atomic_write_json, file_lock, read_json

ROLE_KEYWORDS: dict[AgentRole, list[str]] = {
    AgentRole.BACKEND: [
        "api", "model", "models", "database", "migration", "service",
        "backend", "endpoint", "schema", "server",
    ],
    AgentRole.FRONTEND: [
        "ui", "interface", "form", "page", "component", "view",
        "frontend", "controller", "javascript", "template",
    ],
    AgentRole.UX: [
        "design", "ux", "layout", "styling", "accessibility", "wireframe",
    ],
}

SUBTASK_TEMPLATES = {
    AgentRole.BACKEND: "Implement the backend (models, services, APIs) for: {task}",
    AgentRole.FRONTEND: "Implement the user-facing interface for: {task}",
    AgentRole.UX: "Design the user experience and styling for: {task}",
    AgentRole.GENERAL: "{task}",
    AgentRole.QA: "Write and run tests validating: {task}",
}


def _mentions(text: str, keywords: list[str]) -> bool:
    return any(re.search(rf"\b{re.escape(k)}\b", text) for k in keywords)


def decompose_task(description: str) -> list[Subtask]:
    """Split a task into role-tagged subtasks using keyword heuristics.

    A qa subtask is always present. When no specialist keyword matches, a
    single general subtask carries the implementation work.

    Args:
        description: High-level task description

    Returns:
        Subtasks in dependency order
    """
    task = sanitize_task(description)
    text = task.lower()

    roles = [role for role, keywords in ROLE_KEYWORDS.items() if _mentions(text, keywords)]
    if not roles:
        roles = [AgentRole.GENERAL]

    subtasks: list[Subtask] = []
    backend_ids = []
    for role in roles:
        depends_on = list(backend_ids) if role in (AgentRole.FRONTEND, AgentRole.UX) else []
        subtask = Subtask(
            id=f"{role.value}-{len(subtasks) + 1}",
            role=role,
            description=SUBTASK_TEMPLATES[role].format(task=task),
            depends_on=depends_on,
        )
        if role == AgentRole.BACKEND:
            backend_ids.append(subtask.id)
        subtasks.append(subtask)

    subtasks.append(Subtask(
        id=f"qa-{len(subtasks) + 1}",
        role=AgentRole.QA,
        description=SUBTASK_TEMPLATES[AgentRole.QA].format(task=task),
        depends_on=[s.id for s in subtasks],
    ))
    return subtasks


def plan_phases(subtasks: list[Subtask]) -> list[list[Subtask]]:
    """Group subtasks into tiers; a tier only depends on earlier tiers.

    Raises:
        ValueError: On unknown dependencies or a dependency cycle
    """
    known = {s.id for s in subtasks}
    for s in subtasks:
        missing = set(s.depends_on) - known
        if missing:
            raise ValueError(f"Subtask {s.id} depends on unknown subtasks: {sorted(missing)}")

    done: set[str] = set()
    remaining = list(subtasks)
    tiers = []
    while remaining:
        tier = [s for s in remaining if set(s.depends_on) <= done]
        if not tier:
            raise ValueError("Dependency cycle between subtasks: " + ", ".join(s.id for s in remaining))
        tiers.append(tier)
        done.update(s.id for s in tier)
        remaining = [s for s in remaining if s.id not in done]
    return tiers


def phase_for(tier: list[Subtask]) -> CoordinationPhase:
    roles = {s.role for s in tier}
    if AgentRole.BACKEND in roles:
        return CoordinationPhase.BACKEND_IMPLEMENTATION
    if roles & {AgentRole.FRONTEND, AgentRole.UX}:
        return CoordinationPhase.FRONTEND_INTEGRATION
    if AgentRole.QA in roles:
        return CoordinationPhase.QA_VALIDATION
    return CoordinationPhase.IMPLEMENTATION


class ControlCoordinator:
    """Drives a coordination run and owns its status document."""

    def __init__(
        self,
        config: SwarmConfig,
        workspace: SwarmWorkspace,
        sessions: SessionStore,
        spawner: WorkerSpawner,
        monitor: ProcessMonitor,
        messages: MessageBus,
        recovery: Optional[ErrorRecovery] = None,
        logger: Optional[EventLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.workspace = workspace
        self.sessions = sessions
        self.spawner = spawner
        self.monitor = monitor
        self.messages = messages
        self.recovery = recovery
        self.logger = logger or EventLogger(component="coordinator", quiet=True)
        self._sleep = sleep

        self.started_pids: list[int] = []
        self._started_at: Optional[datetime] = None
        self._bus_id = f"coordinator-{os.getpid()}"

    # =========================================================================
    # Status document
    # =========================================================================

    def current_status(self) -> CoordinationStatus:
        """Read the published status, or the default when none exists."""
        data = read_json(self.workspace.coordination_status_file)
        if data is None:
            return CoordinationStatus()
        try:
            return CoordinationStatus.model_validate(data)
        except ValidationError as e:
            self.logger.warn(f"Failed to parse coordination status: {e}")
            return CoordinationStatus()

    def publish_status(self, **updates) -> CoordinationStatus:
        """Merge updates into the status document and write it atomically."""
        with file_lock(self.workspace.coordination_lock):
            status = self.current_status().model_copy(update={**updates, "updated_at": datetime.now()})
            atomic_write_json(self.workspace.coordination_status_file, status.model_dump(mode="json"))
        return status

    def worker_summary(self) -> dict:
        status = self.current_status()
        return {
            "total": len(status.active_agents) + len(status.completed_agents) + len(status.failed_agents),
            "active": len(status.active_agents),
            "completed": len(status.completed_agents),
            "failed": len(status.failed_agents),
            "progress": status.progress_percentage,
            "phase": status.phase.value,
            "status": status.status.value,
            "estimated_completion": status.estimated_completion,
        }

    # =========================================================================
    # Running
    # =========================================================================

    def _spawn_with_retry(self, subtask: Subtask) -> Optional[SpawnResult]:
        def attempt() -> Optional[SpawnResult]:
            return self.spawner.spawn(subtask.role, subtask.description)

        try:
            return with_retry(
                attempt,
                self.config.retry,
                retryable=(OSError, SwarmError),
                logger=self.logger,
                description=f"spawn {subtask.id}",
                sleep=self._sleep,
            )
        except RetryError as e:
            self.logger.error(f"Could not spawn {subtask.id}: {e}", subtask=subtask.id)
            if self.recovery is not None:
                analysis = self.recovery.analyze(e, {"subtask": subtask.id, "role": subtask.role.value})
                for suggestion in analysis.suggestions[:3]:
                    self.logger.info(f"  Suggestion: {suggestion.description}")
            return None

    def _snapshot(self, total: int) -> dict:
        """Current agent lists and progress for the pids this run started."""
        records = {a.pid: a for a in self.sessions.get_all_agents() if a.pid in self.started_pids}
        active = [pid for pid, a in records.items() if a.status == AgentStatus.RUNNING]
        completed = [pid for pid, a in records.items() if a.status == AgentStatus.COMPLETED]
        failed = [pid for pid, a in records.items() if a.status in (AgentStatus.FAILED, AgentStatus.STOPPED)]

        finished = len(completed) + len(failed)
        progress = int(finished / total * 100) if total else 100
        estimate = None
        if self._started_at and 0 < progress < 100:
            elapsed = (datetime.now() - self._started_at).total_seconds()
            estimate = datetime.now() + timedelta(seconds=elapsed / progress * (100 - progress))
        return {
            "active_agents": active,
            "completed_agents": completed,
            "failed_agents": failed,
            "progress_percentage": progress,
            "estimated_completion": estimate,
        }

    def _wait_for_tier(
        self,
        pids: list[int],
        total: int,
        phase: CoordinationPhase,
        deadline: Optional[float],
        poll_interval: float,
        should_stop: Optional[Callable[[], bool]],
    ) -> str:
        """Poll until every pid is terminal.

        Returns:
            "done", "timeout" or "interrupted"
        """
        while True:
            self.monitor.reconcile()
            snapshot = self._snapshot(total)
            waiting = [pid for pid in pids if pid in snapshot["active_agents"]]
            pending = self.messages.pending_messages()
            message = f"{phase.value}: {len(waiting)} agent(s) working"
            if pending:
                message += f", {len(pending)} question(s) awaiting an answer"
            self.publish_status(status=CoordinationState.COORDINATING, phase=phase, message=message, **snapshot)

            if not waiting:
                return "done"
            if should_stop and should_stop():
                return "interrupted"
            if deadline is not None and time.monotonic() >= deadline:
                return "timeout"
            self._sleep(poll_interval)

    def run(
        self,
        task: str,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> CoordinationStatus:
        """Coordinate specialist workers for a task.

        Timeouts and spawn failures end the run with status failed; an
        operator interrupt ends it with status stopped. Neither raises.

        Args:
            task: High-level task description
            poll_interval: Seconds between status polls (default from config)
            timeout: Overall limit in seconds (None waits indefinitely)
            should_stop: Checked while waiting, for operator interrupts

        Returns:
            Final coordination status
        """
        poll_interval = poll_interval if poll_interval is not None else self.config.monitor.interval_seconds
        deadline = time.monotonic() + timeout if timeout is not None else None
        self._started_at = datetime.now()
        self.started_pids = []

        self.workspace.ensure_structure()
        self.sessions.ensure_session(sanitize_task(task))
        self.publish_status(
            status=CoordinationState.INITIALIZING,
            phase=CoordinationPhase.ANALYSIS,
            active_agents=[], completed_agents=[], failed_agents=[],
            progress_percentage=0,
            estimated_completion=None,
            control_pid=os.getpid(),
            message="Analyzing task",
        )

        try:
            tiers = plan_phases(decompose_task(task))
        except ValueError as e:
            return self._finish(CoordinationState.FAILED, str(e), 0)
        total = sum(len(t) for t in tiers)
        self.logger.info(
            f"Planned {total} subtasks in {len(tiers)} tiers: "
            + " -> ".join("+".join(s.role.value for s in t) for t in tiers)
        )
        self.messages.status(self._bus_id, f"Coordinating {total} agents for: {sanitize_task(task)}")

        for tier in tiers:
            phase = phase_for(tier)
            self.publish_status(
                status=CoordinationState.COORDINATING,
                phase=phase,
                message=f"Spawning {', '.join(s.role.value for s in tier)}",
            )

            with ThreadPoolExecutor(max_workers=len(tier)) as pool:
                results = list(pool.map(self._spawn_with_retry, tier))

            spawned = [r for r in results if r is not None]
            self.started_pids.extend(r.pid for r in spawned)
            if len(spawned) < len(tier):
                failed = [s.id for s, r in zip(tier, results) if r is None]
                self._stop_workers(self.started_pids)
                return self._finish(CoordinationState.FAILED, f"Failed to spawn: {', '.join(failed)}", total)

            outcome = self._wait_for_tier(
                [r.pid for r in spawned], total, phase, deadline, poll_interval, should_stop
            )
            if outcome == "interrupted":
                self._stop_workers(self.started_pids)
                return self._finish(CoordinationState.STOPPED, "Coordination interrupted", total)
            if outcome == "timeout":
                self._stop_workers(self.started_pids)
                return self._finish(CoordinationState.FAILED, "Coordination timed out", total)

            snapshot = self._snapshot(total)
            tier_failed = [r.pid for r in spawned if r.pid in snapshot["failed_agents"]]
            if tier_failed:
                return self._finish(
                    CoordinationState.FAILED,
                    f"{phase.value} failed for PIDs {', '.join(map(str, tier_failed))}",
                    total,
                )
            self.messages.progress(self._bus_id, f"{phase.value} finished", snapshot["progress_percentage"])

        self.sessions.close_session()
        return self._finish(CoordinationState.COMPLETED, "All agents completed", total)

    def _finish(self, state: CoordinationState, message: str, total: int) -> CoordinationStatus:
        snapshot = self._snapshot(total)
        if state == CoordinationState.COMPLETED:
            snapshot["progress_percentage"] = 100
        snapshot["estimated_completion"] = None
        level = "info" if state == CoordinationState.COMPLETED else "error"
        self.logger.log(level, f"Coordination {state.value}: {message}")
        self.messages.status(self._bus_id, f"Coordination {state.value}: {message}")
        return self.publish_status(
            status=state,
            phase=CoordinationPhase.COMPLETION if state == CoordinationState.COMPLETED else self.current_status().phase,
            message=message,
            **snapshot,
        )

    # =========================================================================
    # Detached runs and stopping
    # =========================================================================

    def launch_detached(self, task: str) -> int:
        """Start `python -m agent_swarm coordinate` in the background.

        Returns:
            Pid of the coordination process
        """
        self.workspace.ensure_structure()
        log_path = self.workspace.logs_dir / "coordinator.log"
        with open(log_path, "ab") as log:
            handle = subprocess.Popen(
                [
                    sys.executable, "-m", "agent_swarm", "coordinate",
                    str(self.workspace.project_path), "--task", sanitize_task(task),
                ],
                cwd=str(self.workspace.project_path),
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        self.publish_status(
            status=CoordinationState.INITIALIZING,
            control_pid=handle.pid,
            message="Coordinator starting",
        )
        self.logger.info(f"Coordinator launched (PID: {handle.pid})", pid=handle.pid)
        return handle.pid

    def _stop_workers(self, pids: list[int], grace_seconds: float = 2.0) -> list[int]:
        """TERM every pid, wait, KILL stragglers. Returns pids that were running."""
        signalled = []
        for pid in pids:
            try:
                if send_signal(pid, signal.SIGTERM):
                    signalled.append(pid)
            except PermissionError as e:
                self.logger.error(f"Cannot signal PID {pid}: {e}", pid=pid)

        deadline = time.monotonic() + grace_seconds
        while time.monotonic() < deadline and any(
            is_process_alive(pid, self.spawner.processes) for pid in signalled
        ):
            time.sleep(0.1)

        for pid in signalled:
            if is_process_alive(pid, self.spawner.processes):
                self.logger.warn(f"Force-killing PID {pid}", pid=pid)
                try:
                    send_signal(pid, signal.SIGKILL)
                except PermissionError as e:
                    self.logger.error(f"Cannot kill PID {pid}: {e}", pid=pid)

        for pid in pids:
            self.sessions.update_agent_status(pid, AgentStatus.STOPPED, datetime.now())
        return signalled

    def stop(self, grace_seconds: float = 2.0) -> bool:
        """Stop the coordination process and every worker it started.

        Returns:
            True if there was anything to stop
        """
        status = self.current_status()
        pids = list(dict.fromkeys(status.active_agents + self.started_pids))
        stopped_anything = False

        if status.control_pid and status.control_pid != os.getpid():
            if is_process_alive(status.control_pid):
                terminate_process(status.control_pid, grace_seconds=grace_seconds)
                stopped_anything = True

        running = [pid for pid in pids if is_process_alive(pid, self.spawner.processes)]
        if running:
            self._stop_workers(running, grace_seconds)
            stopped_anything = True

        self.publish_status(
            status=CoordinationState.STOPPED,
            active_agents=[],
            message="Coordination stopped by operator",
            estimated_completion=None,
        )
        self.logger.info("Coordination stopped", pids=running)
        return stopped_anything
