"""Worker liveness monitoring.

Reconciles the session document with reality: records whose process has
exited are moved to completed/failed (from the exit status the worker
script leaves behind) or stopped (when it died without one). Long-running
workers with no recent bus activity are reported as stuck; nothing here
ever kills a worker.
"""

import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from .event_log import EventLogger
from .message_bus import MessageBus
from .models import AgentRecord, AgentStatus, SwarmConfig
from .processes import ProcessTable, is_process_alive
from .session_store import SessionStore
from .workspace import SwarmWorkspace
from .worktrees import WorkspaceProvisioner


def format_duration(seconds: float) -> str:
    """Format seconds as a short human-readable duration."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def bus_agent_id(agent: AgentRecord) -> str:
    """Id a worker uses on the message bus (SWARM_AGENT_ID in its script)."""
    return f"{agent.role.value}-{agent.pid}"


class ProcessMonitor:
    """Polls worker processes and keeps the session document honest."""

    def __init__(
        self,
        config: SwarmConfig,
        workspace: SwarmWorkspace,
        sessions: SessionStore,
        messages: Optional[MessageBus] = None,
        processes: Optional[ProcessTable] = None,
        provisioner: Optional[WorkspaceProvisioner] = None,
        logger: Optional[EventLogger] = None,
    ):
        self.config = config
        self.workspace = workspace
        self.sessions = sessions
        self.messages = messages
        self.processes = processes or ProcessTable()
        self.provisioner = provisioner
        self.logger = logger or EventLogger(component="monitor", quiet=True)

    def is_alive(self, pid: int) -> bool:
        return is_process_alive(pid, self.processes)

    def _final_status(self, agent: AgentRecord) -> AgentStatus:
        # Marker written by the worker script first, then our own wait status
        exit_code = self.workspace.read_exit_code(agent.pid)
        self.workspace.exit_code_file(agent.pid).unlink(missing_ok=True)
        if exit_code is None:
            exit_code = self.processes.poll(agent.pid)

        if exit_code is None or exit_code < 0:
            return AgentStatus.STOPPED
        return AgentStatus.COMPLETED if exit_code == 0 else AgentStatus.FAILED

    def reconcile(self) -> list[AgentRecord]:
        """Update records for workers that have exited.

        Never raises; problems are logged and the next poll tries again.

        Returns:
            Records still running after reconciliation
        """
        still_running = []
        try:
            agents = self.sessions.get_active_agents()
        except Exception as e:
            self.logger.error(f"Could not read session during reconcile: {e}")
            return []

        for agent in agents:
            try:
                if self.is_alive(agent.pid):
                    still_running.append(agent)
                    continue

                status = self._final_status(agent)
                self.sessions.update_agent_status(agent.pid, status, datetime.now())
                self.processes.forget(agent.pid)
                self.logger.info(
                    f"{agent.role.value} agent (PID: {agent.pid}) {status.value}",
                    pid=agent.pid,
                    status=status.value,
                )
            except Exception as e:
                self.logger.error(f"Reconcile failed for PID {agent.pid}: {e}", pid=agent.pid)
                still_running.append(agent)

        return still_running

    def last_progress(self, agent: AgentRecord) -> datetime:
        """Latest of start time and the agent's last bus activity."""
        if self.messages is None:
            return agent.start_time
        activity = self.messages.last_activity(bus_agent_id(agent))
        return max(agent.start_time, activity) if activity else agent.start_time

    def find_stuck_agents(self, now: Optional[datetime] = None) -> list[AgentRecord]:
        """Running workers with no forward progress for longer than the threshold."""
        now = now or datetime.now()
        threshold = timedelta(seconds=self.config.monitor.stuck_threshold_seconds)
        return [
            agent for agent in self.sessions.get_active_agents()
            if now - self.last_progress(agent) > threshold
        ]

    def status(self) -> dict:
        """Snapshot for display: running workers, elapsed times and stuck flags."""
        running = self.reconcile()
        stuck = {a.pid for a in self.find_stuck_agents()}
        summary = self.sessions.session_status()
        return {
            "session_id": summary.session_id,
            "running": len(running),
            "completed": summary.completed,
            "failed": summary.failed,
            "stopped": summary.stopped,
            "agents": [
                {
                    "pid": a.pid,
                    "role": a.role.value,
                    "task": a.task,
                    "worktree_path": a.worktree_path,
                    "elapsed": format_duration(a.elapsed_seconds()),
                    "stuck": a.pid in stuck,
                }
                for a in running
            ],
            "stuck_agents": sorted(stuck),
        }

    def watch(
        self,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
        on_tick: Optional[Callable[[list[AgentRecord]], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> list[AgentRecord]:
        """Poll until no workers are running, the timeout elapses or should_stop() is true.

        Args:
            interval: Seconds between polls (default from config)
            timeout: Give up after this many seconds (None waits indefinitely)
            on_tick: Called with the running workers after every poll
            should_stop: Checked every poll for operator interrupts

        Returns:
            Workers still running when the loop ended
        """
        interval = interval if interval is not None else self.config.monitor.interval_seconds
        deadline = time.monotonic() + timeout if timeout is not None else None
        reported_stuck: set[int] = set()

        while True:
            running = self.reconcile()
            if on_tick:
                on_tick(running)

            for agent in self.find_stuck_agents():
                if agent.pid not in reported_stuck:
                    reported_stuck.add(agent.pid)
                    self.logger.warn(
                        f"{agent.role.value} agent (PID: {agent.pid}) has made no progress for "
                        f"{format_duration((datetime.now() - self.last_progress(agent)).total_seconds())}",
                        pid=agent.pid,
                    )

            if not running:
                return running
            if should_stop and should_stop():
                return running
            if deadline is not None and time.monotonic() >= deadline:
                self.logger.info(f"Watch timed out with {len(running)} agents still running")
                return running
            time.sleep(interval)

    def cleanup_completed_agents(self) -> int:
        """Remove worktrees and records of completed workers.

        Failed and stopped workers are left in place for inspection.

        Returns:
            Number of workers cleaned up
        """
        self.reconcile()
        cleaned = 0
        for agent in self.sessions.get_all_agents():
            if agent.status != AgentStatus.COMPLETED:
                continue
            if agent.worktree_path and self.provisioner is not None:
                self.provisioner.destroy_workspace(agent.worktree_path)
            self.sessions.remove_agent(agent.pid)
            self.workspace.exit_code_file(agent.pid).unlink(missing_ok=True)
            cleaned += 1

        if cleaned:
            self.logger.info(f"Cleaned up {cleaned} completed agents")
        return cleaned
