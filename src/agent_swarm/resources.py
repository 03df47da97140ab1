"""Resource admission control.

ResourceManager is a pure gate evaluated before every spawn: it counts
running workers, samples memory/disk/load through psutil and reports one
reason per violated limit. enforce_limits() is the only method with side
effects.
"""

import os
import signal
from typing import Optional

import psutil

from .errors import ResourceExceeded
from .event_log import EventLogger
from .models import ResourceSnapshot, SpawnCheck, SwarmConfig
from .protocols import ResourceSampler
from .session_store import SessionStore
from .workspace import SwarmWorkspace


class PsutilSampler:
    """ResourceSampler backed by psutil."""

    def memory_usage_mb(self, pids: list[int]) -> float:
        """RSS of each worker plus its descendants (the agent binary runs as a child)."""
        total = 0
        for pid in pids:
            try:
                proc = psutil.Process(pid)
                procs = [proc] + proc.children(recursive=True)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            for p in procs:
                try:
                    total += p.memory_info().rss
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
        return total / (1024 * 1024)

    def system_load(self) -> float:
        try:
            return float(psutil.getloadavg()[0])
        except (AttributeError, OSError):
            return 0.0

    def cpu_count(self) -> int:
        return psutil.cpu_count() or 1


class ResourceManager:
    """Decides whether another worker may be spawned."""

    def __init__(
        self,
        config: SwarmConfig,
        workspace: SwarmWorkspace,
        sessions: SessionStore,
        sampler: Optional[ResourceSampler] = None,
        logger: Optional[EventLogger] = None,
    ):
        """Initialize the resource manager.

        Args:
            config: Resolved configuration (limits, max agents)
            workspace: Workspace whose size counts toward the disk limit
            sessions: Session store used to count running workers
            sampler: Host resource sampler (psutil by default)
            logger: Event logger
        """
        self.config = config
        self.workspace = workspace
        self.sessions = sessions
        self.sampler = sampler or PsutilSampler()
        self.logger = logger or EventLogger(component="resources", quiet=True)

    def get_resource_stats(self) -> ResourceSnapshot:
        """Sample current usage."""
        running = self.sessions.get_active_agents()
        return ResourceSnapshot(
            active_agents=len(running),
            max_agents=self.config.max_concurrent_agents,
            memory_usage_mb=round(self.sampler.memory_usage_mb([a.pid for a in running]), 1),
            disk_usage_mb=round(self.workspace.get_disk_usage_bytes() / (1024 * 1024), 1),
            system_load=self.sampler.system_load(),
            cpu_count=self.sampler.cpu_count(),
        )

    def can_spawn_agent(self, reserved: int = 0) -> SpawnCheck:
        """Check every limit and report all violations at once.

        Args:
            reserved: Workers being launched that are not in the session yet

        Returns:
            SpawnCheck with allowed=False and one reason per violated limit
        """
        stats = self.get_resource_stats()
        limits = self.config.limits
        reasons = []

        active = stats.active_agents + reserved
        if active >= stats.max_agents:
            reasons.append(f"Maximum concurrent agents reached ({active}/{stats.max_agents})")

        if stats.memory_usage_mb > limits.max_memory_mb:
            reasons.append("System memory usage too high")

        if stats.disk_usage_mb > limits.max_disk_mb:
            reasons.append("Insufficient disk space")

        if stats.system_load > stats.cpu_count * limits.load_factor:
            reasons.append("System load too high")

        if reasons:
            self.logger.debug("Spawn check denied", reasons=reasons, stats=stats.model_dump())
        return SpawnCheck(allowed=not reasons, reasons=reasons)

    def require_spawn(self, reserved: int = 0) -> None:
        """Raise ResourceExceeded unless a new worker may start."""
        check = self.can_spawn_agent(reserved)
        if not check.allowed:
            raise ResourceExceeded(check.reasons)

    def enforce_limits(self) -> list[int]:
        """Terminate the oldest running workers beyond the concurrency limit.

        Returns:
            Pids that were sent SIGTERM
        """
        running = sorted(self.sessions.get_active_agents(), key=lambda a: a.start_time)
        excess = len(running) - self.config.max_concurrent_agents
        if excess <= 0:
            return []

        self.logger.warn(
            f"Agent limit exceeded: {len(running)}/{self.config.max_concurrent_agents}, "
            f"terminating {excess} oldest"
        )

        terminated = []
        for agent in running[:excess]:
            try:
                os.kill(agent.pid, signal.SIGTERM)
                terminated.append(agent.pid)
                self.logger.info(f"Terminated agent process: {agent.pid}", pid=agent.pid)
            except ProcessLookupError:
                pass  # Already gone; the monitor will reconcile it
            except PermissionError as e:
                self.logger.error(f"Failed to terminate process {agent.pid}: {e}", pid=agent.pid)
        return terminated
