"""Wiring of swarm services for one project.

Every command builds a SwarmContext so all services share one process
table and one event log.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .cleanup import CleanupManager
from .config import load_config
from .error_recovery import ErrorRecovery
from .event_log import EventLogger
from .git_manager import GitManager
from .message_bus import MessageBus
from .models import SwarmConfig
from .orchestration.coordinator import ControlCoordinator
from .orchestration.shutdown import ShutdownHandler
from .process_monitor import ProcessMonitor
from .processes import ProcessTable
from .protocols import GitOperations, ResourceSampler
from .resources import ResourceManager
from .session_store import SessionStore
from .spawner import WorkerSpawner
from .workspace import SwarmWorkspace
from .worktrees import WorkspaceProvisioner


@dataclass
class SwarmContext:
    config: SwarmConfig
    workspace: SwarmWorkspace
    logger: EventLogger
    processes: ProcessTable
    git: GitOperations
    sessions: SessionStore
    resources: ResourceManager
    provisioner: WorkspaceProvisioner
    spawner: WorkerSpawner
    messages: MessageBus
    monitor: ProcessMonitor
    recovery: ErrorRecovery
    cleanup: CleanupManager
    coordinator: ControlCoordinator
    shutdown: ShutdownHandler

    @classmethod
    def create(
        cls,
        project_path: Path,
        config: Optional[SwarmConfig] = None,
        git: Optional[GitOperations] = None,
        sampler: Optional[ResourceSampler] = None,
        quiet: bool = False,
    ) -> "SwarmContext":
        """Build every service for a project.

        Args:
            project_path: Root of the project the swarm works on
            config: Configuration (loaded from .swarm/config.json when omitted)
            git: Git implementation (tests pass a fake)
            sampler: Resource sampler (tests pass a fake)
            quiet: Suppress console echo of log events
        """
        project_path = Path(project_path).resolve()
        workspace = SwarmWorkspace(project_path)
        config = config or load_config(project_path)
        logger = EventLogger(workspace.event_log_file, component="swarm", quiet=quiet)
        processes = ProcessTable()
        git = git or GitManager(project_path)

        sessions = SessionStore(workspace, logger.child("session"))
        resources = ResourceManager(config, workspace, sessions, sampler, logger.child("resources"))
        provisioner = WorkspaceProvisioner(workspace, git, logger.child("worktrees"))
        spawner = WorkerSpawner(
            config, workspace, sessions, resources, provisioner, processes, logger.child("spawner")
        )
        messages = MessageBus(workspace, logger.child("messages"))
        monitor = ProcessMonitor(
            config, workspace, sessions, messages, processes, provisioner, logger.child("monitor")
        )
        recovery = ErrorRecovery(workspace, logger.child("recovery"))
        cleanup = CleanupManager(
            workspace, sessions, provisioner, git, processes, logger.child("cleanup"), monitor
        )
        coordinator = ControlCoordinator(
            config, workspace, sessions, spawner, monitor, messages, recovery, logger.child("coordinator")
        )
        shutdown = ShutdownHandler(workspace, sessions, processes, logger.child("shutdown"))

        return cls(
            config=config,
            workspace=workspace,
            logger=logger,
            processes=processes,
            git=git,
            sessions=sessions,
            resources=resources,
            provisioner=provisioner,
            spawner=spawner,
            messages=messages,
            monitor=monitor,
            recovery=recovery,
            cleanup=cleanup,
            coordinator=coordinator,
            shutdown=shutdown,
        )

    def close(self) -> None:
        self.logger.close()
