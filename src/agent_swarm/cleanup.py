"""Cleanup of worktrees, branches, processes and scratch files.

Each cleanup task runs in isolation: one failing task is recorded and the
rest still run.
"""

from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .event_log import EventLogger
from .git_manager import GitManager
from .models import AgentStatus, SwarmConfig
from .process_monitor import ProcessMonitor
from .processes import ProcessTable, terminate_process
from .protocols import GitOperations
from .session_store import SessionStore
from .workspace import SwarmWorkspace
from .worktrees import BRANCH_PREFIX, WorkspaceProvisioner


class CleanupManager:
    """Removes swarm resources after failures or on operator request."""

    def __init__(
        self,
        workspace: SwarmWorkspace,
        sessions: SessionStore,
        provisioner: WorkspaceProvisioner,
        git: Optional[GitOperations] = None,
        processes: Optional[ProcessTable] = None,
        logger: Optional[EventLogger] = None,
        monitor: Optional[ProcessMonitor] = None,
    ):
        self.workspace = workspace
        self.sessions = sessions
        self.provisioner = provisioner
        self.git = git or GitManager(workspace.project_path)
        self.processes = processes or ProcessTable()
        self.logger = logger or EventLogger(component="cleanup", quiet=True)
        self.monitor = monitor or ProcessMonitor(SwarmConfig(), workspace, sessions, processes=self.processes)

    def _run_tasks(self, tasks: list[tuple[str, Callable[[], object]]]) -> list[dict]:
        results = []
        for name, task in tasks:
            try:
                results.append({"task": name, "status": "success", "result": task()})
            except Exception as e:
                self.logger.error(f"Cleanup task {name} failed: {e}")
                results.append({"task": name, "status": "failed", "error": str(e)})
        return results

    def cleanup_failed_operation(
        self,
        operation_id: str,
        worktree_path: Optional[str] = None,
        branch_name: Optional[str] = None,
        temp_files: Optional[list[str]] = None,
        process_pid: Optional[int] = None,
    ) -> list[dict]:
        """Undo whatever a failed operation left behind.

        Args:
            operation_id: Name used in the log
            worktree_path: Worktree to remove
            branch_name: Branch to delete
            temp_files: Glob patterns (relative to the project) to delete
            process_pid: Process to terminate (SIGTERM, then SIGKILL)

        Returns:
            One result dict per task
        """
        self.logger.info(f"Starting cleanup for failed operation: {operation_id}")
        tasks: list[tuple[str, Callable[[], object]]] = []

        if process_pid:
            tasks.append(("process", lambda: terminate_process(process_pid, table=self.processes)))
        if worktree_path:
            tasks.append(("worktree", lambda: self.provisioner.destroy_workspace(Path(worktree_path))))
        if branch_name:
            tasks.append(("branch", lambda: self.git.delete_branch(branch_name)))
        if temp_files:
            tasks.append(("temp_files", lambda: self.cleanup_temp_files(temp_files)))

        results = self._run_tasks(tasks)
        self.logger.log_operation(f"cleanup_{operation_id}", "completed", {"results": results})
        return results

    def cleanup_temp_files(self, patterns: list[str]) -> int:
        """Delete files matching glob patterns relative to the project root."""
        removed = 0
        for pattern in patterns:
            for path in self.workspace.project_path.glob(pattern):
                if path.is_file():
                    path.unlink(missing_ok=True)
                    removed += 1
        return removed

    def cleanup_swarm_worktrees(self) -> int:
        """Remove every swarm worktree."""
        count = 0
        for worktree in self.provisioner.list_workspaces():
            if self.provisioner.destroy_workspace(Path(worktree.path)):
                count += 1
        self.git.prune_worktrees()
        return count

    def cleanup_swarm_branches(self) -> int:
        """Delete swarm/ branches not checked out anywhere."""
        checked_out = {wt.branch for wt in self.git.list_worktrees() if wt.branch}
        count = 0
        for branch in self.git.list_branches(f"{BRANCH_PREFIX}*"):
            if branch in checked_out:
                continue
            if self.git.delete_branch(branch):
                count += 1
        return count

    def cleanup_swarm_processes(self) -> int:
        """Terminate workers that are still running and mark them stopped.

        Workers that already exited are reconciled first, so their exit
        markers are read before the scratch files go.
        """
        count = 0
        for agent in self.monitor.reconcile():
            if terminate_process(agent.pid, table=self.processes):
                count += 1
                self.sessions.update_agent_status(agent.pid, AgentStatus.STOPPED, datetime.now())
        return count

    def cleanup_swarm_temp_files(self) -> int:
        """Delete generated scripts, prompts and leftover exit markers."""
        count = 0
        for directory in (self.workspace.scripts_dir, self.workspace.prompts_dir, self.workspace.exit_codes_dir):
            if not directory.exists():
                continue
            for path in directory.iterdir():
                if path.is_file():
                    path.unlink(missing_ok=True)
                    count += 1
        count += self.cleanup_temp_files([".swarm/*.tmp", ".swarm/**/.*.tmp"])
        return count

    def cleanup_all_swarm_resources(self) -> dict[str, int]:
        """Stop workers, then remove every worktree, branch and scratch file."""
        self.logger.info("Starting comprehensive swarm resource cleanup")
        results = {}
        for name, task in (
            ("processes", self.cleanup_swarm_processes),
            ("worktrees", self.cleanup_swarm_worktrees),
            ("branches", self.cleanup_swarm_branches),
            ("temp_files", self.cleanup_swarm_temp_files),
        ):
            try:
                results[name] = task()
            except Exception as e:
                self.logger.error(f"Cleanup of {name} failed: {e}")
                results[name] = 0

        self.logger.log_operation("cleanup_all", "completed", results)
        return results
