"""Git worktree provisioning for workers.

Each worker gets a dedicated branch and a worktree under
.swarm/worktrees/. Creation never raises: callers get a path or None.
"""

import secrets
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

from .errors import GitCommandError
from .event_log import EventLogger
from .git_manager import GitManager, WorktreeInfo
from .models import AgentRole
from .protocols import GitOperations
from .workspace import SwarmWorkspace

BRANCH_PREFIX = "swarm/"


class WorkspaceProvisioner:
    """Creates and destroys per-worker git worktrees."""

    def __init__(
        self,
        workspace: SwarmWorkspace,
        git: Optional[GitOperations] = None,
        logger: Optional[EventLogger] = None,
    ):
        self.workspace = workspace
        self.git = git or GitManager(workspace.project_path)
        self.logger = logger or EventLogger(component="worktrees", quiet=True)

    @staticmethod
    def workspace_name(role: str, now: Optional[datetime] = None) -> str:
        """Unique name keyed by role and timestamp.

        A short random suffix keeps two spawns of the same role within one
        second apart.
        """
        stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
        return f"{role}-{stamp}-{secrets.token_hex(2)}"

    def create_workspace(self, role: AgentRole) -> Optional[Path]:
        """Create a worktree on a fresh branch for a worker.

        Args:
            role: Worker role, used in the branch and directory name

        Returns:
            Absolute worktree path, or None if anything went wrong
        """
        try:
            role_name = AgentRole(role).value
        except ValueError:
            role_name = AgentRole.GENERAL.value
        name = self.workspace_name(role_name)
        path = self.workspace.worktrees_dir / name
        branch = f"{BRANCH_PREFIX}{name}"

        try:
            self.workspace.worktrees_dir.mkdir(parents=True, exist_ok=True)
            if self.git.ensure_initial_commit():
                self.logger.info("Created initial commit so worktrees have a base revision")
            self.git.add_worktree(path, branch)
        except (GitCommandError, OSError) as e:
            self.logger.error(f"Failed to create worktree for {role_name}: {e}", role=role_name)
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
            return None

        self.logger.info(f"Created worktree {name} on {branch}", path=str(path), branch=branch)
        return path.resolve()

    def destroy_workspace(self, path: Path) -> bool:
        """Remove a worktree and delete its branch.

        Returns:
            True if the directory is gone afterwards
        """
        path = Path(path)
        branch = self._branch_for(path)

        if not self.git.remove_worktree(path, force=True):
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
            self.git.prune_worktrees()

        if branch and branch.startswith(BRANCH_PREFIX):
            if not self.git.delete_branch(branch):
                self.logger.warn(f"Could not delete branch {branch}", branch=branch)

        removed = not path.exists()
        if removed:
            self.logger.info(f"Removed worktree {path.name}", path=str(path))
        else:
            self.logger.warn(f"Worktree still present: {path}", path=str(path))
        return removed

    def list_workspaces(self) -> list[WorktreeInfo]:
        """Worktrees that belong to the swarm."""
        worktrees_dir = str(self.workspace.worktrees_dir.resolve())
        return [
            wt for wt in self.git.list_worktrees()
            if (wt.branch or "").startswith(BRANCH_PREFIX) or wt.path.startswith(worktrees_dir)
        ]

    def _branch_for(self, path: Path) -> Optional[str]:
        resolved = str(path.resolve()) if path.exists() else str(path)
        for wt in self.git.list_worktrees():
            if wt.path == resolved or wt.path == str(path):
                return wt.branch
        # Directory naming mirrors the branch naming
        return f"{BRANCH_PREFIX}{path.name}"
