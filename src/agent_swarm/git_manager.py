"""Git plumbing for worker workspaces.

Handles repository bootstrap, worktree add/remove/list and branch cleanup.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import GitCommandError


@dataclass
class WorktreeInfo:
    """One entry of `git worktree list --porcelain`."""
    path: str
    head: Optional[str] = None
    branch: Optional[str] = None
    bare: bool = False
    detached: bool = False


def parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """Parse porcelain worktree output into WorktreeInfo entries.

    Entries are separated by blank lines; branch refs are reported
    without the refs/heads/ prefix.
    """
    worktrees = []
    current: Optional[WorktreeInfo] = None

    for line in output.splitlines():
        line = line.strip()
        if not line:
            if current:
                worktrees.append(current)
                current = None
            continue

        key, _, value = line.partition(" ")
        if key == "worktree":
            if current:
                worktrees.append(current)
            current = WorktreeInfo(path=value)
        elif current is None:
            continue
        elif key == "HEAD":
            current.head = value
        elif key == "branch":
            current.branch = value.removeprefix("refs/heads/")
        elif key == "bare":
            current.bare = True
        elif key == "detached":
            current.detached = True

    if current:
        worktrees.append(current)
    return worktrees


class GitManager:
    """Manages git operations for the project."""

    def __init__(self, project_path: Path):
        self.project_path = Path(project_path)

    def _run(self, *args: str, check: bool = True, cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        """Run a git command.

        Raises:
            GitCommandError: If check is True and git exits non-zero
        """
        result = subprocess.run(
            ["git", *args],
            cwd=cwd or self.project_path,
            capture_output=True,
            text=True,
        )
        if check and result.returncode != 0:
            raise GitCommandError(list(args), result.returncode, result.stderr)
        return result

    def is_git_repo(self) -> bool:
        """Check if the project is a git repository."""
        result = self._run("rev-parse", "--git-dir", check=False)
        return result.returncode == 0

    def init_repo(self) -> None:
        """Initialize a git repository if not exists."""
        if not self.is_git_repo():
            self._run("init")

    def has_commits(self) -> bool:
        """Check whether HEAD resolves to a commit."""
        result = self._run("rev-parse", "--verify", "HEAD", check=False)
        return result.returncode == 0

    def ensure_initial_commit(self) -> bool:
        """Make sure the repository has a base revision to branch worktrees from.

        Creates an empty commit when HEAD doesn't resolve. A fallback identity
        is supplied for repositories where user.name/user.email are unset.

        Returns:
            True if a commit had to be created
        """
        self.init_repo()
        if self.has_commits():
            return False

        self._run(
            "-c", "user.name=Agent Swarm",
            "-c", "user.email=agent-swarm@localhost",
            "commit", "--allow-empty", "-m", "Initial commit",
        )
        return True

    def current_branch(self, path: Optional[Path] = None) -> Optional[str]:
        """Branch checked out at path (default: project root)."""
        result = self._run("branch", "--show-current", check=False, cwd=path)
        branch = result.stdout.strip()
        return branch or None

    # =========================================================================
    # Worktrees
    # =========================================================================

    def add_worktree(self, path: Path, branch: str) -> None:
        """Create a worktree at path on a new branch from HEAD."""
        self._run("worktree", "add", "-b", branch, str(path))

    def remove_worktree(self, path: Path, force: bool = True) -> bool:
        """Remove a worktree. Returns False if git refused."""
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        result = self._run(*args, check=False)
        return result.returncode == 0

    def prune_worktrees(self) -> None:
        """Drop administrative data for worktrees whose directory is gone."""
        self._run("worktree", "prune", check=False)

    def list_worktrees(self) -> list[WorktreeInfo]:
        """List all worktrees of the repository."""
        result = self._run("worktree", "list", "--porcelain", check=False)
        if result.returncode != 0:
            return []
        return parse_worktree_list(result.stdout)

    # =========================================================================
    # Branches
    # =========================================================================

    def list_branches(self, pattern: Optional[str] = None) -> list[str]:
        """List local branch names, optionally filtered by a glob pattern."""
        args = ["branch", "--format=%(refname:short)"]
        if pattern:
            args.extend(["--list", pattern])
        result = self._run(*args, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def delete_branch(self, branch: str, force: bool = True) -> bool:
        """Delete a local branch. Returns False if git refused."""
        result = self._run("branch", "-D" if force else "-d", branch, check=False)
        return result.returncode == 0
