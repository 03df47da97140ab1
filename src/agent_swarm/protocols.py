"""Protocol definitions for dependency injection.

These protocols define the interfaces the swarm core depends on, enabling:
- Loose coupling between components
- Easy testing via mock implementations (no real git, no real processes)
"""

from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from .git_manager import WorktreeInfo


@runtime_checkable
class GitOperations(Protocol):
    """Protocol for the git operations used by workspace provisioning and cleanup."""

    def is_git_repo(self) -> bool:
        """Check if the project is a git repository."""
        ...

    def ensure_initial_commit(self) -> bool:
        """Create an empty commit if HEAD doesn't resolve."""
        ...

    def current_branch(self, path: Optional[Path] = None) -> Optional[str]:
        """Branch checked out at path."""
        ...

    def add_worktree(self, path: Path, branch: str) -> None:
        """Create a worktree on a new branch."""
        ...

    def remove_worktree(self, path: Path, force: bool = True) -> bool:
        """Remove a worktree."""
        ...

    def prune_worktrees(self) -> None:
        """Prune stale worktree metadata."""
        ...

    def list_worktrees(self) -> list[WorktreeInfo]:
        """List worktrees."""
        ...

    def list_branches(self, pattern: Optional[str] = None) -> list[str]:
        """List local branches."""
        ...

    def delete_branch(self, branch: str, force: bool = True) -> bool:
        """Delete a local branch."""
        ...


@runtime_checkable
class ResourceSampler(Protocol):
    """Protocol for host resource sampling.

    The default implementation uses psutil; tests substitute fixed values.
    """

    def memory_usage_mb(self, pids: list[int]) -> float:
        """Combined resident memory of the given processes, in MB."""
        ...

    def system_load(self) -> float:
        """1-minute load average."""
        ...

    def cpu_count(self) -> int:
        """Number of logical CPUs."""
        ...
