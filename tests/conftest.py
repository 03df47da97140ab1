"""Shared fixtures and fake implementations of the swarm protocols."""

import shutil
from pathlib import Path
from typing import Optional

import pytest

from agent_swarm.errors import GitCommandError
from agent_swarm.git_manager import WorktreeInfo
from agent_swarm.models import SwarmConfig
from agent_swarm.session_store import SessionStore
from agent_swarm.workspace import SwarmWorkspace


class FakeGit:
    """In-memory GitOperations: worktrees are plain directories."""

    def __init__(self, fail_add: bool = False):
        self.fail_add = fail_add
        self.worktrees: dict[str, str] = {}
        self.branches: set[str] = set()
        self.initial_commits = 0
        self.pruned = 0

    def is_git_repo(self) -> bool:
        return True

    def ensure_initial_commit(self) -> bool:
        self.initial_commits += 1
        return False

    def current_branch(self, path: Optional[Path] = None) -> Optional[str]:
        return "main"

    def add_worktree(self, path: Path, branch: str) -> None:
        if self.fail_add:
            raise GitCommandError(["worktree", "add", "-b", branch, str(path)], 128, "fatal: boom")
        Path(path).mkdir(parents=True)
        self.worktrees[str(Path(path).resolve())] = branch
        self.branches.add(branch)

    def remove_worktree(self, path: Path, force: bool = True) -> bool:
        key = str(Path(path).resolve())
        if key not in self.worktrees:
            return False
        del self.worktrees[key]
        shutil.rmtree(path, ignore_errors=True)
        return True

    def prune_worktrees(self) -> None:
        self.pruned += 1

    def list_worktrees(self) -> list[WorktreeInfo]:
        return [WorktreeInfo(path=p, branch=b) for p, b in self.worktrees.items()]

    def list_branches(self, pattern: Optional[str] = None) -> list[str]:
        prefix = (pattern or "").rstrip("*")
        return sorted(b for b in self.branches if b.startswith(prefix))

    def delete_branch(self, branch: str, force: bool = True) -> bool:
        if branch not in self.branches:
            return False
        self.branches.discard(branch)
        return True


class FakeSampler:
    """ResourceSampler with fixed readings."""

    def __init__(self, memory_mb: float = 10.0, load: float = 0.1, cpus: int = 8):
        self.memory_mb = memory_mb
        self.load = load
        self.cpus = cpus

    def memory_usage_mb(self, pids: list[int]) -> float:
        return self.memory_mb

    def system_load(self) -> float:
        return self.load

    def cpu_count(self) -> int:
        return self.cpus


@pytest.fixture
def workspace(tmp_path: Path) -> SwarmWorkspace:
    ws = SwarmWorkspace(tmp_path)
    ws.ensure_structure()
    return ws


@pytest.fixture
def sessions(workspace: SwarmWorkspace) -> SessionStore:
    return SessionStore(workspace)


@pytest.fixture
def config() -> SwarmConfig:
    return SwarmConfig(project_name="demo", spawn_jitter_seconds=0)


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def sampler() -> FakeSampler:
    return FakeSampler()
