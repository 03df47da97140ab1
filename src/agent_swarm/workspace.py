"""Workspace management for the .swarm/ directory structure.

Handles:
- Directory structure creation
- Atomic JSON writes and advisory file locks for shared documents
- .gitignore maintenance so swarm state never lands in worker commits
- Disk usage accounting for resource checks
"""

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional


SWARM_DIR_NAME = ".swarm"


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to a temp file in the same directory, then os.replace() it.

    Readers never observe a half-written document.

    Args:
        path: Destination file
        data: JSON-serializable data
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


@contextmanager
def file_lock(lock_path: Path) -> Iterator[None]:
    """Hold an exclusive fcntl.flock() on lock_path for the duration of the block.

    Not reentrant: a second acquisition of the same lock from inside the
    block blocks forever.
    """
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_file = open(lock_path, "w")
    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        lock_file.close()


def read_json(path: Path) -> Optional[Any]:
    """Load a JSON file, returning None when missing or unparseable."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        print(f"[SwarmWorkspace] Warning: Could not read {path.name}: {e}")
        return None


class SwarmWorkspace:
    """Manages the .swarm/ workspace directory structure.

    Directory structure:
        .swarm/
        ├── config.json             # Optional config overrides
        ├── session.json            # Current session document
        ├── session.lock            # Lock guarding session.json
        ├── error_patterns.json     # Learned error patterns
        ├── stop-requested          # Present while a stop is pending
        ├── archives/               # Closed sessions
        ├── communication/          # Message bus inbox
        ├── coordination/
        │   └── status.json         # Coordination status
        ├── logs/
        │   ├── events.jsonl        # Structured event log
        │   └── {role}_output.log   # Worker stdout/stderr
        ├── scripts/                # Generated worker scripts
        ├── prompts/                # Worker instruction payloads
        ├── state/
        │   ├── exit/               # Worker exit codes ({pid}.code)
        │   └── recovery_history.json
        └── worktrees/              # One git worktree per worker
    """

    GITIGNORE_ENTRY = f"{SWARM_DIR_NAME}/"

    def __init__(self, project_path: Path):
        """Initialize the workspace.

        Args:
            project_path: Path to the project (git repository root)
        """
        self.project_path = Path(project_path).resolve()
        self.swarm_dir = self.project_path / SWARM_DIR_NAME
        self.archives_dir = self.swarm_dir / "archives"
        self.communication_dir = self.swarm_dir / "communication"
        self.coordination_dir = self.swarm_dir / "coordination"
        self.logs_dir = self.swarm_dir / "logs"
        self.scripts_dir = self.swarm_dir / "scripts"
        self.prompts_dir = self.swarm_dir / "prompts"
        self.state_dir = self.swarm_dir / "state"
        self.exit_codes_dir = self.state_dir / "exit"
        self.worktrees_dir = self.swarm_dir / "worktrees"

        # File paths
        self.config_file = self.swarm_dir / "config.json"
        self.session_file = self.swarm_dir / "session.json"
        self.session_lock = self.swarm_dir / "session.lock"
        self.error_patterns_file = self.swarm_dir / "error_patterns.json"
        self.stop_request_file = self.swarm_dir / "stop-requested"
        self.coordination_status_file = self.coordination_dir / "status.json"
        self.coordination_lock = self.coordination_dir / "status.lock"
        self.recovery_history_file = self.state_dir / "recovery_history.json"
        self.event_log_file = self.logs_dir / "events.jsonl"

    def ensure_structure(self) -> None:
        """Create the .swarm/ directory structure if it doesn't exist."""
        for directory in (
            self.swarm_dir,
            self.archives_dir,
            self.communication_dir,
            self.coordination_dir,
            self.logs_dir,
            self.scripts_dir,
            self.prompts_dir,
            self.state_dir,
            self.exit_codes_dir,
            self.worktrees_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        """Check if the workspace exists."""
        return self.swarm_dir.exists()

    def exit_code_file(self, pid: int) -> Path:
        """Path where a worker script records its agent's exit status."""
        return self.exit_codes_dir / f"{pid}.code"

    def read_exit_code(self, pid: int) -> Optional[int]:
        """Exit status recorded by a finished worker, or None if it never got that far."""
        path = self.exit_code_file(pid)
        if not path.exists():
            return None
        try:
            return int(path.read_text(encoding="utf-8").strip())
        except (ValueError, OSError):
            return None

    def role_log_paths(self, role: str) -> tuple[Path, Path]:
        """stdout and stderr log files for a role."""
        return (
            self.logs_dir / f"{role}_output.log",
            self.logs_dir / f"{role}_error.log",
        )

    def update_gitignore(self) -> bool:
        """Make sure .swarm/ is ignored by git.

        Returns:
            True if the .gitignore was modified
        """
        gitignore = self.project_path / ".gitignore"
        existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
        lines = [line.strip() for line in existing.splitlines()]
        if self.GITIGNORE_ENTRY in lines or SWARM_DIR_NAME in lines:
            return False

        prefix = "" if not existing or existing.endswith("\n") else "\n"
        gitignore.write_text(
            f"{existing}{prefix}# Agent swarm state\n{self.GITIGNORE_ENTRY}\n",
            encoding="utf-8"
        )
        return True

    def get_disk_usage_bytes(self) -> int:
        """Total size of files under .swarm/, not following symlinks."""
        if not self.swarm_dir.exists():
            return 0

        total = 0
        for root, _dirs, files in os.walk(self.swarm_dir, followlinks=False):
            for name in files:
                try:
                    total += os.lstat(os.path.join(root, name)).st_size
                except OSError:
                    continue
        return total

    def get_workspace_stats(self) -> dict:
        """Summary of the workspace for status displays."""
        return {
            "exists": self.exists(),
            "path": str(self.swarm_dir),
            "disk_usage_mb": round(self.get_disk_usage_bytes() / (1024 * 1024), 2),
            "message_files": len(list(self.communication_dir.glob("*.json")))
            if self.communication_dir.exists() else 0,
            "archived_sessions": len(list(self.archives_dir.glob("session_*.json")))
            if self.archives_dir.exists() else 0,
            "worktrees": len([p for p in self.worktrees_dir.iterdir() if p.is_dir()])
            if self.worktrees_dir.exists() else 0,
        }
