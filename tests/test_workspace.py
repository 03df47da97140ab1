"""Tests for SwarmWorkspace and the shared file helpers."""

import json
import threading
from pathlib import Path

from agent_swarm.workspace import SwarmWorkspace, atomic_write_json, file_lock, read_json


class TestSwarmWorkspace:
    """Tests for SwarmWorkspace."""

    def test_ensure_structure_creates_directories(self, tmp_path: Path):
        """ensure_structure creates the .swarm/ tree."""
        workspace = SwarmWorkspace(tmp_path)
        workspace.ensure_structure()

        assert workspace.swarm_dir.exists()
        assert workspace.archives_dir.exists()
        assert workspace.communication_dir.exists()
        assert workspace.coordination_dir.exists()
        assert workspace.logs_dir.exists()
        assert workspace.scripts_dir.exists()
        assert workspace.prompts_dir.exists()
        assert workspace.exit_codes_dir.exists()
        assert workspace.worktrees_dir.exists()

    def test_exists_returns_false_for_new_project(self, tmp_path: Path):
        """exists() is False until the structure is created."""
        workspace = SwarmWorkspace(tmp_path)
        assert not workspace.exists()
        workspace.ensure_structure()
        assert workspace.exists()

    def test_read_exit_code(self, workspace: SwarmWorkspace):
        """Exit markers are parsed; missing or garbage markers give None."""
        assert workspace.read_exit_code(42) is None

        workspace.exit_code_file(42).write_text("3\n")
        assert workspace.read_exit_code(42) == 3

        workspace.exit_code_file(43).write_text("not a number")
        assert workspace.read_exit_code(43) is None

    def test_role_log_paths(self, workspace: SwarmWorkspace):
        """Each role logs to its own output and error files."""
        out, err = workspace.role_log_paths("backend")
        assert out.name == "backend_output.log"
        assert err.name == "backend_error.log"
        assert out.parent == workspace.logs_dir

    def test_update_gitignore_is_idempotent(self, tmp_path: Path):
        """The .swarm/ entry is appended once."""
        (tmp_path / ".gitignore").write_text("node_modules/")
        workspace = SwarmWorkspace(tmp_path)

        assert workspace.update_gitignore() is True
        assert workspace.update_gitignore() is False

        lines = (tmp_path / ".gitignore").read_text().splitlines()
        assert "node_modules/" in lines
        assert lines.count(".swarm/") == 1

    def test_disk_usage(self, workspace: SwarmWorkspace):
        """Disk usage counts file sizes under .swarm/."""
        (workspace.logs_dir / "big.log").write_bytes(b"x" * 2048)
        assert workspace.get_disk_usage_bytes() >= 2048

    def test_workspace_stats(self, workspace: SwarmWorkspace):
        """Stats count messages and worktrees."""
        (workspace.communication_dir / "agent_a.json").write_text("{}")
        (workspace.worktrees_dir / "backend-1").mkdir()

        stats = workspace.get_workspace_stats()
        assert stats["exists"] is True
        assert stats["message_files"] == 1
        assert stats["worktrees"] == 1


class TestAtomicWriteJson:
    """Tests for atomic_write_json and read_json."""

    def test_write_and_read(self, tmp_path: Path):
        """Written data reads back and no temp files remain."""
        target = tmp_path / "nested" / "doc.json"
        atomic_write_json(target, {"a": 1})

        assert read_json(target) == {"a": 1}
        assert [p.name for p in target.parent.iterdir()] == ["doc.json"]

    def test_overwrite_replaces_content(self, tmp_path: Path):
        """A second write replaces the document entirely."""
        target = tmp_path / "doc.json"
        atomic_write_json(target, {"a": 1, "b": 2})
        atomic_write_json(target, {"c": 3})
        assert json.loads(target.read_text()) == {"c": 3}

    def test_read_missing_and_corrupt(self, tmp_path: Path):
        """Missing and unparseable files read as None."""
        assert read_json(tmp_path / "missing.json") is None

        corrupt = tmp_path / "corrupt.json"
        corrupt.write_text("{not json")
        assert read_json(corrupt) is None


class TestFileLock:
    """Tests for file_lock."""

    def test_serializes_read_modify_write(self, tmp_path: Path):
        """Concurrent increments under the lock never lose an update."""
        counter = tmp_path / "counter.json"
        lock = tmp_path / "counter.lock"
        atomic_write_json(counter, {"n": 0})

        def increment():
            for _ in range(20):
                with file_lock(lock):
                    data = read_json(counter)
                    data["n"] += 1
                    atomic_write_json(counter, data)

        threads = [threading.Thread(target=increment) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert read_json(counter) == {"n": 80}
