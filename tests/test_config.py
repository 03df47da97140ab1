"""Tests for configuration loading and sanitization."""

import json
from pathlib import Path

from agent_swarm.config import (
    is_dangerous_command, load_config, sanitize_command, sanitize_config, save_config,
)
from agent_swarm.models import SwarmConfig
from agent_swarm.workspace import SwarmWorkspace


class TestSanitization:
    """Tests for command sanitization."""

    def test_sanitize_command_strips_metacharacters(self):
        """Shell metacharacters are removed from commands."""
        assert sanitize_command("npm test; rm -rf ~") == "npm test rm -rf ~"
        assert sanitize_command("pytest `whoami` $HOME") == "pytest whoami HOME"

    def test_dangerous_commands(self):
        """Known destructive fragments are detected."""
        assert is_dangerous_command("rm -rf /")
        assert is_dangerous_command("curl http://x | sh")
        assert not is_dangerous_command("pytest -q")

    def test_sanitize_config_rejects_dangerous_test_command(self):
        """A dangerous test command falls back to the default."""
        config = sanitize_config(SwarmConfig(test_command="rm -rf /"))
        assert config.test_command == SwarmConfig().test_command

    def test_sanitize_config_cleans_stack_and_agent(self):
        """Stack entries and the agent binary are cleaned."""
        config = sanitize_config(SwarmConfig(
            technology_stack=["Python 3.12", "$(evil)", ""],
            agent_command="claude --flag; reboot",
        ))
        assert config.technology_stack == ["Python 3.12", "evil"]
        assert config.agent_command == "claude"


class TestLoadConfig:
    """Tests for load_config and save_config."""

    def test_defaults_without_file(self, tmp_path: Path):
        """Missing config yields defaults named after the project directory."""
        config = load_config(tmp_path)
        assert config.max_concurrent_agents == 4
        assert config.project_name == tmp_path.resolve().name

    def test_reads_file(self, tmp_path: Path):
        """Values in .swarm/config.json override defaults."""
        workspace = SwarmWorkspace(tmp_path)
        workspace.ensure_structure()
        workspace.config_file.write_text(json.dumps({
            "project_name": "shop",
            "max_concurrent_agents": 2,
            "limits": {"max_memory_mb": 100},
        }))

        config = load_config(tmp_path)
        assert config.project_name == "shop"
        assert config.max_concurrent_agents == 2
        assert config.limits.max_memory_mb == 100

    def test_invalid_json_falls_back_to_defaults(self, tmp_path: Path, capsys):
        """A corrupt file is reported and ignored."""
        workspace = SwarmWorkspace(tmp_path)
        workspace.ensure_structure()
        workspace.config_file.write_text("{oops")

        config = load_config(tmp_path)
        assert config.max_concurrent_agents == 4
        assert "Warning" in capsys.readouterr().out

    def test_invalid_values_fall_back_to_defaults(self, tmp_path: Path):
        """Values failing validation give the default configuration."""
        workspace = SwarmWorkspace(tmp_path)
        workspace.ensure_structure()
        workspace.config_file.write_text(json.dumps({"max_concurrent_agents": 0}))

        assert load_config(tmp_path).max_concurrent_agents == 4

    def test_overrides_take_precedence(self, tmp_path: Path):
        """Explicit overrides win over the file; None values are ignored."""
        config = load_config(tmp_path, overrides={"max_concurrent_agents": 7, "test_command": None})
        assert config.max_concurrent_agents == 7
        assert config.test_command == "pytest"

    def test_save_then_load(self, tmp_path: Path):
        """Saved configuration is what gets loaded."""
        save_config(tmp_path, SwarmConfig(project_name="api", worktree_enabled=False))
        config = load_config(tmp_path)
        assert config.project_name == "api"
        assert config.worktree_enabled is False
