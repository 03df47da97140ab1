"""Configuration loading for the swarm.

Reads .swarm/config.json into a SwarmConfig. Values that end up inside
generated shell scripts (test command, agent binary, technology stack)
are sanitized on the way in.
"""

import json
import re
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .models import SwarmConfig
from .workspace import SwarmWorkspace, atomic_write_json

# Characters with meaning to the shell
SHELL_METACHARACTERS = re.compile(r"[;&|`$\\]")

# Fragments that have no business in a configured command
DANGEROUS_PATTERNS = [
    re.compile(r"rm\s+-rf\s+/(\s|$)"),
    re.compile(r">\s*/dev/sd"),
    re.compile(r"mkfs"),
    re.compile(r":\(\)\s*\{"),
    re.compile(r"curl[^|]*\|\s*(ba)?sh"),
]

SAFE_STACK_ITEM = re.compile(r"[^\w .+#/-]")


def sanitize_command(command: str) -> str:
    """Strip shell metacharacters from a configured command."""
    return SHELL_METACHARACTERS.sub("", command or "").strip()


def is_dangerous_command(command: str) -> bool:
    """Check a command against the dangerous pattern list."""
    return any(p.search(command or "") for p in DANGEROUS_PATTERNS)


def sanitize_config(config: SwarmConfig) -> SwarmConfig:
    """Return a copy of config that is safe to embed in worker scripts."""
    test_command = sanitize_command(config.test_command)
    if is_dangerous_command(test_command):
        print(f"[config] Warning: Rejected dangerous test command: {config.test_command!r}")
        test_command = SwarmConfig().test_command

    agent_command = sanitize_command(config.agent_command).split()
    agent_command = agent_command[0] if agent_command else SwarmConfig().agent_command

    return config.model_copy(update={
        "project_name": SAFE_STACK_ITEM.sub("", config.project_name).strip() or "project",
        "technology_stack": [
            cleaned for cleaned in (SAFE_STACK_ITEM.sub("", item).strip() for item in config.technology_stack)
            if cleaned
        ],
        "test_command": test_command,
        "agent_command": agent_command,
        "agent_args": [sanitize_command(arg) for arg in config.agent_args if sanitize_command(arg)],
        "code_standards": [s.strip() for s in config.code_standards if s.strip()],
    })


def load_config(project_path: Path, overrides: Optional[dict] = None) -> SwarmConfig:
    """Load configuration for a project.

    Args:
        project_path: Project root containing .swarm/
        overrides: Values that take precedence over the file

    Returns:
        Sanitized SwarmConfig (defaults when the file is missing or invalid)
    """
    workspace = SwarmWorkspace(project_path)
    data: dict = {}

    if workspace.config_file.exists():
        try:
            data = json.loads(workspace.config_file.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("config.json must contain an object")
        except (json.JSONDecodeError, ValueError) as e:
            print(f"[config] Warning: Could not load config.json, using defaults: {e}")
            data = {}

    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        config = SwarmConfig.model_validate(data)
    except ValidationError as e:
        print(f"[config] Warning: Invalid configuration, using defaults: {e}")
        config = SwarmConfig()

    if not data.get("project_name"):
        config = config.model_copy(update={"project_name": workspace.project_path.name})

    return sanitize_config(config)


def save_config(project_path: Path, config: SwarmConfig) -> Path:
    """Write configuration to .swarm/config.json.

    Returns:
        Path to the written file
    """
    workspace = SwarmWorkspace(project_path)
    workspace.ensure_structure()
    atomic_write_json(workspace.config_file, config.model_dump(mode="json"))
    return workspace.config_file
