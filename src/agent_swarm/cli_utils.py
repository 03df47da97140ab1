"""Utilities for finding external CLI tools.

Worker scripts call the coding-agent binary by absolute path when it can be
found, since detached processes don't always inherit an interactive PATH.
"""

import os
import shutil
import sys
from pathlib import Path
from typing import Optional


def find_agent_executable(command: str = "claude") -> Optional[str]:
    """Find the coding-agent executable.

    Searches in order:
    1. PATH (via shutil.which)
    2. Common npm/user installation directories

    Args:
        command: Binary name or path from configuration

    Returns:
        Path to the executable, or None if not found.
    """
    if os.sep in command:
        candidate = Path(command).expanduser()
        return str(candidate) if candidate.exists() and os.access(candidate, os.X_OK) else None

    path = shutil.which(command)
    if path:
        return path

    if sys.platform == "win32":
        return shutil.which(f"{command}.cmd")

    common_dirs = [
        Path.home() / ".npm-global" / "bin",
        Path("/usr/local/bin"),
        Path.home() / ".local" / "bin",
        # nvm keeps a symlink to the active version
        Path.home() / ".nvm" / "current" / "bin",
        Path.home() / ".claude" / "local",
    ]
    for directory in common_dirs:
        candidate = directory / command
        if candidate.exists() and os.access(candidate, os.X_OK):
            return str(candidate)

    return None