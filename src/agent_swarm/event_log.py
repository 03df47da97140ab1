"""Structured event logging for the swarm.

Every component gets an EventLogger. Events are appended to
.swarm/logs/events.jsonl with immediate flush (os.fsync) so a dashboard or
`tail -f` sees them in real time, and echoed to the terminal through rich.

Example output:
    {"timestamp": "...", "level": "info", "component": "spawner", "message": "Spawned backend agent", "pid": 4242}
    {"timestamp": "...", "level": "warn", "component": "resources", "message": "Spawn denied", "reasons": [...]}
"""

import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.console import Console

console = Console()

LEVELS = {"debug": 10, "info": 20, "warn": 30, "error": 40}

LEVEL_STYLES = {
    "debug": "dim",
    "info": "cyan",
    "warn": "yellow",
    "error": "red",
}

LOG_LEVEL_ENV = "SWARM_LOG_LEVEL"


class EventLogger:
    """JSONL event logger with console echo.

    Loggers created with child() share the same file handle and lock, so
    worker threads in one process never interleave partial lines.
    """

    def __init__(
        self,
        log_file: Optional[Path] = None,
        component: str = "swarm",
        level: Optional[str] = None,
        quiet: bool = False,
        _shared: Optional[dict] = None,
    ):
        """Initialize the logger.

        Args:
            log_file: JSONL file to append to (None disables file output)
            component: Name recorded in each event
            level: Minimum level echoed to the console (default from SWARM_LOG_LEVEL or info)
            quiet: Suppress console output entirely
        """
        self.component = component
        self.quiet = quiet
        level_name = (level or os.environ.get(LOG_LEVEL_ENV, "info")).lower()
        self.level = LEVELS.get(level_name, LEVELS["info"])

        if _shared is None:
            _shared = {
                "log_file": Path(log_file) if log_file else None,
                "handle": None,
                "lock": threading.Lock(),
            }
        self._shared = _shared

    @property
    def log_file(self) -> Optional[Path]:
        return self._shared["log_file"]

    def child(self, component: str) -> "EventLogger":
        """Logger for another component writing to the same file."""
        child = EventLogger(component=component, quiet=self.quiet, _shared=self._shared)
        child.level = self.level
        return child

    def _write_entry(self, entry: dict) -> None:
        log_file = self._shared["log_file"]
        if log_file is None:
            return

        with self._shared["lock"]:
            if self._shared["handle"] is None:
                log_file.parent.mkdir(parents=True, exist_ok=True)
                self._shared["handle"] = open(log_file, "a", encoding="utf-8")
            handle = self._shared["handle"]

            handle.write(json.dumps(entry, default=str) + "\n")
            handle.flush()
            try:
                os.fsync(handle.fileno())
            except (OSError, AttributeError):
                pass  # Some filesystems don't support fsync

    def log(self, level: str, message: str, **details: Any) -> None:
        """Record an event.

        Args:
            level: One of debug, info, warn, error
            message: Human-readable message
            **details: Extra JSON-serializable fields
        """
        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "component": self.component,
            "message": message,
            "pid": os.getpid(),
        }
        entry.update(details)
        self._write_entry(entry)

        if not self.quiet and LEVELS.get(level, 0) >= self.level:
            style = LEVEL_STYLES.get(level, "white")
            console.print(f"[{style}][{self.component}][/{style}] {message}", highlight=False)

    def debug(self, message: str, **details: Any) -> None:
        self.log("debug", message, **details)

    def info(self, message: str, **details: Any) -> None:
        self.log("info", message, **details)

    def warn(self, message: str, **details: Any) -> None:
        self.log("warn", message, **details)

    def error(self, message: str, **details: Any) -> None:
        self.log("error", message, **details)

    def log_operation(self, operation: str, status: str, details: Optional[dict] = None) -> None:
        """Record a structured operation result (spawn, stop, cleanup...)."""
        level = "error" if status in ("failed", "error") else "info"
        self.log(level, f"{operation}: {status}", operation=operation, status=status, **(details or {}))

    def close(self) -> None:
        """Close the shared file handle."""
        with self._shared["lock"]:
            if self._shared["handle"] is not None:
                self._shared["handle"].close()
                self._shared["handle"] = None


def read_events(log_file: Path, limit: Optional[int] = None, component: Optional[str] = None) -> list[dict]:
    """Read events back from a JSONL log, skipping malformed lines."""
    log_file = Path(log_file)
    if not log_file.exists():
        return []

    events = []
    with open(log_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if component and event.get("component") != component:
                continue
            events.append(event)

    if limit is not None:
        events = events[-limit:]
    return events
