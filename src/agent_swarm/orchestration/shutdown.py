"""Graceful shutdown for long-running swarm commands.

Handles:
- Signal handlers (SIGINT, SIGTERM)
- File-based stop requests (.swarm/stop-requested)
- Terminating running workers and marking them stopped
"""

import signal
import sys
from datetime import datetime
from typing import Any, Optional

from rich.console import Console

from ..event_log import EventLogger
from ..models import AgentStatus
from ..processes import ProcessTable, terminate_process
from ..session_store import SessionStore
from ..workspace import SwarmWorkspace

console = Console()

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


class ShutdownHandler:
    """Turns signals and stop files into an orderly stop of the swarm.

    Dependencies are injected for testability:
    - SessionStore: For marking interrupted workers as stopped
    - ProcessTable: For liveness of workers this process started
    """

    def __init__(
        self,
        workspace: SwarmWorkspace,
        sessions: SessionStore,
        processes: Optional[ProcessTable] = None,
        logger: Optional[EventLogger] = None,
        grace_seconds: float = 2.0,
    ):
        self.workspace = workspace
        self.sessions = sessions
        self.processes = processes or ProcessTable()
        self.logger = logger or EventLogger(component="shutdown", quiet=True)
        self.grace_seconds = grace_seconds

        self._shutdown_requested = False
        self._previous_handlers: dict[int, Any] = {}

    def setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown.

        On Windows, only SIGINT (Ctrl+C) is supported.
        On Unix, both SIGINT and SIGTERM are handled.
        """
        signals = [signal.SIGINT]
        if sys.platform != "win32":
            signals.append(signal.SIGTERM)
        for sig in signals:
            self._previous_handlers[sig] = signal.signal(sig, self._handle_shutdown_signal)

    def restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    def _handle_shutdown_signal(self, signum: int, frame: Any) -> None:
        signal_name = signal.Signals(signum).name
        console.print(f"\n[yellow]Shutdown signal received ({signal_name}) - stopping agents...[/yellow]")
        self.logger.warn(f"Shutdown signal received ({signal_name})")
        self._shutdown_requested = True

    def is_shutdown_requested(self) -> bool:
        """Check the signal flag and the stop request file."""
        if self._shutdown_requested:
            return True

        if self.workspace.stop_request_file.exists():
            console.print("[yellow]Stop request file detected...[/yellow]")
            self._shutdown_requested = True
            return True

        return False

    def request_stop(self, reason: str = "User requested stop") -> None:
        """Create the stop request file another process will pick up."""
        stop_file = self.workspace.stop_request_file
        stop_file.parent.mkdir(parents=True, exist_ok=True)
        stop_file.write_text(f"{datetime.now().isoformat()}\n{reason}")
        self.logger.info(f"Stop requested: {reason}")

    def clear_stop_request(self) -> None:
        self.workspace.stop_request_file.unlink(missing_ok=True)

    def graceful_shutdown(self) -> int:
        """Terminate running workers, record them as stopped.

        Returns:
            Exit code for the interrupted command
        """
        agents = self.sessions.get_active_agents()
        self.logger.info(f"Graceful shutdown: stopping {len(agents)} agent(s)")

        for agent in agents:
            try:
                terminate_process(agent.pid, grace_seconds=self.grace_seconds, table=self.processes)
            except PermissionError as e:
                self.logger.error(f"Cannot stop {agent.role.value} agent (PID: {agent.pid}): {e}")
                continue
            self.sessions.update_agent_status(agent.pid, AgentStatus.STOPPED, datetime.now())
            self.processes.forget(agent.pid)

        self.clear_stop_request()
        self._shutdown_requested = False
        console.print(f"[green]Stopped {len(agents)} agent(s)[/green]")
        return EXIT_INTERRUPTED
