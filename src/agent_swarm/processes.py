"""OS process helpers shared by the spawner, monitor and shutdown paths.

Liveness prefers the native wait API (Popen.poll) for processes this
interpreter launched and falls back to a signal-0 check for everything else.
"""

import os
import signal
import threading
import time
from subprocess import Popen
from typing import Optional

import psutil


class ProcessTable:
    """Popen handles for workers launched by this process.

    Keeping the handle lets us reap exited children (no zombies) and read
    their exit status without relying on signal probing.
    """

    def __init__(self):
        self._handles: dict[int, Popen] = {}
        self._lock = threading.Lock()

    def register(self, handle: Popen) -> None:
        with self._lock:
            self._handles[handle.pid] = handle

    def get(self, pid: int) -> Optional[Popen]:
        with self._lock:
            return self._handles.get(pid)

    def forget(self, pid: int) -> None:
        with self._lock:
            self._handles.pop(pid, None)

    def pids(self) -> list[int]:
        with self._lock:
            return list(self._handles)

    def poll(self, pid: int) -> Optional[int]:
        """Exit code of an owned child, or None while running or unknown."""
        handle = self.get(pid)
        return handle.poll() if handle else None


def is_process_alive(pid: int, table: Optional[ProcessTable] = None) -> bool:
    """Check whether a process exists.

    "Not found" means dead; "found but not permitted" still counts as alive.
    Zombies count as dead.
    """
    if pid <= 0:
        return False

    if table is not None and table.get(pid) is not None:
        return table.poll(pid) is None

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True

    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def send_signal(pid: int, sig: int) -> bool:
    """Signal a worker and the agent processes it started.

    Workers run as session leaders, so their process group shares their pid
    and signalling the group reaches the agent binary too.

    Returns:
        False if the process doesn't exist
    """
    try:
        if os.getpgid(pid) == pid:
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False


def terminate_process(
    pid: int,
    grace_seconds: float = 2.0,
    table: Optional[ProcessTable] = None,
    poll_interval: float = 0.1,
) -> bool:
    """SIGTERM a process, then SIGKILL it if it outlives the grace period.

    Returns:
        True if the process is gone (including when it never existed)
    """
    if not send_signal(pid, signal.SIGTERM):
        return True

    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if not is_process_alive(pid, table):
            return True
        time.sleep(poll_interval)

    send_signal(pid, signal.SIGKILL)
    time.sleep(poll_interval)
    return not is_process_alive(pid, table)
