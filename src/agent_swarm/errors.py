"""Exception types raised inside the swarm core.

Public operations convert these into sentinel return values (None/False)
at their boundary; they surface directly only from the lower-level helpers
(admission, workspace provisioning, launch, git plumbing, the retry loop).
A vanished worker process and an unanswered message are not errors: the
monitor corrects the record and awaiting a response returns None.
"""

from typing import Optional


class SwarmError(Exception):
    """Base class for swarm errors."""


class ResourceExceeded(SwarmError):
    """Admission denied because one or more resource limits are exceeded."""

    def __init__(self, reasons: list[str]):
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons) or "Resource limits exceeded")


class WorkspaceCreationFailure(SwarmError):
    """A git worktree could not be created for a worker."""


class SpawnFailure(SwarmError):
    """The worker process could not be launched."""


class RecoveryActionFailure(SwarmError):
    """A recovery action could not run to completion."""


class GitCommandError(SwarmError):
    """A git command exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stderr: str = ""):
        self.command = ["git", *args]
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"{' '.join(self.command)} exited with {returncode}{detail}")


class RetryError(SwarmError):
    """All retry attempts were exhausted."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Operation failed after {attempts} attempts: {last_error}")
