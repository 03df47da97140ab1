"""Worker spawning.

A worker is a detached bash script running inside its own git worktree.
The script writes the instruction payload to a file, runs the coding-agent
binary non-interactively against it, logs to per-role files and records
the agent's exit status so the monitor can tell completed from failed.
"""

import os
import random
import re
import secrets
import shlex
import signal
import subprocess
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Union

from .cli_utils import find_agent_executable
from .config import sanitize_command
from .errors import ResourceExceeded, SpawnFailure, WorkspaceCreationFailure
from .event_log import EventLogger
from .models import AgentRole, AgentStatus, SpawnRequest, SpawnResult, SwarmConfig
from .processes import ProcessTable, send_signal
from .resources import ResourceManager
from .session_store import SessionStore
from .workspace import SwarmWorkspace
from .worktrees import WorkspaceProvisioner

# Backtick, dollar, backslash, semicolon, pipe, ampersand, redirections and quotes
TASK_UNSAFE_CHARS = re.compile(r"[`$\\;|&<>\"']")

ROLE_FOCUS = {
    AgentRole.BACKEND: "Models, services, APIs, business logic, database operations, and security.",
    AgentRole.FRONTEND: "Controllers, views, client-side code, forms, user interactions, and integration.",
    AgentRole.QA: "Comprehensive testing, edge cases, quality assurance, and validation.",
    AgentRole.UX: "UI/UX design, templates, user experience, styling, and accessibility.",
    AgentRole.GENERAL: "Whatever the task needs, end to end.",
}


def sanitize_task(task: str) -> str:
    """Strip shell metacharacters from free-text task descriptions.

    The payload is written through a quoted heredoc, so this is a second
    line of defence rather than the only one.

    >>> sanitize_task("test`rm -rf /`; echo $PATH")
    'testrm -rf / echo PATH'
    """
    return TASK_UNSAFE_CHARS.sub("", str(task or "")).strip()


def sanitize_role(role: Union[str, AgentRole, None]) -> AgentRole:
    """Map arbitrary input onto the role enum, defaulting to general."""
    value = getattr(role, "value", role)
    try:
        return AgentRole(str(value or "").lower().strip())
    except ValueError:
        return AgentRole.GENERAL


def build_prompt(task: str, role: AgentRole, working_dir: Path, config: SwarmConfig) -> str:
    """Build the instruction payload handed to a worker.

    Args:
        task: Sanitized task text
        role: Worker role
        working_dir: Directory the worker operates in
        config: Project configuration

    Returns:
        Prompt text
    """
    test_command = sanitize_command(config.test_command) or "the project's test suite"
    task_words = " ".join(task.split()[:5])
    stack = ", ".join(config.technology_stack) or "not specified"
    standards = "\n".join(f"- {s}" for s in config.code_standards) or "- Follow existing conventions"

    return f"""AUTONOMOUS EXECUTION REQUIRED - {role.value.upper()} SPECIALIST

TASK: {task}

WORKING DIRECTORY: {working_dir}

CRITICAL INSTRUCTIONS:
1. You have full permission to read, write and edit files and to run commands
2. Work only inside: {working_dir}
3. Do not wait for permissions - proceed immediately
4. Complete the task fully and thoroughly
5. Test your implementation using: {test_command}
6. When complete:
   - Run: git add -A
   - Run: git commit -m "{role.value}: {task_words}"
7. Summarize what was implemented in your final message

PROJECT CONTEXT:
- Project: {config.project_name}
- Technology stack: {stack}
- Test command: {test_command}

CODE STANDARDS:
{standards}

FOCUS: {ROLE_FOCUS[role]}
"""


def heredoc_delimiter(payload: str) -> str:
    """A heredoc terminator guaranteed not to appear in the payload."""
    while True:
        delimiter = f"SWARM_PROMPT_EOF_{secrets.token_hex(4).upper()}"
        if delimiter not in payload:
            return delimiter


def build_script(
    payload: str,
    role: AgentRole,
    working_dir: Path,
    prompt_file: Path,
    agent_command: list[str],
    output_log: Path,
    error_log: Path,
    exit_code_dir: Path,
) -> str:
    """Render the worker script.

    The payload goes through a quoted heredoc so its content is never
    expanded by the shell. The exit status lands in <exit_code_dir>/<pid>.code.
    """
    delimiter = heredoc_delimiter(payload)
    q = shlex.quote
    agent = " ".join(q(part) for part in agent_command)
    body = payload if payload.endswith("\n") else payload + "\n"

    return (
        "#!/usr/bin/env bash\n"
        f"# Worker script for {role.value} agent, generated {datetime.now().isoformat()}\n"
        f"exec >> {q(str(output_log))} 2>> {q(str(error_log))}\n"
        "set -e\n"
        f"rm -f {q(str(exit_code_dir))}/$$.code\n"
        f"export SWARM_AGENT_ID={q(role.value)}-$$\n"
        f"cd {q(str(working_dir))}\n"
        f"PROMPT_FILE={q(str(prompt_file))}\n"
        f"cat > \"$PROMPT_FILE\" << '{delimiter}'\n"
        f"{body}"
        f"{delimiter}\n"
        "set +e\n"
        f"{agent} < \"$PROMPT_FILE\"\n"
        "status=$?\n"
        f"echo \"$status\" > {q(str(exit_code_dir))}/$$.code\n"
        "exit \"$status\"\n"
    )


class WorkerSpawner:
    """Launches, tracks and stops worker processes."""

    def __init__(
        self,
        config: SwarmConfig,
        workspace: SwarmWorkspace,
        sessions: SessionStore,
        resources: ResourceManager,
        provisioner: WorkspaceProvisioner,
        processes: Optional[ProcessTable] = None,
        logger: Optional[EventLogger] = None,
    ):
        self.config = config
        self.workspace = workspace
        self.sessions = sessions
        self.resources = resources
        self.provisioner = provisioner
        self.processes = processes or ProcessTable()
        self.logger = logger or EventLogger(component="spawner", quiet=True)
        self._admission_lock = threading.Lock()
        self._reserved = 0

    def agent_available(self) -> bool:
        """Check whether the configured agent binary can be found."""
        return find_agent_executable(self.config.agent_command) is not None

    def agent_command(self) -> list[str]:
        """Command line that runs the agent non-interactively."""
        exe = find_agent_executable(self.config.agent_command) or self.config.agent_command
        return [exe, *self.config.agent_args]

    def spawn(
        self,
        role: Union[str, AgentRole],
        task: str,
        use_worktree: Optional[bool] = None,
    ) -> Optional[SpawnResult]:
        """Spawn a worker.

        Args:
            role: Requested role (unknown values become general)
            task: Free-text task description
            use_worktree: Isolate the worker in a git worktree (default from config)

        Returns:
            SpawnResult, or None if admission, workspace creation or launch failed
        """
        safe_role = sanitize_role(role)
        safe_task = sanitize_task(task)
        if use_worktree is None:
            use_worktree = self.config.worktree_enabled

        if not safe_task:
            self.logger.error("Refusing to spawn agent with an empty task", role=safe_role.value)
            return None

        try:
            self._reserve_slot()
        except ResourceExceeded as e:
            self.logger.warn(f"Cannot spawn {safe_role.value} agent", reasons=e.reasons)
            for reason in e.reasons:
                self.logger.warn(f"  - {reason}")
            return None

        worktree_path: Optional[Path] = None
        handle: Optional[subprocess.Popen] = None
        reserved = True
        try:
            if use_worktree:
                worktree_path = self._provision(safe_role)
            working_dir = worktree_path or self.workspace.project_path
            self.workspace.ensure_structure()
            self.sessions.ensure_session(safe_task)

            handle = self._launch(safe_role, safe_task, working_dir)
            reserved = False
            registered = self._register(
                safe_role,
                handle.pid,
                str(worktree_path) if worktree_path else None,
                safe_task,
            )
            if not registered:
                raise SpawnFailure(f"Session rejected agent record for PID {handle.pid}")
        except WorkspaceCreationFailure as e:
            self.logger.error(f"{e}, not launching", role=safe_role.value)
            return None
        except Exception as e:
            self.logger.error(f"Failed to spawn {safe_role.value} agent: {e}", role=safe_role.value)
            self._cleanup_failed_spawn(handle, worktree_path)
            return None
        finally:
            if reserved:
                self._release_slot()

        self.logger.log_operation("spawn", "success", {
            "role": safe_role.value,
            "pid": handle.pid,
            "worktree_path": str(worktree_path) if worktree_path else None,
        })
        return SpawnResult(
            pid=handle.pid,
            role=safe_role,
            worktree_path=str(worktree_path) if worktree_path else None,
        )

    def _reserve_slot(self) -> None:
        # Launches not registered yet count toward the agent limit
        with self._admission_lock:
            self.resources.require_spawn(reserved=self._reserved)
            self._reserved += 1

    def _release_slot(self) -> None:
        with self._admission_lock:
            self._reserved -= 1

    def _register(
        self,
        role: AgentRole,
        pid: int,
        worktree_path: Optional[str],
        task: str,
    ) -> bool:
        with self._admission_lock:
            try:
                return self.sessions.add_agent(role, pid, worktree_path, task)
            finally:
                self._reserved -= 1

    def _provision(self, role: AgentRole) -> Path:
        worktree_path = self.provisioner.create_workspace(role)
        if worktree_path is None:
            raise WorkspaceCreationFailure(f"No workspace for {role.value} agent")
        return worktree_path

    def _launch(self, role: AgentRole, task: str, working_dir: Path) -> subprocess.Popen:
        """Write the worker script and start it detached."""
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        token = secrets.token_hex(3)
        prompt_file = self.workspace.prompts_dir / f"{role.value}_{stamp}_{token}.md"
        script_file = self.workspace.scripts_dir / f"{role.value}_{stamp}_{token}.sh"
        output_log, error_log = self.workspace.role_log_paths(role.value)

        payload = build_prompt(task, role, working_dir, self.config)
        script = build_script(
            payload,
            role,
            working_dir,
            prompt_file,
            self.agent_command(),
            output_log,
            error_log,
            self.workspace.exit_codes_dir,
        )
        script_file.write_text(script, encoding="utf-8")
        script_file.chmod(0o700)

        session = self.sessions.read_session()
        env = os.environ.copy()
        env.update({
            "SWARM_ROLE": role.value,
            "SWARM_WORKTREE": str(working_dir),
            "SWARM_SESSION": session.session_id if session else "",
        })

        try:
            handle = subprocess.Popen(
                ["bash", str(script_file)],
                cwd=str(working_dir),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnFailure(f"Could not start worker script {script_file.name}: {e}") from e
        # A marker left by an earlier process with this pid is not ours
        self.workspace.exit_code_file(handle.pid).unlink(missing_ok=True)
        self.processes.register(handle)
        return handle

    def _cleanup_failed_spawn(self, handle: Optional[subprocess.Popen], worktree_path: Optional[Path]) -> None:
        if handle is not None:
            try:
                send_signal(handle.pid, signal.SIGKILL)
                handle.wait(timeout=5)
            except (OSError, subprocess.TimeoutExpired):
                pass
            self.processes.forget(handle.pid)
            self.sessions.remove_agent(handle.pid)

        if worktree_path is not None:
            try:
                self.provisioner.destroy_workspace(worktree_path)
            except Exception as e:
                self.logger.warn(f"Failed to clean up worktree {worktree_path}: {e}")

    def spawn_multiple(self, requests: Iterable[SpawnRequest]) -> list[SpawnResult]:
        """Spawn several workers with a small random pause between them.

        Returns:
            Results for the workers that started
        """
        results = []
        for index, request in enumerate(requests):
            if index > 0 and self.config.spawn_jitter_seconds > 0:
                time.sleep(random.uniform(0, self.config.spawn_jitter_seconds))
            result = self.spawn(request.role, request.task, request.use_worktree)
            if result:
                results.append(result)
        return results

    def stop(self, pid: int) -> bool:
        """Terminate a worker and mark it stopped.

        A process that no longer exists counts as stopped.

        Returns:
            False only if the signal could not be delivered
        """
        try:
            delivered = send_signal(pid, signal.SIGTERM)
        except PermissionError as e:
            self.logger.error(f"Failed to stop agent {pid}: {e}", pid=pid)
            return False

        if not delivered:
            self.logger.debug(f"Agent {pid} already gone", pid=pid)

        self.sessions.update_agent_status(pid, AgentStatus.STOPPED, datetime.now())
        self.logger.log_operation("stop", "success", {"pid": pid})
        return True

    def stop_all(self) -> int:
        """Stop every running worker. Returns how many were stopped."""
        stopped = 0
        for agent in self.sessions.get_active_agents():
            if self.stop(agent.pid):
                stopped += 1
        return stopped
