"""Tests for worker spawning."""

import shutil
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from agent_swarm.errors import SpawnFailure, WorkspaceCreationFailure
from agent_swarm.models import AgentRole, AgentStatus, SpawnRequest, SwarmConfig
from agent_swarm.process_monitor import ProcessMonitor
from agent_swarm.processes import ProcessTable
from agent_swarm.resources import ResourceManager
from agent_swarm.spawner import (
    WorkerSpawner, build_prompt, build_script, heredoc_delimiter, sanitize_role, sanitize_task,
)
from agent_swarm.worktrees import WorkspaceProvisioner

from conftest import FakeGit, FakeSampler

_REAL_POPEN = subprocess.Popen


@pytest.fixture
def spawner(config, workspace, sessions, fake_git, sampler) -> WorkerSpawner:
    resources = ResourceManager(config, workspace, sessions, sampler)
    provisioner = WorkspaceProvisioner(workspace, fake_git)
    return WorkerSpawner(config, workspace, sessions, resources, provisioner, ProcessTable())


def fake_popen(pid: int = 4242) -> Mock:
    handle = Mock(spec=_REAL_POPEN)
    handle.pid = pid
    handle.poll.return_value = None
    return handle


class TestSanitization:
    """Tests for task and role sanitization."""

    def test_sanitize_task_strips_shell_metacharacters(self):
        """Backticks, dollars and semicolons are removed."""
        assert sanitize_task("test`rm -rf /`; echo $PATH") == "testrm -rf / echo PATH"

    def test_sanitize_task_strips_quotes_and_redirects(self):
        """Quotes, pipes and redirections are removed too."""
        assert sanitize_task("a \"b\" 'c' | d > e < f & g") == "a b c  d  e  f  g"

    def test_sanitize_task_handles_empty(self):
        """None and whitespace sanitize to an empty string."""
        assert sanitize_task(None) == ""
        assert sanitize_task("   ") == ""

    def test_sanitize_role_unknown_becomes_general(self):
        """Roles outside the set map to general."""
        assert sanitize_role("hacker") == AgentRole.GENERAL
        assert sanitize_role(None) == AgentRole.GENERAL

    def test_sanitize_role_known_values(self):
        """Known roles are accepted case-insensitively."""
        assert sanitize_role("Backend") == AgentRole.BACKEND
        assert sanitize_role(AgentRole.QA) == AgentRole.QA


class TestPromptAndScript:
    """Tests for the instruction payload and the worker script."""

    def test_prompt_sections(self, tmp_path: Path):
        """The prompt carries the task, directory, commit step and role focus."""
        config = SwarmConfig(project_name="shop", technology_stack=["Python"], test_command="pytest -q")
        prompt = build_prompt("Add a cart endpoint", AgentRole.BACKEND, tmp_path, config)

        assert prompt.startswith("AUTONOMOUS EXECUTION REQUIRED - BACKEND SPECIALIST")
        assert "TASK: Add a cart endpoint" in prompt
        assert f"WORKING DIRECTORY: {tmp_path}" in prompt
        assert "pytest -q" in prompt
        assert 'git commit -m "backend: Add a cart endpoint"' in prompt
        assert "Project: shop" in prompt
        assert "FOCUS: Models, services, APIs" in prompt

    def test_heredoc_delimiter_not_in_payload(self):
        """The terminator never occurs in the payload."""
        payload = "SWARM_PROMPT_EOF_ is mentioned here"
        delimiter = heredoc_delimiter(payload)
        assert delimiter.startswith("SWARM_PROMPT_EOF_")
        assert delimiter not in payload

    def test_script_uses_quoted_heredoc(self, tmp_path: Path):
        """The payload is written verbatim through a quoted heredoc."""
        payload = "Use $HOME and `date` literally"
        script = build_script(
            payload, AgentRole.QA, tmp_path / "work dir", tmp_path / "prompt.md",
            ["/usr/bin/claude", "--print"], tmp_path / "out.log", tmp_path / "err.log", tmp_path / "exit",
        )
        lines = script.splitlines()
        heredoc_line = next(line for line in lines if line.startswith('cat > "$PROMPT_FILE"'))
        delimiter = heredoc_line.split("<< ")[1].strip("'")

        assert heredoc_line.endswith(f"'{delimiter}'")
        assert payload in lines
        assert lines[lines.index(payload) + 1] == delimiter
        assert "export SWARM_AGENT_ID=qa-$$" in lines
        assert f"cd '{tmp_path / 'work dir'}'" in lines
        assert '/usr/bin/claude --print < "$PROMPT_FILE"' in lines
        assert any(line.endswith("/$$.code") for line in lines)
        assert lines[-1] == 'exit "$status"'
        clear_marker = next(i for i, line in enumerate(lines) if line.startswith("rm -f ") and line.endswith("/$$.code"))
        assert clear_marker < lines.index('/usr/bin/claude --print < "$PROMPT_FILE"')


class TestWorkerSpawner:
    """Tests for WorkerSpawner."""

    def test_spawn_registers_agent(self, spawner: WorkerSpawner, sessions, workspace):
        """A successful spawn records a running agent with its worktree."""
        with patch("agent_swarm.spawner.subprocess.Popen", return_value=fake_popen(4242)) as popen:
            result = spawner.spawn("backend", "Build the API")

        assert result.pid == 4242
        assert result.role == AgentRole.BACKEND
        assert Path(result.worktree_path).is_dir()

        record = sessions.read_session().find_agent(4242)
        assert record.status == AgentStatus.RUNNING
        assert record.task == "Build the API"
        assert record.worktree_path == result.worktree_path

        args, kwargs = popen.call_args
        assert args[0][0] == "bash"
        assert kwargs["start_new_session"] is True
        assert kwargs["cwd"] == result.worktree_path
        assert kwargs["env"]["SWARM_ROLE"] == "backend"
        assert Path(args[0][1]).exists()
        assert spawner.processes.get(4242) is not None

    def test_spawn_without_worktree_runs_in_project(self, spawner: WorkerSpawner, workspace):
        """With worktrees disabled the agent works in the project root."""
        with patch("agent_swarm.spawner.subprocess.Popen", return_value=fake_popen(77)) as popen:
            result = spawner.spawn("qa", "Run the tests", use_worktree=False)

        assert result.worktree_path is None
        assert popen.call_args.kwargs["cwd"] == str(workspace.project_path)

    def test_spawn_sanitizes_task_and_role(self, spawner: WorkerSpawner, sessions):
        """Stored task and role are sanitized."""
        with patch("agent_swarm.spawner.subprocess.Popen", return_value=fake_popen(5)):
            result = spawner.spawn("hacker", "test`rm -rf /`; echo $PATH", use_worktree=False)

        assert result.role == AgentRole.GENERAL
        assert sessions.read_session().find_agent(5).task == "testrm -rf / echo PATH"

    def test_spawn_refused_at_capacity(self, workspace, sessions, fake_git):
        """No process is launched when admission fails."""
        config = SwarmConfig(max_concurrent_agents=1)
        sessions.create_session()
        sessions.add_agent(AgentRole.QA, 1)
        spawner = WorkerSpawner(
            config, workspace, sessions,
            ResourceManager(config, workspace, sessions, FakeSampler()),
            WorkspaceProvisioner(workspace, fake_git),
        )

        with patch("agent_swarm.spawner.subprocess.Popen") as popen:
            assert spawner.spawn("backend", "More work") is None
        popen.assert_not_called()
        assert fake_git.worktrees == {}

    def test_parallel_spawns_respect_agent_limit(self, workspace, sessions, fake_git):
        """Two concurrent spawns against a limit of one start a single worker."""
        config = SwarmConfig(max_concurrent_agents=1)
        spawner = WorkerSpawner(
            config, workspace, sessions,
            ResourceManager(config, workspace, sessions, FakeSampler()),
            WorkspaceProvisioner(workspace, fake_git),
        )
        pids = iter([5000, 5001])

        def slow_popen(*args, **kwargs):
            time.sleep(0.2)
            return fake_popen(next(pids))

        with patch("agent_swarm.spawner.subprocess.Popen", side_effect=slow_popen):
            with ThreadPoolExecutor(max_workers=2) as pool:
                results = list(pool.map(lambda role: spawner.spawn(role, "Build the UI"), ["frontend", "ux"]))

        assert len([r for r in results if r is not None]) == 1
        assert len(sessions.get_active_agents()) == 1
        assert spawner._reserved == 0

    def test_launch_clears_stale_exit_marker(self, spawner: WorkerSpawner, workspace, sessions):
        """A marker left by an earlier process with the same pid does not decide the outcome."""
        workspace.ensure_structure()
        workspace.exit_code_file(4242).write_text("0")
        handle = fake_popen(4242)

        with patch("agent_swarm.spawner.subprocess.Popen", return_value=handle):
            assert spawner.spawn("qa", "Run tests", use_worktree=False) is not None
        assert not workspace.exit_code_file(4242).exists()

        handle.poll.return_value = -9
        monitor = ProcessMonitor(spawner.config, workspace, sessions, processes=spawner.processes)
        with patch("agent_swarm.process_monitor.is_process_alive", return_value=False):
            monitor.reconcile()
        assert sessions.read_session().find_agent(4242).status == AgentStatus.STOPPED

    def test_spawn_empty_task_refused(self, spawner: WorkerSpawner):
        """A task that sanitizes to nothing is refused."""
        with patch("agent_swarm.spawner.subprocess.Popen") as popen:
            assert spawner.spawn("qa", "$;`") is None
        popen.assert_not_called()

    def test_worktree_failure_aborts_spawn(self, config, workspace, sessions):
        """Without a workspace nothing is launched."""
        spawner = WorkerSpawner(
            config, workspace, sessions,
            ResourceManager(config, workspace, sessions, FakeSampler()),
            WorkspaceProvisioner(workspace, FakeGit(fail_add=True)),
        )
        with patch("agent_swarm.spawner.subprocess.Popen") as popen:
            assert spawner.spawn("ux", "Design it") is None
        popen.assert_not_called()

    def test_launch_failure_cleans_up_worktree(self, spawner: WorkerSpawner, fake_git, sessions):
        """A launch error removes the worktree and leaves no record."""
        with patch("agent_swarm.spawner.subprocess.Popen", side_effect=OSError("no bash")):
            assert spawner.spawn("backend", "Build") is None

        assert fake_git.worktrees == {}
        assert sessions.get_all_agents() == []

    def test_provision_raises_without_worktree(self, config, workspace, sessions):
        """A failed worktree surfaces as WorkspaceCreationFailure."""
        spawner = WorkerSpawner(
            config, workspace, sessions,
            ResourceManager(config, workspace, sessions, FakeSampler()),
            WorkspaceProvisioner(workspace, FakeGit(fail_add=True)),
        )
        with pytest.raises(WorkspaceCreationFailure, match="No workspace for qa agent"):
            spawner._provision(AgentRole.QA)

    def test_launch_wraps_os_errors(self, spawner: WorkerSpawner, workspace):
        """An OSError from Popen becomes SpawnFailure."""
        workspace.ensure_structure()
        with patch("agent_swarm.spawner.subprocess.Popen", side_effect=OSError("no bash")):
            with pytest.raises(SpawnFailure, match="no bash"):
                spawner._launch(AgentRole.BACKEND, "Build", workspace.project_path)

    def test_spawn_multiple(self, spawner: WorkerSpawner):
        """Batch spawns return one result per started worker."""
        handles = [fake_popen(10), fake_popen(11)]
        with patch("agent_swarm.spawner.subprocess.Popen", side_effect=handles):
            results = spawner.spawn_multiple([
                SpawnRequest(role=AgentRole.BACKEND, task="api", use_worktree=False),
                SpawnRequest(role=AgentRole.FRONTEND, task="ui", use_worktree=False),
            ])
        assert [r.pid for r in results] == [10, 11]

    def test_stop_marks_stopped(self, spawner: WorkerSpawner, sessions):
        """Stopping a worker that already exited still succeeds."""
        sessions.create_session()
        sessions.add_agent(AgentRole.QA, 99)

        with patch("agent_swarm.spawner.send_signal", return_value=False):
            assert spawner.stop(99) is True
        assert sessions.read_session().find_agent(99).status == AgentStatus.STOPPED

    def test_stop_permission_denied(self, spawner: WorkerSpawner, sessions):
        """A signal we may not send leaves the record running."""
        sessions.create_session()
        sessions.add_agent(AgentRole.QA, 99)

        with patch("agent_swarm.spawner.send_signal", side_effect=PermissionError("nope")):
            assert spawner.stop(99) is False
        assert sessions.read_session().find_agent(99).status == AgentStatus.RUNNING

    def test_stop_all(self, spawner: WorkerSpawner, sessions):
        """stop_all stops every running worker."""
        sessions.create_session()
        for pid in (1, 2, 3):
            sessions.add_agent(AgentRole.GENERAL, pid)

        with patch("agent_swarm.spawner.send_signal", return_value=True):
            assert spawner.stop_all() == 3
        assert sessions.get_active_agents() == []


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")
class TestWorkerScriptExecution:
    """Runs a generated script with a stand-in agent binary."""

    def test_script_records_exit_code_and_payload(self, tmp_path: Path):
        """The agent receives the payload verbatim and its status is recorded."""
        agent = tmp_path / "agent.sh"
        agent.write_text("#!/usr/bin/env bash\ncat > \"$(dirname \"$0\")/received.txt\"\nexit 3\n")
        agent.chmod(0o755)
        exit_dir = tmp_path / "exit"
        exit_dir.mkdir()
        payload = "Literal $HOME `date` ; done"

        script = tmp_path / "worker.sh"
        script.write_text(build_script(
            payload, AgentRole.GENERAL, tmp_path, tmp_path / "prompt.md",
            [str(agent)], tmp_path / "out.log", tmp_path / "err.log", exit_dir,
        ))

        proc = subprocess.Popen(["bash", str(script)])
        assert proc.wait(timeout=30) == 3

        assert (tmp_path / "received.txt").read_text() == payload + "\n"
        assert (exit_dir / f"{proc.pid}.code").read_text().strip() == "3"
