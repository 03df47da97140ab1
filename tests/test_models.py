"""Tests for data models."""

import pytest
from datetime import datetime, timedelta

from pydantic import ValidationError

from agent_swarm.models import (
    AgentRecord, AgentRole, AgentStatus, CoordinationStatus, CoordinationState,
    SessionStatus, SwarmConfig, SwarmSession,
)


class TestAgentStatus:
    """Tests for AgentStatus."""

    def test_only_running_is_non_terminal(self):
        """RUNNING is the only status a record can leave."""
        assert not AgentStatus.RUNNING.is_terminal
        assert AgentStatus.COMPLETED.is_terminal
        assert AgentStatus.FAILED.is_terminal
        assert AgentStatus.STOPPED.is_terminal


class TestAgentRecord:
    """Tests for AgentRecord."""

    def test_defaults(self):
        """New records are running with no completion time."""
        record = AgentRecord(role=AgentRole.BACKEND, pid=100)
        assert record.status == AgentStatus.RUNNING
        assert record.completion_time is None
        assert record.worktree_path is None

    def test_elapsed_uses_completion_time(self):
        """Elapsed time stops counting once the worker finished."""
        start = datetime(2025, 1, 1, 12, 0, 0)
        record = AgentRecord(
            role=AgentRole.QA, pid=1, start_time=start,
            completion_time=start + timedelta(seconds=90),
        )
        assert record.elapsed_seconds(now=start + timedelta(hours=5)) == 90

    def test_role_accepts_string(self):
        """Roles deserialize from their string values."""
        record = AgentRecord.model_validate({"role": "ux", "pid": 7})
        assert record.role == AgentRole.UX


class TestSwarmSession:
    """Tests for SwarmSession."""

    def test_find_agent_returns_most_recent_record(self):
        """A reused pid resolves to the latest record."""
        session = SwarmSession(session_id="s1", agents=[
            AgentRecord(role=AgentRole.BACKEND, pid=5, status=AgentStatus.COMPLETED),
            AgentRecord(role=AgentRole.QA, pid=5),
        ])
        assert session.find_agent(5).role == AgentRole.QA
        assert session.find_agent(6) is None

    def test_running_agents(self):
        """Only running records are returned."""
        session = SwarmSession(session_id="s1", agents=[
            AgentRecord(role=AgentRole.BACKEND, pid=1),
            AgentRecord(role=AgentRole.QA, pid=2, status=AgentStatus.FAILED),
        ])
        assert [a.pid for a in session.running_agents()] == [1]

    def test_json_round_trip(self):
        """Session documents survive a dump and reload."""
        session = SwarmSession(session_id="s1", task_description="Build it", agents=[
            AgentRecord(role=AgentRole.FRONTEND, pid=3, worktree_path="/tmp/wt", task="ui"),
        ])
        loaded = SwarmSession.model_validate(session.model_dump(mode="json"))
        assert loaded == session
        assert loaded.status == SessionStatus.ACTIVE


class TestSwarmConfig:
    """Tests for SwarmConfig."""

    def test_defaults(self):
        """Defaults cover limits, monitor and retry settings."""
        config = SwarmConfig()
        assert config.max_concurrent_agents == 4
        assert config.limits.max_memory_mb == 2048
        assert config.limits.max_disk_mb == 1024
        assert config.limits.load_factor == 1.5
        assert config.monitor.stuck_threshold_seconds == 600
        assert config.retry.max_retries == 3
        assert config.agent_command == "claude"

    def test_max_agents_must_be_positive(self):
        """Zero concurrent agents is rejected."""
        with pytest.raises(ValidationError):
            SwarmConfig(max_concurrent_agents=0)

    def test_nested_overrides(self):
        """Nested sections can be partially overridden."""
        config = SwarmConfig.model_validate({"limits": {"max_memory_mb": 512}})
        assert config.limits.max_memory_mb == 512
        assert config.limits.max_disk_mb == 1024


class TestCoordinationStatus:
    """Tests for CoordinationStatus."""

    def test_default_status(self):
        """A fresh status document describes a run that hasn't started."""
        status = CoordinationStatus()
        assert status.status == CoordinationState.INITIALIZING
        assert status.progress_percentage == 0
        assert status.active_agents == []
        assert status.control_pid is None
