"""Tests for graceful shutdown handling."""

import signal
from unittest.mock import patch

import pytest

from agent_swarm.models import AgentRole, AgentStatus
from agent_swarm.orchestration.shutdown import EXIT_INTERRUPTED, ShutdownHandler
from agent_swarm.processes import ProcessTable


@pytest.fixture
def handler(workspace, sessions) -> ShutdownHandler:
    return ShutdownHandler(workspace, sessions, grace_seconds=0.1)


class TestSignalHandling:
    """Tests for signal handler installation."""

    def test_handlers_installed_and_restored(self, handler: ShutdownHandler):
        """SIGINT is redirected to the handler and restored afterwards."""
        original = signal.getsignal(signal.SIGINT)
        handler.setup_signal_handlers()
        try:
            assert signal.getsignal(signal.SIGINT) == handler._handle_shutdown_signal
        finally:
            handler.restore_signal_handlers()
        assert signal.getsignal(signal.SIGINT) == original

    def test_signal_sets_flag(self, handler: ShutdownHandler):
        """Receiving a signal marks shutdown as requested."""
        assert handler.is_shutdown_requested() is False
        handler._handle_shutdown_signal(signal.SIGTERM, None)
        assert handler.is_shutdown_requested() is True


class TestStopRequests:
    """Tests for the file-based stop request."""

    def test_request_stop_writes_file(self, handler: ShutdownHandler, workspace):
        """request_stop leaves a timestamped reason for another process."""
        handler.request_stop("Dashboard stop")
        lines = workspace.stop_request_file.read_text().splitlines()
        assert lines[1] == "Dashboard stop"

    def test_stop_file_is_detected(self, workspace, sessions):
        """A stop file written by another handler is picked up."""
        ShutdownHandler(workspace, sessions).request_stop()
        assert ShutdownHandler(workspace, sessions).is_shutdown_requested() is True

    def test_clear_stop_request(self, handler: ShutdownHandler, workspace):
        """Clearing removes the file and tolerates its absence."""
        handler.request_stop()
        handler.clear_stop_request()
        handler.clear_stop_request()
        assert not workspace.stop_request_file.exists()


class TestGracefulShutdown:
    """Tests for graceful_shutdown."""

    def test_stops_running_agents(self, workspace, sessions):
        """Running workers are terminated and recorded as stopped."""
        sessions.create_session()
        sessions.add_agent(AgentRole.BACKEND, 11)
        sessions.add_agent(AgentRole.QA, 12)
        sessions.update_agent_status(12, AgentStatus.COMPLETED)
        table = ProcessTable()
        handler = ShutdownHandler(workspace, sessions, table)
        handler.request_stop()

        with patch("agent_swarm.orchestration.shutdown.terminate_process", return_value=True) as terminate:
            assert handler.graceful_shutdown() == EXIT_INTERRUPTED

        assert [c.args[0] for c in terminate.call_args_list] == [11]
        record = sessions.read_session().find_agent(11)
        assert record.status == AgentStatus.STOPPED
        assert sessions.read_session().find_agent(12).status == AgentStatus.COMPLETED
        assert not workspace.stop_request_file.exists()
        assert handler.is_shutdown_requested() is False

    def test_permission_error_leaves_record(self, handler: ShutdownHandler, sessions):
        """Workers we may not signal keep their running record."""
        sessions.create_session()
        sessions.add_agent(AgentRole.UX, 13)

        with patch("agent_swarm.orchestration.shutdown.terminate_process", side_effect=PermissionError):
            handler.graceful_shutdown()

        assert sessions.read_session().find_agent(13).status == AgentStatus.RUNNING
