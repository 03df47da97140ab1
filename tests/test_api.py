"""Tests for the dashboard API."""

import inspect
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from agent_swarm.api import create_app
from agent_swarm.message_bus import MessageBus
from agent_swarm.models import AgentRole, AgentStatus
from agent_swarm.session_store import SessionStore
from agent_swarm.workspace import SwarmWorkspace


@pytest.fixture
def project(tmp_path: Path) -> Path:
    SwarmWorkspace(tmp_path).ensure_structure()
    return tmp_path


@pytest.fixture
def client(project: Path) -> TestClient:
    return TestClient(create_app(project))


@pytest.fixture
def sessions(project: Path) -> SessionStore:
    return SessionStore(SwarmWorkspace(project))


class TestRootAndStatus:
    """Tests for root, health and status endpoints."""

    def test_health(self, client: TestClient):
        """Health check answers healthy."""
        assert client.get("/health").json() == {"status": "healthy"}
        assert client.get("/").json()["name"] == "Swarm Dashboard API"

    def test_api_handlers_are_sync(self):
        """Handlers doing file I/O run in the threadpool rather than on the event loop."""
        endpoints = [
            route for route in create_app().routes
            if isinstance(route, APIRoute) and route.path.startswith("/api")
        ]
        assert endpoints
        assert [route.path for route in endpoints if inspect.iscoroutinefunction(route.endpoint)] == []

    def test_status_without_project(self):
        """An unconfigured app still reports a default status."""
        response = TestClient(create_app()).get("/api/status")
        assert response.status_code == 200
        body = response.json()
        assert body["project_path"] is None
        assert body["session"]["exists"] is False

    def test_status_with_session(self, client: TestClient, sessions: SessionStore, project: Path):
        """The overview counts agents and pending questions."""
        sessions.create_session("Build a shop")
        sessions.add_agent(AgentRole.BACKEND, 10)
        MessageBus(SwarmWorkspace(project)).question("backend-10", "Which DB?")

        body = client.get("/api/status").json()

        assert body["session"]["active"] == 1
        assert body["session"]["task_description"] == "Build a shop"
        assert body["pending_messages"] == 1
        assert body["coordination_status"] == "initializing"

    def test_agents_filter(self, client: TestClient, sessions: SessionStore):
        """running=true returns only running agents."""
        sessions.create_session()
        sessions.add_agent(AgentRole.QA, 1)
        sessions.add_agent(AgentRole.UX, 2)
        sessions.update_agent_status(2, AgentStatus.COMPLETED)

        assert [a["pid"] for a in client.get("/api/agents").json()] == [1, 2]
        assert [a["pid"] for a in client.get("/api/agents", params={"running": True}).json()] == [1]

    def test_agents_without_project(self):
        """Endpoints needing a project answer 404 when none is configured."""
        response = TestClient(create_app()).get("/api/agents")
        assert response.status_code == 404
        assert response.json()["detail"] == "Project path not configured"

    def test_resources(self, client: TestClient):
        """Resources include the snapshot and the admission decision."""
        body = client.get("/api/resources").json()
        assert body["snapshot"]["max_agents"] == 4
        assert "allowed" in body["admission"]


class TestMessages:
    """Tests for message endpoints."""

    def test_pending_and_respond(self, client: TestClient, project: Path):
        """Questions can be answered once through the API."""
        bus = MessageBus(SwarmWorkspace(project))
        message_id = bus.question("frontend-4", "Tabs?", ["yes", "no"])

        pending = client.get("/api/messages/pending").json()
        assert [m["id"] for m in pending] == [message_id]

        first = client.post(f"/api/messages/{message_id}/respond", json={"response": "no"})
        assert first.status_code == 200
        assert first.json()["response"] == "no"

        second = client.post(f"/api/messages/{message_id}/respond", json={"response": "yes"})
        assert second.status_code == 409

        detail = client.get(f"/api/messages/{message_id}").json()
        assert detail["response"]["response"] == "no"
        assert client.get("/api/messages/pending").json() == []

    def test_unknown_message(self, client: TestClient):
        """Unknown ids answer 404."""
        assert client.get("/api/messages/nope").status_code == 404
        assert client.post("/api/messages/nope/respond", json={"response": "x"}).status_code == 404

    def test_recent_messages_limit(self, client: TestClient, project: Path):
        """The limit parameter caps the list."""
        bus = MessageBus(SwarmWorkspace(project))
        for i in range(3):
            bus.status("qa-1", f"step {i}")
        assert len(client.get("/api/messages", params={"limit": 2}).json()) == 2
        assert client.get("/api/messages", params={"limit": 0}).status_code == 422


class TestCoordinationAndControl:
    """Tests for coordination and control endpoints."""

    def test_coordination_defaults(self, client: TestClient):
        """Before any run the default status is served."""
        body = client.get("/api/coordination").json()
        assert body["status"] == "initializing"
        assert client.get("/api/coordination/summary").json()["total"] == 0

    def test_coordination_stop(self, client: TestClient):
        """Stopping publishes the stopped state."""
        body = client.post("/api/coordination/stop").json()
        assert body["status"] == "stopped"
        assert body["message"] == "Coordination stopped by operator"

    def test_stop_request_lifecycle(self, client: TestClient, project: Path):
        """A stop request can be created, inspected and cancelled."""
        assert client.get("/api/control/stop-status").json()["stop_requested"] is False

        created = client.post("/api/control/stop", json={"reason": "Lunch"}).json()
        assert created["success"] is True
        assert (project / ".swarm" / "stop-requested").exists()

        status = client.get("/api/control/stop-status").json()
        assert status["stop_requested"] is True
        assert status["reason"] == "Lunch"

        client.delete("/api/control/stop")
        assert client.get("/api/control/stop-status").json()["stop_requested"] is False

    def test_stop_agent(self, client: TestClient, sessions: SessionStore):
        """Known agents are stopped; unknown pids answer 404."""
        sessions.create_session()
        sessions.add_agent(AgentRole.QA, 55)

        with patch("agent_swarm.spawner.send_signal", return_value=True):
            assert client.post("/api/control/agents/55/stop").status_code == 200
        assert sessions.read_session().find_agent(55).status == AgentStatus.STOPPED
        assert client.post("/api/control/agents/56/stop").status_code == 404

    def test_stop_agent_permission_denied(self, client: TestClient, sessions: SessionStore):
        """A signal we may not send answers 500."""
        sessions.create_session()
        sessions.add_agent(AgentRole.QA, 57)

        with patch("agent_swarm.spawner.send_signal", side_effect=PermissionError):
            assert client.post("/api/control/agents/57/stop").status_code == 500
