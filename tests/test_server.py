"""Tests for the HTTP API (FastAPI TestClient against a real service)."""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from bugsquad.core.errors import ConfigError
from bugsquad.core.models import SessionMetadata
from bugsquad.core.store import LogStore
from bugsquad.core.supervisor import InvestigatorSupervisor
from bugsquad.server import create_app
from bugsquad.service import DebugService
from conftest import reporting_command

SOLVED = '<solution confidence="99">Return items[-1].</solution>'


@pytest.fixture
def service(store: LogStore, config, scripted_adapter) -> DebugService:
    return DebugService(
        config,
        store=store,
        adapter=scripted_adapter([SOLVED]),
        supervisor=InvestigatorSupervisor(store, config, command_factory=reporting_command(store)),
    )


@pytest.fixture
def client(service: DebugService):
    with TestClient(create_app(service)) as client:
        yield client


@pytest.fixture
def known_session(store: LogStore) -> str:
    store.write_metadata(SessionMetadata(session_id="session-api", project_id="p", repo_path="/r", error="e"))
    return "session-api"


# =============================================================================
# Sessions
# =============================================================================


class TestStartSession:
    @pytest.mark.git
    def test_start_and_poll(self, client, service, repo_with_git: Path):
        response = client.post("/sessions", json={"error": "IndexError", "repo_path": str(repo_with_git)})
        assert response.status_code == 201
        session_id = response.json()["session_id"]

        assert service.wait(session_id, timeout=30)
        pulse = client.get(f"/sessions/{session_id}").json()
        assert pulse["status"] == "completed"
        assert pulse["solution"] == "Return items[-1]."

    def test_bad_repo_is_400(self, client, tmp_path: Path):
        response = client.post("/sessions", json={"error": "IndexError", "repo_path": str(tmp_path / "missing")})
        assert response.status_code == 400
        assert "does not exist" in response.json()["detail"]

    def test_config_error_is_400(self, client, service, mocker, tmp_path: Path):
        mocker.patch.object(service, "start", side_effect=ConfigError("No API key for the coordinator model"))
        response = client.post("/sessions", json={"error": "IndexError", "repo_path": str(tmp_path)})
        assert response.status_code == 400
        assert "No API key" in response.json()["detail"]

    def test_empty_error_is_422(self, client, tmp_path: Path):
        response = client.post("/sessions", json={"error": "", "repo_path": str(tmp_path)})
        assert response.status_code == 422


class TestCheckAndCancel:
    def test_unknown_session(self, client):
        response = client.get("/sessions/session-0-none")
        assert response.status_code == 200
        assert response.json()["status"] == "unknown"

    def test_cancel_unknown_session(self, client):
        response = client.post("/sessions/session-0-none/cancel")
        assert response.status_code == 200
        assert response.json() == {"session_id": "session-0-none", "cancelled": False, "terminated_pids": []}


# =============================================================================
# Observations
# =============================================================================


class TestObservations:
    def test_added(self, client, store, known_session):
        response = client.post(
            f"/sessions/{known_session}/observations",
            json={"text": "Only on Mondays", "agent_id": "inv-1"},
        )
        assert response.status_code == 201
        assert response.json()["agent_id"] == "inv-1"
        (observation,) = store.read_observations(known_session, "inv-1")
        assert observation.author == "client"

    def test_unknown_session_is_404(self, client):
        response = client.post("/sessions/session-0-none/observations", json={"text": "hello"})
        assert response.status_code == 404

    def test_invalid_agent_is_400(self, client, known_session):
        response = client.post(f"/sessions/{known_session}/observations", json={"text": "hi", "agent_id": "..."})
        assert response.status_code == 400

    def test_blank_text_is_400(self, client, known_session):
        response = client.post(f"/sessions/{known_session}/observations", json={"text": "   "})
        assert response.status_code == 400
