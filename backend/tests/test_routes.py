"""Tests for api/routes.py and api/websocket.py -- run endpoints and streaming.

Uses FastAPI TestClient (backed by httpx) with a mocked RunManager.
No coordinator runs or LLM calls are made.
"""

from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import routes, websocket
from api.routes import router
from api.websocket import websocket_router
from events import AgentEvent, AgentEventPayload, EventType, get_event_bus, reset_event_bus
from models.schemas import RunStatus

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _make_run_info(
    run_id: str = "run_aabb11223344",
    status: RunStatus = RunStatus.RUNNING,
    context: str = "I have a dentist appointment at 3pm.",
    todo_list: dict[str, bool] | None = None,
    rounds: int = 0,
    created_at: float = 1700000000.0,
    completed_at: float | None = None,
    error_message: str | None = None,
) -> MagicMock:
    """Create a mock RunInfo object."""
    run = MagicMock()
    run.run_id = run_id
    run.status = status
    run.context = context
    run.todo_list = todo_list if todo_list is not None else {"Schedule dentist": False}
    run.rounds = rounds
    run.created_at = created_at
    run.completed_at = completed_at
    run.error_message = error_message
    return run


@pytest.fixture()
def mock_run_manager() -> MagicMock:
    """Create a mock RunManager."""
    mgr = MagicMock()
    mgr.create_run = AsyncMock(return_value="run_aabb11223344")
    mgr.get_run = MagicMock(return_value=_make_run_info())
    mgr.get_all_runs = MagicMock(return_value=[_make_run_info()])
    mgr.stop_run = AsyncMock(return_value=_make_run_info())
    mgr.active_run_count = 1
    mgr.run_store = None
    return mgr


@pytest.fixture()
def client(mock_run_manager: MagicMock) -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient with the mocked run manager."""
    reset_event_bus()
    app = FastAPI()
    app.include_router(router)
    app.include_router(websocket_router)
    routes.set_run_manager(mock_run_manager)  # type: ignore[arg-type]
    websocket.set_run_manager(mock_run_manager)  # type: ignore[arg-type]
    with TestClient(app) as c:
        yield c
    routes.set_run_manager(None)
    websocket.set_run_manager(None)
    reset_event_bus()


# =========================================================================
# Health Check
# =========================================================================


class TestHealthCheck:
    """GET /health."""

    def test_health_returns_200(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["version"] == "0.1.0"
        assert data["active_runs"] == 1


# =========================================================================
# Create Run
# =========================================================================


class TestCreateRun:
    """POST /api/runs."""

    def test_create_run_success(self, client: TestClient, mock_run_manager: MagicMock) -> None:
        resp = client.post(
            "/api/runs",
            json={
                "context": "I have a dentist appointment at 3pm.",
                "todo_list": ["Schedule dentist"],
            },
        )
        assert resp.status_code == 201
        assert resp.json() == {
            "run_id": "run_aabb11223344",
            "websocket_url": "/ws/run_aabb11223344",
            "status": "running",
        }
        mock_run_manager.create_run.assert_awaited_once_with(
            context="I have a dentist appointment at 3pm.",
            todo_list=["Schedule dentist"],
        )

    def test_create_run_empty_todo_list(self, client: TestClient) -> None:
        resp = client.post("/api/runs", json={"context": "x", "todo_list": []})
        assert resp.status_code == 422

    def test_create_run_failure(self, client: TestClient, mock_run_manager: MagicMock) -> None:
        mock_run_manager.create_run.side_effect = RuntimeError("disk full")
        resp = client.post("/api/runs", json={"todo_list": ["a"]})
        assert resp.status_code == 500
        assert resp.json()["detail"] == "Failed to create run: disk full"


# =========================================================================
# List / Get Runs
# =========================================================================


class TestListRuns:
    """GET /api/runs."""

    def test_lists_memory_runs(self, client: TestClient) -> None:
        resp = client.get("/api/runs")
        assert resp.status_code == 200
        data = resp.json()
        assert len(data) == 1
        assert data[0]["run_id"] == "run_aabb11223344"
        assert data[0]["todo_list"] == {"Schedule dentist": False}

    def test_fills_from_persisted_runs(
        self, client: TestClient, mock_run_manager: MagicMock
    ) -> None:
        mock_run_manager.run_store = MagicMock()
        mock_run_manager.run_store.list_runs = AsyncMock(
            return_value=[
                {"id": "run_aabb11223344", "status": "running", "context": "dup", "created_at": 1.0},
                {
                    "id": "run_old",
                    "status": "complete",
                    "context": "yesterday",
                    "todo_list": {"a": True},
                    "rounds": 3,
                    "created_at": 1600000000.0,
                    "completed_at": 1600000100.0,
                    "error_message": None,
                },
            ]
        )

        data = client.get("/api/runs").json()

        assert [run["run_id"] for run in data] == ["run_aabb11223344", "run_old"]
        assert data[1]["status"] == "complete"
        assert data[1]["rounds"] == 3

    def test_limit_validation(self, client: TestClient) -> None:
        assert client.get("/api/runs?limit=0").status_code == 422


class TestGetRun:
    """GET /api/runs/{run_id}."""

    def test_memory_run(self, client: TestClient) -> None:
        resp = client.get("/api/runs/run_aabb11223344")
        assert resp.status_code == 200
        assert resp.json()["status"] == "running"

    def test_persisted_run_with_unknown_status(
        self, client: TestClient, mock_run_manager: MagicMock
    ) -> None:
        mock_run_manager.get_run.return_value = None
        mock_run_manager.run_store = MagicMock()
        mock_run_manager.run_store.get_run = AsyncMock(
            return_value={"id": "run_old", "status": "exploded", "context": "c", "created_at": 5}
        )

        resp = client.get("/api/runs/run_old")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "error"
        assert data["todo_list"] == {}
        assert data["created_at"] == 5.0

    def test_not_found(self, client: TestClient, mock_run_manager: MagicMock) -> None:
        mock_run_manager.get_run.return_value = None
        resp = client.get("/api/runs/run_missing")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Run run_missing not found"


# =========================================================================
# Stop Run
# =========================================================================


class TestStopRun:
    """POST /api/runs/{run_id}/stop."""

    def test_stop(self, client: TestClient, mock_run_manager: MagicMock) -> None:
        resp = client.post("/api/runs/run_aabb11223344/stop")
        assert resp.status_code == 200
        mock_run_manager.stop_run.assert_awaited_once_with("run_aabb11223344")

    def test_stop_unknown_run(self, client: TestClient, mock_run_manager: MagicMock) -> None:
        mock_run_manager.stop_run.side_effect = KeyError("run_missing")
        resp = client.post("/api/runs/run_missing/stop")
        assert resp.status_code == 404


# =========================================================================
# WebSocket
# =========================================================================


class TestWebSocket:
    """/ws/{run_id}."""

    def test_replays_history_then_answers_ping(self, client: TestClient) -> None:
        bus = get_event_bus()
        bus.publish_sync(
            AgentEvent(
                type=EventType.ROUND_START,
                run_id="run_1",
                agent_role="Coordinator",
                payload=AgentEventPayload(round=1, todo={"a": False}),
            )
        )
        bus.publish_sync(
            AgentEvent(
                type=EventType.GATHER_COMPLETE,
                run_id="run_1",
                agent_role="Gather",
                payload=AgentEventPayload(round=1, new_info="Backlog: empty"),
            )
        )

        with client.websocket_connect("/ws/run_1") as ws:
            first = ws.receive_json()
            second = ws.receive_json()
            ws.send_json({"type": "ping", "timestamp": 42})
            pong = ws.receive_json()

        assert first["type"] == "roundStart"
        assert first["payload"] == {"round": 1, "todo": {"a": False}}
        assert second["payload"] == {"round": 1, "newInfo": "Backlog: empty"}
        assert pong == {"type": "pong", "timestamp": 42}

    def test_stop_command(self, client: TestClient, mock_run_manager: MagicMock) -> None:
        with client.websocket_connect("/ws/run_aabb11223344") as ws:
            ws.send_json({"type": "stop"})
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

        mock_run_manager.stop_run.assert_awaited_once_with("run_aabb11223344")

    def test_stop_unknown_run_reports_error(
        self, client: TestClient, mock_run_manager: MagicMock
    ) -> None:
        mock_run_manager.stop_run.side_effect = KeyError("run_missing")

        with client.websocket_connect("/ws/run_missing") as ws:
            ws.send_json({"type": "stop"})
            event = ws.receive_json()

        assert event["type"] == "error"
        assert event["payload"] == {"error": "Run run_missing not found"}
