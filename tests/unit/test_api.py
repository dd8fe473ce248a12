"""Tests for the HTTP API in api.py."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from changeflow.api import create_app
from changeflow.engine.service import WorkflowService
from changeflow.enums import FailureReason, SessionStatus, WorkflowKind
from changeflow.exceptions import SessionNotCancellableError, SessionNotFoundError, StoreUnavailableError
from changeflow.models.domain import LogEntry, SessionSummary, utcnow

SESSION_ID = "change_2410_9f3a61c2"


def make_summary(**overrides) -> SessionSummary:
    now = utcnow()
    fields = {
        "id": SESSION_ID,
        "kind": WorkflowKind.CHANGE_REQUEST,
        "status": SessionStatus.PROCESSING,
        "progress": 40,
        "current_step": "Transforming src/App.tsx",
        "started_at": now,
    }
    fields.update(overrides)
    return SessionSummary(**fields)


@pytest.fixture
def service() -> MagicMock:
    service = MagicMock(spec=WorkflowService)
    service.submit = AsyncMock(return_value=SESSION_ID)
    service.get_status = AsyncMock(return_value=make_summary())
    service.cancel = AsyncMock()
    service.shutdown = AsyncMock()
    service.store = MagicMock()
    service.store.get_all_logs = AsyncMock(return_value=[LogEntry(message="Session created")])
    return service


@pytest.fixture
def client(service: MagicMock) -> TestClient:
    return TestClient(create_app(service))


BATCH = {
    "project_id": "p-1",
    "repository": "acme/site",
    "changes": [{"file_path": "src/App.tsx", "description": "Make the header sticky"}],
}


class TestSubmit:
    def test_submit_returns_session_id(self, client: TestClient, service: MagicMock):
        response = client.post("/sessions", json=BATCH)

        assert response.status_code == 202
        assert response.json() == {"session_id": SESSION_ID}
        batch = service.submit.await_args.args[0]
        assert batch.changes[0].file_path == "src/App.tsx"

    def test_invalid_batch(self, client: TestClient):
        response = client.post("/sessions", json={"changes": []})

        assert response.status_code == 422

    def test_store_unavailable(self, client: TestClient, service: MagicMock):
        service.submit.side_effect = StoreUnavailableError("backend down")

        response = client.post("/sessions", json=BATCH)

        assert response.status_code == 503
        assert response.json()["detail"] == "backend down"

    def test_duplicate_session(self, client: TestClient, service: MagicMock):
        service.submit.side_effect = ValueError(f"Session already exists: {SESSION_ID}")

        response = client.post("/sessions", json=BATCH)

        assert response.status_code == 409


class TestStatus:
    def test_get_session(self, client: TestClient):
        response = client.get(f"/sessions/{SESSION_ID}")

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == SESSION_ID
        assert body["status"] == "processing"
        assert body["progress"] == 40

    def test_unknown_session(self, client: TestClient, service: MagicMock):
        service.get_status.return_value = None

        response = client.get(f"/sessions/{SESSION_ID}")

        assert response.status_code == 404

    def test_logs(self, client: TestClient):
        response = client.get(f"/sessions/{SESSION_ID}/logs")

        assert response.status_code == 200
        assert [entry["message"] for entry in response.json()] == ["Session created"]

    def test_logs_of_unknown_session(self, client: TestClient, service: MagicMock):
        service.get_status.return_value = None

        response = client.get(f"/sessions/{SESSION_ID}/logs")

        assert response.status_code == 404
        service.store.get_all_logs.assert_not_awaited()


class TestCancel:
    def test_cancel(self, client: TestClient, service: MagicMock):
        service.cancel.return_value = make_summary(
            status=SessionStatus.FAILED,
            progress=0,
            error="Processing cancelled by user",
            failure_reason=FailureReason.CANCELLED,
        )

        response = client.post(f"/sessions/{SESSION_ID}/cancel")

        assert response.status_code == 200
        assert response.json()["failure_reason"] == "cancelled"
        service.cancel.assert_awaited_once_with(SESSION_ID)

    def test_cancel_unknown(self, client: TestClient, service: MagicMock):
        service.cancel.side_effect = SessionNotFoundError(SESSION_ID)

        assert client.post(f"/sessions/{SESSION_ID}/cancel").status_code == 404

    def test_cancel_not_cancellable(self, client: TestClient, service: MagicMock):
        service.cancel.side_effect = SessionNotCancellableError(SESSION_ID, SessionStatus.DEPLOYING)

        response = client.post(f"/sessions/{SESSION_ID}/cancel")

        assert response.status_code == 400
        assert "deploying" in response.json()["detail"]


def test_health_check(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "changeflow"}
