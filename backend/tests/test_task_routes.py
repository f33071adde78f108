import json

import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.routes import sync as sync_routes
from fakes import WORKSPACE_ID, FakeConnector, FakeStore, clickup_task
from services.sync_orchestrator import SyncOrchestrator


client = TestClient(app)


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    fake = FakeStore()
    lists = {"l1": [clickup_task("t1"), clickup_task("t2")]}

    def factory(workspace, st):
        return FakeConnector(str(workspace.id), st, lists=lists)

    monkeypatch.setattr(sync_routes, "get_store", lambda: fake)
    monkeypatch.setattr(
        sync_routes,
        "get_orchestrator",
        lambda st: SyncOrchestrator(store=st, connector_factory=factory),
    )
    return fake


def test_sync_runs_to_completion(store: FakeStore) -> None:
    response = client.post("/api/tasks/sync", json={"workspace_id": WORKSPACE_ID, "list_id": "l1"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "completed"
    assert (body["created"], body["updated"]) == (2, 0)
    assert len(store.tasks) == 2


def test_sync_rejects_ambiguous_scope(store: FakeStore) -> None:
    response = client.post(
        "/api/tasks/sync",
        json={"workspace_id": WORKSPACE_ID, "list_id": "l1", "space_id": "s1"},
    )

    assert response.status_code == 422
    assert store.history == {}


def test_sync_rejects_invalid_workspace_id(store: FakeStore) -> None:
    response = client.post("/api/tasks/sync", json={"workspace_id": "acme", "sync_all": True})

    assert response.status_code == 400


def test_sync_unknown_workspace_is_404(store: FakeStore) -> None:
    response = client.post(
        "/api/tasks/sync",
        json={"workspace_id": "99999999-9999-9999-9999-999999999999", "sync_all": True},
    )

    assert response.status_code == 404


def test_stream_sends_progress_events(store: FakeStore) -> None:
    response = client.get(
        "/api/tasks/sync/stream", params={"workspace_id": WORKSPACE_ID, "list_id": "l1"}
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    frames = [f for f in response.text.split("\n\n") if f]
    events = [json.loads(f[len("data: "):]) for f in frames]
    assert events[0]["status"] == "started"
    assert events[-1]["status"] == "completed"
    assert events[-1]["created"] == 2


def test_stream_without_scope_is_422(store: FakeStore) -> None:
    response = client.get("/api/tasks/sync/stream", params={"workspace_id": WORKSPACE_ID})

    assert response.status_code == 422


def test_history_lists_newest_first(store: FakeStore) -> None:
    client.post("/api/tasks/sync", json={"workspace_id": WORKSPACE_ID, "list_id": "l1"})
    client.post("/api/tasks/sync", json={"workspace_id": WORKSPACE_ID, "list_id": "l1"})

    response = client.get("/api/tasks/sync/history", params={"workspace_id": WORKSPACE_ID, "limit": 1})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert body["limit"] == 1
    assert len(body["history"]) == 1
    assert body["history"][0]["tasks_updated"] == 2


def test_history_limit_is_bounded(store: FakeStore) -> None:
    response = client.get(
        "/api/tasks/sync/history", params={"workspace_id": WORKSPACE_ID, "limit": 500}
    )

    assert response.status_code == 422


def test_upload_csv(store: FakeStore) -> None:
    response = client.post(
        "/api/tasks/upload",
        data={"workspace_id": WORKSPACE_ID},
        files={"file": ("export.csv", b"Task ID,Task Name\nt1,Login\n", "text/csv")},
    )

    assert response.status_code == 200
    assert response.json()["created"] == 1
    assert store.tasks[(WORKSPACE_ID, "t1")]["task_name"] == "Login"


def test_upload_rejects_other_extensions(store: FakeStore) -> None:
    response = client.post(
        "/api/tasks/upload",
        data={"workspace_id": WORKSPACE_ID},
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )

    assert response.status_code == 400


def test_upload_rejects_corrupt_workbook(store: FakeStore) -> None:
    response = client.post(
        "/api/tasks/upload",
        data={"workspace_id": WORKSPACE_ID},
        files={"file": ("export.xlsx", b"not a zip", "application/octet-stream")},
    )

    assert response.status_code == 400


def test_upload_rejects_empty_sheet(store: FakeStore) -> None:
    response = client.post(
        "/api/tasks/upload",
        data={"workspace_id": WORKSPACE_ID},
        files={"file": ("export.csv", b"Task ID,Task Name\n", "text/csv")},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Spreadsheet is empty"


def test_stats(store: FakeStore) -> None:
    client.post("/api/tasks/sync", json={"workspace_id": WORKSPACE_ID, "list_id": "l1"})

    response = client.get("/api/tasks/stats", params={"workspace_id": WORKSPACE_ID})

    assert response.status_code == 200
    assert response.json()["total_tasks"] == 2
