import asyncio
import json
import logging

import httpx
import pytest
from pydantic import ValidationError

from connectors.base import (
    CredentialError,
    FatalSyncError,
    SyncCancelledError,
    TransientFetchError,
    WorkspaceNotFoundError,
)
from connectors.clickup import ClickUpConnector
from fakes import WORKSPACE_ID, FakeConnector, FakeStore, clickup_task, make_workspace
from services.sync_orchestrator import (
    ProgressEvent,
    SyncOrchestrator,
    SyncRequest,
    final_status,
    stream_progress,
)


def _orchestrator(store: FakeStore, events: list | None = None, **connector_kwargs) -> SyncOrchestrator:
    def factory(workspace, store):
        return FakeConnector(str(workspace.id), store, **connector_kwargs)

    async def sink(event_type, workspace_id, data):
        if events is not None:
            events.append((event_type, workspace_id, data))

    return SyncOrchestrator(store=store, connector_factory=factory, event_sink=sink, batch_size=2)


def _only_history(store: FakeStore) -> dict:
    rows = store.history_rows()
    assert len(rows) == 1
    return rows[0]


def test_sync_request_requires_exactly_one_scope() -> None:
    assert SyncRequest(list_id="l1").mode == "list"
    assert SyncRequest(space_id="s1").mode == "space"
    assert SyncRequest(sync_all=True).mode == "all"
    with pytest.raises(ValidationError):
        SyncRequest()
    with pytest.raises(ValidationError):
        SyncRequest(list_id="l1", sync_all=True)


def test_final_status() -> None:
    assert final_status(10, 0) == "completed"
    assert final_status(10, 3) == "completed_with_errors"
    assert final_status(3, 3) == "failed"
    assert final_status(0, 0) == "completed"


def test_second_run_updates_instead_of_duplicating() -> None:
    store = FakeStore()
    tasks = [clickup_task("t1"), clickup_task("t2"), clickup_task("t3")]
    orchestrator = _orchestrator(store, lists={"l1": tasks})

    async def run():
        first = await orchestrator.run(WORKSPACE_ID, SyncRequest(list_id="l1"))
        second = await orchestrator.run(WORKSPACE_ID, SyncRequest(list_id="l1"))
        return first, second

    first, second = asyncio.run(run())

    assert (first.created, first.updated) == (3, 0)
    assert (second.created, second.updated) == (0, 3)
    assert len(store.tasks) == 3
    assert [h["status"] for h in store.history_rows()] == ["completed", "completed"]
    assert store.touched == [WORKSPACE_ID, WORKSPACE_ID]


def test_one_bad_task_does_not_abort_the_run() -> None:
    store = FakeStore()
    tasks = [clickup_task("t1"), clickup_task("t2", due_date="garbage"), clickup_task("t3")]
    orchestrator = _orchestrator(store, lists={"l1": tasks})

    summary = asyncio.run(orchestrator.run(WORKSPACE_ID, SyncRequest(list_id="l1")))

    assert summary.status == "completed_with_errors"
    assert summary.created == 2
    assert len(summary.errors) == 1
    assert summary.errors[0].startswith("Task t2: ")
    history = _only_history(store)
    assert history["status"] == "completed_with_errors"
    assert history["tasks_synced"] == 2
    assert json.loads(history["error_message"]) == summary.errors


def test_every_task_failing_marks_run_failed() -> None:
    store = FakeStore()
    store.fail_writes_for.update({"t1", "t2"})
    events: list = []
    orchestrator = _orchestrator(store, events, lists={"l1": [clickup_task("t1"), clickup_task("t2")]})

    summary = asyncio.run(orchestrator.run(WORKSPACE_ID, SyncRequest(list_id="l1")))

    assert summary.status == "failed"
    assert _only_history(store)["status"] == "failed"
    assert store.touched == []
    assert events[-1][0] == "sync.failed"


def test_full_sync_skips_space_that_cannot_be_crawled(caplog) -> None:
    store = FakeStore()
    events: list = []
    orchestrator = _orchestrator(
        store,
        events,
        spaces={
            "s1": TransientFetchError("folder", "f9", "HTTP 500"),
            "s2": [clickup_task("t1"), clickup_task("t2")],
        },
    )

    with caplog.at_level(logging.WARNING):
        summary = asyncio.run(orchestrator.run(WORKSPACE_ID, SyncRequest(sync_all=True)))

    assert summary.status == "completed"
    assert summary.created == 2
    assert sorted(task_id for _, task_id in store.tasks) == ["t1", "t2"]
    assert summary.skipped == ["Space s1: Failed to fetch folder f9: HTTP 500"]
    history = _only_history(store)
    assert history["metadata"]["skipped"] == summary.skipped
    assert "Skipping space s1" in caplog.text
    assert events[-1][0] == "sync.completed"
    assert events[-1][2]["counts"] == {"created": 2, "updated": 0, "total": 2}


def test_full_sync_with_folder_failure_over_http(caplog) -> None:
    routes: dict[str, tuple[int, dict]] = {
        "/api/v2/team/team-1/space": (200, {"spaces": [{"id": "s1", "name": "Ops"}, {"id": "s2", "name": "Eng"}]}),
        "/api/v2/space/s1/list": (200, {"lists": []}),
        "/api/v2/space/s1/folder": (500, {"err": "boom"}),
        "/api/v2/space/s2/list": (200, {"lists": [{"id": "l2", "name": "Backlog"}]}),
        "/api/v2/space/s2/folder": (200, {"folders": []}),
        "/api/v2/list/l2/task": (200, {"tasks": [clickup_task("t1"), clickup_task("t2")]}),
    }

    def handler(request: httpx.Request) -> httpx.Response:
        status_code, body = routes.get(request.url.path, (404, {"err": "not found"}))
        return httpx.Response(status_code, json=body)

    def factory(workspace, store):
        return ClickUpConnector.from_api_key(
            str(workspace.id), "pk_test", store, transport=httpx.MockTransport(handler)
        )

    store = FakeStore()
    orchestrator = SyncOrchestrator(store=store, connector_factory=factory)

    with caplog.at_level(logging.WARNING):
        summary = asyncio.run(orchestrator.run(WORKSPACE_ID, SyncRequest(sync_all=True)))

    assert summary.status == "completed"
    assert {row["space"] for row in store.tasks.values()} == {"Eng"}
    assert len(store.tasks) == 2
    assert "Skipping space s1" in caplog.text
    # Every ClickUp call was audited against the workspace
    assert len(store.api_logs) == 6


def test_scoped_fetch_failure_is_fatal() -> None:
    store = FakeStore()
    orchestrator = _orchestrator(store, lists={"l1": TransientFetchError("list", "l1", "HTTP 502")})

    with pytest.raises(FatalSyncError):
        asyncio.run(orchestrator.run(WORKSPACE_ID, SyncRequest(list_id="l1")))

    history = _only_history(store)
    assert history["status"] == "failed"
    assert "Failed to fetch list l1" in history["error_message"]


def test_credential_failure_is_fatal() -> None:
    store = FakeStore()
    events: list = []

    def factory(workspace, store):
        raise CredentialError("Stored API key could not be decrypted")

    async def sink(event_type, workspace_id, data):
        events.append(event_type)

    orchestrator = SyncOrchestrator(store=store, connector_factory=factory, event_sink=sink)

    with pytest.raises(FatalSyncError):
        asyncio.run(orchestrator.run(WORKSPACE_ID, SyncRequest(sync_all=True)))

    history = _only_history(store)
    assert history["status"] == "failed"
    assert history["error_message"].startswith("Credential error:")
    assert events == ["sync.failed"]
    assert store.finish_calls == [history["id"]]


def test_unknown_or_inactive_workspace_writes_no_history() -> None:
    store = FakeStore(make_workspace(is_active=False))
    orchestrator = _orchestrator(store, lists={"l1": []})

    with pytest.raises(WorkspaceNotFoundError):
        asyncio.run(orchestrator.run(WORKSPACE_ID, SyncRequest(list_id="l1")))

    assert store.history == {}


def test_history_is_finalized_exactly_once() -> None:
    store = FakeStore()
    orchestrator = _orchestrator(store, lists={"l1": [clickup_task("t1")]})

    summary = asyncio.run(orchestrator.run(WORKSPACE_ID, SyncRequest(list_id="l1")))

    assert store.finish_calls == [summary.history_id]


def test_failed_terminal_write_is_retried_as_failure() -> None:
    class FlakyHistoryStore(FakeStore):
        async def finish_sync_history(self, history_id, **kwargs):
            if not self.finish_calls:
                self.finish_calls.append(history_id)
                raise ConnectionError("connection reset")
            return await super().finish_sync_history(history_id, **kwargs)

    store = FlakyHistoryStore()
    orchestrator = _orchestrator(store, lists={"l1": [clickup_task("t1")]})

    with pytest.raises(ConnectionError):
        asyncio.run(orchestrator.run(WORKSPACE_ID, SyncRequest(list_id="l1")))

    history = _only_history(store)
    assert len(store.finish_calls) == 2
    assert history["status"] == "failed"
    assert history["error_message"] == "connection reset"


def test_deactivated_workspace_cancels_between_batches() -> None:
    store = FakeStore()
    store.deactivate_after = 1
    tasks = [clickup_task(f"t{i}") for i in range(5)]
    events: list = []
    orchestrator = _orchestrator(store, events, lists={"l1": tasks})

    with pytest.raises(SyncCancelledError):
        asyncio.run(orchestrator.run(WORKSPACE_ID, SyncRequest(list_id="l1")))

    history = _only_history(store)
    assert history["status"] == "failed"
    assert history["error_message"].startswith("Sync cancelled:")
    # First batch of two landed before the check tripped
    assert len(store.tasks) == 2
    assert events[-1][0] == "sync.failed"


def test_duplicate_tasks_across_lists_are_processed_once() -> None:
    store = FakeStore()
    orchestrator = _orchestrator(
        store,
        spaces={"s1": [clickup_task("t1"), clickup_task("t1"), clickup_task("t2")]},
    )

    summary = asyncio.run(orchestrator.run(WORKSPACE_ID, SyncRequest(space_id="s1")))

    assert summary.total == 2
    assert summary.created == 2


def test_progress_events_end_with_completed() -> None:
    store = FakeStore()
    orchestrator = _orchestrator(store, lists={"l1": [clickup_task("t1"), clickup_task("t2"), clickup_task("t3")]})
    received: list[ProgressEvent] = []

    async def emit(event: ProgressEvent) -> None:
        received.append(event)

    asyncio.run(orchestrator.run(WORKSPACE_ID, SyncRequest(list_id="l1"), emit=emit))

    assert received[0].status == "started"
    assert received[-1].status == "completed"
    assert received[-1].progress == 100
    assert received[-1].created == 3
    progress = [event.progress for event in received]
    assert progress == sorted(progress)


def test_stream_progress_yields_sse_frames() -> None:
    store = FakeStore()
    orchestrator = _orchestrator(store, lists={"l1": [clickup_task("t1")]})

    async def collect():
        return [frame async for frame in stream_progress(orchestrator, WORKSPACE_ID, SyncRequest(list_id="l1"))]

    frames = asyncio.run(collect())

    assert all(frame.startswith("data: ") and frame.endswith("\n\n") for frame in frames)
    last = json.loads(frames[-1][len("data: "):])
    assert last["status"] == "completed"
    assert "error" not in last


class BlockingConnector(FakeConnector):
    def __init__(self, workspace_id, store, release: asyncio.Event) -> None:
        super().__init__(workspace_id, store)
        self.release = release

    async def get_tasks(self, list_id):
        await self.release.wait()
        return [clickup_task("t1")]


async def _wait_for_status(store: FakeStore, predicate) -> None:
    for _ in range(200):
        if store.history and predicate(_only_history(store)["status"]):
            return
        await asyncio.sleep(0.005)


def test_closing_stream_cancels_sync() -> None:
    store = FakeStore()

    async def run():
        release = asyncio.Event()
        orchestrator = SyncOrchestrator(
            store=store,
            connector_factory=lambda ws, st: BlockingConnector(str(ws.id), st, release),
        )
        stream = stream_progress(orchestrator, WORKSPACE_ID, SyncRequest(list_id="l1"))
        first = await stream.__anext__()
        await stream.aclose()
        await _wait_for_status(store, lambda status: status != "in_progress")
        return first

    first = asyncio.run(run())

    assert '"status":"started"' in first
    history = _only_history(store)
    assert history["status"] == "failed"
    assert history["error_message"].startswith("Sync cancelled")
    assert store.tasks == {}


def test_detached_stream_keeps_syncing() -> None:
    store = FakeStore()

    async def run():
        release = asyncio.Event()
        orchestrator = SyncOrchestrator(
            store=store,
            connector_factory=lambda ws, st: BlockingConnector(str(ws.id), st, release),
        )
        stream = stream_progress(orchestrator, WORKSPACE_ID, SyncRequest(list_id="l1"), detach=True)
        await stream.__anext__()
        await stream.aclose()
        release.set()
        await _wait_for_status(store, lambda status: status != "in_progress")

    asyncio.run(run())

    assert _only_history(store)["status"] == "completed"
    assert (WORKSPACE_ID, "t1") in store.tasks
