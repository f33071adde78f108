"""In-memory stand-ins for the storage gateway and ClickUp connector."""
from __future__ import annotations

import uuid
from types import SimpleNamespace
from typing import Any, Optional

from connectors.base import BaseConnector, TransientFetchError
from connectors.clickup import ListRef

WORKSPACE_ID = "11111111-1111-1111-1111-111111111111"
OTHER_WORKSPACE_ID = "22222222-2222-2222-2222-222222222222"


def make_workspace(workspace_id: str = WORKSPACE_ID, **overrides: Any) -> SimpleNamespace:
    fields: dict[str, Any] = {
        "id": uuid.UUID(workspace_id),
        "name": "Acme",
        "clickup_team_id": "team-1",
        "encrypted_api_key": "blob",
        "api_key_iv": "iv",
        "is_active": True,
        "last_sync_at": None,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


class FakeStore:
    """Dict-backed TaskStore with the same async interface."""

    def __init__(self, *workspaces: SimpleNamespace) -> None:
        self.workspaces: dict[str, SimpleNamespace] = {
            str(ws.id): ws for ws in (workspaces or (make_workspace(),))
        }
        self.tasks: dict[tuple[str, str], dict[str, Any]] = {}
        self.history: dict[str, dict[str, Any]] = {}
        self.api_logs: list[dict[str, Any]] = []
        self.finish_calls: list[str] = []
        self.touched: list[str] = []
        self.fail_writes_for: set[str] = set()
        # Deactivate the workspace after this many is_workspace_active checks
        self.deactivate_after: Optional[int] = None
        self.active_checks = 0

    async def get_active_workspace(self, workspace_id: str) -> Optional[SimpleNamespace]:
        ws = self.workspaces.get(workspace_id)
        if ws is None or not ws.is_active:
            return None
        return ws

    async def is_workspace_active(self, workspace_id: str) -> bool:
        self.active_checks += 1
        if self.deactivate_after is not None and self.active_checks > self.deactivate_after:
            self.workspaces[workspace_id].is_active = False
        ws = self.workspaces.get(workspace_id)
        return bool(ws and ws.is_active)

    async def list_active_workspace_ids(self) -> list[str]:
        return [wid for wid, ws in self.workspaces.items() if ws.is_active]

    async def touch_last_sync(self, workspace_id: str) -> None:
        self.touched.append(workspace_id)

    async def find_task_row_id(self, workspace_id: str, task_id: str) -> Optional[uuid.UUID]:
        row = self.tasks.get((workspace_id, task_id))
        return row["id"] if row else None

    async def insert_task(self, workspace_id: str, values: dict[str, Any]) -> None:
        if values["task_id"] in self.fail_writes_for:
            raise RuntimeError("write conflict")
        self.tasks[(workspace_id, values["task_id"])] = {
            "id": uuid.uuid4(),
            "workspace_id": workspace_id,
            "task_name": "",
            **values,
        }

    async def update_task(self, row_id: uuid.UUID, values: dict[str, Any]) -> None:
        if values["task_id"] in self.fail_writes_for:
            raise RuntimeError("write conflict")
        for row in self.tasks.values():
            if row["id"] == row_id:
                row.update(values)
                return
        raise KeyError(row_id)

    async def task_stats(self, workspace_id: str) -> dict[str, Any]:
        rows = [r for (wid, _), r in self.tasks.items() if wid == workspace_id]
        counts: dict[str, int] = {}
        for row in rows:
            counts[row.get("status")] = counts.get(row.get("status"), 0) + 1
        return {
            "total_tasks": len(rows),
            "by_status": [{"status": s, "count": c} for s, c in counts.items()],
            "last_synced_at": None,
        }

    async def create_sync_history(
        self, workspace_id: str, sync_type: str, metadata: Optional[dict[str, Any]] = None
    ) -> str:
        history_id = str(uuid.uuid4())
        self.history[history_id] = {
            "id": history_id,
            "workspace_id": workspace_id,
            "sync_type": sync_type,
            "status": "in_progress",
            "metadata": metadata,
            "error_message": None,
            "tasks_synced": 0,
            "tasks_created": 0,
            "tasks_updated": 0,
        }
        return history_id

    async def finish_sync_history(
        self,
        history_id: str,
        *,
        status: str,
        tasks_synced: int = 0,
        tasks_created: int = 0,
        tasks_updated: int = 0,
        error_message: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        self.finish_calls.append(history_id)
        row = self.history[history_id]
        if row["status"] != "in_progress":
            return False
        row.update(
            status=status,
            tasks_synced=tasks_synced,
            tasks_created=tasks_created,
            tasks_updated=tasks_updated,
            error_message=error_message,
        )
        if metadata is not None:
            row["metadata"] = metadata
        return True

    async def list_sync_history(
        self, workspace_id: str, limit: int, offset: int = 0
    ) -> tuple[list[dict[str, Any]], int]:
        rows = [h for h in self.history.values() if h["workspace_id"] == workspace_id]
        rows.reverse()
        return rows[offset:offset + limit], len(rows)

    async def log_api_request(self, workspace_id: str, **fields: Any) -> None:
        self.api_logs.append({"workspace_id": workspace_id, **fields})

    def history_rows(self) -> list[dict[str, Any]]:
        return list(self.history.values())


class FakeConnector(BaseConnector):
    """
    Serves canned hierarchy data.

    ``spaces`` maps space id to its tasks; a value that is an exception is
    raised when the space is crawled. ``lists`` does the same per list id.
    """

    source_system = "clickup"

    def __init__(
        self,
        workspace_id: str,
        store: FakeStore,
        spaces: Optional[dict[str, Any]] = None,
        lists: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(workspace_id, store)
        self.spaces = spaces or {}
        self.lists = lists or {}
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True

    async def get_teams(self) -> list[dict[str, Any]]:
        return [{"id": "team-1"}]

    async def get_spaces(self, team_id: str) -> list[dict[str, Any]]:
        return [{"id": sid, "name": f"Space {sid}"} for sid in self.spaces]

    async def get_space(self, space_id: str) -> dict[str, Any]:
        if space_id not in self.spaces:
            raise TransientFetchError("space", space_id, "HTTP 404")
        return {"id": space_id, "name": f"Space {space_id}"}

    async def list_all_tasks_under_space(
        self, space_id: str, space_name: Optional[str] = None
    ) -> list[tuple[ListRef, dict[str, Any]]]:
        tasks = self.spaces[space_id]
        if isinstance(tasks, Exception):
            raise tasks
        ref = ListRef(f"list-{space_id}", "Backlog", space_id, space_name)
        return [(ref, task) for task in tasks]

    async def get_list(self, list_id: str) -> ListRef:
        return ListRef(list_id, "Backlog", "space-1", "Space 1")

    async def get_tasks(self, list_id: str) -> list[dict[str, Any]]:
        tasks = self.lists[list_id]
        if isinstance(tasks, Exception):
            raise tasks
        return list(tasks)


def clickup_task(task_id: str, **overrides: Any) -> dict[str, Any]:
    """A ClickUp task payload shaped like ``GET /list/{id}/task`` returns."""
    task: dict[str, Any] = {
        "id": task_id,
        "name": f"Task {task_id}",
        "status": {"status": "in progress"},
        "description": "Write the thing",
        "assignees": [{"username": "ana"}, {"username": "ben"}],
        "priority": {"priority": "high"},
        "creator": {"username": "carol"},
        "url": f"https://app.clickup.com/t/{task_id}",
        "list": {"id": "list-1", "name": "Backlog"},
        "folder": {"id": "folder-1", "name": "Q1", "hidden": False},
        "space": {"id": "space-1"},
        "tags": [{"name": "urgent"}],
        "date_created": "1700000000000",
        "date_updated": "1700000000000",
        "custom_fields": [],
    }
    task.update(overrides)
    return task
