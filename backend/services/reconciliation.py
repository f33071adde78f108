"""
Task reconciliation – maps one ClickUp task onto the tasks table and upserts it.

The row for ``(workspace_id, task_id)`` is looked up first: a miss inserts,
a hit overwrites every mapped column with the newly observed value. Custom
fields the task no longer carries are written as None, so a field removed in
ClickUp reverts to NULL on the next sync.

Any failure while mapping or writing a single task is raised as
``TaskMappingError`` carrying the ClickUp task id; the caller decides whether
to continue.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from connectors.base import TaskMappingError
from connectors.custom_fields import AmbiguityLog, epoch_ms_to_datetime, extract_all

if TYPE_CHECKING:
    from connectors.clickup import ListRef
    from services.task_store import TaskStore

logger = logging.getLogger(__name__)

MS_PER_HOUR: int = 3_600_000


@dataclass
class ReconcileResult:
    task_id: str
    created: bool


def _name_of(value: Any, key: str) -> Optional[str]:
    """ClickUp sends some fields as objects and some as bare strings."""
    if isinstance(value, dict):
        return value.get(key)
    if isinstance(value, str):
        return value
    return None


def _hours(millis: Any) -> Optional[str]:
    if not millis:
        return None
    return f"{int(millis) / MS_PER_HOUR:g}h"


def _person(user: Optional[dict[str, Any]]) -> Optional[str]:
    if not user:
        return None
    return user.get("username") or user.get("email")


def map_task_fields(
    task: dict[str, Any],
    location: Optional["ListRef"] = None,
    reported: Optional[AmbiguityLog] = None,
) -> dict[str, Any]:
    """
    Build the full column mapping for one ClickUp task.

    ``location`` is the list the task was fetched from; it supplies the
    space name, which ClickUp omits from task payloads. Raises ValueError /
    KeyError / TypeError on malformed payloads.
    """
    task_id: str = str(task["id"])

    space: dict[str, Any] = task.get("space") or {}
    folder: dict[str, Any] = task.get("folder") or {}
    lst: dict[str, Any] = task.get("list") or {}
    if folder.get("hidden"):
        folder = {}

    assignees: list[dict[str, Any]] = task.get("assignees") or []
    assignee_names: list[str] = [n for n in (_person(a) for a in assignees) if n]

    subtasks: Optional[list[dict[str, Any]]] = task.get("subtasks")
    linked: Optional[list[dict[str, Any]]] = task.get("linked_tasks")
    tags: Optional[list[dict[str, Any]]] = task.get("tags")
    locations: list[dict[str, Any]] = task.get("locations") or []

    values: dict[str, Any] = {
        "task_id": task_id,
        "task_name": task.get("name") or "",
        "status": _name_of(task.get("status"), "status") or "open",
        "task_content": task.get("description") or task.get("text_content") or "",
        "assignee": ", ".join(assignee_names) or None,
        "priority": _name_of(task.get("priority"), "priority"),
        "created_by": _person(task.get("creator")),
        "url": task.get("url"),
        # Hierarchy
        "space": (location.space_name if location else None) or space.get("name") or "Unknown",
        "space_id": (location.space_id if location else None) or space.get("id"),
        "folder": (location.folder_name if location else None) or folder.get("name"),
        "folder_id": (location.folder_id if location else None) or folder.get("id"),
        "list_name": (location.name if location else None) or lst.get("name") or "Unknown",
        "list_id": (location.list_id if location else None) or lst.get("id"),
        "tags": [t.get("name") for t in tags] if tags is not None else None,
        "lists": [loc.get("name") for loc in locations] or None,
        "sprints": None,
        # Dates
        "due_date": epoch_ms_to_datetime(task.get("due_date")),
        "start_date": epoch_ms_to_datetime(task.get("start_date")),
        "date_created": epoch_ms_to_datetime(task.get("date_created")),
        "date_updated": epoch_ms_to_datetime(task.get("date_updated")),
        "date_closed": epoch_ms_to_datetime(task.get("date_closed")),
        "date_done": epoch_ms_to_datetime(task.get("date_done")),
        # Derived
        "latest_comment": None,
        "comment_count": int(task.get("comment_count") or 0),
        "assigned_comment_count": 0,
        "subtask_ids": [str(s["id"]) for s in subtasks] if subtasks is not None else None,
        "subtask_urls": [s.get("url") for s in subtasks] if subtasks is not None else None,
        "linked_tasks": [str(t.get("task_id")) for t in linked] if linked is not None else None,
        "linked_docs": None,
        "time_logged": _hours(task.get("time_spent")),
        "time_logged_rolled_up": None,
        "time_estimate": _hours(task.get("time_estimate")),
        "time_estimate_rolled_up": None,
        "time_in_status": None,
        "points_estimate_rolled_up": float(task["points"]) if task.get("points") is not None else None,
    }
    values.update(extract_all(task, reported))
    return values


class TaskReconciler:
    """Upserts tasks one at a time through the storage gateway.

    One reconciler serves one sync run; custom-field collisions are logged
    once per reconciler.
    """

    def __init__(self, store: "TaskStore") -> None:
        self.store = store
        self.reported_ambiguities: AmbiguityLog = set()

    async def upsert_values(self, workspace_id: str, values: dict[str, Any]) -> bool:
        """
        Insert or overwrite the row keyed by ``values["task_id"]``.

        Only the keys present in ``values`` are written on update. Returns
        True when a new row was created.
        """
        row_id = await self.store.find_task_row_id(workspace_id, values["task_id"])
        if row_id is None:
            await self.store.insert_task(workspace_id, values)
            return True
        await self.store.update_task(row_id, values)
        return False

    async def reconcile(
        self,
        workspace_id: str,
        task: dict[str, Any],
        location: Optional["ListRef"] = None,
    ) -> ReconcileResult:
        task_id: str = str(task.get("id") or "<missing id>")
        try:
            values = map_task_fields(task, location, self.reported_ambiguities)
        except Exception as exc:
            raise TaskMappingError(task_id, str(exc) or type(exc).__name__) from exc
        return await self.reconcile_values(workspace_id, values)

    async def reconcile_values(
        self, workspace_id: str, values: dict[str, Any]
    ) -> ReconcileResult:
        """Write an already-mapped row; failures become TaskMappingError."""
        task_id: str = values["task_id"]
        try:
            created = await self.upsert_values(workspace_id, values)
        except Exception as exc:
            raise TaskMappingError(task_id, str(exc) or type(exc).__name__) from exc

        logger.debug(
            "%s task %s",
            "Created" if created else "Updated",
            task_id,
            extra={"workspace_id": workspace_id, "task_id": task_id},
        )
        return ReconcileResult(task_id=task_id, created=created)
