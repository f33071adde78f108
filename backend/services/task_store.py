"""
Storage gateway for the task sync pipeline.

Every component that reads or writes workspaces, tasks, sync history or the
API request log goes through ``TaskStore``. Each method opens its own
session and commits before returning, so every task write is its own atomic
unit and a crash mid-sync leaves already-written rows in place.

Tests substitute an in-memory object with the same method names.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.dialects.postgresql import insert as pg_insert

from models.api_request_log import ApiRequestLog
from models.database import get_session
from models.sync_history import STATUS_IN_PROGRESS, TaskSyncHistory
from models.task import Task
from models.workspace import Workspace

logger = logging.getLogger(__name__)


def _task_columns(values: dict[str, Any]) -> dict[Any, Any]:
    """Key a dict of Task attribute names by table column ("list_name" -> "list")."""
    attrs = sa_inspect(Task).column_attrs
    return {attrs[key].columns[0]: value for key, value in values.items()}


class TaskStore:
    """SQLAlchemy-backed implementation of the sync storage interface."""

    # ── Workspaces ───────────────────────────────────────────────────────

    async def get_active_workspace(self, workspace_id: str) -> Optional[Workspace]:
        """Return the workspace if it exists and is active, else None."""
        async with get_session() as session:
            result = await session.execute(
                select(Workspace).where(
                    Workspace.id == UUID(workspace_id),
                    Workspace.is_active.is_(True),
                )
            )
            return result.scalar_one_or_none()

    async def is_workspace_active(self, workspace_id: str) -> bool:
        async with get_session() as session:
            result = await session.execute(
                select(Workspace.is_active).where(Workspace.id == UUID(workspace_id))
            )
            return bool(result.scalar_one_or_none())

    async def list_active_workspace_ids(self) -> list[str]:
        async with get_session() as session:
            result = await session.execute(
                select(Workspace.id).where(Workspace.is_active.is_(True))
            )
            return [str(row[0]) for row in result.all()]

    async def touch_last_sync(self, workspace_id: str) -> None:
        async with get_session() as session:
            await session.execute(
                update(Workspace)
                .where(Workspace.id == UUID(workspace_id))
                .values(last_sync_at=datetime.utcnow())
            )
            await session.commit()

    # ── Tasks ────────────────────────────────────────────────────────────

    async def find_task_row_id(self, workspace_id: str, task_id: str) -> Optional[UUID]:
        """Look up the local row for ``(workspace_id, task_id)``."""
        async with get_session() as session:
            result = await session.execute(
                select(Task.id).where(
                    Task.workspace_id == UUID(workspace_id),
                    Task.task_id == task_id,
                )
            )
            return result.scalar_one_or_none()

    async def insert_task(self, workspace_id: str, values: dict[str, Any]) -> None:
        """
        Insert a new task row. A row without a name gets an empty one.

        The unique ``(workspace_id, task_id)`` index turns a concurrent
        insert of the same task into an overwrite instead of a second row.
        """
        now = datetime.utcnow()
        row = _task_columns(
            {
                "task_name": "",
                **values,
                "workspace_id": UUID(workspace_id),
                "last_synced_at": now,
            }
        )
        stmt = pg_insert(Task.__table__).values(row).on_conflict_do_update(
            index_elements=["workspace_id", "task_id"],
            set_=_task_columns({**values, "last_synced_at": now, "updated_at": now}),
        )
        async with get_session() as session:
            await session.execute(stmt)
            await session.commit()

    async def update_task(self, row_id: UUID, values: dict[str, Any]) -> None:
        """Overwrite every mapped column of an existing task row."""
        now = datetime.utcnow()
        async with get_session() as session:
            await session.execute(
                update(Task.__table__)
                .where(Task.__table__.c.id == row_id)
                .values(
                    _task_columns({**values, "last_synced_at": now, "updated_at": now})
                )
            )
            await session.commit()

    async def task_stats(self, workspace_id: str) -> dict[str, Any]:
        """Totals and per-status counts for the tasks of a workspace."""
        ws_uuid = UUID(workspace_id)
        async with get_session() as session:
            total = await session.scalar(
                select(func.count(Task.id)).where(Task.workspace_id == ws_uuid)
            )
            by_status = await session.execute(
                select(Task.status, func.count(Task.id))
                .where(Task.workspace_id == ws_uuid)
                .group_by(Task.status)
                .order_by(func.count(Task.id).desc())
            )
            last_synced = await session.scalar(
                select(func.max(Task.last_synced_at)).where(Task.workspace_id == ws_uuid)
            )

        from config import to_iso8601

        return {
            "total_tasks": int(total or 0),
            "by_status": [
                {"status": status, "count": int(count)}
                for status, count in by_status.all()
            ],
            "last_synced_at": to_iso8601(last_synced),
        }

    # ── Sync history ─────────────────────────────────────────────────────

    async def create_sync_history(
        self,
        workspace_id: str,
        sync_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """Insert an ``in_progress`` history row and return its id."""
        history = TaskSyncHistory(
            workspace_id=UUID(workspace_id),
            sync_type=sync_type,
            status=STATUS_IN_PROGRESS,
            sync_started_at=datetime.utcnow(),
            sync_metadata=metadata,
        )
        async with get_session() as session:
            session.add(history)
            await session.commit()
            return str(history.id)

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
        """
        Move a history row to its terminal status.

        Only rows still ``in_progress`` are touched, so a row transitions at
        most once. Returns False when the row had already been finalized.
        """
        values: dict[str, Any] = {
            "status": status,
            "tasks_synced": tasks_synced,
            "tasks_created": tasks_created,
            "tasks_updated": tasks_updated,
            "error_message": error_message,
            "sync_completed_at": datetime.utcnow(),
        }
        if metadata is not None:
            values["sync_metadata"] = metadata

        async with get_session() as session:
            result = await session.execute(
                update(TaskSyncHistory)
                .where(
                    TaskSyncHistory.id == UUID(history_id),
                    TaskSyncHistory.status == STATUS_IN_PROGRESS,
                )
                .values(**values)
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning(
                "Sync history row was already finalized",
                extra={"history_id": history_id, "status": status},
            )
            return False
        return True

    async def list_sync_history(
        self, workspace_id: str, limit: int, offset: int = 0
    ) -> tuple[list[dict[str, Any]], int]:
        """Return one page of history rows (newest first) and the total count."""
        ws_uuid = UUID(workspace_id)
        async with get_session() as session:
            total = await session.scalar(
                select(func.count(TaskSyncHistory.id)).where(
                    TaskSyncHistory.workspace_id == ws_uuid
                )
            )
            result = await session.execute(
                select(TaskSyncHistory)
                .where(TaskSyncHistory.workspace_id == ws_uuid)
                .order_by(TaskSyncHistory.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            rows = [h.to_dict() for h in result.scalars().all()]
        return rows, int(total or 0)

    # ── API request log ──────────────────────────────────────────────────

    async def log_api_request(
        self,
        workspace_id: str,
        *,
        endpoint: str,
        method: str,
        status_code: int,
        response_time_ms: int,
        rate_limit_remaining: Optional[int],
        error_message: Optional[str] = None,
    ) -> None:
        async with get_session() as session:
            session.add(
                ApiRequestLog(
                    workspace_id=UUID(workspace_id),
                    endpoint=endpoint,
                    method=method,
                    status_code=status_code,
                    response_time_ms=response_time_ms,
                    error_message=error_message,
                    rate_limit_remaining=rate_limit_remaining,
                )
            )
            await session.commit()
