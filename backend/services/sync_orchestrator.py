"""
Sync orchestrator – drives one ClickUp → tasks table sync run.

Per run:
1. Load the workspace (unknown/inactive → ``WorkspaceNotFoundError``, no history)
2. Insert an ``in_progress`` history row
3. Resolve credentials and discover what to fetch (list, space or everything);
   a failure here is fatal and marks the row ``failed``
4. Fetch every task first, then reconcile them one by one in batches of
   ``SYNC_BATCH_SIZE``; a batch only paces progress reporting
5. Write the history row's terminal status exactly once

Per-task failures are collected as ``"Task {id}: {message}"`` and never abort
the run. In full mode a space whose tasks cannot be fetched is skipped with a
warning; skipped spaces are reported in the history metadata but do not by
themselves make the run ``completed_with_errors``.

The interactive variant (``stream_progress``) runs the orchestrator as an
asyncio task and relays its ``ProgressEvent`` values as server-sent events.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Optional

from pydantic import BaseModel, model_validator

from config import settings
from connectors.base import (
    ClickUpSyncError,
    CredentialError,
    FatalSyncError,
    RateLimitExhaustedError,
    SyncCancelledError,
    TaskMappingError,
    TransientFetchError,
    WorkspaceNotFoundError,
)
from connectors.clickup import ClickUpConnector, ListRef
from models.sync_history import (
    STATUS_COMPLETED,
    STATUS_COMPLETED_WITH_ERRORS,
    STATUS_FAILED,
    SYNC_TYPE_API,
)
from services.reconciliation import TaskReconciler
from services.task_store import TaskStore

if TYPE_CHECKING:
    from models.workspace import Workspace

logger = logging.getLogger(__name__)

# Branch-level failures that skip one space in full mode
BRANCH_ERRORS: tuple[type[Exception], ...] = (TransientFetchError, RateLimitExhaustedError)


class SyncRequest(BaseModel):
    """What to sync: exactly one of a list, a space, or everything."""

    list_id: Optional[str] = None
    space_id: Optional[str] = None
    sync_all: bool = False

    @model_validator(mode="after")
    def _exactly_one_scope(self) -> "SyncRequest":
        chosen = [bool(self.list_id), bool(self.space_id), self.sync_all]
        if sum(chosen) != 1:
            raise ValueError("Provide exactly one of list_id, space_id or sync_all")
        return self

    @property
    def mode(self) -> str:
        if self.list_id:
            return "list"
        if self.space_id:
            return "space"
        return "all"


class ProgressEvent(BaseModel):
    """One progress update of an interactive sync."""

    status: str
    message: str
    progress: int
    current: Optional[int] = None
    total: Optional[int] = None
    created: Optional[int] = None
    updated: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "error")

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"


@dataclass
class SyncSummary:
    history_id: str
    status: str
    total: int = 0
    created: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "history_id": self.history_id,
            "status": self.status,
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "errors": self.errors,
            "skipped": self.skipped,
        }


EmitFn = Callable[[ProgressEvent], Awaitable[None]]
ConnectorFactory = Callable[["Workspace", TaskStore], ClickUpConnector]
EventSink = Callable[[str, str, dict[str, Any]], Awaitable[Any]]


def final_status(total: int, failed: int) -> str:
    """Clean, degraded, or failed when every task errored."""
    if failed == 0:
        return STATUS_COMPLETED
    if failed >= total:
        return STATUS_FAILED
    return STATUS_COMPLETED_WITH_ERRORS


def _band(start: int, width: int, done: int, total: int) -> int:
    if total <= 0:
        return start + width
    return start + int(done / total * width)


class SyncOrchestrator:
    """Coordinates crawler, client and reconciler for one workspace sync."""

    def __init__(
        self,
        store: Optional[TaskStore] = None,
        connector_factory: Optional[ConnectorFactory] = None,
        event_sink: Optional[EventSink] = None,
        batch_size: Optional[int] = None,
    ) -> None:
        self.store = store or TaskStore()
        self.connector_factory: ConnectorFactory = (
            connector_factory or ClickUpConnector.for_workspace
        )
        self.event_sink = event_sink
        self.batch_size: int = batch_size or settings.SYNC_BATCH_SIZE

    # ── Entry point ──────────────────────────────────────────────────────

    async def run(
        self,
        workspace_id: str,
        request: SyncRequest,
        emit: Optional[EmitFn] = None,
    ) -> SyncSummary:
        workspace = await self.store.get_active_workspace(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(f"Workspace not found or inactive: {workspace_id}")

        metadata: dict[str, Any] = {
            "mode": request.mode,
            "list_id": request.list_id,
            "space_id": request.space_id,
        }
        history_id = await self.store.create_sync_history(workspace_id, SYNC_TYPE_API, metadata)
        summary = SyncSummary(history_id=history_id, status="in_progress")
        finalized = False

        async def finalize(status: str, error_message: Optional[str]) -> None:
            nonlocal finalized
            if finalized:
                return
            summary.status = status
            await self.store.finish_sync_history(
                history_id,
                status=status,
                tasks_synced=summary.created + summary.updated,
                tasks_created=summary.created,
                tasks_updated=summary.updated,
                error_message=error_message,
                metadata={**metadata, "skipped": summary.skipped, "error_count": len(summary.errors)},
            )
            finalized = True

        logger.info(
            "Starting ClickUp sync",
            extra={"workspace_id": workspace_id, "history_id": history_id, "mode": request.mode},
        )
        await self._emit(emit, ProgressEvent(status="started", message="Starting sync...", progress=0))

        try:
            try:
                connector = self.connector_factory(workspace, self.store)
            except CredentialError as exc:
                raise FatalSyncError(f"Credential error: {exc}") from exc

            try:
                pairs = await self._collect(connector, workspace, request, summary, emit)
                await self._process(connector, workspace_id, pairs, summary, emit)
            finally:
                await connector.aclose()

            status = final_status(summary.total, len(summary.errors))
            await finalize(status, json.dumps(summary.errors) if summary.errors else None)

        except (asyncio.CancelledError, SyncCancelledError) as exc:
            message = str(exc) or "client disconnected"
            logger.info(
                "ClickUp sync cancelled: %s",
                message,
                extra={"workspace_id": workspace_id, "history_id": history_id},
            )
            await finalize(STATUS_FAILED, f"Sync cancelled: {message}")
            await self._publish("sync.failed", workspace_id, {"history_id": history_id, "error": message})
            await self._emit(emit, ProgressEvent(status="error", message="Sync cancelled", progress=0, error=message))
            raise

        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error(
                "ClickUp sync failed: %s",
                message,
                extra={"workspace_id": workspace_id, "history_id": history_id},
                exc_info=not isinstance(exc, ClickUpSyncError),
            )
            await finalize(STATUS_FAILED, message)
            await self._publish("sync.failed", workspace_id, {"history_id": history_id, "error": message})
            await self._emit(emit, ProgressEvent(status="error", message="Sync failed", progress=0, error=message))
            raise

        if summary.status != STATUS_FAILED:
            await self.store.touch_last_sync(workspace_id)

        logger.info(
            "ClickUp sync finished: %s (%d created, %d updated, %d errors, %d skipped)",
            summary.status,
            summary.created,
            summary.updated,
            len(summary.errors),
            len(summary.skipped),
            extra={"workspace_id": workspace_id, "history_id": history_id},
        )
        await self._publish(
            "sync.failed" if summary.status == STATUS_FAILED else "sync.completed",
            workspace_id,
            {
                "provider": "clickup",
                "history_id": history_id,
                "status": summary.status,
                "counts": {"created": summary.created, "updated": summary.updated, "total": summary.total},
                "completed_at": datetime.utcnow().isoformat(),
            },
        )

        if summary.status == STATUS_FAILED:
            await self._emit(emit, ProgressEvent(
                status="error",
                message=f"All {summary.total} tasks failed",
                progress=0,
                error=summary.errors[0] if summary.errors else None,
            ))
        else:
            await self._emit(emit, ProgressEvent(
                status="completed",
                message=f"Sync completed: {summary.created} created, {summary.updated} updated",
                progress=100,
                total=summary.total,
                created=summary.created,
                updated=summary.updated,
            ))
        return summary

    # ── Discovery / fetch ────────────────────────────────────────────────

    async def _collect(
        self,
        connector: ClickUpConnector,
        workspace: "Workspace",
        request: SyncRequest,
        summary: SyncSummary,
        emit: Optional[EmitFn],
    ) -> list[tuple[ListRef, dict[str, Any]]]:
        pairs: list[tuple[ListRef, dict[str, Any]]]
        try:
            if request.list_id:
                await self._emit(emit, ProgressEvent(status="fetching", message="Fetching tasks from list...", progress=10))
                ref = await connector.get_list(request.list_id)
                pairs = [(ref, task) for task in await connector.get_tasks(request.list_id)]
            elif request.space_id:
                await self._emit(emit, ProgressEvent(status="fetching", message="Fetching tasks from space...", progress=10))
                space = await connector.get_space(request.space_id)
                pairs = await connector.list_all_tasks_under_space(request.space_id, space.get("name"))
            else:
                await self._emit(emit, ProgressEvent(status="fetching", message="Fetching spaces...", progress=5))
                spaces = await self._discover_spaces(connector, workspace)
                pairs = await self._fetch_spaces(connector, spaces, summary, emit)
        except BRANCH_ERRORS as exc:
            raise FatalSyncError(str(exc)) from exc

        # Subtasks can be listed under more than one list; keep first sighting
        seen: set[str] = set()
        unique: list[tuple[ListRef, dict[str, Any]]] = []
        for ref, task in pairs:
            task_id = str(task.get("id"))
            if task_id in seen:
                continue
            seen.add(task_id)
            unique.append((ref, task))

        await self._emit(emit, ProgressEvent(
            status="fetched",
            message=f"Fetched {len(unique)} tasks",
            progress=45,
            current=len(unique),
        ))
        return unique

    async def _discover_spaces(
        self, connector: ClickUpConnector, workspace: "Workspace"
    ) -> list[dict[str, Any]]:
        if workspace.clickup_team_id:
            team_ids = [workspace.clickup_team_id]
        else:
            team_ids = [str(team["id"]) for team in await connector.get_teams()]

        spaces: list[dict[str, Any]] = []
        for team_id in team_ids:
            spaces.extend(await connector.get_spaces(team_id))
        return spaces

    async def _fetch_spaces(
        self,
        connector: ClickUpConnector,
        spaces: list[dict[str, Any]],
        summary: SyncSummary,
        emit: Optional[EmitFn],
    ) -> list[tuple[ListRef, dict[str, Any]]]:
        pairs: list[tuple[ListRef, dict[str, Any]]] = []
        total = len(spaces)
        for index, space in enumerate(spaces):
            space_id = str(space["id"])
            space_name = space.get("name") or space_id
            await connector.ensure_sync_active(f"space:{space_id}")
            await self._emit(emit, ProgressEvent(
                status="fetching_space",
                message=f"Fetching tasks from space {space_name}...",
                progress=_band(5, 40, index, total),
                current=index + 1,
                total=total,
            ))
            try:
                space_pairs = await connector.list_all_tasks_under_space(space_id, space.get("name"))
            except BRANCH_ERRORS as exc:
                logger.warning(
                    "Skipping space %s: %s",
                    space_id,
                    exc,
                    extra={"workspace_id": connector.workspace_id, "space_id": space_id},
                )
                summary.skipped.append(f"Space {space_id}: {exc}")
                await self._emit(emit, ProgressEvent(
                    status="space_error",
                    message=f"Failed to fetch space {space_name}",
                    progress=_band(5, 40, index + 1, total),
                    current=index + 1,
                    total=total,
                    error=str(exc),
                ))
                continue

            pairs.extend(space_pairs)
            await self._emit(emit, ProgressEvent(
                status="fetched_space",
                message=f"Fetched {len(space_pairs)} tasks from space {space_name}",
                progress=_band(5, 40, index + 1, total),
                current=index + 1,
                total=total,
            ))
        return pairs

    # ── Reconcile ────────────────────────────────────────────────────────

    async def _process(
        self,
        connector: ClickUpConnector,
        workspace_id: str,
        pairs: list[tuple[ListRef, dict[str, Any]]],
        summary: SyncSummary,
        emit: Optional[EmitFn],
    ) -> None:
        reconciler = TaskReconciler(self.store)
        total = len(pairs)
        summary.total = total
        await self._emit(emit, ProgressEvent(
            status="processing",
            message=f"Processing {total} tasks...",
            progress=50,
            total=total,
        ))

        for start in range(0, total, self.batch_size):
            await connector.ensure_sync_active(f"batch:{start}")
            for ref, task in pairs[start:start + self.batch_size]:
                try:
                    result = await reconciler.reconcile(workspace_id, task, ref)
                except TaskMappingError as exc:
                    logger.error(
                        "Failed to process task %s: %s",
                        exc.task_id,
                        exc,
                        extra={"workspace_id": workspace_id, "task_id": exc.task_id, "list_id": ref.list_id},
                    )
                    summary.errors.append(f"Task {exc.task_id}: {exc}")
                    continue
                if result.created:
                    summary.created += 1
                else:
                    summary.updated += 1

            processed = min(start + self.batch_size, total)
            await self._emit(emit, ProgressEvent(
                status="processing",
                message=f"Processed {processed} of {total} tasks",
                progress=_band(50, 45, processed, total),
                current=processed,
                total=total,
                created=summary.created,
                updated=summary.updated,
            ))

    # ── Side channels ────────────────────────────────────────────────────

    async def _emit(self, emit: Optional[EmitFn], event: ProgressEvent) -> None:
        if emit is None:
            return
        try:
            await emit(event)
        except Exception:
            logger.warning("Dropping progress event %s", event.status, exc_info=True)

    async def _publish(self, event_type: str, workspace_id: str, data: dict[str, Any]) -> None:
        if self.event_sink is None:
            return
        try:
            await self.event_sink(event_type, workspace_id, data)
        except Exception:
            logger.warning("Failed to publish %s", event_type, exc_info=True)


# Detached interactive syncs keep running after their client disconnects
_detached_syncs: set[asyncio.Task[Any]] = set()


async def stream_progress(
    orchestrator: SyncOrchestrator,
    workspace_id: str,
    request: SyncRequest,
    *,
    detach: bool = False,
) -> AsyncIterator[str]:
    """
    Run a sync and yield its progress as ``data: {json}\\n\\n`` frames.

    The stream ends after the first terminal event. If the consumer goes
    away first, the sync is cancelled unless ``detach`` is set.
    """
    queue: asyncio.Queue[Optional[ProgressEvent]] = asyncio.Queue()

    async def emit(event: ProgressEvent) -> None:
        queue.put_nowait(event)

    async def runner() -> None:
        try:
            await orchestrator.run(workspace_id, request, emit=emit)
        except Exception as exc:
            # Fatal errors were already emitted; this covers pre-history failures
            queue.put_nowait(ProgressEvent(
                status="error", message="Sync failed", progress=0, error=str(exc),
            ))
        finally:
            queue.put_nowait(None)

    task = asyncio.create_task(runner())
    finished = False
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield event.to_sse()
            if event.is_terminal:
                finished = True
                break
    finally:
        if not task.done():
            if finished or detach:
                _detached_syncs.add(task)
                task.add_done_callback(_detached_syncs.discard)
            else:
                logger.info(
                    "Progress stream closed, cancelling sync",
                    extra={"workspace_id": workspace_id},
                )
                task.cancel()
