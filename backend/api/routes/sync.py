"""
Task sync endpoints.

Endpoints:
- POST /api/tasks/sync - Run a ClickUp sync (list, space or everything) and return the summary
- GET /api/tasks/sync/stream - Same, streaming progress as server-sent events
- POST /api/tasks/sync/queue - Queue a full sync on the Celery worker
- GET /api/tasks/sync/history - Sync history for a workspace, newest first
- POST /api/tasks/upload - Import tasks from a spreadsheet export
- GET /api/tasks/stats - Task totals and status breakdown
"""
from __future__ import annotations

import logging
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ValidationError

from config import settings
from connectors.base import FatalSyncError, SyncCancelledError, WorkspaceNotFoundError
from services.spreadsheet_import import (
    EmptySpreadsheetError,
    InvalidSpreadsheetError,
    SpreadsheetImporter,
)
from services.sync_orchestrator import SyncOrchestrator, SyncRequest, stream_progress
from services.task_store import TaskStore

router = APIRouter()
logger = logging.getLogger(__name__)

SPREADSHEET_EXTENSIONS: tuple[str, ...] = (".xlsx", ".xlsm", ".csv")


class SyncTaskRequest(SyncRequest):
    """Request body for a ClickUp sync."""

    workspace_id: str


class SyncResponse(BaseModel):
    """Response model for a completed sync."""

    success: bool
    history_id: str
    status: str
    total: int
    created: int
    updated: int
    errors: list[str]
    skipped: list[str]


class UploadResponse(BaseModel):
    """Response model for a spreadsheet import."""

    success: bool
    history_id: str
    status: str
    total: int
    created: int
    updated: int
    errors: list[str]


class QueuedSyncResponse(BaseModel):
    """Response model for a queued background sync."""

    status: str
    task_id: str
    workspace_id: str


class SyncHistoryResponse(BaseModel):
    """Response model for the sync history list."""

    history: list[dict[str, Any]]
    total: int
    limit: int
    offset: int


def get_store() -> TaskStore:
    return TaskStore()


def get_orchestrator(store: TaskStore) -> SyncOrchestrator:
    from workers.events import emit_event

    return SyncOrchestrator(store=store, event_sink=emit_event)


def _validate_workspace_id(workspace_id: str) -> None:
    try:
        UUID(workspace_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid workspace ID")


async def _require_workspace(store: TaskStore, workspace_id: str) -> None:
    _validate_workspace_id(workspace_id)
    if await store.get_active_workspace(workspace_id) is None:
        raise HTTPException(status_code=404, detail="Workspace not found")


@router.post("/sync", response_model=SyncResponse)
async def sync_tasks(request: SyncTaskRequest) -> SyncResponse:
    """Run a sync to completion and return its summary."""
    _validate_workspace_id(request.workspace_id)
    store = get_store()
    orchestrator = get_orchestrator(store)
    scope = SyncRequest(
        list_id=request.list_id, space_id=request.space_id, sync_all=request.sync_all
    )

    try:
        summary = await orchestrator.run(request.workspace_id, scope)
    except WorkspaceNotFoundError:
        raise HTTPException(status_code=404, detail="Workspace not found")
    except SyncCancelledError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except FatalSyncError as e:
        raise HTTPException(status_code=500, detail=f"Sync failed: {e}")

    return SyncResponse(success=summary.status != "failed", **summary.to_dict())


@router.get("/sync/stream")
async def stream_sync_tasks(
    workspace_id: str,
    list_id: Optional[str] = None,
    space_id: Optional[str] = None,
    sync_all: bool = False,
    detach: bool = False,
) -> StreamingResponse:
    """
    Run a sync and stream progress events (``text/event-stream``).

    Closing the connection cancels the sync unless ``detach=true``.
    """
    try:
        scope = SyncRequest(list_id=list_id, space_id=space_id, sync_all=sync_all)
    except ValidationError:
        raise HTTPException(
            status_code=422, detail="Provide exactly one of list_id, space_id or sync_all"
        )

    store = get_store()
    await _require_workspace(store, workspace_id)
    orchestrator = get_orchestrator(store)

    logger.info(
        "Starting streamed sync",
        extra={"workspace_id": workspace_id, "mode": scope.mode, "detach": detach},
    )
    return StreamingResponse(
        stream_progress(orchestrator, workspace_id, scope, detach=detach),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/sync/queue", response_model=QueuedSyncResponse)
async def queue_sync(workspace_id: str) -> QueuedSyncResponse:
    """Queue a full sync on the Celery worker."""
    from workers.tasks.sync import sync_workspace

    store = get_store()
    await _require_workspace(store, workspace_id)

    task = sync_workspace.delay(workspace_id)
    logger.info("Queued ClickUp sync %s for workspace %s", task.id, workspace_id)
    return QueuedSyncResponse(status="queued", task_id=task.id, workspace_id=workspace_id)


@router.get("/sync/history", response_model=SyncHistoryResponse)
async def get_sync_history(
    workspace_id: str,
    limit: int = Query(default=settings.SYNC_HISTORY_PAGE_SIZE, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> SyncHistoryResponse:
    """Sync history rows for a workspace, newest first."""
    _validate_workspace_id(workspace_id)
    rows, total = await get_store().list_sync_history(workspace_id, limit, offset)
    return SyncHistoryResponse(history=rows, total=total, limit=limit, offset=offset)


@router.post("/upload", response_model=UploadResponse)
async def upload_tasks(
    workspace_id: str = Form(...),
    file: UploadFile = File(...),
) -> UploadResponse:
    """Import tasks from a ClickUp spreadsheet export."""
    filename: str = file.filename or ""
    if not filename.lower().endswith(SPREADSHEET_EXTENSIONS):
        raise HTTPException(status_code=400, detail="Only .xlsx and .csv files are supported")

    store = get_store()
    await _require_workspace(store, workspace_id)

    data: bytes = await file.read()
    max_bytes: int = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    if len(data) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds maximum size of {settings.MAX_UPLOAD_SIZE_MB} MB",
        )

    try:
        summary = await SpreadsheetImporter(store).import_file(workspace_id, filename, data)
    except EmptySpreadsheetError:
        raise HTTPException(status_code=400, detail="Spreadsheet is empty")
    except InvalidSpreadsheetError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return UploadResponse(success=True, **summary.to_dict())


@router.get("/stats")
async def get_task_stats(workspace_id: str) -> dict[str, Any]:
    """Task totals and status breakdown for a workspace."""
    _validate_workspace_id(workspace_id)
    return await get_store().task_stats(workspace_id)
