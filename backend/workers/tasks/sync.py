"""
Sync tasks for Celery workers.

These tasks run full ClickUp syncs for one workspace (on demand) or for
every active workspace (hourly via Beat).
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery forked workers
_backend_dir = Path(__file__).resolve().parent.parent.parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

import asyncio
import logging
from datetime import datetime
from typing import Any

from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro: Any) -> Any:
    """Run an async function in a sync context (for Celery tasks).

    Creates a fresh event loop and disposes any existing database connections
    to avoid 'Future attached to different loop' errors with asyncpg.
    """
    from models.database import dispose_engine

    # Pooled connections are tied to the previous (closed) event loop
    dispose_engine()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _sync_workspace(workspace_id: str) -> dict[str, Any]:
    """
    Run one full sync for a workspace.

    Returns the sync summary, or a failure/cancellation record.
    """
    from connectors.base import ClickUpSyncError, SyncCancelledError, WorkspaceNotFoundError
    from services.sync_orchestrator import SyncOrchestrator, SyncRequest
    from workers.events import emit_event

    orchestrator = SyncOrchestrator(event_sink=emit_event)
    try:
        logger.info("Starting ClickUp sync for workspace %s", workspace_id)
        summary = await orchestrator.run(workspace_id, SyncRequest(sync_all=True))
        return {"workspace_id": workspace_id, **summary.to_dict()}

    except WorkspaceNotFoundError as e:
        logger.info("Skipping sync for workspace %s: %s", workspace_id, e)
        return {"workspace_id": workspace_id, "status": "skipped", "error": str(e)}

    except SyncCancelledError as e:
        logger.info("Sync cancelled for workspace %s: %s", workspace_id, e)
        return {"workspace_id": workspace_id, "status": "cancelled", "error": str(e)}

    except ClickUpSyncError as e:
        # History row and sync.failed event are written by the orchestrator
        return {"workspace_id": workspace_id, "status": "failed", "error": str(e)}


@celery_app.task(bind=True, name="workers.tasks.sync.sync_workspace")
def sync_workspace(self: Any, workspace_id: str) -> dict[str, Any]:
    """
    Celery task to run a full ClickUp sync for one workspace.

    Args:
        workspace_id: UUID of the workspace

    Returns:
        Dict with sync status, counts, and any per-task errors
    """
    logger.info("Task %s: Syncing ClickUp for workspace %s", self.request.id, workspace_id)
    return run_async(_sync_workspace(workspace_id))


@celery_app.task(bind=True, name="workers.tasks.sync.sync_all_workspaces")
def sync_all_workspaces(self: Any) -> dict[str, Any]:
    """
    Celery task to sync every active workspace, one after another.

    This is the hourly sync task that runs via Beat schedule.
    """
    logger.info("Task %s: Starting hourly sync for all workspaces", self.request.id)

    async def _sync_all() -> dict[str, Any]:
        from services.task_store import TaskStore

        started_at = datetime.utcnow().isoformat()
        workspace_ids = await TaskStore().list_active_workspace_ids()

        results: dict[str, dict[str, Any]] = {}
        total_synced = 0
        total_failed = 0
        for workspace_id in workspace_ids:
            result = await _sync_workspace(workspace_id)
            results[workspace_id] = result
            if result["status"] in ("completed", "completed_with_errors"):
                total_synced += 1
            else:
                total_failed += 1

        logger.info(
            "Hourly sync complete: %d succeeded, %d failed", total_synced, total_failed
        )
        return {
            "total_workspaces": len(workspace_ids),
            "total_workspaces_synced": total_synced,
            "total_workspaces_failed": total_failed,
            "started_at": started_at,
            "results": results,
        }

    return run_async(_sync_all())
