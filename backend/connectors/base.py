"""
Base connector class and the sync error taxonomy.

Connectors are constructed per workspace and per sync run; they never share
state (rate-limit quota, caches) across workspaces or runs.
"""

import logging
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from services.task_store import TaskStore


logger = logging.getLogger(__name__)


class ClickUpSyncError(RuntimeError):
    """Base class for every error raised by the task sync pipeline."""


class CredentialError(ClickUpSyncError):
    """Raised when the workspace API key is missing, malformed or undecryptable."""


class RateLimitExhaustedError(ClickUpSyncError):
    """Raised when ClickUp keeps answering 429 past the configured retry budget."""

    def __init__(self, endpoint: str, attempts: int) -> None:
        super().__init__(
            f"ClickUp rate limit still exceeded for {endpoint} after {attempts} attempts"
        )
        self.endpoint = endpoint
        self.attempts = attempts


class TransientFetchError(ClickUpSyncError):
    """Raised when listing one branch of the hierarchy (space/folder/list) fails."""

    def __init__(self, scope: str, scope_id: str, message: str) -> None:
        super().__init__(f"Failed to fetch {scope} {scope_id}: {message}")
        self.scope = scope
        self.scope_id = scope_id


class TaskMappingError(ClickUpSyncError):
    """Raised when a single task cannot be mapped or written."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class FatalSyncError(ClickUpSyncError):
    """Raised when a sync fails before any task could be processed."""


class SyncCancelledError(ClickUpSyncError):
    """Raised when a sync should stop (workspace deactivated or client gone)."""


class WorkspaceNotFoundError(ClickUpSyncError):
    """Raised when a workspace does not exist or is not active."""


class BaseConnector:
    """Shared plumbing for per-workspace connectors.

    Subclasses set ``source_system`` and talk to the store through
    ``self.store``; the store is injectable so tests can hand in a fake.
    """

    # Override in subclasses
    source_system: str = "unknown"

    def __init__(self, workspace_id: str, store: Optional["TaskStore"] = None) -> None:
        """
        Initialize the connector.

        Args:
            workspace_id: UUID of the workspace to sync data for (or a
                non-UUID sentinel for credential validation calls)
            store: Storage gateway; defaults to the SQLAlchemy-backed TaskStore
        """
        if store is None:
            from services.task_store import TaskStore

            store = TaskStore()
        self.workspace_id = workspace_id
        self.store = store

    async def ensure_sync_active(self, stage: str) -> None:
        """Stop in-flight syncs when the workspace has been deactivated."""
        if await self.store.is_workspace_active(self.workspace_id):
            return

        logger.info(
            "Sync cancelled because workspace was deactivated",
            extra={
                "workspace_id": self.workspace_id,
                "provider": self.source_system,
                "stage": stage,
            },
        )
        raise SyncCancelledError(
            f"{self.source_system} workspace deactivated during sync ({stage})"
        )
