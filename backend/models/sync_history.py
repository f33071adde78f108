"""
Task sync history - one row per sync invocation.

A row is inserted with status ``in_progress`` when a sync starts and is
written exactly once more, when the run reaches a terminal status.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base

SYNC_TYPE_EXCEL_UPLOAD: str = "excel_upload"
SYNC_TYPE_API: str = "api_sync"

STATUS_IN_PROGRESS: str = "in_progress"
STATUS_COMPLETED: str = "completed"
STATUS_COMPLETED_WITH_ERRORS: str = "completed_with_errors"
STATUS_FAILED: str = "failed"


class TaskSyncHistory(Base):
    """Audit row for one bulk import or API sync."""

    __tablename__ = "task_sync_history"
    __table_args__ = (
        Index("idx_task_sync_history_workspace", "workspace_id"),
        Index("idx_task_sync_history_status", "status"),
        Index("idx_task_sync_history_created", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False
    )

    # 'excel_upload' or 'api_sync'
    sync_type: Mapped[str] = mapped_column(String(50), nullable=False)

    tasks_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tasks_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tasks_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Deletions on the ClickUp side are not reconciled; kept for reporting parity
    tasks_deleted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    sync_started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    sync_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    status: Mapped[str] = mapped_column(
        String(50), default=STATUS_IN_PROGRESS, nullable=False
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Request scope (list/space/sync_all) and skipped branches
    # ("metadata" is reserved on declarative classes)
    sync_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata", JSONB, nullable=True
    )

    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=True
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        from config import to_iso8601

        return {
            "id": str(self.id),
            "workspace_id": str(self.workspace_id),
            "sync_type": self.sync_type,
            "tasks_synced": self.tasks_synced,
            "tasks_created": self.tasks_created,
            "tasks_updated": self.tasks_updated,
            "tasks_deleted": self.tasks_deleted,
            "sync_started_at": to_iso8601(self.sync_started_at),
            "sync_completed_at": to_iso8601(self.sync_completed_at),
            "status": self.status,
            "error_message": self.error_message,
            "metadata": self.sync_metadata,
            "created_at": to_iso8601(self.created_at),
        }
