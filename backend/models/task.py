"""
Task model - a ClickUp task mirrored into local storage.

Natural key: ``(workspace_id, task_id)``. Rows are created the first time a
sync observes a task and overwritten in place on every later sync; the sync
pipeline never deletes them.

Columns fall into three groups:
- core fields copied straight from the ClickUp task payload
- derived fields computed from nested collections (subtasks, links, time)
- custom fields matched by name from the workspace's own ClickUp schema
  (see ``connectors.custom_fields.CUSTOM_FIELD_RULES``)
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class Task(Base):
    """A task synced from ClickUp or imported from a spreadsheet."""

    __tablename__ = "tasks"
    __table_args__ = (
        Index("idx_tasks_workspace_id", "workspace_id"),
        Index("idx_tasks_status", "status"),
        Index("idx_tasks_space_id", "space_id"),
        Index("idx_tasks_list_id", "list_id"),
        Index("idx_tasks_assignee", "assignee"),
        Index("idx_tasks_due_date", "due_date"),
        Index("idx_tasks_date_created", "date_created"),
        Index("idx_tasks_development_status", "development_status"),
        Index("idx_tasks_value_stream", "value_stream"),
        Index(
            "uq_tasks_workspace_task",
            "workspace_id",
            "task_id",
            unique=True,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False
    )

    # External ID from ClickUp
    task_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # ── Core ────────────────────────────────────────────────────────────
    task_name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    task_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    assignee: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Location in the hierarchy (names for display, ids for filtering)
    space: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    space_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    folder: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    folder_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # "list" would shadow the builtin inside the class body
    list_name: Mapped[Optional[str]] = mapped_column("list", String(255), nullable=True)
    list_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    tags: Mapped[Optional[list[str]]] = mapped_column(JSONB, nullable=True)
    lists: Mapped[Optional[list[str]]] = mapped_column(JSONB, nullable=True)
    sprints: Mapped[Optional[list[str]]] = mapped_column(JSONB, nullable=True)

    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    date_created: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    date_updated: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    date_closed: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    date_done: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # ── Derived ─────────────────────────────────────────────────────────
    latest_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    comment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    assigned_comment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    subtask_ids: Mapped[Optional[list[str]]] = mapped_column(JSONB, nullable=True)
    subtask_urls: Mapped[Optional[list[str]]] = mapped_column(JSONB, nullable=True)
    linked_tasks: Mapped[Optional[list[str]]] = mapped_column(JSONB, nullable=True)
    linked_docs: Mapped[Optional[list[str]]] = mapped_column(JSONB, nullable=True)
    time_logged: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    time_logged_rolled_up: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    time_estimate: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    time_estimate_rolled_up: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    time_in_status: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    points_estimate_rolled_up: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # ── Custom fields ───────────────────────────────────────────────────
    alpha_draft_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    alpha_review_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    at_risk_checkbox: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    beta_review_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    beta_revision_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    design_priority: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    developer: Mapped[Optional[list[Any]]] = mapped_column(JSONB, nullable=True)
    development_status: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    final_review_sign_off_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    final_revision_received_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    graphics_design_request_checkbox: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    itc_phase: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    l2_substream: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    l3_labels: Mapped[Optional[list[Any]]] = mapped_column(JSONB, nullable=True)
    l3_script_available_checkbox: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    modalities: Mapped[Optional[list[Any]]] = mapped_column(JSONB, nullable=True)
    number_of_screens: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    overall_due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    overdue_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    progress_updates: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    qa_users: Mapped[Optional[list[Any]]] = mapped_column(JSONB, nullable=True)
    qa_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    qa_lm_users: Mapped[Optional[list[Any]]] = mapped_column(JSONB, nullable=True)
    ready_to_be_assigned_checkbox: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    release_status: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    roles: Mapped[Optional[list[Any]]] = mapped_column(JSONB, nullable=True)
    sme_approver: Mapped[Optional[list[Any]]] = mapped_column(JSONB, nullable=True)
    script_received_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sign_off_received_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    start_date_custom: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    submit_first_draft_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    t_codes: Mapped[Optional[list[Any]]] = mapped_column(JSONB, nullable=True)
    target_close_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    temp_archived_checkbox: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    value_stream: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    value_stream_lead: Mapped[Optional[list[Any]]] = mapped_column(JSONB, nullable=True)

    # Timestamps
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=True
    )
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=True
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        from config import to_iso8601

        result: dict[str, Any] = {}
        for attr in sa_inspect(type(self)).column_attrs:
            value = getattr(self, attr.key)
            if isinstance(value, uuid.UUID):
                value = str(value)
            elif isinstance(value, datetime):
                value = to_iso8601(value)
            result[attr.columns[0].name] = value
        return result
