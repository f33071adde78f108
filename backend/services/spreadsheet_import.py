"""
Bulk task import from a ClickUp spreadsheet export (.xlsx or .csv).

Columns are found by exact header name (the names ClickUp's own export
uses), not by the fuzzy custom-field matcher. Each row is upserted on
``(workspace_id, Task ID)`` through the same reconciler as API syncs; on
update only the columns the spreadsheet carries are overwritten.

Supported cell formats:
- dates: spreadsheet serial numbers (days since 1899-12-30), native date
  cells, or any string dateutil can parse (month-first when ambiguous)
- list cells (tags, subtasks, labels, users): newline- or comma-separated
"""
from __future__ import annotations

import csv
import io
import json
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from dateutil import parser as date_parser

from connectors.base import TaskMappingError
from models.sync_history import (
    STATUS_COMPLETED,
    STATUS_COMPLETED_WITH_ERRORS,
    SYNC_TYPE_EXCEL_UPLOAD,
)
from services.reconciliation import TaskReconciler

if TYPE_CHECKING:
    from services.task_store import TaskStore

logger = logging.getLogger(__name__)

# Serial 25569 is 1970-01-01 in the 1900 date system
_UNIX_EPOCH_SERIAL: int = 25569
_EPOCH: datetime = datetime(1970, 1, 1)


class EmptySpreadsheetError(ValueError):
    """The uploaded sheet has no data rows."""


class InvalidSpreadsheetError(ValueError):
    """The upload is not a readable workbook."""


def spreadsheet_date(value: Any) -> Optional[datetime]:
    """Convert a date cell to a naive datetime; blank cells give None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _EPOCH + timedelta(days=float(value) - _UNIX_EPOCH_SERIAL)

    text = str(value).strip()
    if not text:
        return None
    try:
        return _EPOCH + timedelta(days=float(text) - _UNIX_EPOCH_SERIAL)
    except ValueError:
        pass
    try:
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError) as exc:
        raise ValueError(f"Unrecognised date: {text!r}") from exc
    if parsed.tzinfo:
        return parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_list_cell(value: Any) -> Optional[list[str]]:
    """Split a multi-value cell on newlines, else commas; blank gives None."""
    if value is None:
        return None
    if isinstance(value, list):
        return [str(v) for v in value]
    text = str(value).strip()
    if not text:
        return None
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return [str(v) for v in parsed]
    separator = "\n" if "\n" in text else ","
    return [part.strip() for part in text.split(separator) if part.strip()]


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int(value: Any) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _checkbox(value: Any) -> bool:
    return value is True or str(value).strip().lower() == "true"


# header -> (column, converter)
HEADER_COLUMNS: dict[str, tuple[str, Callable[[Any], Any]]] = {
    "Task Name": ("task_name", lambda v: _text(v) or ""),
    "Status": ("status", _text),
    "Task Content": ("task_content", lambda v: _text(v) or ""),
    "Assignee": ("assignee", _text),
    "Priority": ("priority", _text),
    "Latest Comment": ("latest_comment", _text),
    "Comment Count": ("comment_count", lambda v: _int(v) or 0),
    "Assigned Comment Count": ("assigned_comment_count", lambda v: _int(v) or 0),
    "Due Date": ("due_date", spreadsheet_date),
    "Start Date": ("start_date", spreadsheet_date),
    "Date Created": ("date_created", spreadsheet_date),
    "Date Updated": ("date_updated", spreadsheet_date),
    "Date Closed": ("date_closed", spreadsheet_date),
    "Date Done": ("date_done", spreadsheet_date),
    "Created By": ("created_by", _text),
    "Space": ("space", _text),
    "Folder": ("folder", _text),
    "List": ("list_name", _text),
    "Subtask ID's": ("subtask_ids", parse_list_cell),
    "Subtask URL's": ("subtask_urls", parse_list_cell),
    "tags": ("tags", parse_list_cell),
    "Lists": ("lists", parse_list_cell),
    "Time In Status": ("time_in_status", _text),
    "Points Estimate Rolled Up": ("points_estimate_rolled_up", lambda v: _float(v) or 0.0),
    "Alpha Draft (date)": ("alpha_draft_date", spreadsheet_date),
    "At risk? (checkbox)": ("at_risk_checkbox", _checkbox),
    "Development Status (drop down)": ("development_status", _text),
    "ITC Phase (drop down)": ("itc_phase", _text),
    "L2 / Substream (drop down)": ("l2_substream", _text),
    "L3 (labels)": ("l3_labels", parse_list_cell),
    "Modalities (labels)": ("modalities", parse_list_cell),
    "Number of Screens (number)": ("number_of_screens", _int),
    "Overall Due Date (date)": ("overall_due_date", spreadsheet_date),
    "Overdue Status (drop down)": ("overdue_status", _text),
    "Progress Updates (text)": ("progress_updates", _text),
    "Value Stream (drop down)": ("value_stream", _text),
    "Value Stream Lead (users)": ("value_stream_lead", parse_list_cell),
}

TASK_ID_HEADER: str = "Task ID"


def map_row(row: dict[str, Any]) -> dict[str, Any]:
    """Map one sheet row to task columns (only headers present in the sheet)."""
    task_id = _text(row.get(TASK_ID_HEADER))
    if not task_id:
        raise ValueError("Task ID is required")
    values: dict[str, Any] = {"task_id": task_id}
    for header, (column, convert) in HEADER_COLUMNS.items():
        if header in row:
            values[column] = convert(row[header])
    return values


def read_rows(filename: str, data: bytes) -> list[dict[str, Any]]:
    """Rows of the first worksheet (or the CSV) keyed by header name."""
    if filename.lower().endswith(".csv"):
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = data.decode("latin-1")
        rows = list(csv.DictReader(io.StringIO(text)))
    else:
        import openpyxl
        from openpyxl.utils.exceptions import InvalidFileException

        try:
            wb = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
        except (zipfile.BadZipFile, InvalidFileException, KeyError, OSError) as exc:
            raise InvalidSpreadsheetError(f"Could not read {filename}: {exc}") from exc
        try:
            ws = wb[wb.sheetnames[0]]
            sheet = ws.iter_rows(values_only=True)
            header = next(sheet, None)
            if header is None:
                return []
            names = [str(h).strip() if h is not None else "" for h in header]
            rows = [
                {name: cell for name, cell in zip(names, values) if name}
                for values in sheet
            ]
        finally:
            wb.close()

    # Skip rows where every cell is blank
    return [r for r in rows if any(v not in (None, "") for v in r.values())]


@dataclass
class ImportSummary:
    history_id: str
    status: str
    total: int = 0
    created: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "history_id": self.history_id,
            "status": self.status,
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "errors": self.errors,
        }


class SpreadsheetImporter:
    """Runs a spreadsheet upload as one ``excel_upload`` sync."""

    def __init__(self, store: "TaskStore") -> None:
        self.store = store
        self.reconciler = TaskReconciler(store)

    async def import_file(self, workspace_id: str, filename: str, data: bytes) -> ImportSummary:
        rows = read_rows(filename, data)
        if not rows:
            raise EmptySpreadsheetError("Spreadsheet is empty")

        history_id = await self.store.create_sync_history(
            workspace_id, SYNC_TYPE_EXCEL_UPLOAD, {"filename": filename, "rows": len(rows)}
        )
        summary = ImportSummary(history_id=history_id, status="in_progress", total=len(rows))

        # Header row is row 1
        for row_number, row in enumerate(rows, start=2):
            try:
                try:
                    values = map_row(row)
                except (ValueError, TypeError, OverflowError) as exc:
                    label = _text(row.get(TASK_ID_HEADER)) or f"row {row_number}"
                    raise TaskMappingError(label, str(exc)) from exc
                result = await self.reconciler.reconcile_values(workspace_id, values)
            except TaskMappingError as exc:
                logger.error(
                    "Failed to import task %s: %s",
                    exc.task_id,
                    exc,
                    extra={"workspace_id": workspace_id, "task_id": exc.task_id},
                )
                summary.errors.append(f"Task {exc.task_id}: {exc}")
                continue
            if result.created:
                summary.created += 1
            else:
                summary.updated += 1

        summary.status = STATUS_COMPLETED_WITH_ERRORS if summary.errors else STATUS_COMPLETED
        await self.store.finish_sync_history(
            history_id,
            status=summary.status,
            tasks_synced=summary.created + summary.updated,
            tasks_created=summary.created,
            tasks_updated=summary.updated,
            error_message=json.dumps(summary.errors) if summary.errors else None,
        )
        logger.info(
            "Spreadsheet import finished: %d created, %d updated, %d errors",
            summary.created,
            summary.updated,
            len(summary.errors),
            extra={"workspace_id": workspace_id, "history_id": history_id},
        )
        return summary
