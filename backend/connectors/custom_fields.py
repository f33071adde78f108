"""
Custom field extraction for ClickUp tasks.

Workspaces name their custom fields freely ("Alpha Draft (date)", "QA Users",
"L2 / Substream"...). Each internal column is bound to one or more lowercase
name fragments; a ClickUp field matches when its name contains the fragment
(case-insensitive). The first matching field in the task's own
``custom_fields`` order wins. When several fields match, the pick is logged
once per sync run so schema collisions ("qa" vs "qa lm") are visible.

Absent fields yield None; they are expected across tenants with different
schemas.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

DATE: str = "date"
CHECKBOX: str = "checkbox"
NUMBER: str = "number"
USERS: str = "users"
LABELS: str = "labels"
TEXT: str = "text"

FIELD_TYPES: frozenset[str] = frozenset({DATE, CHECKBOX, NUMBER, USERS, LABELS, TEXT})


@dataclass(frozen=True)
class CustomFieldRule:
    """Binds a tasks column to ClickUp field-name fragments and a value type.

    ``names`` are tried in order; the first fragment whose field holds a
    value wins, so an empty "L2" field falls through to "Substream".
    """

    column: str
    names: tuple[str, ...]
    field_type: str


CUSTOM_FIELD_RULES: tuple[CustomFieldRule, ...] = (
    CustomFieldRule("alpha_draft_date", ("alpha draft",), DATE),
    CustomFieldRule("alpha_review_date", ("alpha review",), DATE),
    CustomFieldRule("at_risk_checkbox", ("at risk",), CHECKBOX),
    CustomFieldRule("beta_review_date", ("beta review",), DATE),
    CustomFieldRule("beta_revision_date", ("beta revision",), DATE),
    CustomFieldRule("design_priority", ("design priority",), TEXT),
    CustomFieldRule("developer", ("developer",), USERS),
    CustomFieldRule("development_status", ("development status",), TEXT),
    CustomFieldRule("final_review_sign_off_date", ("final review",), DATE),
    CustomFieldRule("final_revision_received_date", ("final revision",), DATE),
    CustomFieldRule("graphics_design_request_checkbox", ("graphics design",), CHECKBOX),
    CustomFieldRule("itc_phase", ("itc phase",), TEXT),
    CustomFieldRule("l2_substream", ("l2", "substream"), TEXT),
    CustomFieldRule("l3_labels", ("l3",), LABELS),
    CustomFieldRule("l3_script_available_checkbox", ("l3 script",), CHECKBOX),
    CustomFieldRule("modalities", ("modalities",), LABELS),
    CustomFieldRule("number_of_screens", ("number of screens",), NUMBER),
    CustomFieldRule("overall_due_date", ("overall due",), DATE),
    CustomFieldRule("overdue_status", ("overdue status",), TEXT),
    CustomFieldRule("progress_updates", ("progress updates",), TEXT),
    CustomFieldRule("qa_users", ("qa users",), USERS),
    CustomFieldRule("qa_date", ("qa date",), DATE),
    CustomFieldRule("qa_lm_users", ("qa lm",), USERS),
    CustomFieldRule("ready_to_be_assigned_checkbox", ("ready to be assigned",), CHECKBOX),
    CustomFieldRule("release_status", ("release status",), TEXT),
    CustomFieldRule("roles", ("roles",), LABELS),
    CustomFieldRule("sme_approver", ("sme approver",), USERS),
    CustomFieldRule("script_received_date", ("script received",), DATE),
    CustomFieldRule("sign_off_received_date", ("sign off",), DATE),
    CustomFieldRule("start_date_custom", ("start date",), DATE),
    CustomFieldRule("submit_first_draft_date", ("submit first draft",), DATE),
    CustomFieldRule("t_codes", ("t codes",), LABELS),
    CustomFieldRule("target_close_date", ("target close",), DATE),
    CustomFieldRule("temp_archived_checkbox", ("temp archived",), CHECKBOX),
    CustomFieldRule("value_stream", ("value stream",), TEXT),
    CustomFieldRule("value_stream_lead", ("value stream lead",), USERS),
)

# (fragment, matched names) pairs already reported as ambiguous in one run
AmbiguityLog = set[tuple[str, tuple[str, ...]]]


def epoch_ms_to_datetime(value: Any) -> Optional[datetime]:
    """
    Convert a ClickUp epoch-milliseconds value (str or int) to naive UTC.

    Empty values give None; anything non-numeric raises ValueError.
    """
    if value is None or value == "":
        return None
    millis = int(value)
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).replace(tzinfo=None)


def find_field(
    task: dict[str, Any], target: str, reported: Optional[AmbiguityLog] = None
) -> Optional[dict[str, Any]]:
    """
    Return the first custom field whose name contains ``target``.

    Ambiguous matches are logged; with ``reported`` each collision is logged
    only the first time it is seen in that set.
    """
    needle: str = target.lower()
    matches: list[dict[str, Any]] = [
        field
        for field in task.get("custom_fields") or []
        if needle in (field.get("name") or "").lower()
    ]
    if not matches:
        return None

    if len(matches) > 1:
        names: tuple[str, ...] = tuple(m.get("name") or "" for m in matches)
        if reported is None or (needle, names) not in reported:
            if reported is not None:
                reported.add((needle, names))
            logger.warning(
                "Custom field %r matches %d fields %s; using %r",
                target,
                len(matches),
                list(names),
                names[0],
                extra={"task_id": task.get("id")},
            )
    return matches[0]


def coerce(value: Any, field_type: str) -> Any:
    """Coerce a raw custom field value to the column type."""
    if field_type == CHECKBOX:
        return value is True or value == "true"

    if value is None or value == "":
        return None

    if field_type == DATE:
        return epoch_ms_to_datetime(value)
    if field_type == NUMBER:
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    if field_type == USERS:
        if isinstance(value, list):
            return value
        return [token.strip() for token in str(value).split(",")]
    if field_type == LABELS:
        if isinstance(value, list):
            return value
        return [value]
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _resolve_options(field: dict[str, Any]) -> Any:
    """
    Swap drop-down / label option references for their display names.

    ClickUp stores a drop-down value as the option's orderindex and a labels
    value as a list of option ids; unknown references are kept as-is.
    """
    value = field.get("value")
    options: list[dict[str, Any]] = (field.get("type_config") or {}).get("options") or []
    if value is None or not options:
        return value

    field_kind: str = field.get("type") or ""
    if field_kind == "drop_down":
        for option in options:
            if value in (option.get("orderindex"), option.get("id")):
                return option.get("name", value)
        return value
    if field_kind == "labels" and isinstance(value, list):
        labels: dict[Any, Any] = {o.get("id"): o.get("label") or o.get("name") for o in options}
        return [labels.get(v) or v for v in value]
    return value


def extract(
    task: dict[str, Any],
    target: str,
    expected_type: str,
    reported: Optional[AmbiguityLog] = None,
) -> Any:
    """
    Find the custom field named like ``target`` and coerce its value.

    Returns None when the task has no such field. Raises ValueError when a
    date value is malformed.
    """
    if expected_type not in FIELD_TYPES:
        raise ValueError(f"Unknown custom field type: {expected_type}")
    field = find_field(task, target, reported)
    if field is None:
        return None
    return coerce(_resolve_options(field), expected_type)


def extract_rule(
    task: dict[str, Any], rule: CustomFieldRule, reported: Optional[AmbiguityLog] = None
) -> Any:
    for name in rule.names:
        value = extract(task, name, rule.field_type, reported)
        if value is not None:
            return value
    return None


def extract_all(
    task: dict[str, Any], reported: Optional[AmbiguityLog] = None
) -> dict[str, Any]:
    """Evaluate every rule; returns a value (possibly None) per column."""
    return {
        rule.column: extract_rule(task, rule, reported) for rule in CUSTOM_FIELD_RULES
    }
