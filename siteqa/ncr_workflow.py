from __future__ import annotations

from dataclasses import dataclass, field
from numbers import Real
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from siteqa.permissions import Actor

NCR_STATUSES = ("open", "acknowledged", "in_progress", "resolved", "disputed", "closed")
TERMINAL_STATUSES = {"closed"}

DISPUTE_CATEGORIES = (
    "incorrect_issue",
    "not_responsible",
    "already_fixed",
    "scope_disagreement",
    "other",
)

ROOT_CAUSE_MIN = 10
CORRECTIVE_ACTION_MIN = 10
DISPUTE_REASON_MIN = 20
REOPEN_REASON_MIN = 10

# target -> statuses it may be entered from
TRANSITIONS: Dict[str, set[str]] = {
    "acknowledged": {"open"},
    "in_progress": {"acknowledged"},
    "resolved": {"acknowledged", "in_progress"},
    "disputed": {"open", "acknowledged", "in_progress", "resolved"},
    "closed": {"open", "acknowledged", "in_progress", "resolved", "disputed"},
    "open": {"disputed", "closed"},
}

# target -> columns written on entry (besides status)
PAYLOAD_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "resolved": ("root_cause", "corrective_action", "preventive_action", "actual_cost"),
    "disputed": ("dispute_reason", "dispute_category"),
    "open": ("reopened_reason",),
}

# target -> timestamp column stamped on entry
TIMESTAMP_COLUMNS: Dict[str, str] = {
    "acknowledged": "acknowledged_at",
    "in_progress": "started_at",
    "resolved": "resolved_at",
    "disputed": "disputed_at",
    "closed": "closed_at",
}


@dataclass(frozen=True)
class Decision:
    allowed: bool
    kind: str = "ok"  # ok | noop | eligibility | transition | validation
    reason: str = ""
    missing_fields: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------
# Field checks
# ---------------------------------------------------------------------


def _text_ok(payload: Mapping[str, Any], key: str, min_len: int) -> bool:
    v = payload.get(key)
    return isinstance(v, str) and len(v.strip()) >= min_len


def _optional_text_ok(payload: Mapping[str, Any], key: str) -> bool:
    v = payload.get(key)
    return v is None or isinstance(v, str)


def _optional_cost_ok(payload: Mapping[str, Any], key: str) -> bool:
    v = payload.get(key)
    if v is None:
        return True
    if isinstance(v, bool) or not isinstance(v, Real):
        return False
    return v >= 0


def _resolved_fields(payload: Mapping[str, Any]) -> List[str]:
    missing = []
    if not _text_ok(payload, "root_cause", ROOT_CAUSE_MIN):
        missing.append("root_cause")
    if not _text_ok(payload, "corrective_action", CORRECTIVE_ACTION_MIN):
        missing.append("corrective_action")
    if not _optional_text_ok(payload, "preventive_action"):
        missing.append("preventive_action")
    if not _optional_cost_ok(payload, "actual_cost"):
        missing.append("actual_cost")
    return missing


def _disputed_fields(payload: Mapping[str, Any]) -> List[str]:
    missing = []
    if not _text_ok(payload, "dispute_reason", DISPUTE_REASON_MIN):
        missing.append("dispute_reason")
    if payload.get("dispute_category") not in DISPUTE_CATEGORIES:
        missing.append("dispute_category")
    return missing


def _reopen_fields(payload: Mapping[str, Any]) -> List[str]:
    if not _text_ok(payload, "reopened_reason", REOPEN_REASON_MIN):
        return ["reopened_reason"]
    return []


FIELD_RULES: Dict[str, Callable[[Mapping[str, Any]], List[str]]] = {
    "resolved": _resolved_fields,
    "disputed": _disputed_fields,
    "open": _reopen_fields,
}


# ---------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------


def _eligibility_reason(current: str, target: str, actor: Actor) -> Optional[str]:
    """None when the actor may attempt current -> target, otherwise the refusal text."""
    if actor.is_admin:
        return None
    if target in {"in_progress", "resolved"}:
        if actor.is_assignee:
            return None
        return f"Only the assigned user or an administrator can move this NCR to {target}"
    if target == "disputed":
        if actor.is_assignee or actor.is_contractor_member:
            return None
        return "Only the assigned user, the responsible contractor, or an administrator can dispute this NCR"
    if target == "acknowledged":
        if actor.can("ncr", "update"):
            return None
        return "Your role does not allow editing NCRs"
    if target == "closed":
        return "Only an administrator or owner can close an NCR"
    if target == "open":
        if current == "closed":
            return "Only an administrator or owner can reopen a closed NCR"
        if actor.is_raiser:
            return None
        return "Only the raiser or an administrator can reopen this NCR"
    return f"Unknown NCR status: {target}"


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------


def decide(
    current_status: str,
    target_status: str,
    actor: Actor,
    payload: Optional[Mapping[str, Any]] = None,
) -> Decision:
    """
    Decide whether `actor` may move an NCR from `current_status` to
    `target_status` with the supplied `payload`.

    Order: unknown status, no-op, eligibility, graph, fields. All field
    violations are reported together. Nothing is persisted here.
    """
    payload = payload or {}
    current = (current_status or "").strip().lower()
    target = (target_status or "").strip().lower()

    if current not in NCR_STATUSES or target not in NCR_STATUSES:
        return Decision(False, "transition", f"Invalid state transition from {current_status} to {target_status}")

    if current == target:
        return Decision(True, "noop")

    refusal = _eligibility_reason(current, target, actor)
    if refusal:
        return Decision(False, "eligibility", refusal)

    if current not in TRANSITIONS.get(target, set()):
        return Decision(False, "transition", f"Invalid state transition from {current} to {target}")

    # administrative close skips the evidence contract
    if target == "closed":
        return Decision(True)

    rule = FIELD_RULES.get(target)
    missing = rule(payload) if rule else []
    if missing:
        return Decision(False, "validation", f"Missing required fields: {', '.join(missing)}", missing)
    return Decision(True)


def allowed_targets(current_status: str, actor: Actor) -> List[str]:
    """Statuses the actor could move to from here, payload aside."""
    current = (current_status or "").strip().lower()
    out = []
    for target in NCR_STATUSES:
        if target == current or current not in TRANSITIONS.get(target, set()):
            continue
        if _eligibility_reason(current, target, actor) is None:
            out.append(target)
    return out


def transition_changes(target_status: str, payload: Mapping[str, Any], now: str) -> Dict[str, Any]:
    """Column values to write when entering `target_status`."""
    changes: Dict[str, Any] = {"status": target_status, "updated_at": now}
    for col in PAYLOAD_COLUMNS.get(target_status, ()):
        if col in payload:
            v = payload[col]
            changes[col] = v.strip() if isinstance(v, str) else v
    ts_col = TIMESTAMP_COLUMNS.get(target_status)
    if ts_col:
        changes[ts_col] = now
    return changes
