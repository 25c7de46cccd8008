from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

ITEM_RESULTS = ("pass", "fail", "na")
INSPECTION_STATUSES = ("draft", "in_progress", "completed", "approved", "rejected")
OVERRIDE_STATUSES = {"approved", "rejected"}
DEFAULT_SECTION = "items"


class InvalidInstanceData(ValueError):
    pass


@dataclass(frozen=True)
class ItemResult:
    result: Optional[str] = None
    notes: str = ""
    recorded_by: Optional[int] = None
    recorded_at: Optional[str] = None

    @property
    def is_counted(self) -> bool:
        return self.result in ITEM_RESULTS


@dataclass(frozen=True)
class Completion:
    completion_percentage: int
    counted_items: int
    total_items: int


InstanceData = Dict[str, Dict[str, ItemResult]]


# ---------------------------------------------------------------------
# Boundary parsing
# ---------------------------------------------------------------------


def _parse_item(section_id: str, item_id: str, raw: Any) -> ItemResult:
    if not isinstance(raw, Mapping):
        raise InvalidInstanceData(f"item {section_id}/{item_id} must be an object")
    result = raw.get("result")
    if isinstance(result, str):
        result = result.strip().lower() or None
    if result is not None and result not in ITEM_RESULTS:
        raise InvalidInstanceData(f"item {section_id}/{item_id} has unsupported result {result!r}")
    notes = raw.get("notes") or ""
    if not isinstance(notes, str):
        raise InvalidInstanceData(f"item {section_id}/{item_id} notes must be text")
    recorded_by = raw.get("recorded_by", raw.get("updated_by"))
    if recorded_by is not None:
        try:
            recorded_by = int(recorded_by)
        except (TypeError, ValueError):
            raise InvalidInstanceData(f"item {section_id}/{item_id} has unsupported recorder {recorded_by!r}") from None
    recorded_at = raw.get("recorded_at", raw.get("updated_at"))
    return ItemResult(
        result=result,
        notes=notes,
        recorded_by=recorded_by,
        recorded_at=str(recorded_at) if recorded_at is not None else None,
    )


def parse_instance_data(raw: Optional[Mapping[str, Any]]) -> InstanceData:
    """
    Validate a stored/submitted section -> item -> result mapping and
    return the typed structure the calculator works on.
    Legacy rows written with updated_by/updated_at are accepted.
    """
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise InvalidInstanceData("instance data must be an object")
    out: InstanceData = {}
    for section_id, items in raw.items():
        if not isinstance(items, Mapping):
            raise InvalidInstanceData(f"section {section_id} must be an object")
        out[str(section_id)] = {
            str(item_id): _parse_item(str(section_id), str(item_id), item)
            for item_id, item in items.items()
        }
    return out


def dump_instance_data(data: InstanceData) -> Dict[str, Dict[str, Dict[str, Any]]]:
    return {
        section_id: {item_id: asdict(item) for item_id, item in items.items()}
        for section_id, items in data.items()
    }


# ---------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------


def calculate_completion(data: InstanceData) -> Completion:
    total = 0
    counted = 0
    for items in data.values():
        for item in items.values():
            total += 1
            if item.is_counted:
                counted += 1
    if total == 0:
        return Completion(0, 0, 0)
    pct = (Decimal(100) * counted / total).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return Completion(int(pct), counted, total)


def determine_status(completion_percentage: int) -> str:
    if completion_percentage >= 100:
        return "completed"
    if completion_percentage > 0:
        return "in_progress"
    return "draft"


def resolve_status(
    completion_percentage: int,
    explicit: Optional[str] = None,
    current: Optional[str] = None,
) -> str:
    """
    An explicit status from the caller always wins. Otherwise an existing
    approved/rejected sign-off is kept, and only then is the status derived.
    """
    if explicit:
        return explicit
    if current in OVERRIDE_STATUSES:
        return current
    return determine_status(completion_percentage)


# ---------------------------------------------------------------------
# Item updates
# ---------------------------------------------------------------------


def parse_item_id(composite: str) -> tuple[str, str]:
    """'<section>-<item>' -> (section, item); ids without '-' go to the default section."""
    composite = (composite or "").strip()
    if "-" in composite:
        section_id, _, item_id = composite.partition("-")
        if section_id and item_id:
            return section_id, item_id
    return DEFAULT_SECTION, composite


def merge_item_update(
    data: InstanceData,
    section_id: str,
    item_id: str,
    result: Optional[str],
    notes: str,
    recorded_by: int,
    now: str,
) -> InstanceData:
    """
    Return a copy of `data` with the item written at (section_id, item_id).
    Re-sending an identical result keeps the stored entry untouched.
    """
    merged = {sid: dict(items) for sid, items in data.items()}
    section = merged.setdefault(section_id, {})
    existing = section.get(item_id)
    notes = notes or ""
    if (
        existing is not None
        and existing.result == result
        and existing.notes == notes
        and existing.recorded_by == recorded_by
    ):
        return merged
    section[item_id] = ItemResult(result=result, notes=notes, recorded_by=recorded_by, recorded_at=now)
    return merged


def apply_item_updates(
    data: InstanceData,
    updates: Iterable[Tuple[str, Optional[str], str]],
    recorded_by: int,
    now: str,
) -> InstanceData:
    """
    Apply (composite item id, result, notes) updates in order.
    An item whose final content equals its stored entry keeps that entry,
    however many times the updates touched it.
    """
    merged = data
    touched = set()
    for composite, result, notes in updates:
        section_id, item_id = parse_item_id(composite)
        touched.add((section_id, item_id))
        merged = merge_item_update(merged, section_id, item_id, result, notes, recorded_by, now)

    for section_id, item_id in touched:
        before = data.get(section_id, {}).get(item_id)
        after = merged[section_id][item_id]
        if before is not None and (before.result, before.notes, before.recorded_by) == (
            after.result,
            after.notes,
            after.recorded_by,
        ):
            merged[section_id][item_id] = before
    return merged
