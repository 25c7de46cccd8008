from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from siteqa import db
from siteqa.errors import EligibilityError, NotFoundError, VersionConflictError, WorkflowError
from siteqa.itp_completion import (
    OVERRIDE_STATUSES,
    InvalidInstanceData,
    apply_item_updates,
    calculate_completion,
    determine_status,
    dump_instance_data,
    parse_instance_data,
    resolve_status,
)

logger = logging.getLogger("siteqa.itp")


@dataclass(frozen=True)
class ItemUpdate:
    item_id: str
    status: Optional[str]
    notes: str = ""


@dataclass(frozen=True)
class InstanceUpdate:
    instance_id: Any
    items: Sequence[ItemUpdate]


@dataclass
class InstanceResult:
    instance_id: Any
    ok: bool
    item: Optional[Dict[str, Any]] = None
    error: str = ""
    code: str = ""


@dataclass
class BatchOutcome:
    results: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def updated(self) -> int:
        return len(self.results)


class BatchUpdater:
    """
    Applies item results to ITP instances of one organization.

    Every instance is its own read-modify-write against the store, guarded by
    the row version. A failure on one instance is recorded and never touches
    the others.
    """

    def __init__(
        self,
        db_path: Path | str,
        organization_id: int,
        actor_id: int,
        *,
        workers: int = 1,
        timeout_sec: float = 30.0,
        clock: Callable[[], str] = db.now_iso,
    ) -> None:
        self.db_path = db_path
        self.organization_id = int(organization_id)
        self.actor_id = int(actor_id)
        self.workers = max(1, int(workers))
        self.timeout_sec = timeout_sec
        self.clock = clock

    def update_one(
        self,
        instance_id: Any,
        items: Sequence[ItemUpdate],
        *,
        explicit_status: Optional[str] = None,
        allow_locked: bool = False,
    ) -> Dict[str, Any]:
        """Apply `items` to one instance and return the stored row; raises WorkflowError."""
        try:
            instance_id = int(instance_id)
        except (TypeError, ValueError):
            raise NotFoundError("Instance not found", code="INSTANCE_NOT_FOUND") from None

        with db.db_conn(self.db_path, self.timeout_sec, immediate=True) as con:
            row = db.get_itp_instance(con, instance_id, self.organization_id)
            if not row:
                raise NotFoundError("Instance not found", code="INSTANCE_NOT_FOUND")

            current_status = row["inspection_status"]
            if current_status in OVERRIDE_STATUSES and not allow_locked:
                raise EligibilityError(
                    f"Instance is {current_status} and can no longer be edited",
                    code="INSTANCE_LOCKED",
                )

            try:
                data = parse_instance_data(row["data"])
            except InvalidInstanceData as e:
                raise WorkflowError(str(e), code="INVALID_DATA") from e

            now = self.clock()
            data = apply_item_updates(
                data, [(u.item_id, u.status, u.notes) for u in items], self.actor_id, now
            )

            completion = calculate_completion(data)
            new_status = resolve_status(completion.completion_percentage, explicit_status, current_status)
            if explicit_status and explicit_status != determine_status(completion.completion_percentage):
                logger.warning(
                    "instance %s status override %s at %s%% (derived %s)",
                    instance_id,
                    explicit_status,
                    completion.completion_percentage,
                    determine_status(completion.completion_percentage),
                )

            saved = db.save_itp_instance(
                con,
                instance_id,
                int(row["version"]),
                dump_instance_data(data),
                completion.completion_percentage,
                new_status,
                now,
            )
            # the write lock is held since BEGIN IMMEDIATE; this is a guard, not a retry point
            if not saved:
                raise VersionConflictError("Instance was modified concurrently, retry the update")
            return db.get_itp_instance(con, instance_id, self.organization_id)

    def _process(self, update: InstanceUpdate) -> InstanceResult:
        try:
            item = self.update_one(update.instance_id, update.items)
        except WorkflowError as e:
            return InstanceResult(update.instance_id, False, error=e.message, code=e.code)
        except sqlite3.Error as e:
            logger.exception("instance %s update failed", update.instance_id)
            return InstanceResult(update.instance_id, False, error=str(e), code="UPDATE_FAILED")
        except Exception as e:
            logger.exception("instance %s processing error", update.instance_id)
            return InstanceResult(update.instance_id, False, error=str(e) or "Unknown error", code="PROCESSING_ERROR")
        return InstanceResult(update.instance_id, True, item=item)

    def run(self, updates: Sequence[InstanceUpdate]) -> BatchOutcome:
        logger.info("batch update: %s instance(s), org=%s", len(updates), self.organization_id)
        if self.workers > 1 and len(updates) > 1:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(updates))) as pool:
                results = list(pool.map(self._process, updates))
        else:
            results = [self._process(u) for u in updates]

        outcome = BatchOutcome()
        for r in results:
            if r.ok:
                outcome.results.append(r.item)
            else:
                outcome.errors.append({"instanceId": r.instance_id, "error": r.error, "code": r.code})
        logger.info("batch update complete: %s succeeded, %s failed", outcome.updated, len(outcome.errors))
        return outcome
