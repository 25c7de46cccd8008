from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from siteqa import db
from siteqa.auth import CurrentUser, get_current_user, get_settings, rate_limited_user
from siteqa.config import Settings
from siteqa.errors import EligibilityError, NotFoundError, TransitionError
from siteqa.itp_batch import BatchUpdater, InstanceUpdate, ItemUpdate
from siteqa.itp_completion import OVERRIDE_STATUSES
from siteqa.permissions import can_perform
from siteqa.schemas import (
    ItpAssignIn,
    ItpBatchUpdateIn,
    ItpInstancePatchIn,
    ItpItemUpdateIn,
    ItpTemplateCreateIn,
)

logger = logging.getLogger("siteqa.itp")

router = APIRouter(prefix="/api/itp", tags=["itp"])


def _require(user: CurrentUser, action: str) -> None:
    if not can_perform(user.role, "itp", action):
        raise EligibilityError(f"Your role does not allow this ITP action ({action})")


def _items(updates: List[ItpItemUpdateIn]) -> List[ItemUpdate]:
    return [ItemUpdate(item_id=u.itemId, status=u.status, notes=u.notes or "") for u in updates]


def _updater(settings: Settings, user: CurrentUser) -> BatchUpdater:
    return BatchUpdater(
        settings.db_path,
        user.organization_id,
        user.user_id,
        workers=settings.batch_workers,
        timeout_sec=settings.sqlite_timeout_sec,
    )


@router.post("/templates", status_code=201)
def itp_template_create(
    body: ItpTemplateCreateIn,
    user: CurrentUser = Depends(rate_limited_user),
    settings: Settings = Depends(get_settings),
):
    _require(user, "create")
    with db.db_conn(settings.db_path, settings.sqlite_timeout_sec) as con:
        item = db.create_itp_template(con, user.organization_id, body.name, body.structure(), user.user_id)
    return {"ok": True, "item": item}


@router.post("/instances/assign", status_code=201)
def itp_assign(
    body: ItpAssignIn,
    user: CurrentUser = Depends(rate_limited_user),
    settings: Settings = Depends(get_settings),
):
    """Create one empty (draft) instance per template for the lot."""
    _require(user, "create")
    with db.db_conn(settings.db_path, settings.sqlite_timeout_sec) as con:
        if not db.get_project(con, body.projectId, user.organization_id):
            raise NotFoundError("Project not found")
        if not db.get_lot(con, body.lotId, body.projectId):
            raise NotFoundError("Lot not found")
        templates = []
        for template_id in dict.fromkeys(body.templateIds):
            t = db.get_itp_template(con, template_id, user.organization_id)
            if not t or not t["is_active"]:
                raise NotFoundError(f"Template {template_id} not found")
            templates.append(t)
        instances = [
            db.create_itp_instance(con, user.organization_id, body.projectId, body.lotId, t["id"], user.user_id)
            for t in templates
        ]

    logger.info("assigned %s template(s) to lot %s", len(instances), body.lotId)
    return {"message": f"Assigned {len(instances)} ITP(s)", "instances": instances}


@router.get("/instances/{instance_id}")
def itp_instance_get(
    instance_id: int,
    user: CurrentUser = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    _require(user, "read")
    with db.db_conn(settings.db_path, settings.sqlite_timeout_sec) as con:
        item = db.get_itp_instance(con, instance_id, user.organization_id)
    if not item:
        raise NotFoundError("Instance not found", code="INSTANCE_NOT_FOUND")
    return {"ok": True, "item": item}


@router.patch("/instances/{instance_id}")
def itp_instance_patch(
    instance_id: int,
    body: ItpInstancePatchIn,
    user: CurrentUser = Depends(rate_limited_user),
    settings: Settings = Depends(get_settings),
):
    """
    Record item results on one instance. An explicit inspection_status
    replaces the derived one; approved/rejected is a sign-off and needs
    the approve permission, as does editing an instance already signed off.
    """
    _require(user, "update")
    if not body.updates and body.inspection_status is None:
        raise TransitionError("Nothing to update", code="EMPTY_UPDATE")

    can_approve = can_perform(user.role, "itp", "approve")
    if body.inspection_status in OVERRIDE_STATUSES and not can_approve:
        raise EligibilityError("Only approvers can approve or reject an inspection")

    item = _updater(settings, user).update_one(
        instance_id,
        _items(body.updates),
        explicit_status=body.inspection_status,
        allow_locked=can_approve,
    )
    return {"ok": True, "item": item}


@router.post("/batch-update")
def itp_batch_update(
    body: ItpBatchUpdateIn,
    user: CurrentUser = Depends(rate_limited_user),
    settings: Settings = Depends(get_settings),
):
    _require(user, "update")
    if len(body.updates) > settings.batch_max_instances:
        raise TransitionError(
            f"Too many instances in one batch (max {settings.batch_max_instances})",
            code="BATCH_TOO_LARGE",
        )

    updates = [InstanceUpdate(instance_id=u.instanceId, items=_items(u.updates)) for u in body.updates]
    outcome = _updater(settings, user).run(updates)

    out: Dict[str, Any] = {"success": True, "updated": outcome.updated, "results": outcome.results}
    if outcome.errors:
        out["errors"] = outcome.errors
    return out
