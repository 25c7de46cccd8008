from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from siteqa import db
from siteqa.auth import CurrentUser, get_current_user, get_settings, rate_limited_user
from siteqa.config import Settings
from siteqa.errors import (
    EligibilityError,
    NotFoundError,
    TransitionError,
    VersionConflictError,
    error_from_decision,
)
from siteqa.ncr_workflow import allowed_targets, decide, transition_changes
from siteqa.permissions import Actor, can_manage_assignments, can_perform, ncr_relationship
from siteqa.schemas import (
    NcrAssignIn,
    NcrCreateIn,
    NcrDisputeIn,
    NcrNoteIn,
    NcrReopenIn,
    NcrResolveIn,
)

logger = logging.getLogger("siteqa.ncr")

router = APIRouter(prefix="/api", tags=["ncrs"])


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------


def _load_ncr(con, ncr_id: int, user: CurrentUser) -> Dict[str, Any]:
    ncr = db.get_ncr(con, ncr_id, user.organization_id, include_contractor=True)
    if not ncr:
        raise NotFoundError("NCR not found")
    return ncr


def _actor(ncr: Dict[str, Any], user: CurrentUser) -> Actor:
    # a contractor user acts with no role in the owning organization
    org_role = user.memberships.get(int(ncr["organization_id"]), "")
    return ncr_relationship(ncr, user.user_id, org_role, user.organization_ids)


def _transition(
    settings: Settings,
    user: CurrentUser,
    ncr_id: int,
    target: str,
    payload: Dict[str, Any],
    note: Optional[str],
) -> Dict[str, Any]:
    with db.db_conn(settings.db_path, settings.sqlite_timeout_sec, immediate=True) as con:
        ncr = _load_ncr(con, ncr_id, user)
        cur_status = ncr["status"]
        decision = decide(cur_status, target, _actor(ncr, user), payload)
        if not decision.allowed:
            logger.warning(
                "ncr %s %s -> %s refused for user %s: %s",
                ncr_id, cur_status, target, user.user_id, decision.reason,
            )
            raise error_from_decision(decision)
        if decision.kind == "noop":
            return {"ok": True, "item": ncr, "from": cur_status, "to": cur_status, "changed": False}

        now = db.now_iso()
        if not db.update_ncr(con, ncr_id, cur_status, transition_changes(target, payload, now)):
            raise VersionConflictError("NCR was changed by another request, reload and retry")
        db.insert_ncr_history(con, ncr_id, cur_status, target, user.user_id, note, now)
        item = db.get_ncr(con, ncr_id, int(ncr["organization_id"]))

    logger.info("ncr %s %s -> %s by user %s", ncr_id, cur_status, target, user.user_id)
    return {"ok": True, "item": item, "from": cur_status, "to": target, "changed": True}


def _payload(body: NcrNoteIn) -> Dict[str, Any]:
    return body.model_dump(exclude={"note"}, exclude_none=True)


# ---------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------


@router.post("/ncrs", status_code=201)
def ncr_create(
    body: NcrCreateIn,
    user: CurrentUser = Depends(rate_limited_user),
    settings: Settings = Depends(get_settings),
):
    if not can_perform(user.role, "ncr", "create"):
        raise EligibilityError("Your role does not allow raising NCRs")

    with db.db_conn(settings.db_path, settings.sqlite_timeout_sec) as con:
        if not db.get_project(con, body.project_id, user.organization_id):
            raise NotFoundError("Project not found")
        if body.lot_id is not None and not db.get_lot(con, body.lot_id, body.project_id):
            raise NotFoundError("Lot not found")
        if body.assigned_to is not None and not db.is_member(con, user.organization_id, body.assigned_to):
            raise TransitionError("Assignee must be a member of the organization", code="INVALID_ASSIGNEE")
        if body.contractor_id is not None and not db.organization_exists(con, body.contractor_id):
            raise NotFoundError("Contractor organization not found")
        item = db.create_ncr(con, user.organization_id, user.user_id, body.model_dump())

    logger.info("ncr %s raised by user %s", item["ncr_number"], user.user_id)
    return {"ok": True, "item": item}


@router.get("/ncrs/{ncr_id}")
def ncr_get(ncr_id: int, user: CurrentUser = Depends(get_current_user), settings: Settings = Depends(get_settings)):
    with db.db_conn(settings.db_path, settings.sqlite_timeout_sec) as con:
        item = _load_ncr(con, ncr_id, user)
    return {"ok": True, "item": item}


@router.get("/ncrs/{ncr_id}/history")
def ncr_history(ncr_id: int, user: CurrentUser = Depends(get_current_user), settings: Settings = Depends(get_settings)):
    with db.db_conn(settings.db_path, settings.sqlite_timeout_sec) as con:
        _load_ncr(con, ncr_id, user)
        items = db.list_ncr_history(con, ncr_id)
    return {"ok": True, "items": items}


@router.get("/ncrs/{ncr_id}/transitions")
def ncr_transitions(ncr_id: int, user: CurrentUser = Depends(get_current_user), settings: Settings = Depends(get_settings)):
    with db.db_conn(settings.db_path, settings.sqlite_timeout_sec) as con:
        ncr = _load_ncr(con, ncr_id, user)
    return {"ok": True, "status": ncr["status"], "allowed": allowed_targets(ncr["status"], _actor(ncr, user))}


@router.post("/ncrs/{ncr_id}/assign")
def ncr_assign(
    ncr_id: int,
    body: NcrAssignIn,
    user: CurrentUser = Depends(rate_limited_user),
    settings: Settings = Depends(get_settings),
):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise TransitionError("Nothing to assign", code="EMPTY_ASSIGNMENT")

    with db.db_conn(settings.db_path, settings.sqlite_timeout_sec, immediate=True) as con:
        ncr = db.get_ncr(con, ncr_id, user.organization_id)
        if not ncr:
            raise NotFoundError("NCR not found")
        if not can_manage_assignments(user.role):
            raise EligibilityError("Only administrators or project managers can assign NCRs")
        if ncr["status"] == "closed" and not user.is_admin:
            raise EligibilityError("Closed NCRs can only be changed by an administrator")
        if changes.get("assigned_to") is not None and not db.is_member(con, user.organization_id, changes["assigned_to"]):
            raise TransitionError("Assignee must be a member of the organization", code="INVALID_ASSIGNEE")
        if changes.get("contractor_id") is not None and not db.organization_exists(con, changes["contractor_id"]):
            raise NotFoundError("Contractor organization not found")

        changes["updated_at"] = db.now_iso()
        if not db.update_ncr(con, ncr_id, ncr["status"], changes):
            raise VersionConflictError("NCR was changed by another request, reload and retry")
        item = db.get_ncr(con, ncr_id, user.organization_id)

    logger.info("ncr %s assignment changed by user %s", ncr_id, user.user_id)
    return {"ok": True, "item": item}


# ---------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------


@router.post("/ncrs/{ncr_id}/acknowledge")
def ncr_acknowledge(
    ncr_id: int,
    body: NcrNoteIn = NcrNoteIn(),
    user: CurrentUser = Depends(rate_limited_user),
    settings: Settings = Depends(get_settings),
):
    return _transition(settings, user, ncr_id, "acknowledged", {}, body.note)


@router.post("/ncrs/{ncr_id}/start_work")
def ncr_start_work(
    ncr_id: int,
    body: NcrNoteIn = NcrNoteIn(),
    user: CurrentUser = Depends(rate_limited_user),
    settings: Settings = Depends(get_settings),
):
    return _transition(settings, user, ncr_id, "in_progress", {}, body.note)


@router.post("/ncrs/{ncr_id}/resolve")
def ncr_resolve(
    ncr_id: int,
    body: NcrResolveIn,
    user: CurrentUser = Depends(rate_limited_user),
    settings: Settings = Depends(get_settings),
):
    return _transition(settings, user, ncr_id, "resolved", _payload(body), body.note)


@router.post("/ncrs/{ncr_id}/dispute")
def ncr_dispute(
    ncr_id: int,
    body: NcrDisputeIn,
    user: CurrentUser = Depends(rate_limited_user),
    settings: Settings = Depends(get_settings),
):
    return _transition(settings, user, ncr_id, "disputed", _payload(body), body.note)


@router.post("/ncrs/{ncr_id}/close")
def ncr_close(
    ncr_id: int,
    body: NcrNoteIn = NcrNoteIn(),
    user: CurrentUser = Depends(rate_limited_user),
    settings: Settings = Depends(get_settings),
):
    return _transition(settings, user, ncr_id, "closed", {}, body.note)


@router.post("/ncrs/{ncr_id}/reopen")
def ncr_reopen(
    ncr_id: int,
    body: NcrReopenIn,
    user: CurrentUser = Depends(rate_limited_user),
    settings: Settings = Depends(get_settings),
):
    return _transition(settings, user, ncr_id, "open", _payload(body), body.note or body.reopened_reason)
