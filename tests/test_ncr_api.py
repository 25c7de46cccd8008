from __future__ import annotations

import sqlite3

import pytest
from conftest import headers, make_ncr, set_ncr_status

from siteqa import db

RESOLUTION = {
    "root_cause": "Insufficient compaction passes on layer 3",
    "corrective_action": "Re-compacted and retested, 99% MDD",
}


def test_create_ncr(client, seeded) -> None:
    body = {"project_id": seeded.project, "lot_id": seeded.lot, "title": "Cracked kerb", "severity": "high"}
    res = client.post("/api/ncrs", json=body, headers=headers(seeded.foreman, seeded.org))
    assert res.status_code == 201
    item = res.json()["item"]
    assert item["status"] == "open"
    assert item["raised_by"] == seeded.foreman
    assert item["ncr_number"].startswith("NCR-")

    res = client.post("/api/ncrs", json=body, headers=headers(seeded.viewer, seeded.org))
    assert res.status_code == 403

    body["project_id"] = seeded.other_project
    res = client.post("/api/ncrs", json=body, headers=headers(seeded.foreman, seeded.org))
    assert res.status_code == 404


def test_create_rejects_assignee_outside_organization(client, seeded) -> None:
    body = {"project_id": seeded.project, "title": "Cracked kerb", "assigned_to": seeded.outsider}
    res = client.post("/api/ncrs", json=body, headers=headers(seeded.foreman, seeded.org))
    assert res.status_code == 400
    assert res.json()["code"] == "INVALID_ASSIGNEE"


def test_assignee_works_ncr_to_resolved(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded)
    h = headers(seeded.assignee, seeded.org)

    res = client.post(f"/api/ncrs/{ncr['id']}/acknowledge", headers=h)
    assert res.status_code == 200
    assert res.json()["item"]["acknowledged_at"]

    res = client.post(f"/api/ncrs/{ncr['id']}/start_work", json={"note": "crew on site"}, headers=h)
    assert res.status_code == 200
    assert res.json()["to"] == "in_progress"

    res = client.post(f"/api/ncrs/{ncr['id']}/resolve", json={"root_cause": "short"}, headers=h)
    assert res.status_code == 400
    out = res.json()
    assert out["code"] == "MISSING_FIELDS"
    assert out["requiredFields"] == ["root_cause", "corrective_action"]

    res = client.post(f"/api/ncrs/{ncr['id']}/resolve", json={**RESOLUTION, "actual_cost": 1250.5}, headers=h)
    assert res.status_code == 200
    item = res.json()["item"]
    assert item["status"] == "resolved"
    assert item["root_cause"] == RESOLUTION["root_cause"]
    assert item["actual_cost"] == 1250.5
    assert item["resolved_at"]

    hist = client.get(f"/api/ncrs/{ncr['id']}/history", headers=h).json()["items"]
    assert [(e["from_status"], e["to_status"]) for e in hist] == [
        ("open", "acknowledged"),
        ("acknowledged", "in_progress"),
        ("in_progress", "resolved"),
    ]
    assert hist[1]["note"] == "crew on site"
    assert all(e["actor_id"] == seeded.assignee for e in hist)


def test_resolve_by_unrelated_member_not_eligible(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded)
    set_ncr_status(settings, ncr["id"], "in_progress")
    res = client.post(f"/api/ncrs/{ncr['id']}/resolve", json=RESOLUTION, headers=headers(seeded.pm, seeded.org))
    assert res.status_code == 403
    assert res.json()["code"] == "NOT_ELIGIBLE"
    assert "requiredFields" not in res.json()


def test_contractor_member_can_dispute(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded, contractor_id=seeded.contractor)
    h = headers(seeded.sub, seeded.contractor)

    assert client.get(f"/api/ncrs/{ncr['id']}", headers=h).status_code == 200

    res = client.post(f"/api/ncrs/{ncr['id']}/dispute", json={"dispute_reason": "too short"}, headers=h)
    assert res.status_code == 400
    assert res.json()["requiredFields"] == ["dispute_reason", "dispute_category"]

    body = {"dispute_reason": "Density test was taken outside the lot boundary", "dispute_category": "incorrect_issue"}
    res = client.post(f"/api/ncrs/{ncr['id']}/dispute", json=body, headers=h)
    assert res.status_code == 200
    item = res.json()["item"]
    assert item["status"] == "disputed"
    assert item["dispute_category"] == "incorrect_issue"

    # the raiser takes it back
    res = client.post(
        f"/api/ncrs/{ncr['id']}/reopen",
        json={"reopened_reason": "Retest confirmed inside lot"},
        headers=headers(seeded.foreman, seeded.org),
    )
    assert res.status_code == 200
    assert res.json()["item"]["status"] == "open"


def test_contractor_cannot_see_unrelated_ncr(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded)
    res = client.get(f"/api/ncrs/{ncr['id']}", headers=headers(seeded.sub, seeded.contractor))
    assert res.status_code == 404


def test_close_requires_administrator(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded)
    res = client.post(f"/api/ncrs/{ncr['id']}/close", headers=headers(seeded.pm, seeded.org))
    assert res.status_code == 403

    # admin close skips the resolution evidence
    res = client.post(f"/api/ncrs/{ncr['id']}/close", json={"note": "duplicate"}, headers=headers(seeded.admin, seeded.org))
    assert res.status_code == 200
    assert res.json()["item"]["status"] == "closed"
    assert res.json()["item"]["closed_at"]


def test_reopen_closed_ncr_is_admin_only(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded)
    set_ncr_status(settings, ncr["id"], "closed")
    body = {"reopened_reason": "Defect has returned after rain"}

    res = client.post(f"/api/ncrs/{ncr['id']}/reopen", json=body, headers=headers(seeded.foreman, seeded.org))
    assert res.status_code == 403

    res = client.post(f"/api/ncrs/{ncr['id']}/reopen", json={"reopened_reason": "again"}, headers=headers(seeded.owner, seeded.org))
    assert res.status_code == 400
    assert res.json()["requiredFields"] == ["reopened_reason"]

    res = client.post(f"/api/ncrs/{ncr['id']}/reopen", json=body, headers=headers(seeded.owner, seeded.org))
    assert res.status_code == 200
    item = res.json()["item"]
    assert item["status"] == "open"
    assert item["reopened_reason"] == body["reopened_reason"]

    hist = client.get(f"/api/ncrs/{ncr['id']}/history", headers=headers(seeded.owner, seeded.org)).json()["items"]
    assert hist[-1]["note"] == body["reopened_reason"]


def test_unreachable_transition_is_invalid(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded)
    # open -> resolved skips acknowledgement, even for an administrator
    res = client.post(f"/api/ncrs/{ncr['id']}/resolve", json=RESOLUTION, headers=headers(seeded.admin, seeded.org))
    assert res.status_code == 400
    assert res.json()["code"] == "INVALID_TRANSITION"

    set_ncr_status(settings, ncr["id"], "resolved")
    res = client.post(f"/api/ncrs/{ncr['id']}/start_work", headers=headers(seeded.admin, seeded.org))
    assert res.status_code == 400
    out = res.json()
    assert out["code"] == "INVALID_TRANSITION"
    assert "requiredFields" not in out


def test_same_status_is_noop(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded)
    set_ncr_status(settings, ncr["id"], "acknowledged")
    res = client.post(f"/api/ncrs/{ncr['id']}/acknowledge", headers=headers(seeded.assignee, seeded.org))
    assert res.status_code == 200
    assert res.json()["changed"] is False
    hist = client.get(f"/api/ncrs/{ncr['id']}/history", headers=headers(seeded.assignee, seeded.org)).json()["items"]
    assert hist == []


def test_transitions_endpoint(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded)
    set_ncr_status(settings, ncr["id"], "in_progress")

    out = client.get(f"/api/ncrs/{ncr['id']}/transitions", headers=headers(seeded.assignee, seeded.org)).json()
    assert out["status"] == "in_progress"
    assert out["allowed"] == ["resolved", "disputed"]

    out = client.get(f"/api/ncrs/{ncr['id']}/transitions", headers=headers(seeded.viewer, seeded.org)).json()
    assert out["allowed"] == []


def test_assign(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded, assigned_to=None)

    res = client.post(f"/api/ncrs/{ncr['id']}/assign", json={"assigned_to": seeded.foreman}, headers=headers(seeded.foreman, seeded.org))
    assert res.status_code == 403

    res = client.post(f"/api/ncrs/{ncr['id']}/assign", json={}, headers=headers(seeded.pm, seeded.org))
    assert res.status_code == 400

    res = client.post(
        f"/api/ncrs/{ncr['id']}/assign",
        json={"assigned_to": seeded.assignee, "contractor_id": seeded.contractor},
        headers=headers(seeded.pm, seeded.org),
    )
    assert res.status_code == 200
    item = res.json()["item"]
    assert item["assigned_to"] == seeded.assignee
    assert item["contractor_id"] == seeded.contractor

    set_ncr_status(settings, ncr["id"], "closed")
    res = client.post(f"/api/ncrs/{ncr['id']}/assign", json={"assigned_to": seeded.foreman}, headers=headers(seeded.pm, seeded.org))
    assert res.status_code == 403


def test_other_organization_gets_not_found(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded)
    h = headers(seeded.outsider, seeded.other_org)
    assert client.get(f"/api/ncrs/{ncr['id']}", headers=h).status_code == 404
    assert client.post(f"/api/ncrs/{ncr['id']}/close", headers=h).status_code == 404


def test_wrongly_typed_fields_reported_with_the_rest(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded)
    set_ncr_status(settings, ncr["id"], "in_progress")
    body = {"root_cause": 1234567890123, "corrective_action": "x", "actual_cost": "a lot"}
    res = client.post(f"/api/ncrs/{ncr['id']}/resolve", json=body, headers=headers(seeded.assignee, seeded.org))
    assert res.status_code == 400
    out = res.json()
    assert out["code"] == "MISSING_FIELDS"
    assert out["requiredFields"] == ["root_cause", "corrective_action", "actual_cost"]

    res = client.post(
        f"/api/ncrs/{ncr['id']}/dispute",
        json={"dispute_reason": ["not", "text"], "dispute_category": 5},
        headers=headers(seeded.assignee, seeded.org),
    )
    assert res.status_code == 400
    assert res.json()["requiredFields"] == ["dispute_reason", "dispute_category"]


def test_history_is_append_only(client, settings, seeded) -> None:
    ncr = make_ncr(settings, seeded)
    res = client.post(f"/api/ncrs/{ncr['id']}/acknowledge", headers=headers(seeded.assignee, seeded.org))
    assert res.status_code == 200

    with pytest.raises(sqlite3.DatabaseError):
        with db.db_conn(settings.db_path) as con:
            con.execute("UPDATE ncr_history SET note='rewritten' WHERE ncr_id=?", (ncr["id"],))
    with pytest.raises(sqlite3.DatabaseError):
        with db.db_conn(settings.db_path) as con:
            con.execute("DELETE FROM ncr_history WHERE ncr_id=?", (ncr["id"],))

    with db.db_conn(settings.db_path) as con:
        rows = db.list_ncr_history(con, ncr["id"])
    assert [(r["from_status"], r["to_status"], r["note"]) for r in rows] == [("open", "acknowledged", None)]
