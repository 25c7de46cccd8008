from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from siteqa import db
from siteqa.config import Settings
from siteqa.main import create_app

TEMPLATE = {
    "sections": [
        {
            "id": "prep",
            "title": "Preparation",
            "items": [
                {"id": "erosion", "label": "Erosion controls", "required": True},
                {"id": "groundwater", "label": "Groundwater control", "required": True},
            ],
        },
        {
            "id": "compaction",
            "title": "Compaction",
            "items": [{"id": "density", "label": "Density >= 98% MDD", "required": True}],
        },
    ]
}


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(db_path=tmp_path / "siteqa_test.db", rate_limit_backend="off")


@pytest.fixture()
def seeded(settings):
    db.init_db(settings.db_path)
    with db.db_conn(settings.db_path) as con:
        org = db.create_organization(con, "Main Contractor")
        contractor = db.create_organization(con, "Earthworks Sub")
        other_org = db.create_organization(con, "Someone Else")

        ids = SimpleNamespace(org=org, contractor=contractor, other_org=other_org)
        for name, org_id, role in (
            ("owner", org, "owner"),
            ("admin", org, "admin"),
            ("pm", org, "project_manager"),
            ("foreman", org, "site_foreman"),
            ("assignee", org, "member"),
            ("viewer", org, "viewer"),
            ("sub", contractor, "member"),
            ("outsider", other_org, "admin"),
        ):
            uid = db.create_user(con, name, f"{name}@example.com")
            db.add_member(con, org_id, uid, role)
            setattr(ids, name, uid)

        ids.project = db.create_project(con, org, "Highway Upgrade")
        ids.lot = db.create_lot(con, ids.project, "Lot 001")
        ids.template = db.create_itp_template(con, org, "Subgrade", TEMPLATE, ids.owner)["id"]
        ids.other_project = db.create_project(con, other_org, "Elsewhere")
    return ids


@pytest.fixture()
def client(settings, seeded) -> TestClient:
    return TestClient(create_app(settings))


def headers(user_id: int, org_id: int) -> dict[str, str]:
    return {"X-User-Id": str(user_id), "X-Organization-Id": str(org_id)}


def make_instance(settings, seeded) -> int:
    with db.db_conn(settings.db_path) as con:
        inst = db.create_itp_instance(con, seeded.org, seeded.project, seeded.lot, seeded.template, seeded.foreman)
    return int(inst["id"])


def make_ncr(settings, seeded, **fields) -> dict:
    payload = {"project_id": seeded.project, "title": "Subgrade density below target", "assigned_to": seeded.assignee}
    payload.update(fields)
    with db.db_conn(settings.db_path) as con:
        return db.create_ncr(con, seeded.org, seeded.foreman, payload)


def set_ncr_status(settings, ncr_id: int, status: str) -> None:
    with db.db_conn(settings.db_path) as con:
        con.execute("UPDATE ncrs SET status=? WHERE id=?", (status, ncr_id))
