import logging

from siteqa import db
from siteqa.config import env_flag, load_settings

logging.basicConfig(level=logging.INFO)

settings = load_settings()
db.init_db(settings.db_path)

if env_flag("SITEQA_SEED_DEMO", "1"):
    with db.db_conn(settings.db_path) as con:
        if con.execute("SELECT 1 FROM organizations LIMIT 1").fetchone() is None:
            org_id = db.create_organization(con, "Demo Civil")
            contractor_id = db.create_organization(con, "Demo Earthworks Pty")
            owner = db.create_user(con, "Site Owner", "owner@example.com")
            foreman = db.create_user(con, "Site Foreman", "foreman@example.com")
            sub = db.create_user(con, "Contractor Lead", "lead@example.com")
            db.add_member(con, org_id, owner, "owner")
            db.add_member(con, org_id, foreman, "site_foreman")
            db.add_member(con, contractor_id, sub, "admin")
            project_id = db.create_project(con, org_id, "Highway Upgrade Stage 2")
            db.create_lot(con, project_id, "Lot 001 - Subgrade CH0-200")
            db.create_itp_template(
                con,
                org_id,
                "Earthworks subgrade",
                {
                    "sections": [
                        {
                            "id": "prep",
                            "title": "Preparation",
                            "items": [
                                {"id": "erosion", "label": "Erosion controls in place", "required": True},
                                {"id": "groundwater", "label": "Groundwater control measures", "required": True},
                            ],
                        },
                        {
                            "id": "compaction",
                            "title": "Compaction",
                            "items": [
                                {"id": "proofroll", "label": "Proof rolling completed", "required": True},
                                {"id": "density", "label": "Density >= 98% MDD", "required": True},
                            ],
                        },
                    ]
                },
                owner,
            )

print(f"DB ready: {settings.db_path}")
