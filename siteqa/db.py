from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

logger = logging.getLogger("siteqa.db")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS organizations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  email TEXT UNIQUE,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS organization_members (
  organization_id INTEGER NOT NULL REFERENCES organizations(id),
  user_id INTEGER NOT NULL REFERENCES users(id),
  role TEXT NOT NULL,
  PRIMARY KEY (organization_id, user_id)
);

CREATE TABLE IF NOT EXISTS projects (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL REFERENCES organizations(id),
  name TEXT NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS lots (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id INTEGER NOT NULL REFERENCES projects(id),
  name TEXT NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ncrs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL REFERENCES organizations(id),
  project_id INTEGER NOT NULL REFERENCES projects(id),
  lot_id INTEGER REFERENCES lots(id),
  ncr_number TEXT NOT NULL,
  title TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  severity TEXT NOT NULL DEFAULT 'medium',
  status TEXT NOT NULL DEFAULT 'open',
  raised_by INTEGER NOT NULL REFERENCES users(id),
  assigned_to INTEGER REFERENCES users(id),
  contractor_id INTEGER REFERENCES organizations(id),
  root_cause TEXT,
  corrective_action TEXT,
  preventive_action TEXT,
  actual_cost REAL,
  dispute_reason TEXT,
  dispute_category TEXT,
  reopened_reason TEXT,
  acknowledged_at TEXT,
  started_at TEXT,
  resolved_at TEXT,
  disputed_at TEXT,
  closed_at TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE (organization_id, ncr_number)
);

CREATE TABLE IF NOT EXISTS ncr_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ncr_id INTEGER NOT NULL REFERENCES ncrs(id),
  from_status TEXT NOT NULL,
  to_status TEXT NOT NULL,
  actor_id INTEGER NOT NULL,
  note TEXT,
  created_at TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS ncr_history_no_update
BEFORE UPDATE ON ncr_history
BEGIN
  SELECT RAISE(ABORT, 'ncr_history is append-only');
END;

CREATE TRIGGER IF NOT EXISTS ncr_history_no_delete
BEFORE DELETE ON ncr_history
BEGIN
  SELECT RAISE(ABORT, 'ncr_history is append-only');
END;

CREATE TABLE IF NOT EXISTS itp_templates (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL REFERENCES organizations(id),
  name TEXT NOT NULL,
  structure TEXT NOT NULL DEFAULT '{"sections": []}',
  is_active INTEGER NOT NULL DEFAULT 1,
  created_by INTEGER,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS itp_instances (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL REFERENCES organizations(id),
  project_id INTEGER NOT NULL REFERENCES projects(id),
  lot_id INTEGER NOT NULL REFERENCES lots(id),
  template_id INTEGER NOT NULL REFERENCES itp_templates(id),
  created_by INTEGER,
  data TEXT NOT NULL DEFAULT '{}',
  completion_percentage INTEGER NOT NULL DEFAULT 0,
  inspection_status TEXT NOT NULL DEFAULT 'draft',
  version INTEGER NOT NULL DEFAULT 1,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ncrs_org ON ncrs(organization_id, status);
CREATE INDEX IF NOT EXISTS idx_ncr_history_ncr ON ncr_history(ncr_id, id);
CREATE INDEX IF NOT EXISTS idx_itp_instances_lot ON itp_instances(lot_id);

CREATE TABLE IF NOT EXISTS rate_limits (
  bucket TEXT PRIMARY KEY,
  window_start INTEGER NOT NULL,
  hits INTEGER NOT NULL
);
"""

NCR_WRITABLE_COLUMNS = {
    "status",
    "assigned_to",
    "contractor_id",
    "root_cause",
    "corrective_action",
    "preventive_action",
    "actual_cost",
    "dispute_reason",
    "dispute_category",
    "reopened_reason",
    "acknowledged_at",
    "started_at",
    "resolved_at",
    "disputed_at",
    "closed_at",
    "updated_at",
}


def now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def connect(path: Path | str, timeout_sec: float = 30.0) -> sqlite3.Connection:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(str(p), timeout=timeout_sec, check_same_thread=False)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys=ON;")
    con.execute(f"PRAGMA busy_timeout={int(timeout_sec * 1000)};")
    return con


@contextmanager
def db_conn(
    path: Path | str,
    timeout_sec: float = 30.0,
    *,
    immediate: bool = False,
) -> Iterator[sqlite3.Connection]:
    """
    One unit of work: commit on success, rollback on error, always close.
    immediate=True takes the write lock up front (read-modify-write units).
    """
    con = connect(path, timeout_sec)
    try:
        if immediate:
            con.execute("BEGIN IMMEDIATE")
        yield con
        con.commit()
    except Exception:
        con.rollback()
        raise
    finally:
        con.close()


def init_db(path: Path | str) -> None:
    con = connect(path)
    try:
        con.executescript(SCHEMA_SQL)
        con.commit()
    finally:
        con.close()
    logger.info("schema ready: %s", path)


def _row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


# ---------------------------------------------------------------------
# Organizations / users / projects
# ---------------------------------------------------------------------


def create_organization(con: sqlite3.Connection, name: str) -> int:
    cur = con.execute("INSERT INTO organizations(name, created_at) VALUES(?, ?)", (name, now_iso()))
    return int(cur.lastrowid)


def create_user(con: sqlite3.Connection, name: str, email: Optional[str] = None) -> int:
    cur = con.execute("INSERT INTO users(name, email, created_at) VALUES(?, ?, ?)", (name, email, now_iso()))
    return int(cur.lastrowid)


def add_member(con: sqlite3.Connection, organization_id: int, user_id: int, role: str) -> None:
    con.execute(
        """
        INSERT INTO organization_members(organization_id, user_id, role) VALUES(?, ?, ?)
        ON CONFLICT(organization_id, user_id) DO UPDATE SET role=excluded.role
        """,
        (organization_id, user_id, role),
    )


def get_user(con: sqlite3.Connection, user_id: int) -> Optional[Dict[str, Any]]:
    return _row(con.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone())


def user_memberships(con: sqlite3.Connection, user_id: int) -> Dict[int, str]:
    rows = con.execute(
        "SELECT organization_id, role FROM organization_members WHERE user_id=?",
        (user_id,),
    ).fetchall()
    return {int(r["organization_id"]): str(r["role"]) for r in rows}


def create_project(con: sqlite3.Connection, organization_id: int, name: str) -> int:
    cur = con.execute(
        "INSERT INTO projects(organization_id, name, created_at) VALUES(?, ?, ?)",
        (organization_id, name, now_iso()),
    )
    return int(cur.lastrowid)


def get_project(con: sqlite3.Connection, project_id: int, organization_id: int) -> Optional[Dict[str, Any]]:
    return _row(
        con.execute(
            "SELECT * FROM projects WHERE id=? AND organization_id=?",
            (project_id, organization_id),
        ).fetchone()
    )


def create_lot(con: sqlite3.Connection, project_id: int, name: str) -> int:
    cur = con.execute(
        "INSERT INTO lots(project_id, name, created_at) VALUES(?, ?, ?)",
        (project_id, name, now_iso()),
    )
    return int(cur.lastrowid)


def get_lot(con: sqlite3.Connection, lot_id: int, project_id: int) -> Optional[Dict[str, Any]]:
    return _row(con.execute("SELECT * FROM lots WHERE id=? AND project_id=?", (lot_id, project_id)).fetchone())


# ---------------------------------------------------------------------
# NCRs
# ---------------------------------------------------------------------


def _next_ncr_number(con: sqlite3.Connection, organization_id: int) -> str:
    # NCR-YYYY-0001, sequence per organization and year
    y = datetime.now(timezone.utc).strftime("%Y")
    r = con.execute(
        "SELECT ncr_number FROM ncrs WHERE organization_id=? AND ncr_number LIKE ? ORDER BY id DESC LIMIT 1",
        (organization_id, f"NCR-{y}-%"),
    ).fetchone()
    if not r:
        return f"NCR-{y}-0001"
    try:
        n = int(str(r["ncr_number"]).split("-")[-1]) + 1
    except ValueError:
        n = 1
    return f"NCR-{y}-{n:04d}"


def create_ncr(con: sqlite3.Connection, organization_id: int, raised_by: int, fields: Mapping[str, Any]) -> Dict[str, Any]:
    now = now_iso()
    number = _next_ncr_number(con, organization_id)
    cur = con.execute(
        """
        INSERT INTO ncrs(
          organization_id, project_id, lot_id, ncr_number, title, description, severity,
          status, raised_by, assigned_to, contractor_id, created_at, updated_at
        ) VALUES(?, ?, ?, ?, ?, ?, ?, 'open', ?, ?, ?, ?, ?)
        """,
        (
            organization_id,
            fields["project_id"],
            fields.get("lot_id"),
            number,
            fields["title"],
            fields.get("description") or "",
            fields.get("severity") or "medium",
            raised_by,
            fields.get("assigned_to"),
            fields.get("contractor_id"),
            now,
            now,
        ),
    )
    return get_ncr(con, int(cur.lastrowid), organization_id)


def get_ncr(
    con: sqlite3.Connection,
    ncr_id: int,
    organization_id: int,
    *,
    include_contractor: bool = False,
) -> Optional[Dict[str, Any]]:
    """NCR owned by the organization, or (include_contractor) assigned to it as contractor."""
    if include_contractor:
        sql = "SELECT * FROM ncrs WHERE id=? AND (organization_id=? OR contractor_id=?)"
        params: tuple = (ncr_id, organization_id, organization_id)
    else:
        sql = "SELECT * FROM ncrs WHERE id=? AND organization_id=?"
        params = (ncr_id, organization_id)
    return _row(con.execute(sql, params).fetchone())


def organization_exists(con: sqlite3.Connection, organization_id: int) -> bool:
    return con.execute("SELECT 1 FROM organizations WHERE id=?", (organization_id,)).fetchone() is not None


def is_member(con: sqlite3.Connection, organization_id: int, user_id: int) -> bool:
    row = con.execute(
        "SELECT 1 FROM organization_members WHERE organization_id=? AND user_id=?",
        (organization_id, user_id),
    ).fetchone()
    return row is not None


def update_ncr(
    con: sqlite3.Connection,
    ncr_id: int,
    expected_status: str,
    changes: Mapping[str, Any],
) -> bool:
    """
    Conditional write: only applies while the row still has `expected_status`.
    Returns False when another request moved the NCR first.
    """
    unknown = set(changes) - NCR_WRITABLE_COLUMNS
    if unknown:
        raise ValueError(f"not writable: {', '.join(sorted(unknown))}")
    cols = list(changes)
    sets = ", ".join(f"{c}=?" for c in cols)
    params: List[Any] = [changes[c] for c in cols]
    params += [ncr_id, expected_status]
    cur = con.execute(f"UPDATE ncrs SET {sets} WHERE id=? AND status=?", tuple(params))
    return cur.rowcount == 1


def insert_ncr_history(
    con: sqlite3.Connection,
    ncr_id: int,
    from_status: str,
    to_status: str,
    actor_id: int,
    note: Optional[str],
    created_at: str,
) -> None:
    con.execute(
        """
        INSERT INTO ncr_history(ncr_id, from_status, to_status, actor_id, note, created_at)
        VALUES(?, ?, ?, ?, ?, ?)
        """,
        (ncr_id, from_status, to_status, actor_id, note, created_at),
    )


def list_ncr_history(con: sqlite3.Connection, ncr_id: int) -> List[Dict[str, Any]]:
    rows = con.execute("SELECT * FROM ncr_history WHERE ncr_id=? ORDER BY id", (ncr_id,)).fetchall()
    return [dict(r) for r in rows]


# ---------------------------------------------------------------------
# ITP templates / instances
# ---------------------------------------------------------------------


def create_itp_template(
    con: sqlite3.Connection,
    organization_id: int,
    name: str,
    structure: Mapping[str, Any],
    created_by: Optional[int] = None,
) -> Dict[str, Any]:
    cur = con.execute(
        """
        INSERT INTO itp_templates(organization_id, name, structure, is_active, created_by, created_at)
        VALUES(?, ?, ?, 1, ?, ?)
        """,
        (organization_id, name, json.dumps(structure, ensure_ascii=False), created_by, now_iso()),
    )
    return get_itp_template(con, int(cur.lastrowid), organization_id)


def get_itp_template(con: sqlite3.Connection, template_id: int, organization_id: int) -> Optional[Dict[str, Any]]:
    row = _row(
        con.execute(
            "SELECT * FROM itp_templates WHERE id=? AND organization_id=?",
            (template_id, organization_id),
        ).fetchone()
    )
    if row:
        row["structure"] = json.loads(row["structure"] or "{}")
        row["is_active"] = bool(row["is_active"])
    return row


def _instance_out(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row:
        row["data"] = json.loads(row["data"] or "{}")
    return row


def create_itp_instance(
    con: sqlite3.Connection,
    organization_id: int,
    project_id: int,
    lot_id: int,
    template_id: int,
    created_by: Optional[int],
) -> Dict[str, Any]:
    now = now_iso()
    cur = con.execute(
        """
        INSERT INTO itp_instances(
          organization_id, project_id, lot_id, template_id, created_by,
          data, completion_percentage, inspection_status, version, created_at, updated_at
        ) VALUES(?, ?, ?, ?, ?, '{}', 0, 'draft', 1, ?, ?)
        """,
        (organization_id, project_id, lot_id, template_id, created_by, now, now),
    )
    return get_itp_instance(con, int(cur.lastrowid), organization_id)


def get_itp_instance(con: sqlite3.Connection, instance_id: int, organization_id: int) -> Optional[Dict[str, Any]]:
    return _instance_out(
        _row(
            con.execute(
                "SELECT * FROM itp_instances WHERE id=? AND organization_id=?",
                (instance_id, organization_id),
            ).fetchone()
        )
    )


def save_itp_instance(
    con: sqlite3.Connection,
    instance_id: int,
    expected_version: int,
    data: Mapping[str, Any],
    completion_percentage: int,
    inspection_status: str,
    updated_at: str,
) -> bool:
    """Versioned write; False when the row changed since it was read."""
    cur = con.execute(
        """
        UPDATE itp_instances
        SET data=?, completion_percentage=?, inspection_status=?, version=version+1, updated_at=?
        WHERE id=? AND version=?
        """,
        (
            json.dumps(data, ensure_ascii=False, sort_keys=True),
            int(completion_percentage),
            inspection_status,
            updated_at,
            instance_id,
            expected_version,
        ),
    )
    return cur.rowcount == 1
