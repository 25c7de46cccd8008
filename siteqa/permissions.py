from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Mapping, Optional

# ---------------------------------------------------------------------
# Role matrix
# ---------------------------------------------------------------------

ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_PROJECT_MANAGER = "project_manager"
ROLE_SITE_FOREMAN = "site_foreman"
ROLE_MEMBER = "member"
ROLE_FINANCE_MANAGER = "finance_manager"
ROLE_ACCOUNTANT = "accountant"
ROLE_VIEWER = "viewer"

ADMIN_ROLES = {ROLE_OWNER, ROLE_ADMIN}

RESOURCES = ("diary", "ncr", "project", "report", "itp", "organization", "user", "financial_data")
ACTIONS = ("read", "create", "update", "delete", "approve", "export")

_FULL = ("read", "create", "update", "delete", "approve", "export")

PERMISSIONS: Dict[str, Dict[str, tuple]] = {
    ROLE_OWNER: {
        "diary": _FULL,
        "ncr": ("read", "create", "update", "delete", "export"),
        "project": ("read", "create", "update", "delete", "export"),
        "report": ("read", "create", "delete", "export"),
        "itp": _FULL,
        "organization": ("read", "update", "delete"),
        "user": ("read", "create", "update", "delete"),
        "financial_data": ("read", "create", "update", "delete", "export"),
    },
    ROLE_ADMIN: {
        "diary": _FULL,
        "ncr": ("read", "create", "update", "delete", "export"),
        "project": ("read", "create", "update", "delete", "export"),
        "report": ("read", "create", "export"),
        "itp": _FULL,
        "organization": ("read", "update"),
        "user": ("read", "create", "update"),
        "financial_data": ("read", "create", "update", "delete", "export"),
    },
    ROLE_PROJECT_MANAGER: {
        "diary": ("read", "create", "update", "approve", "export"),
        "ncr": ("read", "create", "update", "export"),
        "project": ("read", "update", "export"),
        "report": ("read", "create", "export"),
        "itp": ("read", "create", "update", "approve", "export"),
        "organization": ("read",),
        "user": ("read",),
        "financial_data": ("read", "export"),
    },
    ROLE_SITE_FOREMAN: {
        "diary": ("read", "create", "update", "export"),
        "ncr": ("read", "create", "update"),
        "project": ("read",),
        "report": ("read", "create", "export"),
        "itp": ("read", "create", "update"),
        "organization": ("read",),
        "user": ("read",),
        "financial_data": (),
    },
    ROLE_MEMBER: {
        "diary": ("read", "create", "update"),
        "ncr": ("read", "create", "update"),
        "project": ("read",),
        "report": ("read",),
        "itp": ("read", "create", "update"),
        "organization": ("read",),
        "user": ("read",),
        "financial_data": (),
    },
    ROLE_FINANCE_MANAGER: {
        "diary": ("read", "export"),
        "ncr": ("read", "export"),
        "project": ("read", "export"),
        "report": ("read", "create", "export"),
        "itp": ("read", "export"),
        "organization": ("read",),
        "user": ("read",),
        "financial_data": ("read", "create", "update", "delete", "export"),
    },
    ROLE_ACCOUNTANT: {
        "diary": ("read", "export"),
        "ncr": ("read", "export"),
        "project": ("read", "export"),
        "report": ("read", "export"),
        "itp": ("read", "export"),
        "organization": ("read",),
        "user": ("read",),
        "financial_data": ("read", "export"),
    },
    ROLE_VIEWER: {
        "diary": ("read",),
        "ncr": ("read",),
        "project": ("read",),
        "report": ("read",),
        "itp": ("read",),
        "organization": ("read",),
        "user": ("read",),
        "financial_data": (),
    },
}

ORG_ROLES = frozenset(PERMISSIONS)


def _norm(role: Optional[str]) -> str:
    return (role or "").strip().lower()


def allowed_actions(role: Optional[str], resource: str) -> FrozenSet[str]:
    return frozenset(PERMISSIONS.get(_norm(role), {}).get(resource, ()))


def can_perform(role: Optional[str], resource: str, action: str) -> bool:
    return action in allowed_actions(role, resource)


def is_administrator(role: Optional[str]) -> bool:
    return _norm(role) in ADMIN_ROLES


def can_manage_assignments(role: Optional[str]) -> bool:
    return is_administrator(role) or _norm(role) == ROLE_PROJECT_MANAGER


# ---------------------------------------------------------------------
# Relationship to a single NCR
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class Actor:
    """Who is asking, as far as one NCR is concerned."""

    user_id: int
    org_role: str
    is_assignee: bool = False
    is_raiser: bool = False
    is_contractor_member: bool = False

    @property
    def is_admin(self) -> bool:
        return is_administrator(self.org_role)

    def can(self, resource: str, action: str) -> bool:
        return can_perform(self.org_role, resource, action)


def ncr_relationship(
    ncr: Mapping[str, Any],
    user_id: int,
    org_role: str,
    contractor_org_ids: FrozenSet[int] = frozenset(),
) -> Actor:
    """
    Build the Actor for `user_id` against `ncr`.
    contractor_org_ids: every organization the user belongs to, used to
    recognise members of the responsible contractor.
    """
    assigned_to = ncr.get("assigned_to")
    raised_by = ncr.get("raised_by")
    contractor_id = ncr.get("contractor_id")
    return Actor(
        user_id=int(user_id),
        org_role=_norm(org_role),
        is_assignee=assigned_to is not None and int(assigned_to) == int(user_id),
        is_raiser=raised_by is not None and int(raised_by) == int(user_id),
        is_contractor_member=contractor_id is not None and int(contractor_id) in contractor_org_ids,
    )
