from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet

from fastapi import Depends, Header, HTTPException, Request, status

from siteqa import db
from siteqa.config import Settings
from siteqa.errors import MembershipError, RateLimitedError
from siteqa.permissions import is_administrator

logger = logging.getLogger("siteqa.auth")


@dataclass(frozen=True)
class CurrentUser:
    user_id: int
    name: str
    organization_id: int
    role: str
    memberships: Dict[int, str] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return is_administrator(self.role)

    @property
    def organization_ids(self) -> FrozenSet[int]:
        return frozenset(self.memberships)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _parse_id(raw: str | None, header: str) -> int:
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"missing {header} header")
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"{header} must be an integer") from exc


def get_current_user(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_organization_id: str | None = Header(default=None, alias="X-Organization-Id"),
    settings: Settings = Depends(get_settings),
) -> CurrentUser:
    """
    Resolve the caller and their role in the requested organization.
    Memberships are read once here and reused for the whole request.
    """
    uid = _parse_id(x_user_id, "X-User-Id")
    org_id = _parse_id(x_organization_id, "X-Organization-Id")

    with db.db_conn(settings.db_path, settings.sqlite_timeout_sec) as con:
        user = db.get_user(con, uid)
        if not user:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"unknown user: {uid}")
        memberships = db.user_memberships(con, uid)

    role = memberships.get(org_id)
    if role is None:
        logger.warning("user %s is not a member of organization %s", uid, org_id)
        raise MembershipError("You are not a member of this organization")
    return CurrentUser(user_id=uid, name=user["name"], organization_id=org_id, role=role, memberships=memberships)


def rate_limited_user(request: Request, user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    result = request.app.state.rate_limiter.hit(f"user:{user.user_id}")
    if not result.allowed:
        logger.warning("rate limit hit: user=%s retry_after=%s", user.user_id, result.retry_after)
        raise RateLimitedError(result.retry_after)
    return user
