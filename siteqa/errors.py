from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("siteqa.errors")


class WorkflowError(Exception):
    status_code = 400
    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def payload(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class EligibilityError(WorkflowError):
    """The actor's role or relationship to the record does not allow the action."""

    status_code = 403
    code = "NOT_ELIGIBLE"


class MembershipError(WorkflowError):
    status_code = 403
    code = "NOT_A_MEMBER"


class TransitionError(WorkflowError):
    status_code = 400
    code = "INVALID_TRANSITION"


class FieldValidationError(WorkflowError):
    status_code = 400
    code = "MISSING_FIELDS"

    def __init__(self, message: str, required_fields: List[str]) -> None:
        super().__init__(message)
        self.required_fields = list(required_fields)

    def payload(self) -> Dict[str, Any]:
        out = super().payload()
        out["requiredFields"] = self.required_fields
        return out


class NotFoundError(WorkflowError):
    status_code = 404
    code = "NOT_FOUND"


class VersionConflictError(WorkflowError):
    status_code = 409
    code = "VERSION_CONFLICT"


class RateLimitedError(WorkflowError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, retry_after: int) -> None:
        super().__init__("Too many requests")
        self.retry_after = int(retry_after)

    def payload(self) -> Dict[str, Any]:
        out = super().payload()
        out["retryAfter"] = self.retry_after
        return out


def error_from_decision(decision) -> WorkflowError:
    """Turn a rejected NCR decision into the exception the API layer raises."""
    if decision.kind == "eligibility":
        return EligibilityError(decision.reason)
    if decision.kind == "validation":
        return FieldValidationError(decision.reason, decision.missing_fields)
    return TransitionError(decision.reason)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(WorkflowError)
    async def _workflow_error(request: Request, exc: WorkflowError):
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.error("%s %s -> %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.payload(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(e.get("loc") or []), "msg": e.get("msg", "")}
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request format", "code": "INVALID_REQUEST", "details": details},
        )
