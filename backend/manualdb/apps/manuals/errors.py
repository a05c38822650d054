from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from fastapi import HTTPException, status


@dataclass
class ManualsError(Exception):
    """Base error for manual operations. `code` is stable for API clients."""

    message: str
    code: str = "manuals_error"
    detail: List[Dict[str, str]] = field(default_factory=list)
    retryable = False
    http_status = status.HTTP_400_BAD_REQUEST

    def __str__(self) -> str:
        return self.message


@dataclass
class PreconditionFailed(ManualsError):
    """Wrong source state, or a required input is missing. Not retryable."""

    code: str = "precondition_failed"
    http_status = status.HTTP_409_CONFLICT


@dataclass
class PermissionDenied(ManualsError):
    code: str = "forbidden"
    http_status = status.HTTP_403_FORBIDDEN


@dataclass
class NotFound(ManualsError):
    code: str = "not_found"
    http_status = status.HTTP_404_NOT_FOUND


@dataclass
class Conflict(ManualsError):
    """A uniqueness race slipped past the row lock. Retry once after re-reading."""

    code: str = "conflict"
    retryable = True
    http_status = status.HTTP_409_CONFLICT


@dataclass
class StorageUnavailable(ManualsError):
    """The transaction could not be committed. Transient."""

    code: str = "storage_unavailable"
    retryable = True
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


def to_http_exception(exc: ManualsError) -> HTTPException:
    detail = {"code": exc.code, "message": exc.message}
    if exc.detail:
        detail["errors"] = exc.detail
    if exc.retryable:
        detail["retryable"] = True
    status_code = exc.http_status
    if exc.code == "missing_requirements":
        status_code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=status_code, detail=detail)
