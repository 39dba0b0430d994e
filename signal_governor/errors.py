from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel


class GovernorError(Exception):
    """Base class for errors raised by the sync governor."""


class FetchError(GovernorError):
    """A platform adapter could not list units or fetch activity."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class UnknownSourceError(GovernorError):
    def __init__(self, source: str) -> None:
        super().__init__(f"no platform adapter registered for source {source!r}")
        self.source = source


class ProjectSourceNotFoundError(GovernorError):
    def __init__(self, source: str, project_id: str) -> None:
        super().__init__(f"project {project_id!r} has no {source!r} source configured")
        self.source = source
        self.project_id = project_id


class ErrorEnvelope(BaseModel):
    error: str
    message: Optional[str] = None


def error_response(error: str, message: Optional[str] = None, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorEnvelope(error=error, message=message).model_dump())


async def http_exception_handler(request: Request, exc):  # type: ignore[override]
    # Fallback handler to normalize FastAPI HTTPException.
    detail = getattr(exc, "detail", None)
    error = "error"
    message = None
    if isinstance(detail, dict):
        error = detail.get("error", error)
        message = detail.get("message")
    elif isinstance(detail, str):
        # Endpoints raise string codes like "queue_item_not_found"; treat as the error code.
        error = detail
    return error_response(error=error, message=message, status_code=getattr(exc, "status_code", 400))
