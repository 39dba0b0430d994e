from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"


class QueueItemResponse(BaseModel):
    id: str
    source: str
    unit_key: str
    project_id: str
    status: Literal["pending", "running", "completed", "error"]
    attempts: int
    max_attempts: int
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    newest_cursor_at: datetime
    newest_cursor_id: Optional[str] = None
    oldest_cursor_at: Optional[datetime] = None
    oldest_cursor_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TickResponse(BaseModel):
    source: str
    reaped: int
    capacity: int
    units: int
    enqueued: int
    claimed: int
    completed: int
    crashed: int
    skipped: int
    exhausted: int
    no_work: int
    scores_written: int


class RescoreResponse(BaseModel):
    source: str
    project_id: str
    accounts: int
    written: int
    failed: int
