from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"

REASON_HEAD = "head"
REASON_GAP = "gap"
REASON_BACKFILL = "backfill"


@dataclass(frozen=True)
class Cursor:
    """Position in a unit's activity stream: a timestamp plus the platform's item id when known."""

    timestamp: datetime
    external_id: Optional[str] = None

    def sort_key(self) -> Tuple[datetime, int]:
        # Snowflake-style ids break ties between items sharing a timestamp.
        if self.external_id and self.external_id.isdigit():
            return self.timestamp, int(self.external_id)
        return self.timestamp, 0


@dataclass(frozen=True)
class QueuePolicy:
    max_concurrent: int
    timeout_seconds: int
    max_attempts: int
    page_size: int = 100
    max_pages: int = 10
    head_gap_minutes: Optional[int] = None
    min_content_chars: int = 0


@dataclass(frozen=True)
class SyncTarget:
    """One enabled project configuration for a source."""

    project_id: str
    source: str
    signal_source_id: str
    url: Optional[str]
    previous_days: int
    max_chars: Optional[int] = None
    max_value: float = 100.0


@dataclass(frozen=True)
class UnitContext:
    source: str
    project_id: str
    unit_key: str
    params: Mapping[str, str]
    previous_days: int
    signal_source_id: str
    max_chars: Optional[int] = None
    max_value: float = 100.0
    label: Optional[str] = None


@dataclass(frozen=True)
class ActivityItem:
    external_id: str
    content: str
    timestamp: datetime
    author_id: Optional[str] = None
    author_name: Optional[str] = None

    @property
    def cursor(self) -> Cursor:
        return Cursor(self.timestamp, self.external_id)


@dataclass(frozen=True)
class Window:
    """Next range to fetch: from `newest` backward, no further than `floor` when set."""

    newest: Cursor
    floor: Optional[Cursor]
    reason: str


@dataclass(frozen=True)
class ScoringConfig:
    user_id: str
    project_id: str
    signal_source_id: str
    source: str
    max_value: float
    max_chars: Optional[int] = None
    previous_days: int = 90


@dataclass(frozen=True)
class ActivityWindow:
    """Input handed to the scorer: raw activity for one day, or raw scores for a smart score."""

    kind: str  # raw|smart
    day: date
    activity: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class ScoringResult:
    value: Optional[float] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    request_id: Optional[str] = None
    error: Optional[str] = None
    model: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


def format_unit_key(params: Mapping[str, Any]) -> str:
    """Canonical text form of a composite unit key (sorted `name=value` pairs)."""
    return ";".join(f"{k}={params[k]}" for k in sorted(params))
