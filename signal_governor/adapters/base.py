import abc
from datetime import datetime, timezone
from typing import List, Mapping, Optional, Tuple

from signal_governor.domain import ActivityItem, Cursor, QueuePolicy, SyncTarget, UnitContext, format_unit_key


class PlatformAdapter(abc.ABC):
    """Platform-specific half of the governor: what the units are and how to page their activity.

    `fetch_activity` returns items newest first, all strictly older than `before`
    (or the latest items when `before` is None or has no external id).
    """

    source: str = ""
    # Authors without a linked account get a shell account when scored.
    provisions_shell_accounts: bool = False

    @abc.abstractmethod
    def default_policy(self) -> QueuePolicy:
        ...

    @abc.abstractmethod
    async def list_units(self, target: SyncTarget) -> List[UnitContext]:
        ...

    @abc.abstractmethod
    async def fetch_activity(self, unit: UnitContext, before: Optional[Cursor], limit: int) -> List[ActivityItem]:
        ...

    def unit_key_from_context(self, parts: Mapping[str, str]) -> str:
        return format_unit_key(parts)

    def cursor_sort_key(self, cursor: Cursor) -> Tuple[datetime, int]:
        return cursor.sort_key()

    def make_unit(self, target: SyncTarget, parts: Mapping[str, str], *, label: Optional[str] = None) -> UnitContext:
        return UnitContext(
            source=self.source,
            project_id=target.project_id,
            unit_key=self.unit_key_from_context(parts),
            params=dict(parts),
            previous_days=target.previous_days,
            signal_source_id=target.signal_source_id,
            max_chars=target.max_chars,
            max_value=target.max_value,
            label=label,
        )

    async def aclose(self) -> None:
        return None


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 platform timestamp into naive UTC (the DB stores `timestamp without time zone`)."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
