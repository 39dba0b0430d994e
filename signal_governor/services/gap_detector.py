from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, List, Optional

from signal_governor.domain import REASON_BACKFILL, REASON_GAP, REASON_HEAD, Cursor, Window


@dataclass(frozen=True)
class Coverage:
    """Range `[oldest, newest)` covered by one completed queue item.

    `oldest` is None when the item's batch came back empty: nothing older than
    `newest` exists on the platform.
    """

    newest: Cursor
    oldest: Optional[Cursor]


def coverage_of(items: Iterable) -> List[Coverage]:
    return [Coverage(newest=item.newest_cursor, oldest=item.oldest_cursor) for item in items]


def plan_next_window(
    coverage: Iterable[Coverage],
    *,
    now: datetime,
    horizon: datetime,
    head_gap: Optional[timedelta] = None,
    sort_key: Callable[[Cursor], Any] = Cursor.sort_key,
) -> Optional[Window]:
    """Pick the next window to fetch for one unit, or None when it is fully synced.

    Priority: head sync when there is no coverage (or the newest coverage is older
    than `head_gap`), then the most recent gap between adjacent items, then
    continued backfill from the oldest cursor. Nothing older than `horizon` is planned.
    `sort_key` is the platform's cursor ordering.
    """
    spans = sorted(
        (c for c in coverage if c.newest.timestamp >= horizon),
        key=lambda c: sort_key(c.newest),
        reverse=True,
    )
    if not spans:
        return Window(newest=Cursor(now), floor=None, reason=REASON_HEAD)

    if head_gap is not None and now - spans[0].newest.timestamp > head_gap:
        return Window(newest=Cursor(now), floor=spans[0].newest, reason=REASON_HEAD)

    for current, older in zip(spans, spans[1:]):
        if current.oldest is None:
            # Empty batch: everything behind this item is already known to be empty.
            return None
        if sort_key(older.newest) < sort_key(current.oldest):
            return _bounded(Window(newest=current.oldest, floor=older.newest, reason=REASON_GAP), horizon)

    oldest: Optional[Cursor] = None
    for span in spans:
        if span.oldest is None:
            return None
        if oldest is None or sort_key(span.oldest) < sort_key(oldest):
            oldest = span.oldest
    return _bounded(Window(newest=oldest, floor=None, reason=REASON_BACKFILL), horizon)


def _bounded(window: Window, horizon: datetime) -> Optional[Window]:
    if window.newest.timestamp < horizon:
        return None
    return window
