from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Set

from signal_governor.adapters.base import PlatformAdapter
from signal_governor.db import SessionFactory, session_scope
from signal_governor.domain import STATUS_RUNNING, ActivityItem, Cursor, QueuePolicy, UnitContext
from signal_governor.observability import bind_context, clear_context, get_logger
from signal_governor.services.queue_store import QueueStore

logger = get_logger(__name__)


@dataclass
class FetchOutcome:
    item_id: str
    completed: bool = False
    pages: int = 0
    fetched: int = 0
    stored: int = 0
    duplicates: int = 0
    skipped_short: int = 0
    oldest: Optional[Cursor] = None
    scores_written: int = 0
    # author_id -> days that received newly stored activity
    new_activity: Dict[str, Set[date]] = field(default_factory=dict)


@dataclass(frozen=True)
class _ClaimedItem:
    id: str
    newest: Cursor
    floor_at: Optional[datetime]
    # Lease identity: a reclaim after reaping gets a new started_at.
    started_at: datetime


class FetchExecutor:
    """Runs one claimed queue item: pages backward from its newest cursor and stores what it finds.

    Adapter errors propagate and the item stays `running`; the lease timeout is
    what eventually returns it to the retry path.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        adapter: PlatformAdapter,
        policy: QueuePolicy,
        *,
        store: Optional[QueueStore] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._adapter = adapter
        self._policy = policy
        self._store = store or QueueStore()
        self._clock = clock

    async def execute(self, item_id: str, unit: UnitContext) -> FetchOutcome:
        outcome = FetchOutcome(item_id=item_id)
        claimed = self._load(item_id)
        if claimed is None:
            logger.warning("fetch.not_running", extra={"event": "fetch.not_running", "item_id": item_id})
            return outcome

        bind_context(item_id=item_id, unit_key=unit.unit_key)
        try:
            await self._run_pages(claimed, unit, outcome)
            with session_scope(self._session_factory) as db:
                outcome.completed = self._store.complete(
                    db, item_id, outcome.oldest, self._clock(), started_at=claimed.started_at
                )
        finally:
            clear_context("item_id", "unit_key")

        logger.info(
            "fetch.done",
            extra={
                "event": "fetch.done",
                "item_id": item_id,
                "unit_key": unit.unit_key,
                "completed": outcome.completed,
                "pages": outcome.pages,
                "fetched": outcome.fetched,
                "stored": outcome.stored,
                "duplicates": outcome.duplicates,
                "skipped_short": outcome.skipped_short,
            },
        )
        return outcome

    def _load(self, item_id: str) -> Optional[_ClaimedItem]:
        with session_scope(self._session_factory) as db:
            item = self._store.get(db, item_id)
            if item is None or item.status != STATUS_RUNNING:
                return None
            return _ClaimedItem(
                id=item.id, newest=item.newest_cursor, floor_at=item.floor_cursor_at, started_at=item.started_at
            )

    async def _run_pages(self, claimed: _ClaimedItem, unit: UnitContext, outcome: FetchOutcome) -> None:
        head_sync = claimed.newest.external_id is None
        before: Optional[Cursor] = claimed.newest
        for page in range(self._policy.max_pages):
            items = await self._adapter.fetch_activity(unit, before, self._policy.page_size)
            outcome.pages += 1
            if not items:
                break
            outcome.fetched += len(items)

            if head_sync and page == 0:
                with session_scope(self._session_factory) as db:
                    self._store.set_newest_external_id(
                        db, claimed.id, items[0].external_id, started_at=claimed.started_at
                    )

            outcome.oldest = items[-1].cursor
            before = outcome.oldest

            valid = self._storable(items, unit)
            outcome.skipped_short += len(items) - len(valid)
            if not valid:
                break

            with session_scope(self._session_factory) as db:
                existing = self._store.existing_external_ids(db, unit, [i.external_id for i in valid])
                new_items = [i for i in valid if i.external_id not in existing]
                if not new_items:
                    # Overlaps coverage that is already stored.
                    break
                stored, duplicates = self._store.store_activity(db, unit, new_items)
            outcome.stored += len(stored)
            outcome.duplicates += len(existing) + duplicates
            for item in stored:
                if item.author_id:
                    outcome.new_activity.setdefault(item.author_id, set()).add(item.timestamp.date())

            if claimed.floor_at is not None and outcome.oldest.timestamp <= claimed.floor_at:
                break
            if len(items) < self._policy.page_size:
                break

    def _storable(self, items: List[ActivityItem], unit: UnitContext) -> List[ActivityItem]:
        out: List[ActivityItem] = []
        for item in items:
            content = (item.content or "").strip()
            if len(content) < self._policy.min_content_chars:
                continue
            if unit.max_chars and len(content) > unit.max_chars:
                content = content[: unit.max_chars]
            out.append(
                ActivityItem(
                    external_id=item.external_id,
                    content=content,
                    timestamp=item.timestamp,
                    author_id=item.author_id,
                    author_name=item.author_name,
                )
            )
        return out
