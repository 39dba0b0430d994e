import asyncio
import dataclasses
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from signal_governor.adapters.base import PlatformAdapter
from signal_governor.db import SessionFactory, session_scope
from signal_governor.domain import STATUS_ERROR, STATUS_RUNNING, QueuePolicy, SyncTarget, UnitContext
from signal_governor.errors import FetchError
from signal_governor.models import GovernorRun, ProjectSource
from signal_governor.observability import bind_context, clear_context, get_logger
from signal_governor.services.fetch_executor import FetchExecutor, FetchOutcome
from signal_governor.services.gap_detector import coverage_of, plan_next_window
from signal_governor.services.lease_manager import LeaseManager
from signal_governor.services.queue_store import QueueStore
from signal_governor.services.score_trigger import ScoreRecomputeTrigger
from signal_governor.services.scoring import Scorer
from signal_governor.settings import Settings

logger = get_logger(__name__)


@dataclass
class TickStats:
    source: str
    reaped: int = 0
    capacity: int = 0
    units: int = 0
    enqueued: int = 0
    claimed: int = 0
    completed: int = 0
    crashed: int = 0
    skipped: int = 0
    exhausted: int = 0
    no_work: int = 0
    scores_written: int = 0


def resolve_policy(adapter: PlatformAdapter, settings: Optional[Settings] = None) -> QueuePolicy:
    """Adapter defaults with any GOVERNOR_* settings applied on top."""
    policy = adapter.default_policy()
    if settings is None:
        return policy
    overrides = {
        "max_concurrent": settings.governor_max_concurrent,
        "timeout_seconds": settings.governor_timeout_seconds,
        "max_attempts": settings.governor_max_attempts,
        "page_size": settings.governor_page_size,
        "max_pages": settings.governor_max_pages,
        "head_gap_minutes": settings.governor_head_gap_minutes,
        "min_content_chars": settings.governor_min_content_chars,
    }
    return dataclasses.replace(policy, **{k: v for k, v in overrides.items() if v is not None})


class Governor:
    """One scheduling pass for a source: reap, plan, claim, execute, rescore.

    Ticks keep no in-process state; every decision goes through conditional
    updates on the queue table, so overlapping or redundant ticks are safe.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        adapter: PlatformAdapter,
        policy: QueuePolicy,
        *,
        scorer: Optional[Scorer] = None,
        store: Optional[QueueStore] = None,
        leases: Optional[LeaseManager] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        shuffle: Callable[[list], None] = random.shuffle,
    ) -> None:
        self._session_factory = session_factory
        self._adapter = adapter
        self._policy = policy
        self._store = store or QueueStore()
        self._leases = leases or LeaseManager()
        self._clock = clock
        self._shuffle = shuffle
        self._executor = FetchExecutor(session_factory, adapter, policy, store=self._store, clock=clock)
        self._trigger = (
            ScoreRecomputeTrigger(
                session_factory, scorer, provision_accounts=adapter.provisions_shell_accounts, clock=clock
            )
            if scorer is not None
            else None
        )

    @property
    def source(self) -> str:
        return self._adapter.source

    async def run_tick(self, *, project_id: Optional[str] = None) -> TickStats:
        started_at = self._clock()
        stats = TickStats(source=self.source)
        bind_context(governor_source=self.source)
        logger.info("governor.tick.start", extra={"event": "governor.tick.start", "project_id": project_id})
        try:
            with session_scope(self._session_factory) as db:
                stats.reaped = len(
                    self._leases.reap_expired(db, self.source, self._policy.timeout_seconds, started_at)
                )
                stats.capacity = self._leases.available_capacity(db, self.source, self._policy.max_concurrent)

            if stats.capacity <= 0:
                logger.info(
                    "governor.no_capacity",
                    extra={"event": "governor.no_capacity", "max_concurrent": self._policy.max_concurrent},
                )
            else:
                claimed = await self._claim_units(stats, project_id)
                await self._execute(claimed, stats)
        finally:
            self._record(stats, started_at)
            logger.info("governor.tick.done", extra={"event": "governor.tick.done", **dataclasses.asdict(stats)})
            clear_context("governor_source")
        return stats

    def _load_targets(self, project_id: Optional[str]) -> List[SyncTarget]:
        with session_scope(self._session_factory) as db:
            query = db.query(ProjectSource).filter(ProjectSource.source == self.source, ProjectSource.enabled.is_(True))
            if project_id:
                query = query.filter(ProjectSource.project_id == project_id)
            return [
                SyncTarget(
                    project_id=row.project_id,
                    source=row.source,
                    signal_source_id=row.signal_source_id,
                    url=row.url,
                    previous_days=row.previous_days,
                    max_chars=row.max_chars,
                    max_value=row.max_value,
                )
                for row in query.all()
            ]

    async def _claim_units(self, stats: TickStats, project_id: Optional[str]) -> List[Tuple[str, UnitContext]]:
        claimed: List[Tuple[str, UnitContext]] = []
        targets = self._load_targets(project_id)
        # Shuffled so one busy project cannot starve the others of capacity.
        self._shuffle(targets)
        for target in targets:
            if len(claimed) >= stats.capacity:
                break
            try:
                units = list(await self._adapter.list_units(target))
            except FetchError:
                logger.exception(
                    "governor.list_units_failed",
                    extra={"event": "governor.list_units_failed", "project_id": target.project_id},
                )
                continue
            self._shuffle(units)
            stats.units += len(units)
            for unit in units:
                if len(claimed) >= stats.capacity:
                    break
                item_id = self._acquire(unit, stats)
                if item_id:
                    claimed.append((item_id, unit))
        stats.claimed = len(claimed)
        return claimed

    def _acquire(self, unit: UnitContext, stats: TickStats) -> Optional[str]:
        """Find or create this unit's next item and claim it. Returns the claimed id."""
        now = self._clock()
        with session_scope(self._session_factory) as db:
            current = self._store.current_open_item(db, self.source, unit.unit_key)
            if current is not None:
                if current.status == STATUS_RUNNING:
                    stats.skipped += 1
                    return None
                if current.status == STATUS_ERROR:
                    if current.attempts >= current.max_attempts:
                        stats.exhausted += 1
                        logger.error(
                            "queue.attempts_exhausted",
                            extra={
                                "event": "queue.attempts_exhausted",
                                "item_id": current.id,
                                "unit_key": unit.unit_key,
                                "attempts": current.attempts,
                                "max_attempts": current.max_attempts,
                            },
                        )
                        return None
                    if not self._leases.retry_errored(db, current.id):
                        return None
                return self._claim(db, current.id, now)

            horizon = now - timedelta(days=unit.previous_days)
            head_gap = (
                timedelta(minutes=self._policy.head_gap_minutes) if self._policy.head_gap_minutes is not None else None
            )
            coverage = coverage_of(self._store.list_completed_for_unit(db, self.source, unit.unit_key, horizon))
            window = plan_next_window(
                coverage, now=now, horizon=horizon, head_gap=head_gap, sort_key=self._adapter.cursor_sort_key
            )
            if window is None:
                stats.no_work += 1
                logger.debug("governor.unit_synced", extra={"event": "governor.unit_synced", "unit_key": unit.unit_key})
                return None
            item = self._store.enqueue(db, unit, window, max_attempts=self._policy.max_attempts)
            if item is None:
                return None
            stats.enqueued += 1
            return self._claim(db, item.id, now)

    def _claim(self, db, item_id: str, now: datetime) -> Optional[str]:
        ok = self._leases.claim(db, item_id, now, source=self.source, max_running=self._policy.max_concurrent)
        return item_id if ok else None

    async def _execute(self, claimed: List[Tuple[str, UnitContext]], stats: TickStats) -> None:
        if not claimed:
            return
        tasks = {asyncio.create_task(self._run_item(item_id, unit)): item_id for item_id, unit in claimed}
        done, _pending = await asyncio.wait(tasks)
        for task in done:
            try:
                outcome: FetchOutcome = task.result()
            except Exception:
                # Item stays running; the lease timeout hands it back to the retry path.
                stats.crashed += 1
                logger.exception(
                    "governor.item_crash",
                    extra={"event": "governor.item_crash", "item_id": tasks[task]},
                )
                continue
            if outcome.completed:
                stats.completed += 1
            stats.scores_written += outcome.scores_written

    async def _run_item(self, item_id: str, unit: UnitContext) -> FetchOutcome:
        outcome = await self._executor.execute(item_id, unit)
        if not (outcome.completed and self._trigger and outcome.new_activity):
            return outcome
        try:
            outcome.scores_written = await self._trigger.on_new_activity(unit, outcome.new_activity)
        except Exception:
            logger.exception(
                "score.trigger_failed",
                extra={"event": "score.trigger_failed", "item_id": item_id, "unit_key": unit.unit_key},
            )
        return outcome

    def _record(self, stats: TickStats, started_at: datetime) -> None:
        with session_scope(self._session_factory) as db:
            db.add(
                GovernorRun(
                    source=self.source,
                    started_at=started_at,
                    finished_at=self._clock(),
                    reaped=stats.reaped,
                    enqueued=stats.enqueued,
                    claimed=stats.claimed,
                    completed=stats.completed,
                    crashed=stats.crashed,
                    skipped=stats.skipped,
                    scores_written=stats.scores_written,
                )
            )
