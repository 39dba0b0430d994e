import uuid
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from signal_governor.domain import (
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_RUNNING,
    ActivityItem,
    Cursor,
    UnitContext,
    Window,
)
from signal_governor.models import ActivityRecord, SyncQueueItem
from signal_governor.observability import get_logger


class QueueStore:
    """Persisted sync queue plus the activity rows its items produce.

    Every mutation commits immediately and transitions are conditional updates,
    so callers never hold a session open across an external call.
    """

    def __init__(self) -> None:
        self._logger = get_logger(__name__)

    def get(self, db: Session, item_id: str) -> Optional[SyncQueueItem]:
        return db.get(SyncQueueItem, item_id)

    def enqueue(self, db: Session, unit: UnitContext, window: Window, *, max_attempts: int) -> Optional[SyncQueueItem]:
        """Insert a pending item for the window. Returns None when another open item won the race."""
        item = SyncQueueItem(
            id=str(uuid.uuid4()),
            source=unit.source,
            unit_key=unit.unit_key,
            project_id=unit.project_id,
            status=STATUS_PENDING,
            attempts=0,
            max_attempts=max_attempts,
            newest_cursor_at=window.newest.timestamp,
            newest_cursor_id=window.newest.external_id,
            floor_cursor_at=window.floor.timestamp if window.floor else None,
        )
        db.add(item)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            self._logger.info(
                "queue.enqueue.conflict",
                extra={"event": "queue.enqueue.conflict", "source": unit.source, "unit_key": unit.unit_key},
            )
            return None
        self._logger.info(
            "queue.enqueue",
            extra={
                "event": "queue.enqueue",
                "item_id": item.id,
                "source": unit.source,
                "unit_key": unit.unit_key,
                "project_id": unit.project_id,
                "reason": window.reason,
                "newest_cursor_at": window.newest.timestamp,
                "newest_cursor_id": window.newest.external_id,
                "floor_cursor_at": item.floor_cursor_at,
            },
        )
        return item

    def current_open_item(self, db: Session, source: str, unit_key: str) -> Optional[SyncQueueItem]:
        return (
            db.query(SyncQueueItem)
            .filter(
                SyncQueueItem.source == source,
                SyncQueueItem.unit_key == unit_key,
                SyncQueueItem.status != STATUS_COMPLETED,
            )
            .order_by(SyncQueueItem.created_at.desc())
            .first()
        )

    def list_completed_for_unit(self, db: Session, source: str, unit_key: str, horizon: datetime) -> List[SyncQueueItem]:
        """Completed items whose newest cursor is within the retention horizon, newest first."""
        return (
            db.query(SyncQueueItem)
            .filter(
                SyncQueueItem.source == source,
                SyncQueueItem.unit_key == unit_key,
                SyncQueueItem.status == STATUS_COMPLETED,
                SyncQueueItem.newest_cursor_at >= horizon,
            )
            .order_by(SyncQueueItem.newest_cursor_at.desc())
            .all()
        )

    def count_running(self, db: Session, source: str) -> int:
        return int(
            db.query(func.count(SyncQueueItem.id))
            .filter(SyncQueueItem.source == source, SyncQueueItem.status == STATUS_RUNNING)
            .scalar()
            or 0
        )

    def set_newest_external_id(self, db: Session, item_id: str, external_id: str, *, started_at: datetime) -> bool:
        """Record the head item's id once a head sync has seen the first page."""
        updated = (
            db.query(SyncQueueItem)
            .filter(*self._held_by(item_id, started_at))
            .update({"newest_cursor_id": external_id}, synchronize_session=False)
        )
        if updated:
            db.commit()
            return True
        db.rollback()
        return False

    def complete(
        self, db: Session, item_id: str, oldest: Optional[Cursor], now: datetime, *, started_at: datetime
    ) -> bool:
        """Mark a running item completed.

        `started_at` identifies the lease the caller claimed. Returns False when the
        item was reaped meanwhile, including when a later claim now holds it.
        """
        values = {"status": STATUS_COMPLETED, "finished_at": now, "started_at": None}
        if oldest is not None:
            values["oldest_cursor_at"] = oldest.timestamp
            values["oldest_cursor_id"] = oldest.external_id
        updated = (
            db.query(SyncQueueItem)
            .filter(*self._held_by(item_id, started_at))
            .update(values, synchronize_session=False)
        )
        if not updated:
            db.rollback()
            self._logger.warning(
                "queue.complete.not_owned",
                extra={"event": "queue.complete.not_owned", "item_id": item_id, "started_at": started_at},
            )
            return False
        db.commit()
        self._logger.info(
            "queue.complete",
            extra={
                "event": "queue.complete",
                "item_id": item_id,
                "oldest_cursor_at": oldest.timestamp if oldest else None,
                "oldest_cursor_id": oldest.external_id if oldest else None,
            },
        )
        return True

    @staticmethod
    def _held_by(item_id: str, started_at: datetime) -> tuple:
        return (
            SyncQueueItem.id == item_id,
            SyncQueueItem.status == STATUS_RUNNING,
            SyncQueueItem.started_at == started_at,
        )

    def requeue(self, db: Session, item_id: str) -> bool:
        """Operator reset of an errored item: back to pending with a fresh attempt budget."""
        updated = (
            db.query(SyncQueueItem)
            .filter(SyncQueueItem.id == item_id, SyncQueueItem.status == STATUS_ERROR)
            .update({"status": STATUS_PENDING, "attempts": 0, "started_at": None}, synchronize_session=False)
        )
        if not updated:
            db.rollback()
            return False
        db.commit()
        self._logger.warning("queue.requeue", extra={"event": "queue.requeue", "item_id": item_id})
        return True

    def existing_external_ids(self, db: Session, unit: UnitContext, external_ids: Iterable[str]) -> Set[str]:
        ids = list(external_ids)
        if not ids:
            return set()
        rows = (
            db.query(ActivityRecord.external_id)
            .filter(
                ActivityRecord.source == unit.source,
                ActivityRecord.project_id == unit.project_id,
                ActivityRecord.external_id.in_(ids),
            )
            .all()
        )
        return {row[0] for row in rows}

    def store_activity(self, db: Session, unit: UnitContext, items: Sequence[ActivityItem]) -> Tuple[List[ActivityItem], int]:
        """Insert activity idempotently on its natural key.

        Returns the items that were newly stored and the number that were already present.
        """
        if not items:
            return [], 0
        db.add_all([self._record(unit, item) for item in items])
        try:
            db.commit()
            return list(items), 0
        except IntegrityError:
            db.rollback()

        # A concurrent writer stored some of these; fall back to row-by-row inserts.
        stored: List[ActivityItem] = []
        duplicates = 0
        for item in items:
            db.add(self._record(unit, item))
            try:
                db.commit()
                stored.append(item)
            except IntegrityError:
                db.rollback()
                duplicates += 1
                self._logger.info(
                    "activity.already_stored",
                    extra={
                        "event": "activity.already_stored",
                        "source": unit.source,
                        "unit_key": unit.unit_key,
                        "external_id": item.external_id,
                    },
                )
        return stored, duplicates

    @staticmethod
    def _record(unit: UnitContext, item: ActivityItem) -> ActivityRecord:
        return ActivityRecord(
            source=unit.source,
            project_id=unit.project_id,
            unit_key=unit.unit_key,
            external_id=item.external_id,
            author_id=item.author_id,
            author_name=item.author_name,
            content=item.content,
            created_timestamp=item.timestamp,
        )
