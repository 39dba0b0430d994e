from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from signal_governor.domain import STATUS_ERROR, STATUS_PENDING, STATUS_RUNNING
from signal_governor.models import SyncQueueItem
from signal_governor.observability import get_logger


class LeaseManager:
    """Claims, lease expiry and the concurrency cap for one queue table."""

    def __init__(self) -> None:
        self._logger = get_logger(__name__)

    def reap_expired(self, db: Session, source: str, timeout_seconds: int, now: Optional[datetime] = None) -> List[str]:
        """Move running items whose lease expired to `error` with one more attempt.

        Each transition is guarded on the observed `started_at`, so reaping twice
        in a row never increments the same lease twice.
        """
        # Use naive UTC timestamps; DB columns are `timestamp without time zone`.
        now = now or datetime.utcnow()
        cutoff = now - timedelta(seconds=timeout_seconds)

        if self._dialect(db) == "postgresql":
            reaped = self._reap_returning(db, source, cutoff)
            if reaped is not None:
                return reaped

        expired = (
            db.query(SyncQueueItem.id, SyncQueueItem.unit_key, SyncQueueItem.started_at, SyncQueueItem.attempts)
            .filter(
                SyncQueueItem.source == source,
                SyncQueueItem.status == STATUS_RUNNING,
                SyncQueueItem.started_at < cutoff,
            )
            .all()
        )
        reaped_ids: List[str] = []
        for item_id, unit_key, started_at, attempts in expired:
            updated = (
                db.query(SyncQueueItem)
                .filter(
                    SyncQueueItem.id == item_id,
                    SyncQueueItem.status == STATUS_RUNNING,
                    SyncQueueItem.started_at == started_at,
                )
                .update(
                    {"status": STATUS_ERROR, "attempts": SyncQueueItem.attempts + 1, "started_at": None},
                    synchronize_session=False,
                )
            )
            if not updated:
                continue
            db.commit()
            reaped_ids.append(item_id)
            self._log_reaped(item_id, source, unit_key, attempts + 1, started_at, timeout_seconds)
        return reaped_ids

    def _reap_returning(self, db: Session, source: str, cutoff: datetime) -> Optional[List[str]]:
        try:
            res = db.execute(
                text(
                    """
UPDATE sync_queue_items
SET status = 'error', attempts = attempts + 1, started_at = NULL, updated_at = now() at time zone 'utc'
WHERE source = :source
  AND status = 'running'
  AND started_at < :cutoff
RETURNING id, unit_key, attempts
"""
                ),
                {"source": source, "cutoff": cutoff},
            )
            rows = res.fetchall()
        except DBAPIError:
            db.rollback()
            self._logger.exception("queue.reap.returning_failed", extra={"event": "queue.reap.returning_failed"})
            return None
        db.commit()
        for row in rows[:10]:
            self._log_reaped(row[0], source, row[1], row[2], None, None)
        if len(rows) > 10:
            self._logger.warning(
                "queue.reap.batch",
                extra={"event": "queue.reap.batch", "source": source, "count": len(rows)},
            )
        return [row[0] for row in rows]

    def _log_reaped(
        self,
        item_id: str,
        source: str,
        unit_key: str,
        attempts: int,
        started_at: Optional[datetime],
        timeout_seconds: Optional[int],
    ) -> None:
        self._logger.warning(
            "queue.lease_expired",
            extra={
                "event": "queue.lease_expired",
                "item_id": item_id,
                "source": source,
                "unit_key": unit_key,
                "attempts": attempts,
                "started_at": started_at,
                "timeout_seconds": timeout_seconds,
            },
        )

    def available_capacity(self, db: Session, source: str, max_concurrent: int) -> int:
        running = (
            db.query(func.count(SyncQueueItem.id))
            .filter(SyncQueueItem.source == source, SyncQueueItem.status == STATUS_RUNNING)
            .scalar()
            or 0
        )
        return max_concurrent - int(running)

    def claim(
        self,
        db: Session,
        item_id: str,
        now: Optional[datetime] = None,
        *,
        source: Optional[str] = None,
        max_running: Optional[int] = None,
    ) -> bool:
        """Compare-and-swap `pending -> running`. Losing the race returns False, never raises."""
        now = now or datetime.utcnow()
        if max_running is not None and source is not None:
            if self.available_capacity(db, source, max_running) <= 0:
                self._logger.info(
                    "queue.claim.no_capacity",
                    extra={"event": "queue.claim.no_capacity", "item_id": item_id, "source": source},
                )
                return False
        updated = (
            db.query(SyncQueueItem)
            .filter(SyncQueueItem.id == item_id, SyncQueueItem.status == STATUS_PENDING)
            .update({"status": STATUS_RUNNING, "started_at": now, "finished_at": None}, synchronize_session=False)
        )
        if not updated:
            db.rollback()
            self._logger.info("queue.claim.lost", extra={"event": "queue.claim.lost", "item_id": item_id})
            return False
        db.commit()
        self._logger.info("queue.claim", extra={"event": "queue.claim", "item_id": item_id, "started_at": now})
        return True

    def retry_errored(self, db: Session, item_id: str) -> bool:
        """Return an errored item to `pending` while it still has attempts left."""
        updated = (
            db.query(SyncQueueItem)
            .filter(
                SyncQueueItem.id == item_id,
                SyncQueueItem.status == STATUS_ERROR,
                SyncQueueItem.attempts < SyncQueueItem.max_attempts,
            )
            .update({"status": STATUS_PENDING}, synchronize_session=False)
        )
        if not updated:
            db.rollback()
            return False
        db.commit()
        self._logger.info("queue.retry", extra={"event": "queue.retry", "item_id": item_id})
        return True

    @staticmethod
    def _dialect(db: Session) -> str:
        bind = db.get_bind()
        return str(getattr(bind.dialect, "name", "") or "")
