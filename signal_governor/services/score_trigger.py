import dataclasses
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from signal_governor.db import SessionFactory, session_scope
from signal_governor.domain import ActivityWindow, ScoringConfig, ScoringResult, UnitContext
from signal_governor.errors import ProjectSourceNotFoundError
from signal_governor.models import ActivityRecord, PlatformAccount, ProjectSource, ScoreRecord
from signal_governor.observability import get_logger
from signal_governor.services.scoring import DailyRawScore, Scorer, calculate_smart_score, clamp_score

KIND_RAW = "raw"
KIND_SMART = "smart"

logger = get_logger(__name__)

Timestamp = Union[datetime, str, None]


def _to_second(value: Timestamp) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return raw.replace(" ", "T")[:19]
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0).isoformat()


def is_recompute_due(last_processed: Timestamp, latest_activity: Timestamp) -> bool:
    """True when activity newer than the last computation exists, compared at second granularity."""
    latest = _to_second(latest_activity)
    if latest is None:
        return False
    last = _to_second(last_processed)
    if last is None:
        return True
    return last != latest


def delete_duplicate_scores(
    db: Session,
    *,
    user_id: str,
    project_id: str,
    signal_source_id: str,
    day: date,
    keep_request_id: str,
    kind: str,
) -> int:
    """Remove rows of the same key and kind written by other computations. Returns the number deleted."""
    kind_column = ScoreRecord.raw_value if kind == KIND_RAW else ScoreRecord.value
    deleted = (
        db.query(ScoreRecord)
        .filter(
            ScoreRecord.user_id == user_id,
            ScoreRecord.project_id == project_id,
            ScoreRecord.signal_source_id == signal_source_id,
            ScoreRecord.day == day,
            ScoreRecord.request_id != keep_request_id,
            kind_column.isnot(None),
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info(
            "score.duplicates_deleted",
            extra={
                "event": "score.duplicates_deleted",
                "user_id": user_id,
                "project_id": project_id,
                "day": day,
                "kind": kind,
                "deleted": deleted,
            },
        )
    return int(deleted or 0)


@dataclass
class RescoreResult:
    source: str
    project_id: str
    accounts: int = 0
    written: int = 0
    failed: int = 0


class ScoreRecomputeTrigger:
    """Recomputes raw (per-day) and smart (aggregated) scores after new activity is stored.

    With `provision_accounts`, authors who never linked an account get a shell
    account so their activity is scored anyway.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        scorer: Scorer,
        *,
        provision_accounts: bool = False,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._scorer = scorer
        self._provision_accounts = provision_accounts
        self._clock = clock

    async def on_new_activity(self, unit: UnitContext, new_activity: Mapping[str, Set[date]]) -> int:
        """Returns the number of score rows written."""
        written = 0
        for author_id, days in new_activity.items():
            user_id = self._resolve_user(unit, author_id)
            if not user_id and self._provision_accounts:
                user_id = self._provision_shell_account(unit, author_id)
            if not user_id:
                logger.debug(
                    "score.unmapped_author",
                    extra={"event": "score.unmapped_author", "source": unit.source, "author_id": author_id},
                )
                continue
            config = ScoringConfig(
                user_id=user_id,
                project_id=unit.project_id,
                signal_source_id=unit.signal_source_id,
                source=unit.source,
                max_value=unit.max_value,
                max_chars=unit.max_chars,
                previous_days=unit.previous_days,
            )
            count, _ = await self._score_author(config, author_id, days)
            written += count
        return written

    async def rescore(
        self, source: str, project_id: str, *, user_id: Optional[str] = None, today: Optional[date] = None
    ) -> RescoreResult:
        """Operator rescore of one user, or of every account in the project.

        Each day with stored activity inside the lookback is scored again even
        when nothing new arrived since the last computation.
        """
        today = today or self._clock().date()
        result = RescoreResult(source=source, project_id=project_id)
        plans: List[Tuple[ScoringConfig, Dict[str, Set[date]]]] = []
        with session_scope(self._session_factory) as db:
            project = (
                db.query(ProjectSource)
                .filter(ProjectSource.project_id == project_id, ProjectSource.source == source)
                .one_or_none()
            )
            if project is None:
                raise ProjectSourceNotFoundError(source, project_id)
            query = db.query(PlatformAccount).filter(
                PlatformAccount.source == source, PlatformAccount.project_id == project_id
            )
            if user_id:
                query = query.filter(PlatformAccount.user_id == user_id)
            since = datetime.combine(today - timedelta(days=project.previous_days), time.min)
            for account in query.order_by(PlatformAccount.id.asc()).all():
                authors = {a for a in (account.external_user_id, account.external_username) if a}
                rows = (
                    db.query(ActivityRecord.author_id, ActivityRecord.created_timestamp)
                    .filter(
                        ActivityRecord.source == source,
                        ActivityRecord.project_id == project_id,
                        ActivityRecord.author_id.in_(authors),
                        ActivityRecord.created_timestamp >= since,
                    )
                    .all()
                )
                activity: Dict[str, Set[date]] = {}
                for author_id, created in rows:
                    activity.setdefault(author_id, set()).add(created.date())
                config = ScoringConfig(
                    user_id=account.user_id,
                    project_id=project_id,
                    signal_source_id=project.signal_source_id,
                    source=source,
                    max_value=project.max_value,
                    max_chars=project.max_chars,
                    previous_days=project.previous_days,
                )
                plans.append((config, activity))

        for config, activity in plans:
            result.accounts += 1
            for author_id in sorted(activity):
                count, ok = await self._score_author(config, author_id, activity[author_id], force=True)
                result.written += count
                if not ok:
                    result.failed += 1
        logger.info(
            "score.rescore",
            extra={"event": "score.rescore", "user_id": user_id, **dataclasses.asdict(result)},
        )
        return result

    async def _score_author(
        self, config: ScoringConfig, author_id: str, days: Set[date], *, force: bool = False
    ) -> Tuple[int, bool]:
        """Raw score per day, then the smart score. Returns rows written and whether every raw day scored."""
        written = 0
        raw_failed = False
        for day in sorted(days):
            result = await self.recompute_raw(config, author_id, day, force=force)
            if result is None:
                raw_failed = True
            elif result:
                written += 1
        if raw_failed:
            logger.warning(
                "score.smart_skipped",
                extra={"event": "score.smart_skipped", "user_id": config.user_id, "reason": "raw_failed"},
            )
            return written, False
        if await self.recompute_smart(config, max(days), force=force):
            written += 1
        return written, True

    def _resolve_user(self, unit: UnitContext, author_id: str) -> Optional[str]:
        with session_scope(self._session_factory) as db:
            row = (
                db.query(PlatformAccount.user_id)
                .filter(
                    PlatformAccount.source == unit.source,
                    PlatformAccount.project_id == unit.project_id,
                    or_(PlatformAccount.external_user_id == author_id, PlatformAccount.external_username == author_id),
                )
                .first()
            )
            return row[0] if row else None

    def _provision_shell_account(self, unit: UnitContext, author_id: str) -> Optional[str]:
        user_id = f"shell-{unit.source}-{author_id}"
        with session_scope(self._session_factory) as db:
            author_name = (
                db.query(ActivityRecord.author_name)
                .filter(
                    ActivityRecord.source == unit.source,
                    ActivityRecord.project_id == unit.project_id,
                    ActivityRecord.author_id == author_id,
                )
                .order_by(ActivityRecord.created_timestamp.desc())
                .limit(1)
                .scalar()
            )
            db.add(
                PlatformAccount(
                    user_id=user_id,
                    project_id=unit.project_id,
                    source=unit.source,
                    external_user_id=author_id,
                    external_username=author_name,
                    is_shell=True,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                # Another tick provisioned the same author first.
                return self._resolve_user(unit, author_id)
        logger.info(
            "account.shell_created",
            extra={
                "event": "account.shell_created",
                "user_id": user_id,
                "source": unit.source,
                "project_id": unit.project_id,
                "author_id": author_id,
            },
        )
        return user_id

    async def recompute_raw(
        self, config: ScoringConfig, author_id: str, day: date, *, force: bool = False
    ) -> Optional[bool]:
        """Rescore one day when due (or forced). True if written, False if not due, None on scoring failure."""
        start = datetime.combine(day, time.min)
        end = start + timedelta(days=1)
        with session_scope(self._session_factory) as db:
            records = (
                db.query(ActivityRecord)
                .filter(
                    ActivityRecord.source == config.source,
                    ActivityRecord.project_id == config.project_id,
                    ActivityRecord.author_id == author_id,
                    ActivityRecord.created_timestamp >= start,
                    ActivityRecord.created_timestamp < end,
                )
                .order_by(ActivityRecord.created_timestamp.asc())
                .all()
            )
            latest_activity = max((r.created_timestamp for r in records), default=None)
            last = self._latest_row(db, config, day, KIND_RAW)
            if latest_activity is None:
                return False
            if not force and not is_recompute_due(last.last_updated if last else None, latest_activity):
                return False
            activity = [
                {"id": r.external_id, "content": r.content, "created_at": r.created_timestamp.isoformat()}
                for r in records
            ]

        window = ActivityWindow(kind=KIND_RAW, day=day, activity=activity)
        result = await self._score(window, config)
        if result is None or result.value is None:
            return None
        self._write(config, day, KIND_RAW, clamp_score(result.value, config.max_value), result, latest_activity)
        return True

    async def recompute_smart(self, config: ScoringConfig, day: date, *, force: bool = False) -> bool:
        since = day - timedelta(days=config.previous_days)
        with session_scope(self._session_factory) as db:
            raw_rows = self._deduped_raw_rows(db, config, since, day)
            latest_raw = max((r.last_updated for r in raw_rows if r.last_updated), default=None)
            last = self._latest_row(db, config, day, KIND_SMART)
            if not force and not is_recompute_due(last.last_updated if last else None, latest_raw):
                return False
            daily = [DailyRawScore(day=r.day, raw_value=r.raw_value, max_value=r.max_value or config.max_value) for r in raw_rows]
            activity = [
                {"day": r.day.isoformat(), "raw_value": r.raw_value, "summary": r.summary} for r in raw_rows
            ]

        value, band_days = calculate_smart_score(
            daily, previous_days=config.previous_days, max_value=config.max_value, today=day
        )
        window = ActivityWindow(kind=KIND_SMART, day=day, activity=activity)
        result = await self._score(window, config)
        if result is None:
            return False
        logger.info(
            "score.smart",
            extra={"event": "score.smart", "user_id": config.user_id, "day": day, "value": value, "top_band_days": band_days},
        )
        self._write(config, day, KIND_SMART, clamp_score(value, config.max_value), result, latest_raw)
        return True

    async def _score(self, window: ActivityWindow, config: ScoringConfig) -> Optional[ScoringResult]:
        try:
            result = await self._scorer.score(window, config)
        except Exception:
            logger.exception(
                "score.failed",
                extra={"event": "score.failed", "kind": window.kind, "user_id": config.user_id, "day": window.day},
            )
            return None
        if result.error:
            logger.warning(
                "score.failed",
                extra={
                    "event": "score.failed",
                    "kind": window.kind,
                    "user_id": config.user_id,
                    "day": window.day,
                    "error": result.error,
                },
            )
            return None
        return result

    def _write(
        self,
        config: ScoringConfig,
        day: date,
        kind: str,
        value: float,
        result: ScoringResult,
        last_updated: Optional[datetime],
    ) -> None:
        request_id = result.request_id or str(uuid.uuid4())
        with session_scope(self._session_factory) as db:
            db.add(
                ScoreRecord(
                    user_id=config.user_id,
                    project_id=config.project_id,
                    signal_source_id=config.signal_source_id,
                    day=day,
                    raw_value=value if kind == KIND_RAW else None,
                    value=value if kind == KIND_SMART else None,
                    max_value=config.max_value,
                    summary=result.summary,
                    description=result.description,
                    request_id=request_id,
                    last_updated=last_updated,
                    model=result.model,
                    prompt_tokens=result.prompt_tokens,
                    completion_tokens=result.completion_tokens,
                )
            )
            db.commit()
            delete_duplicate_scores(
                db,
                user_id=config.user_id,
                project_id=config.project_id,
                signal_source_id=config.signal_source_id,
                day=day,
                keep_request_id=request_id,
                kind=kind,
            )
        logger.info(
            "score.written",
            extra={
                "event": "score.written",
                "kind": kind,
                "user_id": config.user_id,
                "project_id": config.project_id,
                "day": day,
                "value": value,
                "request_id": request_id,
            },
        )

    @staticmethod
    def _latest_row(db: Session, config: ScoringConfig, day: date, kind: str) -> Optional[ScoreRecord]:
        kind_column = ScoreRecord.raw_value if kind == KIND_RAW else ScoreRecord.value
        return (
            db.query(ScoreRecord)
            .filter(
                ScoreRecord.user_id == config.user_id,
                ScoreRecord.project_id == config.project_id,
                ScoreRecord.signal_source_id == config.signal_source_id,
                ScoreRecord.day == day,
                kind_column.isnot(None),
            )
            .order_by(ScoreRecord.id.desc())
            .first()
        )

    @staticmethod
    def _deduped_raw_rows(db: Session, config: ScoringConfig, since: date, until: date) -> List[ScoreRecord]:
        """One raw row per day in `[since, until]`, the highest id winning."""
        newest_ids = (
            select(func.max(ScoreRecord.id))
            .where(
                ScoreRecord.user_id == config.user_id,
                ScoreRecord.project_id == config.project_id,
                ScoreRecord.signal_source_id == config.signal_source_id,
                ScoreRecord.raw_value.isnot(None),
                ScoreRecord.day >= since,
                ScoreRecord.day <= until,
            )
            .group_by(ScoreRecord.day)
        )
        return db.query(ScoreRecord).filter(ScoreRecord.id.in_(newest_ids)).order_by(ScoreRecord.day.asc()).all()
