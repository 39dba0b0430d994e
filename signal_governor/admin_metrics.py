from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from .domain import STATUS_ERROR, STATUS_RUNNING
from .models import ActivityRecord, GovernorRun, ScoreRecord, SyncQueueItem


def _esc_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace("\"", "\\\"")


def _render_labels(labels: Optional[Dict[str, str]]) -> str:
    if not labels:
        return ""
    parts = [f'{k}="{_esc_label_value(str(v))}"' for k, v in sorted(labels.items()) if v is not None]
    return "{" + ",".join(parts) + "}" if parts else ""


def _metric_line(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> str:
    return f"{name}{_render_labels(labels)} {value}"


def _add_help_type(lines: List[str], name: str, help_text: str, metric_type: str) -> None:
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} {metric_type}")


def _age_seconds(now: datetime, ts: Optional[datetime]) -> float:
    if not ts:
        return 0.0
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return max(0.0, (now - ts).total_seconds())


def render_admin_metrics(db: Session) -> str:
    """
    Render low-cardinality, DB-backed governor metrics in Prometheus text format.

    Labels are limited to source/status; never unit keys or item ids.
    """
    lines: List[str] = []

    now = datetime.now(timezone.utc)
    _add_help_type(lines, "signal_governor_time_seconds", "Current server time (unix seconds).", "gauge")
    lines.append(_metric_line("signal_governor_time_seconds", now.timestamp()))

    _add_help_type(lines, "signal_governor_queue_items_total", "Count of sync queue items by source/status.", "gauge")
    rows: Iterable[Tuple[str, str, int]] = (
        db.query(SyncQueueItem.source, SyncQueueItem.status, func.count(SyncQueueItem.id))
        .group_by(SyncQueueItem.source, SyncQueueItem.status)
        .all()
    )
    for source, status, count in rows:
        lines.append(_metric_line("signal_governor_queue_items_total", float(count), {"source": source, "status": status}))

    _add_help_type(
        lines,
        "signal_governor_queue_exhausted_total",
        "Errored items that used their whole attempt budget and need manual requeue.",
        "gauge",
    )
    exhausted: Iterable[Tuple[str, int]] = (
        db.query(SyncQueueItem.source, func.count(SyncQueueItem.id))
        .filter(SyncQueueItem.status == STATUS_ERROR, SyncQueueItem.attempts >= SyncQueueItem.max_attempts)
        .group_by(SyncQueueItem.source)
        .all()
    )
    for source, count in exhausted:
        lines.append(_metric_line("signal_governor_queue_exhausted_total", float(count), {"source": source}))

    _add_help_type(
        lines,
        "signal_governor_queue_oldest_running_age_seconds",
        "Age in seconds of the oldest running lease (0 if none).",
        "gauge",
    )
    oldest_running: Iterable[Tuple[str, Optional[datetime]]] = (
        db.query(SyncQueueItem.source, func.min(SyncQueueItem.started_at))
        .filter(SyncQueueItem.status == STATUS_RUNNING)
        .group_by(SyncQueueItem.source)
        .all()
    )
    for source, started_at in oldest_running:
        lines.append(
            _metric_line(
                "signal_governor_queue_oldest_running_age_seconds", _age_seconds(now, started_at), {"source": source}
            )
        )

    _add_help_type(lines, "signal_governor_activity_records_total", "Stored activity rows by source.", "gauge")
    activity_rows: Iterable[Tuple[str, int]] = (
        db.query(ActivityRecord.source, func.count(ActivityRecord.id)).group_by(ActivityRecord.source).all()
    )
    for source, count in activity_rows:
        lines.append(_metric_line("signal_governor_activity_records_total", float(count), {"source": source}))

    _add_help_type(lines, "signal_governor_score_records_total", "Score rows by kind.", "gauge")
    raw_total = db.query(func.count(ScoreRecord.id)).filter(ScoreRecord.raw_value.isnot(None)).scalar() or 0
    smart_total = db.query(func.count(ScoreRecord.id)).filter(ScoreRecord.value.isnot(None)).scalar() or 0
    lines.append(_metric_line("signal_governor_score_records_total", float(raw_total), {"kind": "raw"}))
    lines.append(_metric_line("signal_governor_score_records_total", float(smart_total), {"kind": "smart"}))

    last_ticks: Iterable[Tuple[str, int]] = (
        db.query(GovernorRun.source, func.max(GovernorRun.id)).group_by(GovernorRun.source).all()
    )
    runs = [(source, db.get(GovernorRun, run_id)) for source, run_id in last_ticks]
    runs = [(source, run) for source, run in runs if run is not None]

    # Samples of one family stay contiguous.
    _add_help_type(
        lines, "signal_governor_last_tick_seconds", "Finish time of the last governor tick (unix seconds).", "gauge"
    )
    for source, run in runs:
        finished = run.finished_at or run.started_at
        lines.append(
            _metric_line(
                "signal_governor_last_tick_seconds",
                finished.replace(tzinfo=timezone.utc).timestamp(),
                {"source": source},
            )
        )

    _add_help_type(lines, "signal_governor_last_tick_items", "Item counters of the last governor tick.", "gauge")
    for source, run in runs:
        for field_name in ("reaped", "enqueued", "claimed", "completed", "crashed", "skipped"):
            lines.append(
                _metric_line(
                    "signal_governor_last_tick_items",
                    float(getattr(run, field_name) or 0),
                    {"source": source, "counter": field_name},
                )
            )

    return "\n".join(lines) + "\n"
