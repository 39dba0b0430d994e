import logging
from datetime import date, datetime, timedelta

import pytest
from conftest import NOW, FakeScorer, make_stream

from signal_governor.db import session_scope
from signal_governor.domain import ScoringConfig
from signal_governor.errors import ProjectSourceNotFoundError
from signal_governor.models import PlatformAccount, ScoreRecord
from signal_governor.services.queue_store import QueueStore
from signal_governor.services.score_trigger import (
    KIND_RAW,
    ScoreRecomputeTrigger,
    delete_duplicate_scores,
    is_recompute_due,
)

DAY = NOW.date()


def score_rows(session_factory):
    with session_scope(session_factory) as db:
        return db.query(ScoreRecord).order_by(ScoreRecord.id.asc()).all()


def store(session_factory, unit, items):
    with session_scope(session_factory) as db:
        QueueStore().store_activity(db, unit, items)


@pytest.mark.parametrize(
    "last, latest, expected",
    [
        (None, None, False),
        (datetime(2024, 1, 1), None, False),
        (None, datetime(2024, 1, 1), True),
        (datetime(2024, 1, 1, 10, 0, 0), datetime(2024, 1, 1, 10, 0, 0, 999000), False),
        (datetime(2024, 1, 1, 10, 0, 0), datetime(2024, 1, 1, 10, 0, 1), True),
        ("2024-01-01T10:00:00Z", datetime(2024, 1, 1, 10, 0, 0), False),
        ("2024-01-01 10:00:00", "2024-01-01T10:00:00.123456", False),
        ("", "2024-01-01T10:00:00", True),
        (None, "2024-01-01T00:00:05Z", True),
        ("2024-01-01T00:00:05.999Z", "2024-01-01T00:00:05.001Z", False),
    ],
)
def test_is_recompute_due(last, latest, expected):
    assert is_recompute_due(last, latest) is expected


def test_delete_duplicate_scores_keeps_one_request_per_kind(session_factory):
    key = {"user_id": "user_1", "project_id": "proj_1", "signal_source_id": "sig_1", "day": DAY}
    with session_scope(session_factory) as db:
        for request_id in ("req-a", "req-b", "req-c"):
            db.add(ScoreRecord(request_id=request_id, raw_value=10.0, **key))
        db.add(ScoreRecord(request_id="req-smart", value=40.0, **key))
        db.add(ScoreRecord(request_id="req-other-day", raw_value=5.0, **{**key, "day": DAY - timedelta(days=1)}))
        db.commit()

        deleted = delete_duplicate_scores(db, keep_request_id="req-c", kind=KIND_RAW, **key)

    assert deleted == 2
    assert [r.request_id for r in score_rows(session_factory)] == ["req-c", "req-smart", "req-other-day"]


@pytest.mark.asyncio
async def test_new_activity_writes_raw_then_smart(session_factory, unit, linked_account):
    items = make_stream(3)
    store(session_factory, unit, items)
    scorer = FakeScorer(value=80.0)
    trigger = ScoreRecomputeTrigger(session_factory, scorer)

    written = await trigger.on_new_activity(unit, {"author-1": {DAY}})

    assert written == 2
    raw, smart = score_rows(session_factory)
    assert raw.raw_value == 80.0
    assert raw.value is None
    assert raw.user_id == "user_1"
    assert raw.last_updated == items[0].timestamp
    assert smart.value == 40.0
    assert smart.summary == "smart summary"
    assert [w.kind for w in scorer.windows] == ["raw", "smart"]
    assert [a["id"] for a in scorer.windows[0].activity] == [i.external_id for i in reversed(items)]


@pytest.mark.asyncio
async def test_nothing_is_rescored_without_newer_activity(session_factory, unit, linked_account):
    store(session_factory, unit, make_stream(3))
    trigger = ScoreRecomputeTrigger(session_factory, FakeScorer())
    await trigger.on_new_activity(unit, {"author-1": {DAY}})

    assert await trigger.on_new_activity(unit, {"author-1": {DAY}}) == 0
    assert len(score_rows(session_factory)) == 2


@pytest.mark.asyncio
async def test_rescore_replaces_previous_row(session_factory, unit, linked_account):
    first = make_stream(2)
    store(session_factory, unit, first)
    trigger = ScoreRecomputeTrigger(session_factory, FakeScorer(value=30.0))
    await trigger.on_new_activity(unit, {"author-1": {DAY}})

    newer = make_stream(1, newest=first[0].timestamp + timedelta(minutes=5), first_id=9000)
    store(session_factory, unit, newer)
    trigger = ScoreRecomputeTrigger(session_factory, FakeScorer(value=90.0))
    assert await trigger.on_new_activity(unit, {"author-1": {DAY}}) == 2

    rows = score_rows(session_factory)
    assert len(rows) == 2
    raw = next(r for r in rows if r.raw_value is not None)
    assert raw.raw_value == 90.0
    assert raw.last_updated == newer[0].timestamp


@pytest.mark.asyncio
async def test_scorer_error_writes_nothing(session_factory, unit, linked_account):
    store(session_factory, unit, make_stream(3))
    trigger = ScoreRecomputeTrigger(session_factory, FakeScorer(error="openrouter_request_failed"))

    assert await trigger.on_new_activity(unit, {"author-1": {DAY}}) == 0
    assert score_rows(session_factory) == []


@pytest.mark.asyncio
async def test_scorer_exception_writes_nothing_and_next_activity_retries(
    session_factory, unit, linked_account, caplog
):
    store(session_factory, unit, make_stream(3))
    broken = ScoreRecomputeTrigger(session_factory, FakeScorer(raises=RuntimeError("connection reset")))

    with caplog.at_level(logging.WARNING):
        assert await broken.on_new_activity(unit, {"author-1": {DAY}}) == 0

    assert score_rows(session_factory) == []
    failed = [r for r in caplog.records if r.getMessage() == "score.failed"]
    assert failed and failed[0].exc_info is not None
    assert any(r.getMessage() == "score.smart_skipped" for r in caplog.records)

    trigger = ScoreRecomputeTrigger(session_factory, FakeScorer(value=70.0))
    assert await trigger.on_new_activity(unit, {"author-1": {DAY}}) == 2
    assert sorted(r.raw_value or r.value for r in score_rows(session_factory)) == [35.0, 70.0]


@pytest.mark.asyncio
async def test_raw_value_is_clamped_to_max(session_factory, unit, linked_account):
    store(session_factory, unit, make_stream(1))
    trigger = ScoreRecomputeTrigger(session_factory, FakeScorer(value=250.0))
    await trigger.on_new_activity(unit, {"author-1": {DAY}})

    raw = next(r for r in score_rows(session_factory) if r.raw_value is not None)
    assert raw.raw_value == 100.0


@pytest.mark.asyncio
async def test_unmapped_author_is_not_scored(session_factory, unit, linked_account):
    store(session_factory, unit, make_stream(2, author="stranger"))
    scorer = FakeScorer()
    trigger = ScoreRecomputeTrigger(session_factory, scorer)

    assert await trigger.on_new_activity(unit, {"stranger": {DAY}}) == 0
    assert scorer.windows == []


@pytest.mark.asyncio
async def test_author_resolved_by_username(session_factory, unit, linked_account):
    store(session_factory, unit, make_stream(2, author="author_one"))
    trigger = ScoreRecomputeTrigger(session_factory, FakeScorer())

    assert await trigger.on_new_activity(unit, {"author_one": {DAY}}) == 2
    assert {r.user_id for r in score_rows(session_factory)} == {"user_1"}


@pytest.mark.asyncio
async def test_smart_score_uses_latest_raw_row_per_day(session_factory, unit, linked_account):
    config_key = {"user_id": "user_1", "project_id": "proj_1", "signal_source_id": "sig_1", "max_value": 100.0}
    earlier = DAY - timedelta(days=1)
    with session_scope(session_factory) as db:
        db.add(ScoreRecord(day=earlier, raw_value=10.0, request_id="old", last_updated=NOW - timedelta(days=1), **config_key))
        db.add(ScoreRecord(day=earlier, raw_value=100.0, request_id="new", last_updated=NOW - timedelta(days=1), **config_key))
        db.add(ScoreRecord(day=DAY, raw_value=80.0, request_id="today", last_updated=NOW, **config_key))
    trigger = ScoreRecomputeTrigger(session_factory, FakeScorer())
    config = ScoringConfig(
        user_id="user_1", project_id="proj_1", signal_source_id="sig_1", source="fake", max_value=100.0
    )
    assert await trigger.recompute_smart(config, DAY) is True

    smart = next(r for r in score_rows(session_factory) if r.value is not None)
    # Band holds 1.0 and 0.8: average 0.9 scaled by the two-day multiplier.
    assert smart.value == 63.0
    assert smart.day == date(2024, 6, 1)
    assert smart.last_updated == NOW


@pytest.mark.asyncio
async def test_unlinked_author_gets_a_shell_account(session_factory, unit):
    store(session_factory, unit, make_stream(2, author="9911"))
    trigger = ScoreRecomputeTrigger(session_factory, FakeScorer(), provision_accounts=True)

    assert await trigger.on_new_activity(unit, {"9911": {DAY}}) == 2

    with session_scope(session_factory) as db:
        account = db.query(PlatformAccount).one()
    assert account.user_id == "shell-fake-9911"
    assert account.external_username == "9911"
    assert account.is_shell is True
    assert {r.user_id for r in score_rows(session_factory)} == {"shell-fake-9911"}

    store(session_factory, unit, make_stream(1, author="9911", newest=NOW - timedelta(minutes=30), first_id=7000))
    assert await trigger.on_new_activity(unit, {"9911": {DAY}}) == 2
    with session_scope(session_factory) as db:
        assert db.query(PlatformAccount).count() == 1


@pytest.mark.asyncio
async def test_rescore_recomputes_without_new_activity(session_factory, unit, project_source, linked_account):
    store(session_factory, unit, make_stream(3))
    await ScoreRecomputeTrigger(session_factory, FakeScorer(value=30.0)).on_new_activity(unit, {"author-1": {DAY}})

    scorer = FakeScorer(value=60.0)
    result = await ScoreRecomputeTrigger(session_factory, scorer).rescore("fake", "proj_1", today=DAY)

    assert (result.accounts, result.written, result.failed) == (1, 2, 0)
    assert [w.kind for w in scorer.windows] == ["raw", "smart"]
    rows = score_rows(session_factory)
    assert sorted(r.raw_value or r.value for r in rows) == [30.0, 60.0]


@pytest.mark.asyncio
async def test_rescore_filters_by_user_and_lookback(session_factory, unit, project_source, linked_account):
    store(session_factory, unit, make_stream(2, newest=NOW - timedelta(days=120)))
    trigger = ScoreRecomputeTrigger(session_factory, FakeScorer())

    other = await trigger.rescore("fake", "proj_1", user_id="user_2", today=DAY)
    assert other.accounts == 0

    stale = await trigger.rescore("fake", "proj_1", user_id="user_1", today=DAY)
    assert (stale.accounts, stale.written) == (1, 0)
    assert score_rows(session_factory) == []


@pytest.mark.asyncio
async def test_rescore_requires_configured_project_source(session_factory):
    trigger = ScoreRecomputeTrigger(session_factory, FakeScorer())
    with pytest.raises(ProjectSourceNotFoundError):
        await trigger.rescore("fake", "proj_missing", today=DAY)
