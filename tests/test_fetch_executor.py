import asyncio
import dataclasses
from datetime import timedelta

import pytest
from conftest import NOW, FakeAdapter, make_stream

from signal_governor.db import session_scope
from signal_governor.domain import STATUS_COMPLETED, STATUS_ERROR, STATUS_RUNNING, ActivityItem, Cursor, QueuePolicy, Window
from signal_governor.errors import FetchError
from signal_governor.models import ActivityRecord, SyncQueueItem
from signal_governor.services.fetch_executor import FetchExecutor
from signal_governor.services.lease_manager import LeaseManager
from signal_governor.services.queue_store import QueueStore


def policy(**overrides):
    base = QueuePolicy(max_concurrent=5, timeout_seconds=60, max_attempts=3, page_size=10, max_pages=1)
    return dataclasses.replace(base, **overrides)


def claim_window(session_factory, unit, window=None):
    window = window or Window(newest=Cursor(NOW), floor=None, reason="head")
    with session_scope(session_factory) as db:
        item = QueueStore().enqueue(db, unit, window, max_attempts=3)
        assert LeaseManager().claim(db, item.id, NOW)
    return item.id


def load(session_factory, item_id):
    with session_scope(session_factory) as db:
        return db.get(SyncQueueItem, item_id)


def stored_ids(session_factory):
    with session_scope(session_factory) as db:
        return {row[0] for row in db.query(ActivityRecord.external_id).all()}


@pytest.mark.asyncio
async def test_head_sync_records_newest_id_and_oldest_cursor(session_factory, unit, clock):
    stream = make_stream(25)
    adapter = FakeAdapter({"c1": stream})
    item_id = claim_window(session_factory, unit)

    outcome = await FetchExecutor(session_factory, adapter, policy(), clock=clock).execute(item_id, unit)

    assert outcome.completed
    assert outcome.stored == 10
    item = load(session_factory, item_id)
    assert item.status == STATUS_COMPLETED
    assert item.newest_cursor_id == stream[0].external_id
    assert item.newest_cursor_at == NOW
    assert item.oldest_cursor_id == stream[9].external_id
    assert item.oldest_cursor_at == stream[9].timestamp
    assert item.finished_at == NOW
    assert stored_ids(session_factory) == {i.external_id for i in stream[:10]}


@pytest.mark.asyncio
async def test_pages_until_short_page(session_factory, unit, clock):
    stream = make_stream(25)
    adapter = FakeAdapter({"c1": stream})
    item_id = claim_window(session_factory, unit)

    outcome = await FetchExecutor(session_factory, adapter, policy(max_pages=5), clock=clock).execute(item_id, unit)

    assert outcome.pages == 3
    assert outcome.stored == 25
    assert outcome.oldest == stream[-1].cursor
    # Later pages continue strictly before the previous page's oldest item.
    assert adapter.calls[1][1] == stream[9].cursor
    assert adapter.calls[2][1] == stream[19].cursor


@pytest.mark.asyncio
async def test_short_content_is_skipped_and_long_content_truncated(session_factory, unit, clock):
    stream = [
        ActivityItem("300", "a long enough message here", NOW - timedelta(minutes=1), "author-1"),
        ActivityItem("299", "  hi  ", NOW - timedelta(minutes=2), "author-1"),
        ActivityItem("298", "another message that is long", NOW - timedelta(minutes=3), "author-1"),
    ]
    adapter = FakeAdapter({"c1": stream})
    unit = dataclasses.replace(unit, max_chars=12)
    item_id = claim_window(session_factory, unit)

    outcome = await FetchExecutor(
        session_factory, adapter, policy(min_content_chars=10), clock=clock
    ).execute(item_id, unit)

    assert outcome.skipped_short == 1
    assert outcome.stored == 2
    # Skipped items still move the cursor.
    assert outcome.oldest == stream[-1].cursor
    with session_scope(session_factory) as db:
        contents = {r.external_id: r.content for r in db.query(ActivityRecord).all()}
    assert contents == {"300": "a long enoug", "298": "another mess"}


@pytest.mark.asyncio
async def test_stops_when_page_is_already_stored(session_factory, unit, clock):
    stream = make_stream(30)
    with session_scope(session_factory) as db:
        QueueStore().store_activity(db, unit, stream[:10])
    adapter = FakeAdapter({"c1": stream})
    item_id = claim_window(session_factory, unit)

    outcome = await FetchExecutor(session_factory, adapter, policy(max_pages=3), clock=clock).execute(item_id, unit)

    assert outcome.completed
    assert outcome.pages == 1
    assert outcome.stored == 0
    assert outcome.oldest == stream[9].cursor


@pytest.mark.asyncio
async def test_partially_stored_page_stores_only_new_items(session_factory, unit, clock):
    stream = make_stream(10)
    with session_scope(session_factory) as db:
        QueueStore().store_activity(db, unit, stream[:4])
    adapter = FakeAdapter({"c1": stream})
    item_id = claim_window(session_factory, unit)

    outcome = await FetchExecutor(session_factory, adapter, policy(), clock=clock).execute(item_id, unit)

    assert outcome.stored == 6
    assert outcome.duplicates == 4
    assert len(stored_ids(session_factory)) == 10


@pytest.mark.asyncio
async def test_empty_batch_completes_without_oldest_cursor(session_factory, unit, clock):
    adapter = FakeAdapter({"c1": []})
    item_id = claim_window(session_factory, unit)

    outcome = await FetchExecutor(session_factory, adapter, policy(), clock=clock).execute(item_id, unit)

    assert outcome.completed
    assert outcome.oldest is None
    item = load(session_factory, item_id)
    assert item.status == STATUS_COMPLETED
    assert item.oldest_cursor_at is None
    assert item.oldest_cursor is None


@pytest.mark.asyncio
async def test_floor_stops_paging(session_factory, unit, clock):
    stream = make_stream(50)
    adapter = FakeAdapter({"c1": stream})
    window = Window(newest=Cursor(NOW), floor=stream[12].cursor, reason="head")
    item_id = claim_window(session_factory, unit, window)

    outcome = await FetchExecutor(session_factory, adapter, policy(max_pages=5), clock=clock).execute(item_id, unit)

    assert outcome.pages == 2
    assert outcome.completed


@pytest.mark.asyncio
async def test_adapter_error_leaves_item_running(session_factory, unit, clock):
    adapter = FakeAdapter({"c1": make_stream(5)})
    adapter.fail_with = FetchError("boom", status_code=502)
    item_id = claim_window(session_factory, unit)

    with pytest.raises(FetchError):
        await FetchExecutor(session_factory, adapter, policy(), clock=clock).execute(item_id, unit)

    item = load(session_factory, item_id)
    assert item.status == STATUS_RUNNING
    assert item.attempts == 0


@pytest.mark.asyncio
async def test_completion_after_reap_is_refused(session_factory, unit, clock):
    stream = make_stream(5)
    adapter = FakeAdapter({"c1": stream})
    adapter.gate = asyncio.Event()
    item_id = claim_window(session_factory, unit)
    executor = FetchExecutor(session_factory, adapter, policy(), clock=clock)

    task = asyncio.create_task(executor.execute(item_id, unit))
    await adapter.fetch_started.wait()
    with session_scope(session_factory) as db:
        assert LeaseManager().reap_expired(db, "fake", 60, NOW + timedelta(minutes=5)) == [item_id]
    adapter.gate.set()
    outcome = await task

    assert outcome.completed is False
    item = load(session_factory, item_id)
    assert item.status == STATUS_ERROR
    assert item.oldest_cursor_at is None
    # Activity writes are idempotent, so keeping them is harmless.
    assert len(stored_ids(session_factory)) == 5


@pytest.mark.asyncio
async def test_stale_worker_cannot_finish_a_reclaimed_item(session_factory, unit, clock):
    stream = make_stream(5)
    adapter = FakeAdapter({"c1": stream})
    adapter.gate = asyncio.Event()
    item_id = claim_window(session_factory, unit)
    stale = asyncio.create_task(FetchExecutor(session_factory, adapter, policy(), clock=clock).execute(item_id, unit))
    await adapter.fetch_started.wait()

    later = NOW + timedelta(minutes=5)
    leases = LeaseManager()
    with session_scope(session_factory) as db:
        assert leases.reap_expired(db, "fake", 60, later) == [item_id]
        assert leases.retry_errored(db, item_id)
        assert leases.claim(db, item_id, later)
    adapter.gate.set()
    outcome = await stale

    assert outcome.completed is False
    item = load(session_factory, item_id)
    assert item.status == STATUS_RUNNING
    assert item.started_at == later
    assert item.newest_cursor_id is None
    assert item.oldest_cursor_at is None

    clock.advance(minutes=5)
    current = await FetchExecutor(session_factory, adapter, policy(), clock=clock).execute(item_id, unit)

    assert current.completed is True
    item = load(session_factory, item_id)
    assert item.status == STATUS_COMPLETED
    assert item.newest_cursor_id == stream[0].external_id
    assert item.oldest_cursor_id == stream[4].external_id


@pytest.mark.asyncio
async def test_item_not_running_is_not_fetched(session_factory, unit, clock):
    adapter = FakeAdapter({"c1": make_stream(5)})
    with session_scope(session_factory) as db:
        item = QueueStore().enqueue(db, unit, Window(newest=Cursor(NOW), floor=None, reason="head"), max_attempts=3)

    outcome = await FetchExecutor(session_factory, adapter, policy(), clock=clock).execute(item.id, unit)

    assert outcome.completed is False
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_new_activity_is_grouped_by_author_and_day(session_factory, unit, clock):
    stream = make_stream(6, step=timedelta(hours=6))
    stream[0] = dataclasses.replace(stream[0], author_id="author-2")
    adapter = FakeAdapter({"c1": stream})
    item_id = claim_window(session_factory, unit)

    outcome = await FetchExecutor(session_factory, adapter, policy(), clock=clock).execute(item_id, unit)

    assert outcome.new_activity["author-2"] == {stream[0].timestamp.date()}
    assert outcome.new_activity["author-1"] == {i.timestamp.date() for i in stream[1:]}
