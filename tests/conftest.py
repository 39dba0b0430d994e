import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest

from signal_governor import observability
from signal_governor.adapters.base import PlatformAdapter
from signal_governor.db import create_schema, create_session_factory, session_scope
from signal_governor.domain import (
    ActivityItem,
    QueuePolicy,
    ScoringResult,
    UnitContext,
    format_unit_key,
)
from signal_governor.models import PlatformAccount, ProjectSource
from signal_governor.services.scoring import Scorer

NOW = datetime(2024, 6, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeAdapter(PlatformAdapter):
    """In-memory platform: one unit per channel, each channel a list of items."""

    source = "fake"

    def __init__(self, streams: Optional[Dict[str, List[ActivityItem]]] = None, policy: Optional[QueuePolicy] = None):
        self.streams = streams or {}
        self.policy = policy or QueuePolicy(max_concurrent=5, timeout_seconds=60, max_attempts=3, page_size=10, max_pages=1)
        self.calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.fetch_started = asyncio.Event()
        self.closed = False

    def default_policy(self) -> QueuePolicy:
        return self.policy

    async def list_units(self, target):
        return [self.make_unit(target, {"channel_id": channel_id}) for channel_id in sorted(self.streams)]

    async def fetch_activity(self, unit, before, limit):
        self.calls.append((unit.unit_key, before, limit))
        self.fetch_started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        items = list(self.streams.get(unit.params["channel_id"], []))
        if before is not None:
            items = [i for i in items if i.cursor.sort_key() < before.sort_key()]
        items.sort(key=lambda i: i.cursor.sort_key(), reverse=True)
        return items[:limit]

    async def aclose(self) -> None:
        self.closed = True


class FakeScorer(Scorer):
    def __init__(self, value: float = 80.0, error: Optional[str] = None, raises: Optional[Exception] = None):
        self.value = value
        self.error = error
        self.raises = raises
        self.windows = []

    async def score(self, window, config):
        self.windows.append(window)
        if self.raises is not None:
            raise self.raises
        if self.error:
            return ScoringResult(error=self.error)
        return ScoringResult(
            value=self.value,
            summary=f"{window.kind} summary",
            request_id=f"req-{uuid.uuid4()}",
            model="fake-model",
        )


def make_stream(count: int, *, newest: datetime = NOW - timedelta(hours=1), step: timedelta = timedelta(minutes=10),
                author: str = "author-1", first_id: int = 5000) -> List[ActivityItem]:
    """`count` items newest first, ids descending with time."""
    return [
        ActivityItem(
            external_id=str(first_id - i),
            content=f"message number {i} with enough text",
            timestamp=newest - step * i,
            author_id=author,
            author_name=author,
        )
        for i in range(count)
    ]


@pytest.fixture
def session_factory(tmp_path):
    factory = create_session_factory(f"sqlite:///{tmp_path / 'governor.db'}")
    create_schema(factory)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def project_source(session_factory):
    with session_scope(session_factory) as db:
        db.add(
            ProjectSource(
                project_id="proj_1",
                source="fake",
                signal_source_id="sig_1",
                url="https://community.example.test",
                previous_days=90,
                max_value=100.0,
            )
        )
    return "proj_1"


@pytest.fixture
def linked_account(session_factory):
    with session_scope(session_factory) as db:
        db.add(
            PlatformAccount(
                user_id="user_1",
                project_id="proj_1",
                source="fake",
                external_user_id="author-1",
                external_username="author_one",
            )
        )
    return "user_1"


@pytest.fixture
def unit():
    return UnitContext(
        source="fake",
        project_id="proj_1",
        unit_key=format_unit_key({"channel_id": "c1"}),
        params={"channel_id": "c1"},
        previous_days=90,
        signal_source_id="sig_1",
    )


@pytest.fixture(autouse=True)
def _pytest_log_capture(monkeypatch):
    # Keep pytest's capture handlers instead of the JSON stdout handler.
    monkeypatch.setattr(observability, "_CONFIGURED", True)
