import json
from datetime import datetime, timedelta

import pytest
from conftest import NOW, FakeAdapter, FakeScorer, make_stream
from sqlalchemy import inspect

from signal_governor import cli
from signal_governor.db import create_session_factory, session_scope
from signal_governor.domain import STATUS_ERROR, Cursor, Window
from signal_governor.models import ActivityRecord, PlatformAccount, ProjectSource, SyncQueueItem
from signal_governor.services.queue_store import QueueStore


def test_init_db_creates_tables(tmp_path, capsys):
    factory = create_session_factory(f"sqlite:///{tmp_path / 'fresh.db'}")

    assert cli.main(["init-db"], session_factory=factory) == 0

    tables = set(inspect(factory.kw["bind"]).get_table_names())
    assert {"sync_queue_items", "activity_records", "score_records", "governor_runs"} <= tables
    assert "schema created" in capsys.readouterr().out


def test_tick_prints_stats(session_factory, project_source, monkeypatch, capsys):
    adapter = FakeAdapter({"c1": make_stream(4)})
    monkeypatch.setattr(cli, "build_adapter", lambda source, settings, factory: adapter)
    monkeypatch.setattr(cli, "build_scorer", lambda settings: None)

    assert cli.main(["tick", "discord"], session_factory=session_factory) == 0

    stats = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert stats["claimed"] == 1
    assert stats["completed"] == 1
    assert adapter.closed is True


def test_tick_rejects_unknown_source(session_factory):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["tick", "myspace"], session_factory=session_factory)
    assert excinfo.value.code == 2


def test_requeue(session_factory, unit, capsys):
    with session_scope(session_factory) as db:
        item = QueueStore().enqueue(db, unit, Window(newest=Cursor(NOW), floor=None, reason="head"), max_attempts=1)
        db.query(SyncQueueItem).filter(SyncQueueItem.id == item.id).update({"status": STATUS_ERROR, "attempts": 1})

    assert cli.main(["requeue", item.id], session_factory=session_factory) == 0
    assert f"requeued {item.id}" in capsys.readouterr().out

    assert cli.main(["requeue", item.id], session_factory=session_factory) == 1
    assert "is not an errored queue item" in capsys.readouterr().err


def test_metrics_command(session_factory, capsys):
    assert cli.main(["metrics"], session_factory=session_factory) == 0
    out = capsys.readouterr().out
    assert "# TYPE signal_governor_queue_items_total gauge" in out


def test_rescore_project(session_factory, project_source, linked_account, unit, monkeypatch, capsys):
    with session_scope(session_factory) as db:
        QueueStore().store_activity(db, unit, make_stream(2, newest=datetime.utcnow() - timedelta(hours=1)))
    monkeypatch.setattr(cli, "build_scorer", lambda settings: FakeScorer())

    assert cli.main(["rescore", "discord", "proj_1"], session_factory=session_factory) == 1
    assert "has no 'discord' source configured" in capsys.readouterr().err

    with session_scope(session_factory) as db:
        db.query(ProjectSource).update({"source": "discord"})
        db.query(PlatformAccount).update({"source": "discord"})
        db.query(ActivityRecord).update({"source": "discord"})
        db.commit()

    assert cli.main(["rescore", "discord", "proj_1", "--user-id", "user_1"], session_factory=session_factory) == 0
    result = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert result == {"source": "discord", "project_id": "proj_1", "accounts": 1, "written": 2, "failed": 0}


def test_rescore_without_scorer(session_factory, monkeypatch, capsys):
    monkeypatch.setattr(cli, "build_scorer", lambda settings: None)
    assert cli.main(["rescore", "discord", "proj_1"], session_factory=session_factory) == 1
    assert "required to rescore" in capsys.readouterr().err
