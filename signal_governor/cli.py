"""Operator entrypoints for the sync governor.

Usage:
  signal-governor tick discord
  signal-governor tick discourse_forum --project-id proj_123
  signal-governor loop discord --interval 60
  signal-governor metrics
  signal-governor requeue <item_id>
  signal-governor rescore discord proj_123 --user-id user_1
  signal-governor init-db
"""

import argparse
import asyncio
import dataclasses
import json
import sys
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from .adapters import SOURCES, build_adapter
from .admin_metrics import render_admin_metrics
from .db import create_schema, create_session_factory, session_scope
from .errors import ProjectSourceNotFoundError, UnknownSourceError
from .main import build_scorer
from .observability import get_logger, set_service, setup_logging
from .services.governor import Governor, TickStats, resolve_policy
from .services.queue_store import QueueStore
from .services.score_trigger import ScoreRecomputeTrigger
from .settings import Settings, get_settings

logger = get_logger(__name__)


async def run_tick(settings: Settings, session_factory: sessionmaker, source: str, project_id: Optional[str] = None) -> TickStats:
    adapter = build_adapter(source, settings, session_factory)
    scorer = build_scorer(settings)
    try:
        governor = Governor(session_factory, adapter, resolve_policy(adapter, settings), scorer=scorer)
        return await governor.run_tick(project_id=project_id)
    finally:
        await adapter.aclose()


async def run_loop(settings: Settings, session_factory: sessionmaker, source: str, interval: float) -> None:
    logger.info("governor.loop.start", extra={"event": "governor.loop.start", "source": source, "interval": interval})
    while True:
        try:
            await run_tick(settings, session_factory, source)
        except Exception:
            logger.exception("governor.loop.tick_failed", extra={"event": "governor.loop.tick_failed", "source": source})
        await asyncio.sleep(interval)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="signal-governor", description="Lease-based activity sync governor")
    sub = parser.add_subparsers(dest="command", required=True)

    tick = sub.add_parser("tick", help="Run one governor tick for a source")
    tick.add_argument("source", choices=SOURCES)
    tick.add_argument("--project-id", default=None)

    loop = sub.add_parser("loop", help="Run governor ticks forever")
    loop.add_argument("source", choices=SOURCES)
    loop.add_argument("--interval", type=float, default=None, help="Seconds between ticks")

    sub.add_parser("metrics", help="Print Prometheus metrics")

    requeue = sub.add_parser("requeue", help="Reset an errored queue item to pending")
    requeue.add_argument("item_id")

    rescore = sub.add_parser("rescore", help="Recompute scores for every account of a project, or one user")
    rescore.add_argument("source", choices=SOURCES)
    rescore.add_argument("project_id")
    rescore.add_argument("--user-id", default=None)

    sub.add_parser("init-db", help="Create tables directly (development; use alembic in production)")
    return parser


def main(argv: Optional[List[str]] = None, *, session_factory: Optional[sessionmaker] = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(level=settings.log_level)
    set_service("cli")
    session_factory = session_factory or create_session_factory(settings.database_url)

    if args.command == "init-db":
        create_schema(session_factory)
        print("schema created")
        return 0

    if args.command == "metrics":
        with session_scope(session_factory) as db:
            sys.stdout.write(render_admin_metrics(db))
        return 0

    if args.command == "requeue":
        with session_scope(session_factory) as db:
            ok = QueueStore().requeue(db, args.item_id)
        if not ok:
            print(f"item {args.item_id} is not an errored queue item", file=sys.stderr)
            return 1
        print(f"requeued {args.item_id}")
        return 0

    if args.command == "rescore":
        scorer = build_scorer(settings)
        if scorer is None:
            print("OPENROUTER_API_KEY and OPENROUTER_MODEL are required to rescore", file=sys.stderr)
            return 1
        trigger = ScoreRecomputeTrigger(session_factory, scorer)
        try:
            result = asyncio.run(trigger.rescore(args.source, args.project_id, user_id=args.user_id))
        except ProjectSourceNotFoundError as exc:
            print(str(exc), file=sys.stderr)
            return 1
        print(json.dumps(dataclasses.asdict(result)))
        return 0

    try:
        if args.command == "tick":
            stats = asyncio.run(run_tick(settings, session_factory, args.source, args.project_id))
            print(json.dumps(dataclasses.asdict(stats)))
            return 0
        if args.command == "loop":
            interval = args.interval if args.interval is not None else settings.governor_loop_interval_seconds
            asyncio.run(run_loop(settings, session_factory, args.source, interval))
            return 0
    except UnknownSourceError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    return 2


if __name__ == "__main__":
    sys.exit(main())
