from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Column, Date, DateTime, Float, Index, Integer, String, Text, UniqueConstraint, text

from .db import Base
from .domain import Cursor


class SyncQueueItem(Base):
    __tablename__ = "sync_queue_items"
    __table_args__ = (
        # One open (non-completed) item per unit; concurrent planners lose on insert.
        Index(
            "uq_sync_queue_items_open_unit",
            "source",
            "unit_key",
            unique=True,
            postgresql_where=text("status <> 'completed'"),
            sqlite_where=text("status <> 'completed'"),
        ),
        Index("ix_sync_queue_items_source_status", "source", "status"),
        Index("ix_sync_queue_items_unit_newest", "source", "unit_key", "newest_cursor_at"),
    )

    id = Column(String, primary_key=True)
    source = Column(String, nullable=False)
    unit_key = Column(String, nullable=False)
    project_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending")  # pending|running|completed|error
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    newest_cursor_at = Column(DateTime, nullable=False)
    newest_cursor_id = Column(String, nullable=True)
    oldest_cursor_at = Column(DateTime, nullable=True)
    oldest_cursor_id = Column(String, nullable=True)
    floor_cursor_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def newest_cursor(self) -> Cursor:
        return Cursor(self.newest_cursor_at, self.newest_cursor_id)

    @property
    def oldest_cursor(self) -> Optional[Cursor]:
        if self.oldest_cursor_at is None:
            return None
        return Cursor(self.oldest_cursor_at, self.oldest_cursor_id)


class ActivityRecord(Base):
    __tablename__ = "activity_records"
    __table_args__ = (
        UniqueConstraint("source", "project_id", "external_id", name="uq_activity_records_natural_key"),
        Index("ix_activity_records_author_created", "source", "project_id", "author_id", "created_timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String, nullable=False)
    project_id = Column(String, nullable=False)
    unit_key = Column(String, nullable=False, index=True)
    external_id = Column(String, nullable=False)
    author_id = Column(String, nullable=True)
    author_name = Column(String, nullable=True)
    content = Column(Text, nullable=False, default="")
    created_timestamp = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class ScoreRecord(Base):
    __tablename__ = "score_records"
    __table_args__ = (
        Index("ix_score_records_key", "user_id", "project_id", "signal_source_id", "day"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    project_id = Column(String, nullable=False)
    signal_source_id = Column(String, nullable=False)
    day = Column(Date, nullable=False)
    raw_value = Column(Float, nullable=True)
    value = Column(Float, nullable=True)
    max_value = Column(Float, nullable=True)
    summary = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    request_id = Column(String, nullable=False)
    last_updated = Column(DateTime, nullable=True)  # newest activity incorporated
    model = Column(String, nullable=True)
    prompt_tokens = Column(Integer, nullable=True)
    completion_tokens = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ProjectSource(Base):
    __tablename__ = "project_sources"
    __table_args__ = (UniqueConstraint("project_id", "source", name="uq_project_sources_project_source"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String, nullable=False)
    source = Column(String, nullable=False, index=True)
    signal_source_id = Column(String, nullable=False)
    url = Column(String, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    previous_days = Column(Integer, nullable=False, default=90)
    max_chars = Column(Integer, nullable=True)
    max_value = Column(Float, nullable=False, default=100.0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PlatformAccount(Base):
    __tablename__ = "platform_accounts"
    __table_args__ = (
        UniqueConstraint("source", "project_id", "external_user_id", name="uq_platform_accounts_external_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    project_id = Column(String, nullable=False)
    source = Column(String, nullable=False)
    external_user_id = Column(String, nullable=False)
    external_username = Column(String, nullable=True)
    # Created for an author who never linked an account.
    is_shell = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class GovernorRun(Base):
    __tablename__ = "governor_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String, nullable=False, index=True)
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    reaped = Column(Integer, nullable=False, default=0)
    enqueued = Column(Integer, nullable=False, default=0)
    claimed = Column(Integer, nullable=False, default=0)
    completed = Column(Integer, nullable=False, default=0)
    crashed = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    scores_written = Column(Integer, nullable=False, default=0)
