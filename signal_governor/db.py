import os
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()

SessionFactory = Callable[[], Session]


def create_db_engine(database_url: Optional[str]) -> Engine:
    if not database_url:
        raise RuntimeError("DATABASE_URL is required")
    options = {
        "future": True,
        # echo=False to keep logs quiet by default; set SQLALCHEMY_ECHO=1 to debug SQL.
        "echo": bool(os.getenv("SQLALCHEMY_ECHO")),
        "pool_pre_ping": True,
    }
    if database_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(
            pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE_SECONDS", "1800")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT_SECONDS", "30")),
        )
    return create_engine(database_url, **options)


def create_session_factory(database_url: Optional[str] = None, *, engine: Optional[Engine] = None) -> sessionmaker:
    """Build a session factory bound to an explicit engine.

    Components receive the factory instead of importing a module-level client, so
    tests and the CLI can point them at any database.
    """
    bind = engine if engine is not None else create_db_engine(database_url)
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


def create_schema(session_factory: sessionmaker) -> None:
    # Import for table registration on Base.metadata.
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=session_factory.kw["bind"])


@contextmanager
def session_scope(session_factory: SessionFactory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
