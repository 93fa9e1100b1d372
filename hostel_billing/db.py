"""Engine, session factory and schema bootstrap for the billing store."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings


def _is_sqlite(database_url: str) -> bool:
    return make_url(database_url).get_backend_name() == "sqlite"


def _ensure_sqlite_directory(database: str | None) -> None:
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


def _build_engine(database_url: str) -> Engine:
    connect_args = {}
    if _is_sqlite(database_url):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, future=True, connect_args=connect_args)


def _build_sessionmaker(bind: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=bind,
        class_=Session,
    )


engine = _build_engine(get_settings().database_url)
SessionLocal = _build_sessionmaker(engine)
Base = declarative_base()


def reset_engine(database_url: str) -> None:
    """Point the store at another database (tests use a per-test SQLite file)."""
    global engine, SessionLocal
    engine.dispose()
    engine = _build_engine(database_url)
    SessionLocal = _build_sessionmaker(engine)


def init_db() -> None:
    """Create plan, subscription and activity tables if they are missing."""
    from . import models  # noqa: F401

    if engine.url.get_backend_name() == "sqlite":
        _ensure_sqlite_directory(engine.url.database)
    Base.metadata.create_all(bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
