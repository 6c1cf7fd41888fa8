from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, inspect as sa_inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from dealflow.config import get_settings
from dealflow.models import Base

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None

# Columns added after the first release; older databases get them on startup.
_LATE_STARTUP_COLUMNS = {
    "custom_data_json": "TEXT DEFAULT '{}'",
    "custom_schema_json": "TEXT DEFAULT '{}'",
    "legal_diligence_json": "TEXT DEFAULT '{}'",
}


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        db_file = url.split("///", 1)[-1]
        if db_file and db_file != ":memory:":
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def init_db(url: str | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine = make_engine(url or get_settings().database_url)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _migrate_existing_db(_engine)


def _migrate_existing_db(engine: Engine) -> None:
    """Add columns that may be missing in older databases."""
    inspector = sa_inspect(engine)
    if not inspector.has_table("startups"):
        return
    columns = {col["name"] for col in inspector.get_columns("startups")}
    missing = {name: ddl for name, ddl in _LATE_STARTUP_COLUMNS.items() if name not in columns}
    if not missing:
        return
    with engine.begin() as conn:
        for name, ddl in missing.items():
            conn.execute(text(f"ALTER TABLE startups ADD COLUMN {name} {ddl}"))


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (scripts, background jobs)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

