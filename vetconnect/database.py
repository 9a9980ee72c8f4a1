"""Database engine, session factory and schema bootstrap."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings
from .errors import from_integrity_error

logger = logging.getLogger(__name__)

settings = get_settings()
url = make_url(settings.database_url)
connect_args = {}
is_sqlite = url.drivername.startswith("sqlite")
if is_sqlite:
    connect_args["check_same_thread"] = False
    if url.database and url.database != ":memory:":
        db_path = Path(url.database)
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)

engine = create_engine(settings.database_url, connect_args=connect_args, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()

if is_sqlite:

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependencies."""

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit(db: Session) -> None:
    """Commit, translating constraint violations into service errors."""

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise from_integrity_error(exc) from exc


def init_db() -> None:
    """Create tables if they do not exist."""

    from . import models  # noqa: F401 - ensure models are registered

    logger.info("Ensuring database schema is created")
    Base.metadata.create_all(bind=engine)
