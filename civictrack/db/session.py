# File: civictrack/db/session.py
# Project: civictrack-backend

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from civictrack.core.config import settings
from civictrack.core.errors import ConflictError, DependencyError

logger = logging.getLogger(__name__)


def make_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,
        pool_timeout=30
    )

engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session, conflict_message: str = "concurrent modification") -> Iterator[Session]:
    """One transaction per command.

    Commits on success, rolls back on any error. Unique-index violations raised
    at flush/commit become ``ConflictError`` and driver-level failures become
    ``DependencyError``, so nothing half-applied is ever visible.
    """
    try:
        yield db
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.info("integrity violation, reporting conflict: %s", e.orig)
        raise ConflictError(conflict_message) from e
    except OperationalError as e:
        db.rollback()
        logger.error("database unavailable during transaction", exc_info=True)
        raise DependencyError("database unavailable") from e
    except BaseException:
        db.rollback()
        raise
