import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def enable_sqlite_pragmas(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute("PRAGMA busy_timeout=5000;")
    finally:
        cursor.close()


def build_engine(database_url: Optional[str] = None) -> Engine:
    url = database_url or get_settings().database_url
    if not url.startswith("sqlite"):
        return create_engine(url)
    eng = create_engine(url, connect_args={"check_same_thread": False})
    event.listen(eng, "connect", enable_sqlite_pragmas)
    return eng


def create_schema(bind: Optional[Engine] = None) -> None:
    """Create every table on ``bind``. There is no migration history."""
    import models  # noqa: F401

    Base.metadata.create_all(bind or engine)


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as exc:
        logger.warning(f"session_rollback: error={exc!r}")
        session.rollback()
        raise
    finally:
        session.close()
