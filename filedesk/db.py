from collections.abc import Iterator
from contextlib import contextmanager

from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import QueuePool

from filedesk.config import DB_CONNECT_ARGS, DB_TIMEOUT_SECONDS, DB_URL

engine = create_engine(
    DB_URL,
    connect_args=DB_CONNECT_ARGS,
    poolclass=QueuePool,
    pool_size=5,
    max_overflow=10,
    pool_timeout=DB_TIMEOUT_SECONDS,
    pool_pre_ping=True,  # Verify connections before use
    pool_recycle=3600,
    echo=False,
)


def init_db() -> None:
    SQLModel.metadata.create_all(engine)


def open_session() -> Session:
    # Records are handed back to callers after the session closes.
    return Session(engine, expire_on_commit=False)


def get_session() -> Iterator[Session]:
    with open_session() as session:
        yield session


session_scope = contextmanager(get_session)


def ensure_connection() -> bool:
    """Verify that the database connection is alive."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError:
        return False
