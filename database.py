from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings

# Concurrent imports of the same account wait on the writer lock instead of failing.
SQLITE_BUSY_TIMEOUT_MS = 5000


def build_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)

    eng = create_engine(url, connect_args={"check_same_thread": False})
    on_disk = url.database not in (None, "", ":memory:")

    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_conn, _record):
        _sqlite_pragmas(dbapi_conn, wal=on_disk)

    return eng


def _sqlite_pragmas(dbapi_conn, wal: bool) -> None:
    cursor = dbapi_conn.cursor()
    if wal:
        cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
    cursor.close()


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for work outside a request, committed on success."""
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
