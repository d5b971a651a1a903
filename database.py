from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def create_db_engine(database_url: str, lock_timeout_secs: float = 10.0) -> Engine:
    """Build an engine; SQLite connections get WAL, foreign keys and a busy timeout.

    Writers from several threads or processes all land on the same budget
    rows when ``spent`` is recalculated, so SQLite must wait for the write
    lock instead of failing with ``database is locked``.
    """
    is_sqlite = database_url.startswith("sqlite")
    connect_args: dict[str, object] = {}
    if is_sqlite:
        connect_args["check_same_thread"] = False
    eng = create_engine(database_url, connect_args=connect_args)
    if is_sqlite:
        busy_timeout_ms = int(lock_timeout_secs * 1000)

        def _on_connect(dbapi_conn, _record):
            _enable_sqlite_pragmas(dbapi_conn, busy_timeout_ms)

        event.listen(eng, "connect", _on_connect)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, busy_timeout_ms: int) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms};")
    cursor.close()


def _create_engine() -> Engine:
    settings = get_settings()
    return create_db_engine(settings.database_url, settings.lock_timeout_secs)


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def init_db(bind: Optional[Engine] = None) -> None:
    import models  # noqa: F401  registers the tables on Base.metadata

    Base.metadata.create_all(bind or engine)


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
