from sqlalchemy import text

from database import create_db_engine, init_db


def test_sqlite_connections_wait_for_the_write_lock(tmp_path) -> None:
    engine = create_db_engine(
        f"sqlite:///{tmp_path / 'budgets.db'}", lock_timeout_secs=2.5
    )
    init_db(engine)

    with engine.connect() as conn:
        assert conn.execute(text("PRAGMA busy_timeout")).scalar() == 2500
        assert conn.execute(text("PRAGMA journal_mode")).scalar() == "wal"
        assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
    engine.dispose()
