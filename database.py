from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def _connect_args(database_url: str, timeout_secs: float) -> dict[str, object]:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_secs
    elif database_url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={int(timeout_secs * 1000)}"
    return connect_args


def _create_engine() -> Engine:
    settings = get_settings()
    from sqlalchemy import create_engine

    eng = create_engine(
        settings.database_url,
        connect_args=_connect_args(
            settings.database_url, settings.storage_timeout_secs
        ),
    )
    if settings.database_url.startswith("sqlite"):
        enable_sqlite_savepoints(eng)
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _disable_pysqlite_transactions(dbapi_conn, _record):
    dbapi_conn.isolation_level = None


def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


def enable_sqlite_savepoints(eng: Engine) -> None:
    # pysqlite defers BEGIN until the first DML statement, which turns the
    # outermost SAVEPOINT into the transaction itself; SQLAlchemy has to own
    # BEGIN for begin_nested() to behave.
    event.listen(eng, "connect", _disable_pysqlite_transactions)
    event.listen(eng, "begin", _emit_begin)


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
