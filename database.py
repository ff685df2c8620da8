from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings


def _is_memory_sqlite(url: str) -> bool:
    return url in {"sqlite://", "sqlite:///:memory:"}


def _create_engine() -> Engine:
    url = get_settings().database_url
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    options: dict[str, object] = {"connect_args": {"check_same_thread": False}}
    if _is_memory_sqlite(url):
        # Every session must see the same in-memory database.
        options["poolclass"] = StaticPool
    eng = create_engine(url, **options)
    event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


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


_MISSING_OBJECT_MARKERS = (
    "no such table",
    "no such function",
    "undefinedtable",
    "undefinedfunction",
    "could not find the function",
)


def is_missing_object_error(exc: BaseException) -> bool:
    """True when the database reports a table or function that does not exist.

    Covers SQLite ("no such table") and Postgres ("relation ... does not
    exist", "function ... does not exist", SQLSTATE 42P01 / 42883).
    """
    if not isinstance(exc, SQLAlchemyError):
        return False
    if isinstance(exc, DBAPIError):
        pgcode = getattr(exc.orig, "pgcode", None) or getattr(
            exc.orig, "sqlstate", None
        )
        if pgcode in {"42P01", "42883"}:
            return True
    message = str(exc).lower()
    if any(marker in message for marker in _MISSING_OBJECT_MARKERS):
        return True
    return "does not exist" in message and (
        "function" in message or "relation" in message
    )
