from __future__ import annotations

import functools
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from .errors import ConstraintError, StorageIOError


log = logging.getLogger(__name__)

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "database table is locked")


def make_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    connect_args = {}
    kwargs = {}
    if url.get_backend_name() == "sqlite":
        connect_args = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(database_url, echo=False, connect_args=connect_args, **kwargs)
    if url.get_backend_name() == "sqlite":
        _install_sqlite_hooks(engine)
    return engine


def _install_sqlite_hooks(engine: Engine) -> None:
    # pysqlite only opens a transaction before DML by default, which leaves
    # CREATE/ALTER outside of it. Take over BEGIN so DDL is all-or-nothing too.
    # IMMEDIATE takes the write lock up front: every write reads first, and two
    # deferred transactions upgrading SHARED locks deadlock without waiting on
    # busy_timeout.

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _is_transient(exc: OperationalError) -> bool:
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def storage_operation(func):
    """Translate driver errors into the package's error taxonomy.

    A locked/busy store is retried once before giving up; the whole operation
    is re-run because the failed transaction has already been rolled back.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        attempt = 0
        while True:
            attempt += 1
            try:
                return func(*args, **kwargs)
            except IntegrityError as exc:
                raise ConstraintError(str(exc.orig)) from exc
            except OperationalError as exc:
                if attempt == 1 and _is_transient(exc):
                    log.warning("%s: store busy, retrying once (%s)", func.__name__, exc.orig)
                    continue
                raise StorageIOError(f"{func.__name__} failed: {exc.orig}") from exc
            except DBAPIError as exc:
                raise StorageIOError(f"{func.__name__} failed: {exc.orig}") from exc

    return wrapper


class Store:
    """Explicit handle to one on-disk store.

    Opened once at process start (which also brings the schema up to date)
    and passed to every repository call; nothing in the package keeps a
    module-level engine.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def open(cls, database_url: str, *, migrate: bool = True) -> "Store":
        from .migrations import migrate as run_migrations

        engine = make_engine(database_url)
        if migrate:
            try:
                run_migrations(engine)
            except Exception:
                engine.dispose()
                raise
        log.info("store opened at %s", engine.url.render_as_string(hide_password=True))
        return cls(engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine, expire_on_commit=False) as session:
            yield session

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session whose work commits on success and rolls back on error."""
        with Session(self.engine, expire_on_commit=False) as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.close()
        return None
