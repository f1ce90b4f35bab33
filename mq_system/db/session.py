from __future__ import annotations

import logging
import sqlite3
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from threading import Lock

from sqlalchemy import Engine, Table, create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mq_system.core.errors import StoreError
from mq_system.db.base import Base
from mq_system.db.models import HISTORY_TABLES, LOG_TABLES, SCRIPT_TABLES


VALSENSOR_TRIGGER = """
CREATE TRIGGER IF NOT EXISTS valsensor_valreal_trigger AFTER INSERT ON valreal
BEGIN
    INSERT OR REPLACE INTO valsensor (valname_id, sensor_id, timestamp, value)
    SELECT NEW.valname_id, NEW.sensor_id, NEW.timestamp, NEW.value
    WHERE NOT EXISTS (
        SELECT 1 FROM valsensor
        WHERE valname_id = NEW.valname_id
          AND sensor_id = NEW.sensor_id
          AND timestamp > NEW.timestamp
    );
END
"""

_SERIALIZED = 3

logger = logging.getLogger("mq_system.store")


def check_sqlite_threadsafety() -> None:
    if sqlite3.threadsafety != _SERIALIZED:
        raise StoreError(
            f"sqlite library is not built in serialized mode threadsafety={sqlite3.threadsafety}"
        )


def create_store_engine(uri: str) -> Engine:
    url = "sqlite://" if uri in ("", ":memory:") else f"sqlite:///{uri}"
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA optimize")
        cursor.close()

    return engine


def init_schema(engine: Engine, tables: Iterable[Table]) -> None:
    table_list = list(tables)
    try:
        Base.metadata.create_all(engine, tables=table_list, checkfirst=True)
        if any(table.name == "valreal" for table in table_list):
            with engine.begin() as connection:
                connection.execute(text(VALSENSOR_TRIGGER))
    except SQLAlchemyError as exc:
        raise StoreError(f"schema migration failed: {exc}") from exc


class Store:
    """One shared SQLite handle plus the lock serialising units of work on it."""

    def __init__(self, uri: str, tables: Iterable[Table]) -> None:
        check_sqlite_threadsafety()
        self.uri = uri
        try:
            self.engine = create_store_engine(uri)
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise StoreError(f"unable to open store uri={uri}: {exc}") from exc
        init_schema(self.engine, tables)
        self._session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
        )
        self._lock = Lock()
        logger.debug("store opened uri=%s", uri)

    @classmethod
    def for_history(cls, uri: str) -> "Store":
        return cls(uri, HISTORY_TABLES)

    @classmethod
    def for_scripts(cls, uri: str) -> "Store":
        return cls(uri, SCRIPT_TABLES)

    @classmethod
    def for_logs(cls, uri: str) -> "Store":
        return cls(uri, LOG_TABLES)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        with self._lock:
            db = self._session_factory()
            try:
                yield db
            finally:
                db.close()

    def dispose(self) -> None:
        with self._lock:
            self.engine.dispose()


def get_store_db(store: Store) -> Generator[Session, None, None]:
    with store.session() as db:
        yield db
