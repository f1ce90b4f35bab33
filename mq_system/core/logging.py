from __future__ import annotations

import logging
import threading
from logging.handlers import RotatingFileHandler, SysLogHandler
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import create_engine, insert
from sqlalchemy.exc import SQLAlchemyError

from mq_system.core.config import SystemSettings
from mq_system.db.models import LogEntry

if TYPE_CHECKING:
    from mq_system.services.bus import BusClient


TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_TOPIC = "app/log/message"
LOG_FORMAT = "[%(asctime)s.%(msecs)03d][%(name)s][%(thread)d][%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%x %H:%M:%S"

# 0 trace, 1 debug, 2 info, 3 warn, 4 error, 5 critical, 6 off
_LEVELS_BY_NUMBER = {
    0: TRACE,
    1: logging.DEBUG,
    2: logging.INFO,
    3: logging.WARNING,
    4: logging.ERROR,
    5: logging.CRITICAL,
    6: logging.CRITICAL + 10,
}

_ROOT_LOGGER = "mq_system"


def level_from_number(value: int | None, default: int = logging.INFO) -> int:
    if value is None:
        return default
    return _LEVELS_BY_NUMBER.get(int(value), default)


class SqliteLogHandler(logging.Handler):
    """Writes records into the ``log`` table of a dedicated SQLite database."""

    def __init__(self, path: str) -> None:
        super().__init__()
        self._engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
        LogEntry.__table__.create(self._engine, checkfirst=True)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
            with self._engine.begin() as connection:
                connection.execute(
                    insert(LogEntry).values(
                        timestamp=int(record.created * 1_000_000_000),
                        level=record.levelno,
                        thread=record.thread or 0,
                        msgid=0,
                        logger=record.name,
                        message=message,
                    )
                )
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self._engine.dispose()
        super().close()


class BusLogHandler(logging.Handler):
    def __init__(self, bus: "BusClient", topic: str = LOG_TOPIC) -> None:
        super().__init__()
        self._bus = bus
        self._topic = topic
        self._local = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        # publishing logs itself; do not recurse
        if getattr(self._local, "active", False):
            return
        self._local.active = True
        try:
            self._bus.publish(self._topic, self.format(record))
        except Exception:
            self.handleError(record)
        finally:
            self._local.active = False


def configure_logging(settings: SystemSettings, *, level: int | None = None) -> logging.Logger:
    """Install the daemon log sinks on the ``mq_system`` logger tree.

    ``level`` is the daemon-specific threshold on the 0..6 scale; when omitted
    the system-wide ``log_level`` applies.
    """
    root = logging.getLogger(_ROOT_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    primary: logging.Handler
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        primary = RotatingFileHandler(log_path, maxBytes=1024 * 1024, backupCount=5, encoding="utf-8")
    else:
        try:
            primary = SysLogHandler(address="/dev/log", facility=SysLogHandler.LOG_USER)
        except OSError:
            primary = logging.StreamHandler()
    primary.setFormatter(formatter)
    root.addHandler(primary)

    if settings.log_db:
        try:
            db_handler = SqliteLogHandler(settings.log_db)
        except SQLAlchemyError:
            root.exception("failed to initialize log database path=%s", settings.log_db)
        else:
            db_handler.setFormatter(formatter)
            root.addHandler(db_handler)

    effective = level if level is not None else settings.log_level
    root.setLevel(level_from_number(effective, default=TRACE))
    root.propagate = False
    return root


def attach_bus_logging(bus: "BusClient") -> None:
    root = logging.getLogger(_ROOT_LOGGER)
    handler = BusLogHandler(bus)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root.addHandler(handler)
    root.log(TRACE, "mqtt log sink initialized")
