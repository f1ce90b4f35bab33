from collections.abc import Generator
from typing import TYPE_CHECKING

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from mq_system.core.config import WebSettings
from mq_system.db.session import Store, get_store_db

if TYPE_CHECKING:
    from mq_system.services.bus import BusClient


def get_settings_from_app(request: Request) -> WebSettings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise HTTPException(status_code=503, detail="Application settings are not initialized")
    return settings


def _store_from_app(request: Request, attribute: str, label: str) -> Store:
    store = getattr(request.app.state, attribute, None)
    if store is None:
        raise HTTPException(status_code=503, detail=f"{label} database is not configured")
    return store


def get_history_db(request: Request) -> Generator[Session, None, None]:
    yield from get_store_db(_store_from_app(request, "history_store", "History"))


def get_script_db(request: Request) -> Generator[Session, None, None]:
    yield from get_store_db(_store_from_app(request, "script_store", "Script"))


def get_log_db(request: Request) -> Generator[Session, None, None]:
    yield from get_store_db(_store_from_app(request, "log_store", "Log"))


def get_bus(request: Request) -> "BusClient":
    bus = getattr(request.app.state, "bus", None)
    if bus is None or not bus.connected:
        raise HTTPException(status_code=503, detail="MQTT broker is not connected")
    return bus
