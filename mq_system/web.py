from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from mq_system.api.history import router as history_router
from mq_system.api.logs import router as logs_router
from mq_system.api.scripts import router as scripts_router
from mq_system.core.config import (
    SYSTEM_CONFIG_FILE,
    SystemSettings,
    WebSettings,
    get_web_settings,
    load_settings,
)
from mq_system.core.errors import BrokerError, ConfigError, StoreError
from mq_system.db.session import Store
from mq_system.services.bus import BusClient


logger = logging.getLogger("mq_system.web")


def _open_store(opener, uri: str, label: str) -> Store | None:
    if not uri:
        return None
    try:
        return opener(uri)
    except StoreError:
        logger.exception("unable to open %s database uri=%s", label, uri)
        return None


def _connect_bus() -> BusClient | None:
    try:
        config_path = SYSTEM_CONFIG_FILE if SYSTEM_CONFIG_FILE.is_file() else None
        system_settings = load_settings(SystemSettings, config_path)
        bus = BusClient(
            host=system_settings.mqtt_host,
            port=system_settings.mqtt_port,
            client_id="mq_system_web",
            keepalive=system_settings.mqtt_keepalive,
            connect_attempts=1,
        )
        bus.connect()
    except (ConfigError, BrokerError) as exc:
        logger.warning("admin api running without broker error=%s", exc)
        return None
    return bus


def create_app(
    *,
    settings: WebSettings | None = None,
    history_store: Store | None = None,
    script_store: Store | None = None,
    log_store: Store | None = None,
    bus: BusClient | None = None,
    connect_bus: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        web_settings = settings or get_web_settings()
        owned: list[Store] = []

        def _resolve(given: Store | None, opener, uri: str, label: str) -> Store | None:
            if given is not None:
                return given
            store = _open_store(opener, uri, label)
            if store is not None:
                owned.append(store)
            return store

        app.state.settings = web_settings
        app.state.history_store = _resolve(history_store, Store.for_history, web_settings.history_uri, "history")
        app.state.script_store = _resolve(script_store, Store.for_scripts, web_settings.script_uri, "script")
        app.state.log_store = _resolve(log_store, Store.for_logs, web_settings.log_uri, "log")

        owned_bus = None
        if bus is not None:
            app.state.bus = bus
        elif connect_bus:
            owned_bus = _connect_bus()
            app.state.bus = owned_bus
        else:
            app.state.bus = None

        try:
            yield
        finally:
            if owned_bus is not None:
                owned_bus.disconnect()
            for store in owned:
                store.dispose()

    application = FastAPI(title="mq_system admin", lifespan=lifespan)
    application.include_router(scripts_router)
    application.include_router(history_router)
    application.include_router(logs_router)

    @application.get("/health")
    def health(request: Request):
        state = request.app.state
        current_bus = getattr(state, "bus", None)
        return {
            "status": "ok",
            "service": "mq_system",
            "history_db": getattr(state, "history_store", None) is not None,
            "script_db": getattr(state, "script_store", None) is not None,
            "log_db": getattr(state, "log_store", None) is not None,
            "broker_connected": bool(current_bus is not None and current_bus.connected),
        }

    return application


app = create_app()
