from __future__ import annotations

import argparse
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path
from threading import Event

from mq_system.core.config import (
    ENGINE_CONFIG_FILE,
    HISTORY_CONFIG_FILE,
    SYSTEM_CONFIG_FILE,
    EngineSettings,
    HistorySettings,
    SystemSettings,
    load_settings,
)
from mq_system.core.errors import BrokerError, ConfigError, StoreError
from mq_system.core.logging import attach_bus_logging, configure_logging
from mq_system.services.bus import BusClient
from mq_system.services.engine import build_engine
from mq_system.services.history_daemon import HistoryDaemon


logger = logging.getLogger("mq_system.cli")


def _build_parser(prog: str, description: str, default_config: Path) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=prog, description=description)
    parser.add_argument(
        "--config",
        type=Path,
        default=default_config,
        help=f"daemon configuration file (default: {default_config})",
    )
    parser.add_argument(
        "--system-config",
        type=Path,
        default=None,
        help=f"shared system configuration file (default: {SYSTEM_CONFIG_FILE} when present)",
    )
    return parser


def _load_system_settings(path: Path | None) -> SystemSettings:
    if path is None:
        path = SYSTEM_CONFIG_FILE if SYSTEM_CONFIG_FILE.is_file() else None
    return load_settings(SystemSettings, path)


def _install_signal_handlers(stop_event: Event) -> None:
    def _handle(signum, _frame) -> None:
        logger.info("shutdown requested signal=%s", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def _wait_for_shutdown(stop_event: Event) -> None:
    while not stop_event.is_set():
        stop_event.wait(1.0)


def run_history_daemon(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser("mq-db-daemon", "Persist configured sensor values from the bus.", HISTORY_CONFIG_FILE)
    args = parser.parse_args(argv)
    try:
        system_settings = _load_system_settings(args.system_config)
        history_settings = load_settings(HistorySettings, args.config)
    except ConfigError as exc:
        print(f"mq-db-daemon: {exc}", file=sys.stderr)
        return 1

    configure_logging(system_settings, level=history_settings.log_level)

    bus = BusClient.from_settings(system_settings, client_id="mq_db_daemon")
    daemon = HistoryDaemon(
        system_settings=system_settings,
        history_settings=history_settings,
        bus=bus,
    )
    try:
        daemon.start()
    except (StoreError, BrokerError) as exc:
        logger.critical("history daemon failed to start error=%s", exc)
        daemon.stop()
        return 1
    if system_settings.log_mqtt:
        attach_bus_logging(bus)

    stop_event = Event()
    _install_signal_handlers(stop_event)
    _wait_for_shutdown(stop_event)
    daemon.stop()
    return 0


def run_exe_daemon(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser("mq-exe-daemon", "Run stored rule scripts against the bus.", ENGINE_CONFIG_FILE)
    args = parser.parse_args(argv)
    try:
        system_settings = _load_system_settings(args.system_config)
        engine_settings = load_settings(EngineSettings, args.config)
    except ConfigError as exc:
        print(f"mq-exe-daemon: {exc}", file=sys.stderr)
        return 1

    configure_logging(system_settings, level=engine_settings.log_level)

    try:
        engine, bus, store = build_engine(system_settings=system_settings, engine_settings=engine_settings)
    except StoreError as exc:
        logger.critical("script store unavailable error=%s", exc)
        return 1

    try:
        bus.connect()
        if system_settings.log_mqtt:
            attach_bus_logging(bus)
        engine.start()
    except (StoreError, BrokerError) as exc:
        logger.critical("rule engine failed to start error=%s", exc)
        bus.disconnect()
        store.dispose()
        return 1

    stop_event = Event()
    _install_signal_handlers(stop_event)
    _wait_for_shutdown(stop_event)
    engine.shutdown()
    bus.disconnect()
    store.dispose()
    return 0
