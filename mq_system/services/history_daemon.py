from __future__ import annotations

import logging

from mq_system.core.config import HistorySettings, SystemSettings
from mq_system.db.session import Store
from mq_system.services.bus import BusClient
from mq_system.services.history_writer import HistoryWriter


class HistoryDaemon:
    """Wires the bus to the history writer for every configured sensor topic."""

    def __init__(
        self,
        *,
        system_settings: SystemSettings,
        history_settings: HistorySettings,
        bus: BusClient | None = None,
        store: Store | None = None,
    ) -> None:
        self._system_settings = system_settings
        self._history_settings = history_settings
        self._logger = logging.getLogger("mq_system.history_daemon")
        self._store = store
        self._bus = bus
        self._writer: HistoryWriter | None = None

    @property
    def writer(self) -> HistoryWriter | None:
        return self._writer

    def start(self) -> None:
        if self._store is None:
            self._store = Store.for_history(self._history_settings.uri)
        self._writer = HistoryWriter(store=self._store, sensors=self._history_settings.db)
        self._writer.seed_from_store()

        if self._bus is None:
            self._bus = BusClient.from_settings(self._system_settings, client_id="mq_db_daemon")
        self._bus.set_message_callback(self._writer.handle_message)
        self._bus.connect()
        for topic in self._writer.topics:
            self._bus.subscribe(topic)
        self._logger.info(
            "history daemon started uri=%s sensors=%s",
            self._history_settings.uri,
            len(self._writer.topics),
        )

    def stop(self) -> None:
        if self._bus is not None:
            self._bus.unsubscribe("#")
            self._bus.disconnect()
            self._bus.set_message_callback(None)
        if self._store is not None:
            self._store.dispose()
        self._logger.info("history daemon stopped")
