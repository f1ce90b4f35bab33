from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock

from mq_system.core.config import EngineSettings, SystemSettings
from mq_system.core.errors import DecodeError
from mq_system.core.logging import TRACE
from mq_system.core.topics import RELOAD_TOPIC, device_path_from_status_topic
from mq_system.db.session import Store
from mq_system.services.bus import ALL_TOPICS, BusClient
from mq_system.services.envelope import decode
from mq_system.services.script_catalog import load_catalog
from mq_system.services.script_runtime import ScriptContext, ScriptRuntime
from mq_system.services.time_scheduler import TimeScheduler
from mq_system.services.wait_broker import WaitBroker


class RuleEngine:
    """Runs the stored scripts against the bus and reloads them on request.

    Bus callbacks update the shared value cache and wake waiting scripts.
    A message on ``app/exe/reload`` stops every script, re-reads the catalog
    and starts fresh workers on a single background worker.
    """

    def __init__(
        self,
        *,
        store: Store,
        bus: BusClient,
        join_timeout_seconds: float = 10.0,
        tick_seconds: float = 0.5,
    ) -> None:
        self._store = store
        self._bus = bus
        self._logger = logging.getLogger("mq_system.engine")
        self._broker = WaitBroker()
        self._scheduler = TimeScheduler(broker=self._broker, tick_seconds=tick_seconds)
        self._context = ScriptContext(bus=bus, broker=self._broker)
        self._runtime = ScriptRuntime(context=self._context, join_timeout_seconds=join_timeout_seconds)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="script-reload")
        self._lock = Lock()
        self._reload_future: Future[None] | None = None

    @classmethod
    def from_settings(cls, *, settings: EngineSettings, store: Store, bus: BusClient) -> "RuleEngine":
        return cls(store=store, bus=bus, join_timeout_seconds=settings.join_timeout_seconds)

    @property
    def broker(self) -> WaitBroker:
        return self._broker

    @property
    def runtime(self) -> ScriptRuntime:
        return self._runtime

    def start(self) -> None:
        self._bus.set_message_callback(self.handle_message)
        self._scheduler.start()
        self.start_all()

    def shutdown(self) -> None:
        self._bus.set_message_callback(None)
        with self._lock:
            reload_future = self._reload_future
        if reload_future is not None:
            reload_future.result()
        self._executor.shutdown(wait=True, cancel_futures=True)
        self.stop_all()
        self._scheduler.stop()
        self._logger.info("rule engine stopped")

    def handle_message(self, topic: str, payload: str) -> None:
        if topic == RELOAD_TOPIC:
            self.request_reload()
            return

        device_path = device_path_from_status_topic(topic)
        if device_path is None:
            self._logger.log(TRACE, "ignoring message topic=%s", topic)
            return
        try:
            message = decode(payload)
        except DecodeError as exc:
            self._logger.warning("dropping undecodable message topic=%s error=%s", topic, exc)
            return
        self._context.update_values(device_path, message)

    def request_reload(self) -> bool:
        with self._lock:
            reload_future = self._reload_future
            if reload_future is not None and not reload_future.done():
                self._logger.warning("reload already in progress; request dropped")
                return False
            self._reload_future = self._executor.submit(self._reload_worker)
        return True

    def wait_for_reload(self, timeout: float | None = None) -> None:
        with self._lock:
            reload_future = self._reload_future
        if reload_future is not None:
            reload_future.result(timeout=timeout)

    def start_all(self) -> None:
        stale = self._runtime.running_scripts()
        if stale:
            # the previous generation stays aborted; its library calls keep raising
            self._logger.error("starting scripts while aborted scripts still run names=%s", ",".join(stale))
        abort = self._broker.begin_generation()
        catalog = load_catalog(self._store)
        for topic in catalog.topics:
            self._bus.subscribe(topic)
        self._runtime.start(catalog.scripts, abort)
        self._bus.subscribe(RELOAD_TOPIC)
        self._logger.info(
            "scripts started count=%s rejected=%s topics=%s",
            len(catalog.scripts),
            len(catalog.rejected),
            len(catalog.topics),
        )

    def stop_all(self) -> list[str]:
        """Abort and join every script; return names of workers that would not stop."""
        self._bus.unsubscribe(ALL_TOPICS)
        self._broker.abort_all()
        leaked = self._runtime.join_all()
        self._broker.clear()
        self._logger.info("scripts stopped leaked=%s", len(leaked))
        return leaked

    def _reload_worker(self) -> None:
        self._logger.info("reloading scripts")
        try:
            self.stop_all()
            self.start_all()
        except Exception:
            self._logger.exception("script reload failed")


def build_engine(
    *,
    system_settings: SystemSettings,
    engine_settings: EngineSettings,
) -> tuple[RuleEngine, BusClient, Store]:
    store = Store.for_scripts(engine_settings.uri)
    bus = BusClient.from_settings(system_settings, client_id="mq_exe_daemon")
    engine = RuleEngine.from_settings(settings=engine_settings, store=store, bus=bus)
    return engine, bus, store
