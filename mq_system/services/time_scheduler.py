from __future__ import annotations

import logging
from threading import Event, Lock, Thread

from mq_system.services.wait_broker import WaitBroker


TICK_SECONDS = 0.5


class TimeScheduler:
    """Releases due time waits on a fixed tick.

    Runs independently of the script abort flag so it keeps ticking across
    reloads; only ``stop()`` ends it.
    """

    def __init__(self, *, broker: WaitBroker, tick_seconds: float = TICK_SECONDS) -> None:
        self._broker = broker
        self._tick_seconds = tick_seconds
        self._logger = logging.getLogger("mq_system.scheduler")
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._lock = Lock()
        self._running = False

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="time-scheduler", daemon=True)
        self._thread.start()
        self._logger.info("started time scheduler tick_seconds=%s", self._tick_seconds)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        with self._lock:
            self._running = False

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                released = self._broker.dispatch_due()
                if released:
                    self._logger.debug("released time waits count=%s", released)
            except Exception:
                self._logger.exception("time scheduler tick failed")
            self._stop_event.wait(self._tick_seconds)
