from __future__ import annotations

import logging
import time
from bisect import insort
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from itertools import count
from threading import Condition, Event, Lock

from mq_system.core.errors import AbortRequested, ScriptError


class WaitMode(str, Enum):
    ALL = "all"
    ANY = "any"


class WaitSet:
    """One blocked ``wait_and``/``wait_or`` call.

    Signals only ever come from the broker while it holds the index lock the
    entry was found under, so a WaitSet removed from both indices is never
    signalled again.
    """

    def __init__(self, mode: WaitMode, expected: int) -> None:
        self.mode = mode
        self.expected = expected
        self.condition = Condition()
        self._counter = 0

    @property
    def counter(self) -> int:
        with self.condition:
            return self._counter

    def signal(self) -> None:
        with self.condition:
            self._counter += 1
            self.condition.notify_all()

    def wake(self) -> None:
        with self.condition:
            self.condition.notify_all()

    def satisfied(self) -> bool:
        # caller holds self.condition
        if self.mode is WaitMode.ANY:
            return self._counter >= 1
        return self._counter >= self.expected


@dataclass
class _TimeEntry:
    deadline: float
    seq: int
    wait_set: WaitSet


def _time_key(entry: _TimeEntry) -> tuple[float, int]:
    return (entry.deadline, entry.seq)


class WaitBroker:
    """Routes value updates and due deadlines to the WaitSets blocked on them.

    Lock order is index lock first, then the WaitSet condition. Waiters never
    hold their condition while touching an index.

    Every script generation gets its own abort token from ``begin_generation``.
    A token is never cleared once set, so scripts of an aborted generation keep
    failing even after a newer generation started.
    """

    def __init__(self) -> None:
        self._logger = logging.getLogger("mq_system.wait_broker")
        self._value_lock = Lock()
        self._value_index: dict[str, list[WaitSet | None]] = {}
        self._time_lock = Lock()
        self._time_index: list[_TimeEntry] = []
        self._waiting_lock = Lock()
        self._waiting: set[WaitSet] = set()
        self._sequence = count()
        self._abort = Event()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    @property
    def abort_token(self) -> Event:
        return self._abort

    def begin_generation(self) -> Event:
        self._abort = Event()
        return self._abort

    def raise_if_aborted(self, token: Event | None = None) -> None:
        if (token if token is not None else self._abort).is_set():
            raise AbortRequested()

    def wait(
        self,
        value_refs: Sequence[str],
        deadlines: Sequence[float],
        mode: WaitMode,
        token: Event | None = None,
    ) -> None:
        """Block until the wait condition holds; raise ``AbortRequested`` once ``token`` is set.

        ``token`` defaults to the abort token of the current generation.
        """
        if not value_refs and not deadlines:
            raise ScriptError("wait requires at least one value or time argument")
        abort = token if token is not None else self._abort
        self.raise_if_aborted(abort)

        wait_set = WaitSet(mode, expected=len(value_refs) + len(deadlines))
        with self._waiting_lock:
            self._waiting.add(wait_set)
        with self._value_lock:
            for ref in value_refs:
                self._value_index.setdefault(ref, []).append(wait_set)
        with self._time_lock:
            for deadline in deadlines:
                insort(
                    self._time_index,
                    _TimeEntry(deadline=deadline, seq=next(self._sequence), wait_set=wait_set),
                    key=_time_key,
                )

        try:
            with wait_set.condition:
                while not wait_set.satisfied() and not abort.is_set():
                    wait_set.condition.wait()
        finally:
            self._remove(wait_set, value_refs)
        self.raise_if_aborted(abort)

    def notify_value(self, ref: str) -> int:
        """Signal every WaitSet blocked on ``ref``; returns how many were signalled."""
        signalled = 0
        with self._value_lock:
            entries = self._value_index.get(ref)
            if not entries:
                return 0
            for position, wait_set in enumerate(entries):
                if wait_set is None:
                    continue
                wait_set.signal()
                entries[position] = None
                signalled += 1
        return signalled

    def dispatch_due(self, now: float | None = None) -> int:
        """Signal every WaitSet whose deadline is at or before ``now`` (epoch seconds)."""
        current = time.time() if now is None else now
        signalled = 0
        with self._time_lock:
            while self._time_index and self._time_index[0].deadline <= current:
                entry = self._time_index.pop(0)
                entry.wait_set.signal()
                signalled += 1
        return signalled

    def abort_all(self) -> None:
        self._abort.set()
        with self._waiting_lock:
            waiting = list(self._waiting)
        for wait_set in waiting:
            wait_set.wake()
        self._logger.debug("abort requested waiting=%s", len(waiting))

    def clear(self) -> None:
        with self._value_lock:
            self._value_index.clear()
        with self._time_lock:
            self._time_index.clear()

    def pending_value_waits(self) -> int:
        with self._value_lock:
            return sum(1 for entries in self._value_index.values() for item in entries if item is not None)

    def pending_time_waits(self) -> int:
        with self._time_lock:
            return len(self._time_index)

    def _remove(self, wait_set: WaitSet, value_refs: Iterable[str]) -> None:
        with self._value_lock:
            for ref in set(value_refs):
                entries = self._value_index.get(ref)
                if entries is None:
                    continue
                remaining = [item for item in entries if item is not None and item is not wait_set]
                if remaining:
                    self._value_index[ref] = remaining
                else:
                    del self._value_index[ref]
        with self._time_lock:
            self._time_index = [entry for entry in self._time_index if entry.wait_set is not wait_set]
        with self._waiting_lock:
            self._waiting.discard(wait_set)
