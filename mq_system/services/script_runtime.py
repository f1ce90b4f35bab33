from __future__ import annotations

import builtins
import functools
import logging
import math
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from threading import Event, Lock, Thread
from typing import Any, TYPE_CHECKING

from mq_system.core.errors import AbortRequested, ScriptError, TimeExpressionError
from mq_system.core.topics import ValueReference, parse_value_reference
from mq_system.services.envelope import Message, encode
from mq_system.services.time_expression import parse_time_expression
from mq_system.services.wait_broker import WaitBroker, WaitMode

if TYPE_CHECKING:
    from mq_system.services.bus import BusClient
    from mq_system.services.script_catalog import LoadedScript


CachedValue = bool | float
NIL_TEXT = " NIL "


@dataclass(frozen=True)
class ValueHandle:
    """Opaque token returned by ``register_value``."""

    reference: ValueReference

    def __str__(self) -> str:
        return str(self.reference)


class ScriptContext:
    """State shared by every script of one engine: last-seen values, globals, bus and broker."""

    def __init__(self, *, bus: "BusClient", broker: WaitBroker) -> None:
        self.bus = bus
        self.broker = broker
        self._logger = logging.getLogger("mq_system.script_context")
        self._value_cache_lock = Lock()
        self._value_cache: dict[str, CachedValue] = {}
        self._global_lock = Lock()
        self._globals: dict[str, CachedValue] = {}

    def update_values(self, device_path: str, message: Message) -> None:
        # cache lock is held while signalling so a woken script reads the new value
        with self._value_cache_lock:
            for value_name, payload in message.items():
                ref = f"{device_path}:{value_name}"
                if payload.is_bool:
                    self._value_cache[ref] = bool(payload.value)
                elif payload.is_number:
                    self._value_cache[ref] = float(payload.value)
                else:
                    self._logger.debug("ignoring non scalar value ref=%s", ref)
                    continue
                self.broker.notify_value(ref)

    def cached_value(self, ref: str) -> CachedValue | None:
        with self._value_cache_lock:
            return self._value_cache.get(ref)

    def set_global(self, name: str, value: CachedValue) -> None:
        with self._global_lock:
            self._globals[name] = value

    def get_global(self, name: str) -> CachedValue | None:
        with self._global_lock:
            return self._globals.get(name)


def _abortable(method: Callable[..., Any]) -> Callable[..., Any]:
    @functools.wraps(method)
    def wrapper(self: "ScriptLibrary", *args: Any, **kwargs: Any) -> Any:
        if self._abort.is_set():
            raise AbortRequested()
        return method(self, *args, **kwargs)

    return wrapper


class ScriptLibrary:
    """Functions injected into the globals of one script.

    The library keeps the abort token of the generation it was built in, so
    once that generation is stopped every call raises ``AbortRequested``.
    """

    def __init__(self, *, script_name: str, context: ScriptContext, abort: Event | None = None) -> None:
        self._script_name = script_name
        self._context = context
        self._abort = abort if abort is not None else context.broker.abort_token
        self._logger = logging.getLogger(f"mq_system.engine.script.{script_name}")

    def namespace(self) -> dict[str, Any]:
        return {
            "__builtins__": builtins,
            "__name__": f"script_{self._script_name}",
            "debug": self.debug,
            "warn": self.warn,
            "register_value": self.register_value,
            "request_value": self.request_value,
            "wait_and": self.wait_and,
            "wait_or": self.wait_or,
            "write_value": self.write_value,
            "report_value": self.report_value,
            "set_global": self.set_global,
            "get_global": self.get_global,
            "clock": self.clock,
            "date": self.date,
            "time": self.epoch_time,
            "difftime": self.difftime,
        }

    @_abortable
    def debug(self, *args: Any) -> None:
        self._logger.debug("%s", _join_text(args))

    @_abortable
    def warn(self, *args: Any) -> None:
        self._logger.warning("%s", _join_text(args))

    @_abortable
    def register_value(self, *refs: str) -> ValueHandle | tuple[ValueHandle, ...]:
        if not refs:
            raise ScriptError("register_value requires at least one value reference")
        handles = []
        for ref in refs:
            try:
                reference = parse_value_reference(ref)
            except ValueError as exc:
                raise ScriptError(str(exc)) from exc
            topic = reference.status_topic
            if topic not in self._context.bus.subscribed_topics():
                self._logger.debug("subscribing undeclared topic=%s", topic)
                self._context.bus.subscribe(topic)
            handles.append(ValueHandle(reference))
        return handles[0] if len(handles) == 1 else tuple(handles)

    @_abortable
    def request_value(self, *handles: ValueHandle) -> CachedValue | None | tuple[CachedValue | None, ...]:
        if not handles:
            raise ScriptError("request_value requires at least one handle")
        values = []
        for handle in handles:
            if not isinstance(handle, ValueHandle):
                raise ScriptError(f"request_value expects handles, got {type(handle).__name__}")
            values.append(self._context.cached_value(str(handle.reference)))
        return values[0] if len(values) == 1 else tuple(values)

    @_abortable
    def wait_and(self, *args: ValueHandle | str) -> None:
        self._wait(args, WaitMode.ALL)

    @_abortable
    def wait_or(self, *args: ValueHandle | str) -> None:
        self._wait(args, WaitMode.ANY)

    def _wait(self, args: Iterable[ValueHandle | str], mode: WaitMode) -> None:
        value_refs: list[str] = []
        deadlines: list[float] = []
        for arg in args:
            if isinstance(arg, ValueHandle):
                value_refs.append(str(arg.reference))
            elif isinstance(arg, str):
                try:
                    deadlines.append(parse_time_expression(arg).timestamp())
                except TimeExpressionError as exc:
                    raise ScriptError(str(exc)) from exc
            else:
                raise ScriptError(f"wait arguments must be handles or time expressions, got {type(arg).__name__}")
        self._context.broker.wait(value_refs, deadlines, mode, self._abort)

    @_abortable
    def write_value(self, *args: Any) -> bool:
        reference, value = self._outgoing("write_value", args)
        return self._context.bus.publish(reference.set_topic, self._envelope(reference, value))

    @_abortable
    def report_value(self, *args: Any) -> bool:
        reference, value = self._outgoing("report_value", args)
        return self._context.bus.publish(reference.status_topic, self._envelope(reference, value))

    def _outgoing(self, function: str, args: tuple[Any, ...]) -> tuple[ValueReference, bool | int | float]:
        if len(args) != 2:
            raise ScriptError(f"{function} takes exactly 2 arguments ({len(args)} given)")
        target, value = args
        if isinstance(target, ValueHandle):
            reference = target.reference
        else:
            try:
                reference = parse_value_reference(target)
            except ValueError as exc:
                raise ScriptError(str(exc)) from exc
        _check_scalar(function, value)
        return reference, value

    @staticmethod
    def _envelope(reference: ValueReference, value: bool | int | float) -> str:
        return encode({reference.value_name: value})

    @_abortable
    def set_global(self, name: str, value: Any) -> None:
        if not isinstance(name, str):
            raise ScriptError("global name must be a string")
        _check_scalar("set_global", value)
        self._context.set_global(name, value)

    @_abortable
    def get_global(self, name: str) -> CachedValue | None:
        if not isinstance(name, str):
            raise ScriptError("global name must be a string")
        return self._context.get_global(name)

    @_abortable
    def clock(self) -> float:
        return time.process_time()

    @_abortable
    def date(self, fmt: str = "%c", t: float | None = None) -> str | dict[str, Any]:
        if not isinstance(fmt, str):
            raise ScriptError(f"date format must be a string, got {type(fmt).__name__}")
        utc = fmt.startswith("!")
        if utc:
            fmt = fmt[1:]
        try:
            seconds = time.time() if t is None else float(t)
            moment = time.gmtime(seconds) if utc else time.localtime(seconds)
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise ScriptError(f"invalid time value: {exc}") from exc
        if fmt.startswith("*t"):
            return {
                "year": moment.tm_year,
                "month": moment.tm_mon,
                "day": moment.tm_mday,
                "hour": moment.tm_hour,
                "min": moment.tm_min,
                "sec": moment.tm_sec,
                "wday": (moment.tm_wday + 1) % 7 + 1,
                "yday": moment.tm_yday,
                "isdst": moment.tm_isdst > 0,
            }
        try:
            return time.strftime(fmt, moment)
        except ValueError as exc:
            raise ScriptError(f"invalid date format {fmt!r}: {exc}") from exc

    @_abortable
    def epoch_time(self, table: Mapping[str, Any] | None = None) -> int:
        if table is None:
            return int(time.time())
        if not isinstance(table, Mapping):
            raise ScriptError("time expects a date table")
        isdst = table.get("isdst")
        try:
            fields = (
                int(table["year"]),
                int(table["month"]),
                int(table["day"]),
                int(table.get("hour", 12)),
                int(table.get("min", 0)),
                int(table.get("sec", 0)),
                0,
                0,
                -1 if isdst is None else int(bool(isdst)),
            )
        except KeyError as exc:
            raise ScriptError(f"field {exc.args[0]!r} missing in date table") from exc
        except (TypeError, ValueError) as exc:
            raise ScriptError(f"invalid date table: {exc}") from exc
        try:
            return int(time.mktime(fields))
        except (OverflowError, ValueError) as exc:
            raise ScriptError(f"date table out of range: {exc}") from exc

    @_abortable
    def difftime(self, t2: float, t1: float = 0) -> float:
        return float(t2) - float(t1)


def _join_text(args: Iterable[Any]) -> str:
    return "".join(NIL_TEXT if arg is None else str(arg) for arg in args)


def _check_scalar(function: str, value: Any) -> None:
    if isinstance(value, bool):
        return
    if not isinstance(value, (int, float)):
        raise ScriptError(f"{function} accepts bool or number, got {type(value).__name__}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ScriptError(f"{function} accepts finite numbers only")


class ScriptWorker:
    def __init__(self, script: "LoadedScript", context: ScriptContext, abort: Event | None = None) -> None:
        self.script = script
        self._library = ScriptLibrary(script_name=script.name, context=context, abort=abort)
        self._logger = logging.getLogger("mq_system.script_worker")
        self._thread = Thread(target=self._run, name=f"script-{script.name}", daemon=True)

    @property
    def name(self) -> str:
        return self.script.name

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        self._thread.join(timeout=timeout)
        return not self._thread.is_alive()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        namespace = self._library.namespace()
        self._logger.debug("script started name=%s", self.name)
        try:
            exec(self.script.code, namespace)
        except AbortRequested:
            self._logger.warning("script aborted name=%s", self.name)
        except Exception:
            self._logger.warning("script failed name=%s", self.name, exc_info=True)
        else:
            self._logger.info("script finished name=%s", self.name)


class ScriptRuntime:
    """Owns the worker thread of every running script."""

    def __init__(self, *, context: ScriptContext, join_timeout_seconds: float = 10.0) -> None:
        self._context = context
        self._join_timeout_seconds = join_timeout_seconds
        self._logger = logging.getLogger("mq_system.script_runtime")
        self._lock = Lock()
        self._workers: list[ScriptWorker] = []

    @property
    def context(self) -> ScriptContext:
        return self._context

    def running_scripts(self) -> list[str]:
        with self._lock:
            return [worker.name for worker in self._workers if worker.is_alive()]

    def start(self, scripts: Iterable["LoadedScript"], abort: Event | None = None) -> None:
        workers = [ScriptWorker(script, self._context, abort) for script in scripts]
        with self._lock:
            self._workers.extend(workers)
        for worker in workers:
            worker.start()
        self._logger.info("started scripts count=%s", len(workers))

    def join_all(self) -> list[str]:
        """Join every worker; return the names of those still alive after the timeout.

        Workers that outlive the timeout stay tracked and keep showing up in
        ``running_scripts`` until they finally exit.
        """
        with self._lock:
            workers = list(self._workers)

        leaked: list[ScriptWorker] = []
        deadline = time.monotonic() + self._join_timeout_seconds
        for worker in workers:
            remaining = max(0.0, deadline - time.monotonic())
            if not worker.join(timeout=remaining):
                leaked.append(worker)
                self._logger.error("script did not terminate name=%s", worker.name)

        with self._lock:
            self._workers = [worker for worker in self._workers if worker not in workers or worker.is_alive()]
        return [worker.name for worker in leaked]
