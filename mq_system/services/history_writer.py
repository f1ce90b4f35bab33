from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import reduce

from mq_system.core.config import HistorySensorConfig, HistoryValueConfig
from mq_system.core.errors import DecodeError, StoreError
from mq_system.core.logging import TRACE
from mq_system.core.topics import status_topic
from mq_system.db.session import Store
from mq_system.repositories.history import (
    get_latest_real_value,
    get_or_create_sensor_id,
    get_or_create_unit_id,
    get_or_create_value_name,
    insert_bool_sample,
    insert_real_sample,
)
from mq_system.services.envelope import ValuePayload, decode


Sample = tuple[int, float]


def time_weighted_mean(samples: Sequence[Sample]) -> float:
    """Trapezoidal mean of ``(t_ns, value)`` samples over their own time span."""
    if not samples:
        raise ValueError("time_weighted_mean requires at least one sample")
    if len(samples) == 1:
        return samples[0][1]
    span = samples[-1][0] - samples[0][0]
    if span <= 0:
        return sum(value for _, value in samples) / len(samples)
    area = 0.0
    for (t0, v0), (t1, v1) in zip(samples, samples[1:]):
        area += (v0 + v1) / 2.0 * (t1 - t0)
    return area / span


def sensor_cadence_ns(values: Iterable[HistoryValueConfig]) -> int:
    """GCD of all value intervals, or 0 when any value averages or there are none."""
    intervals = []
    for value in values:
        if value.averaging:
            return 0
        intervals.append(value.interval_ns)
    if not intervals:
        return 0
    return reduce(math.gcd, intervals)


@dataclass
class _ValueState:
    name: str
    interval_ns: int
    averaging: bool
    precision: float
    last_persisted_real: float | None = None
    last_persisted_at: int | None = None
    pending: list[Sample] = field(default_factory=list)


@dataclass
class _SensorState:
    device_path: str
    cadence_ns: int
    values: dict[str, _ValueState]
    last_persisted_at: int | None = None


@dataclass(frozen=True)
class _SampleIds:
    sensor_id: int
    valname_id: int


class HistoryWriter:
    """Filters and persists configured sensor values from ``status/`` envelopes.

    All state lives here and is touched only from the bus callback thread.
    ``clock`` returns monotonic nanoseconds and drives every interval gate;
    ``wall_clock`` produces the timestamp stored with each sample.
    """

    def __init__(
        self,
        *,
        store: Store,
        sensors: Iterable[HistorySensorConfig],
        clock: Callable[[], int] = time.monotonic_ns,
        wall_clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._wall_clock = wall_clock or _utc_now
        self._logger = logging.getLogger("mq_system.history")
        self._sensors: dict[str, _SensorState] = {}
        self._sensor_ids: dict[str, int] = {}
        self._unit_ids: dict[str, int] = {}
        self._valname_ids: dict[str, int] = {}

        for sensor in sensors:
            if not sensor.values:
                self._logger.warning("ignoring sensor without values sensor=%s", sensor.name)
                continue
            state = _SensorState(
                device_path=sensor.name,
                cadence_ns=sensor_cadence_ns(sensor.values),
                values={
                    value.name: _ValueState(
                        name=value.name,
                        interval_ns=value.interval_ns,
                        averaging=value.averaging,
                        precision=value.precision,
                    )
                    for value in sensor.values
                },
            )
            self._sensors[status_topic(sensor.name)] = state
            self._logger.debug(
                "configured sensor=%s values=%s cadence_ns=%s",
                sensor.name,
                sorted(state.values),
                state.cadence_ns,
            )

    @property
    def topics(self) -> list[str]:
        return sorted(self._sensors)

    def seed_from_store(self) -> None:
        """Load the last persisted real for every value with a precision filter."""
        with self._store.session() as db:
            for sensor in self._sensors.values():
                for value in sensor.values.values():
                    if value.precision <= 0:
                        continue
                    latest = get_latest_real_value(
                        db,
                        sensor_name=sensor.device_path,
                        value_name=value.name,
                    )
                    if latest is not None:
                        value.last_persisted_real = float(latest)
                        self._logger.debug(
                            "seeded last value sensor=%s value=%s last=%s",
                            sensor.device_path,
                            value.name,
                            latest,
                        )

    def handle_message(self, topic: str, payload: str | bytes) -> None:
        now = self._clock()
        sensor = self._sensors.get(topic)
        if sensor is None:
            self._logger.error("message on unconfigured topic=%s", topic)
            return

        if (
            sensor.cadence_ns > 0
            and sensor.last_persisted_at is not None
            and now - sensor.last_persisted_at < sensor.cadence_ns
        ):
            return

        try:
            message = decode(payload)
        except DecodeError as exc:
            self._logger.warning("dropping undecodable message topic=%s error=%s", topic, exc)
            return

        for value_name, value_payload in message.items():
            state = sensor.values.get(value_name)
            if state is None:
                continue
            self._handle_value(sensor, state, value_payload, now)

    def _handle_value(
        self,
        sensor: _SensorState,
        state: _ValueState,
        payload: ValuePayload,
        now: int,
    ) -> None:
        if not payload.is_bool and not payload.is_number:
            self._logger.error(
                "unsupported value type sensor=%s value=%s type=%s",
                sensor.device_path,
                state.name,
                type(payload.value).__name__,
            )
            return

        if payload.is_bool:
            if state.averaging:
                self._logger.warning(
                    "averaging ignored for boolean sensor=%s value=%s",
                    sensor.device_path,
                    state.name,
                )
            if self._persist(sensor, state, payload, bool(payload.value)):
                state.last_persisted_at = now
                sensor.last_persisted_at = now
            return

        value = float(payload.value)
        if (
            not state.averaging
            and state.interval_ns > 0
            and state.last_persisted_at is not None
            and now - state.last_persisted_at < state.interval_ns
        ):
            return

        if state.averaging and state.pending and now - state.pending[0][0] < state.interval_ns:
            state.pending.append((now, value))
            return

        if state.averaging and state.pending:
            effective = time_weighted_mean([*state.pending, (now, value)])
        else:
            effective = value

        if (
            state.precision > 0
            and state.last_persisted_real is not None
            and abs(effective - state.last_persisted_real) < state.precision
        ):
            state.pending = [(now, effective)]
            return

        if not self._persist(sensor, state, payload, effective):
            return
        state.last_persisted_real = effective
        state.last_persisted_at = now
        state.pending = [(now, effective)]
        sensor.last_persisted_at = now

    def _persist(
        self,
        sensor: _SensorState,
        state: _ValueState,
        payload: ValuePayload,
        value: float | bool,
    ) -> bool:
        timestamp = self._wall_clock()
        try:
            ids = self._resolve_ids(sensor.device_path, state.name, payload.unit_name)
            with self._store.session() as db:
                if isinstance(value, bool):
                    insert_bool_sample(
                        db,
                        timestamp=timestamp,
                        sensor_id=ids.sensor_id,
                        valname_id=ids.valname_id,
                        value=value,
                    )
                else:
                    insert_real_sample(
                        db,
                        timestamp=timestamp,
                        sensor_id=ids.sensor_id,
                        valname_id=ids.valname_id,
                        value=value,
                    )
        except StoreError as exc:
            self._logger.error(
                "failed to persist sample sensor=%s value=%s error=%s",
                sensor.device_path,
                state.name,
                exc,
            )
            return False
        self._logger.log(
            TRACE,
            "persisted sample sensor=%s value=%s data=%s",
            sensor.device_path,
            state.name,
            value,
        )
        return True

    def _resolve_ids(self, device_path: str, value_name: str, unit_name: str) -> _SampleIds:
        with self._store.session() as db:
            sensor_id = self._sensor_ids.get(device_path)
            if sensor_id is None:
                sensor_id = get_or_create_sensor_id(db, device_path)
                self._sensor_ids[device_path] = sensor_id

            valname_id = self._valname_ids.get(value_name)
            if valname_id is None:
                unit_id = self._unit_ids.get(unit_name)
                if unit_id is None:
                    unit_id = get_or_create_unit_id(db, unit_name)
                    self._unit_ids[unit_name] = unit_id
                snapshot = get_or_create_value_name(db, value_name, unit_id)
                if snapshot.unit_id != unit_id:
                    self._logger.debug(
                        "value keeps its first unit value=%s unit_id=%s ignored_unit=%s",
                        value_name,
                        snapshot.unit_id,
                        unit_name,
                    )
                valname_id = snapshot.id
                self._valname_ids[value_name] = valname_id
        return _SampleIds(sensor_id=sensor_id, valname_id=valname_id)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
