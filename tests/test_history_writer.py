from __future__ import annotations

from datetime import datetime, timedelta
from unittest import TestCase
from unittest.mock import patch

from sqlalchemy import select

from mq_system.core.config import HistorySensorConfig, HistoryValueConfig
from mq_system.core.errors import StoreError
from mq_system.db.models import Sensor, ValueBool, ValueName, ValueReal
from mq_system.db.session import Store
from mq_system.repositories.history import (
    get_or_create_sensor_id,
    get_or_create_unit_id,
    get_or_create_value_name,
    get_value_unit,
    insert_real_sample,
    list_latest_values,
)
from mq_system.services.history_writer import HistoryWriter, sensor_cadence_ns, time_weighted_mean


BASE_TIME = datetime(2026, 1, 1, 12, 0, 0)
SECOND = 1_000_000_000


class _Clock:
    def __init__(self) -> None:
        self.now_ns = 0

    def __call__(self) -> int:
        return self.now_ns

    def at(self, seconds: float) -> None:
        self.now_ns = int(seconds * SECOND)

    def wall(self) -> datetime:
        return BASE_TIME + timedelta(microseconds=self.now_ns // 1000)


def _sensor(name: str, *values: HistoryValueConfig) -> HistorySensorConfig:
    return HistorySensorConfig(name=name, values=list(values))


class HistoryWriterTestCase(TestCase):
    def setUp(self) -> None:
        self.store = Store.for_history(":memory:")
        self.addCleanup(self.store.dispose)
        self.clock = _Clock()

    def _writer(self, *sensors: HistorySensorConfig) -> HistoryWriter:
        return HistoryWriter(store=self.store, sensors=sensors, clock=self.clock, wall_clock=self.clock.wall)

    def _feed(self, writer: HistoryWriter, topic: str, samples: list[tuple[float, str]]) -> None:
        for seconds, payload in samples:
            self.clock.at(seconds)
            writer.handle_message(topic, payload)

    def _reals(self, value_name: str) -> list[tuple[float, float]]:
        stmt = (
            select(ValueReal.timestamp, ValueReal.value)
            .join(ValueName, ValueReal.valname_id == ValueName.id)
            .where(ValueName.name == value_name)
            .order_by(ValueReal.timestamp)
        )
        with self.store.session() as db:
            return [
                ((row.timestamp - BASE_TIME).total_seconds(), row.value)
                for row in db.execute(stmt).all()
            ]

    def _bools(self, value_name: str) -> list[tuple[float, bool]]:
        stmt = (
            select(ValueBool.timestamp, ValueBool.value)
            .join(ValueName, ValueBool.valname_id == ValueName.id)
            .where(ValueName.name == value_name)
            .order_by(ValueBool.timestamp)
        )
        with self.store.session() as db:
            return [
                ((row.timestamp - BASE_TIME).total_seconds(), row.value)
                for row in db.execute(stmt).all()
            ]


class HistoryWriterScenarioTests(HistoryWriterTestCase):
    def test_precision_suppresses_small_changes(self) -> None:
        writer = self._writer(_sensor("A/B", HistoryValueConfig(name="Temperature", precision=0.5)))

        self._feed(
            writer,
            "status/A/B",
            [
                (0, '{"Temperature":[21.0,"°C"]}'),
                (1, '{"Temperature":[21.3,"°C"]}'),
                (2, '{"Temperature":[21.6,"°C"]}'),
            ],
        )

        self.assertEqual([value for _, value in self._reals("Temperature")], [21.0, 21.6])

    def test_time_weighted_average_over_interval(self) -> None:
        writer = self._writer(_sensor("A/B", HistoryValueConfig(name="Power", interval=10, averaging=True)))

        self._feed(
            writer,
            "status/A/B",
            [(0, '{"Power":0.0}'), (5, '{"Power":10.0}'), (10, '{"Power":10.0}')],
        )

        self.assertEqual(self._reals("Power"), [(0.0, 0.0), (10.0, 7.5)])

    def test_sensor_cadence_gate(self) -> None:
        writer = self._writer(
            _sensor(
                "S",
                HistoryValueConfig(name="V1", interval=30),
                HistoryValueConfig(name="V2", interval=20),
            )
        )
        samples = [(seconds, '{"V1":1.0,"V2":2.0}') for seconds in range(0, 35, 5)]

        self._feed(writer, "status/S", samples)

        self.assertEqual([seconds for seconds, _ in self._reals("V1")], [0.0, 30.0])
        self.assertEqual([seconds for seconds, _ in self._reals("V2")], [0.0, 20.0])

    def test_unit_is_fixed_at_first_observation(self) -> None:
        writer = self._writer(_sensor("A/B", HistoryValueConfig(name="P")))

        self._feed(writer, "status/A/B", [(0, '{"P":[1.0,"W"]}'), (1, '{"P":[1000.0,"mW"]}')])

        self.assertEqual([value for _, value in self._reals("P")], [1.0, 1000.0])
        with self.store.session() as db:
            self.assertEqual(get_value_unit(db, "P"), "W")
            self.assertEqual(len(db.execute(select(ValueName)).scalars().all()), 1)


class HistoryWriterValueTypeTests(HistoryWriterTestCase):
    def test_booleans_follow_the_sensor_gate(self) -> None:
        writer = self._writer(_sensor("hall/door", HistoryValueConfig(name="Door", interval=10)))

        self._feed(
            writer,
            "status/hall/door",
            [(0, '{"Door":true}'), (5, '{"Door":false}'), (10, '{"Door":false}')],
        )

        self.assertEqual(self._bools("Door"), [(0.0, True), (10.0, False)])
        self.assertEqual(self._reals("Door"), [])

    def test_averaging_on_boolean_is_ignored_with_warning(self) -> None:
        writer = self._writer(
            _sensor("hall/door", HistoryValueConfig(name="Door", interval=10, averaging=True))
        )

        with self.assertLogs("mq_system.history", level="WARNING"):
            self._feed(writer, "status/hall/door", [(0, '{"Door":true}'), (1, '{"Door":false}')])

        self.assertEqual(self._bools("Door"), [(0.0, True), (1.0, False)])

    def test_strings_are_dropped(self) -> None:
        writer = self._writer(_sensor("A/B", HistoryValueConfig(name="Name")))

        with self.assertLogs("mq_system.history", level="ERROR"):
            self._feed(writer, "status/A/B", [(0, '{"Name":"kitchen"}')])

        with self.store.session() as db:
            self.assertEqual(db.execute(select(Sensor)).scalars().all(), [])

    def test_integers_are_stored_as_reals(self) -> None:
        writer = self._writer(_sensor("A/B", HistoryValueConfig(name="Count")))
        self._feed(writer, "status/A/B", [(0, '{"Count":3}')])
        self.assertEqual(self._reals("Count"), [(0.0, 3.0)])

    def test_unconfigured_values_and_topics_are_ignored(self) -> None:
        writer = self._writer(_sensor("A/B", HistoryValueConfig(name="Temperature")))

        with self.assertLogs("mq_system.history", level="ERROR"):
            self._feed(writer, "status/C/D", [(0, '{"Temperature":1.0}')])
        self._feed(writer, "status/A/B", [(1, '{"Humidity":40.0}')])

        self.assertEqual(self._reals("Temperature"), [])
        self.assertEqual(self._reals("Humidity"), [])

    def test_sensor_without_values_is_ignored_with_warning(self) -> None:
        with self.assertLogs("mq_system.history", level="WARNING") as captured:
            writer = self._writer(_sensor("A/B"), _sensor("C/D", HistoryValueConfig(name="Temperature")))

        self.assertTrue(any("sensor=A/B" in line for line in captured.output))
        self.assertEqual(writer.topics, ["status/C/D"])

    def test_undecodable_message_is_dropped(self) -> None:
        writer = self._writer(_sensor("A/B", HistoryValueConfig(name="Temperature")))

        with self.assertLogs("mq_system.history", level="WARNING"):
            self._feed(writer, "status/A/B", [(0, "{broken")])

        self.assertEqual(self._reals("Temperature"), [])


class HistoryWriterStateTests(HistoryWriterTestCase):
    def test_seed_restores_precision_baseline(self) -> None:
        config = _sensor("A/B", HistoryValueConfig(name="Temperature", precision=0.5))
        first = self._writer(config)
        self._feed(first, "status/A/B", [(0, '{"Temperature":21.0}')])

        second = self._writer(config)
        second.seed_from_store()
        self._feed(second, "status/A/B", [(1, '{"Temperature":21.3}'), (2, '{"Temperature":21.6}')])

        self.assertEqual([value for _, value in self._reals("Temperature")], [21.0, 21.6])

    def test_failed_write_leaves_state_unchanged(self) -> None:
        writer = self._writer(_sensor("A/B", HistoryValueConfig(name="Temperature", precision=0.5)))

        with patch(
            "mq_system.services.history_writer.insert_real_sample",
            side_effect=StoreError("disk full"),
        ):
            with self.assertLogs("mq_system.history", level="ERROR"):
                self._feed(writer, "status/A/B", [(0, '{"Temperature":21.0}')])

        self._feed(writer, "status/A/B", [(1, '{"Temperature":21.2}')])

        self.assertEqual([value for _, value in self._reals("Temperature")], [21.2])

    def test_latest_value_table_tracks_newest_sample(self) -> None:
        writer = self._writer(_sensor("A/B", HistoryValueConfig(name="Temperature")))
        self._feed(
            writer,
            "status/A/B",
            [(0, '{"Temperature":[20.0,"°C"]}'), (5, '{"Temperature":[22.5,"°C"]}')],
        )

        with self.store.session() as db:
            sensor_id = get_or_create_sensor_id(db, "A/B")
            unit_id = get_or_create_unit_id(db, "°C")
            valname = get_or_create_value_name(db, "Temperature", unit_id)
            insert_real_sample(
                db,
                timestamp=BASE_TIME - timedelta(hours=1),
                sensor_id=sensor_id,
                valname_id=valname.id,
                value=-5.0,
            )
            latest = list_latest_values(db)

        self.assertEqual(len(latest), 1)
        self.assertEqual(latest[0].sensor_name, "A/B")
        self.assertEqual(latest[0].value, 22.5)
        self.assertEqual(latest[0].unit, "°C")
        self.assertEqual(latest[0].timestamp, BASE_TIME + timedelta(seconds=5))


class HistoryMathTests(TestCase):
    def test_time_weighted_mean(self) -> None:
        samples = [(0, 0.0), (5 * SECOND, 10.0), (10 * SECOND, 10.0)]
        self.assertEqual(time_weighted_mean(samples), 7.5)
        self.assertEqual(time_weighted_mean([(0, 4.0)]), 4.0)
        self.assertEqual(time_weighted_mean([(0, 4.0), (0, 6.0)]), 5.0)

        uneven = [(0, 3.0), (1 * SECOND, 9.0), (7 * SECOND, 1.0), (8 * SECOND, 5.0)]
        mean = time_weighted_mean(uneven)
        self.assertGreaterEqual(mean, 1.0)
        self.assertLessEqual(mean, 9.0)
        with self.assertRaises(ValueError):
            time_weighted_mean([])

    def test_sensor_cadence(self) -> None:
        self.assertEqual(
            sensor_cadence_ns([HistoryValueConfig(name="a", interval=30), HistoryValueConfig(name="b", interval=20)]),
            10 * SECOND,
        )
        self.assertEqual(
            sensor_cadence_ns([HistoryValueConfig(name="a", interval=30), HistoryValueConfig(name="b", interval=0)]),
            30 * SECOND,
        )
        self.assertEqual(
            sensor_cadence_ns([HistoryValueConfig(name="a", interval=30), HistoryValueConfig(name="b", averaging=True)]),
            0,
        )
        self.assertEqual(sensor_cadence_ns([]), 0)
