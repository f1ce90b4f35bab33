from __future__ import annotations

from datetime import datetime, timedelta
from unittest import TestCase

from fastapi.testclient import TestClient

from mq_system.core.config import WebSettings
from mq_system.db.models import LogEntry
from mq_system.db.session import Store
from mq_system.repositories.history import (
    get_or_create_sensor_id,
    get_or_create_unit_id,
    get_or_create_value_name,
    insert_real_sample,
)
from mq_system.web import create_app


BASE_TIME = datetime(2026, 1, 1, 12, 0, 0)

VALID_SCRIPT = 'door = register_value("hall/sensor:Door")\nwait_or(door)\n'


class _FakeBus:
    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.published: list[tuple[str, str]] = []

    def publish(self, topic: str, payload: str) -> bool:
        self.published.append((topic, payload))
        return True


class AdminApiTestCase(TestCase):
    bus: _FakeBus | None = None

    def setUp(self) -> None:
        self.history_store = Store.for_history(":memory:")
        self.script_store = Store.for_scripts(":memory:")
        self.log_store = Store.for_logs(":memory:")
        for store in (self.history_store, self.script_store, self.log_store):
            self.addCleanup(store.dispose)
        app = create_app(
            settings=WebSettings(),
            history_store=self.history_store,
            script_store=self.script_store,
            log_store=self.log_store,
            bus=self.bus,  # type: ignore[arg-type]
            connect_bus=False,
        )
        self.client = TestClient(app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)


class ScriptApiTests(AdminApiTestCase):
    def setUp(self) -> None:
        self.bus = _FakeBus()
        super().setUp()

    def test_health_reports_components(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertTrue(response.json()["broker_connected"])

    def test_script_crud(self) -> None:
        created = self.client.put("/api/scripts/hall_light", json={"body": VALID_SCRIPT})
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["topics"], ["status/hall/sensor"])

        updated = self.client.put("/api/scripts/hall_light", json={"body": VALID_SCRIPT + "debug('x')\n"})
        self.assertEqual(updated.status_code, 200)

        listing = self.client.get("/api/scripts")
        self.assertEqual([item["name"] for item in listing.json()], ["hall_light"])

        fetched = self.client.get("/api/scripts/hall_light")
        self.assertEqual(fetched.status_code, 200)
        self.assertTrue(fetched.json()["body"].endswith("debug('x')\n"))

        self.assertEqual(self.client.delete("/api/scripts/hall_light").status_code, 204)
        self.assertEqual(self.client.delete("/api/scripts/hall_light").status_code, 404)
        self.assertEqual(self.client.get("/api/scripts/hall_light").status_code, 404)

    def test_rejected_script_is_not_stored(self) -> None:
        response = self.client.put("/api/scripts/broken", json={"body": 'register_value("nope")\n'})
        self.assertEqual(response.status_code, 422)

        response = self.client.put("/api/scripts/greedy", json={"body": "try:\n    pass\nexcept:\n    pass\n"})
        self.assertEqual(response.status_code, 422)

        response = self.client.put("/api/scripts/bad-name", json={"body": "x = 1\n"})
        self.assertEqual(response.status_code, 422)

        self.assertEqual(self.client.get("/api/scripts").json(), [])

    def test_reload_publishes_control_message(self) -> None:
        response = self.client.post("/api/scripts/reload")

        self.assertEqual(response.status_code, 202)
        self.assertEqual(self.bus.published, [("app/exe/reload", "{}")])


class ReloadWithoutBrokerTests(AdminApiTestCase):
    def test_reload_without_broker_is_unavailable(self) -> None:
        response = self.client.post("/api/scripts/reload")
        self.assertEqual(response.status_code, 503)


class HistoryApiTests(AdminApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        with self.history_store.session() as db:
            unit_id = get_or_create_unit_id(db, "°C")
            temperature = get_or_create_value_name(db, "Temperature", unit_id)
            self.kitchen_id = get_or_create_sensor_id(db, "kitchen/thermo")
            self.living_id = get_or_create_sensor_id(db, "living/thermo")
            for offset, value in ((0, 0.0), (10, 10.0), (30, 20.0)):
                insert_real_sample(
                    db,
                    timestamp=BASE_TIME + timedelta(seconds=offset),
                    sensor_id=self.kitchen_id,
                    valname_id=temperature.id,
                    value=value,
                )
            insert_real_sample(
                db,
                timestamp=BASE_TIME,
                sensor_id=self.living_id,
                valname_id=temperature.id,
                value=19.5,
            )

    def test_latest_values(self) -> None:
        response = self.client.get("/api/values", params={"value": "Temperature"})

        self.assertEqual(response.status_code, 200)
        items = {item["sensor_name"]: item for item in response.json()}
        self.assertEqual(items["kitchen/thermo"]["value"], 20.0)
        self.assertEqual(items["kitchen/thermo"]["unit"], "°C")
        self.assertEqual(items["living/thermo"]["value"], 19.5)
        self.assertEqual(self.client.get("/api/values", params={"value": "Humidity"}).json(), [])

    def test_history_series_with_statistics(self) -> None:
        response = self.client.get(
            "/api/history",
            params={
                "value": "Temperature",
                "sensors": [self.kitchen_id],
                "date_from": (BASE_TIME - timedelta(seconds=1)).isoformat(),
                "date_to": (BASE_TIME + timedelta(minutes=1)).isoformat(),
            },
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["unit"], "°C")
        self.assertEqual(len(body["series"]), 1)
        series = body["series"][0]
        self.assertEqual(series["sensor_name"], "kitchen/thermo")
        self.assertEqual([point["value"] for point in series["points"]], [0.0, 10.0, 20.0])
        self.assertAlmostEqual(series["average"], 200.0 / 30.0)
        self.assertEqual(series["spread"], 20.0)

    def test_history_all_sensors(self) -> None:
        response = self.client.get(
            "/api/history",
            params={
                "value": "Temperature",
                "date_from": (BASE_TIME - timedelta(seconds=1)).isoformat(),
                "date_to": (BASE_TIME + timedelta(minutes=1)).isoformat(),
            },
        )
        names = [series["sensor_name"] for series in response.json()["series"]]
        self.assertEqual(names, ["kitchen/thermo", "living/thermo"])
        living = response.json()["series"][1]
        self.assertEqual(living["average"], 19.5)
        self.assertEqual(living["spread"], 0.0)

    def test_history_rejects_inverted_range(self) -> None:
        response = self.client.get(
            "/api/history",
            params={
                "value": "Temperature",
                "date_from": BASE_TIME.isoformat(),
                "date_to": (BASE_TIME - timedelta(hours=1)).isoformat(),
            },
        )
        self.assertEqual(response.status_code, 400)


class LogApiTests(AdminApiTestCase):
    def test_recent_logs_newest_first(self) -> None:
        with self.log_store.session() as db:
            for index in range(3):
                db.add(
                    LogEntry(
                        timestamp=1_700_000_000_000_000_000 + index,
                        level=20,
                        thread=1,
                        msgid=0,
                        logger="mq_system.engine",
                        message=f"message {index}",
                    )
                )
            db.commit()

        response = self.client.get("/api/logs", params={"limit": 2})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["message"] for item in response.json()], ["message 2", "message 1"])
        self.assertEqual(response.json()[0]["level_name"], "info")
