from __future__ import annotations

import logging
import time
from collections.abc import Callable
from threading import Lock

import paho.mqtt.client as mqtt

from mq_system.core.config import SystemSettings
from mq_system.core.errors import BrokerError


MessageCallback = Callable[[str, str], None]

QOS_EXACTLY_ONCE = 2
ALL_TOPICS = "#"


class BusClient:
    """paho-mqtt connection shared by one daemon.

    Incoming messages are delivered on the single paho network thread through
    ``on_message(topic, payload)``. Subscriptions are tracked locally so they
    survive reconnects and ``unsubscribe("#")`` can drop all of them.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        client_id: str | None = None,
        keepalive: int = 60,
        connect_attempts: int = 10,
        retry_delay_seconds: float = 1.0,
        on_message: MessageCallback | None = None,
        client: mqtt.Client | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._keepalive = keepalive
        self._connect_attempts = connect_attempts
        self._retry_delay_seconds = retry_delay_seconds
        self._on_message_callback = on_message
        self._logger = logging.getLogger("mq_system.bus")
        self._lock = Lock()
        self._subscribed_topics: set[str] = set()
        self._connected = False
        self._loop_started = False

        self._client = client or mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id or "",
            clean_session=True,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.reconnect_delay_set(min_delay=1, max_delay=30)

    @classmethod
    def from_settings(
        cls,
        settings: SystemSettings,
        *,
        client_id: str | None = None,
        on_message: MessageCallback | None = None,
    ) -> "BusClient":
        return cls(
            host=settings.mqtt_host,
            port=settings.mqtt_port,
            client_id=client_id,
            keepalive=settings.mqtt_keepalive,
            connect_attempts=settings.mqtt_connect_attempts,
            on_message=on_message,
        )

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._connected

    def set_message_callback(self, callback: MessageCallback | None) -> None:
        self._on_message_callback = callback

    def connect(self) -> None:
        attempts = 0
        while True:
            attempts += 1
            try:
                self._client.connect(self._host, self._port, keepalive=self._keepalive)
                break
            except OSError as exc:
                if attempts >= self._connect_attempts:
                    self._logger.error(
                        "mqtt connect failed broker=%s:%s attempts=%s error=%s",
                        self._host,
                        self._port,
                        attempts,
                        exc,
                    )
                    raise BrokerError(f"unable to connect to {self._host}:{self._port}") from exc
                self._logger.debug(
                    "mqtt connect refused broker=%s:%s attempt=%s",
                    self._host,
                    self._port,
                    attempts,
                )
                time.sleep(self._retry_delay_seconds)

        with self._lock:
            self._connected = True
        self._client.loop_start()
        self._loop_started = True
        self._logger.info("mqtt connected broker=%s:%s attempts=%s", self._host, self._port, attempts)

    def disconnect(self) -> None:
        if self._loop_started:
            try:
                self._client.disconnect()
            except Exception:
                self._logger.exception("mqtt disconnect failed")
            self._client.loop_stop()
            self._loop_started = False
        with self._lock:
            self._connected = False

    def subscribe(self, topic: str) -> None:
        with self._lock:
            if topic in self._subscribed_topics:
                return
            self._subscribed_topics.add(topic)
        result, _mid = self._client.subscribe(topic, qos=QOS_EXACTLY_ONCE)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.error("mqtt subscribe failed topic=%s rc=%s", topic, result)
        else:
            self._logger.debug("mqtt subscribed topic=%s", topic)

    def unsubscribe(self, topic: str) -> None:
        with self._lock:
            if topic == ALL_TOPICS:
                topics = sorted(self._subscribed_topics)
                self._subscribed_topics.clear()
            elif topic in self._subscribed_topics:
                topics = [topic]
                self._subscribed_topics.discard(topic)
            else:
                return
        for item in topics:
            result, _mid = self._client.unsubscribe(item)
            if result != mqtt.MQTT_ERR_SUCCESS:
                self._logger.error("mqtt unsubscribe failed topic=%s rc=%s", item, result)
            else:
                self._logger.debug("mqtt unsubscribed topic=%s", item)

    def subscribed_topics(self) -> list[str]:
        with self._lock:
            return sorted(self._subscribed_topics)

    def publish(self, topic: str, payload: str) -> bool:
        try:
            info = self._client.publish(topic, payload=payload, qos=QOS_EXACTLY_ONCE, retain=False)
        except (ValueError, OSError):
            self._logger.warning("mqtt publish failed topic=%s", topic, exc_info=True)
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._logger.warning("mqtt publish failed topic=%s rc=%s", topic, info.rc)
            return False
        return True

    def _on_connect(self, client: mqtt.Client, _userdata: object, _flags, reason_code, _properties=None) -> None:
        if reason_code.is_failure:
            self._logger.error("mqtt connect failed rc=%s", reason_code)
            return

        with self._lock:
            self._connected = True
            topics = sorted(self._subscribed_topics)

        for topic in topics:
            result, _mid = client.subscribe(topic, qos=QOS_EXACTLY_ONCE)
            if result != mqtt.MQTT_ERR_SUCCESS:
                self._logger.error("mqtt resubscribe failed topic=%s rc=%s", topic, result)

    def _on_disconnect(self, _client: mqtt.Client, _userdata: object, _flags, reason_code, _properties=None) -> None:
        with self._lock:
            self._connected = False
        self._logger.warning("mqtt disconnected rc=%s", reason_code)

    def _on_message(self, _client: mqtt.Client, _userdata: object, message: mqtt.MQTTMessage) -> None:
        callback = self._on_message_callback
        if callback is None:
            return
        topic = message.topic
        payload = message.payload.decode("utf-8", errors="replace")
        try:
            callback(topic, payload)
        except Exception:
            self._logger.exception("mqtt message callback failed topic=%s", topic)
