"""Ingestion: route bus messages to the event tables.

Topic Structure:
  factory/machine/{machine_id}/{kind}

The topic selects the event shape; the payload carries the business fields
and is stored as sent, including its own ``machine_id``.
"""

import json
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional, Tuple, Union

import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .events import (
    TOPIC_MACHINE,
    TOPIC_ROOT,
    EventKind,
    ProductionEvent,
    StatusEvent,
    subscription_filters,
    utc_now,
)

logger = logging.getLogger(__name__)

_MACHINE_ID_RE = re.compile(r"-?[0-9]+")


class TopicError(ValueError):
    """Raised when a topic does not follow factory/machine/{id}/{kind}."""


def parse_topic(topic: str) -> Tuple[int, str]:
    """Split a topic into (machine_id, kind)."""
    parts = topic.split("/")
    if len(parts) < 4:
        raise TopicError(f"unknown topic format: {topic}")

    root, namespace, machine, kind = parts[:4]
    if root != TOPIC_ROOT or namespace != TOPIC_MACHINE:
        raise TopicError(f"unknown topic format: {topic}")

    if not _MACHINE_ID_RE.fullmatch(machine):
        raise TopicError(f"invalid machine id '{machine}' in topic {topic}")

    return int(machine), kind


class IngestionRouter:
    """Decodes one message and writes it to the matching table."""

    def __init__(self, store, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or utc_now

    def handle(self, topic: str, raw_payload: Union[bytes, str]) -> bool:
        """Returns True when a row was written, False when discarded."""
        try:
            machine_id, kind = parse_topic(topic)
        except TopicError as e:
            logger.error(str(e))
            return False

        if kind == EventKind.STATUS.value:
            event_cls = StatusEvent
            insert = self.store.insert_status
        elif kind == EventKind.PRODUCTION.value:
            event_cls = ProductionEvent
            insert = self.store.insert_production
        else:
            logger.error(f"unhandled event kind: {kind} (topic {topic})")
            return False

        try:
            if isinstance(raw_payload, bytes):
                raw_payload = raw_payload.decode("utf-8")
            event = event_cls.from_payload(json.loads(raw_payload))
        except (ValueError, RecursionError) as e:
            # JSONDecodeError, UnicodeDecodeError and PayloadError are ValueErrors
            logger.error(f"failed to decode {kind} payload on {topic}: {e}")
            return False

        if event.timestamp is None:
            event = _with_timestamp(event, self._clock())

        if event.machine_id != machine_id:
            logger.warning(
                f"payload machine_id {event.machine_id} differs from topic machine id "
                f"{machine_id} on {topic}; storing payload value"
            )

        try:
            insert(event)
        except Exception as e:
            logger.error(f"failed to insert {kind} event from {topic}: {e}")
            return False

        return True


def _with_timestamp(event, timestamp: datetime):
    if isinstance(event, StatusEvent):
        return StatusEvent(event.machine_id, event.status, timestamp)
    return ProductionEvent(
        event.machine_id, event.parts_produced, event.parts_scrapped, timestamp
    )


class IngestionService:
    """Subscribes to every machine topic and hands messages to the router.

    Each message is processed on a worker thread, independently of the
    others.
    """

    def __init__(
        self,
        mqtt_config: MQTTConfig,
        router: IngestionRouter,
        max_workers: int = 4,
    ):
        self.mqtt_config = mqtt_config
        self.router = router
        self.max_workers = max_workers

        self._client: Optional[mqtt.Client] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._connected = threading.Event()
        self._stats_lock = threading.Lock()

        # Stats
        self.messages_received = 0
        self.messages_stored = 0
        self.messages_discarded = 0

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def start(self) -> bool:
        """Connect and subscribe. False if the initial connection fails."""
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="ingest"
        )

        try:
            self._client = mqtt.Client(
                client_id=self.mqtt_config.client_id,
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            )
            if self.mqtt_config.username:
                self._client.username_pw_set(
                    self.mqtt_config.username, self.mqtt_config.password
                )

            self._client.on_connect = self._on_connect
            self._client.on_disconnect = self._on_disconnect
            self._client.on_message = self._on_message
            self._client.reconnect_delay_set(min_delay=1, max_delay=30)

            logger.info(
                f"Connecting to MQTT broker {self.mqtt_config.broker}:{self.mqtt_config.port}"
            )
            self._client.connect(
                self.mqtt_config.broker,
                self.mqtt_config.port,
                keepalive=self.mqtt_config.keepalive,
            )
            self._client.loop_start()
        except Exception as e:
            logger.error(f"failed to connect to mqtt: {e}")
            self._shutdown_executor()
            return False

        if not self._connected.wait(self.mqtt_config.connect_timeout):
            logger.error("failed to connect to mqtt: timed out waiting for the broker")
            self._client.loop_stop()
            self._shutdown_executor()
            return False

        logger.info("Ingestor subscribed to topics, running...")
        return True

    def stop(self) -> None:
        """Stop receiving, then let in-flight messages finish."""
        if self._client:
            self._client.loop_stop()
            self._client.disconnect()
        self._connected.clear()
        self._shutdown_executor()
        logger.info(
            f"Ingestor stopped ({self.messages_received} received, "
            f"{self.messages_stored} stored, {self.messages_discarded} discarded)"
        )

    def _shutdown_executor(self) -> None:
        if self._executor:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _subscribe(self, client) -> None:
        for topic_filter in subscription_filters():
            client.subscribe(topic_filter, qos=self.mqtt_config.qos)
            logger.info(f"Subscribed to {topic_filter}")

    def _process(self, topic: str, payload: bytes) -> bool:
        try:
            stored = self.router.handle(topic, payload)
        except Exception as e:
            logger.error(f"Error processing message on {topic}: {e}")
            stored = False
        with self._stats_lock:
            if stored:
                self.messages_stored += 1
            else:
                self.messages_discarded += 1
        return stored

    def _on_connect(self, client, userdata, flags, rc, properties=None) -> None:
        """Handle connection callback; subscriptions are renewed on every reconnect."""
        if rc == 0:
            self._connected.set()
            logger.info("Connected to MQTT broker")
            self._subscribe(client)
        else:
            logger.error(f"Connection failed with code {rc}")

    def _on_disconnect(self, client, userdata, flags, rc, properties=None) -> None:
        """Handle disconnection callback."""
        self._connected.clear()
        if rc != 0:
            logger.warning(f"MQTT connection lost (rc={rc}), reconnecting")

    def _on_message(self, client, userdata, msg) -> None:
        """Hand each message to the worker pool."""
        with self._stats_lock:
            self.messages_received += 1

        # Empty retained payloads are topic clears, not events
        if not msg.payload:
            logger.debug(f"Ignoring empty payload on {msg.topic}")
            with self._stats_lock:
                self.messages_discarded += 1
            return

        if self._executor is None:
            self._process(msg.topic, msg.payload)
            return

        try:
            self._executor.submit(self._process, msg.topic, bytes(msg.payload))
        except RuntimeError as e:
            # Pool already shut down
            logger.warning(f"Dropping message on {msg.topic}: {e}")
