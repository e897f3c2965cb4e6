"""MQTT publisher for machine events (QoS 1, retained)."""

import json
import logging
import threading
from typing import Iterable, Optional

import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .events import Event, production_topic, status_topic, topic_for

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publishes one event per call and waits for the broker's acknowledgment.

    Failures are isolated to the call that hit them: they are logged, counted
    and reported as ``False``, never raised and never retried. Reconnection
    after a lost connection is left to paho's network loop.
    """

    def __init__(self, mqtt_config: MQTTConfig, retain: bool = True):
        self.mqtt_config = mqtt_config
        self.retain = retain

        self._client: Optional[mqtt.Client] = None
        self._connected = threading.Event()
        self._dry_run = False
        self._stats_lock = threading.Lock()

        # Stats
        self._messages_published = 0
        self._messages_dropped = 0

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def messages_published(self) -> int:
        return self._messages_published

    @property
    def messages_dropped(self) -> int:
        return self._messages_dropped

    def connect(self, dry_run: bool = False) -> bool:
        """Connect to the MQTT broker."""
        self._dry_run = dry_run

        if dry_run:
            logger.info("Dry run mode - not connecting to MQTT broker")
            self._connected.set()
            return True

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

            if not self._connected.wait(self.mqtt_config.connect_timeout):
                logger.error(
                    f"Timed out after {self.mqtt_config.connect_timeout}s waiting for the broker"
                )
                self._client.loop_stop()
                return False

            return True

        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    def disconnect(self) -> None:
        """Disconnect from the MQTT broker."""
        if self._client and not self._dry_run:
            self._client.loop_stop()
            self._client.disconnect()

        self._connected.clear()
        logger.info(
            f"Disconnected from MQTT broker "
            f"({self._messages_published} published, {self._messages_dropped} dropped)"
        )

    def publish(self, topic: str, event: Event) -> bool:
        """Publish an event at ``topic``. Returns True once acknowledged."""
        payload_str = json.dumps(event.to_payload())

        if self._dry_run:
            logger.debug(f"[DRY RUN] {topic}: {payload_str}")
            self._count(published=True)
            return True

        if not self._client or not self.connected:
            logger.warning(f"Not connected - dropping message for {topic}")
            self._count(published=False)
            return False

        try:
            result = self._client.publish(
                topic, payload_str, qos=self.mqtt_config.qos, retain=self.retain
            )
            if result.rc != mqtt.MQTT_ERR_SUCCESS:
                logger.warning(f"Failed to publish to {topic}: {mqtt.error_string(result.rc)}")
                self._count(published=False)
                return False

            result.wait_for_publish(timeout=self.mqtt_config.publish_timeout)
            if not result.is_published():
                logger.warning(
                    f"No acknowledgment for {topic} within {self.mqtt_config.publish_timeout}s"
                )
                self._count(published=False)
                return False

        except Exception as e:
            logger.error(f"Error publishing to {topic}: {e}")
            self._count(published=False)
            return False

        self._count(published=True)
        return True

    def publish_event(self, event: Event) -> bool:
        """Publish an event on its own machine topic."""
        return self.publish(topic_for(event), event)

    def clear_retained_topics(self, machine_ids: Iterable[int]) -> int:
        """Clear the retained status/production messages of the given machines.

        Publishing an empty retained payload removes the broker's stored
        message, so new subscribers start from a clean slate.
        """
        topics = [
            topic
            for machine_id in machine_ids
            for topic in (status_topic(machine_id), production_topic(machine_id))
        ]

        if self._dry_run:
            logger.info(f"[DRY RUN] Would clear {len(topics)} retained topics")
            return 0

        if not self._client or not self.connected:
            logger.warning("Not connected to MQTT broker - cannot clear topics")
            return 0

        logger.info("Clearing retained machine topics...")
        cleared_count = 0
        for topic in topics:
            try:
                result = self._client.publish(
                    topic, payload=None, qos=self.mqtt_config.qos, retain=True
                )
                result.wait_for_publish(timeout=self.mqtt_config.publish_timeout)
                if result.is_published():
                    cleared_count += 1
                else:
                    logger.warning(f"No acknowledgment clearing {topic}")
            except Exception as e:
                logger.error(f"Error clearing topic {topic}: {e}")

        logger.info(f"Cleared {cleared_count} retained topics")
        return cleared_count

    def _count(self, published: bool) -> None:
        with self._stats_lock:
            if published:
                self._messages_published += 1
            else:
                self._messages_dropped += 1

    def _on_connect(self, client, userdata, flags, rc, properties=None) -> None:
        """Handle connection callback."""
        if rc == 0:
            self._connected.set()
            logger.info(
                f"Connected to MQTT broker at {self.mqtt_config.broker}:{self.mqtt_config.port}"
            )
        else:
            logger.error(f"Connection failed with code {rc}")

    def _on_disconnect(self, client, userdata, flags, rc, properties=None) -> None:
        """Handle disconnection callback."""
        self._connected.clear()
        if rc != 0:
            logger.warning(f"MQTT connection lost (rc={rc}), reconnecting")

