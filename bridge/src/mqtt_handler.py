# CyberPower PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 MIT License
# https://github.com/mvalancy/CyberPower-PDU

"""MQTT pub/sub handler — publishes PDU session state, routes group triggers
and carries cross-bridge cycle broadcasts.

Supports multiple PDU devices on a single MQTT connection. Each device is
identified by a ``device_id`` string that forms part of the MQTT topic
hierarchy (``pdu/{device_id}/…``).  Per-device trigger callbacks are
registered via :meth:`register_device` and routed by the wildcard
subscription ``pdu/+/group/trigger``.
"""

import asyncio
import json
import logging
import time
from typing import Callable

import paho.mqtt.client as mqtt

from .config import Config
from .pdu_model import BroadcastMessage

logger = logging.getLogger(__name__)

TriggerCallback = Callable[[str], object]
BroadcastCallback = Callable[[BroadcastMessage], None]


class MQTTHandler:
    def __init__(self, config: Config):
        self.config = config
        self.device = config.device_id
        self.client_id = f"pdu-bridge-{self.device}"
        self.broadcast_topic = config.broadcast_topic
        self._loop: asyncio.AbstractEventLoop | None = None

        # Per-device group trigger callbacks: device_id -> callback(name)
        self._device_callbacks: dict[str, TriggerCallback] = {}
        # Broadcast subscribers (see MQTTBroadcastChannel)
        self._broadcast_callbacks: list[BroadcastCallback] = []

        # Connection status tracking
        self._connected: bool = False
        self._reconnect_count: int = 0
        self._last_connect_time: float | None = None
        self._last_disconnect_time: float | None = None
        self._publish_errors: int = 0
        self._total_publishes: int = 0
        self._broadcasts_received: int = 0

        # Pending publishes queued while disconnected (max 100)
        self._pending_publishes: list[tuple[str, str, bool, int]] = []
        self._max_pending = 100

        self.client = mqtt.Client(
            client_id=self.client_id,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        self.client.will_set(
            f"pdu/{self.device}/bridge/status", "offline", qos=1, retain=True
        )
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect
        # Auto-reconnect with backoff
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

    # ------------------------------------------------------------------
    # Multi-device registration
    # ------------------------------------------------------------------

    def register_device(self, device_id: str, callback: TriggerCallback):
        """Register a per-device group trigger callback.

        When a group name arrives on ``pdu/{device_id}/group/trigger``,
        *callback(name)* runs on the event loop.
        """
        self._device_callbacks[device_id] = callback
        logger.info("Registered device %s for MQTT group triggers", device_id)

    def add_broadcast_listener(self, callback: BroadcastCallback) -> Callable[[], None]:
        self._broadcast_callbacks.append(callback)

        def _remove():
            if callback in self._broadcast_callbacks:
                self._broadcast_callbacks.remove(callback)
        return _remove

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self):
        logger.info("Connecting to MQTT broker %s:%d", self.config.mqtt_broker, self.config.mqtt_port)
        self._loop = asyncio.get_running_loop()

        # MQTT authentication
        if self.config.mqtt_username:
            self.client.username_pw_set(
                self.config.mqtt_username, self.config.mqtt_password
            )
            logger.info("MQTT authentication configured for user %s", self.config.mqtt_username)

        try:
            self.client.connect(self.config.mqtt_broker, self.config.mqtt_port, keepalive=60)
            self.client.loop_start()
        except Exception:
            logger.exception("Failed to connect to MQTT broker")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        logger.info("MQTT connected (rc=%s)", reason_code)
        if self._last_connect_time is not None:
            self._reconnect_count += 1
            logger.info("MQTT reconnected (count=%d)", self._reconnect_count)
        self._connected = True
        self._last_connect_time = time.time()

        # Publish bridge online status for every registered device
        for dev_id in {self.device, *self._device_callbacks}:
            client.publish(
                f"pdu/{dev_id}/bridge/status", "online", qos=1, retain=True
            )

        for topic in ("pdu/+/group/trigger", self.broadcast_topic):
            client.subscribe(topic, qos=1)
            logger.info("Subscribed to %s", topic)

        # Drain pending publishes queued during disconnect
        if self._pending_publishes:
            drained = len(self._pending_publishes)
            for topic, payload, retain, qos in self._pending_publishes:
                try:
                    client.publish(topic, payload, qos=qos, retain=retain)
                except Exception:
                    logger.debug("Dropped pending publish to %s", topic, exc_info=True)
            self._pending_publishes.clear()
            logger.info("Drained %d pending publishes after reconnect", drained)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning("MQTT disconnected (rc=%s)", reason_code)
        self._connected = False
        self._last_disconnect_time = time.time()

    def get_status(self) -> dict:
        """Return MQTT connection health info."""
        return {
            "connected": self._connected,
            "reconnect_count": self._reconnect_count,
            "last_connect": self._last_connect_time,
            "last_disconnect": self._last_disconnect_time,
            "broker": self.config.mqtt_broker,
            "port": self.config.mqtt_port,
            "publish_errors": self._publish_errors,
            "total_publishes": self._total_publishes,
            "broadcasts_received": self._broadcasts_received,
            "registered_devices": list(self._device_callbacks.keys()),
        }

    def _publish(self, topic: str, payload, retain: bool = False, qos: int = 0):
        """Publish with error tracking. Queues critical messages on failure."""
        self._total_publishes += 1

        try:
            info = self.client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                self._publish_errors += 1
                if self._publish_errors % 100 == 1:
                    logger.warning("MQTT publish failed (rc=%s, topic=%s)", info.rc, topic)
                # Queue retained messages for retry on reconnect
                if retain and len(self._pending_publishes) < self._max_pending:
                    self._pending_publishes.append((topic, str(payload), retain, qos))
        except Exception:
            self._publish_errors += 1
            if self._publish_errors % 100 == 1:
                logger.exception("MQTT publish exception (topic=%s)", topic)
            # Queue retained messages for retry on reconnect
            if retain and len(self._pending_publishes) < self._max_pending:
                self._pending_publishes.append((topic, str(payload), retain, qos))

    # ------------------------------------------------------------------
    # Incoming message routing (paho network thread)
    # ------------------------------------------------------------------

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage):
        try:
            if msg.topic == self.broadcast_topic:
                self._handle_broadcast(msg.payload)
                return

            # Parse topic: pdu/{device_id}/group/trigger
            parts = msg.topic.split("/")
            if len(parts) == 4 and parts[0] == "pdu" and parts[2] == "group" and parts[3] == "trigger":
                device_id = parts[1]
                name = msg.payload.decode("utf-8").strip()
                logger.info("Group trigger received: device=%s group=%s", device_id, name)

                if not self._loop:
                    logger.warning("Event loop not set — cannot dispatch trigger")
                    return

                cb = self._device_callbacks.get(device_id)
                if cb:
                    self._loop.call_soon_threadsafe(cb, name)
                    return
                logger.warning("No callback registered for device %s", device_id)
        except Exception:
            logger.exception("Error handling MQTT message on %s", msg.topic)

    def _handle_broadcast(self, payload: bytes):
        data = json.loads(payload.decode("utf-8"))
        if data.get("bridge") == self.client_id:
            return  # our own publish, already delivered locally
        message = BroadcastMessage.from_dict(data)
        self._broadcasts_received += 1
        logger.info("Broadcast received from %s: %s%s", message.origin,
                    message.group_name, " (cancelled)" if message.cancelled else "")
        if self._loop:
            self._loop.call_soon_threadsafe(self.deliver_broadcast, message)

    def deliver_broadcast(self, message: BroadcastMessage):
        """Fan a broadcast out to local subscribers (event loop thread)."""
        for cb in list(self._broadcast_callbacks):
            try:
                cb(message)
            except Exception:
                logger.exception("Broadcast subscriber failed for %r", message.group_name)

    # ------------------------------------------------------------------
    # Publishing: all methods accept optional device_id
    # ------------------------------------------------------------------

    def publish_broadcast(self, message: BroadcastMessage):
        payload = dict(message.to_dict(), bridge=self.client_id)
        self._publish(self.broadcast_topic, json.dumps(payload), qos=1)

    def publish_session_state(self, snapshot: dict, device_id: str | None = None):
        """Publish a session snapshot (retained) to ``pdu/{device_id}/state``."""
        dev = device_id or self.device
        prefix = f"pdu/{dev}"
        state = dict(snapshot, timestamp=time.time())
        self._publish(f"{prefix}/state", json.dumps(state), retain=True)
        self._publish(f"{prefix}/status", str(snapshot.get("status", "")), retain=True)

    def publish_trigger_response(self, name: str, success: bool,
                                 error: str | None = None, device_id: str | None = None):
        dev = device_id or self.device
        resp = {
            "success": success,
            "group": name,
            "error": error,
            "ts": time.time(),
        }
        self._publish(f"pdu/{dev}/group/trigger/response", json.dumps(resp), qos=1)

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect(self):
        """Publish offline status for all registered devices and disconnect."""
        for dev_id in {self.device, *self._device_callbacks}:
            self._publish(
                f"pdu/{dev_id}/bridge/status", "offline", qos=1, retain=True
            )

        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception:
            logger.debug("Error during MQTT disconnect", exc_info=True)


class MQTTBroadcastChannel:
    """Broadcast channel shared with other bridges through the MQTT broker.

    Local subscribers get a published message immediately; peers on other
    bridges get it through the broker.
    """

    def __init__(self, handler: MQTTHandler):
        self._handler = handler
        self.published = 0

    def subscribe(self, callback: BroadcastCallback) -> Callable[[], None]:
        return self._handler.add_broadcast_listener(callback)

    def publish(self, message: BroadcastMessage) -> None:
        self.published += 1
        self._handler.deliver_broadcast(message)
        self._handler.publish_broadcast(message)
