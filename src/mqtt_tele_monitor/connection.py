"""MQTT broker connection built on paho-mqtt.

Lifecycle::

    INIT → CONNECTING → (CONNACK ok) → CONNECTED → (disconnect) → RECONNECTING → CONNECTED
                      → (refused)   → RECONNECTING
    any → (stop) → SHUTTING_DOWN

paho runs its network loop on a background thread and reconnects on its
own, bounded by the configured delays.  Subscriptions are re-issued on
every successful connect.  Messages are handed to the handler attached with
:meth:`BrokerConnection.on_message`; attach it before :meth:`start` so that
nothing queued on the broker is delivered to no one.
"""

from __future__ import annotations

import enum
import logging
import ssl
import threading
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from mqtt_tele_monitor.config import BrokerConfig

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


class ConnectionState(enum.Enum):
    """States of the broker connection."""

    INIT = "INIT"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    SHUTTING_DOWN = "SHUTTING_DOWN"


class BrokerConnection:
    """Owns the paho client, its subscriptions, and the message handler.

    Parameters
    ----------
    config:
        Broker settings (host, credentials, TLS, reconnect bounds).
    client:
        Pre-built paho client; a new one is created when omitted.
    """

    def __init__(self, config: BrokerConfig, client: Optional[mqtt.Client] = None) -> None:
        self._config = config
        self._state = ConnectionState.INIT
        self._handler: Optional[MessageHandler] = None
        self._filters: list[str] = []
        self._pending: dict[int, str] = {}  # mid → topic filter
        self._lock = threading.Lock()

        self._client = client or mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            protocol=mqtt.MQTTv311,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_subscribe = self._on_subscribe
        self._client.on_message = self._on_message

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def subscriptions(self) -> list[str]:
        return list(self._filters)

    def on_message(self, handler: MessageHandler) -> None:
        """Register *handler* to receive ``(topic, payload)`` for every message."""
        self._handler = handler

    def subscribe(self, topic_filter: str) -> None:
        """Subscribe to *topic_filter* now (if connected) and after every reconnect."""
        with self._lock:
            if topic_filter not in self._filters:
                self._filters.append(topic_filter)
        if self._state is ConnectionState.CONNECTED:
            self._send_subscribe(topic_filter)

    def start(self) -> None:
        """Connect asynchronously and start paho's network thread.

        Raises
        ------
        RuntimeError
            If no message handler has been attached.
        """
        if self._handler is None:
            raise RuntimeError("Attach a message handler before starting the connection")

        cfg = self._config
        if cfg.username:
            self._client.username_pw_set(cfg.username, cfg.password or None)
        if cfg.tls.enabled:
            self._client.tls_set(
                ca_certs=cfg.tls.ca_cert or None,
                cert_reqs=ssl.CERT_NONE if cfg.tls.insecure else ssl.CERT_REQUIRED,
            )
            self._client.tls_insecure_set(cfg.tls.insecure)
        self._client.reconnect_delay_set(
            min_delay=max(1, cfg.reconnect.initial_delay_ms // 1000),
            max_delay=max(1, cfg.reconnect.max_delay_ms // 1000),
        )

        self._set_state(ConnectionState.CONNECTING)
        logger.info("Connecting to %s:%d", cfg.host, cfg.port)
        self._client.connect_async(cfg.host, cfg.port, keepalive=cfg.keepalive)
        self._client.loop_start()

    def stop(self) -> None:
        """Disconnect and stop the network thread (no reconnect)."""
        self._set_state(ConnectionState.SHUTTING_DOWN)
        self._client.disconnect()
        self._client.loop_stop()

    # ── paho callbacks (network thread) ─────────────────────────────

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            logger.error("Broker refused connection: %s", reason_code)
            self._set_state(ConnectionState.RECONNECTING)
            return
        self._set_state(ConnectionState.CONNECTED)
        for topic_filter in self.subscriptions:
            self._send_subscribe(topic_filter)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if self._state is ConnectionState.SHUTTING_DOWN:
            logger.info("Disconnected from broker")
            return
        logger.warning("Unexpected disconnect (%s), paho will reconnect", reason_code)
        self._set_state(ConnectionState.RECONNECTING)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None) -> None:
        with self._lock:
            topic_filter = self._pending.pop(mid, "?")
        for rc in reason_code_list:
            if rc.is_failure:
                logger.error("Subscription to %s rejected: %s", topic_filter, rc)
            else:
                logger.info("MQTT client subscribed to %s.", topic_filter)

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage) -> None:
        handler = self._handler
        if handler is None:
            return
        try:
            handler(msg.topic, msg.payload)
        except Exception:
            # Keep paho's network thread alive for the next message.
            logger.exception("Message handler failed for topic %s", msg.topic)

    # ── helpers ─────────────────────────────────────────────────────

    def _send_subscribe(self, topic_filter: str) -> None:
        result, mid = self._client.subscribe(topic_filter, qos=0)
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error("Subscribe request for %s failed: %s", topic_filter, mqtt.error_string(result))
            return
        with self._lock:
            self._pending[mid] = topic_filter

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        self._state = new
        logger.info("Connection state: %s → %s", old.value, new.value)
