"""
    Reconnecting MQTT transport for the edge controller.

    Every outbound message is written to the persistent queue first and then,
    when the broker session is up, published at QoS 1. The broker's PUBACK
    flips the queue row to sent. Anything published while offline waits in
    the queue for the next flush.

    paho-mqtt runs its own network thread; its callbacks never touch controller
    state directly and only hand work to the asyncio loop with
    ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Protocol

import paho.mqtt.client as mqtt

from edgectl.domain.commands import Command, decode_command
from edgectl.domain.exceptions import TransportError
from edgectl.domain.readings import ControllerStatus, SensorReading
from edgectl.enums.control import TransportState
from edgectl.hardware.mqtt.client_factory import create_mqtt_client
from edgectl.hardware.mqtt.topics import TopicScheme
from edgectl.utils.time import iso_now, utc_now

if TYPE_CHECKING:
    from edgectl.config import ControllerConfig
    from infrastructure.database.queue_store import PersistentQueue

_mqtt_logger = logging.getLogger("edgectl.mqtt")

COMMAND_QOS = 1
PUBLISH_QOS = 1


def configure_mqtt_logger(log_path: str | Path | None) -> None:
    """Send transport logs to their own bounded file next to the main log."""
    if not log_path or any(getattr(h, "name", "") == "edgectl_mqtt" for h in _mqtt_logger.handlers):
        return
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(path),
        maxBytes=10 * 1024 * 1024,  # 10MB max per file
        backupCount=3,
        encoding="utf-8",
    )
    handler.name = "edgectl_mqtt"
    handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    _mqtt_logger.addHandler(handler)
    _mqtt_logger.setLevel(logging.INFO)
    _mqtt_logger.propagate = False  # Don't duplicate to root logger


class CommandSink(Protocol):
    """Receiver of decoded inbound commands (the control engine)."""

    async def handle_command(self, command: Command) -> None: ...


@dataclass
class HealthStatus:
    """
    Tracks the health status of the MQTT client connection.
    """

    is_connected: bool = False
    last_error: str | None = None
    last_error_time: datetime | None = None
    connection_attempts: int = 0
    successful_publishes: int = 0
    failed_publishes: int = 0
    acknowledged_publishes: int = 0
    dropped_commands: int = 0

    @property
    def success_rate(self) -> float:
        """Calculate publish success rate percentage"""
        total_publishes = self.successful_publishes + self.failed_publishes
        if total_publishes == 0:
            return 0.0
        return (self.successful_publishes / total_publishes) * 100

    def mark_connected(self):
        self.is_connected = True
        self.last_error = None
        self.last_error_time = None

    def mark_disconnected(self):
        self.is_connected = False

    def record_error(self, error: Exception | str):
        """Record a connection or operation error."""
        self.last_error = str(error)
        self.last_error_time = utc_now()

    def to_dict(self):
        """Return health status as a dictionary."""
        return {
            "is_connected": self.is_connected,
            "last_error": self.last_error,
            "last_error_time": self.last_error_time.isoformat() if self.last_error_time else None,
            "connection_attempts": self.connection_attempts,
            "successful_publishes": self.successful_publishes,
            "failed_publishes": self.failed_publishes,
            "acknowledged_publishes": self.acknowledged_publishes,
            "dropped_commands": self.dropped_commands,
            "publish_success_rate": round(self.success_rate, 2),
        }


class MessageTransport:
    """
    Store-and-forward pub/sub link to the backend.

    States: DISCONNECTED -> CONNECTING -> CONNECTED, with CONNECTED <->
    RECONNECTING while paho retries after an unexpected drop.
    """

    def __init__(
        self,
        config: "ControllerConfig",
        queue: "PersistentQueue",
        command_sink: CommandSink | None = None,
        client_factory: Callable[..., Any] = create_mqtt_client,
    ):
        """
        Args:
            config: Controller configuration (broker, topic prefix, identity)
            queue: Persistent outbound queue
            command_sink: Receiver for decoded inbound commands
            client_factory: Builds the paho client (patched in tests)
        """
        self.host = config.mqtt_host
        self.port = config.mqtt_port
        self.keepalive = config.mqtt_keepalive
        self.reconnect_seconds = config.mqtt_reconnect_seconds
        self.drain_limit = config.queue_drain_limit
        self.controller_id = config.controller_id
        self.topics = TopicScheme(config.mqtt_topic_prefix, config.controller_id)
        self.queue = queue
        self.command_sink = command_sink
        self.on_task_error: Callable[[BaseException], None] | None = None
        self.health = HealthStatus()

        self.client = client_factory(
            client_id=config.mqtt_client_id or "",
            username=config.mqtt_username,
            password=config.mqtt_password,
        )
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_publish = self._on_publish
        self.client.on_message = self._on_message

        self._state = TransportState.DISCONNECTED
        self._loop: asyncio.AbstractEventLoop | None = None
        self._network_started = False
        # paho message id -> queue entry id, awaiting PUBACK
        self._in_flight: dict[int, int] = {}
        self._tasks: set[asyncio.Task] = set()

    # --- State ----------------------------------------------------------------
    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is TransportState.CONNECTED

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def _set_state(self, state: TransportState) -> None:
        if state is not self._state:
            _mqtt_logger.info("MQTT transport %s -> %s", self._state, state)
            self._state = state

    # --- Lifecycle ------------------------------------------------------------
    async def connect(self) -> None:
        """
        Start the session in the background.

        Returns immediately; the controller keeps working offline until the
        broker answers. Raises ``TransportError`` only when the client cannot
        even be started (bad host/port configuration).
        """
        self._loop = asyncio.get_running_loop()
        self._set_state(TransportState.CONNECTING)
        self.health.connection_attempts += 1
        _mqtt_logger.info("Connecting to MQTT broker %s:%s", self.host, self.port)
        try:
            self.client.reconnect_delay_set(min_delay=self.reconnect_seconds, max_delay=self.reconnect_seconds)
            self.client.connect_async(self.host, self.port, self.keepalive)
            self.client.loop_start()
            self._network_started = True
        except Exception as exc:
            self.health.record_error(exc)
            self._set_state(TransportState.DISCONNECTED)
            _mqtt_logger.error("Error starting MQTT client: %s", exc)
            raise TransportError(
                f"Could not start MQTT client: {exc}",
                detail={"host": self.host, "port": self.port},
            ) from exc

    async def disconnect(self, timeout: float = 2.0) -> None:
        """
        Clean disconnect. Waits up to ``timeout`` for outstanding PUBACKs so a
        final status message is not replayed on the next start.
        """
        if self.is_connected and self._in_flight:
            deadline = asyncio.get_running_loop().time() + timeout
            while self._in_flight and asyncio.get_running_loop().time() < deadline:
                await asyncio.sleep(0.05)

        self._set_state(TransportState.DISCONNECTED)
        self.health.mark_disconnected()
        try:
            self.client.disconnect()
        except Exception as exc:
            self.health.record_error(exc)
            _mqtt_logger.error("Error disconnecting from MQTT broker: %s", exc)
        finally:
            if self._network_started:
                self.client.loop_stop()
                self._network_started = False

        for task in list(self._tasks):
            task.cancel()
        self._in_flight.clear()
        _mqtt_logger.info("Disconnected from MQTT broker.")

    # --- paho thread callbacks ------------------------------------------------
    def _call_in_loop(self, callback: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            _mqtt_logger.debug("Dropping MQTT callback %s: no running loop", callback.__name__)
            return
        loop.call_soon_threadsafe(callback, *args)

    def _on_connect(self, client, userdata, flags, rc) -> None:
        self._call_in_loop(self._handle_connect, rc)

    def _on_disconnect(self, client, userdata, rc) -> None:
        self._call_in_loop(self._handle_disconnect, rc)

    def _on_publish(self, client, userdata, mid) -> None:
        self._call_in_loop(self._handle_published, mid)

    def _on_message(self, client, userdata, msg) -> None:
        self._call_in_loop(self._handle_message, msg.topic, bytes(msg.payload))

    # --- Loop-side handlers ---------------------------------------------------
    def _handle_connect(self, rc: int) -> None:
        if rc != 0:
            reason = mqtt.connack_string(rc)
            self.health.record_error(reason)
            _mqtt_logger.error("MQTT broker refused connection: %s", reason)
            self._set_state(TransportState.RECONNECTING)
            return
        if self._state is TransportState.DISCONNECTED and not self._network_started:
            # Late CONNACK after disconnect() was requested
            return

        self._set_state(TransportState.CONNECTED)
        self.health.mark_connected()
        _mqtt_logger.info("Connected to MQTT broker %s:%s", self.host, self.port)

        result, _mid = self.client.subscribe(self.topics.commands, qos=COMMAND_QOS)
        if result == mqtt.MQTT_ERR_SUCCESS:
            _mqtt_logger.info("Subscribed to %s", self.topics.commands)
        else:
            _mqtt_logger.error("Failed to subscribe to %s: result code %s", self.topics.commands, result)

        self._spawn(self.flush_queue())

    def _handle_disconnect(self, rc: int) -> None:
        self.health.mark_disconnected()
        # Unacknowledged entries stay unsent and go out again on the next flush
        self._in_flight.clear()
        if self._state is TransportState.DISCONNECTED:
            return
        if rc == 0:
            self._set_state(TransportState.DISCONNECTED)
            return
        self.health.connection_attempts += 1
        self.health.record_error(f"unexpected disconnect (rc={rc})")
        _mqtt_logger.warning(
            "Lost MQTT connection (rc=%s); retrying every %ss", rc, self.reconnect_seconds
        )
        self._set_state(TransportState.RECONNECTING)

    def _handle_published(self, mid: int) -> None:
        entry_id = self._in_flight.pop(mid, None)
        if entry_id is None:
            return
        self.health.acknowledged_publishes += 1
        self.queue.mark_sent(entry_id)

    def _handle_message(self, topic: str, payload: bytes) -> None:
        name = self.topics.command_name(topic)
        if name is None:
            self.health.dropped_commands += 1
            _mqtt_logger.warning("Ignoring message on unexpected topic %s", topic)
            return
        try:
            command = decode_command(name, payload)
        except ValueError as exc:
            self.health.dropped_commands += 1
            _mqtt_logger.warning("Dropping malformed '%s' command: %s", name, exc)
            return

        if self.command_sink is None:
            _mqtt_logger.warning("No command handler registered; dropping '%s' command", name)
            return
        _mqtt_logger.info("Received '%s' command", name)
        # One task per command so an emergency stop never waits behind a slow write
        self._spawn(self.command_sink.handle_command(command))

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        _mqtt_logger.error("MQTT background task failed: %s", exc, exc_info=exc)
        if self.on_task_error is not None:
            self.on_task_error(exc)

    # --- Outbound -------------------------------------------------------------
    def _send(self, topic: str, text: str, entry_id: int | None) -> bool:
        try:
            info = self.client.publish(topic, text, qos=PUBLISH_QOS)
        except Exception as exc:
            self.health.failed_publishes += 1
            self.health.record_error(exc)
            _mqtt_logger.error("Error publishing to %s: %s", topic, exc)
            return False

        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self.health.failed_publishes += 1
            _mqtt_logger.error("Failed to publish to %s. MQTT result code: %s", topic, info.rc)
            return False

        self.health.successful_publishes += 1
        if entry_id is not None:
            self._in_flight[info.mid] = entry_id
        _mqtt_logger.debug("Published to %s (mid=%s, entry=%s)", topic, info.mid, entry_id)
        return True

    def publish(self, topic: str, payload: dict[str, Any] | str) -> int | None:
        """
        Queue a message and send it now if the session is up.

        Returns the queue entry id (``None`` if the durable write failed; the
        message is then still sent directly when connected).
        """
        text = payload if isinstance(payload, str) else json.dumps(payload)
        entry_id = self.queue.enqueue(topic, text)
        if self.is_connected:
            self._send(topic, text, entry_id)
        elif entry_id is None:
            _mqtt_logger.error("Message for %s lost: offline and queue write failed", topic)
        else:
            _mqtt_logger.debug("Offline; queued message %s for %s", entry_id, topic)
        return entry_id

    async def flush_queue(self) -> int:
        """
        Publish pending queue entries in insertion order.

        Entries already awaiting a PUBACK are skipped. Stops when nothing new
        is pending or the link drops; returns the number published.
        """
        published = 0
        cursor = 0
        while self.is_connected:
            batch = self.queue.drain(self.drain_limit, after_id=cursor)
            if not batch:
                break
            in_flight = set(self._in_flight.values())
            for entry in batch:
                cursor = entry.id
                if entry.id in in_flight:
                    continue
                if not self.is_connected or not self._send(entry.topic, entry.payload, entry.id):
                    return published
                published += 1
            # Let PUBACKs and commands through between batches
            await asyncio.sleep(0)

        if published:
            _mqtt_logger.info("Flushed %s queued messages", published)
        return published

    def publish_sensor_data(self, readings: Iterable[SensorReading]) -> int | None:
        payload = {
            "controllerId": self.controller_id,
            "readings": [reading.to_payload() for reading in readings],
            "timestamp": iso_now(),
        }
        return self.publish(self.topics.sensor_data, payload)

    def publish_actuator_status(self, actuator_id: str, state: int) -> int | None:
        payload = {"actuatorId": actuator_id, "state": state, "timestamp": iso_now()}
        return self.publish(self.topics.actuator_status(actuator_id), payload)

    def publish_heartbeat(self, status: ControllerStatus) -> int | None:
        return self.publish(self.topics.status, status.to_payload())
