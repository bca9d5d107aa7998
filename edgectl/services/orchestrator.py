"""
Orchestrator
============

Wires the controller together, runs the periodic loops and owns shutdown.

Startup order: configuration, persistent queue, device gateway, transport,
control engine, safety nets, loops. Shutdown runs at most once no matter how
many triggers fire (signal, loop exception handler, failed loop task, crashed
network thread) and always tries to leave every actuator off.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Coroutine

from edgectl.config import ControllerConfig
from edgectl.control_loops.control_engine import ControlEngine
from edgectl.domain.exceptions import DeviceIOError, FatalError, TransportError
from edgectl.domain.readings import ControllerStatus, SensorReading
from edgectl.enums.control import ControllerStatusLevel
from edgectl.hardware.gateway import BoundedGateway, DeviceGateway, build_gateway
from edgectl.hardware.mqtt.client_factory import create_mqtt_client
from edgectl.hardware.mqtt.transport import MessageTransport, configure_mqtt_logger
from edgectl.services.config_store import ConfigurationStore
from edgectl.utils.time import iso_now
from infrastructure.database.queue_store import PersistentQueue
from infrastructure.logging.audit import AuditLogger

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1

# Seconds to wait for cancelled loops before cancelling them again
LOOP_STOP_TIMEOUT = 2.0
LOOP_CANCEL_ATTEMPTS = 3

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Orchestrator:
    """Owns every component and the loops that drive them."""

    def __init__(
        self,
        config: ControllerConfig,
        *,
        gateway: DeviceGateway | None = None,
        client_factory: Callable[..., Any] = create_mqtt_client,
        install_signal_handlers: bool = True,
    ):
        """
        Args:
            config: Runtime configuration
            gateway: Raw device gateway; built from ``config.gateway`` when omitted
            client_factory: paho client builder (patched in tests)
            install_signal_handlers: Route SIGINT/SIGTERM into shutdown
        """
        self.config = config
        self.config_store = ConfigurationStore(config.config_dir)
        self.queue = PersistentQueue(config.database_path)
        self.audit = AuditLogger(config.audit_log_path, level=config.log_level)
        self.gateway = BoundedGateway(gateway or build_gateway(config), config.device_io_timeout_seconds)
        self.transport = MessageTransport(config, self.queue, client_factory=client_factory)
        self.engine = ControlEngine(self.config_store, self.gateway, self.transport, self.audit)
        self.transport.command_sink = self.engine
        self.transport.on_task_error = self._on_background_error

        self.exit_code = EXIT_OK
        self._install_signal_handlers = install_signal_handlers
        self.loop_stop_timeout = LOOP_STOP_TIMEOUT
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: list[asyncio.Task] = []
        self._shutdown_started = False
        self._shutdown_task: asyncio.Task | None = None
        self._stopped: asyncio.Event | None = None
        self._previous_excepthook: Callable[..., Any] | None = None
        self._signals_installed: list[signal.Signals] = []

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_started

    # --- Startup --------------------------------------------------------------
    async def start(self) -> None:
        """Bring every component up. Raises on a fatal startup failure."""
        self._loop = asyncio.get_running_loop()
        self._stopped = asyncio.Event()
        logger.info("Starting edge controller %s (%s)", self.config.controller_id, self.config.controller_name)

        self.config_store.load()
        self.queue.initialize()

        try:
            await self.gateway.initialize()
        except DeviceIOError as exc:
            raise FatalError(f"Device gateway failed to initialize: {exc}", detail=exc.detail) from exc

        if self.config.log_file:
            log_path = Path(self.config.log_file)
            configure_mqtt_logger(log_path.with_name(f"{log_path.stem}_mqtt.log"))
        try:
            await self.transport.connect()
        except TransportError as exc:
            logger.error("MQTT unavailable, continuing offline: %s", exc)

        await self.engine.start()
        self._install_safety_nets()

        self._spawn(self._sampling_loop(), "sampling")
        self._spawn(self._heartbeat_loop(), "heartbeat")
        self._spawn(self._maintenance_loop(), "maintenance")
        logger.info("Edge controller started")

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        task.add_done_callback(self._on_task_done)
        self._tasks.append(task)
        return task

    # --- Loops ----------------------------------------------------------------
    async def sample_once(self) -> list[SensorReading]:
        """Read every sensor, log and publish the batch, then evaluate rules."""
        readings: list[SensorReading] = []
        for sensor in self.config_store.sensors:
            try:
                value = await self.gateway.read_sensor(sensor)
            except DeviceIOError as exc:
                logger.warning("Failed to read sensor %s: %s", sensor.display_name, exc)
                continue
            reading = SensorReading(
                sensor_id=sensor.id,
                value=value,
                timestamp=iso_now(),
                controller_id=self.config.controller_id,
            )
            self.queue.append_reading(reading)
            readings.append(reading)

        if readings:
            self.transport.publish_sensor_data(readings)
            await self.engine.evaluate(readings)
        return readings

    def publish_status(self, level: ControllerStatusLevel) -> None:
        status = ControllerStatus.now(
            self.config.controller_id,
            self.config.controller_name,
            level,
            farm_id=self.config.farm_id,
            polyhouse_id=self.config.polyhouse_id,
        )
        self.transport.publish_heartbeat(status)

    async def run_maintenance(self) -> dict[str, int]:
        pruned = self.queue.prune(timedelta(days=self.config.queue_retention_days))
        pruned_readings = self.queue.prune_readings(timedelta(days=self.config.audit_retention_days))
        flushed = await self.transport.flush_queue() if self.transport.is_connected else 0
        return {"pruned": pruned, "pruned_readings": pruned_readings, "flushed": flushed}

    async def _sampling_loop(self) -> None:
        while not self._shutdown_started:
            await self.sample_once()
            if self._shutdown_started:
                break
            await asyncio.sleep(self.config.sensor_interval_seconds)

    async def _heartbeat_loop(self) -> None:
        while not self._shutdown_started:
            self.publish_status(ControllerStatusLevel.ONLINE)
            await asyncio.sleep(self.config.heartbeat_interval_seconds)

    async def _maintenance_loop(self) -> None:
        while not self._shutdown_started:
            await asyncio.sleep(self.config.maintenance_interval_seconds)
            if self._shutdown_started:
                break
            await self.run_maintenance()

    # --- Safety nets ----------------------------------------------------------
    def _install_safety_nets(self) -> None:
        loop = self._loop
        assert loop is not None
        if self._install_signal_handlers:
            for sig in _SHUTDOWN_SIGNALS:
                try:
                    loop.add_signal_handler(sig, self.request_shutdown, f"signal {sig.name}", EXIT_OK)
                    self._signals_installed.append(sig)
                except (NotImplementedError, RuntimeError, ValueError) as exc:
                    logger.debug("Could not install handler for %s: %s", sig.name, exc)

        loop.set_exception_handler(self._handle_loop_exception)
        self._previous_excepthook = threading.excepthook
        threading.excepthook = self._handle_thread_exception

    def _remove_safety_nets(self) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            for sig in self._signals_installed:
                loop.remove_signal_handler(sig)
            loop.set_exception_handler(None)
        self._signals_installed.clear()
        if self._previous_excepthook is not None:
            threading.excepthook = self._previous_excepthook
            self._previous_excepthook = None

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or self._shutdown_started:
            return
        exc = task.exception()
        if exc is not None:
            logger.critical("Loop '%s' crashed: %s", task.get_name(), exc, exc_info=exc)
        else:
            logger.critical("Loop '%s' exited unexpectedly", task.get_name())
        self.request_shutdown(f"loop '{task.get_name()}' stopped", EXIT_FATAL)

    def _on_background_error(self, exc: BaseException) -> None:
        self.request_shutdown(f"command handler failed: {exc}", EXIT_FATAL)

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        message = context.get("message", "unhandled exception")
        logger.critical("Unhandled event loop error: %s", message, exc_info=context.get("exception"))
        self.request_shutdown(f"event loop error: {message}", EXIT_FATAL)

    def _handle_thread_exception(self, args: threading.ExceptHookArgs) -> None:
        thread_name = args.thread.name if args.thread is not None else "unknown"
        logger.critical(
            "Thread %s crashed: %s",
            thread_name,
            args.exc_value,
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self.request_shutdown, f"thread {thread_name} crashed", EXIT_FATAL)

    # --- Shutdown -------------------------------------------------------------
    def request_shutdown(self, reason: str, exit_code: int = EXIT_OK) -> None:
        """Schedule ``shutdown`` from synchronous callbacks. Safe to call repeatedly."""
        if self._shutdown_started or self._shutdown_task is not None:
            return
        loop = self._loop or asyncio.get_running_loop()
        self._shutdown_task = loop.create_task(self.shutdown(reason, exit_code), name="shutdown")

    async def shutdown(self, reason: str = "requested", exit_code: int = EXIT_OK) -> None:
        """Stop everything and force actuators off. Only the first call does work."""
        if self._shutdown_started:
            return
        self._shutdown_started = True
        self.exit_code = exit_code
        logger.warning("Shutting down controller: %s", reason)

        # Inbound commands are ignored from here on
        self.transport.command_sink = None

        current = asyncio.current_task()
        loops = [task for task in self._tasks if task is not current and not task.done()]
        if loops:
            await self._stop_loops(loops)

        await self._guarded("stop control engine", self.engine.stop())
        await self._force_actuators_off()

        try:
            self.publish_status(ControllerStatusLevel.OFFLINE)
        except Exception as exc:
            logger.error("Failed to publish OFFLINE status: %s", exc)

        await self._guarded("disconnect MQTT", self.transport.disconnect())
        await self._guarded("close device gateway", self.gateway.close())

        self.queue.close()
        self.audit.close()
        self._remove_safety_nets()
        logger.info("Controller shutdown complete")
        if self._stopped is not None:
            self._stopped.set()

    async def _stop_loops(self, loops: list[asyncio.Task]) -> None:
        """
        Cancel the loop tasks and wait a bounded time for them to exit.

        A cancel delivered while a bounded device call is completing can be
        lost (``asyncio.wait_for`` before Python 3.12), so stragglers are
        cancelled again. Shutdown carries on even if a task never exits.
        """
        pending = set(loops)
        for _attempt in range(LOOP_CANCEL_ATTEMPTS):
            for task in pending:
                task.cancel()
            done, pending = await asyncio.wait(pending, timeout=self.loop_stop_timeout)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error("Loop '%s' failed while stopping: %s", task.get_name(), task.exception())
            if not pending:
                return
        logger.error(
            "Loops still running after shutdown request: %s",
            ", ".join(sorted(task.get_name() for task in pending)),
        )

    async def _guarded(self, step: str, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except Exception as exc:
            logger.error("Shutdown step '%s' failed: %s", step, exc)

    async def _force_actuators_off(self) -> None:
        for actuator in self.config_store.actuators:
            try:
                await self.gateway.write_actuator(actuator, 0)
            except Exception as exc:
                self.audit.log_actuator_write("shutdown", actuator.id, 0, "failed", error=str(exc))
                logger.error("Failed to turn off actuator %s during shutdown: %s", actuator.display_name, exc)
                continue
            self.audit.log_actuator_write("shutdown", actuator.id, 0, "ok")
            self.transport.publish_actuator_status(actuator.id, 0)

    # --- Entry point ----------------------------------------------------------
    async def run(self) -> int:
        """Start, wait for shutdown, return the process exit code."""
        try:
            await self.start()
        except Exception as exc:
            logger.critical("Controller failed to start: %s", exc, exc_info=not isinstance(exc, FatalError))
            await self.shutdown("startup failure", EXIT_FATAL)
            return self.exit_code

        assert self._stopped is not None
        await self._stopped.wait()
        return self.exit_code
