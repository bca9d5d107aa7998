"""
ControlEngine: rule evaluation, scheduled actions and remote commands.

Rules are evaluated against each batch of readings in strict priority order
(highest first, ties by load order). THRESHOLD and PID rules run on the
sampling tick; SCHEDULED rules run on their own cron timers.

Everything the engine acts on (ordered rules, PID arena, timer arena and the
device set they were built from) lives in one immutable ``RuleState``. A
reload builds a complete new ``RuleState`` and swaps it in with a single
assignment, so an evaluation already in progress finishes on the state it
started with.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Callable, Iterable

from edgectl.control_loops.pid_controller import PIDController
from edgectl.control_loops.rule_timers import RuleTimer, is_valid_cron
from edgectl.domain.commands import ActuatorCommand, Command, ConfigReloadCommand, EmergencyStopCommand
from edgectl.domain.control import EngineMetrics
from edgectl.domain.exceptions import DeviceIOError, EdgeControllerError
from edgectl.domain.readings import SensorReading
from edgectl.domain.rules import ControlRule, PidRule, ScheduledRule, ThresholdRule, priority_order
from edgectl.enums.control import EngineState
from edgectl.services.config_store import ConfigSnapshot

if TYPE_CHECKING:
    from edgectl.hardware.gateway import BoundedGateway
    from edgectl.hardware.mqtt.transport import MessageTransport
    from edgectl.services.config_store import ConfigurationStore
    from infrastructure.logging.audit import AuditLogger

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    """Actuator values are integers; .5 rounds up, not to even."""
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class RuleState:
    """One consistent generation of rule-derived state."""

    config: ConfigSnapshot = field(default_factory=ConfigSnapshot)
    rules: tuple[ControlRule, ...] = ()
    pid_controllers: dict[str, PIDController] = field(default_factory=dict)
    timers: dict[str, RuleTimer] = field(default_factory=dict)


class ControlEngine:
    """
    Drives actuators from rules, schedules and commands.

    Lifecycle: STOPPED -> STARTING -> RUNNING on ``start()``, RUNNING ->
    STOPPING -> STOPPED on ``stop()``. ``reload()`` keeps the engine RUNNING.
    """

    def __init__(
        self,
        config_store: "ConfigurationStore",
        gateway: "BoundedGateway",
        transport: "MessageTransport",
        audit: "AuditLogger | None" = None,
        *,
        pid_clock: Callable[[], float] = time.monotonic,
        timer_factory: Callable[..., RuleTimer] = RuleTimer,
    ):
        """
        Args:
            config_store: Source of devices and rules
            gateway: Bounded device gateway for actuator writes
            transport: Publishes actuator status after every write
            audit: Optional audit trail for actuator writes
            pid_clock: Time source handed to every PID controller
            timer_factory: Builds the cron timers for scheduled rules
        """
        self.config_store = config_store
        self.gateway = gateway
        self.transport = transport
        self.audit = audit
        self._pid_clock = pid_clock
        self._timer_factory = timer_factory

        self.state = EngineState.STOPPED
        self.metrics = EngineMetrics()
        self._rule_state = RuleState()
        self._emergency_lock = asyncio.Lock()

    # --- Introspection --------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self.state is EngineState.RUNNING

    @property
    def rule_state(self) -> RuleState:
        return self._rule_state

    @property
    def rules(self) -> tuple[ControlRule, ...]:
        """Active rules in evaluation order."""
        return self._rule_state.rules

    def get_pid(self, rule_id: str) -> PIDController | None:
        return self._rule_state.pid_controllers.get(rule_id)

    def get_timer(self, rule_id: str) -> RuleTimer | None:
        return self._rule_state.timers.get(rule_id)

    def _set_state(self, state: EngineState) -> None:
        logger.debug("Control engine %s -> %s", self.state, state)
        self.state = state

    # --- Lifecycle ------------------------------------------------------------
    async def start(self) -> None:
        if self.state is not EngineState.STOPPED:
            logger.warning("Control engine start requested while %s", self.state)
            return
        logger.info("Starting control engine...")
        self._set_state(EngineState.STARTING)
        self._install(self._build_state(self.config_store.snapshot))
        self._set_state(EngineState.RUNNING)
        logger.info(
            "Control engine started: %s rules, %s PID loops, %s schedules",
            len(self._rule_state.rules),
            len(self._rule_state.pid_controllers),
            len(self._rule_state.timers),
        )

    async def stop(self) -> None:
        if self.state is not EngineState.RUNNING:
            return
        self._set_state(EngineState.STOPPING)
        for timer in self._rule_state.timers.values():
            timer.cancel()
        self._set_state(EngineState.STOPPED)
        logger.info("Control engine stopped")

    async def reload(self) -> bool:
        """
        Re-read configuration and swap in freshly built rule state.

        Returns False (and keeps the current rules, PID state and timers) when
        the new configuration cannot be loaded.
        """
        logger.info("Reloading configuration...")
        if not self.config_store.load():
            logger.warning("Configuration reload failed; keeping current rules")
            return False
        self._install(self._build_state(self.config_store.snapshot))
        self.metrics.reloads += 1
        logger.info("Configuration reloaded successfully (%s active rules)", len(self._rule_state.rules))
        return True

    def _build_state(self, snapshot: ConfigSnapshot) -> RuleState:
        rules = tuple(priority_order(snapshot.active_rules))
        pid_controllers: dict[str, PIDController] = {}
        timers: dict[str, RuleTimer] = {}

        for rule in rules:
            if isinstance(rule, PidRule):
                cfg = rule.pid_config
                pid_controllers[rule.id] = PIDController(
                    kp=cfg.kp,
                    ki=cfg.ki,
                    kd=cfg.kd,
                    setpoint=cfg.setpoint,
                    output_min=cfg.output_min,
                    output_max=cfg.output_max,
                    clock=self._pid_clock,
                )
                logger.info("Initialized PID controller for rule: %s", rule.label)
            elif isinstance(rule, ScheduledRule):
                if not is_valid_cron(rule.schedule):
                    logger.error("Rule %s has an invalid schedule %r; not scheduled", rule.label, rule.schedule)
                    continue
                timers[rule.id] = self._timer_factory(rule.id, rule.schedule, partial(self._run_scheduled, rule))

        return RuleState(config=snapshot, rules=rules, pid_controllers=pid_controllers, timers=timers)

    def _install(self, new_state: RuleState) -> None:
        old_state = self._rule_state
        self._rule_state = new_state
        for timer in new_state.timers.values():
            timer.start()
        for timer in old_state.timers.values():
            timer.cancel()

    # --- Evaluation -----------------------------------------------------------
    async def evaluate(self, readings: Iterable[SensorReading]) -> None:
        """Run every active THRESHOLD and PID rule against one batch of readings."""
        if not self.is_running:
            return
        rule_state = self._rule_state
        latest = {reading.sensor_id: reading for reading in readings}
        self.metrics.evaluations += 1

        for rule in rule_state.rules:
            try:
                if isinstance(rule, ThresholdRule):
                    await self._evaluate_threshold(rule, latest, rule_state)
                elif isinstance(rule, PidRule):
                    await self._evaluate_pid(rule, latest, rule_state)
            except EdgeControllerError as exc:
                self.metrics.rule_failures += 1
                logger.error("Error evaluating rule %s: %s", rule.label, exc)
            except Exception as exc:
                self.metrics.rule_failures += 1
                logger.error("Unexpected error evaluating rule %s: %s", rule.label, exc, exc_info=True)

    async def _evaluate_threshold(
        self, rule: ThresholdRule, latest: dict[str, SensorReading], rule_state: RuleState
    ) -> None:
        condition = rule.conditions
        reading = latest.get(condition.sensor_id)
        if reading is None:
            return
        if not condition.operator.compare(reading.value, condition.threshold):
            return
        logger.info(
            "Threshold rule triggered: %s (%s %s %s)",
            rule.label,
            reading.value,
            condition.operator,
            condition.threshold,
        )
        await self._apply(
            rule.actions.actuator_id,
            rule.actions.target_state,
            actor=f"rule:{rule.id}",
            rule_state=rule_state,
        )

    async def _evaluate_pid(self, rule: PidRule, latest: dict[str, SensorReading], rule_state: RuleState) -> None:
        pid = rule_state.pid_controllers.get(rule.id)
        if pid is None:
            return
        reading = latest.get(rule.conditions.sensor_id)
        if reading is None:
            return
        output = pid.update(reading.value)
        value = round_half_up(output)
        logger.debug("PID rule %s: input=%s, output=%s", rule.label, reading.value, output)
        await self._apply(rule.actions.actuator_id, value, actor=f"rule:{rule.id}", rule_state=rule_state)

    async def _run_scheduled(self, rule: ScheduledRule) -> None:
        if not self.is_running:
            return
        self.metrics.scheduled_firings += 1
        try:
            await self._apply(
                rule.actions.actuator_id,
                rule.actions.target_state,
                actor=f"schedule:{rule.id}",
                rule_state=self._rule_state,
            )
        except DeviceIOError as exc:
            self.metrics.rule_failures += 1
            logger.error("Scheduled rule %s failed: %s", rule.label, exc)

    async def _apply(self, actuator_id: str, value: int, *, actor: str, rule_state: RuleState) -> bool:
        """
        Write one actuator value, audit it and publish the new status.

        Returns False for an unknown actuator. Raises ``DeviceIOError`` when
        the write fails.
        """
        actuator = rule_state.config.get_actuator(actuator_id)
        if actuator is None:
            logger.warning("Actuator %s not found (requested by %s)", actuator_id, actor)
            return False

        try:
            await self.gateway.write_actuator(actuator, value)
        except DeviceIOError as exc:
            self.metrics.record_action(False)
            if self.audit is not None:
                self.audit.log_actuator_write(actor, actuator_id, value, "failed", error=str(exc))
            raise

        self.metrics.record_action(True)
        if self.audit is not None:
            self.audit.log_actuator_write(actor, actuator_id, value, "ok")
        self.transport.publish_actuator_status(actuator_id, value)
        logger.info("%s set %s = %s", actor, actuator.display_name, value)
        return True

    # --- Commands -------------------------------------------------------------
    async def handle_command(self, command: Command) -> None:
        """Entry point for decoded inbound commands."""
        if isinstance(command, EmergencyStopCommand):
            # Honoured in every state
            await self.emergency_stop()
            return
        if not self.is_running:
            logger.warning("Ignoring %s: control engine is %s", type(command).__name__, self.state)
            return
        if isinstance(command, ActuatorCommand):
            await self.handle_actuator_command(command)
        elif isinstance(command, ConfigReloadCommand):
            await self.reload()
        else:
            logger.warning("Unhandled command type: %s", type(command).__name__)

    async def handle_actuator_command(self, command: ActuatorCommand) -> None:
        logger.info("Received actuator command: %s = %s", command.actuator_id, command.state)
        try:
            await self._apply(command.actuator_id, command.state, actor="command", rule_state=self._rule_state)
        except DeviceIOError as exc:
            logger.error("Actuator command %s = %s failed: %s", command.actuator_id, command.state, exc)

    async def emergency_stop(self) -> None:
        """
        Trip the hardware safety stop, then drive every actuator to 0 once.

        Concurrent requests queue on a lock. Evaluation and timers keep running.
        """
        async with self._emergency_lock:
            logger.warning("EMERGENCY STOP: forcing all actuators off")
            self.metrics.emergency_stops += 1
            try:
                await self.gateway.trigger_safety_stop()
            except DeviceIOError as exc:
                logger.error("Hardware safety stop failed: %s", exc)

            rule_state = self._rule_state
            for actuator in rule_state.config.actuators:
                try:
                    await self._apply(actuator.id, 0, actor="emergency_stop", rule_state=rule_state)
                except DeviceIOError as exc:
                    logger.error("Failed to turn off actuator %s: %s", actuator.display_name, exc)
