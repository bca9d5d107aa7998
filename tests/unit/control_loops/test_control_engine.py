import asyncio
from collections import Counter
from unittest.mock import Mock

from edgectl.control_loops.control_engine import ControlEngine, round_half_up
from edgectl.domain.commands import ActuatorCommand, ConfigReloadCommand, EmergencyStopCommand
from edgectl.domain.readings import SensorReading
from edgectl.enums.control import EngineState
from edgectl.hardware.gateway import BoundedGateway, SimulatedGateway
from edgectl.services.config_store import ConfigurationStore


class RecordingTransport:
    def __init__(self):
        self.statuses = []

    def publish_actuator_status(self, actuator_id, state):
        self.statuses.append((actuator_id, state))
        return len(self.statuses)


class FakeTimer:
    """Cron timer stand-in; the test fires the action by hand."""

    instances = []

    def __init__(self, rule_id, expression, action):
        self.rule_id = rule_id
        self.expression = expression
        self.action = action
        self.started = False
        self.cancelled = False
        FakeTimer.instances.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


class SlowGateway(SimulatedGateway):
    """Yields on every write so concurrent tasks interleave."""

    async def write_actuator(self, descriptor, value):
        await asyncio.sleep(0.001)
        await super().write_actuator(descriptor, value)


def threshold_rule(rule_id, priority, sensor="temp_1", op=">", threshold=30, actuator="fan_1", target=1, **extra):
    rule = {
        "id": rule_id,
        "name": rule_id,
        "type": "THRESHOLD",
        "priority": priority,
        "conditions": {"sensorId": sensor, "operator": op, "threshold": threshold},
        "actions": {"actuatorId": actuator, "targetState": target},
    }
    rule.update(extra)
    return rule


def scheduled_rule(rule_id, schedule="0 6 * * *", actuator="pump_1", target=1):
    return {
        "id": rule_id,
        "name": rule_id,
        "type": "SCHEDULED",
        "schedule": schedule,
        "actions": {"actuatorId": actuator, "targetState": target},
    }


def reading(sensor_id, value):
    return SensorReading(sensor_id=sensor_id, value=value, timestamp="2024-01-01T00:00:00Z", controller_id="pi-test")


def build_engine(config_dir, gateway=None):
    FakeTimer.instances = []
    store = ConfigurationStore(config_dir)
    store.load()
    raw_gateway = gateway or SimulatedGateway()
    transport = RecordingTransport()
    audit = Mock()
    engine = ControlEngine(
        store,
        BoundedGateway(raw_gateway, timeout_seconds=1.0),
        transport,
        audit,
        pid_clock=lambda: 0.0,
        timer_factory=FakeTimer,
    )
    return engine, raw_gateway, transport, audit


def test_rules_are_ordered_by_priority_then_load_order(write_config):
    config_dir = write_config(
        rules=[
            threshold_rule("low", 1),
            threshold_rule("mid-a", 5),
            threshold_rule("high", 10),
            threshold_rule("mid-b", 5),
        ]
    )

    async def run():
        engine, *_ = build_engine(config_dir)
        await engine.start()
        return [rule.id for rule in engine.rules]

    assert asyncio.run(run()) == ["high", "mid-a", "mid-b", "low"]


def test_threshold_rule_turns_fan_on_above_limit(write_config):
    config_dir = write_config(rules=[threshold_rule("cool", 10)])

    async def run():
        engine, gateway, transport, audit = build_engine(config_dir)
        await engine.start()
        await engine.evaluate([reading("temp_1", 32.0)])
        return engine, gateway, transport, audit

    engine, gateway, transport, audit = asyncio.run(run())

    assert gateway.writes == [("fan_1", 1)]
    assert transport.statuses == [("fan_1", 1)]
    audit.log_actuator_write.assert_called_once_with("rule:cool", "fan_1", 1, "ok")
    assert engine.metrics.successful_actions == 1


def test_threshold_rule_does_nothing_below_limit(write_config):
    config_dir = write_config(rules=[threshold_rule("cool", 10)])

    async def run():
        engine, gateway, transport, _ = build_engine(config_dir)
        await engine.start()
        await engine.evaluate([reading("temp_1", 25.0)])
        await engine.evaluate([reading("hum_1", 99.0)])
        return gateway, transport

    gateway, transport = asyncio.run(run())

    assert gateway.writes == []
    assert transport.statuses == []


def test_lower_priority_rule_writes_last(write_config):
    config_dir = write_config(
        rules=[
            threshold_rule("low", 1, target=0),
            threshold_rule("high", 10, target=1),
        ]
    )

    async def run():
        engine, gateway, *_ = build_engine(config_dir)
        await engine.start()
        await engine.evaluate([reading("temp_1", 35.0)])
        return gateway

    gateway = asyncio.run(run())

    assert gateway.writes == [("fan_1", 1), ("fan_1", 0)]
    assert gateway.actuator_states["fan_1"] == 0


def test_inactive_rules_are_skipped(write_config):
    config_dir = write_config(rules=[threshold_rule("off", 10, isActive=False)])

    async def run():
        engine, gateway, *_ = build_engine(config_dir)
        await engine.start()
        await engine.evaluate([reading("temp_1", 35.0)])
        return engine, gateway

    engine, gateway = asyncio.run(run())

    assert engine.rules == ()
    assert gateway.writes == []


def test_pid_rule_writes_rounded_output(write_config):
    config_dir = write_config(
        rules=[
            {
                "id": "hum-pid",
                "type": "PID",
                "priority": 1,
                "conditions": {"sensorId": "hum_1"},
                "actions": {"actuatorId": "valve_1"},
                "pidConfig": {"kp": 2.5, "setpoint": 70, "outputMin": 0, "outputMax": 100},
            }
        ]
    )

    async def run():
        engine, gateway, transport, _ = build_engine(config_dir)
        await engine.start()
        await engine.evaluate([reading("hum_1", 65.0)])
        return engine, gateway, transport

    engine, gateway, transport = asyncio.run(run())

    # 2.5 * 5 = 12.5 -> 13
    assert gateway.writes == [("valve_1", 13)]
    assert transport.statuses == [("valve_1", 13)]
    assert engine.get_pid("hum-pid") is not None


def test_round_half_up():
    assert round_half_up(12.5) == 13
    assert round_half_up(0.5) == 1
    assert round_half_up(-0.5) == 0
    assert round_half_up(2.49) == 2


def test_failing_rule_does_not_stop_other_rules(write_config):
    config_dir = write_config(
        rules=[
            threshold_rule("broken", 10, actuator="fan_1"),
            threshold_rule("works", 1, actuator="pump_1"),
        ]
    )

    async def run():
        engine, gateway, _, audit = build_engine(config_dir)
        gateway.failing.add("fan_1")
        await engine.start()
        await engine.evaluate([reading("temp_1", 35.0)])
        return engine, gateway, audit

    engine, gateway, audit = asyncio.run(run())

    assert gateway.writes == [("pump_1", 1)]
    assert engine.metrics.rule_failures == 1
    assert engine.metrics.failed_actions == 1
    outcomes = [call.args[3] for call in audit.log_actuator_write.call_args_list]
    assert outcomes == ["failed", "ok"]


def test_unknown_actuator_is_skipped(write_config):
    config_dir = write_config(rules=[threshold_rule("ghost", 10, actuator="heater_9")])

    async def run():
        engine, gateway, *_ = build_engine(config_dir)
        await engine.start()
        await engine.evaluate([reading("temp_1", 35.0)])
        return engine, gateway

    engine, gateway = asyncio.run(run())

    assert gateway.writes == []
    assert engine.metrics.rule_failures == 0


def test_evaluate_is_noop_until_started(write_config):
    config_dir = write_config(rules=[threshold_rule("cool", 10)])

    async def run():
        engine, gateway, *_ = build_engine(config_dir)
        await engine.evaluate([reading("temp_1", 35.0)])
        return engine, gateway

    engine, gateway = asyncio.run(run())

    assert engine.state is EngineState.STOPPED
    assert gateway.writes == []


def test_manual_actuator_command(write_config):
    config_dir = write_config()

    async def run():
        engine, gateway, transport, audit = build_engine(config_dir)
        await engine.start()
        await engine.handle_command(ActuatorCommand(actuatorId="pump_1", state=1))
        await engine.handle_command(ActuatorCommand(actuatorId="missing", state=1))
        return gateway, transport, audit

    gateway, transport, audit = asyncio.run(run())

    assert gateway.writes == [("pump_1", 1)]
    assert transport.statuses == [("pump_1", 1)]
    audit.log_actuator_write.assert_called_once_with("command", "pump_1", 1, "ok")


def test_commands_other_than_emergency_stop_ignored_when_stopped(write_config):
    config_dir = write_config()

    async def run():
        engine, gateway, *_ = build_engine(config_dir)
        await engine.handle_command(ActuatorCommand(actuatorId="pump_1", state=1))
        await engine.handle_command(EmergencyStopCommand())
        return gateway

    gateway = asyncio.run(run())

    assert ("pump_1", 1) not in gateway.writes
    assert gateway.safety_stops == 1


def test_emergency_stop_turns_each_actuator_off_once_during_evaluate(write_config):
    config_dir = write_config(
        rules=[
            threshold_rule("fan", 10, actuator="fan_1"),
            threshold_rule("pump", 5, actuator="pump_1"),
            threshold_rule("valve", 1, actuator="valve_1"),
        ]
    )

    async def run():
        engine, gateway, transport, _ = build_engine(config_dir, gateway=SlowGateway())
        await engine.start()
        await asyncio.gather(
            engine.evaluate([reading("temp_1", 40.0)]),
            engine.handle_command(EmergencyStopCommand(timestamp="2024-01-01T00:00:00Z")),
        )
        return engine, gateway, transport

    engine, gateway, transport = asyncio.run(run())

    offs = Counter(actuator for actuator, value in gateway.writes if value == 0)
    assert offs == {"fan_1": 1, "pump_1": 1, "valve_1": 1}
    assert gateway.safety_stops == 1
    assert engine.metrics.emergency_stops == 1
    assert {("fan_1", 0), ("pump_1", 0), ("valve_1", 0)} <= set(transport.statuses)


def test_emergency_stop_continues_when_safety_stop_and_write_fail(write_config):
    config_dir = write_config()

    class BrokenSafety(SimulatedGateway):
        async def trigger_safety_stop(self):
            raise OSError("relay board offline")

    async def run():
        gateway = BrokenSafety()
        gateway.failing.add("fan_1")
        engine, *_ = build_engine(config_dir, gateway=gateway)
        await engine.start()
        await engine.emergency_stop()
        return gateway

    gateway = asyncio.run(run())

    assert gateway.writes == [("pump_1", 0), ("valve_1", 0)]


def test_scheduled_rules_get_timers_and_fire_actions(write_config):
    config_dir = write_config(rules=[scheduled_rule("morning"), scheduled_rule("bad", schedule="every day")])

    async def run():
        engine, gateway, transport, audit = build_engine(config_dir)
        await engine.start()
        timer = engine.get_timer("morning")
        assert timer is not None and timer.started
        assert engine.get_timer("bad") is None
        await timer.action()
        return engine, gateway, audit

    engine, gateway, audit = asyncio.run(run())

    assert gateway.writes == [("pump_1", 1)]
    assert engine.metrics.scheduled_firings == 1
    audit.log_actuator_write.assert_called_once_with("schedule:morning", "pump_1", 1, "ok")


def test_reload_replaces_rules_and_tears_down_old_timers(write_config):
    config_dir = write_config(rules=[scheduled_rule("s1"), scheduled_rule("s2")])

    async def run():
        engine, *_ = build_engine(config_dir)
        await engine.start()
        old_timers = dict(engine.rule_state.timers)

        write_config(rules=[scheduled_rule("s2", schedule="30 7 * * *"), scheduled_rule("s3")])
        await engine.handle_command(ConfigReloadCommand())
        return engine, old_timers

    engine, old_timers = asyncio.run(run())

    assert all(timer.cancelled for timer in old_timers.values())
    assert engine.get_timer("s1") is None
    assert engine.get_timer("s2").expression == "30 7 * * *"
    assert engine.get_timer("s2").started
    assert engine.get_timer("s3").started
    assert engine.metrics.reloads == 1
    assert engine.state is EngineState.RUNNING


def test_reload_with_broken_file_keeps_current_rules(write_config, config_dir):
    config_dir = write_config(rules=[scheduled_rule("s1"), threshold_rule("cool", 10)])

    async def run():
        engine, *_ = build_engine(config_dir)
        await engine.start()
        before = engine.rule_state
        (config_dir / "control-rules.json").write_text("{not json", encoding="utf-8")
        reloaded = await engine.reload()
        return engine, before, reloaded

    engine, before, reloaded = asyncio.run(run())

    assert reloaded is False
    assert engine.rule_state is before
    assert not engine.get_timer("s1").cancelled


def test_in_flight_evaluation_finishes_on_its_snapshot(write_config):
    config_dir = write_config(
        rules=[
            threshold_rule("fan", 10, actuator="fan_1"),
            threshold_rule("pump", 1, actuator="pump_1"),
        ]
    )

    async def run():
        engine, gateway, *_ = build_engine(config_dir, gateway=SlowGateway())
        await engine.start()

        in_flight = asyncio.create_task(engine.evaluate([reading("temp_1", 35.0)]))
        await asyncio.sleep(0)  # evaluation is now waiting on the first write
        write_config(rules=[])
        await engine.reload()
        await in_flight

        writes_during = list(gateway.writes)
        await engine.evaluate([reading("temp_1", 35.0)])
        return writes_during, gateway.writes

    writes_during, writes_after = asyncio.run(run())

    assert writes_during == [("fan_1", 1), ("pump_1", 1)]
    assert writes_after == writes_during


def test_stop_cancels_timers(write_config):
    config_dir = write_config(rules=[scheduled_rule("s1")])

    async def run():
        engine, *_ = build_engine(config_dir)
        await engine.start()
        timer = engine.get_timer("s1")
        await engine.stop()
        return engine, timer

    engine, timer = asyncio.run(run())

    assert timer.cancelled
    assert engine.state is EngineState.STOPPED
