from __future__ import annotations

import argparse
import asyncio
import json
import logging
from datetime import timedelta

from edgectl.config import ControllerConfig, load_config, setup_logging, validate_config
from edgectl.domain.exceptions import ConfigError, StorageError
from edgectl.services.config_store import ConfigurationStore, load_snapshot
from infrastructure.database.queue_store import PersistentQueue

logger = logging.getLogger(__name__)


def _run(config: ControllerConfig) -> int:
    from edgectl.services.orchestrator import Orchestrator

    logger.info("Controller running (press Ctrl+C to stop)")
    return asyncio.run(Orchestrator(config).run())


def _check_config(config: ControllerConfig) -> int:
    problems = validate_config(config)
    for problem in problems:
        print(f"warning: {problem}")
    try:
        store = ConfigurationStore(config.config_dir)
        snapshot = load_snapshot(store.devices_path, store.rules_path)
    except ConfigError as e:
        print(f"error: {e}")
        return 2

    print(json.dumps(snapshot.summary(), indent=2))
    for rule in snapshot.rules:
        state = "active" if rule.is_active else "inactive"
        print(f"  [{rule.priority:>4}] {rule.kind:<15} {rule.id} ({rule.label}) {state}")
    return 0


def _open_queue(config: ControllerConfig) -> PersistentQueue | None:
    queue = PersistentQueue(config.database_path)
    try:
        queue.initialize()
    except StorageError as e:
        print(f"error: {e}")
        return None
    return queue


def _queue_stats(config: ControllerConfig) -> int:
    queue = _open_queue(config)
    if queue is None:
        return 1
    try:
        print(json.dumps(queue.stats(), indent=2))
    except StorageError as e:
        print(f"error: {e}")
        return 1
    finally:
        queue.close()
    return 0


def _prune(config: ControllerConfig, retention_days: int | None) -> int:
    queue = _open_queue(config)
    if queue is None:
        return 1
    days = config.queue_retention_days if retention_days is None else retention_days
    try:
        deleted = queue.prune(timedelta(days=days))
        deleted_readings = queue.prune_readings(timedelta(days=config.audit_retention_days))
    finally:
        queue.close()
    print(f"Pruned {deleted} sent messages older than {days} days")
    print(f"Pruned {deleted_readings} audit readings older than {config.audit_retention_days} days")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the edge controller or one of its maintenance helpers."""
    parser = argparse.ArgumentParser(prog="edgectl")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Run the controller (default)")
    subparsers.add_parser("check-config", help="Validate devices.json and control-rules.json")
    subparsers.add_parser("queue-stats", help="Show outbound queue counters")
    prune_parser = subparsers.add_parser("prune", help="Delete sent messages past the retention window")
    prune_parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention in days (default: EDGECTL_QUEUE_RETENTION_DAYS)",
    )
    args = parser.parse_args(argv)

    try:
        config = load_config()
    except ValueError as e:
        print(f"error: {e}")
        return 2

    command = args.command or "run"
    if command == "run":
        setup_logging(debug=config.DEBUG, level=config.log_level, log_file=config.log_file)
        return _run(config)

    setup_logging(debug=config.DEBUG, level=config.log_level, log_file=None)
    if command == "check-config":
        return _check_config(config)
    if command == "queue-stats":
        return _queue_stats(config)
    if command == "prune":
        return _prune(config, args.days)
    return 0


if __name__ == "__main__":
    import sys

    raise SystemExit(main(sys.argv[1:]))
