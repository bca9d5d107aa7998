"""
Configuration for the edge controller
=====================================
Runtime settings loaded from environment variables, with Pi-friendly defaults.
Sets up the logging configuration as well.
"""

import os
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer.") from None


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number.") from None


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    return value or None


@dataclass
class ControllerConfig:
    """Runtime configuration loaded from environment variables."""

    # Identity
    controller_id: str = field(default_factory=lambda: os.getenv("EDGECTL_CONTROLLER_ID", "unknown"))
    controller_name: str = field(default_factory=lambda: os.getenv("EDGECTL_CONTROLLER_NAME", "Edge Controller"))
    farm_id: str | None = field(default_factory=lambda: _env_optional("EDGECTL_FARM_ID"))
    polyhouse_id: str | None = field(default_factory=lambda: _env_optional("EDGECTL_POLYHOUSE_ID"))

    # MQTT
    mqtt_host: str = field(default_factory=lambda: os.getenv("EDGECTL_MQTT_HOST", "localhost"))
    mqtt_port: int = field(default_factory=lambda: _env_int("EDGECTL_MQTT_PORT", 1883))
    mqtt_username: str | None = field(default_factory=lambda: _env_optional("EDGECTL_MQTT_USERNAME"))
    mqtt_password: str | None = field(default_factory=lambda: _env_optional("EDGECTL_MQTT_PASSWORD"))
    mqtt_client_id: str | None = field(default_factory=lambda: _env_optional("EDGECTL_MQTT_CLIENT_ID"))
    mqtt_topic_prefix: str = field(default_factory=lambda: os.getenv("EDGECTL_MQTT_TOPIC_PREFIX", "growloc"))
    mqtt_keepalive: int = field(default_factory=lambda: _env_int("EDGECTL_MQTT_KEEPALIVE", 60))
    mqtt_reconnect_seconds: int = field(default_factory=lambda: _env_int("EDGECTL_MQTT_RECONNECT_SECONDS", 5))

    # Storage and configuration files
    database_path: str = field(default_factory=lambda: os.getenv("EDGECTL_DATABASE_PATH", "data/queue.db"))
    config_dir: str = field(default_factory=lambda: os.getenv("EDGECTL_CONFIG_DIR", "config"))
    queue_retention_days: int = field(default_factory=lambda: _env_int("EDGECTL_QUEUE_RETENTION_DAYS", 7))
    audit_retention_days: int = field(default_factory=lambda: _env_int("EDGECTL_AUDIT_RETENTION_DAYS", 30))
    queue_drain_limit: int = field(default_factory=lambda: _env_int("EDGECTL_QUEUE_DRAIN_LIMIT", 100))

    # Loop timing (seconds)
    sensor_interval_seconds: float = field(
        default_factory=lambda: _env_float("EDGECTL_SENSOR_INTERVAL_SECONDS", 5.0)
    )
    heartbeat_interval_seconds: float = field(
        default_factory=lambda: _env_float("EDGECTL_HEARTBEAT_INTERVAL_SECONDS", 30.0)
    )
    maintenance_interval_seconds: float = field(
        default_factory=lambda: _env_float("EDGECTL_MAINTENANCE_INTERVAL_SECONDS", 3600.0)
    )
    device_io_timeout_seconds: float = field(
        default_factory=lambda: _env_float("EDGECTL_DEVICE_IO_TIMEOUT_SECONDS", 3.0)
    )

    # Device gateway ("simulated" or "modbus")
    gateway: str = field(default_factory=lambda: os.getenv("EDGECTL_GATEWAY", "simulated"))
    serial_port: str = field(default_factory=lambda: os.getenv("EDGECTL_SERIAL_PORT", "/dev/ttyUSB0"))
    baud_rate: int = field(default_factory=lambda: _env_int("EDGECTL_BAUD_RATE", 9600))
    parity: str = field(default_factory=lambda: os.getenv("EDGECTL_PARITY", "N"))
    stop_bits: int = field(default_factory=lambda: _env_int("EDGECTL_STOP_BITS", 1))
    data_bits: int = field(default_factory=lambda: _env_int("EDGECTL_DATA_BITS", 8))
    emergency_stop_register: int = field(default_factory=lambda: _env_int("EDGECTL_EMERGENCY_STOP_REGISTER", 100))

    # Logging
    DEBUG: bool = field(default_factory=lambda: _env_bool("EDGECTL_DEBUG", False))
    log_level: str = field(default_factory=lambda: os.getenv("EDGECTL_LOG_LEVEL", "INFO"))
    log_file: str = field(default_factory=lambda: os.getenv("EDGECTL_LOG_FILE", "logs/edgectl.log"))
    audit_log_path: str = field(default_factory=lambda: os.getenv("EDGECTL_AUDIT_LOG_PATH", "logs/audit.log"))

    def __post_init__(self) -> None:
        self.gateway = self.gateway.lower()
        self.parity = self.parity.upper()[:1] or "N"
        if not self.mqtt_client_id:
            self.mqtt_client_id = f"pi_{self.controller_id}"


def validate_config(config: ControllerConfig) -> list[str]:
    """Return a list of human-readable problems (empty when valid)."""
    problems: list[str] = []
    if config.controller_id == "unknown":
        problems.append("EDGECTL_CONTROLLER_ID is not set; topics will use 'unknown'")
    if config.sensor_interval_seconds <= 0:
        problems.append("EDGECTL_SENSOR_INTERVAL_SECONDS must be positive")
    if config.heartbeat_interval_seconds <= 0:
        problems.append("EDGECTL_HEARTBEAT_INTERVAL_SECONDS must be positive")
    if config.maintenance_interval_seconds <= 0:
        problems.append("EDGECTL_MAINTENANCE_INTERVAL_SECONDS must be positive")
    if config.device_io_timeout_seconds <= 0:
        problems.append("EDGECTL_DEVICE_IO_TIMEOUT_SECONDS must be positive")
    if config.mqtt_reconnect_seconds <= 0:
        problems.append("EDGECTL_MQTT_RECONNECT_SECONDS must be positive")
    if config.queue_drain_limit <= 0:
        problems.append("EDGECTL_QUEUE_DRAIN_LIMIT must be positive")
    if config.gateway not in {"simulated", "modbus"}:
        problems.append(f"EDGECTL_GATEWAY must be 'simulated' or 'modbus', got '{config.gateway}'")
    return problems


def setup_logging(debug: bool = False, level: str = "INFO", log_file: str | None = "logs/edgectl.log") -> None:
    """Setup logging configuration."""
    import logging
    import sys
    from logging.handlers import RotatingFileHandler

    log_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)

    # Root logger
    root = logging.getLogger()
    root.setLevel(log_level)

    # Avoid adding duplicates when called more than once (CLI helpers, tests)
    has_console = any(getattr(h, "name", "") == "edgectl_console" for h in root.handlers)
    has_file = any(getattr(h, "name", "") == "edgectl_file" for h in root.handlers)
    added_handler = False

    stream = sys.stdout
    with suppress(AttributeError, ValueError):
        stream.reconfigure(encoding="utf-8", errors="replace")
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    if not has_console:
        console_handler = logging.StreamHandler(stream=stream)
        console_handler.name = "edgectl_console"
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)
        added_handler = True

    # File handler; bounded so the SD card never fills up
    if log_file and not has_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.name = "edgectl_file"
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        added_handler = True

    for handler in root.handlers:
        if getattr(handler, "name", "") in {"edgectl_console", "edgectl_file"}:
            handler.setLevel(log_level)

    if added_handler:
        root.info("Logging initialized at level: %s", logging.getLevelName(log_level))

    if _env_bool("EDGECTL_SILENCE_PAHO", True):
        logging.getLogger("paho").setLevel(logging.WARNING)


def load_config() -> ControllerConfig:
    """Helper for callers to load and validate configuration."""
    import logging

    config = ControllerConfig()
    logger = logging.getLogger("config_loader")
    for problem in validate_config(config):
        logger.warning("Configuration: %s", problem)
    return config
