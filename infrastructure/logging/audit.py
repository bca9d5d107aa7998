import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict


class AuditLogger:
    """Structured audit logger that writes append-only records of actuator actions."""

    def __init__(self, log_path: str, level: str = "INFO") -> None:
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        self.logger = logging.getLogger("edgectl.audit")
        self.logger.setLevel(getattr(logging, level.upper(), logging.INFO))
        self.logger.propagate = False

        # One handler per target file, even if constructed repeatedly
        target = str(self.log_path.resolve())
        if not any(
            isinstance(handler, RotatingFileHandler) and handler.baseFilename == target
            for handler in self.logger.handlers
        ):
            handler = RotatingFileHandler(
                filename=str(self.log_path),
                maxBytes=10 * 1024 * 1024,  # 10 MB
                backupCount=30,
                encoding="utf-8",
            )
            formatter = logging.Formatter(
                fmt="%(asctime)sZ | %(levelname)s | %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_event(self, actor: str, action: str, resource: str, outcome: str, **metadata: Any) -> None:
        payload: Dict[str, Any] = {
            "actor": actor,
            "action": action,
            "resource": resource,
            "outcome": outcome,
        }
        if metadata:
            payload["meta"] = metadata

        self.logger.info(json.dumps(payload, default=str))

    def log_actuator_write(self, actor: str, actuator_id: str, state: Any, outcome: str, **metadata: Any) -> None:
        """Record who drove an actuator to which state, and whether it worked."""
        self.log_event(actor, "actuator_write", f"actuator:{actuator_id}", outcome, state=state, **metadata)

    def close(self) -> None:
        target = str(self.log_path.resolve())
        for handler in list(self.logger.handlers):
            if isinstance(handler, RotatingFileHandler) and handler.baseFilename == target:
                handler.close()
                self.logger.removeHandler(handler)
