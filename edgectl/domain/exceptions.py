"""Centralized exception hierarchy for the edge controller.

All controller exceptions inherit from :class:`EdgeControllerError` so that
callers can catch a single base class when they need a broad safety net, yet
still match on specific subclasses where narrower handling is appropriate.

How each class is treated by the runtime
----------------------------------------
::

    EdgeControllerError (base)
    ├── DeviceIOError    (sensor read / actuator write failed; skip and log)
    ├── TransportError   (broker unreachable; reconnect and queue)
    ├── StorageError     (durable queue failure; best effort)
    ├── ConfigError      (malformed configuration; keep previous rule set)
    └── FatalError       (unrecoverable; full graceful shutdown)
"""

from __future__ import annotations


class EdgeControllerError(Exception):
    """Base exception for all controller errors.

    Parameters
    ----------
    message:
        Human-readable description.
    detail:
        Optional machine-readable context dict attached to the error for
        structured logging.
    """

    def __init__(self, message: str = "", *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.detail = detail or {}


class DeviceIOError(EdgeControllerError):
    """Physical read/write against a sensor or actuator failed or timed out."""


class TransportError(EdgeControllerError):
    """The pub/sub broker could not be reached or refused an operation."""


class StorageError(EdgeControllerError):
    """The durable queue could not be read or written."""


class ConfigError(EdgeControllerError):
    """Device or rule configuration is missing or invalid."""


class FatalError(EdgeControllerError):
    """Unrecoverable condition; the controller must shut down safely."""
