"""
PIDController: discrete single-loop PID over irregular sampling intervals.

The loop is driven by the sampling tick, so ``dt`` is measured from the
injected clock on every update rather than assumed constant.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class PIDController:
    """
    Stateful PID loop with output clamping and integral anti-windup.

    State (integral accumulator, last error, last sample time) belongs to one
    rule only and is reset on construction and on ``reset()``.
    """

    def __init__(
        self,
        kp: float,
        ki: float,
        kd: float,
        setpoint: float,
        output_min: float,
        output_max: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            kp, ki, kd: Proportional, integral and derivative gains
            setpoint: Target process value
            output_min, output_max: Output clamp bounds
            clock: Seconds source; monotonic by default so wall-clock jumps
                cannot produce negative intervals
        """
        if output_min > output_max:
            raise ValueError(f"output_min ({output_min}) is greater than output_max ({output_max})")
        self.kp = kp
        self.ki = ki
        self.kd = kd
        self._setpoint = setpoint
        self.output_min = output_min
        self.output_max = output_max
        self._clock = clock

        self._integral = 0.0
        self._last_error = 0.0
        self._last_time = clock()

    @property
    def setpoint(self) -> float:
        return self._setpoint

    @property
    def integral(self) -> float:
        return self._integral

    @property
    def last_error(self) -> float:
        return self._last_error

    def update(self, measured: float) -> float:
        """Feed one measurement and return the clamped controller output."""
        now = self._clock()
        dt = now - self._last_time
        error = self._setpoint - measured

        # Two samples at the same instant (or a clock step backwards):
        # hold the integral and drop the derivative term for this call.
        integral_step = 0.0
        derivative = 0.0
        if dt > 0:
            integral_step = error * dt
            self._integral += integral_step
            derivative = (error - self._last_error) / dt

        raw = self.kp * error + self.ki * self._integral + self.kd * derivative
        output = max(self.output_min, min(self.output_max, raw))

        # Anti-windup: undo this step's accumulation while saturated
        if raw != output:
            self._integral -= integral_step

        self._last_error = error
        self._last_time = now

        logger.debug(
            "PID update: measured=%s error=%.4f dt=%.4f integral=%.4f output=%.4f",
            measured,
            error,
            dt,
            self._integral,
            output,
        )
        return output

    def reset(self) -> None:
        self._integral = 0.0
        self._last_error = 0.0
        self._last_time = self._clock()

    def set_setpoint(self, setpoint: float) -> None:
        """Change the target without touching accumulated state."""
        self._setpoint = setpoint
