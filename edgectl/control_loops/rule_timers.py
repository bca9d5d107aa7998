"""
Cron timers for SCHEDULED rules.

Each rule owns one :class:`RuleTimer`; the control engine keeps them in an
arena keyed by rule id and cancels them explicitly on stop and reload.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable

from croniter import croniter

logger = logging.getLogger(__name__)

CRON_FIELDS = 5


def is_valid_cron(expression: str | None) -> bool:
    """Standard 5-field cron (minute hour day month weekday)."""
    if not expression or len(expression.split()) != CRON_FIELDS:
        return False
    return croniter.is_valid(expression)


class RuleTimer:
    """
    Fires an async action at every occurrence of a cron expression.

    Times are local wall-clock, as cron users expect. A firing that raises is
    logged and the timer keeps running.
    """

    def __init__(
        self,
        rule_id: str,
        expression: str,
        action: Callable[[], Awaitable[None]],
        *,
        now: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not is_valid_cron(expression):
            raise ValueError(f"Invalid cron expression for rule {rule_id}: {expression!r}")
        self.rule_id = rule_id
        self.expression = expression
        self._action = action
        self._now = now
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self.fire_count = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_fire_time(self, after: datetime | None = None) -> datetime:
        return croniter(self.expression, after or self._now()).get_next(datetime)

    def start(self) -> None:
        if self.active:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"rule-timer-{self.rule_id}")
        logger.info("Scheduled rule %s with cron '%s'", self.rule_id, self.expression)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        last = self._now()
        while True:
            fire_at = self.next_fire_time(last)
            delay = max(0.0, (fire_at - self._now()).total_seconds())
            await self._sleep(delay)
            # After a stall (suspend, clock step) skip missed slots instead of bursting
            last = max(fire_at, self._now())
            self.fire_count += 1
            logger.info("Executing scheduled rule %s", self.rule_id)
            try:
                await self._action()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Scheduled rule %s failed: %s", self.rule_id, exc, exc_info=True)
