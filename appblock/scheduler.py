# appblock/scheduler.py
"""
Asynchronous expiry scheduler.

Arms one asyncio task per time-bounded rule. A task sleeps until the rule's
end and then runs its expiry action. The action failing with ``RuleNotFound``
means the rule is already gone (manual unblock won the race) and is a no-op.
Any other failure re-arms the same action with exponential backoff, so a
pending teardown is never dropped.

Timers live in memory only; ``RuleLifecycle.recover`` re-arms them after a
restart.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from appblock.errors import RuleNotFound
from appblock.models import utcnow

logger = logging.getLogger("appblock.scheduler")

ExpiryAction = Callable[[], Awaitable[object]]


@dataclass(frozen=True)
class RetryPolicy:
    backoff_initial: float = 30.0   # seconds
    backoff_max: float = 900.0      # seconds
    backoff_multiplier: float = 2.0
    jitter: float = 0.1             # +/- 10%

    def delay_for(self, attempt: int) -> float:
        d = self.backoff_initial * (self.backoff_multiplier ** max(0, attempt - 1))
        d = min(d, self.backoff_max)
        j = d * self.jitter
        return max(0.0, random.uniform(d - j, d + j))


class ExpiryScheduler:
    def __init__(
        self,
        retry: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._retry = retry or RetryPolicy()
        self._clock = clock
        self._expiries: Dict[str, asyncio.Task] = {}
        self._periodic: List[asyncio.Task] = []

    # ---------- Expiry timers ----------

    def schedule_expiry(self, rule_id: str, end_at: datetime, action: ExpiryAction) -> asyncio.Task:
        """
        Run ``action`` once, no earlier than ``end_at``.

        Arming a rule id that already has a timer replaces the old timer.
        """
        self.cancel(rule_id)
        task = asyncio.create_task(self._run_expiry(rule_id, end_at, action), name=f"expiry:{rule_id}")
        self._expiries[rule_id] = task
        task.add_done_callback(lambda t, rid=rule_id: self._forget(rid, t))
        logger.debug("Armed expiry for rule %s at %s", rule_id, end_at.isoformat())
        return task

    def cancel(self, rule_id: str) -> bool:
        task = self._expiries.pop(rule_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def pending(self) -> List[str]:
        return sorted(rid for rid, t in self._expiries.items() if not t.done())

    def _forget(self, rule_id: str, task: asyncio.Task) -> None:
        if self._expiries.get(rule_id) is task:
            del self._expiries[rule_id]

    async def _sleep_until(self, when: datetime) -> None:
        # loop timers may wake slightly early; keep sleeping until the deadline really passed
        while True:
            remaining = (when - self._clock()).total_seconds()
            if remaining <= 0:
                return
            await asyncio.sleep(remaining)

    async def _run_expiry(self, rule_id: str, end_at: datetime, action: ExpiryAction) -> None:
        await self._sleep_until(end_at)
        attempt = 0
        while True:
            attempt += 1
            try:
                await action()
            except RuleNotFound:
                logger.info("Rule %s already removed before expiry; nothing to do", rule_id)
                return
            except Exception as exc:
                delay = self._retry.delay_for(attempt)
                logger.warning(
                    "Expiry of rule %s failed (attempt %d): %s; retrying in %.1fs",
                    rule_id, attempt, exc, delay,
                )
                await asyncio.sleep(delay)
                continue
            logger.info("Rule %s expired", rule_id)
            return

    # ---------- Periodic jobs ----------

    def schedule_periodic(
        self,
        interval_seconds: float,
        coro_func: Callable[[], Awaitable[object]],
        name: str = "periodic",
    ) -> asyncio.Task:
        """Run ``coro_func`` every ``interval_seconds``; failures are logged and the loop goes on."""
        if interval_seconds <= 0:
            raise ValueError("interval must be > 0")

        async def periodic_wrapper() -> None:
            while True:
                await asyncio.sleep(interval_seconds)
                try:
                    await coro_func()
                    logger.debug("Periodic task %s executed", name)
                except Exception:
                    logger.exception("Error in periodic task %s", name)

        task = asyncio.create_task(periodic_wrapper(), name=name)
        self._periodic.append(task)
        return task

    # ---------- Shutdown ----------

    async def cancel_all(self) -> None:
        tasks = list(self._expiries.values()) + self._periodic
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._expiries.clear()
        self._periodic.clear()
        logger.info("All scheduled tasks cancelled (%d)", len(tasks))
