"""Daily and short-term one-shot timers on top of an event-loop style scheduler."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

LOGGER = logging.getLogger(__name__)

DAILY = "daily"
SHORT_TERM = "short_term"


def compute_daily_target(now: datetime, hour: int, minute: int) -> datetime:
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if now > target:
        target = target + timedelta(days=1)
    return target


class _Timer:
    def __init__(self, handle: Any, generation: int, fire_at: datetime) -> None:
        self.handle = handle
        self.generation = generation
        self.fire_at = fire_at


class SchedulingClock:
    """Owns at most one daily timer and at most one short-term timer.

    ``scheduler`` only needs ``call_later(delay_seconds, callback)`` returning a
    handle with ``cancel()``; an asyncio event loop qualifies. Every arm bumps a
    generation counter so a callback whose timer was cancelled or replaced
    returns without calling through, even if the underlying handle still runs.
    """

    def __init__(
        self,
        scheduler: Any,
        *,
        now_fn: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._scheduler = scheduler
        self._now_fn = now_fn
        self._timers: dict[str, _Timer] = {}
        self._generation = 0

    def now(self) -> datetime:
        return self._now_fn()

    def is_armed(self, name: str) -> bool:
        return name in self._timers

    def fire_time(self, name: str) -> datetime | None:
        timer = self._timers.get(name)
        if timer is None:
            return None
        return timer.fire_at

    @property
    def daily_armed(self) -> bool:
        return self.is_armed(DAILY)

    @property
    def short_term_armed(self) -> bool:
        return self.is_armed(SHORT_TERM)

    def arm_daily(self, hour: int, minute: int, callback: Callable[[], None]) -> datetime:
        now = self.now()
        target = compute_daily_target(now, hour, minute)
        delay = max(0.0, (target - now).total_seconds())
        self._arm(DAILY, delay, target, callback)
        return target

    def arm_short_term(self, delay_seconds: float, callback: Callable[[], None]) -> datetime:
        target = self.now() + timedelta(seconds=delay_seconds)
        self._arm(SHORT_TERM, max(0.0, float(delay_seconds)), target, callback)
        return target

    def cancel_daily(self) -> None:
        self._cancel(DAILY)

    def cancel_short_term(self) -> None:
        self._cancel(SHORT_TERM)

    def cancel_all(self) -> None:
        self._cancel(DAILY)
        self._cancel(SHORT_TERM)

    def _arm(
        self,
        name: str,
        delay: float,
        fire_at: datetime,
        callback: Callable[[], None],
    ) -> None:
        self._cancel(name)
        self._generation += 1
        generation = self._generation

        def fire() -> None:
            timer = self._timers.get(name)
            if timer is None or timer.generation != generation:
                return
            del self._timers[name]
            callback()

        handle = self._scheduler.call_later(delay, fire)
        self._timers[name] = _Timer(handle, generation, fire_at)
        LOGGER.debug(
            "Armed %s timer for %s",
            name,
            fire_at.isoformat(timespec="seconds"),
            extra={"category": "schedule"},
        )

    def _cancel(self, name: str) -> None:
        timer = self._timers.pop(name, None)
        if timer is None:
            return
        timer.handle.cancel()
        LOGGER.debug("Cancelled %s timer", name, extra={"category": "schedule"})
