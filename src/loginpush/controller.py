"""Scheduling state machine for login QR code pushes.

The controller decides when a push is owed, drives the bounded short-term
sequence and carries that sequence across the page reloads it requests
itself. Only the flag store crosses a reload; everything on the instance is
rebuilt afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine
from uuid import uuid4

from .clock import SchedulingClock
from .collaborators import (
    SEVERITY_ERROR,
    SEVERITY_INFO,
    SEVERITY_SUCCESS,
    LoginOracle,
    ReloadRequester,
    StatusReporter,
)
from .config import PushSettings, ScheduleConfig, SettingsStore
from .dispatcher import DispatchResult, PushDispatcher, PushRequest
from .flag_store import (
    FlagStore,
    PushRecord,
    SequenceState,
    clear_sequence_state,
    is_pending_reload,
    load_push_record,
    load_sequence_state,
    record_push,
    save_sequence_state,
)
from .logging_setup import sequence_context

LOGGER = logging.getLogger(__name__)

Spawn = Callable[[Coroutine[Any, Any, None]], Any]


class ControllerState(Enum):
    IDLE = "idle"
    DAILY_ARMED = "daily_armed"
    SHORT_TERM_ACTIVE = "short_term_active"
    AWAITING_RELOAD = "awaiting_reload"
    STOPPED = "stopped"


class TaskSpawner:
    """Runs coroutines as tasks and keeps them referenced until done."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def __call__(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


class PushController:
    def __init__(
        self,
        *,
        store: FlagStore,
        clock: SchedulingClock,
        dispatcher: PushDispatcher,
        login_oracle: LoginOracle,
        reload_requester: ReloadRequester,
        reporter: StatusReporter,
        settings: SettingsStore,
        schedule: ScheduleConfig | None = None,
        spawn: Spawn | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._dispatcher = dispatcher
        self._login = login_oracle
        self._reload = reload_requester
        self._reporter = reporter
        self._settings = settings
        self._schedule = schedule or ScheduleConfig()
        self._spawn = spawn or TaskSpawner()
        self._state = ControllerState.IDLE
        self._sequence = SequenceState()
        self._sequence_id = ""
        self._page_active = False
        self._dispatch_in_flight = False
        self._tick_deferred = False

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def sequence(self) -> SequenceState:
        return self._sequence

    @property
    def page_active(self) -> bool:
        return self._page_active

    @property
    def dispatch_in_flight(self) -> bool:
        return self._dispatch_in_flight

    @property
    def max_push_count(self) -> int:
        return self._schedule.max_short_term_push

    def sequence_snapshot(self) -> SequenceState:
        return SequenceState(
            in_sequence=self._sequence.in_sequence,
            push_count=self._sequence.push_count,
            pending_reload=self._sequence.pending_reload,
        )

    # Lifecycle signals

    def on_activated(self) -> None:
        self._page_active = True
        persisted = load_sequence_state(self._store, self.max_push_count)
        if persisted.in_sequence and persisted.pending_reload:
            self._resume_after_reload(persisted)
            return
        if persisted.in_sequence or persisted.pending_reload:
            LOGGER.info("Discarding stale sequence state", extra={"category": "schedule"})
            clear_sequence_state(self._store)
        self._sequence = SequenceState()
        self._set_state(ControllerState.IDLE)

        settings = self._settings.get()
        if not settings.can_push:
            LOGGER.info(
                "Push disabled or token missing; nothing scheduled",
                extra={"category": "schedule"},
            )
            return
        if self._login.is_logged_in():
            self._stop()
            return

        record = load_push_record(self._store)
        if record.never_pushed:
            if self._schedule.first_launch_push:
                self._launch_single(PushRequest(reason="first launch"))
            self._arm_daily()
            return
        if self.is_push_owed(record=record):
            self._start_sequence("daily push overdue")
            return
        self._arm_daily()

    def on_deactivated(self) -> None:
        self._page_active = False
        self._clock.cancel_all()
        if self._sequence.pending_reload or is_pending_reload(self._store):
            LOGGER.info(
                "Page leaving for a reload; keeping sequence state",
                extra={"category": "schedule"},
            )
            return
        if self._sequence.in_sequence:
            LOGGER.info("Sequence abandoned: login page left", extra={"category": "schedule"})
        self._end_sequence()
        self._set_state(ControllerState.IDLE)

    def on_login_detected_externally(self) -> None:
        if self._state is ControllerState.STOPPED:
            return
        self._stop()

    def on_save(self, settings: PushSettings) -> None:
        self._settings.update(settings)
        self._clock.cancel_all()
        self._end_sequence()
        self._set_state(ControllerState.IDLE)
        self._reporter.set_next_push_at(None)
        LOGGER.info("Settings updated; schedule re-evaluated", extra={"category": "schedule"})
        self._reporter.report_status("Settings saved", SEVERITY_INFO)
        if not (settings.can_push and settings.daily_push_enabled):
            return
        if self._login.is_logged_in():
            self._stop()
            return
        self._arm_daily()

    def push_now(self) -> bool:
        """Capture and push once outside any sequence; False when refused."""
        if not self._settings.get().can_push:
            self._reporter.report_status("Push is disabled or the token is missing", SEVERITY_ERROR)
            return False
        if self._dispatch_in_flight:
            self._reporter.report_status("A push is already in progress", SEVERITY_INFO)
            return False
        self._launch_single(PushRequest(reason="manual push"))
        return True

    # Due check

    def is_push_owed(self, *, record: PushRecord | None = None, now: datetime | None = None) -> bool:
        if self._sequence.in_sequence:
            return False
        if load_sequence_state(self._store, self.max_push_count).in_sequence:
            return False
        if record is None:
            record = load_push_record(self._store)
        if record.never_pushed:
            return False
        settings = self._settings.get()
        if not settings.daily_push_enabled:
            return False
        now = now or self._clock.now()
        if record.last_push_date == now.date().isoformat():
            return False
        hour, minute = settings.time_of_day()
        target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        return now >= target

    # Timers

    def _arm_daily(self) -> None:
        settings = self._settings.get()
        if not (self._page_active and settings.daily_push_enabled and settings.can_push):
            return
        hour, minute = settings.time_of_day()
        fire_at = self._clock.arm_daily(hour, minute, self._on_daily_timer)
        self._set_state(ControllerState.DAILY_ARMED)
        self._reporter.set_next_push_at(fire_at)
        LOGGER.info(
            "Daily push armed for %s",
            fire_at.isoformat(timespec="minutes"),
            extra={"category": "schedule"},
        )
        self._reporter.report_status(
            f"Next push at {fire_at.strftime('%Y-%m-%d %H:%M')}", SEVERITY_INFO
        )

    def _arm_short_term(self) -> None:
        fire_at = self._clock.arm_short_term(
            self._schedule.short_term_interval_seconds, self._on_short_term_timer
        )
        self._reporter.set_next_push_at(fire_at)
        self._reporter.report_status(
            f"Attempt {self._sequence.push_count + 1}/{self.max_push_count} "
            f"at {fire_at.strftime('%H:%M')}",
            SEVERITY_INFO,
        )

    def _on_daily_timer(self) -> None:
        if not self._page_active:
            return
        settings = self._settings.get()
        if not (settings.can_push and settings.daily_push_enabled):
            self._set_state(ControllerState.IDLE)
            return
        if self._login.is_logged_in():
            self._stop()
            return
        self._start_sequence("daily push")

    def _on_short_term_timer(self) -> None:
        with sequence_context(self._sequence_id):
            self._attempt()

    # Sequence

    def _start_sequence(self, reason: str) -> None:
        self._clock.cancel_daily()
        self._sequence_id = uuid4().hex[:8]
        self._sequence = SequenceState(in_sequence=True, push_count=0, pending_reload=False)
        save_sequence_state(self._store, self._sequence)
        self._set_state(ControllerState.SHORT_TERM_ACTIVE)
        with sequence_context(self._sequence_id):
            LOGGER.info("Push sequence started: %s", reason, extra={"category": "schedule"})
            self._attempt()

    def _attempt(self) -> None:
        if self._dispatch_in_flight:
            # Replayed by the in-flight dispatch once it completes.
            self._tick_deferred = True
            LOGGER.info("Push already in flight; attempt deferred", extra={"category": "schedule"})
            return
        if not self._sequence.in_sequence:
            return
        if self._login.is_logged_in():
            self._stop()
            return
        if self._sequence.push_count >= self.max_push_count:
            self._finish_sequence()
            return

        self._sequence.push_count += 1
        attempt = self._sequence.push_count
        if attempt == 1:
            save_sequence_state(self._store, self._sequence)
            self._launch_attempt(attempt)
            return

        self._sequence.pending_reload = True
        save_sequence_state(self._store, self._sequence)
        self._set_state(ControllerState.AWAITING_RELOAD)
        self._reporter.set_progress(attempt, self.max_push_count)
        LOGGER.info(
            "Reloading login page before attempt %s/%s",
            attempt,
            self.max_push_count,
            extra={"category": "schedule"},
        )
        try:
            self._reload.request_reload()
        except Exception as exc:
            LOGGER.warning(
                "Reload failed, pushing current QR code instead: %s",
                exc,
                extra={"category": "schedule"},
            )
            self._sequence.pending_reload = False
            save_sequence_state(self._store, self._sequence)
            self._set_state(ControllerState.SHORT_TERM_ACTIVE)
            self._launch_attempt(attempt)

    def _resume_after_reload(self, persisted: SequenceState) -> None:
        if not self._settings.get().can_push:
            LOGGER.info(
                "Push disabled or token missing; sequence dropped after reload",
                extra={"category": "schedule"},
            )
            self._end_sequence()
            self._set_state(ControllerState.IDLE)
            return
        self._sequence_id = uuid4().hex[:8]
        attempt = max(1, persisted.push_count)
        self._sequence = SequenceState(in_sequence=True, push_count=attempt, pending_reload=False)
        save_sequence_state(self._store, self._sequence)
        self._set_state(ControllerState.SHORT_TERM_ACTIVE)
        with sequence_context(self._sequence_id):
            LOGGER.info(
                "Resuming push sequence after reload at attempt %s/%s",
                attempt,
                self.max_push_count,
                extra={"category": "schedule"},
            )
            if self._login.is_logged_in():
                self._stop()
                return
            self._launch_attempt(attempt)

    def _launch_attempt(self, attempt: int) -> None:
        self._reporter.set_progress(attempt, self.max_push_count)
        self._reporter.report_status(
            f"Sending QR code (attempt {attempt}/{self.max_push_count})", SEVERITY_INFO
        )
        request = PushRequest(
            reason="login reminder",
            attempt=attempt,
            max_attempts=self.max_push_count,
        )
        self._dispatch_in_flight = True
        self._spawn(self._run_attempt(request, self._sequence_id))

    def _launch_single(self, request: PushRequest) -> None:
        self._reporter.report_status(f"Sending QR code ({request.reason})", SEVERITY_INFO)
        self._dispatch_in_flight = True
        self._spawn(self._run_single(request))

    async def _run_attempt(self, request: PushRequest, sequence_id: str) -> None:
        try:
            with sequence_context(sequence_id):
                await self._dispatch(request)
        finally:
            self._dispatch_in_flight = False
        if sequence_id == self._sequence_id:
            with sequence_context(sequence_id):
                self._after_attempt()
        else:
            LOGGER.info(
                "Attempt %s belonged to an abandoned sequence; result not applied",
                request.attempt,
                extra={"category": "schedule"},
            )
        self._replay_deferred_tick()

    async def _run_single(self, request: PushRequest) -> None:
        try:
            await self._dispatch(request)
        finally:
            self._dispatch_in_flight = False
        self._replay_deferred_tick()

    def _replay_deferred_tick(self) -> None:
        if not self._tick_deferred:
            return
        self._tick_deferred = False
        if (
            self._dispatch_in_flight
            or not self._sequence.in_sequence
            or self._state is not ControllerState.SHORT_TERM_ACTIVE
            or self._clock.short_term_armed
        ):
            return
        with sequence_context(self._sequence_id):
            LOGGER.info("Running deferred attempt", extra={"category": "schedule"})
            self._attempt()

    async def _dispatch(self, request: PushRequest) -> DispatchResult:
        try:
            result = await self._dispatcher.dispatch(request)
        except Exception as exc:
            LOGGER.exception("Push dispatch raised: %s", exc, extra={"category": "push"})
            result = DispatchResult(False, f"push failed: {exc}")
        now = self._clock.now()
        record_push(self._store, now)
        self._reporter.set_last_push(now, result.message)
        if result.success:
            self._reporter.report_status(result.message, SEVERITY_INFO)
        else:
            LOGGER.warning("Push attempt failed: %s", result.message, extra={"category": "push"})
            self._reporter.report_status(result.message, SEVERITY_ERROR)
        return result

    def _after_attempt(self) -> None:
        if not self._sequence.in_sequence or self._state is not ControllerState.SHORT_TERM_ACTIVE:
            return
        if self._login.is_logged_in():
            self._stop()
            return
        if self._sequence.push_count >= self.max_push_count:
            self._finish_sequence()
            return
        if self._page_active:
            self._arm_short_term()

    def _finish_sequence(self) -> None:
        LOGGER.info(
            "Push sequence finished after %s attempts without login",
            self._sequence.push_count,
            extra={"category": "schedule"},
        )
        self._clock.cancel_short_term()
        self._end_sequence()
        self._set_state(ControllerState.IDLE)
        self._reporter.set_next_push_at(None)
        self._reporter.report_status("No login after the last attempt; waiting for the next day", SEVERITY_INFO)
        self._arm_daily()

    def _stop(self) -> None:
        self._clock.cancel_all()
        self._end_sequence()
        self._set_state(ControllerState.STOPPED)
        self._reporter.set_next_push_at(None)
        LOGGER.info("Login detected; scheduling stopped", extra={"category": "schedule"})
        self._reporter.report_status("Login detected", SEVERITY_SUCCESS)

    def _end_sequence(self) -> None:
        self._sequence = SequenceState()
        self._sequence_id = ""
        self._tick_deferred = False
        clear_sequence_state(self._store)
        self._reporter.set_progress(0, 0)

    def _set_state(self, state: ControllerState) -> None:
        if state is self._state:
            return
        LOGGER.debug(
            "State %s -> %s",
            self._state.value,
            state.value,
            extra={"category": "schedule"},
        )
        self._state = state
        self._reporter.set_state(state.value)
