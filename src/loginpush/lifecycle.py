from __future__ import annotations

import logging
from typing import Callable

from .flag_store import FlagStore, SequenceState, is_pending_reload, save_sequence_state

LOGGER = logging.getLogger(__name__)


def is_monitored_url(url: str | None, marker: str) -> bool:
    return bool(url) and bool(marker) and marker in str(url)


class PageLifecycleTracker:
    """Turns raw page events into edge-triggered activated/deactivated signals."""

    def __init__(
        self,
        store: FlagStore,
        *,
        marker: str,
        on_activated: Callable[[], None],
        on_deactivated: Callable[[], None],
        sequence_state: Callable[[], SequenceState] | None = None,
    ) -> None:
        self._store = store
        self._marker = marker
        self._on_activated = on_activated
        self._on_deactivated = on_deactivated
        self._sequence_state = sequence_state
        self._page_active = False

    @property
    def is_page_active(self) -> bool:
        return self._page_active

    def handle_load(self, url: str) -> None:
        if is_monitored_url(url, self._marker):
            self._activate("load")

    def handle_navigation(self, url: str) -> None:
        if is_monitored_url(url, self._marker):
            self._activate("navigation")
        else:
            self._deactivate("navigation")

    def handle_unload(self) -> None:
        if is_pending_reload(self._store) and self._sequence_state is not None:
            state = self._sequence_state()
            state.pending_reload = True
            save_sequence_state(self._store, state)
            LOGGER.info(
                "Saved sequence state before reload (count=%s)",
                state.push_count,
                extra={"category": "lifecycle"},
            )
        self._deactivate("unload")

    def _activate(self, source: str) -> None:
        if self._page_active:
            return
        self._page_active = True
        LOGGER.info("Login page activated (%s)", source, extra={"category": "lifecycle"})
        self._on_activated()

    def _deactivate(self, source: str) -> None:
        if not self._page_active:
            return
        self._page_active = False
        LOGGER.info("Login page deactivated (%s)", source, extra={"category": "lifecycle"})
        self._on_deactivated()
