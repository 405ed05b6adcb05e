from __future__ import annotations

"""Session sink handed to ``ExplorationEngine.explore``."""

import logging

from .knowledge import LogEntry, ScreenState

logger = logging.getLogger(__name__)


class ExplorationObserver:
    """No-op base; override the callbacks you care about."""

    def on_new_state(self, state: ScreenState) -> None:
        pass

    def on_progress(self, discovered: int, maximum: int) -> None:
        pass

    def on_log(self, entry: LogEntry) -> None:
        pass

    def on_complete(self) -> None:
        pass

    def on_error(self, error: BaseException) -> None:
        pass

    def on_stop(self) -> None:
        pass


class LoggingObserver(ExplorationObserver):
    """Routes session lifecycle events to ``logging``.

    Operator log lines are already written by the engine's own logger, so
    ``on_log`` stays a no-op here.
    """

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def on_new_state(self, state: ScreenState) -> None:
        self._log.info(
            "New screen #%d %s (%d elements, parent=%s)",
            state.id, state.activity_name, len(state.elements), state.parent_state_id,
        )

    def on_progress(self, discovered: int, maximum: int) -> None:
        pct = min(100, round(discovered / maximum * 100)) if maximum else 100
        self._log.info("Progress: %d/%d screens (%d%%)", discovered, maximum, pct)

    def on_complete(self) -> None:
        self._log.info("Exploration complete")

    def on_error(self, error: BaseException) -> None:
        self._log.error("Exploration failed: %s", error)

    def on_stop(self) -> None:
        self._log.info("Exploration stopped")
