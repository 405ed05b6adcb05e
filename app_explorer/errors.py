from __future__ import annotations

"""Error taxonomy shared by the explorer components.

Only :class:`ScopeLossError` (and an explicit ``stop()``) ends a session early;
every other condition degrades to a best-effort continuation.
"""


class ExplorerError(Exception):
    """Base class for all App-Explorer errors."""


class ConfigError(ExplorerError, ValueError):
    """Invalid exploration or oracle settings."""


class SessionActiveError(ExplorerError):
    """A session was requested while another one is still running."""


class DeviceActionError(ExplorerError):
    """A single device action (observe, tap, back, relaunch) failed or timed out."""

    def __init__(self, action: str, message: str) -> None:
        super().__init__(f"{action} failed: {message}")
        self.action = action


class ScopeLossError(ExplorerError):
    """The device stayed outside the target application after every relaunch attempt."""

    def __init__(self, app_id: str, activity: str, attempts: int) -> None:
        super().__init__(
            f"left target app {app_id} (current activity {activity}) and "
            f"could not return after {attempts} relaunch attempt(s)"
        )
        self.app_id = app_id
        self.activity = activity
        self.attempts = attempts


class OracleError(ExplorerError):
    """The ranking service was unavailable or answered with something unusable."""


class BudgetExceeded(ExplorerError):
    """A state, depth or click budget was reached.

    Used to label expected pruning in logs; the engine never lets it escape.
    """

    def __init__(self, budget: str, limit: int) -> None:
        super().__init__(f"{budget} budget of {limit} reached")
        self.budget = budget
        self.limit = limit
