from __future__ import annotations

"""Session and oracle configuration.

Exploration settings are fixed for the lifetime of a session. Oracle settings
are read from the environment (``.env`` files are honoured through
python-dotenv).
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .knowledge import ExplorationMode

DEFAULT_IGNORED_CLASSES: FrozenSet[str] = frozenset({"android.widget.ImageView"})
DEFAULT_MODEL = "gpt-4o-mini"


@dataclass(frozen=True)
class ExplorationSettings:
    max_states: int = 20
    max_depth: int = 10
    per_element_click_budget: int = 3
    settle_delay_ms: int = 1000
    stay_in_scope: bool = True
    ignored_classes: FrozenSet[str] = DEFAULT_IGNORED_CLASSES
    mode: ExplorationMode = ExplorationMode.SEQUENTIAL
    goal_prompt: Optional[str] = None
    # target package, e.g. ``com.example.shop``
    app_id: Optional[str] = None
    max_recovery_attempts: int = 2
    launch_delay_ms: int = 2000
    launch_on_start: bool = False

    def __post_init__(self) -> None:
        # accept plain strings / lists from CLI or JSON callers
        object.__setattr__(self, "mode", ExplorationMode(self.mode))
        object.__setattr__(self, "ignored_classes", frozenset(self.ignored_classes))
        if self.goal_prompt is not None and not self.goal_prompt.strip():
            object.__setattr__(self, "goal_prompt", None)

        for name in ("max_states", "max_depth", "per_element_click_budget", "max_recovery_attempts"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        for name in ("settle_delay_ms", "launch_delay_ms"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise ConfigError(f"{name} must be a non-negative integer, got {value!r}")
        if (self.stay_in_scope or self.launch_on_start) and not self.app_id:
            raise ConfigError("app_id is required when stay_in_scope or launch_on_start is set")

    @property
    def settle_delay(self) -> float:
        return self.settle_delay_ms / 1000.0

    @property
    def launch_delay(self) -> float:
        return self.launch_delay_ms / 1000.0

    def is_ignored(self, class_name: str) -> bool:
        return any(ignored in class_name for ignored in self.ignored_classes)


@dataclass(frozen=True)
class OracleSettings:
    api_key: Optional[str] = field(default=None, repr=False)
    model: str = DEFAULT_MODEL
    timeout: float = 30.0
    base_url: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_env(cls) -> "OracleSettings":
        load_dotenv()
        raw_timeout = os.getenv("APP_EXPLORER_ORACLE_TIMEOUT", "30")
        try:
            timeout = float(raw_timeout)
        except ValueError as exc:
            raise ConfigError(f"APP_EXPLORER_ORACLE_TIMEOUT is not a number: {raw_timeout!r}") from exc
        return cls(
            api_key=os.getenv("OPENAI_API_KEY") or None,
            model=os.getenv("APP_EXPLORER_MODEL", DEFAULT_MODEL),
            timeout=timeout,
            base_url=os.getenv("OPENAI_BASE_URL") or None,
        )


def parse_class_list(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    """Flatten ``["a,b", "c"]`` style CLI input into a set of class names."""
    if not values:
        return frozenset()
    return frozenset(part.strip() for value in values for part in value.split(",") if part.strip())
