"""App-Explorer package providing automated screen exploration for Android applications.

The engine taps through a running app over adb, records every distinct screen
and decides which element to tap next, optionally guided by an LLM oracle and
a multi-step goal prompt.

Key sub-modules:

knowledge.py            – Core data models: screens, elements, history entries, results.
fingerprint.py          – Content fingerprints, hierarchy parsing and the de-duplicating screen store.
cycle_guard.py          – Ring buffer of recent taps that penalises repetitive patterns.
progress_tracker.py     – Goal step extraction and current-step inference from history.
oracle_client.py        – LLM-backed element scoring with regex / random fallbacks.
element_prioritizer.py  – Ordering policies (sequential, reverse, oracle guided).
exploration_engine.py   – The budgeted, recoverable depth-first exploration loop.
device.py               – Device driver protocol and its adb implementation.

All device operations go through the `DeviceDriver` protocol, so tests and
other automation back-ends can plug in their own driver.
"""

from .config import ExplorationSettings, OracleSettings
from .cycle_guard import CycleGuard, CyclePattern
from .device import AdbDeviceDriver, DeviceDriver
from .errors import (
    BudgetExceeded,
    ConfigError,
    DeviceActionError,
    ExplorerError,
    OracleError,
    ScopeLossError,
    SessionActiveError,
)
from .exploration_engine import ExplorationEngine, Session
from .fingerprint import FingerprintStore
from .knowledge import (
    ActionHistoryEntry,
    Element,
    ExplorationMode,
    ExplorationResult,
    GoalProgress,
    ScreenState,
)
from .observer import ExplorationObserver, LoggingObserver
from .oracle_client import DecisionOracleClient, OpenAIOracle
from .progress_tracker import ProgressTracker, extract_steps, next_step_hints

__all__ = [
    "ActionHistoryEntry",
    "AdbDeviceDriver",
    "BudgetExceeded",
    "ConfigError",
    "CycleGuard",
    "CyclePattern",
    "DecisionOracleClient",
    "DeviceActionError",
    "DeviceDriver",
    "Element",
    "ExplorationEngine",
    "ExplorationMode",
    "ExplorationObserver",
    "ExplorationResult",
    "ExplorationSettings",
    "ExplorerError",
    "FingerprintStore",
    "GoalProgress",
    "LoggingObserver",
    "OpenAIOracle",
    "OracleError",
    "OracleSettings",
    "ProgressTracker",
    "ScopeLossError",
    "ScreenState",
    "Session",
    "SessionActiveError",
    "extract_steps",
    "next_step_hints",
]
