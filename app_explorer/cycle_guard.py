from __future__ import annotations

"""Short-term memory of recent taps used to damp repetitive interaction patterns."""

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Iterable, List

from .knowledge import ActionHistoryEntry, HistoryAction

DEFAULT_CAPACITY = 5


class CyclePattern(str, Enum):
    NONE = "none"
    IMMEDIATE_REPEAT = "immediate_repeat"  # A-A
    ALTERNATING = "alternating"  # A-B-A
    SHORT_CYCLE = "short_cycle"  # A-B-C-A
    RECENT_REPEAT = "recent_repeat"


PENALTY_FACTORS = {
    CyclePattern.NONE: 1.0,
    CyclePattern.IMMEDIATE_REPEAT: 0.2,
    CyclePattern.ALTERNATING: 0.3,
    CyclePattern.SHORT_CYCLE: 0.4,
    CyclePattern.RECENT_REPEAT: 0.5,
}


@dataclass(frozen=True)
class CycleClassification:
    pattern: CyclePattern
    penalty_factor: float


class CycleGuard:
    """Ring buffer of recently clicked element fingerprints, most recent first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._buffer: Deque[str] = deque(maxlen=capacity)

    @classmethod
    def from_history(
        cls, history: Iterable[ActionHistoryEntry], capacity: int = DEFAULT_CAPACITY
    ) -> "CycleGuard":
        guard = cls(capacity)
        for entry in history:
            if entry.action == HistoryAction.CLICK and entry.element is not None:
                guard.record(entry.element.fingerprint)
        return guard

    @property
    def capacity(self) -> int:
        return self._buffer.maxlen or DEFAULT_CAPACITY

    def record(self, fingerprint: str) -> None:
        # appendleft on a bounded deque drops the oldest entry from the right
        self._buffer.appendleft(fingerprint)

    def recent(self) -> List[str]:
        return list(self._buffer)

    def classify(self, fingerprint: str) -> CycleClassification:
        buf = self._buffer
        if len(buf) > 0 and buf[0] == fingerprint:
            pattern = CyclePattern.IMMEDIATE_REPEAT
        elif len(buf) > 1 and buf[1] == fingerprint:
            pattern = CyclePattern.ALTERNATING
        elif len(buf) > 2 and buf[2] == fingerprint:
            pattern = CyclePattern.SHORT_CYCLE
        elif fingerprint in buf:
            pattern = CyclePattern.RECENT_REPEAT
        else:
            pattern = CyclePattern.NONE
        return CycleClassification(pattern, PENALTY_FACTORS[pattern])

    def __len__(self) -> int:
        return len(self._buffer)
