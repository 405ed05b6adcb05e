from __future__ import annotations

"""Data structures that form the *knowledge* backbone of App-Explorer.

Screens and elements are identified purely by content fingerprints; the
history log is the single source the goal tracker and cycle guard read from.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExplorationMode(str, Enum):
    """Ordering policies understood by the element prioritizer."""

    SEQUENTIAL = "sequential"
    REVERSE = "reverse"
    ORACLE_GUIDED = "oracle_guided"


class HistoryAction(str, Enum):
    VISIT = "visit"
    CLICK = "click"
    REVISIT = "revisit"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class SessionStatus(str, Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True)
class BoundingBox:
    left: int
    top: int
    right: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    @property
    def center(self) -> Tuple[int, int]:
        return (self.left + self.right) // 2, (self.top + self.bottom) // 2

    def to_dict(self) -> Dict[str, int]:
        return {"left": self.left, "top": self.top, "right": self.right, "bottom": self.bottom}


@dataclass(frozen=True)
class Element:
    """A concrete on-screen control.

    Recomputed on every observation; two elements are the same logical control
    when their fingerprints are equal.
    """

    fingerprint: str
    bounding_box: BoundingBox
    class_name: str
    text: str = ""
    resource_id: str = ""
    interactable: bool = False
    content_desc: str = ""

    @property
    def label(self) -> str:
        return self.text or self.content_desc or self.resource_id.split("/")[-1]


@dataclass(frozen=True)
class ScreenState:
    """One distinct screen, created the first time its fingerprint is seen."""

    id: int
    fingerprint: str
    activity_id: str
    screenshot_fingerprint: str
    elements: Tuple[Element, ...] = ()
    parent_state_id: Optional[int] = None
    timestamp: datetime = field(default_factory=utcnow, compare=False)

    @property
    def activity_name(self) -> str:
        """Short activity name, e.g. ``LoginActivity`` for ``pkg/.ui.LoginActivity``."""
        return self.activity_id.split("/")[-1].split(".")[-1] or self.activity_id


@dataclass(frozen=True)
class ActionHistoryEntry:
    action: HistoryAction
    state: ScreenState
    element: Optional[Element] = None
    result: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    def describe(self) -> str:
        element_info = "No element"
        if self.element is not None:
            element_info = f"Element: {self.element.class_name}"
            if self.element.text:
                element_info += f' "{self.element.text}"'
        return f"[{self.action.value}] Screen: {self.state.activity_id} - {element_info} ({self.result})"


@dataclass(frozen=True)
class GoalProgress:
    steps: Tuple[str, ...] = ()
    current_step_index: int = 0

    @property
    def current_step(self) -> Optional[str]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None


@dataclass(frozen=True)
class LogEntry:
    message: str
    severity: Severity = Severity.INFO
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ExplorationResult:
    """What a finished (or aborted) session leaves behind."""

    status: SessionStatus
    states: List[ScreenState] = field(default_factory=list)
    edges: List[Tuple[int, int]] = field(default_factory=list)
    history: List[ActionHistoryEntry] = field(default_factory=list)
    logs: List[LogEntry] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def click_count(self) -> int:
        return sum(1 for entry in self.history if entry.action == HistoryAction.CLICK)

    def to_flowchart(self) -> Dict[str, Any]:
        """Nodes/edges payload for graph rendering front-ends."""
        nodes = [
            {
                "id": str(st.id),
                "label": st.activity_name,
                "data": {
                    "activity": st.activity_id,
                    "fingerprint": st.fingerprint,
                    "screenshot_fingerprint": st.screenshot_fingerprint,
                    "timestamp": st.timestamp.isoformat(),
                },
            }
            for st in self.states
        ]
        edges = [
            {"id": f"e{src}-{dst}", "source": str(src), "target": str(dst)}
            for src, dst in self.edges
        ]
        return {"nodes": nodes, "edges": edges}
