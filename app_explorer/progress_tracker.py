from __future__ import annotations

"""Goal decomposition and step inference for goal-guided exploration.

A goal prompt looks like::

    [Login Flow]
    1. Tap email field
    2. Tap password field
    3. Tap submit

The tracker infers which step the session is on by matching step keywords
against the element texts and activity names in the action history. The index
is recomputed from the full history on every call, so it can move backwards.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .knowledge import ActionHistoryEntry, GoalProgress, HistoryAction

logger = logging.getLogger(__name__)

_TITLE_RE = re.compile(r"\[([^\]\n]+)\]")
_STEP_RE = re.compile(r"^\s*(\d+)[.)]\s+(.+?)\s*$", re.MULTILINE)
_WORD_RE = re.compile(r"[a-z0-9]+")

STOP_WORDS = frozenset(
    {
        "about", "after", "again", "also", "before", "button", "click", "each",
        "from", "have", "into", "make", "more", "once", "only", "other", "page",
        "screen", "should", "some", "such", "than", "that", "their", "them",
        "then", "there", "these", "they", "this", "those", "through", "until",
        "user", "very", "what", "when", "where", "which", "while", "will",
        "with", "your",
    }
)

RECENT_WINDOW = 3
RECENT_BOOST = 1.5
SEQUENCE_BONUS = 0.5
DECAY_FLOOR = 0.5
FORCED_ACTIONS = 15


@dataclass(frozen=True)
class GoalSpec:
    type: str = "custom"
    steps: Tuple[str, ...] = field(default_factory=tuple)


def extract_steps(goal_prompt: Optional[str]) -> GoalSpec:
    """Pull a ``[Title]`` and a numbered list out of free text.

    No numbered list means zero steps; callers then treat the whole prompt as a
    single open-ended goal.
    """
    if not goal_prompt:
        return GoalSpec()
    title = _TITLE_RE.search(goal_prompt)
    steps = tuple(m.group(2) for m in _STEP_RE.finditer(goal_prompt))
    return GoalSpec(type=title.group(1).strip() if title else "custom", steps=steps)


def step_keywords(step: str) -> List[str]:
    return [w for w in _WORD_RE.findall(step.lower()) if len(w) > 3 and w not in STOP_WORDS]


def _lower_first(text: str) -> str:
    return text[:1].lower() + text[1:]


def next_step_hints(progress: GoalProgress) -> List[str]:
    steps = progress.steps
    idx = progress.current_step_index
    if not steps:
        return []
    if idx >= len(steps):
        return [
            "All goal steps appear to be complete",
            "Explore remaining screens for anything the goal missed",
        ]
    if idx == 0:
        return [f"Start by {_lower_first(steps[0])}"]
    hints = [f"Continue with step {idx + 1}: {steps[idx]}"]
    if idx + 1 < len(steps):
        hints.append(f"Next: {steps[idx + 1]}")
        if idx + 2 < len(steps):
            hints.append(f"After that: {steps[idx + 2]}")
    else:
        hints.append("This is the final step of the goal")
    return hints


class ProgressTracker:
    """Infers the current goal step from the action history.

    Holds only the previously chosen index, which feeds the sequence bonus.
    """

    def __init__(self) -> None:
        self._previous: Optional[int] = None

    @property
    def previous_step(self) -> Optional[int]:
        return self._previous

    def reset(self) -> None:
        self._previous = None

    def current_step(self, history: Sequence[ActionHistoryEntry], steps: Sequence[str]) -> int:
        if not steps:
            return 0
        n = len(steps)
        keywords = [step_keywords(s) for s in steps]
        relevant = [e for e in history if e.action in (HistoryAction.CLICK, HistoryAction.VISIT)]
        total = len(relevant)

        scores = [0.0] * n
        for i, entry in enumerate(relevant):
            weight = 1.0
            if total > 5 * n:
                # early actions fade linearly towards DECAY_FLOOR
                weight *= DECAY_FLOOR + (1.0 - DECAY_FLOOR) * (i / total)
            if i >= total - RECENT_WINDOW:
                weight *= RECENT_BOOST
            haystack = " ".join(
                part.lower()
                for part in (
                    entry.element.text if entry.element else "",
                    entry.element.content_desc if entry.element else "",
                    entry.state.activity_id,
                )
                if part
            )
            for s, kws in enumerate(keywords):
                hits = sum(1 for kw in kws if kw in haystack)
                if hits:
                    scores[s] += hits * weight / (1.0 + math.log(1.0 + scores[s]))

        prev = self._previous if self._previous is not None else 0
        if any(scores) and prev + 1 < n:
            scores[prev + 1] += SEQUENCE_BONUS

        if any(scores):
            best = max(range(n), key=lambda s: (scores[s], -s))
        else:
            best = prev

        if total > 3 * n and best == 0 and n > 1:
            best = 1
        if total > FORCED_ACTIONS and best < 2 and n > 2:
            best = 2

        logger.debug("Step scores %s -> step %d (previous %s)", scores, best, self._previous)
        self._previous = best
        return best

    def progress(self, history: Sequence[ActionHistoryEntry], goal_prompt: Optional[str]) -> GoalProgress:
        spec = extract_steps(goal_prompt)
        return GoalProgress(steps=spec.steps, current_step_index=self.current_step(history, spec.steps))
