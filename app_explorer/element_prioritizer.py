from __future__ import annotations

"""Orders the candidate elements of a screen according to the session's mode."""

import logging
from typing import Dict, List, Optional, Sequence

from .cycle_guard import CycleGuard
from .knowledge import ActionHistoryEntry, Element, ExplorationMode
from .oracle_client import DecisionOracleClient, OracleScore

logger = logging.getLogger(__name__)


class ElementPrioritizer:
    """Strategy dispatcher over the ordering policies.

    Every policy is a permutation of its input: candidates are reordered,
    never dropped.
    """

    def __init__(self, mode: ExplorationMode, oracle_client: Optional[DecisionOracleClient] = None) -> None:
        self.mode = ExplorationMode(mode)
        self._oracle_client = oracle_client
        self.last_scores: Dict[str, OracleScore] = {}
        self.last_fallback: Optional[str] = None

    async def prioritize(
        self,
        candidates: Sequence[Element],
        *,
        goal_prompt: Optional[str] = None,
        history: Sequence[ActionHistoryEntry] = (),
        screenshot: Optional[bytes] = None,
        hierarchy: Optional[str] = None,
        cycle_guard: Optional[CycleGuard] = None,
    ) -> List[Element]:
        ordered = list(candidates)
        self.last_fallback = None
        if self.mode == ExplorationMode.SEQUENTIAL:
            return ordered
        if self.mode == ExplorationMode.REVERSE:
            ordered.reverse()
            return ordered

        if self._oracle_client is None:
            logger.warning("oracle_guided mode without an oracle client, keeping sequential order")
            if ordered:
                self.last_fallback = "no oracle client, keeping screen order"
            return ordered
        scores = await self._oracle_client.score(
            ordered,
            goal_prompt,
            history,
            screenshot=screenshot,
            hierarchy=hierarchy,
            cycle_guard=cycle_guard,
        )
        self.last_scores = {s.fingerprint: s for s in scores}
        self.last_fallback = self._oracle_client.last_fallback
        # sorted() is stable, so equal scores keep the on-screen order
        order = sorted(range(len(ordered)), key=lambda i: scores[i].score, reverse=True)
        return [ordered[i] for i in order]
