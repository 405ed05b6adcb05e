"""Test element_prioritizer — every policy is a permutation of its input."""
from __future__ import annotations

import pytest

from app_explorer.element_prioritizer import ElementPrioritizer
from app_explorer.knowledge import ExplorationMode
from app_explorer.oracle_client import DecisionOracleClient

from conftest import FakeOracle, make_element


@pytest.fixture
def candidates():
    return [make_element(text, i) for i, text in enumerate(["Home", "Search", "Cart", "Account"])]


def _scores(*values):
    return "[" + ", ".join(
        f'{{"elementIndex": {i}, "score": {v}, "reasoning": "r{i}"}}' for i, v in enumerate(values)
    ) + "]"


class TestStaticPolicies:

    @pytest.mark.asyncio
    async def test_sequential_keeps_order(self, candidates):
        ordered = await ElementPrioritizer(ExplorationMode.SEQUENTIAL).prioritize(candidates)
        assert ordered == candidates
        assert ordered is not candidates

    @pytest.mark.asyncio
    async def test_reverse(self, candidates):
        original = list(candidates)
        ordered = await ElementPrioritizer("reverse").prioritize(candidates)
        assert [e.text for e in ordered] == ["Account", "Cart", "Search", "Home"]
        assert candidates == original

    @pytest.mark.asyncio
    async def test_empty(self):
        for mode in ExplorationMode:
            assert await ElementPrioritizer(mode).prioritize([]) == []


class TestOracleGuided:

    @pytest.mark.asyncio
    async def test_sorted_by_score(self, candidates):
        client = DecisionOracleClient(FakeOracle(_scores(10, 70, 95, 40)), ocr=lambda _img: "")
        prioritizer = ElementPrioritizer(ExplorationMode.ORACLE_GUIDED, client)

        ordered = await prioritizer.prioritize(candidates, goal_prompt="buy something")

        assert [e.text for e in ordered] == ["Cart", "Search", "Account", "Home"]
        assert prioritizer.last_scores[candidates[2].fingerprint].score == 95.0
        assert len(prioritizer.last_scores) == len(candidates)
        assert prioritizer.last_fallback is None

    @pytest.mark.asyncio
    async def test_ties_keep_screen_order(self, candidates):
        client = DecisionOracleClient(FakeOracle(_scores(50, 80, 50, 80)), ocr=lambda _img: "")
        ordered = await ElementPrioritizer(ExplorationMode.ORACLE_GUIDED, client).prioritize(candidates)
        assert [e.text for e in ordered] == ["Search", "Account", "Home", "Cart"]

    @pytest.mark.asyncio
    async def test_random_fallback_is_a_permutation(self, candidates, failing_oracle):
        client = DecisionOracleClient(failing_oracle, ocr=lambda _img: "")
        prioritizer = ElementPrioritizer(ExplorationMode.ORACLE_GUIDED, client)
        ordered = await prioritizer.prioritize(candidates)
        assert prioritizer.last_fallback.startswith("oracle error")
        assert sorted(e.fingerprint for e in ordered) == sorted(e.fingerprint for e in candidates)

    @pytest.mark.asyncio
    async def test_without_client_falls_back_to_sequential(self, candidates):
        prioritizer = ElementPrioritizer(ExplorationMode.ORACLE_GUIDED)
        ordered = await prioritizer.prioritize(candidates)
        assert ordered == candidates
        assert prioritizer.last_fallback is not None
        assert await prioritizer.prioritize([]) == []
        assert prioritizer.last_fallback is None
