from __future__ import annotations

"""Decision oracle client: asks an LLM to rank the candidate elements of a screen.

The request carries the goal, the inferred goal step, a summary of the
exploration history and, per candidate, a padded crop of the element, its OCR
text and its structural attributes. The response is expected to be a JSON
array; when it is not, scores are recovered with a regex and, failing that,
assigned at random. The client never raises: a broken oracle only costs
ranking quality.
"""

import asyncio
import base64
import io
import json
import logging
import random
import re
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import pytesseract
from openai import AsyncOpenAI
from PIL import Image

from .config import OracleSettings
from .cycle_guard import CycleGuard, CyclePattern
from .errors import OracleError
from .fingerprint import find_node_xml
from .knowledge import ActionHistoryEntry, BoundingBox, Element, HistoryAction
from .progress_tracker import ProgressTracker, next_step_hints

logger = logging.getLogger(__name__)

CROP_PADDING = 20
MAX_CROP_SIDE = 2000
HISTORY_WINDOW = 20
TOP_N = 5

_JSON_ARRAY_RE = re.compile(r"\[\s*\{.*\}\s*\]", re.DOTALL)
_SCORE_TEXT_RE = re.compile(
    r"element\W*(\d+)[^\n]*?score\W*(\d+(?:\.\d+)?)", re.IGNORECASE
)


@dataclass(frozen=True)
class ElementContext:
    index: int
    element: Element
    image_png: Optional[bytes] = None
    ocr_text: str = ""
    node_xml: str = ""


@dataclass(frozen=True)
class OracleScore:
    fingerprint: str
    score: float
    reasoning: str
    pattern: CyclePattern = CyclePattern.NONE


@dataclass(frozen=True)
class HistorySummary:
    screens_visited: int = 0
    elements_clicked: int = 0
    top_activities: Tuple[str, ...] = ()
    top_element_types: Tuple[str, ...] = ()


class DecisionOracle(Protocol):
    async def rank(self, prompt_context: str, element_contexts: Sequence[ElementContext]) -> str: ...


# ----------------------------------------------------------------------
# element context ------------------------------------------------------

def crop_element(screenshot: Optional[bytes], bounds: BoundingBox, padding: int = CROP_PADDING) -> Optional[bytes]:
    """PNG crop of *bounds* plus *padding* pixels of context on each side."""
    if not screenshot:
        return None
    try:
        with Image.open(io.BytesIO(screenshot)) as img:
            left = max(0, bounds.left - padding)
            top = max(0, bounds.top - padding)
            right = min(img.width, bounds.right + padding, left + MAX_CROP_SIDE)
            bottom = min(img.height, bounds.bottom + padding, top + MAX_CROP_SIDE)
            if right <= left or bottom <= top:
                return None
            out = io.BytesIO()
            img.crop((left, top, right, bottom)).save(out, format="PNG")
            return out.getvalue()
    except (OSError, ValueError) as exc:
        logger.warning("Error extracting element image section: %s", exc)
        return None


def ocr_text(image_png: Optional[bytes]) -> str:
    if not image_png:
        return ""
    try:
        with Image.open(io.BytesIO(image_png)) as img:
            return pytesseract.image_to_string(img).strip()
    except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as exc:
        logger.warning("OCR error: %s", exc)
        return ""


def prepare_element_contexts(
    candidates: Sequence[Element],
    screenshot: Optional[bytes],
    hierarchy: Optional[str],
    ocr: Callable[[Optional[bytes]], str] = ocr_text,
) -> List[ElementContext]:
    contexts: List[ElementContext] = []
    for i, element in enumerate(candidates):
        image = crop_element(screenshot, element.bounding_box)
        contexts.append(
            ElementContext(
                index=i,
                element=element,
                image_png=image,
                ocr_text=ocr(image) if image else "",
                node_xml=find_node_xml(hierarchy or "", element.bounding_box),
            )
        )
    logger.debug("Prepared %d element contexts", len(contexts))
    return contexts


# ----------------------------------------------------------------------
# history rendering ----------------------------------------------------

def summarize_history(history: Sequence[ActionHistoryEntry]) -> HistorySummary:
    screens = set()
    activities: Counter = Counter()
    element_types: Counter = Counter()
    for entry in history:
        screens.add(entry.state.id)
        activities[entry.state.activity_id] += 1
        if entry.action == HistoryAction.CLICK and entry.element is not None:
            element_types[entry.element.class_name] += 1
    return HistorySummary(
        screens_visited=len(screens),
        elements_clicked=sum(element_types.values()),
        top_activities=tuple(name for name, _ in activities.most_common(TOP_N)),
        top_element_types=tuple(name for name, _ in element_types.most_common(TOP_N)),
    )


def format_history(history: Sequence[ActionHistoryEntry], limit: int = HISTORY_WINDOW) -> str:
    if not history:
        return "No exploration history available yet."
    recent = history[-limit:]
    return "\n".join(f"{i}. {entry.describe()}" for i, entry in enumerate(recent, start=1))


def build_prompt(
    goal_prompt: Optional[str],
    step_description: Optional[str],
    hints: Sequence[str],
    history: Sequence[ActionHistoryEntry],
    recently_clicked: Sequence[str],
    contexts: Sequence[ElementContext],
) -> str:
    summary = summarize_history(history)
    lines = [
        "You are an AI assistant helping to test a mobile app by intelligently selecting UI elements to click.",
        "",
        f"USER INSTRUCTIONS: {goal_prompt or 'Explore as many distinct screens as possible.'}",
    ]
    if step_description:
        lines.append(f"CURRENT GOAL STEP: {step_description}")
    if hints:
        lines.append("GUIDANCE:")
        lines.extend(f"- {hint}" for hint in hints)
    lines += [
        "",
        "EXPLORATION HISTORY:",
        f"- Screens visited: {summary.screens_visited}",
        f"- Elements clicked: {summary.elements_clicked}",
        f"- Most frequent activities: {', '.join(summary.top_activities) or 'None yet'}",
        f"- Most common element types: {', '.join(summary.top_element_types) or 'None yet'}",
        "",
        "RECENT ACTIONS:",
        format_history(history),
        "",
    ]
    if recently_clicked:
        lines.append("RECENTLY CLICKED ELEMENTS (avoid repeating these unless the goal requires it):")
        lines.extend(f"- {fp}" for fp in recently_clicked)
        lines.append("")
    lines += [
        "Rank each element from 0-100 based on how likely clicking it reaches new screens,",
        "how well it matches the user's instructions and current goal step, and whether it",
        "is a primary navigation or action item. Prefer paths not taken yet.",
        "",
        "RESPOND WITH A VALID JSON ARRAY OF OBJECTS, ONE PER ELEMENT. Example:",
        '[{"elementIndex": 0, "score": 85, "reasoning": "Main login button"},',
        ' {"elementIndex": 1, "score": 30, "reasoning": "Decorative element"}]',
        "",
        "ELEMENTS TO ANALYZE:",
    ]
    for ctx in contexts:
        el = ctx.element
        lines += [
            f"ELEMENT {ctx.index}:",
            f"  Fingerprint: {el.fingerprint}",
            f"  Class: {el.class_name}",
            f"  Resource ID: {el.resource_id or 'None'}",
            f"  Text: {el.text or 'None'}",
            f"  Content description: {el.content_desc or 'None'}",
            f"  OCR Text: {ctx.ocr_text or 'None'}",
            f"  XML: {ctx.node_xml or 'Not available'}",
            f"  Bounds: {json.dumps(el.bounding_box.to_dict())}",
            f"  Clickable: {el.interactable}",
        ]
    return "\n".join(lines)


# ----------------------------------------------------------------------
# response parsing -----------------------------------------------------

def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def parse_scores(response_text: str, count: int) -> Dict[int, Tuple[float, str]]:
    """Map element index -> (score, reasoning); empty when nothing usable was found."""
    scores: Dict[int, Tuple[float, str]] = {}
    if not response_text:
        return scores
    # strip code fences the model sometimes wraps around the JSON
    content = re.sub(r"```[a-zA-Z]*", "", response_text)
    match = _JSON_ARRAY_RE.search(content)
    if match:
        try:
            items = json.loads(match.group(0))
            for item in items:
                idx = int(item.get("elementIndex", item.get("index")))
                if 0 <= idx < count:
                    scores[idx] = (_clamp(float(item.get("score", 0))), str(item.get("reasoning", "")))
            if scores:
                return scores
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Error parsing oracle response as JSON: %s", exc)

    logger.info("Falling back to regex score extraction")
    for m in _SCORE_TEXT_RE.finditer(content):
        idx = int(m.group(1))
        if 0 <= idx < count and idx not in scores:
            scores[idx] = (_clamp(float(m.group(2))), "Extracted from text (fallback)")
    return scores


# ----------------------------------------------------------------------
# oracle implementations -----------------------------------------------

class OpenAIOracle:
    """Decision oracle backed by an OpenAI chat model with image input."""

    def __init__(self, settings: OracleSettings, client: Optional[AsyncOpenAI] = None) -> None:
        if client is None and not settings.enabled:
            raise OracleError("OPENAI_API_KEY is not set")
        self._settings = settings
        self._client = client or AsyncOpenAI(
            api_key=settings.api_key, base_url=settings.base_url, timeout=settings.timeout
        )
        self.token_usage: int = 0

    async def rank(self, prompt_context: str, element_contexts: Sequence[ElementContext]) -> str:
        content: List[dict] = [{"type": "text", "text": prompt_context}]
        for ctx in element_contexts:
            if ctx.image_png:
                content.append({"type": "text", "text": f"Image of ELEMENT {ctx.index}:"})
                content.append(
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": "data:image/png;base64," + base64.b64encode(ctx.image_png).decode("ascii"),
                            "detail": "low",
                        },
                    }
                )
        try:
            resp = await self._client.chat.completions.create(
                model=self._settings.model,
                messages=[{"role": "user", "content": content}],
                temperature=0,
            )
        except Exception as exc:  # transport and API errors alike
            raise OracleError(f"oracle request failed: {exc}") from exc
        self.token_usage += resp.usage.total_tokens if resp and resp.usage else 0
        if not resp.choices or resp.choices[0].message.content is None:
            raise OracleError("oracle returned an empty response")
        return resp.choices[0].message.content.strip()


class DecisionOracleClient:
    """Scores candidate elements against a goal, tolerating any oracle failure."""

    def __init__(
        self,
        oracle: Optional[DecisionOracle],
        tracker: Optional[ProgressTracker] = None,
        timeout: Optional[float] = 60.0,
        rng: Optional[random.Random] = None,
        ocr: Callable[[Optional[bytes]], str] = ocr_text,
    ) -> None:
        self._oracle = oracle
        self._tracker = tracker or ProgressTracker()
        self._timeout = timeout
        self._rng = rng or random.Random()
        self._ocr = ocr
        # reason the last score() call used random scores, None when the oracle answered
        self.last_fallback: Optional[str] = None

    @property
    def tracker(self) -> ProgressTracker:
        return self._tracker

    def _random_scores(self, count: int, reason: str, detail: Optional[str] = None) -> Dict[int, Tuple[float, str]]:
        self.last_fallback = f"{reason}: {detail}" if detail else reason
        return {i: (float(self._rng.randint(0, 100)), f"Random fallback score ({reason})") for i in range(count)}

    async def score(
        self,
        candidates: Sequence[Element],
        goal_prompt: Optional[str],
        history: Sequence[ActionHistoryEntry],
        *,
        screenshot: Optional[bytes] = None,
        hierarchy: Optional[str] = None,
        cycle_guard: Optional[CycleGuard] = None,
    ) -> List[OracleScore]:
        self.last_fallback = None
        if not candidates:
            return []
        guard = cycle_guard if cycle_guard is not None else CycleGuard.from_history(history)

        if self._oracle is None:
            logger.warning("No decision oracle configured, using random scoring instead")
            base = self._random_scores(len(candidates), "oracle not configured")
        else:
            base = await self._ask_oracle(candidates, goal_prompt, history, screenshot, hierarchy, guard)

        results: List[OracleScore] = []
        for i, element in enumerate(candidates):
            score, reasoning = base.get(i, (0.0, "No score returned by oracle"))
            verdict = guard.classify(element.fingerprint)
            if verdict.pattern != CyclePattern.NONE:
                score *= verdict.penalty_factor
                reasoning = f"{reasoning} [{verdict.pattern.value} penalty x{verdict.penalty_factor}]"
            results.append(OracleScore(element.fingerprint, score, reasoning, verdict.pattern))

        top = sorted(zip(results, candidates), key=lambda pair: pair[0].score, reverse=True)[:3]
        for rank, (res, el) in enumerate(top, start=1):
            logger.info("%d. %s %r - score %.1f", rank, el.class_name, el.label, res.score)
        return results

    async def _ask_oracle(
        self,
        candidates: Sequence[Element],
        goal_prompt: Optional[str],
        history: Sequence[ActionHistoryEntry],
        screenshot: Optional[bytes],
        hierarchy: Optional[str],
        guard: CycleGuard,
    ) -> Dict[int, Tuple[float, str]]:
        progress = self._tracker.progress(history, goal_prompt)
        contexts = await asyncio.to_thread(
            prepare_element_contexts, candidates, screenshot, hierarchy, self._ocr
        )
        prompt = build_prompt(
            goal_prompt,
            progress.current_step,
            next_step_hints(progress),
            history,
            guard.recent(),
            contexts,
        )
        logger.info("Analyzing %d elements with the decision oracle", len(candidates))
        try:
            raw = await asyncio.wait_for(self._oracle.rank(prompt, contexts), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Decision oracle timed out after %ss, using random scoring", self._timeout)
            return self._random_scores(len(candidates), "oracle timeout", f"no answer within {self._timeout}s")
        except OracleError as exc:
            logger.warning("Decision oracle failed: %s, using random scoring", exc)
            return self._random_scores(len(candidates), "oracle error", str(exc))
        except Exception as exc:
            logger.warning("Decision oracle raised %s: %s, using random scoring", type(exc).__name__, exc)
            return self._random_scores(len(candidates), "oracle error", f"{type(exc).__name__}: {exc}")

        scores = parse_scores(raw, len(candidates))
        if not scores:
            logger.warning("Could not extract any scores from the oracle response, using random scoring")
            return self._random_scores(len(candidates), "parsing failed")
        return scores
