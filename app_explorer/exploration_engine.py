from __future__ import annotations

"""The main exploration driver: budgeted depth-first search over app screens.

Each screen is observed, deduplicated by fingerprint and, when new, its
interactable elements are tapped one by one in priority order. After every
tap the engine recurses into the resulting screen and then navigates back.
The search is bounded by the number of distinct screens, the recursion depth
and a per-element click budget.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .config import ExplorationSettings
from .cycle_guard import CycleGuard
from .device import UNKNOWN_ACTIVITY, DeviceDriver, activity_in_scope
from .element_prioritizer import ElementPrioritizer
from .errors import BudgetExceeded, DeviceActionError, ScopeLossError, SessionActiveError
from .fingerprint import FingerprintStore, image_fingerprint, parse_hierarchy, screen_fingerprint
from .knowledge import (
    ActionHistoryEntry,
    Element,
    ExplorationResult,
    HistoryAction,
    LogEntry,
    ScreenState,
    SessionStatus,
    Severity,
)
from .observer import ExplorationObserver
from .oracle_client import DecisionOracle, DecisionOracleClient
from .progress_tracker import ProgressTracker

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 1000

_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


@dataclass
class Observation:
    activity_id: str
    hierarchy: str
    screenshot: Optional[bytes]
    elements: List[Element]
    fingerprint: str


@dataclass
class Session:
    """Everything one exploration run owns; discarded when the run ends."""

    settings: ExplorationSettings
    driver: DeviceDriver
    observer: ExplorationObserver
    running: bool = True
    store: FingerprintStore = field(default_factory=FingerprintStore)
    cycle_guard: CycleGuard = field(default_factory=CycleGuard)
    tracker: ProgressTracker = field(default_factory=ProgressTracker)
    history: List[ActionHistoryEntry] = field(default_factory=list)
    logs: List[LogEntry] = field(default_factory=list)
    click_counts: Counter = field(default_factory=Counter)
    completed: bool = False
    stopped: bool = False
    error: Optional[BaseException] = None

    def record(self, action: HistoryAction, state: ScreenState, element: Optional[Element] = None, result: str = "") -> None:
        self.history.append(ActionHistoryEntry(action=action, state=state, element=element, result=result))


class ExplorationEngine:
    """Runs at most one exploration session at a time."""

    def __init__(
        self,
        oracle: Optional[DecisionOracle] = None,
        oracle_timeout: Optional[float] = 60.0,
        oracle_client: Optional[DecisionOracleClient] = None,
    ) -> None:
        self._oracle = oracle
        self._oracle_timeout = oracle_timeout
        self._oracle_client = oracle_client
        self._session: Optional[Session] = None

    @property
    def is_running(self) -> bool:
        return self._session is not None and self._session.running

    # ------------------------------------------------------------------
    async def explore(
        self,
        driver: DeviceDriver,
        settings: ExplorationSettings,
        observer: Optional[ExplorationObserver] = None,
    ) -> ExplorationResult:
        """Entry-point of the algorithm."""
        if self._session is not None:
            raise SessionActiveError("an exploration session is already running")

        session = Session(settings=settings, driver=driver, observer=observer or ExplorationObserver())
        self._session = session
        if self._oracle_client is not None:
            # an injected client outlives sessions, its goal tracking starts fresh
            self._oracle_client.tracker.reset()
            oracle_client = self._oracle_client
        else:
            oracle_client = DecisionOracleClient(self._oracle, tracker=session.tracker, timeout=self._oracle_timeout)
        prioritizer = ElementPrioritizer(settings.mode, oracle_client)

        try:
            self._log(session, f"Starting exploration of {settings.app_id or 'current app'} (mode={settings.mode.value})")
            if settings.launch_on_start and settings.app_id:
                self._log(session, f"Launching app {settings.app_id}")
                await driver.launch_app(settings.app_id)
                await asyncio.sleep(settings.launch_delay)
            await self._explore_from(session, prioritizer, [], 0)
        except ScopeLossError as exc:
            session.running = False
            session.error = exc
            self._log(session, str(exc), Severity.ERROR)
            session.observer.on_error(exc)
        except DeviceActionError as exc:
            # only the initial launch can get here
            session.running = False
            session.error = exc
            self._log(session, f"Failed to start exploration: {exc}", Severity.ERROR)
            session.observer.on_error(exc)
        finally:
            if self._oracle_client is not None:
                self._oracle_client.tracker.reset()
            self._session = None

        if session.error is not None:
            status = SessionStatus.ERROR
        elif session.stopped:
            status = SessionStatus.STOPPED
        else:
            status = SessionStatus.COMPLETED
            session.running = False
            self._log(session, "Exploration completed successfully", Severity.SUCCESS)
            session.observer.on_complete()

        return ExplorationResult(
            status=status,
            states=session.store.states,
            edges=session.store.edges,
            history=list(session.history),
            logs=list(session.logs),
            error=session.error,
        )

    def stop(self) -> bool:
        """Ask the running session to unwind; returns False when nothing was running."""
        session = self._session
        if session is None or not session.running:
            return False
        session.running = False
        session.stopped = True
        self._log(session, "Exploration stopped manually")
        session.observer.on_stop()
        return True

    # ------------------------------------------------------------------
    async def _explore_from(
        self, session: Session, prioritizer: ElementPrioritizer, path: Sequence[int], depth: int
    ) -> None:
        if not session.running:
            return
        settings = session.settings
        driver = session.driver

        await self._ensure_in_scope(session)
        if not session.running:
            return

        observation = await self._observe(session)
        if observation is None or not session.running:
            return

        parent_id = path[-1] if path else None
        existing = session.store.lookup(observation.fingerprint)
        if existing is not None:
            if parent_id is not None:
                session.store.link(parent_id, existing.id)
            session.record(HistoryAction.REVISIT, existing, result="known state")
            self._log(session, f"Found already visited screen #{existing.id}: {existing.activity_name}")
            return

        state = ScreenState(
            id=session.store.next_id(),
            fingerprint=observation.fingerprint,
            activity_id=observation.activity_id,
            screenshot_fingerprint=image_fingerprint(observation.screenshot),
            elements=tuple(observation.elements),
            parent_state_id=parent_id,
        )
        state = session.store.register_if_new(observation.fingerprint, state).canonical_state
        session.record(HistoryAction.VISIT, state, result="new state")
        self._log(session, f"Found new screen #{state.id}: {state.activity_name}", Severity.SUCCESS)
        session.observer.on_new_state(state)
        session.observer.on_progress(len(session.store), settings.max_states)

        if len(session.store) >= settings.max_states:
            self._log(session, f"{BudgetExceeded('max_states', settings.max_states)}, stopping exploration", Severity.SUCCESS)
            session.completed = True
            session.running = False
            return

        if not session.running:
            return
        if depth >= settings.max_depth:
            self._log(session, f"{BudgetExceeded('max_depth', settings.max_depth)}, returning to higher level", Severity.WARNING)
            return

        candidates = [
            el for el in observation.elements if el.interactable and not settings.is_ignored(el.class_name)
        ]
        self._log(session, f"Screen #{state.id} has {len(candidates)} candidate element(s)")
        ordered = await prioritizer.prioritize(
            candidates,
            goal_prompt=settings.goal_prompt,
            history=session.history,
            screenshot=observation.screenshot,
            hierarchy=observation.hierarchy,
            cycle_guard=session.cycle_guard,
        )
        if prioritizer.last_fallback:
            self._log(
                session,
                f"Oracle ranking unavailable for screen #{state.id} ({prioritizer.last_fallback}), using fallback order",
                Severity.WARNING,
            )
        child_path: Tuple[int, ...] = tuple(path) + (state.id,)

        for element in ordered:
            if not session.running:
                break
            if session.click_counts[element.fingerprint] >= settings.per_element_click_budget:
                self._log(
                    session,
                    f"Skipping element {element.fingerprint[:8]} (clicked {session.click_counts[element.fingerprint]} times already)",
                )
                continue

            x, y = element.bounding_box.center
            self._log(session, f"Clicking element: {element.class_name} {element.label!r} (hash: {element.fingerprint[:8]})")
            try:
                await driver.tap(x, y)
            except DeviceActionError as exc:
                self._log(session, f"Error clicking element: {exc}", Severity.ERROR)
                continue
            session.click_counts[element.fingerprint] += 1
            session.cycle_guard.record(element.fingerprint)
            session.record(HistoryAction.CLICK, state, element, result="tapped")
            if not session.running:
                break
            await asyncio.sleep(settings.settle_delay)
            if not session.running:
                break

            await self._explore_from(session, prioritizer, child_path, depth + 1)
            if not session.running:
                break

            try:
                await driver.navigate_back()
            except DeviceActionError as exc:
                self._log(session, f"Error going back: {exc}", Severity.ERROR)
            if not session.running:
                break
            await asyncio.sleep(settings.settle_delay)
            if not session.running:
                break
            await self._ensure_in_scope(session)

        if session.running:
            self._log(session, f"Finished exploring screen #{state.id}: {state.activity_name}")

    # ------------------------------------------------------------------
    # Helpers -----------------------------------------------------------

    async def _current_activity(self, session: Session) -> str:
        try:
            return await session.driver.get_current_activity()
        except DeviceActionError as exc:
            self._log(session, f"Error getting current activity: {exc}", Severity.ERROR)
            return UNKNOWN_ACTIVITY

    async def _ensure_in_scope(self, session: Session) -> None:
        """Relaunch the target app when the device wandered off; raise when it cannot."""
        settings = session.settings
        if not settings.stay_in_scope:
            return
        activity = await self._current_activity(session)
        if activity_in_scope(activity, settings.app_id):
            return

        self._log(
            session,
            f"Current activity {activity} is outside app {settings.app_id}, returning to app",
            Severity.WARNING,
        )
        for attempt in range(1, settings.max_recovery_attempts + 1):
            if not session.running:
                return
            try:
                await session.driver.launch_app(settings.app_id)
            except DeviceActionError as exc:
                self._log(session, f"Relaunch attempt {attempt} failed: {exc}", Severity.ERROR)
                continue
            await asyncio.sleep(settings.launch_delay)
            if not session.running:
                return
            activity = await self._current_activity(session)
            if activity_in_scope(activity, settings.app_id):
                self._log(session, f"Successfully returned to app: {activity}", Severity.SUCCESS)
                return
            self._log(session, f"Still outside app after relaunch attempt {attempt}: {activity}", Severity.WARNING)
        raise ScopeLossError(settings.app_id, activity, settings.max_recovery_attempts)

    async def _observe(self, session: Session) -> Optional[Observation]:
        driver = session.driver
        try:
            activity = await driver.get_current_activity()
        except DeviceActionError as exc:
            # an unknown activity would fingerprint a known screen as a new one
            self._log(session, f"Error getting current activity, skipping screen: {exc}", Severity.ERROR)
            return None
        if not session.running:
            return None
        try:
            hierarchy = await driver.capture_hierarchy()
        except DeviceActionError as exc:
            self._log(session, f"Error capturing UI hierarchy: {exc}", Severity.ERROR)
            return None
        if not session.running:
            return None
        try:
            screenshot: Optional[bytes] = await driver.capture_screenshot()
        except DeviceActionError as exc:
            self._log(session, f"Error capturing screenshot: {exc}", Severity.WARNING)
            screenshot = None
        elements = parse_hierarchy(hierarchy)
        return Observation(
            activity_id=activity,
            hierarchy=hierarchy,
            screenshot=screenshot,
            elements=elements,
            fingerprint=screen_fingerprint(activity, elements),
        )

    def _log(self, session: Session, message: str, severity: Severity = Severity.INFO) -> None:
        entry = LogEntry(message=message, severity=severity)
        session.logs.append(entry)
        if len(session.logs) > MAX_LOG_ENTRIES:
            del session.logs[0]
        logger.log(_LEVELS[severity], "[Explorer] %s", message)
        session.observer.on_log(entry)
