"""
Shared fixtures for the App-Explorer test suite.

Provides a scripted fake device, a scripted fake oracle and a recording
observer so that all tests run WITHOUT a real device, network or tesseract.
"""

import asyncio
import io
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest
from PIL import Image

from app_explorer.config import ExplorationSettings
from app_explorer.errors import DeviceActionError, OracleError
from app_explorer.fingerprint import element_fingerprint
from app_explorer.knowledge import BoundingBox, Element, LogEntry, ScreenState
from app_explorer.observer import ExplorationObserver

APP_ID = "com.example.app"
LAUNCHER_ACTIVITY = "com.android.launcher3/.Launcher"
EXTERNAL_ACTIVITY = "com.android.chrome/.Main"
EXTERNAL = "@external"


# ---------------------------------------------------------------------------
# Fake device
# ---------------------------------------------------------------------------

@dataclass
class FakeScreen:
    """A screen of the fake app: buttons are ``(text, target screen name or None)``."""

    name: str
    buttons: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    activity: Optional[str] = None

    def activity_id(self) -> str:
        return self.activity or f"{APP_ID}/.{self.name.capitalize()}Activity"


def button_bounds(index: int) -> BoundingBox:
    return BoundingBox(0, index * 100, 200, index * 100 + 80)


def screen_xml(screen: FakeScreen) -> str:
    nodes = [
        f'<node index="{i}" text="{text}" resource-id="{APP_ID}:id/btn_{i}" '
        f'class="android.widget.Button" clickable="true" enabled="true" '
        f'bounds="[{b.left},{b.top}][{b.right},{b.bottom}]" />'
        for i, (text, _) in enumerate(screen.buttons)
        for b in [button_bounds(i)]
    ]
    return (
        "<?xml version='1.0' encoding='UTF-8' standalone='yes' ?>"
        '<hierarchy rotation="0">'
        f'<node index="0" text="" resource-id="" class="android.widget.FrameLayout" '
        f'clickable="false" enabled="true" bounds="[0,0][1080,1920]">'
        + "".join(nodes)
        + "</node></hierarchy>"
    )


class FakeDevice:
    """In-memory app with a back stack; implements the DeviceDriver protocol."""

    def __init__(
        self,
        screens: Sequence[FakeScreen],
        home: str = "home",
        activity_script: Sequence[str] = (),
        stuck_outside: bool = False,
        failing_taps: Sequence[str] = (),
        failing_activity_reads: Sequence[int] = (),
    ) -> None:
        self.screens: Dict[str, FakeScreen] = {s.name: s for s in screens}
        self.home = home
        self.current: str = home
        self.stack: List[str] = []
        self.activity_script = list(activity_script)
        self.stuck_outside = stuck_outside
        self.failing_taps = set(failing_taps)
        # 1-based numbers of get_current_activity calls that fail
        self.failing_activity_reads = set(failing_activity_reads)
        self.activity_reads = 0
        self.taps: List[Tuple[int, int]] = []
        self.tapped_texts: List[str] = []
        self.backs = 0
        self.launches: List[str] = []
        self.hierarchy_gate: Optional[asyncio.Event] = None

    # --- DeviceDriver ---------------------------------------------------
    async def get_current_activity(self) -> str:
        self.activity_reads += 1
        if self.activity_reads in self.failing_activity_reads:
            raise DeviceActionError("get_current_activity", "injected dumpsys failure")
        if self.activity_script:
            return self.activity_script.pop(0)
        if self.current == EXTERNAL:
            return EXTERNAL_ACTIVITY
        if self.current == "@launcher":
            return LAUNCHER_ACTIVITY
        return self.screens[self.current].activity_id()

    async def capture_hierarchy(self) -> str:
        if self.hierarchy_gate is not None:
            await self.hierarchy_gate.wait()
        if self.current.startswith("@"):
            return screen_xml(FakeScreen(self.current.strip("@"), activity=EXTERNAL_ACTIVITY))
        return screen_xml(self.screens[self.current])

    async def capture_screenshot(self) -> bytes:
        return f"png:{self.current}".encode()

    async def tap(self, x: int, y: int) -> None:
        screen = self.screens.get(self.current)
        self.taps.append((x, y))
        if screen is None:
            return
        for i, (text, target) in enumerate(screen.buttons):
            b = button_bounds(i)
            if b.left <= x <= b.right and b.top <= y <= b.bottom:
                self.tapped_texts.append(text)
                if text in self.failing_taps:
                    raise DeviceActionError("tap", f"injected failure on {text}")
                if target is not None:
                    self.stack.append(self.current)
                    self.current = target
                return

    async def navigate_back(self) -> None:
        self.backs += 1
        self.current = self.stack.pop() if self.stack else "@launcher"

    async def launch_app(self, app_id: str) -> None:
        self.launches.append(app_id)
        if self.stuck_outside:
            self.activity_script.append(EXTERNAL_ACTIVITY)
            return
        self.stack = []
        self.current = self.home


# ---------------------------------------------------------------------------
# Fake oracle
# ---------------------------------------------------------------------------

class FakeOracle:
    """Returns scripted responses (strings, exceptions or callables of the prompt)."""

    def __init__(self, response: Union[str, BaseException, Callable[[str], str]] = "[]", delay: float = 0.0) -> None:
        self.response = response
        self.delay = delay
        self.prompts: List[str] = []
        self.contexts: List[list] = []

    async def rank(self, prompt_context, element_contexts):
        self.prompts.append(prompt_context)
        self.contexts.append(list(element_contexts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.response, BaseException):
            raise self.response
        if callable(self.response):
            return self.response(prompt_context)
        return self.response


# ---------------------------------------------------------------------------
# Recording observer
# ---------------------------------------------------------------------------

class RecordingObserver(ExplorationObserver):
    def __init__(self) -> None:
        self.events: List[Tuple[str, object]] = []
        self.states: List[ScreenState] = []
        self.logs: List[LogEntry] = []
        self.errors: List[BaseException] = []
        self.progress: List[Tuple[int, int]] = []
        self.on_new_state_hook: Optional[Callable[[ScreenState], None]] = None

    def on_new_state(self, state):
        self.states.append(state)
        self.events.append(("new_state", state.id))
        if self.on_new_state_hook:
            self.on_new_state_hook(state)

    def on_progress(self, discovered, maximum):
        self.progress.append((discovered, maximum))

    def on_log(self, entry):
        self.logs.append(entry)

    def on_complete(self):
        self.events.append(("complete", None))

    def on_error(self, error):
        self.errors.append(error)
        self.events.append(("error", error))

    def on_stop(self):
        self.events.append(("stop", None))


# ---------------------------------------------------------------------------
# Helpers & fixtures
# ---------------------------------------------------------------------------

def make_element(text: str, index: int = 0, class_name: str = "android.widget.Button") -> Element:
    bbox = button_bounds(index)
    rid = f"{APP_ID}:id/btn_{index}"
    return Element(
        fingerprint=element_fingerprint(bbox, class_name, text, rid),
        bounding_box=bbox,
        class_name=class_name,
        text=text,
        resource_id=rid,
        interactable=True,
    )


def make_settings(**overrides) -> ExplorationSettings:
    values = dict(
        max_states=50,
        max_depth=10,
        per_element_click_budget=3,
        settle_delay_ms=0,
        launch_delay_ms=0,
        stay_in_scope=True,
        app_id=APP_ID,
    )
    values.update(overrides)
    return ExplorationSettings(**values)


def png_bytes(width: int = 300, height: int = 600, color=(200, 30, 30)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="PNG")
    return out.getvalue()


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def screenshot_png():
    return png_bytes()


@pytest.fixture
def failing_oracle():
    return FakeOracle(OracleError("service unavailable"))
