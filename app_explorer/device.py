from __future__ import annotations

"""Device automation capability consumed by the exploration engine.

The engine only depends on :class:`DeviceDriver`; :class:`AdbDeviceDriver`
implements it on top of the ``adb`` binary. Every call enforces its own
timeout and raises :class:`DeviceActionError` instead of hanging.
"""

import asyncio
import logging
import re
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from .errors import DeviceActionError

logger = logging.getLogger(__name__)

# e.g. "mCurrentFocus=Window{1c2 u0 com.example/com.example.MainActivity}"
_FOCUS_RES = (
    re.compile(r"mCurrentFocus=.*?([\w.$]+/[\w.$]+)"),
    re.compile(r"mFocusedApp=.*?([\w.$]+/[\w.$]+)"),
)
_COMPONENT_RE = re.compile(r"([\w.$]+/[\w.$]+)")

UNKNOWN_ACTIVITY = "unknown.activity"
KEYCODE_BACK = 4
DEVICE_DUMP_PATH = "/sdcard/window_dump.xml"


@runtime_checkable
class DeviceDriver(Protocol):
    async def get_current_activity(self) -> str: ...

    async def capture_hierarchy(self) -> str: ...

    async def capture_screenshot(self) -> bytes: ...

    async def tap(self, x: int, y: int) -> None: ...

    async def navigate_back(self) -> None: ...

    async def launch_app(self, app_id: str) -> None: ...


def parse_focused_activity(dumpsys_output: str) -> str:
    """Extract ``package/activity`` from ``dumpsys window`` output."""
    for pattern in _FOCUS_RES:
        match = pattern.search(dumpsys_output)
        if match:
            return match.group(1)
    match = _COMPONENT_RE.search(dumpsys_output)
    if match:
        return match.group(1)
    return UNKNOWN_ACTIVITY


def activity_in_scope(activity_id: str, app_id: str) -> bool:
    return activity_id.split("/", 1)[0] == app_id


class AdbDeviceDriver:
    """Talks to a single Android device through ``adb``."""

    def __init__(
        self,
        serial: Optional[str] = None,
        adb_path: str = "adb",
        command_timeout: float = 30.0,
    ) -> None:
        self.serial = serial
        self.adb_path = adb_path
        self.command_timeout = command_timeout

    # ------------------------------------------------------------------
    def _command(self, args: Sequence[str]) -> List[str]:
        cmd = [self.adb_path]
        if self.serial:
            cmd += ["-s", self.serial]
        return cmd + list(args)

    async def _run(self, action: str, *args: str, timeout: Optional[float] = None) -> bytes:
        cmd = self._command(args)
        logger.debug("adb: %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DeviceActionError(action, f"cannot start {self.adb_path}: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=timeout or self.command_timeout
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise DeviceActionError(action, f"timed out after {timeout or self.command_timeout}s") from exc
        if proc.returncode != 0:
            raise DeviceActionError(
                action, f"exit code {proc.returncode}: {stderr.decode(errors='replace').strip()[:300]}"
            )
        return stdout

    async def _shell(self, action: str, *args: str) -> str:
        out = await self._run(action, "shell", *args)
        return out.decode("utf-8", errors="replace")

    # --- DeviceDriver -------------------------------------------------
    async def get_current_activity(self) -> str:
        output = await self._shell("get_current_activity", "dumpsys", "window")
        return parse_focused_activity(output)

    async def capture_hierarchy(self) -> str:
        # some devices print "hierchary" instead of "hierarchy", so only look for "dumped to"
        result = await self._shell("capture_hierarchy", "uiautomator", "dump", DEVICE_DUMP_PATH)
        if "dumped to" not in result:
            raise DeviceActionError("capture_hierarchy", f"uiautomator dump failed: {result.strip()[:300]}")
        content = (await self._run("capture_hierarchy", "exec-out", "cat", DEVICE_DUMP_PATH)).decode(
            "utf-8", errors="replace"
        )
        if not content.strip():
            raise DeviceActionError("capture_hierarchy", "UI dump content is empty")
        return content

    async def capture_screenshot(self) -> bytes:
        image = await self._run("capture_screenshot", "exec-out", "screencap", "-p")
        if not image:
            raise DeviceActionError("capture_screenshot", "screencap returned no data")
        return image

    async def tap(self, x: int, y: int) -> None:
        await self._shell("tap", "input", "tap", str(int(x)), str(int(y)))

    async def navigate_back(self) -> None:
        await self._shell("navigate_back", "input", "keyevent", str(KEYCODE_BACK))

    async def launch_app(self, app_id: str) -> None:
        output = await self._shell(
            "launch_app", "monkey", "-p", app_id, "-c", "android.intent.category.LAUNCHER", "1"
        )
        if "No activities found" in output or "monkey aborted" in output:
            raise DeviceActionError("launch_app", f"{app_id} has no launchable activity")
