import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .config import DEFAULT_IGNORED_CLASSES, ExplorationSettings, OracleSettings, parse_class_list
from .device import AdbDeviceDriver
from .errors import ConfigError, OracleError
from .exploration_engine import ExplorationEngine
from .knowledge import ExplorationMode, SessionStatus
from .observer import LoggingObserver
from .oracle_client import OpenAIOracle

logger = logging.getLogger("app_explorer")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run App-Explorer against an Android app over adb")
    parser.add_argument("--app", required=True, help="Package name of the app to explore, e.g. com.example.shop")
    parser.add_argument("--serial", default=os.getenv("ANDROID_SERIAL"), help="adb device serial (default: $ANDROID_SERIAL)")
    parser.add_argument("--adb", default=os.getenv("ADB_PATH", "adb"), help="Path to the adb binary")
    parser.add_argument("--max-states", type=int, default=20, help="Maximum number of distinct screens to record")
    parser.add_argument("--max-depth", type=int, default=10, help="Maximum tap depth from the start screen")
    parser.add_argument("--max-clicks", type=int, default=3, help="Maximum taps on the same element")
    parser.add_argument("--delay", type=int, default=1000, help="Milliseconds to wait after each tap / back")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in ExplorationMode],
        default=ExplorationMode.SEQUENTIAL.value,
        help="Element ordering policy",
    )
    parser.add_argument("--goal", help="Goal prompt, e.g. '[Login]\\n1. Tap email\\n2. Tap submit'")
    parser.add_argument("--goal-file", help="Read the goal prompt from a file")
    parser.add_argument(
        "--ignore",
        action="append",
        help=f"Element classes to skip (repeatable or comma separated, default: {', '.join(sorted(DEFAULT_IGNORED_CLASSES))})",
    )
    parser.add_argument("--allow-leave-app", action="store_true", help="Do not relaunch the app when it loses focus")
    parser.add_argument("--no-launch", action="store_true", help="Explore from the current screen without launching the app")
    parser.add_argument("--graph", action="store_true", help="Print the discovered screen graph as JSON on exit")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def _read_goal(args: argparse.Namespace) -> Optional[str]:
    if args.goal_file:
        with open(args.goal_file, "r", encoding="utf-8") as fh:
            return fh.read()
    if args.goal:
        return args.goal.replace("\\n", "\n")
    return None


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_dotenv()

    try:
        settings = ExplorationSettings(
            max_states=args.max_states,
            max_depth=args.max_depth,
            per_element_click_budget=args.max_clicks,
            settle_delay_ms=args.delay,
            stay_in_scope=not args.allow_leave_app,
            ignored_classes=parse_class_list(args.ignore) if args.ignore else DEFAULT_IGNORED_CLASSES,
            mode=ExplorationMode(args.mode),
            goal_prompt=_read_goal(args),
            app_id=args.app,
            launch_on_start=not args.no_launch,
        )
        oracle_settings = OracleSettings.from_env()
    except (ConfigError, OSError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    oracle = None
    if settings.mode == ExplorationMode.ORACLE_GUIDED:
        try:
            oracle = OpenAIOracle(oracle_settings)
        except OracleError as exc:
            logger.warning("%s - oracle_guided mode will fall back to random scoring", exc)

    driver = AdbDeviceDriver(serial=args.serial, adb_path=args.adb)
    engine = ExplorationEngine(oracle=oracle, oracle_timeout=oracle_settings.timeout * 2)

    async def _run():
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, engine.stop)
        except (NotImplementedError, RuntimeError):
            pass  # e.g. Windows event loops
        return await engine.explore(driver, settings, LoggingObserver())

    print(f"Starting exploration of {settings.app_id}")
    result = asyncio.run(_run())
    print(f"Exploration {result.status.value}. Distinct screens: {len(result.states)}")
    print(f"Taps: {result.click_count}, transitions: {len(result.edges)}")
    if args.graph:
        json.dump(result.to_flowchart(), sys.stdout, indent=2)
        print()
    return 1 if result.status == SessionStatus.ERROR else 0


if __name__ == "__main__":
    sys.exit(main())
