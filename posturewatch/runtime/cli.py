# posturewatch command line: run the monitor, calibrate, or serve the API
from __future__ import annotations
import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

from posturewatch.common.config import AppConfig
from posturewatch.common.events import EventType
from posturewatch.common.log import setup_logging
from posturewatch.notify.permissions import AskPermission, console_prompt
from posturewatch.runtime.monitor import PostureMonitor, build_monitor

log = logging.getLogger(__name__)

CALIBRATION_COUNTDOWN_S = 5


def _print_event(ev: dict):
    kind = ev.get("type")
    if kind == EventType.TIER.value:
        print(f"[{ev['tier']}] {ev['message']}", flush=True)
    elif kind == EventType.ANALYSIS.value and not ev["is_good_posture"]:
        log.debug("%s (fps=%s)", ev["feedback"], ev["fps"])


def _make_monitor(args, config: AppConfig) -> PostureMonitor:
    source = None
    if getattr(args, "replay", None):
        from posturewatch.vision.replay import ReplayKeypointSource
        source = ReplayKeypointSource.from_file(args.replay, loop=args.loop)
    permission = AskPermission(console_prompt) if getattr(args, "ask_permission", False) else None
    return build_monitor(config, source=source, permission=permission)


async def _run(monitor: PostureMonitor, duration: Optional[float]):
    monitor.add_listener(_print_event)
    monitor.start()
    started = time.monotonic()
    try:
        while monitor.scheduler.running:
            await asyncio.sleep(0.5)
            source = monitor.source
            if getattr(source, "exhausted", False) and not monitor.scheduler.busy:
                break
            if duration is not None and time.monotonic() - started >= duration:
                break
    finally:
        monitor.close()


def cmd_run(args, config: AppConfig) -> int:
    monitor = _make_monitor(args, config)
    if monitor.store.is_needed():
        print("No valid calibration; using default thresholds. Run `posturewatch calibrate` to personalize.", flush=True)
    try:
        asyncio.run(_run(monitor, args.duration))
    except KeyboardInterrupt:
        print("\nExiting…", flush=True)
    return 0


async def _calibrate(monitor: PostureMonitor, countdown: int):
    try:
        for n in range(countdown, 0, -1):
            print(f"Maintain your best posture. Calibrating in {n}…", flush=True)
            await asyncio.sleep(1.0)
        return await monitor.calibrate()
    finally:
        monitor.close()


def cmd_calibrate(args, config: AppConfig) -> int:
    monitor = _make_monitor(args, config)
    result = asyncio.run(_calibrate(monitor, args.countdown))
    if not result.ok:
        print(f"Calibration failed: {result.message}", file=sys.stderr, flush=True)
        return 1
    settings = monitor.effective_settings()
    print(
        f"Calibrated. Shoulder threshold {settings.shoulder_alignment_threshold_px:.1f}px, "
        f"slouch threshold {settings.slouch_threshold_deg:.1f}°",
        flush=True,
    )
    return 0


def cmd_clear(args, config: AppConfig) -> int:
    from posturewatch.data.db import KeyValueStore
    from posturewatch.posture.calibration import CalibrationStore
    CalibrationStore(KeyValueStore(config.db_path), ttl_s=config.calibration_ttl_s).clear()
    print("Calibration cleared.", flush=True)
    return 0


def cmd_status(args, config: AppConfig) -> int:
    from posturewatch.data.db import KeyValueStore
    from posturewatch.posture.calibration import CalibrationStore
    kv = KeyValueStore(config.db_path)
    store = CalibrationStore(kv, ttl_s=config.calibration_ttl_s)
    profile = store.raw_record()
    settings = store.derive_settings(config.settings)
    print(json.dumps({
        "calibrated": profile is not None,
        "calibration_needed": store.is_needed(),
        "captured_at": profile.captured_at if profile else None,
        "shoulder_threshold_px": round(settings.shoulder_alignment_threshold_px, 2),
        "slouch_threshold_deg": round(settings.slouch_threshold_deg, 2),
        "recent_alerts": kv.recent_alerts(5),
    }, indent=2), flush=True)
    return 0


def cmd_serve(args, config: AppConfig) -> int:
    import uvicorn
    from posturewatch.runtime.server import create_app
    app = create_app(_make_monitor(args, config))
    uvicorn.run(app, host=args.host, port=args.port, log_level=config.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="posturewatch", description="Webcam posture monitor")
    parser.add_argument("--db", type=Path, help="sqlite file for calibration and alert history")
    parser.add_argument("--speak", action="store_true", help="read alerts aloud")
    # bare `posturewatch` behaves like `posturewatch run`
    parser.set_defaults(func=cmd_run, replay=None, loop=False, duration=None, ask_permission=False)
    sub = parser.add_subparsers(dest="command")

    def _source_args(p):
        p.add_argument("--replay", type=Path, help="JSON-lines pose recording instead of the webcam")
        p.add_argument("--loop", action="store_true", help="loop the replay")

    run = sub.add_parser("run", help="monitor posture (default)")
    _source_args(run)
    run.add_argument("--duration", type=float, help="stop after this many seconds")
    run.add_argument("--ask-permission", action="store_true", help="ask before showing the first alert")
    run.set_defaults(func=cmd_run)

    cal = sub.add_parser("calibrate", help="capture your good-posture reference")
    _source_args(cal)
    cal.add_argument("--countdown", type=int, default=CALIBRATION_COUNTDOWN_S)
    cal.set_defaults(func=cmd_calibrate)

    sub.add_parser("clear-calibration", help="forget the stored reference").set_defaults(func=cmd_clear)
    sub.add_parser("status", help="show calibration and thresholds").set_defaults(func=cmd_status)

    serve = sub.add_parser("serve", help="run the HTTP/WebSocket API")
    _source_args(serve)
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=cmd_serve)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()
    if args.db:
        config = replace(config, db_path=args.db)
    if args.speak:
        config = replace(config, speak_alerts=True)
    setup_logging(config.log_level)
    return args.func(args, config)


if __name__ == "__main__":
    sys.exit(main())
