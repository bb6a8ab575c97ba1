from __future__ import annotations
import asyncio
import logging
import time
from collections import Counter
from typing import Callable, Optional, Protocol

from posturewatch.posture.pose_core import Pose

log = logging.getLogger(__name__)

FPS_SMOOTHING = 0.9


class KeypointSource(Protocol):
    async def next_pose(self) -> Optional[Pose]: ...

    def close(self) -> None: ...


class FrameScheduler:
    """Single-task pull loop: tick → await a pose → run the pipeline on it.

    At most one run is in flight; a tick that arrives while the previous run is
    still awaiting inference is dropped, not queued. Every run carries the
    generation it started in and its result is discarded if the scheduler was
    stopped (or restarted) while it was awaiting the source.
    """

    def __init__(
        self,
        source: KeypointSource,
        process: Callable[[Optional[Pose]], object],
        on_stop: Optional[Callable[[], None]] = None,
        target_fps: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.process = process
        self.on_stop = on_stop
        self.interval_s = 1.0 / target_fps if target_fps > 0 else 0.0
        self.clock = clock

        self.fps = 0.0
        self.frames = 0
        self.dropped_ticks = 0
        self.errors = 0
        self.running = False

        self._generation = 0
        self._loop_task: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._last_tick: Optional[float] = None
        # reason -> number of holders; overlapping callers each need their own resume
        self._suspended: Counter = Counter()
        self._resumed = asyncio.Event()
        self._resumed.set()

    @property
    def suspended(self) -> bool:
        return bool(self._suspended)

    @property
    def busy(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def start(self) -> None:
        """Begin ticking on the running event loop (no-op if already running)."""
        if self.running:
            return
        self.running = True
        self._generation += 1
        self._last_tick = None
        self._loop_task = asyncio.get_running_loop().create_task(self._run())
        log.info("frame scheduler started (%.0f fps target)", 1.0 / self.interval_s if self.interval_s else 0)

    def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        self._generation += 1  # late results from the old generation are ignored
        for task in (self._in_flight, self._loop_task):
            if task is not None and not task.done():
                task.cancel()
        self._in_flight = None
        self._loop_task = None
        self._last_tick = None
        if self.on_stop is not None:
            self.on_stop()
        log.info("frame scheduler stopped (frames=%d dropped=%d)", self.frames, self.dropped_ticks)

    def suspend(self, reason: str = "hidden") -> None:
        if not self._suspended[reason]:
            log.debug("suspended: %s", reason)
        self._suspended[reason] += 1
        self._resumed.clear()

    def resume(self, reason: str = "hidden") -> None:
        if self._suspended[reason] > 1:
            self._suspended[reason] -= 1
            return
        self._suspended.pop(reason, None)
        if not self._suspended:
            self._resumed.set()

    async def drain(self) -> None:
        """Wait for the in-flight run (if any) to finish."""
        task = self._in_flight
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _run(self) -> None:
        while self.running:
            if self._suspended:
                # idle until resumed; the gap must not count towards fps
                self._last_tick = None
                await self._resumed.wait()
                continue
            self.tick()
            await asyncio.sleep(self.interval_s)

    def tick(self) -> bool:
        """One scheduling tick; returns False when the tick was dropped."""
        now = self.clock()
        if self._last_tick is not None:
            delta_ms = (now - self._last_tick) * 1000.0
            if delta_ms > 0:
                self.fps = self.fps * FPS_SMOOTHING + (1000.0 / delta_ms) * (1.0 - FPS_SMOOTHING)
        self._last_tick = now

        if self.busy:
            self.dropped_ticks += 1
            return False
        self._in_flight = asyncio.get_running_loop().create_task(self._run_once(self._generation))
        return True

    async def _run_once(self, token: int) -> None:
        if token != self._generation:
            return
        try:
            pose = await self.source.next_pose()
        except Exception:
            self.errors += 1
            log.exception("keypoint source failed")
            return
        if token != self._generation:
            log.debug("discarding result that arrived after stop")
            return
        self.frames += 1
        try:
            self.process(pose)
        except Exception:
            self.errors += 1
            log.exception("frame pipeline failed")
