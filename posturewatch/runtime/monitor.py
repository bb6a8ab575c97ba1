from __future__ import annotations
import logging
import time
from typing import Callable, List, Optional

from posturewatch.common.config import AppConfig, EffectiveSettings
from posturewatch.common.events import AlertEvent, AnalysisEvent, EventType, TierEvent
from posturewatch.data.db import KeyValueStore
from posturewatch.notify.alerts import ALERT_TAG, ALERT_TITLE, FanOutAlertSink, LogAlertSink
from posturewatch.notify.gate import GateDecision, NotificationGate
from posturewatch.notify.permissions import AlwaysGranted, PermissionProvider
from posturewatch.notify.transport import LocalBus, Transport
from posturewatch.posture.calibration import CalibrationStore, CaptureResult
from posturewatch.posture.metrics import AnalysisResult, analyze
from posturewatch.posture.pose_core import Pose
from posturewatch.posture.tracker import TemporalStatusTracker
from posturewatch.runtime.scheduler import FrameScheduler, KeypointSource

log = logging.getLogger(__name__)

Listener = Callable[[dict], None]

CALIBRATING = "calibrating"
HIDDEN = "hidden"


class PostureMonitor:
    """Wires the pipeline together: scheduler → classifier → tracker → gate.

    Owns the lifecycle of each part; everything runs on one event loop.
    """

    def __init__(
        self,
        source: KeypointSource,
        store: CalibrationStore,
        gate: NotificationGate,
        base_settings: Optional[EffectiveSettings] = None,
        kv: Optional[KeyValueStore] = None,
        target_fps: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.store = store
        self.gate = gate
        self.kv = kv
        self.clock = clock
        self.tracker = TemporalStatusTracker()
        self.scheduler = FrameScheduler(source, self.process, on_stop=self.tracker.reset, target_fps=target_fps)
        self.base_settings = base_settings or EffectiveSettings()
        self.last_result: Optional[AnalysisResult] = None
        self.visible = True
        self._listeners: List[Listener] = []
        self._apply_gate_settings()

    # Listeners (websocket clients, CLI printer)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _remove

    def _emit(self, payload: dict) -> None:
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                log.exception("event listener failed")

    # Settings

    def effective_settings(self, now: Optional[float] = None) -> EffectiveSettings:
        return self.store.derive_settings(self.base_settings, now)

    def update_settings(self, **changes) -> EffectiveSettings:
        self.base_settings = self.base_settings.merged(**changes)
        self._apply_gate_settings()
        log.info("settings updated: %s", {k: v for k, v in changes.items() if v is not None})
        return self.base_settings

    def _apply_gate_settings(self) -> None:
        self.gate.enabled = self.base_settings.notifications_enabled
        self.gate.cooldown_ms = self.base_settings.notification_cooldown_ms

    # Pipeline

    def process(self, pose: Optional[Pose]) -> AnalysisResult:
        now = self.clock()
        result = analyze(pose, self.effective_settings(now))
        self.last_result = result
        self._emit(AnalysisEvent(
            type=EventType.ANALYSIS,
            ts=now,
            is_good_posture=result.is_good_posture,
            feedback=result.feedback,
            shoulder_alignment=result.shoulder_alignment,
            slouch_level=result.slouch_level,
            critical_points=list(result.critical_points),
            fps=round(self.scheduler.fps, 1),
        ).to_dict())

        due = self.tracker.update(result.is_good_posture, now)
        if due is not None:
            self._emit(TierEvent(EventType.TIER, now, due.tier.value, due.duration_s, due.message).to_dict())
            self.notify(due.message, tier=due.tier.value, now=now)
        return result

    def notify(self, message: str, tier: Optional[str] = None, now: Optional[float] = None) -> GateDecision:
        now = self.clock() if now is None else now
        decision = self.gate.fire(message, tier=tier, now=now)
        if decision != GateDecision.FIRED:
            return decision
        if self.kv is not None:
            try:
                self.kv.insert_alert(now, message, tier, self.gate.instance_id)
            except Exception:
                log.exception("could not record alert")
        self._emit(AlertEvent(EventType.ALERT, now, ALERT_TITLE, message, ALERT_TAG, tier).to_dict())
        return decision

    # Lifecycle

    def start(self) -> None:
        if self.scheduler.running:
            return
        if self.store.is_needed():
            log.info("no valid calibration, using default thresholds")
        self.scheduler.start()
        self._emit({"type": EventType.MONITOR_STARTED.value, "ts": self.clock()})

    def stop(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.stop()
        self._emit({"type": EventType.MONITOR_STOPPED.value, "ts": self.clock()})

    def set_visible(self, visible: bool) -> None:
        # visibility is a state, not a nested hold; repeated reports are no-ops
        if visible == self.visible:
            return
        self.visible = visible
        if visible:
            self.scheduler.resume(HIDDEN)
        else:
            self.scheduler.suspend(HIDDEN)
        self._emit({"type": EventType.VISIBILITY.value, "ts": self.clock(), "visible": visible})

    async def calibrate(self) -> CaptureResult:
        """Capture the current pose as the good-posture reference.

        Frame analysis is paused for the duration so no run reads a half-written profile.
        """
        self.scheduler.suspend(CALIBRATING)
        try:
            await self.scheduler.drain()
            pose = await self.source.next_pose()
            result = self.store.capture(pose)
            if result.ok:
                self.tracker.reset()
                self._emit({"type": EventType.CALIBRATED.value, "ts": self.clock()})
            return result
        finally:
            self.scheduler.resume(CALIBRATING)

    def clear_calibration(self) -> None:
        self.store.clear()
        self._emit({"type": EventType.CALIBRATION_CLEARED.value, "ts": self.clock()})

    def status(self) -> dict:
        now = self.clock()
        settings = self.effective_settings(now)
        return {
            "running": self.scheduler.running,
            "suspended": self.scheduler.suspended,
            "fps": round(self.scheduler.fps, 1),
            "frames": self.scheduler.frames,
            "dropped_ticks": self.scheduler.dropped_ticks,
            "tracker_state": self.tracker.state.value,
            "bad_duration_s": round(self.tracker.duration(now), 1),
            "calibration_needed": self.store.is_needed(now),
            "notifications_enabled": self.gate.enabled,
            "transport": self.gate.transport is not None,
            "instance_id": self.gate.instance_id,
            "shoulder_threshold_px": settings.shoulder_alignment_threshold_px,
            "slouch_threshold_deg": settings.slouch_threshold_deg,
            "last_feedback": self.last_result.feedback if self.last_result else None,
        }

    def close(self) -> None:
        self.stop()
        self.gate.close()
        for part in (self.source, self.gate.sink, self.kv):
            close = getattr(part, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception:
                log.exception("closing %s failed", type(part).__name__)


def build_monitor(
    config: Optional[AppConfig] = None,
    source: Optional[KeypointSource] = None,
    transport: Optional[Transport] = None,
    permission: Optional[PermissionProvider] = None,
    kv: Optional[KeyValueStore] = None,
) -> PostureMonitor:
    """Composition root used by the CLI and the server."""
    config = config or AppConfig.from_env()
    kv = kv or KeyValueStore(config.db_path)
    if source is None:
        from posturewatch.vision.mediapipe_source import MediaPipeKeypointSource
        source = MediaPipeKeypointSource(
            config.pose_model,
            camera_index=config.camera_index,
            min_detection_confidence=config.settings.min_keypoint_confidence,
        )

    sink = FanOutAlertSink([LogAlertSink()])
    if config.speak_alerts:
        from posturewatch.notify.speech import SpeechAlertSink
        sink.add(SpeechAlertSink())

    gate = NotificationGate(
        sink=sink,
        transport=transport if transport is not None else LocalBus(),
        permission=permission or AlwaysGranted(),
        cooldown_ms=config.settings.notification_cooldown_ms,
        enabled=config.settings.notifications_enabled,
        auto_dismiss_s=config.alert_dismiss_s,
    )
    store = CalibrationStore(kv, ttl_s=config.calibration_ttl_s)
    return PostureMonitor(
        source=source,
        store=store,
        gate=gate,
        base_settings=config.settings,
        kv=kv,
        target_fps=config.target_fps,
    )
