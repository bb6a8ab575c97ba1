from __future__ import annotations
import json
import logging
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Dict, Optional

from posturewatch.common.config import DEFAULT_CALIBRATION_TTL_HOURS, HOUR_S, EffectiveSettings
from posturewatch.data.db import KeyValueStore
from posturewatch.posture.pose_core import (
    REQUIRED_JOINTS, Point, Pose, UpperBody, mean_slouch, shoulder_alignment, upper_body,
)

log = logging.getLogger(__name__)

DATA_KEY = "posture_calibration_data"
TIMESTAMP_KEY = "posture_calibration_timestamp"

# Capture acceptance limits
MIN_CAPTURE_CONFIDENCE = 0.4
MAX_CAPTURE_SHOULDER_PX = 30.0
MAX_CAPTURE_HEAD_TILT_PX = 20.0

# Derived threshold never drops below base * this
THRESHOLD_FLOOR = 0.7


class RejectReason(str, Enum):
    NO_POSE = "no_pose"
    MISSING_JOINTS = "missing_joints"
    LOW_CONFIDENCE = "low_confidence"
    SHOULDERS_NOT_LEVEL = "shoulders_not_level"
    HEAD_TILTED = "head_tilted"
    NOT_FACING_CAMERA = "not_facing_camera"


@dataclass(frozen=True)
class CalibrationProfile:
    reference_shoulder_alignment: float
    reference_left_slouch_angle: float
    reference_right_slouch_angle: float
    reference_keypoints: Dict[str, Point]
    captured_at: float

    @property
    def reference_slouch(self) -> float:
        return (self.reference_left_slouch_angle + self.reference_right_slouch_angle) / 2.0

    def to_record(self) -> dict:
        out = asdict(self)
        out.pop("captured_at")  # stored under its own key
        out["reference_keypoints"] = {k: list(v) for k, v in self.reference_keypoints.items()}
        return out

    @classmethod
    def from_record(cls, record: dict, captured_at: float) -> "CalibrationProfile":
        """Raises KeyError/TypeError/ValueError on anything short of a complete record."""
        kps = record["reference_keypoints"]
        ref = {}
        for joint in REQUIRED_JOINTS:
            x, y = kps[joint.value]
            ref[joint.value] = (float(x), float(y))
        return cls(
            reference_shoulder_alignment=float(record["reference_shoulder_alignment"]),
            reference_left_slouch_angle=float(record["reference_left_slouch_angle"]),
            reference_right_slouch_angle=float(record["reference_right_slouch_angle"]),
            reference_keypoints=ref,
            captured_at=float(captured_at),
        )


@dataclass(frozen=True)
class CaptureResult:
    ok: bool
    profile: Optional[CalibrationProfile] = None
    reason: Optional[RejectReason] = None
    message: str = ""


def _reject(reason: RejectReason, message: str) -> CaptureResult:
    return CaptureResult(ok=False, reason=reason, message=message)


def validate_capture(pose: Optional[Pose]) -> CaptureResult:
    """Check a candidate reference pose; checks run in order and stop at the first failure."""
    if pose is None:
        return _reject(RejectReason.NO_POSE, "No valid pose detected for calibration")

    kps = [pose.get(j) for j in REQUIRED_JOINTS]
    if any(kp is None for kp in kps):
        return _reject(RejectReason.MISSING_JOINTS, "Missing required body points")

    for kp in kps:
        if kp.confidence < MIN_CAPTURE_CONFIDENCE:
            return _reject(
                RejectReason.LOW_CONFIDENCE,
                f"Low confidence detection ({round(kp.confidence * 100)}%). "
                "Please ensure good lighting and positioning.",
            )

    left_shoulder, right_shoulder, left_ear, right_ear, nose = kps
    if abs(left_shoulder.y - right_shoulder.y) > MAX_CAPTURE_SHOULDER_PX:
        return _reject(RejectReason.SHOULDERS_NOT_LEVEL,
                       "Shoulders are not level enough for calibration. Please sit straight.")

    if abs(left_ear.y - right_ear.y) > MAX_CAPTURE_HEAD_TILT_PX:
        return _reject(RejectReason.HEAD_TILTED,
                       "Head is tilted. Please keep your head level for calibration.")

    if not (min(left_ear.x, right_ear.x) <= nose.x <= max(left_ear.x, right_ear.x)):
        return _reject(RejectReason.NOT_FACING_CAMERA,
                       "Please face the camera directly for calibration.")

    return CaptureResult(ok=True)


def build_profile(body: UpperBody, captured_at: float) -> CalibrationProfile:
    left, right, _ = mean_slouch(body)
    return CalibrationProfile(
        reference_shoulder_alignment=shoulder_alignment(body),
        reference_left_slouch_angle=left,
        reference_right_slouch_angle=right,
        reference_keypoints={kp.joint.value: kp.xy for kp in body.ordered()},
        captured_at=captured_at,
    )


def derive_thresholds(profile: CalibrationProfile, base: EffectiveSettings) -> EffectiveSettings:
    """Personalized thresholds: small (near-perfect) references get proportionally more tolerance."""
    ref_shoulder = profile.reference_shoulder_alignment
    shoulder = max(
        ref_shoulder * (1.5 + 10.0 / (ref_shoulder + 5.0)),
        base.shoulder_alignment_threshold_px * THRESHOLD_FLOOR,
    )
    avg_slouch = profile.reference_slouch
    slouch = max(
        avg_slouch * (1.2 + 10.0 / (avg_slouch + 10.0)),
        base.slouch_threshold_deg * THRESHOLD_FLOOR,
    )
    return base.merged(shoulder_alignment_threshold_px=shoulder, slouch_threshold_deg=slouch)


class CalibrationStore:
    """Owns the persisted reference pose and turns it into personalized thresholds."""

    def __init__(
        self,
        kv: KeyValueStore,
        ttl_s: float = DEFAULT_CALIBRATION_TTL_HOURS * HOUR_S,
        clock: Callable[[], float] = time.time,
    ):
        self.kv = kv
        self.ttl_s = ttl_s
        self.clock = clock
        self._profile: Optional[CalibrationProfile] = None
        self._loaded = False

    def capture(self, pose: Optional[Pose], now: Optional[float] = None) -> CaptureResult:
        verdict = validate_capture(pose)
        if not verdict.ok:
            log.info("calibration rejected: %s", verdict.reason.value)
            return verdict

        body = upper_body(pose)
        if body is None:
            # non-finite coordinates slipped through validation
            return _reject(RejectReason.MISSING_JOINTS, "Missing required body points")

        profile = build_profile(body, self.clock() if now is None else now)
        self.kv.set_many({
            DATA_KEY: json.dumps(profile.to_record()),
            TIMESTAMP_KEY: repr(profile.captured_at),
        })
        self._profile = profile
        self._loaded = True
        log.info(
            "calibration saved: shoulder=%.1fpx slouch=%.1f/%.1fdeg",
            profile.reference_shoulder_alignment,
            profile.reference_left_slouch_angle,
            profile.reference_right_slouch_angle,
        )
        return CaptureResult(ok=True, profile=profile)

    def load(self) -> Optional[CalibrationProfile]:
        """Read the stored profile; a corrupt record is cleared and reported as absent."""
        if self._loaded:
            return self._profile
        data = self.kv.get(DATA_KEY)
        stamp = self.kv.get(TIMESTAMP_KEY)
        profile = None
        if data is not None and stamp is not None:
            try:
                profile = CalibrationProfile.from_record(json.loads(data), float(stamp))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                log.warning("discarding unreadable calibration record: %s", e)
                self.clear()
                return None
        elif data is not None or stamp is not None:
            log.warning("discarding half-written calibration record")
            self.clear()
            return None
        self._profile = profile
        self._loaded = True
        return profile

    def reload(self) -> Optional[CalibrationProfile]:
        self._loaded = False
        self._profile = None
        return self.load()

    def raw_record(self) -> Optional[CalibrationProfile]:
        """Stored profile even when expired (diagnostics only)."""
        return self.load()

    def is_expired(self, profile: CalibrationProfile, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        return now - profile.captured_at > self.ttl_s

    def active_profile(self, now: Optional[float] = None) -> Optional[CalibrationProfile]:
        profile = self.load()
        if profile is None or self.is_expired(profile, now):
            return None
        return profile

    def is_needed(self, now: Optional[float] = None) -> bool:
        return self.active_profile(now) is None

    def derive_settings(self, base: EffectiveSettings, now: Optional[float] = None) -> EffectiveSettings:
        profile = self.active_profile(now)
        if profile is None:
            return base
        return derive_thresholds(profile, base)

    def clear(self) -> None:
        self.kv.delete(DATA_KEY, TIMESTAMP_KEY)
        self._profile = None
        self._loaded = True
        log.info("calibration cleared")
