from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Tuple

from posturewatch.common.config import EffectiveSettings
from posturewatch.posture.pose_core import Point, Pose, UpperBody, mean_slouch, shoulder_alignment, upper_body

NO_PERSON = "No person detected"
MISSING_JOINTS = "Cannot detect key body points"
GOOD_POSTURE = "Your posture looks good!"

# slouch above threshold * this counts as "significantly"
SEVERE_SLOUCH_FACTOR = 1.5


@dataclass(frozen=True)
class AnalysisResult:
    shoulder_alignment: float
    slouch_level: float
    is_good_posture: bool
    feedback: str
    critical_points: Tuple[Point, ...] = ()


def analyze(pose: Optional[Pose], settings: EffectiveSettings) -> AnalysisResult:
    """Classify one frame's pose against the effective thresholds.

    Pure: never raises for well-formed numeric input and keeps no state. Missing
    or low-confidence joints produce a bad result with an explanatory message.
    """
    if pose is None:
        return AnalysisResult(0.0, 0.0, False, NO_PERSON)

    body = upper_body(pose, settings.min_keypoint_confidence)
    if body is None:
        return AnalysisResult(0.0, 0.0, False, MISSING_JOINTS)

    alignment = shoulder_alignment(body)
    _, _, slouch = mean_slouch(body)

    shoulder_ok = alignment < settings.shoulder_alignment_threshold_px
    slouch_ok = slouch < settings.slouch_threshold_deg

    return AnalysisResult(
        shoulder_alignment=alignment,
        slouch_level=slouch,
        is_good_posture=shoulder_ok and slouch_ok,
        feedback=feedback_for(body, shoulder_ok, slouch_ok, slouch, settings.slouch_threshold_deg),
        critical_points=tuple(kp.xy for kp in body.ordered()),
    )


def higher_shoulder(body: UpperBody) -> str:
    # smaller y is higher on screen (frames are not mirrored)
    return "left" if body.left_shoulder.y < body.right_shoulder.y else "right"


def feedback_for(body: UpperBody, shoulder_ok: bool, slouch_ok: bool, slouch: float, slouch_threshold: float) -> str:
    if not shoulder_ok and not slouch_ok:
        return (f"Fix your posture: your {higher_shoulder(body)} shoulder is higher, "
                "level your shoulders and sit up straight")
    if not shoulder_ok:
        return f"Your {higher_shoulder(body)} shoulder is higher. Try to level your shoulders"
    if not slouch_ok:
        severity = "slightly" if slouch <= slouch_threshold * SEVERE_SLOUCH_FACTOR else "significantly"
        return f"You're {severity} slouching forward. Sit up straight!"
    return GOOD_POSTURE
