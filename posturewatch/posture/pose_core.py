from __future__ import annotations
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

Point = Tuple[float, float]


class JointId(str, Enum):
    NOSE = "nose"
    LEFT_EAR = "left_ear"
    RIGHT_EAR = "right_ear"
    LEFT_SHOULDER = "left_shoulder"
    RIGHT_SHOULDER = "right_shoulder"


# Order is part of the output contract (critical_points, overlays)
REQUIRED_JOINTS: Tuple[JointId, ...] = (
    JointId.LEFT_SHOULDER,
    JointId.RIGHT_SHOULDER,
    JointId.LEFT_EAR,
    JointId.RIGHT_EAR,
    JointId.NOSE,
)


@dataclass(frozen=True)
class Keypoint:
    joint: JointId
    x: float
    y: float
    confidence: float = 1.0

    @property
    def xy(self) -> Point:
        return (self.x, self.y)


@dataclass(frozen=True)
class Pose:
    keypoints: Tuple[Keypoint, ...] = ()
    score: float = 0.0

    @classmethod
    def from_points(cls, points: Dict[str, Iterable[float]], score: float = 1.0) -> "Pose":
        """Build a pose from {"left_ear": (x, y[, confidence]), ...}; unknown names are skipped."""
        kps = []
        for name, values in points.items():
            try:
                joint = JointId(name)
            except ValueError:
                continue
            vals = list(values)
            conf = float(vals[2]) if len(vals) > 2 else 1.0
            kps.append(Keypoint(joint, float(vals[0]), float(vals[1]), conf))
        return cls(tuple(kps), score)

    def get(self, joint: JointId) -> Optional[Keypoint]:
        for kp in self.keypoints:
            if kp.joint == joint:
                return kp
        return None


@dataclass(frozen=True)
class UpperBody:
    """Total mapping of the five joints the classifier needs."""
    left_shoulder: Keypoint
    right_shoulder: Keypoint
    left_ear: Keypoint
    right_ear: Keypoint
    nose: Keypoint

    def ordered(self) -> Tuple[Keypoint, ...]:
        return (self.left_shoulder, self.right_shoulder, self.left_ear, self.right_ear, self.nose)


def upper_body(pose: Optional[Pose], min_confidence: float = 0.0) -> Optional[UpperBody]:
    """Return the five required joints, or None if any is absent or below min_confidence."""
    if pose is None:
        return None
    found: Dict[JointId, Keypoint] = {}
    for joint in REQUIRED_JOINTS:
        kp = pose.get(joint)
        if kp is None or kp.confidence < min_confidence:
            return None
        if not (math.isfinite(kp.x) and math.isfinite(kp.y)):
            return None
        found[joint] = kp
    return UpperBody(
        left_shoulder=found[JointId.LEFT_SHOULDER],
        right_shoulder=found[JointId.RIGHT_SHOULDER],
        left_ear=found[JointId.LEFT_EAR],
        right_ear=found[JointId.RIGHT_EAR],
        nose=found[JointId.NOSE],
    )


# Geometry

def angle_3pt(a: Point, b: Point, c: Point) -> float:
    """Return angle ABC in degrees with B as vertex, normalized to [0, 360)."""
    ang = math.degrees(
        math.atan2(c[1] - b[1], c[0] - b[0]) - math.atan2(a[1] - b[1], a[0] - b[0])
    )
    if ang < 0:
        ang += 360.0
    # -1e-15 + 360 rounds to 360.0
    return ang % 360.0


def slouch_angle(ear: Point, shoulder: Point) -> float:
    """Lean of the ear away from straight-above-the-shoulder, in degrees (0..180).

    Measured against a horizontal reference ray from the shoulder; image y grows
    downward, so an ear directly above the shoulder sits at 90 degrees.
    """
    raw = angle_3pt(ear, shoulder, (shoulder[0] + 10.0, shoulder[1]))
    dev = abs(raw - 90.0)
    return min(dev, 360.0 - dev)


def shoulder_alignment(body: UpperBody) -> float:
    return abs(body.left_shoulder.y - body.right_shoulder.y)


def mean_slouch(body: UpperBody) -> Tuple[float, float, float]:
    """(left, right, average) slouch angles."""
    left = slouch_angle(body.left_ear.xy, body.left_shoulder.xy)
    right = slouch_angle(body.right_ear.xy, body.right_shoulder.xy)
    return left, right, (left + right) / 2.0
