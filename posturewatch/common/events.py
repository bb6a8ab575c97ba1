from __future__ import annotations
import math
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Optional, Tuple

NOTIFICATION_TOPIC = "posturewatch.notifications"


class EventType(str, Enum):
    MONITOR_STARTED = "monitor_started"
    MONITOR_STOPPED = "monitor_stopped"
    VISIBILITY = "visibility"
    ANALYSIS = "analysis"
    TIER = "tier"
    ALERT = "alert"
    CALIBRATED = "calibrated"
    CALIBRATION_CLEARED = "calibration_cleared"
    NOTIFICATION_SENT = "notification_sent"


@dataclass
class AnalysisEvent:
    type: EventType
    ts: float
    is_good_posture: bool
    feedback: str
    shoulder_alignment: float
    slouch_level: float
    critical_points: List[Tuple[float, float]] = field(default_factory=list)
    fps: float = 0.0

    def to_dict(self) -> dict:
        out = asdict(self)
        out["type"] = self.type.value
        out["critical_points"] = [list(p) for p in self.critical_points]
        return out


@dataclass
class TierEvent:
    type: EventType
    ts: float
    tier: str
    duration_s: float
    message: str

    def to_dict(self) -> dict:
        out = asdict(self)
        out["type"] = self.type.value
        return out


@dataclass
class AlertEvent:
    type: EventType
    ts: float
    title: str
    body: str
    tag: str
    tier: Optional[str] = None

    def to_dict(self) -> dict:
        out = asdict(self)
        out["type"] = self.type.value
        return out


@dataclass
class CooldownMessage:
    """Broadcast to sibling instances whenever one of them shows an alert."""
    instance_id: str
    timestamp: float
    type: EventType = EventType.NOTIFICATION_SENT

    def to_dict(self) -> dict:
        return {"type": self.type.value, "instance_id": self.instance_id, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict) -> Optional["CooldownMessage"]:
        # anything malformed is ignored by the receiver
        if not isinstance(data, dict) or data.get("type") != EventType.NOTIFICATION_SENT.value:
            return None
        try:
            timestamp = float(data["timestamp"])
            instance_id = str(data["instance_id"])
        except (KeyError, TypeError, ValueError):
            return None
        # json.loads accepts Infinity and NaN
        if not math.isfinite(timestamp):
            return None
        return cls(instance_id=instance_id, timestamp=timestamp)
