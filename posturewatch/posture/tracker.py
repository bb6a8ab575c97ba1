from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

log = logging.getLogger(__name__)

# Alert cadence (seconds of continuous bad posture)
FIRST_ALERT_S = 5.0
EARLY_INTERVAL_S = 10.0
SUSTAINED_FROM_S = 60.0
SUSTAINED_INTERVAL_S = 30.0


class TrackerState(str, Enum):
    NEUTRAL = "neutral"
    BAD_ACTIVE = "bad_active"


class Tier(str, Enum):
    NONE = "none"
    T1 = "t1"   # first alert
    T2 = "t2"   # frequent early reminders
    T3 = "t3"   # infrequent sustained reminders


@dataclass
class BadPostureSession:
    started_at: Optional[float] = None
    last_tier_fired: Tier = Tier.NONE
    last_boundary_s: float = 0.0


@dataclass(frozen=True)
class TierAlert:
    tier: Tier
    duration_s: float
    message: str


def tier_message(tier: Tier, duration_s: float) -> str:
    if tier == Tier.T3:
        minutes = int(duration_s // 60)
        unit = "minute" if minutes == 1 else "minutes"
        return f"You've had poor posture for {minutes} {unit}. Time to stand up and stretch!"
    return f"You've had poor posture for {int(duration_s)} seconds. Take a break!"


def due_boundary(duration_s: float) -> Optional[tuple]:
    """(tier, boundary) of the latest alert boundary reached at this duration."""
    if duration_s >= SUSTAINED_FROM_S:
        return Tier.T3, math.floor(duration_s / SUSTAINED_INTERVAL_S) * SUSTAINED_INTERVAL_S
    if duration_s >= EARLY_INTERVAL_S:
        return Tier.T2, math.floor(duration_s / EARLY_INTERVAL_S) * EARLY_INTERVAL_S
    if duration_s >= FIRST_ALERT_S:
        return Tier.T1, FIRST_ALERT_S
    return None


class TemporalStatusTracker:
    """Tracks how long bad posture has lasted and decides when a reminder is due.

    Alerts are edge-triggered on duration boundaries so irregular tick timing
    never double-fires a boundary; one tick yields at most one alert.
    """

    def __init__(self):
        self.state = TrackerState.NEUTRAL
        self.session = BadPostureSession()
        self._last_now: Optional[float] = None

    def duration(self, now: Optional[float] = None) -> float:
        if self.state != TrackerState.BAD_ACTIVE or self.session.started_at is None:
            return 0.0
        ref = self._last_now if now is None else now
        if ref is None:
            return 0.0
        return max(0.0, ref - self.session.started_at)

    def update(self, is_good: bool, now: float) -> Optional[TierAlert]:
        self._last_now = now
        if is_good:
            if self.state == TrackerState.BAD_ACTIVE:
                log.debug("posture recovered after %.1fs", self.duration(now))
            self.reset()
            return None

        if self.state == TrackerState.NEUTRAL:
            self.state = TrackerState.BAD_ACTIVE
            self.session = BadPostureSession(started_at=now)
            log.debug("bad posture session started")

        elapsed = self.duration(now)
        due = due_boundary(elapsed)
        if due is None:
            return None
        tier, boundary = due
        if boundary <= self.session.last_boundary_s:
            return None

        self.session.last_boundary_s = boundary
        self.session.last_tier_fired = tier
        return TierAlert(tier=tier, duration_s=elapsed, message=tier_message(tier, elapsed))

    def reset(self) -> None:
        self.state = TrackerState.NEUTRAL
        self.session = BadPostureSession()
