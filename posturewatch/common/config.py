# Runtime configuration, read from the environment (and a local .env file)
from __future__ import annotations
import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

HOUR_S = 60 * 60

# Thresholds used until the user calibrates
DEFAULT_SHOULDER_THRESHOLD_PX = 15.0
DEFAULT_SLOUCH_THRESHOLD_DEG = 20.0
DEFAULT_MIN_KEYPOINT_CONFIDENCE = 0.6
DEFAULT_NOTIFY_COOLDOWN_MS = 60_000
DEFAULT_CALIBRATION_TTL_HOURS = 24.0

ALERT_DISMISS_MIN_S = 5.0
ALERT_DISMISS_MAX_S = 30.0


@dataclass(frozen=True)
class EffectiveSettings:
    shoulder_alignment_threshold_px: float = DEFAULT_SHOULDER_THRESHOLD_PX
    slouch_threshold_deg: float = DEFAULT_SLOUCH_THRESHOLD_DEG
    min_keypoint_confidence: float = DEFAULT_MIN_KEYPOINT_CONFIDENCE
    notification_cooldown_ms: int = DEFAULT_NOTIFY_COOLDOWN_MS
    notifications_enabled: bool = True

    def merged(self, **changes) -> "EffectiveSettings":
        # None means "leave as is" so partial updates from the API can be applied directly
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


@dataclass(frozen=True)
class AppConfig:
    db_path: Path = Path("./posturewatch.db")
    settings: EffectiveSettings = EffectiveSettings()
    calibration_ttl_s: float = DEFAULT_CALIBRATION_TTL_HOURS * HOUR_S
    target_fps: float = 30.0
    camera_index: int = 0
    pose_model: Path = Path("models/pose_landmarker_lite.task")
    alert_dismiss_s: float = 10.0
    speak_alerts: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppConfig":
        settings = EffectiveSettings(
            shoulder_alignment_threshold_px=_float("POSTUREWATCH_SHOULDER_THRESHOLD_PX", DEFAULT_SHOULDER_THRESHOLD_PX),
            slouch_threshold_deg=_float("POSTUREWATCH_SLOUCH_THRESHOLD_DEG", DEFAULT_SLOUCH_THRESHOLD_DEG),
            min_keypoint_confidence=_float("POSTUREWATCH_MIN_KEYPOINT_CONFIDENCE", DEFAULT_MIN_KEYPOINT_CONFIDENCE),
            notification_cooldown_ms=int(_float("POSTUREWATCH_NOTIFY_COOLDOWN_MS", DEFAULT_NOTIFY_COOLDOWN_MS)),
            notifications_enabled=_bool("POSTUREWATCH_NOTIFICATIONS_ENABLED", True),
        )
        dismiss = _float("POSTUREWATCH_ALERT_DISMISS_S", 10.0)
        return cls(
            db_path=Path(os.getenv("POSTUREWATCH_DB_PATH", "./posturewatch.db")),
            settings=settings,
            calibration_ttl_s=_float("POSTUREWATCH_CALIBRATION_TTL_HOURS", DEFAULT_CALIBRATION_TTL_HOURS) * HOUR_S,
            target_fps=_float("POSTUREWATCH_TARGET_FPS", 30.0),
            camera_index=int(_float("POSTUREWATCH_CAMERA_INDEX", 0)),
            pose_model=Path(os.getenv("POSTUREWATCH_POSE_MODEL", "models/pose_landmarker_lite.task")),
            alert_dismiss_s=min(ALERT_DISMISS_MAX_S, max(ALERT_DISMISS_MIN_S, dismiss)),
            speak_alerts=_bool("POSTUREWATCH_SPEAK_ALERTS", False),
            log_level=os.getenv("POSTUREWATCH_LOG_LEVEL", "INFO").upper(),
        )


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return float(default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")
