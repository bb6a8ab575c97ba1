import pytest

from posturewatch.common.config import HOUR_S, AppConfig, EffectiveSettings
from posturewatch.common.events import CooldownMessage


def test_defaults(monkeypatch):
    for name in ("POSTUREWATCH_SLOUCH_THRESHOLD_DEG", "POSTUREWATCH_ALERT_DISMISS_S", "POSTUREWATCH_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    config = AppConfig.from_env()
    assert config.settings.slouch_threshold_deg == 20.0
    assert config.calibration_ttl_s == 24 * HOUR_S
    assert config.alert_dismiss_s == 10.0


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("POSTUREWATCH_DB_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("POSTUREWATCH_NOTIFY_COOLDOWN_MS", "5000")
    monkeypatch.setenv("POSTUREWATCH_NOTIFICATIONS_ENABLED", "no")
    monkeypatch.setenv("POSTUREWATCH_ALERT_DISMISS_S", "90")
    monkeypatch.setenv("POSTUREWATCH_LOG_LEVEL", "debug")
    config = AppConfig.from_env()
    assert config.db_path == tmp_path / "x.db"
    assert config.settings.notification_cooldown_ms == 5000
    assert config.settings.notifications_enabled is False
    assert config.alert_dismiss_s == 30.0
    assert config.log_level == "DEBUG"


def test_bad_number_names_the_variable(monkeypatch):
    monkeypatch.setenv("POSTUREWATCH_TARGET_FPS", "fast")
    with pytest.raises(ValueError, match="POSTUREWATCH_TARGET_FPS"):
        AppConfig.from_env()


def test_merged_ignores_none():
    base = EffectiveSettings()
    changed = base.merged(slouch_threshold_deg=None, notifications_enabled=False)
    assert changed.slouch_threshold_deg == base.slouch_threshold_deg
    assert changed.notifications_enabled is False


def test_cooldown_message_parsing():
    msg = CooldownMessage("abc", 12.5)
    assert CooldownMessage.from_dict(msg.to_dict()) == msg
    assert CooldownMessage.from_dict({"type": "notification_sent", "timestamp": "soon", "instance_id": "x"}) is None
    assert CooldownMessage.from_dict(["not", "a", "dict"]) is None


def test_cooldown_message_rejects_non_finite_timestamps():
    for stamp in (float("inf"), float("-inf"), float("nan")):
        assert CooldownMessage.from_dict({"type": "notification_sent", "instance_id": "x", "timestamp": stamp}) is None
