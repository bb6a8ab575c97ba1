import json

import pytest

from posturewatch.common.config import HOUR_S, EffectiveSettings
from posturewatch.data.db import KeyValueStore
from posturewatch.posture.calibration import (
    DATA_KEY, THRESHOLD_FLOOR, TIMESTAMP_KEY, CalibrationStore, RejectReason, validate_capture,
)

BASE = EffectiveSettings()


@pytest.mark.parametrize("overrides, reason", [
    ({"conf": 0.3}, RejectReason.LOW_CONFIDENCE),
    ({"left_shoulder": (100.0, 169.0)}, RejectReason.SHOULDERS_NOT_LEVEL),
    ({"left_ear": (100.0, 79.0)}, RejectReason.HEAD_TILTED),
    ({"nose": (320.0, 100.0)}, RejectReason.NOT_FACING_CAMERA),
    ({"drop": ("nose",)}, RejectReason.MISSING_JOINTS),
])
def test_capture_rejections(kv, clock, make_pose, overrides, reason):
    store = CalibrationStore(kv, clock=clock)
    result = store.capture(make_pose(**overrides))
    assert not result.ok
    assert result.reason == reason
    assert result.message
    assert kv.get(DATA_KEY) is None
    assert kv.get(TIMESTAMP_KEY) is None


def test_capture_without_pose():
    assert validate_capture(None).reason == RejectReason.NO_POSE


def test_capture_limits_are_inclusive(make_pose):
    pose = make_pose(left_shoulder=(100.0, 170.0), left_ear=(100.0, 80.0), conf=0.4)
    assert validate_capture(pose).ok


def test_capture_persists_complete_profile(kv, clock, make_pose):
    store = CalibrationStore(kv, clock=clock)
    result = store.capture(make_pose(left_shoulder=(100.0, 190.0)))
    assert result.ok
    record = json.loads(kv.get(DATA_KEY))
    assert record["reference_shoulder_alignment"] == pytest.approx(10.0)
    assert set(record["reference_keypoints"]) == {
        "left_shoulder", "right_shoulder", "left_ear", "right_ear", "nose",
    }
    assert float(kv.get(TIMESTAMP_KEY)) == clock.now
    assert not store.is_needed()


def test_profile_round_trip_through_storage(tmp_path, clock, make_pose):
    path = tmp_path / "cal.db"
    writer = CalibrationStore(KeyValueStore(path), clock=clock)
    assert writer.capture(make_pose(left_shoulder=(100.0, 192.0), left_ear=(110.0, 95.0))).ok
    before = writer.derive_settings(BASE)

    reader = CalibrationStore(KeyValueStore(path), clock=clock)
    assert reader.load() == writer.load()
    assert reader.derive_settings(BASE) == before


def test_derived_thresholds_never_drop_below_floor(kv, clock, make_pose):
    store = CalibrationStore(kv, clock=clock)
    store.capture(make_pose())
    settings = store.derive_settings(BASE)
    # a perfect reference still leaves room to move
    assert settings.shoulder_alignment_threshold_px == pytest.approx(BASE.shoulder_alignment_threshold_px * THRESHOLD_FLOOR)
    assert settings.slouch_threshold_deg == pytest.approx(BASE.slouch_threshold_deg * THRESHOLD_FLOOR)
    assert settings.notification_cooldown_ms == BASE.notification_cooldown_ms


def test_expired_profile_falls_back_to_base(kv, clock, make_pose):
    store = CalibrationStore(kv, ttl_s=24 * HOUR_S, clock=clock)
    store.capture(make_pose(left_shoulder=(100.0, 180.0)))
    assert store.derive_settings(BASE) != BASE

    clock.advance(24 * HOUR_S + 1)
    assert store.is_needed()
    assert store.derive_settings(BASE) == BASE
    assert store.raw_record() is not None


def test_corrupt_record_is_cleared(kv, clock):
    kv.set_many({DATA_KEY: "{not json", TIMESTAMP_KEY: "123.0"})
    store = CalibrationStore(kv, clock=clock)
    assert store.load() is None
    assert kv.get(DATA_KEY) is None
    assert store.derive_settings(BASE) == BASE


def test_half_written_record_is_cleared(kv, clock):
    kv.set(DATA_KEY, json.dumps({"reference_shoulder_alignment": 1.0}))
    store = CalibrationStore(kv, clock=clock)
    assert store.load() is None
    assert kv.get(DATA_KEY) is None


def test_clear(kv, clock, make_pose):
    store = CalibrationStore(kv, clock=clock)
    store.capture(make_pose())
    store.clear()
    assert store.is_needed()
    assert store.reload() is None


@pytest.mark.parametrize("overrides", [
    {"conf": 0.3},
    {"left_shoulder": (100.0, 169.0)},
    {"left_ear": (100.0, 79.0)},
    {"nose": (320.0, 100.0)},
    {"drop": ("nose",)},
])
def test_rejected_capture_keeps_existing_profile(kv, clock, make_pose, overrides):
    store = CalibrationStore(kv, clock=clock)
    assert store.capture(make_pose(left_shoulder=(100.0, 190.0))).ok
    data, stamp = kv.get(DATA_KEY), kv.get(TIMESTAMP_KEY)
    profile = store.load()

    clock.advance(60)
    assert not store.capture(make_pose(**overrides)).ok
    assert not store.capture(None).ok

    assert (kv.get(DATA_KEY), kv.get(TIMESTAMP_KEY)) == (data, stamp)
    assert store.load() == profile
    assert store.reload() == profile
