import pytest

from posturewatch.common.config import EffectiveSettings
from posturewatch.posture.metrics import GOOD_POSTURE, MISSING_JOINTS, NO_PERSON, analyze
from posturewatch.posture.pose_core import REQUIRED_JOINTS

DEFAULTS = EffectiveSettings()


@pytest.mark.parametrize("joint", [j.value for j in REQUIRED_JOINTS])
def test_missing_joint_is_bad_without_points(make_pose, joint):
    result = analyze(make_pose(drop=(joint,)), DEFAULTS)
    assert result.is_good_posture is False
    assert result.critical_points == ()
    assert result.feedback == MISSING_JOINTS


def test_no_pose():
    result = analyze(None, DEFAULTS)
    assert not result.is_good_posture
    assert result.feedback == NO_PERSON


def test_upright_pose_is_good(make_pose):
    result = analyze(make_pose(), DEFAULTS)
    assert result.shoulder_alignment == 0
    assert result.slouch_level == pytest.approx(0.0, abs=1e-6)
    assert result.is_good_posture
    assert result.feedback == GOOD_POSTURE
    assert result.critical_points == (
        (100.0, 200.0), (300.0, 200.0), (100.0, 100.0), (300.0, 100.0), (200.0, 100.0),
    )


def test_raised_left_shoulder_is_named(make_pose):
    result = analyze(make_pose(left_shoulder=(250.0, 180.0), right_shoulder=(350.0, 220.0)), DEFAULTS)
    assert result.shoulder_alignment == pytest.approx(40.0)
    assert not result.is_good_posture
    assert "left shoulder is higher" in result.feedback


def test_shoulder_only_feedback(make_pose):
    pose = make_pose(right_shoulder=(300.0, 180.0), right_ear=(300.0, 80.0))
    result = analyze(pose, DEFAULTS)
    assert result.slouch_level == pytest.approx(0.0, abs=1e-6)
    assert result.feedback == "Your right shoulder is higher. Try to level your shoulders"


def test_slouch_severity(make_pose):
    # ears pushed forward of the shoulders by ~14 and ~35 degrees
    slight = analyze(make_pose(left_ear=(125.0, 100.0), right_ear=(325.0, 100.0)), DEFAULTS)
    severe = analyze(make_pose(left_ear=(170.0, 100.0), right_ear=(370.0, 100.0)), DEFAULTS)
    assert slight.is_good_posture
    assert not severe.is_good_posture
    assert severe.feedback == "You're significantly slouching forward. Sit up straight!"

    tight = DEFAULTS.merged(slouch_threshold_deg=10.0)
    result = analyze(make_pose(left_ear=(125.0, 100.0), right_ear=(325.0, 100.0)), tight)
    assert result.feedback == "You're slightly slouching forward. Sit up straight!"


def test_threshold_comparison_is_strict(make_pose):
    pose = make_pose(left_shoulder=(100.0, 185.0), left_ear=(100.0, 85.0))
    assert analyze(pose, DEFAULTS.merged(shoulder_alignment_threshold_px=15.0)).is_good_posture is False
    assert analyze(pose, DEFAULTS.merged(shoulder_alignment_threshold_px=15.1)).is_good_posture is True


def test_low_confidence_joints_are_missing(make_pose):
    result = analyze(make_pose(conf=0.3), DEFAULTS)
    assert not result.is_good_posture
    assert result.feedback == MISSING_JOINTS
