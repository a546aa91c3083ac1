"""
Feature extraction tests

Geometry of the four posture features relative to a baseline.
"""

import math

import pytest

from posture_service.models.feature_extractor import (
    extract_features,
    neck_tilt_deg,
    shoulder_width,
)
from posture_service.models.keypoints import HIP_L, MissingKeypointError, PoseFrame, Keypoint


def test_identical_frames_produce_zero_deviation(neutral_frame):
    m = extract_features(neutral_frame, neutral_frame)

    assert m.shoulder_tilt == 0.0
    assert m.abs_neck_tilt_deg == 0.0
    assert m.fwd_head_score == 0.0
    assert m.torso_reduce == 0.0
    assert m.shoulder_width == pytest.approx(0.2)
    assert m.shoulder_width_base == pytest.approx(0.2)


def test_extraction_is_deterministic(make_frame):
    baseline = make_frame()
    current = make_frame(head=(0.03, -0.12), shoulder_r=(0.1, 0.01), hip_l=(-0.1, 0.35))

    first = extract_features(baseline, current)
    second = extract_features(baseline, current)

    assert first == second


def test_shoulder_tilt_sign_follows_right_shoulder(make_frame):
    baseline = make_frame()

    lower_right = extract_features(baseline, make_frame(shoulder_r=(0.1, 0.02)))
    higher_right = extract_features(baseline, make_frame(shoulder_r=(0.1, -0.02)))

    assert lower_right.shoulder_tilt > 0
    assert higher_right.shoulder_tilt < 0
    assert lower_right.shoulder_tilt == pytest.approx(0.02 / math.hypot(0.2, 0.02))


def test_features_are_scale_invariant(make_frame):
    baseline = make_frame()
    current = make_frame(head=(0.02, -0.13), shoulder_r=(0.1, 0.01))

    def scaled(frame, k):
        return PoseFrame(
            timestamp=frame.timestamp,
            keypoints=tuple(Keypoint(kp.name, kp.x * k, kp.y * k) for kp in frame.keypoints),
        )

    near = extract_features(baseline, current)
    far = extract_features(scaled(baseline, 0.5), scaled(current, 0.5))

    assert far.shoulder_tilt == pytest.approx(near.shoulder_tilt)
    assert far.abs_neck_tilt_deg == pytest.approx(near.abs_neck_tilt_deg)
    assert far.fwd_head_score == pytest.approx(near.fwd_head_score)
    assert far.torso_reduce == pytest.approx(near.torso_reduce)


def test_neck_tilt_angle_from_vertical(make_frame):
    upright = make_frame(head=(0.0, -0.1))
    tilted = make_frame(head=(0.1, -0.1))

    assert neck_tilt_deg(upright) == pytest.approx(0.0)
    assert neck_tilt_deg(tilted) == pytest.approx(45.0)
    assert neck_tilt_deg(make_frame(head=(-0.1, -0.1))) == pytest.approx(-45.0)


def test_head_on_neck_reads_as_upright(make_frame):
    assert neck_tilt_deg(make_frame(head=(0.0, 0.0))) == 0.0


def test_forward_head_from_lateral_shift(make_frame):
    baseline = make_frame()
    m = extract_features(baseline, make_frame(head=(0.04, -0.15)))

    assert m.fwd_head_score == pytest.approx(0.2)


def test_forward_head_from_head_dropping_toward_neck(make_frame):
    baseline = make_frame()
    dropped = extract_features(baseline, make_frame(head=(0.0, -0.11)))
    raised = extract_features(baseline, make_frame(head=(0.0, -0.19)))

    # dy grows from -0.15 to -0.11: -delta_y is negative, lateral is zero
    assert dropped.fwd_head_score == pytest.approx(0.0)
    # dy shrinks to -0.19: head moved up relative to the neck
    assert raised.fwd_head_score == pytest.approx(0.2)


def test_torso_reduce_uses_baseline_width(make_frame):
    baseline = make_frame()
    current = make_frame(
        shoulder_l=(-0.2, 0.0),
        shoulder_r=(0.2, 0.0),
        hip_l=(-0.1, 0.35),
        hip_r=(0.1, 0.35),
    )

    m = extract_features(baseline, current)

    assert m.torso_reduce == pytest.approx(0.05 / 0.2)


def test_degenerate_shoulders_are_floored(make_frame):
    collapsed = make_frame(shoulder_l=(0.0, 0.0), shoulder_r=(0.0, 0.0))

    assert shoulder_width(collapsed) == pytest.approx(1e-6)
    m = extract_features(make_frame(), collapsed)
    assert math.isfinite(m.shoulder_tilt)
    assert math.isfinite(m.fwd_head_score)


def test_missing_keypoint_raises(make_frame):
    baseline = make_frame()
    current = PoseFrame(
        timestamp=0.0,
        keypoints=tuple(kp for kp in make_frame().keypoints if kp.name != HIP_L),
    )

    with pytest.raises(MissingKeypointError) as exc:
        extract_features(baseline, current)

    assert exc.value.name == HIP_L
    assert exc.value.role == "current"
