"""
Frame validator tests
"""

import math

from posture_service.models.frame_validator import (
    presence_report,
    validate,
    validate_frame,
    validate_kp7,
)
from posture_service.models.keypoints import (
    CLASSIFIER_KEYPOINTS,
    KP7_NAMES,
    SHOULDER_L,
    Keypoint,
    PoseFrame,
)
from posture_service.models.pose_source import kp7_from_rows


def test_valid_kp7_passes(kp7_rows):
    report = validate_kp7(kp7_from_rows(kp7_rows))

    assert report.ok
    assert report.reasons == []
    assert report.invalid_points == []


def test_wrong_arity_fails(kp7_rows):
    report = validate_kp7(kp7_from_rows(kp7_rows[:6]))

    assert not report.ok
    assert report.reasons == ["expected 7 keypoints, got 6"]


def test_extra_rows_are_not_dropped(kp7_rows):
    kps = kp7_from_rows(kp7_rows + [[0.5, 0.5, 0.0]])

    assert len(kps) == 8
    assert kps[-1].name == "row_7"

    report = validate_kp7(kps)
    assert not report.ok
    assert report.reasons == ["expected 7 keypoints, got 8"]


def test_none_input_fails():
    assert not validate_kp7(None).ok
    assert not validate_frame(None).ok


def test_single_invalid_point_is_the_only_one_reported(make_frame):
    frame = make_frame(shoulder_l=(math.nan, 0.0))

    report = validate_frame(frame)

    assert not report.ok
    assert report.invalid_points == [SHOULDER_L]
    assert len(report.reasons) == 1
    assert SHOULDER_L in report.reasons[0]


def test_every_invalid_point_is_reported(kp7_rows):
    kp7_rows[2][0] = math.inf
    kp7_rows[5][1] = None

    report = validate_kp7(kp7_from_rows(kp7_rows))

    assert report.invalid_points == ["left_ear", "right_eye"]
    assert report.reasons == ["left_ear invalid coords", "right_eye invalid coords"]


def test_missing_named_point_is_reported(make_frame):
    frame = PoseFrame(
        timestamp=0.0,
        keypoints=tuple(kp for kp in make_frame().keypoints if kp.name != "hip_r"),
    )

    report = validate_frame(frame)

    assert report.invalid_points == ["hip_r"]
    assert report.reasons == ["hip_r missing"]


def test_lenient_ignores_confidence_and_frame_bounds():
    kps = [Keypoint(name, 1.5, -0.5, confidence=0.1) for name in KP7_NAMES]

    assert validate_kp7(kps).ok


def test_strict_rejects_low_confidence(kp7_rows):
    kps = kp7_from_rows(kp7_rows)
    kps[3] = Keypoint("right_ear", kps[3].x, kps[3].y, confidence=0.3)

    report = presence_report(kps)

    assert not report.ok
    assert report.invalid_points == ["right_ear"]
    assert "low confidence" in report.reasons[0]


def test_strict_treats_missing_confidence_as_seen(kp7_rows):
    assert presence_report(kp7_from_rows(kp7_rows)).ok


def test_strict_allows_small_margin_outside_frame():
    inside_margin = [Keypoint(name, -0.04, 1.04, confidence=0.9) for name in KP7_NAMES]
    outside = [Keypoint(name, 0.5, 1.2, confidence=0.9) for name in KP7_NAMES]

    assert validate_kp7(inside_margin, strict=True).ok
    report = validate_kp7(outside, strict=True)
    assert not report.ok
    assert report.invalid_points == list(KP7_NAMES)
    assert all("out of frame" in reason for reason in report.reasons)


def test_generic_validate_labels_by_expected_names(neutral_frame):
    report = validate(list(neutral_frame.keypoints), CLASSIFIER_KEYPOINTS)

    assert report.ok


def test_validation_is_pure(kp7_rows):
    kps = kp7_from_rows(kp7_rows)
    before = [kp.to_dict() for kp in kps]

    validate_kp7(kps, strict=True)

    assert [kp.to_dict() for kp in kps] == before
