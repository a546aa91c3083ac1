"""
Rule classifier tests

Threshold boundaries, rule priority, score ramps and the end-to-end
shoulder-drop scenario.
"""

import pytest

from posture_service.models.feature_extractor import FeatureSet
from posture_service.models.keypoints import NoBaselineError, PostureLabel
from posture_service.models.rule_classifier import (
    RuleClassifier,
    RuleThresholds,
    clamp01,
    classify,
)


def features(shoulder_tilt=0.0, neck=0.0, fwd=0.0, torso=0.0) -> FeatureSet:
    return FeatureSet(
        shoulder_tilt=shoulder_tilt,
        abs_neck_tilt_deg=neck,
        fwd_head_score=fwd,
        torso_reduce=torso,
        shoulder_width=0.2,
        shoulder_width_base=0.2,
    )


@pytest.fixture
def classifier():
    return RuleClassifier(RuleThresholds())


# ═══════════════════════════════════════════════════════════════════════════════
# BOUNDARIES
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.parametrize("m", [
    features(shoulder_tilt=0.08),
    features(shoulder_tilt=-0.08),
    features(neck=12.0),
    features(fwd=0.18),
    features(torso=0.12),
])
def test_value_at_threshold_does_not_trigger(classifier, m):
    result = classifier.classify_features(m)

    assert result.label == PostureLabel.NORMAL
    assert result.score == 0.0


@pytest.mark.parametrize("m, label", [
    (features(shoulder_tilt=0.0801), PostureLabel.SHOULDER_TILT),
    (features(shoulder_tilt=-0.0801), PostureLabel.SHOULDER_TILT),
    (features(neck=12.001), PostureLabel.NECK_TILT),
    (features(fwd=0.1801), PostureLabel.FORWARD_HEAD),
    (features(torso=0.1201), PostureLabel.LEANING_BACK),
])
def test_value_just_over_threshold_triggers(classifier, m, label):
    assert classifier.classify_features(m).label == label


def test_at_one_threshold_falls_through_to_next_rule(classifier):
    result = classifier.classify_features(features(shoulder_tilt=0.08, neck=20.0))

    assert result.label == PostureLabel.NECK_TILT


# ═══════════════════════════════════════════════════════════════════════════════
# PRIORITY
# ═══════════════════════════════════════════════════════════════════════════════

def test_shoulder_tilt_wins_over_neck_tilt(classifier):
    result = classifier.classify_features(features(shoulder_tilt=0.1, neck=30.0))

    assert result.label == PostureLabel.SHOULDER_TILT


def test_priority_order_with_everything_triggered(classifier):
    all_on = features(shoulder_tilt=0.5, neck=40.0, fwd=0.5, torso=0.5)

    assert classifier.classify_features(all_on).label == PostureLabel.SHOULDER_TILT
    assert classifier.classify_features(
        features(neck=40.0, fwd=0.5, torso=0.5)
    ).label == PostureLabel.NECK_TILT
    assert classifier.classify_features(
        features(fwd=0.5, torso=0.5)
    ).label == PostureLabel.FORWARD_HEAD


# ═══════════════════════════════════════════════════════════════════════════════
# SCORES
# ═══════════════════════════════════════════════════════════════════════════════

def test_score_is_linear_ramp(classifier):
    assert classifier.classify_features(features(neck=22.0)).score == pytest.approx(0.5)
    assert classifier.classify_features(features(fwd=0.33)).score == pytest.approx(0.5)
    assert classifier.classify_features(features(torso=0.245)).score == pytest.approx(0.5)


def test_score_is_monotonic_and_saturates(classifier):
    tilts = [0.09, 0.10, 0.12, 0.15, 0.20, 0.33, 0.5, 1.0]
    scores = [classifier.classify_features(features(shoulder_tilt=t)).score for t in tilts]

    assert scores == sorted(scores)
    assert scores[-1] == 1.0
    assert classifier.classify_features(features(shoulder_tilt=0.33)).score == pytest.approx(1.0)


def test_clamp01():
    assert clamp01(-0.5) == 0.0
    assert clamp01(0.25) == 0.25
    assert clamp01(3.0) == 1.0


def test_thresholds_are_tunable():
    loose = RuleClassifier(RuleThresholds(shoulder_tilt=0.2))

    assert loose.classify_features(features(shoulder_tilt=0.15)).label == PostureLabel.NORMAL


# ═══════════════════════════════════════════════════════════════════════════════
# FRAMES
# ═══════════════════════════════════════════════════════════════════════════════

def test_shoulder_drop_scenario(make_frame):
    baseline = make_frame(head=(0.0, 0.0), hip_l=(-0.1, 0.2), hip_r=(0.1, 0.2))
    current = make_frame(
        head=(0.0, 0.0),
        hip_l=(-0.1, 0.2),
        hip_r=(0.1, 0.2),
        shoulder_r=(0.1, 0.03),
    )

    result = classify(baseline, current)

    assert result.label == PostureLabel.SHOULDER_TILT
    assert result.metrics.shoulder_tilt == pytest.approx(0.148, abs=0.001)
    assert result.score == pytest.approx(0.28, abs=0.01)


def test_neutral_pose_is_normal(neutral_frame):
    result = classify(neutral_frame, neutral_frame)

    assert result.label == PostureLabel.NORMAL
    assert result.score == 0.0


def test_classify_is_pure(make_frame):
    baseline = make_frame()
    current = make_frame(head=(0.08, -0.12))
    before = (baseline.to_dict(), current.to_dict())

    first = classify(baseline, current)
    second = classify(baseline, current)

    assert first == second
    assert (baseline.to_dict(), current.to_dict()) == before


def test_classify_without_baseline_raises(neutral_frame):
    with pytest.raises(NoBaselineError):
        RuleClassifier().classify(None, neutral_frame)
