"""
PostureCare Posture Service - Rule Classifier

Maps a FeatureSet to exactly one PostureLabel using priority-ordered
thresholds. Rules are checked in order and the first match wins:

    1. shoulder tilt
    2. neck tilt
    3. forward head
    4. leaning back
    else normal

Each comparison is strict (value > threshold). The score is a linear ramp
from the threshold to threshold + span, clamped to [0, 1]. It is a
confidence-like magnitude, not a probability.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.config import settings

from .feature_extractor import FeatureSet, extract_features
from .keypoints import NoBaselineError, PoseFrame, PostureLabel


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass(frozen=True)
class RuleThresholds:
    """Tunable rule thresholds and score ramp spans."""
    shoulder_tilt: float = 0.08
    shoulder_tilt_span: float = 0.25
    neck_tilt_deg: float = 12.0
    neck_tilt_span_deg: float = 20.0
    forward_head: float = 0.18
    forward_head_span: float = 0.30
    torso_reduce: float = 0.12
    torso_reduce_span: float = 0.25

    @classmethod
    def from_settings(cls) -> "RuleThresholds":
        return cls(
            shoulder_tilt=settings.SHOULDER_TILT_THRESHOLD,
            shoulder_tilt_span=settings.SHOULDER_TILT_SPAN,
            neck_tilt_deg=settings.NECK_TILT_THRESHOLD_DEG,
            neck_tilt_span_deg=settings.NECK_TILT_SPAN_DEG,
            forward_head=settings.FORWARD_HEAD_THRESHOLD,
            forward_head_span=settings.FORWARD_HEAD_SPAN,
            torso_reduce=settings.TORSO_REDUCE_THRESHOLD,
            torso_reduce_span=settings.TORSO_REDUCE_SPAN,
        )


@dataclass(frozen=True)
class ClassificationResult:
    """Label, score and the features that produced them."""
    label: PostureLabel
    score: float
    metrics: FeatureSet

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label.value,
            "score": self.score,
            "metrics": self.metrics.to_dict(),
        }


class RuleClassifier:
    """
    Stateless threshold classifier.

    Safe to share between engines; it holds only its thresholds.
    """

    def __init__(self, thresholds: Optional[RuleThresholds] = None, epsilon: Optional[float] = None):
        self.thresholds = thresholds or RuleThresholds.from_settings()
        self.epsilon = epsilon

    def classify_features(self, m: FeatureSet) -> ClassificationResult:
        t = self.thresholds

        if abs(m.shoulder_tilt) > t.shoulder_tilt:
            score = clamp01((abs(m.shoulder_tilt) - t.shoulder_tilt) / t.shoulder_tilt_span)
            return ClassificationResult(PostureLabel.SHOULDER_TILT, score, m)

        if m.abs_neck_tilt_deg > t.neck_tilt_deg:
            score = clamp01((m.abs_neck_tilt_deg - t.neck_tilt_deg) / t.neck_tilt_span_deg)
            return ClassificationResult(PostureLabel.NECK_TILT, score, m)

        if m.fwd_head_score > t.forward_head:
            score = clamp01((m.fwd_head_score - t.forward_head) / t.forward_head_span)
            return ClassificationResult(PostureLabel.FORWARD_HEAD, score, m)

        if m.torso_reduce > t.torso_reduce:
            score = clamp01((m.torso_reduce - t.torso_reduce) / t.torso_reduce_span)
            return ClassificationResult(PostureLabel.LEANING_BACK, score, m)

        return ClassificationResult(PostureLabel.NORMAL, 0.0, m)

    def classify(self, baseline: Optional[PoseFrame], current: PoseFrame) -> ClassificationResult:
        """
        Classify ``current`` against ``baseline``.

        Raises:
            NoBaselineError: baseline is None
            MissingKeypointError: a frame lacks a classifier keypoint
        """
        if baseline is None:
            raise NoBaselineError("classify() requires a baseline frame")
        return self.classify_features(extract_features(baseline, current, self.epsilon))


def classify(
    baseline: Optional[PoseFrame],
    current: PoseFrame,
    thresholds: Optional[RuleThresholds] = None,
) -> ClassificationResult:
    """Functional shortcut for ``RuleClassifier(thresholds).classify``."""
    return RuleClassifier(thresholds).classify(baseline, current)
