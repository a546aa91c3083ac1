"""
PostureCare Posture Service - Frame Validator

Decides whether a set of keypoints is usable as a baseline or as classifier
input. Every violated point is reported by name so the UI can say which
landmark is missing instead of a generic failure.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from core.config import settings

from .keypoints import CLASSIFIER_KEYPOINTS, KP7_NAMES, Keypoint, PoseFrame


@dataclass(frozen=True)
class ValidationReport:
    """Outcome of a validation pass."""
    ok: bool
    reasons: List[str] = field(default_factory=list)
    invalid_points: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "reasons": list(self.reasons),
            "invalid_points": list(self.invalid_points),
        }


def _finite(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except TypeError:
        return False


def _point_problems(
    kp: Keypoint,
    strict: bool,
    min_confidence: float,
    frame_margin: float,
) -> List[str]:
    """List the problems found on one keypoint."""
    if not _finite(kp.x) or not _finite(kp.y):
        return ["invalid coords"]

    problems = []
    if strict:
        confidence = 1.0 if kp.confidence is None else kp.confidence
        if not _finite(confidence) or confidence < min_confidence:
            problems.append(f"low confidence ({confidence:.2f} < {min_confidence:.2f})")

        lo, hi = -frame_margin, 1.0 + frame_margin
        if not (lo <= kp.x <= hi and lo <= kp.y <= hi):
            problems.append("out of frame")
    return problems


def validate(
    keypoints: Optional[Sequence[Keypoint]],
    expected_names: Sequence[str] = KP7_NAMES,
    strict: bool = False,
    min_confidence: Optional[float] = None,
    frame_margin: Optional[float] = None,
) -> ValidationReport:
    """
    Validate an ordered keypoint collection.

    Args:
        keypoints: Points in the order of ``expected_names``
        expected_names: Names used to label each position in reasons
        strict: Also reject low-confidence and out-of-frame points
        min_confidence: Confidence floor for strict mode
        frame_margin: Tolerance around the normalized [0, 1] frame

    Returns:
        ValidationReport listing every violated point
    """
    if min_confidence is None:
        min_confidence = settings.MIN_KEYPOINT_CONFIDENCE
    if frame_margin is None:
        frame_margin = settings.FRAME_MARGIN

    if keypoints is None:
        return ValidationReport(ok=False, reasons=["no keypoints"])

    points = list(keypoints)
    if len(points) != len(expected_names):
        return ValidationReport(
            ok=False,
            reasons=[f"expected {len(expected_names)} keypoints, got {len(points)}"],
        )

    reasons: List[str] = []
    invalid: List[str] = []
    for name, kp in zip(expected_names, points):
        if kp is None:
            reasons.append(f"{name} missing")
            invalid.append(name)
            continue
        problems = _point_problems(kp, strict, min_confidence, frame_margin)
        if problems:
            reasons.append(f"{name} {', '.join(problems)}")
            invalid.append(name)

    return ValidationReport(ok=not reasons, reasons=reasons, invalid_points=invalid)


def validate_kp7(keypoints: Optional[Sequence[Keypoint]], strict: bool = False) -> ValidationReport:
    """Baseline-capture check on the seven upper-body points."""
    return validate(keypoints, KP7_NAMES, strict=strict)


def presence_report(
    keypoints: Optional[Sequence[Keypoint]],
    min_confidence: Optional[float] = None,
) -> ValidationReport:
    """Strict check on the seven points: were they all actually seen?"""
    return validate(keypoints, KP7_NAMES, strict=True, min_confidence=min_confidence)


def validate_frame(
    frame: Optional[PoseFrame],
    expected_names: Sequence[str] = CLASSIFIER_KEYPOINTS,
    strict: bool = False,
) -> ValidationReport:
    """Validate a pose frame, looking points up by name."""
    if frame is None:
        return ValidationReport(ok=False, reasons=["no frame"])
    return validate(
        [frame.get(name) for name in expected_names],
        expected_names,
        strict=strict,
    )
