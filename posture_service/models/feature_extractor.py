"""
PostureCare Posture Service - Feature Extractor

Scale-invariant geometric deviations between a baseline frame and the
current frame. Shoulder width is the normalizing unit, so features do not
depend on how far the user sits from the camera.
"""

from dataclasses import asdict, dataclass
from typing import Dict, Optional

import numpy as np

from core.config import settings

from .keypoints import HEAD, HIP_L, HIP_R, NECK, SHOULDER_L, SHOULDER_R, Keypoint, PoseFrame


@dataclass(frozen=True)
class FeatureSet:
    """Per-evaluation geometric features."""
    shoulder_tilt: float        # (+) right shoulder lower
    abs_neck_tilt_deg: float    # neck->head angle from vertical, magnitude
    fwd_head_score: float       # forward-head proxy, shoulder-width units
    torso_reduce: float         # (+) torso shorter than baseline
    shoulder_width: float       # current frame
    shoulder_width_base: float  # baseline frame

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def _xy(kp: Keypoint) -> np.ndarray:
    return np.array([kp.x, kp.y], dtype=np.float64)


def shoulder_width(frame: PoseFrame, epsilon: Optional[float] = None) -> float:
    """Distance between the shoulders, floored at ``epsilon``."""
    if epsilon is None:
        epsilon = settings.SHOULDER_WIDTH_EPSILON
    left = _xy(frame.require(SHOULDER_L))
    right = _xy(frame.require(SHOULDER_R))
    return max(float(np.linalg.norm(left - right)), epsilon)


def neck_tilt_deg(frame: PoseFrame) -> float:
    """Signed angle of the neck->head vector from vertical (image y grows down)."""
    head = frame.require(HEAD)
    neck = frame.require(NECK)
    return float(np.degrees(np.arctan2(head.x - neck.x, neck.y - head.y)))


def extract_features(
    baseline: PoseFrame,
    current: PoseFrame,
    epsilon: Optional[float] = None,
) -> FeatureSet:
    """
    Compute the feature set for ``current`` relative to ``baseline``.

    Raises:
        MissingKeypointError: either frame lacks a classifier keypoint
    """
    for name in (HEAD, NECK, SHOULDER_L, SHOULDER_R, HIP_L, HIP_R):
        baseline.require(name, "baseline")
        current.require(name, "current")

    width_base = shoulder_width(baseline, epsilon)
    width = shoulder_width(current, epsilon)

    head_b, neck_b = _xy(baseline.get(HEAD)), _xy(baseline.get(NECK))
    head, neck = _xy(current.get(HEAD)), _xy(current.get(NECK))
    hip_mid_b = (_xy(baseline.get(HIP_L)) + _xy(baseline.get(HIP_R))) / 2
    hip_mid = (_xy(current.get(HIP_L)) + _xy(current.get(HIP_R))) / 2

    # (1) shoulder tilt
    tilt = (current.get(SHOULDER_R).y - current.get(SHOULDER_L).y) / width

    # (2) neck tilt
    abs_neck = abs(neck_tilt_deg(current))

    # (3) forward head: lateral shift or head closing in on the neck, vs baseline
    delta = ((head - neck) - (head_b - neck_b)) / width
    fwd_head = max(abs(delta[0]), max(0.0, -delta[1]))

    # (4) torso compression
    torso_len_base = abs(neck_b[1] - hip_mid_b[1])
    torso_len = abs(neck[1] - hip_mid[1])
    torso_reduce = (torso_len_base - torso_len) / width_base

    return FeatureSet(
        shoulder_tilt=float(tilt),
        abs_neck_tilt_deg=float(abs_neck),
        fwd_head_score=float(fwd_head),
        torso_reduce=float(torso_reduce),
        shoulder_width=width,
        shoulder_width_base=width_base,
    )
