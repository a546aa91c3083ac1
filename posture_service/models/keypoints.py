"""
PostureCare Posture Service - Keypoint Model

Canonical body landmarks, pose frames, posture labels and the error types
shared by the validator, feature extractor, classifier and engine.
"""

import math
import numbers
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple


# ═══════════════════════════════════════════════════════════════════════════════
# ERRORS
# ═══════════════════════════════════════════════════════════════════════════════

class PostureError(Exception):
    """Base class for posture engine errors."""


class MissingKeypointError(PostureError, KeyError):
    """A keypoint required by the feature extractor is absent from a frame."""

    def __init__(self, name: str, role: str = "frame"):
        self.name = name
        self.role = role
        super().__init__(f"{role} is missing required keypoint '{name}'")

    def __str__(self) -> str:
        return self.args[0]


class NoBaselineError(PostureError, LookupError):
    """Classification was requested without a baseline frame."""


class DuplicateKeypointError(PostureError, ValueError):
    """A pose frame contains the same keypoint name more than once."""


# ═══════════════════════════════════════════════════════════════════════════════
# NAMES AND LABELS
# ═══════════════════════════════════════════════════════════════════════════════

HEAD = "head"
NECK = "neck"
SHOULDER_L = "shoulder_l"
SHOULDER_R = "shoulder_r"
HIP_L = "hip_l"
HIP_R = "hip_r"

# Reduced set consumed by the rule classifier
CLASSIFIER_KEYPOINTS: Tuple[str, ...] = (HEAD, NECK, SHOULDER_L, SHOULDER_R, HIP_L, HIP_R)

# Upper-body set used for baseline capture, in wire order
KP7_NAMES: Tuple[str, ...] = (
    "left_shoulder",
    "right_shoulder",
    "left_ear",
    "right_ear",
    "left_eye",
    "right_eye",
    "nose",
)


class LandmarkIndex(IntEnum):
    """BlazePose landmark indices used by the pose adapters."""
    NOSE = 0
    LEFT_EYE = 2
    RIGHT_EYE = 5
    LEFT_EAR = 7
    RIGHT_EAR = 8
    LEFT_SHOULDER = 11
    RIGHT_SHOULDER = 12
    LEFT_HIP = 23
    RIGHT_HIP = 24


class PostureLabel(str, Enum):
    """Closed set of posture classifications."""
    NORMAL = "normal"
    NECK_TILT = "neck_tilt"
    FORWARD_HEAD = "forward_head"
    SHOULDER_TILT = "shoulder_tilt"
    LEANING_BACK = "leaning_back"


POSTURE_LABELS: List[PostureLabel] = list(PostureLabel)


def empty_counts() -> Dict[PostureLabel, int]:
    """Zero-filled occurrence counter with every label present."""
    return {label: 0 for label in POSTURE_LABELS}


# ═══════════════════════════════════════════════════════════════════════════════
# DATA CLASSES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Keypoint:
    """A named landmark in normalized image coordinates."""
    name: str
    x: float
    y: float
    z: Optional[float] = None
    confidence: Optional[float] = None  # visibility/score in [0, 1]

    @property
    def has_finite_xy(self) -> bool:
        return _is_finite(self.x) and _is_finite(self.y)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "x": self.x, "y": self.y}
        if self.z is not None:
            data["z"] = self.z
        if self.confidence is not None:
            data["confidence"] = self.confidence
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Keypoint":
        z = data.get("z")
        confidence = data.get("confidence", data.get("visibility"))
        return cls(
            name=str(data["name"]),
            x=float(data["x"]),
            y=float(data["y"]),
            z=None if z is None else float(z),
            confidence=None if confidence is None else float(confidence),
        )


@dataclass(frozen=True)
class PoseFrame:
    """
    Keypoints captured at one instant.

    Timestamps are milliseconds (wall-clock or monotonic, caller's choice).
    Keypoint names are unique within a frame.
    """
    timestamp: float
    keypoints: Tuple[Keypoint, ...] = field(default_factory=tuple)

    def __post_init__(self):
        keypoints = tuple(self.keypoints)
        seen = set()
        for kp in keypoints:
            if kp.name in seen:
                raise DuplicateKeypointError(f"duplicate keypoint '{kp.name}' in frame")
            seen.add(kp.name)
        object.__setattr__(self, "keypoints", keypoints)

    @property
    def names(self) -> List[str]:
        return [kp.name for kp in self.keypoints]

    def get(self, name: str) -> Optional[Keypoint]:
        for kp in self.keypoints:
            if kp.name == name:
                return kp
        return None

    def require(self, name: str, role: str = "frame") -> Keypoint:
        kp = self.get(name)
        if kp is None:
            raise MissingKeypointError(name, role)
        return kp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "keypoints": [kp.to_dict() for kp in self.keypoints],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoseFrame":
        return cls(
            timestamp=float(data.get("timestamp", data.get("ts", 0.0))),
            keypoints=tuple(Keypoint.from_dict(kp) for kp in data.get("keypoints", [])),
        )


def _is_finite(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return False
    return math.isfinite(value)
