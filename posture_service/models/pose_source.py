"""
PostureCare Posture Service - Pose Source Adapters

Converts BlazePose (MediaPipe) landmark output into PoseFrames and the
seven-point capture set. Pose detection itself is delegated to MediaPipe;
this module only reshapes its output.
"""

import base64
import logging
import math
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from .keypoints import (
    HEAD,
    HIP_L,
    HIP_R,
    KP7_NAMES,
    NECK,
    SHOULDER_L,
    SHOULDER_R,
    Keypoint,
    LandmarkIndex,
    PoseFrame,
)

logger = logging.getLogger(__name__)

KP7_INDICES: Tuple[LandmarkIndex, ...] = (
    LandmarkIndex.LEFT_SHOULDER,
    LandmarkIndex.RIGHT_SHOULDER,
    LandmarkIndex.LEFT_EAR,
    LandmarkIndex.RIGHT_EAR,
    LandmarkIndex.LEFT_EYE,
    LandmarkIndex.RIGHT_EYE,
    LandmarkIndex.NOSE,
)

# Vertical distance of the synthetic hips below the shoulder line
UPPER_BODY_TORSO_OFFSET = 1.0


def _field(landmark: Any, key: str) -> Any:
    """Read a landmark attribute from either a dict or a MediaPipe object."""
    if landmark is None:
        return None
    if isinstance(landmark, dict):
        return landmark.get(key)
    return getattr(landmark, key, None)


def _number(value: Any, default: Optional[float]) -> Optional[float]:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return default
    return n if math.isfinite(n) else default


def _keypoint(name: str, landmark: Any) -> Keypoint:
    visibility = _field(landmark, "visibility")
    if visibility is None:
        visibility = _field(landmark, "presence")
    return Keypoint(
        name=name,
        x=_number(_field(landmark, "x"), math.nan),
        y=_number(_field(landmark, "y"), math.nan),
        z=_number(_field(landmark, "z"), 0.0),
        confidence=_number(visibility, 1.0),
    )


def _midpoint(name: str, a: Keypoint, b: Keypoint) -> Keypoint:
    confidence = None
    if a.confidence is not None and b.confidence is not None:
        confidence = min(a.confidence, b.confidence)
    return Keypoint(
        name=name,
        x=(a.x + b.x) / 2,
        y=(a.y + b.y) / 2,
        z=((a.z or 0.0) + (b.z or 0.0)) / 2,
        confidence=confidence,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# LANDMARK CONVERSION
# ═══════════════════════════════════════════════════════════════════════════════

def landmarks_to_pose_frame(landmarks: Optional[Sequence[Any]], timestamp_ms: float) -> Optional[PoseFrame]:
    """
    33 BlazePose landmarks -> six-point classifier frame.

    head = nose, neck = shoulder midpoint. Returns None if a required
    landmark is missing.
    """
    if not landmarks or len(landmarks) <= LandmarkIndex.RIGHT_HIP:
        return None

    required = (
        LandmarkIndex.NOSE,
        LandmarkIndex.LEFT_SHOULDER,
        LandmarkIndex.RIGHT_SHOULDER,
        LandmarkIndex.LEFT_HIP,
        LandmarkIndex.RIGHT_HIP,
    )
    if any(landmarks[idx] is None for idx in required):
        return None

    shoulder_l = _keypoint(SHOULDER_L, landmarks[LandmarkIndex.LEFT_SHOULDER])
    shoulder_r = _keypoint(SHOULDER_R, landmarks[LandmarkIndex.RIGHT_SHOULDER])

    return PoseFrame(
        timestamp=timestamp_ms,
        keypoints=(
            _keypoint(HEAD, landmarks[LandmarkIndex.NOSE]),
            _midpoint(NECK, shoulder_l, shoulder_r),
            shoulder_l,
            shoulder_r,
            _keypoint(HIP_L, landmarks[LandmarkIndex.LEFT_HIP]),
            _keypoint(HIP_R, landmarks[LandmarkIndex.RIGHT_HIP]),
        ),
    )


def pick_kp7(landmarks: Optional[Sequence[Any]]) -> Optional[List[Keypoint]]:
    """
    33 BlazePose landmarks -> the seven capture keypoints in wire order.

    z defaults to 0, visibility falls back to presence and then 1.0. Returns
    None when any x/y is not a finite number, so the caller retries on the
    next frame.
    """
    if not landmarks or len(landmarks) <= LandmarkIndex.RIGHT_SHOULDER:
        return None

    kps = [_keypoint(name, landmarks[idx]) for name, idx in zip(KP7_NAMES, KP7_INDICES)]
    if not all(kp.has_finite_xy for kp in kps):
        return None
    return kps


def kp7_from_rows(rows: Sequence[Sequence[float]]) -> List[Keypoint]:
    """
    ``[[x, y, z] x 7]`` wire rows -> keypoints (no validation).

    Every row becomes a keypoint, so validate_kp7 sees the real row count.
    Rows past the seventh are named ``row_<index>``.
    """
    kps = []
    for i, row in enumerate(rows):
        name = KP7_NAMES[i] if i < len(KP7_NAMES) else f"row_{i}"
        values = list(row)
        kps.append(Keypoint(
            name=name,
            x=_number(values[0] if len(values) > 0 else None, math.nan),
            y=_number(values[1] if len(values) > 1 else None, math.nan),
            z=_number(values[2] if len(values) > 2 else None, 0.0),
        ))
    return kps


def strip_xyz(kps: Sequence[Keypoint]) -> List[List[float]]:
    """Keypoints -> ``[[x, y, z] x n]``; non-finite z becomes 0."""
    return [[kp.x, kp.y, _number(kp.z, 0.0)] for kp in kps]


def kp7_to_pose_frame(kps: Sequence[Keypoint], timestamp_ms: float) -> PoseFrame:
    """
    Upper-body reduction of the seven capture points.

    There are no hips in this set, so they are placed a fixed distance below
    each shoulder. Torso length is then constant and the leaning-back rule
    never fires on seven-point input.
    """
    by_name = {kp.name: kp for kp in kps}
    left = by_name[KP7_NAMES[0]]
    right = by_name[KP7_NAMES[1]]
    nose = by_name["nose"]

    shoulder_l = Keypoint(SHOULDER_L, left.x, left.y, left.z, left.confidence)
    shoulder_r = Keypoint(SHOULDER_R, right.x, right.y, right.z, right.confidence)
    neck = _midpoint(NECK, shoulder_l, shoulder_r)

    return PoseFrame(
        timestamp=timestamp_ms,
        keypoints=(
            Keypoint(HEAD, nose.x, nose.y, nose.z, nose.confidence),
            neck,
            shoulder_l,
            shoulder_r,
            Keypoint(HIP_L, shoulder_l.x, neck.y + UPPER_BODY_TORSO_OFFSET),
            Keypoint(HIP_R, shoulder_r.x, neck.y + UPPER_BODY_TORSO_OFFSET),
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# MEDIAPIPE WRAPPER
# ═══════════════════════════════════════════════════════════════════════════════

class MediaPipePoseSource:
    """
    MediaPipe Pose wrapper producing PoseFrames from images.

    Requires the ``vision`` extra (mediapipe, opencv-python).
    """

    def __init__(
        self,
        model_complexity: int = 0,
        min_detection_confidence: float = 0.5,
        min_tracking_confidence: float = 0.5,
    ):
        try:
            import cv2
            import mediapipe as mp
        except ImportError as e:
            raise RuntimeError(
                "MediaPipe/OpenCV not installed. Install pose deps with: pip install '.[vision]'"
            ) from e

        self._cv2 = cv2
        self._pose = mp.solutions.pose.Pose(
            static_image_mode=False,
            model_complexity=int(model_complexity),
            enable_segmentation=False,
            min_detection_confidence=float(min_detection_confidence),
            min_tracking_confidence=float(min_tracking_confidence),
        )
        logger.info("✅ MediaPipe pose detector initialized")

    def process_rgb(self, rgb, timestamp_ms: float) -> Tuple[Optional[PoseFrame], Optional[List[Keypoint]]]:
        """RGB image (H, W, 3) -> (classifier frame, seven capture points)."""
        results = self._pose.process(rgb)
        if not results or not results.pose_landmarks:
            return None, None
        landmarks = list(results.pose_landmarks.landmark)
        return landmarks_to_pose_frame(landmarks, timestamp_ms), pick_kp7(landmarks)

    def process_jpeg_base64(self, data: str, timestamp_ms: float) -> Tuple[Optional[PoseFrame], Optional[List[Keypoint]]]:
        """Base64 JPEG (as sent by browser clients) -> pose outputs."""
        if "," in data:
            data = data.split(",", 1)[1]
        buffer = np.frombuffer(base64.b64decode(data), dtype=np.uint8)
        image = self._cv2.imdecode(buffer, self._cv2.IMREAD_COLOR)
        if image is None:
            return None, None
        return self.process_rgb(self._cv2.cvtColor(image, self._cv2.COLOR_BGR2RGB), timestamp_ms)

    def close(self):
        if self._pose is not None:
            self._pose.close()
            self._pose = None
