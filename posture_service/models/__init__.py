"""
PostureCare Posture Service Models

Keypoint model, validation, feature extraction, rule classification and the
streaming engine with baseline capture.
"""

from .keypoints import (
    Keypoint,
    PoseFrame,
    PostureLabel,
    LandmarkIndex,
    PostureError,
    MissingKeypointError,
    NoBaselineError,
    DuplicateKeypointError,
    CLASSIFIER_KEYPOINTS,
    KP7_NAMES,
    POSTURE_LABELS,
    empty_counts
)

from .frame_validator import (
    ValidationReport,
    validate,
    validate_kp7,
    validate_frame,
    presence_report
)

from .feature_extractor import (
    FeatureSet,
    extract_features,
    shoulder_width,
    neck_tilt_deg
)

from .rule_classifier import (
    RuleClassifier,
    RuleThresholds,
    ClassificationResult,
    classify,
    clamp01
)

from .posture_engine import (
    PostureEngine,
    EngineState,
    majority,
    average_frames
)

from .baseline_capture import capture_stable

from .pose_source import (
    MediaPipePoseSource,
    landmarks_to_pose_frame,
    pick_kp7,
    kp7_from_rows,
    kp7_to_pose_frame,
    strip_xyz
)

from .posture_session import (
    PostureSession,
    PostureSessionHandler,
    get_session_handler
)

__all__ = [
    # Keypoint model
    "Keypoint",
    "PoseFrame",
    "PostureLabel",
    "LandmarkIndex",
    "PostureError",
    "MissingKeypointError",
    "NoBaselineError",
    "DuplicateKeypointError",
    "CLASSIFIER_KEYPOINTS",
    "KP7_NAMES",
    "POSTURE_LABELS",
    "empty_counts",
    # Validation
    "ValidationReport",
    "validate",
    "validate_kp7",
    "validate_frame",
    "presence_report",
    # Features and classification
    "FeatureSet",
    "extract_features",
    "shoulder_width",
    "neck_tilt_deg",
    "RuleClassifier",
    "RuleThresholds",
    "ClassificationResult",
    "classify",
    "clamp01",
    # Engine
    "PostureEngine",
    "EngineState",
    "majority",
    "average_frames",
    "capture_stable",
    # Pose source
    "MediaPipePoseSource",
    "landmarks_to_pose_frame",
    "pick_kp7",
    "kp7_from_rows",
    "kp7_to_pose_frame",
    "strip_xyz",
    # Sessions
    "PostureSession",
    "PostureSessionHandler",
    "get_session_handler",
]
