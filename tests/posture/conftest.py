"""
PostureCare test fixtures

Synthetic frames in normalized image coordinates (y grows downward).
The neutral pose has the head above the neck, shoulders 0.2 apart and hips
0.4 below the neck.
"""

import pytest

from posture_service.models.keypoints import (
    HEAD,
    HIP_L,
    HIP_R,
    NECK,
    SHOULDER_L,
    SHOULDER_R,
    Keypoint,
    PoseFrame,
)
from posture_service.models.posture_session import PostureSessionHandler
from shared.storage import LocalBaselineStore, LocalEventLog, LocalSessionLog


NEUTRAL_POINTS = {
    HEAD: (0.0, -0.15),
    NECK: (0.0, 0.0),
    SHOULDER_L: (-0.1, 0.0),
    SHOULDER_R: (0.1, 0.0),
    HIP_L: (-0.1, 0.4),
    HIP_R: (0.1, 0.4),
}

# left_shoulder, right_shoulder, left_ear, right_ear, left_eye, right_eye, nose
KP7_ROWS = [
    [0.40, 0.50, 0.0],
    [0.60, 0.50, 0.0],
    [0.45, 0.30, 0.0],
    [0.55, 0.30, 0.0],
    [0.47, 0.28, 0.0],
    [0.53, 0.28, 0.0],
    [0.50, 0.30, 0.0],
]


def build_frame(timestamp=0.0, **overrides):
    """Neutral frame with named points replaced, e.g. build_frame(shoulder_r=(0.1, 0.03))."""
    points = dict(NEUTRAL_POINTS)
    points.update(overrides)
    return PoseFrame(
        timestamp=timestamp,
        keypoints=tuple(Keypoint(name=name, x=xy[0], y=xy[1]) for name, xy in points.items()),
    )


def frame_payload(**overrides):
    """JSON form of build_frame() for HTTP and WebSocket tests."""
    return build_frame(**overrides).to_dict()


@pytest.fixture
def make_frame():
    return build_frame


@pytest.fixture
def neutral_frame():
    return build_frame()


@pytest.fixture
def kp7_rows():
    return [list(row) for row in KP7_ROWS]


@pytest.fixture
def event_log(tmp_path):
    return LocalEventLog(base_path=str(tmp_path))


@pytest.fixture
def baseline_store(tmp_path):
    return LocalBaselineStore(base_path=str(tmp_path))


@pytest.fixture
def session_log(tmp_path):
    return LocalSessionLog(base_path=str(tmp_path))


@pytest.fixture
def session_handler(event_log, baseline_store, session_log):
    return PostureSessionHandler(event_log=event_log, baseline_store=baseline_store, session_log=session_log)


@pytest.fixture
def make_payload():
    return frame_payload
