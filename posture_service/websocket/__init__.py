"""
PostureCare Posture Service WebSocket Handlers

Live pose streaming and posture update broadcasting.
"""

from .pose_stream import (
    PoseStreamHandler,
    get_pose_stream_handler,
    parse_frame_payload,
    posture_room
)

__all__ = [
    "PoseStreamHandler",
    "get_pose_stream_handler",
    "parse_frame_payload",
    "posture_room",
]
