"""
PostureCare Posture Service - Pose Stream WebSocket Handler

Receives pose frames from a client's webcam pipeline, runs them through the
user's posture session and pushes the smoothed state back to the client and to
anyone watching that user.

Accepted frame payloads (first match wins):
- {"keypoints": [{name, x, y, z?, confidence?}, ...], "kp7": [...]?}
- {"landmarks": [33 BlazePose landmarks]}
- {"kp7": [[x, y, z] x 7]}
- {"image": "<base64 JPEG>"}  (needs the vision extra)
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from core.websocket.manager import (
    ConnectionManager,
    MessageType,
    WebSocketMessage,
    connection_manager,
)
from shared.utils import now_ms

from ..models.keypoints import Keypoint, PoseFrame
from ..models.pose_source import (
    MediaPipePoseSource,
    kp7_from_rows,
    landmarks_to_pose_frame,
    pick_kp7,
)
from ..models.posture_session import PostureSessionHandler, get_session_handler

logger = logging.getLogger(__name__)


def posture_room(user_id: str) -> str:
    """Broadcast room for one user's posture updates."""
    return f"posture:{user_id}"


def parse_frame_payload(payload: Dict[str, Any]) -> Tuple[Optional[PoseFrame], Optional[List[Keypoint]]]:
    """
    Decode a non-image frame payload.

    Returns:
        (classifier frame or None, seven capture points or None)

    Raises:
        ValueError, KeyError, TypeError: malformed payload
    """
    timestamp = float(payload.get("timestamp") or now_ms())

    kp7 = None
    if payload.get("kp7") is not None:
        kp7 = kp7_from_rows(payload["kp7"])

    if payload.get("keypoints") is not None:
        frame = PoseFrame(
            timestamp=timestamp,
            keypoints=tuple(Keypoint.from_dict(kp) for kp in payload["keypoints"]),
        )
        return frame, kp7

    if payload.get("landmarks") is not None:
        landmarks = list(payload["landmarks"])
        return landmarks_to_pose_frame(landmarks, timestamp), pick_kp7(landmarks)

    if kp7 is not None:
        return None, kp7

    raise ValueError("frame payload needs one of: keypoints, landmarks, kp7, image")


class PoseStreamHandler:
    """
    Dispatches stream messages to the posture session handler.

    One instance serves every connection; per-user state lives in the
    session handler.
    """

    def __init__(
        self,
        session_handler: Optional[PostureSessionHandler] = None,
        manager: Optional[ConnectionManager] = None,
    ):
        self.session_handler = session_handler or get_session_handler()
        self.manager = manager or connection_manager
        self._pose_source: Optional[MediaPipePoseSource] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pose_source(self) -> MediaPipePoseSource:
        """MediaPipe detector, created on first image frame."""
        if self._pose_source is None:
            self._pose_source = MediaPipePoseSource()
        return self._pose_source

    # ═══════════════════════════════════════════════════════════════════════════
    # DISPATCH
    # ═══════════════════════════════════════════════════════════════════════════

    async def handle_message(self, client_id: str, message: WebSocketMessage):
        client = self.manager.get_client(client_id)
        if client is None:
            return
        user_id = client.user_id
        payload = message.payload if isinstance(message.payload, dict) else {}

        if message.type == MessageType.FRAME.value:
            await self._handle_frame(client_id, user_id, payload)

        elif message.type == MessageType.CAPTURE_BASELINE.value:
            self._start_capture(client_id, user_id, payload.get("timeout_ms"))

        elif message.type == MessageType.CLEAR_BASELINE.value:
            result = self.session_handler.clear_baseline(user_id)
            await self._reply(client_id, MessageType.BASELINE_CLEARED, result)
            await self._broadcast_state(user_id, result["state"])

        elif message.type == MessageType.RESET_COUNTS.value:
            result = self.session_handler.reset_counts(user_id)
            await self._reply(client_id, MessageType.STATUS_UPDATE, result)
            await self._broadcast_state(user_id, result["state"])

        elif message.type == MessageType.SET_ENABLED.value:
            result = self.session_handler.set_enabled(user_id, bool(payload.get("enabled", True)))
            await self._reply(client_id, MessageType.STATUS_UPDATE, result)

        else:
            await self._reply(client_id, MessageType.ERROR, {
                "error": f"Unknown message type: {message.type}"
            })

    async def on_disconnect(self, client_id: str, user_id: str):
        """Cancel the user's pending capture once their last stream closes."""
        if self.manager.stream_count(user_id) > 0:
            return
        session = self.session_handler.get_session(user_id)
        if session is not None and session.capturing:
            session.capture_task.cancel()
            logger.info(f"🛑 Baseline capture cancelled for {user_id} (stream closed)")

    # ═══════════════════════════════════════════════════════════════════════════
    # FRAMES
    # ═══════════════════════════════════════════════════════════════════════════

    async def _handle_frame(self, client_id: str, user_id: str, payload: Dict[str, Any]):
        try:
            if payload.get("image"):
                frame, kp7 = self.pose_source.process_jpeg_base64(
                    payload["image"], float(payload.get("timestamp") or now_ms())
                )
            else:
                frame, kp7 = parse_frame_payload(payload)
        except RuntimeError as e:
            await self._reply(client_id, MessageType.ERROR, {"error": str(e)})
            return
        except (ValueError, KeyError, TypeError) as e:
            await self._reply(client_id, MessageType.ERROR, {"error": f"Malformed frame: {e}"})
            return

        result = self.session_handler.process_frame(user_id, frame, kp7)
        if not result["accepted"]:
            await self._reply(client_id, MessageType.FRAME_REJECTED, result)
            return

        await self._reply(client_id, MessageType.POSTURE_UPDATE, result["state"])
        await self._broadcast_state(user_id, result["state"])

    # ═══════════════════════════════════════════════════════════════════════════
    # BASELINE CAPTURE
    # ═══════════════════════════════════════════════════════════════════════════

    def _start_capture(self, client_id: str, user_id: str, timeout_ms: Optional[float]):
        capture = self.session_handler.start_capture(user_id, timeout_ms)
        reporter = asyncio.create_task(self._report_capture(client_id, user_id, capture))
        self._tasks.add(reporter)
        reporter.add_done_callback(self._tasks.discard)

    async def _report_capture(self, client_id: str, user_id: str, capture: asyncio.Task):
        try:
            result = await capture
        except asyncio.CancelledError:
            if not capture.cancelled():
                raise
            return

        if result.get("status") == "baseline_set":
            await self._reply(client_id, MessageType.BASELINE_CAPTURED, result)
            await self._broadcast_state(user_id, result["state"])
        else:
            await self._reply(client_id, MessageType.BASELINE_FAILED, result)

    # ═══════════════════════════════════════════════════════════════════════════
    # OUTPUT
    # ═══════════════════════════════════════════════════════════════════════════

    async def _reply(self, client_id: str, msg_type: MessageType, payload: Any):
        await self.manager.send_to_client(client_id, WebSocketMessage(type=msg_type, payload=payload))

    async def _broadcast_state(self, user_id: str, state: Dict[str, Any]):
        await self.manager.broadcast_to_room(
            posture_room(user_id),
            WebSocketMessage(type=MessageType.POSTURE_UPDATE, payload={"user_id": user_id, **state}),
        )

    def cleanup(self):
        for task in list(self._tasks):
            task.cancel()
        if self._pose_source is not None:
            self._pose_source.close()
            self._pose_source = None


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_handler: Optional[PoseStreamHandler] = None


def get_pose_stream_handler() -> PoseStreamHandler:
    """Get or create pose stream handler singleton."""
    global _handler
    if _handler is None:
        _handler = PoseStreamHandler()
    return _handler
