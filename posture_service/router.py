"""
PostureCare Posture Service Router

Endpoints for keypoint validation, posture classification, baseline
management, monitoring state and posture event history, plus the live pose
stream WebSockets.
"""

from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, WebSocket
from pydantic import BaseModel, Field

from core.websocket.manager import ClientRole, websocket_endpoint
from shared.utils import handle_exceptions, log_execution_time, now_ms

from .models import (
    POSTURE_LABELS,
    Keypoint,
    PoseFrame,
    PostureLabel,
    PostureSessionHandler,
    get_session_handler,
    kp7_from_rows,
    strip_xyz,
    validate_frame,
    validate_kp7,
)
from .websocket import PoseStreamHandler, get_pose_stream_handler, posture_room

router = APIRouter()


# Service instances (singleton pattern)
_session_handler: Optional[PostureSessionHandler] = None
_stream_handler: Optional[PoseStreamHandler] = None


def get_services():
    """Get or initialize service instances."""
    global _session_handler, _stream_handler
    if _session_handler is None:
        _session_handler = get_session_handler()
    if _stream_handler is None:
        _stream_handler = get_pose_stream_handler()
    return _session_handler, _stream_handler


# ============= Pydantic Models =============

# [x, y, z] rows; null coordinates are reported by validation, not rejected here
KP7Rows = List[List[Optional[float]]]


class KeypointIn(BaseModel):
    name: str
    x: float
    y: float
    z: Optional[float] = None
    confidence: Optional[float] = None
    visibility: Optional[float] = None

    def to_keypoint(self) -> Keypoint:
        confidence = self.confidence if self.confidence is not None else self.visibility
        return Keypoint(name=self.name, x=self.x, y=self.y, z=self.z, confidence=confidence)


class PoseFrameIn(BaseModel):
    timestamp: Optional[float] = None
    keypoints: List[KeypointIn]

    def to_frame(self) -> PoseFrame:
        return PoseFrame(
            timestamp=self.timestamp if self.timestamp is not None else now_ms(),
            keypoints=tuple(kp.to_keypoint() for kp in self.keypoints),
        )


class ValidateRequest(BaseModel):
    keypoints: Optional[KP7Rows] = None
    pose: Optional[PoseFrameIn] = None
    strict: bool = False


class ClassifyRequest(BaseModel):
    baseline: PoseFrameIn
    current: PoseFrameIn


class PredictRequest(BaseModel):
    user_id: str
    frames: Optional[List[KP7Rows]] = None
    poses: Optional[List[PoseFrameIn]] = None


class BaselineRequest(BaseModel):
    user_id: Optional[str] = None
    email: Optional[str] = None  # older clients identify users by email
    keypoints: Optional[KP7Rows] = None
    pose: Optional[PoseFrameIn] = None


class CaptureRequest(BaseModel):
    timeout_ms: Optional[float] = Field(default=None, gt=0)


class EnabledRequest(BaseModel):
    enabled: bool


# ============= REST Endpoints =============

@router.get("/labels")
async def get_labels():
    """Posture labels and the active rule thresholds."""
    session_handler, _ = get_services()
    return {
        "labels": [label.value for label in POSTURE_LABELS],
        "thresholds": asdict(session_handler.classifier.thresholds),
    }


@router.post("/validate")
@handle_exceptions
async def validate_keypoints(request: ValidateRequest):
    """
    Validate seven-point capture rows or a named pose.

    Invalid input is reported, not rejected: the response lists every violated
    point.
    """
    if request.keypoints is not None:
        report = validate_kp7(kp7_from_rows(request.keypoints), strict=request.strict)
    elif request.pose is not None:
        report = validate_frame(request.pose.to_frame(), strict=request.strict)
    else:
        raise HTTPException(status_code=400, detail="Provide keypoints or pose")
    return report.to_dict()


@router.post("/classify")
@handle_exceptions
async def classify_pose(request: ClassifyRequest):
    """Stateless classification of one frame against a baseline."""
    session_handler, _ = get_services()
    result = session_handler.classifier.classify(request.baseline.to_frame(), request.current.to_frame())
    return result.to_dict()


@router.post("/predict")
@handle_exceptions
@log_execution_time
async def predict_posture(request: PredictRequest):
    """
    Remote classification: feed frames through the user's engine in order.

    Accepts seven-point wire frames, named poses, or both (wire frames first).
    """
    if not request.frames and not request.poses:
        raise HTTPException(status_code=400, detail="Provide frames or poses")

    session_handler, _ = get_services()
    results = [
        session_handler.process_frame(request.user_id, None, kp7_from_rows(rows))
        for rows in request.frames or []
    ]
    results += [
        session_handler.process_frame(request.user_id, pose.to_frame())
        for pose in request.poses or []
    ]
    accepted = sum(1 for r in results if r["accepted"])

    state = session_handler.get_or_create(request.user_id).engine.state
    return {
        "user_id": request.user_id,
        "label": state.label.value,
        "score": round(state.score, 4),
        "ready": state.ready,
        "accepted": accepted,
        "rejected": len(results) - accepted,
        "state": state.to_dict(),
    }


@router.post("/baseline")
@handle_exceptions
async def set_baseline(request: BaselineRequest):
    """Set a user's baseline from seven capture points or a named pose."""
    user_id = request.user_id or request.email
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id (or email) is required")

    session_handler, _ = get_services()
    if request.keypoints is not None:
        result = session_handler.set_baseline_kp7(user_id, kp7_from_rows(request.keypoints))
    elif request.pose is not None:
        result = session_handler.set_baseline(user_id, request.pose.to_frame())
    else:
        raise HTTPException(status_code=400, detail="Provide keypoints or pose")

    if "error" in result:
        raise HTTPException(status_code=400, detail=result)
    return result


@router.get("/baseline/{user_id}")
async def get_baseline(user_id: str):
    """Get the user's current baseline."""
    session_handler, _ = get_services()
    baseline = session_handler.get_baseline(user_id)
    if baseline is None:
        raise HTTPException(status_code=404, detail="No baseline for user")
    return {
        "user_id": user_id,
        "baseline": baseline.to_dict(),
        "keypoints": strip_xyz(baseline.keypoints),
    }


@router.delete("/baseline/{user_id}")
async def delete_baseline(user_id: str):
    """Clear the baseline; the user's engine goes back to auto-calibration."""
    session_handler, _ = get_services()
    return session_handler.clear_baseline(user_id)


@router.post("/baseline/{user_id}/capture")
async def capture_baseline(user_id: str, request: Optional[CaptureRequest] = None):
    """
    Capture a baseline from the user's live stream.

    Waits for a stable frame on /ws/stream/{user_id} for up to timeout_ms.
    """
    session_handler, _ = get_services()
    timeout_ms = request.timeout_ms if request else None
    return await session_handler.capture_baseline(user_id, timeout_ms=timeout_ms)


@router.get("/state/{user_id}")
async def get_state(user_id: str):
    """Current smoothed posture state of an active session."""
    session_handler, _ = get_services()
    status = session_handler.get_status(user_id)
    if "error" in status:
        raise HTTPException(status_code=404, detail=status["error"])
    return status


@router.post("/state/{user_id}/reset-counts")
async def reset_counts(user_id: str):
    session_handler, _ = get_services()
    return session_handler.reset_counts(user_id)


@router.post("/state/{user_id}/enabled")
async def set_enabled(user_id: str, request: EnabledRequest):
    """Pause or resume monitoring without losing state."""
    session_handler, _ = get_services()
    return session_handler.set_enabled(user_id, request.enabled)


@router.get("/events/{user_id}/counts")
async def get_event_counts(user_id: str, since_ts: Optional[float] = None):
    """Logged events per posture label."""
    session_handler, _ = get_services()
    counts = session_handler.event_log.count_by_label(user_id, POSTURE_LABELS, since_ts)
    return {
        "user_id": user_id,
        "counts": counts,
        "total": sum(counts.values()),
    }


@router.get("/events/{user_id}/daily-trend")
async def get_daily_trend(
    user_id: str,
    days: int = Query(default=30, ge=1, le=366),
    exclude_normal: bool = True,
):
    """Per-day and cumulative event totals for charting."""
    session_handler, _ = get_services()
    exclude = [PostureLabel.NORMAL] if exclude_normal else []
    trend = session_handler.event_log.daily_trend(user_id, days=days, exclude=exclude)
    return {"user_id": user_id, "days": days, **trend}


@router.get("/events/{user_id}/daily-stack")
async def get_daily_stack(
    user_id: str,
    days: int = Query(default=7, ge=1, le=366),
    exclude_normal: bool = True,
):
    """Per-label counts for each recent day, for stacked bars."""
    session_handler, _ = get_services()
    exclude = [PostureLabel.NORMAL] if exclude_normal else []
    stack = session_handler.event_log.daily_stack(user_id, POSTURE_LABELS, days=days, exclude=exclude)
    return {"user_id": user_id, **stack}


@router.get("/events/{user_id}/hourly")
async def get_hourly_histogram(user_id: str, since_ts: Optional[float] = None, exclude_normal: bool = True):
    session_handler, _ = get_services()
    exclude = [PostureLabel.NORMAL] if exclude_normal else []
    hourly = session_handler.event_log.hourly_histogram(user_id, exclude=exclude, since_ts=since_ts)
    return {"user_id": user_id, **hourly}


@router.get("/events/{user_id}/weekly-heatmap")
async def get_weekly_heatmap(
    user_id: str,
    since_ts: Optional[float] = None,
    exclude_normal: bool = True,
    by_label: bool = False,
):
    """Weekday x hour grid (Monday first); per-label cells with by_label."""
    session_handler, _ = get_services()
    exclude = [PostureLabel.NORMAL] if exclude_normal else []
    heatmap = session_handler.event_log.weekly_heatmap(
        user_id, POSTURE_LABELS, exclude=exclude, since_ts=since_ts, by_label=by_label
    )
    return {"user_id": user_id, "by_label": by_label, **heatmap}


@router.delete("/events/{user_id}")
async def clear_events(user_id: str) -> Dict[str, Any]:
    session_handler, _ = get_services()
    cleared = session_handler.event_log.clear(user_id)
    return {"status": "cleared" if cleared else "empty", "user_id": user_id}


@router.get("/sessions/{user_id}")
async def get_sessions(user_id: str):
    """Monitoring sessions with start and end times (unix ms)."""
    session_handler, _ = get_services()
    records = session_handler.session_log.read(user_id)
    return {
        "user_id": user_id,
        "sessions": [record.to_dict() for record in records],
        "total": len(records),
    }


# ============= WebSocket Endpoints =============

@router.websocket("/ws/stream/{user_id}")
async def posture_stream(websocket: WebSocket, user_id: str):
    """
    Live pose stream for one user.

    Client sends {"type": "frame", "payload": {...}} plus control messages;
    server replies with posture_update / frame_rejected / baseline_* messages.
    """
    _, stream_handler = get_services()
    await websocket_endpoint(
        websocket,
        user_id,
        stream_handler.handle_message,
        on_disconnect=stream_handler.on_disconnect,
    )


@router.websocket("/ws/watch/{user_id}")
async def posture_watch(websocket: WebSocket, user_id: str):
    """Read-only feed of a user's posture updates."""
    await websocket_endpoint(
        websocket,
        user_id,
        role=ClientRole.WATCHER,
        rooms=[posture_room(user_id)],
    )
