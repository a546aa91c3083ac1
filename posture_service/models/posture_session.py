"""
PostureCare Posture Service - Session Handler

Keeps one streaming engine per user together with the latest frames seen on
that user's stream, the pending baseline capture and the event-log throttle.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from core.config import settings
from shared.storage import LocalBaselineStore, LocalEventLog, LocalSessionLog
from shared.utils import now_ms

from .baseline_capture import capture_stable
from .frame_validator import validate_frame, validate_kp7
from .keypoints import Keypoint, PoseFrame, PostureLabel
from .pose_source import kp7_to_pose_frame
from .posture_engine import EngineState, PostureEngine
from .rule_classifier import RuleClassifier

logger = logging.getLogger(__name__)


@dataclass
class PostureSession:
    """Live monitoring state for one user."""
    user_id: str
    engine: PostureEngine
    created_at: float = field(default_factory=time.time)
    session_id: Optional[str] = None  # row in the session log

    # Latest input, read by baseline capture
    last_frame: Optional[PoseFrame] = None
    last_kp7: Optional[List[Keypoint]] = None
    # The kp7 list that arrived with last_frame (None for named-only frames)
    last_frame_kp7: Optional[List[Keypoint]] = None

    frames_received: int = 0
    frames_rejected: int = 0

    # Event-log throttle
    last_logged_label: Optional[PostureLabel] = None
    last_logged_at: Optional[float] = None

    capture_task: Optional[asyncio.Task] = None

    @property
    def capturing(self) -> bool:
        return self.capture_task is not None and not self.capture_task.done()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "enabled": self.engine.enabled,
            "capturing": self.capturing,
            "frames_received": self.frames_received,
            "frames_rejected": self.frames_rejected,
            "duration_seconds": round(time.time() - self.created_at, 1),
            "state": self.engine.state.to_dict(),
        }


class PostureSessionHandler:
    """
    Manages per-user posture sessions.

    Features:
    - One engine per user, baseline restored from disk on first use
    - Frame intake from named poses or seven-point captures
    - Bounded baseline capture from the live stream
    - Throttled event logging of classified labels
    """

    def __init__(
        self,
        event_log: Optional[LocalEventLog] = None,
        baseline_store: Optional[LocalBaselineStore] = None,
        classifier: Optional[RuleClassifier] = None,
        session_log: Optional[LocalSessionLog] = None,
    ):
        """
        Initialize session handler.

        Args:
            event_log: Event sink (a local JSONL log if None)
            baseline_store: Baseline persistence (local JSON files if None)
            classifier: Classifier shared by every session's engine
            session_log: Session start/end log (a local JSONL log if None)
        """
        self.event_log = event_log or LocalEventLog()
        self.baseline_store = baseline_store or LocalBaselineStore()
        self.classifier = classifier or RuleClassifier()
        self.session_log = session_log or LocalSessionLog()
        self.active_sessions: Dict[str, PostureSession] = {}

    # ═══════════════════════════════════════════════════════════════════════════
    # SESSION LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    def get_or_create(self, user_id: str) -> PostureSession:
        session = self.active_sessions.get(user_id)
        if session is not None:
            return session

        baseline = self._load_baseline(user_id)
        session = PostureSession(
            user_id=user_id,
            engine=PostureEngine(classifier=self.classifier, baseline=baseline),
        )
        self.active_sessions[user_id] = session

        try:
            session.session_id = self.session_log.start(user_id, ts=session.created_at * 1000.0).session_id
        except OSError as e:
            logger.error(f"❌ Session log write failed for {user_id}: {e}")

        restored = " (baseline restored)" if baseline is not None else ""
        logger.info(f"🧍 Posture session created for {user_id}{restored}")
        return session

    def _load_baseline(self, user_id: str) -> Optional[PoseFrame]:
        data = self.baseline_store.load(user_id)
        if data is None:
            return None
        try:
            frame = PoseFrame.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"❌ Stored baseline for {user_id} is malformed: {e}")
            return None

        report = validate_frame(frame)
        if not report.ok:
            logger.error(f"❌ Stored baseline for {user_id} is invalid: {', '.join(report.reasons)}")
            return None
        return frame

    def get_session(self, user_id: str) -> Optional[PostureSession]:
        return self.active_sessions.get(user_id)

    def cleanup_session(self, user_id: str):
        """Cancel any capture in flight and drop the session."""
        session = self.active_sessions.pop(user_id, None)
        if session is None:
            return
        if session.capturing:
            session.capture_task.cancel()
        if session.session_id is not None:
            try:
                self.session_log.end(user_id, session.session_id)
            except OSError as e:
                logger.error(f"❌ Session log write failed for {user_id}: {e}")
        logger.info(f"👋 Posture session closed for {user_id}")

    # ═══════════════════════════════════════════════════════════════════════════
    # FRAME INTAKE
    # ═══════════════════════════════════════════════════════════════════════════

    def process_frame(
        self,
        user_id: str,
        frame: Optional[PoseFrame],
        kp7: Optional[Sequence[Keypoint]] = None,
    ) -> Dict[str, Any]:
        """
        Feed one observation into the user's engine.

        Args:
            user_id: Session owner
            frame: Six-point classifier frame, derived from ``kp7`` if None
            kp7: Seven capture points from the same instant, if available

        Returns:
            {"accepted": bool, "reasons": [...], "state": {...}}
        """
        session = self.get_or_create(user_id)
        session.frames_received += 1

        report = None
        if kp7 is not None:
            kp7 = list(kp7)
            session.last_kp7 = kp7
            if frame is None:
                report = validate_kp7(kp7)
                if report.ok:
                    frame = kp7_to_pose_frame(kp7, now_ms())

        if frame is not None or report is None:
            report = validate_frame(frame)
        if not report.ok:
            session.frames_rejected += 1
            return {
                "accepted": False,
                "reasons": report.reasons,
                "state": session.engine.state.to_dict(),
            }

        session.last_frame = frame
        session.last_frame_kp7 = kp7
        if not session.engine.enabled:
            return {"accepted": False, "reasons": ["monitoring paused"], "state": session.engine.state.to_dict()}

        classified = session.engine.ready
        state = session.engine.update(frame)
        if classified:
            self._log_event(session, state)

        return {"accepted": True, "reasons": [], "state": state.to_dict()}

    def _log_event(self, session: PostureSession, state: EngineState):
        if not settings.EVENT_LOG_ENABLED:
            return

        now = now_ms()
        changed = state.label != session.last_logged_label
        due = (
            session.last_logged_at is None
            or now - session.last_logged_at >= settings.EVENT_LOG_MIN_INTERVAL_MS
        )
        if not (changed or due):
            return

        try:
            self.event_log.record(session.user_id, state.label, round(state.score, 4), ts=now)
        except OSError as e:
            logger.error(f"❌ Event log write failed for {session.user_id}: {e}")
            return
        session.last_logged_label = state.label
        session.last_logged_at = now

    # ═══════════════════════════════════════════════════════════════════════════
    # BASELINE
    # ═══════════════════════════════════════════════════════════════════════════

    def set_baseline(self, user_id: str, frame: PoseFrame, persist: bool = True) -> Dict[str, Any]:
        """Adopt ``frame`` as the user's baseline."""
        report = validate_frame(frame)
        if not report.ok:
            return {"error": "Invalid baseline", "reasons": report.reasons}

        session = self.get_or_create(user_id)
        session.engine.set_baseline(frame)
        if persist:
            self.baseline_store.save(user_id, frame.to_dict())

        return {
            "status": "baseline_set",
            "user_id": user_id,
            "baseline": frame.to_dict(),
            "state": session.engine.state.to_dict(),
        }

    def set_baseline_kp7(self, user_id: str, kps: Sequence[Keypoint], persist: bool = True) -> Dict[str, Any]:
        """Adopt seven capture points as the user's baseline."""
        report = validate_kp7(kps)
        if not report.ok:
            return {"error": "Invalid keypoints", "reasons": report.reasons}
        return self.set_baseline(user_id, kp7_to_pose_frame(kps, now_ms()), persist=persist)

    def get_baseline(self, user_id: str) -> Optional[PoseFrame]:
        session = self.active_sessions.get(user_id)
        if session is not None and session.engine.baseline is not None:
            return session.engine.baseline
        return self._load_baseline(user_id)

    def clear_baseline(self, user_id: str) -> Dict[str, Any]:
        """Forget the baseline in memory and on disk; the engine recalibrates."""
        session = self.get_or_create(user_id)
        session.engine.clear_baseline()
        deleted = self.baseline_store.delete(user_id)
        return {
            "status": "baseline_cleared",
            "user_id": user_id,
            "deleted": deleted,
            "state": session.engine.state.to_dict(),
        }

    async def capture_baseline(
        self,
        user_id: str,
        timeout_ms: Optional[float] = None,
        persist: bool = True,
    ) -> Dict[str, Any]:
        """
        Capture a baseline from the user's live stream.

        Polls the latest seven-point sample (or the latest classifier frame
        when the stream carries named poses only) until one validates or the
        deadline passes.
        """
        session = self.get_or_create(user_id)

        if session.last_kp7 is None and session.last_frame is not None:
            frame = await capture_stable(
                lambda: session.last_frame,
                timeout_ms=timeout_ms,
                validator=validate_frame,
            )
        else:
            sampled: Dict[str, Optional[PoseFrame]] = {}

            def latest_kp7():
                # A named frame is only reused when it came with this kp7 sample
                same_tick = session.last_kp7 is not None and session.last_frame_kp7 is session.last_kp7
                sampled["frame"] = session.last_frame if same_tick else None
                return session.last_kp7

            kps = await capture_stable(latest_kp7, timeout_ms=timeout_ms)
            frame = None
            if kps is not None:
                frame = sampled.get("frame") or kp7_to_pose_frame(kps, now_ms())

        if frame is None:
            return {
                "status": "failed",
                "user_id": user_id,
                "reason": "No stable pose within the capture window",
            }

        return self.set_baseline(user_id, frame, persist=persist)

    def start_capture(self, user_id: str, timeout_ms: Optional[float] = None) -> asyncio.Task:
        """Run capture_baseline as a task owned by the session, replacing any pending one."""
        session = self.get_or_create(user_id)
        if session.capturing:
            session.capture_task.cancel()
        session.capture_task = asyncio.create_task(self.capture_baseline(user_id, timeout_ms))
        return session.capture_task

    # ═══════════════════════════════════════════════════════════════════════════
    # CONTROLS AND STATUS
    # ═══════════════════════════════════════════════════════════════════════════

    def reset_counts(self, user_id: str) -> Dict[str, Any]:
        session = self.get_or_create(user_id)
        session.engine.reset_counts()
        return {"status": "counts_reset", "state": session.engine.state.to_dict()}

    def set_enabled(self, user_id: str, enabled: bool) -> Dict[str, Any]:
        session = self.get_or_create(user_id)
        session.engine.set_enabled(enabled)
        logger.info(f"{'▶️' if enabled else '⏸️'} Monitoring {'resumed' if enabled else 'paused'} for {user_id}")
        return {"status": "enabled" if enabled else "paused", "enabled": session.engine.enabled}

    def get_status(self, user_id: str) -> Dict[str, Any]:
        session = self.active_sessions.get(user_id)
        if not session:
            return {"error": "Session not found", "user_id": user_id}
        return session.to_dict()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_sessions": len(self.active_sessions),
            "calibrated_sessions": sum(1 for s in self.active_sessions.values() if s.engine.ready),
            "capturing_sessions": sum(1 for s in self.active_sessions.values() if s.capturing),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# MODULE-LEVEL SINGLETON
# ═══════════════════════════════════════════════════════════════════════════════

_handler_instance: Optional[PostureSessionHandler] = None


def get_session_handler() -> PostureSessionHandler:
    """Get or create the global session handler instance."""
    global _handler_instance
    if _handler_instance is None:
        _handler_instance = PostureSessionHandler()
    return _handler_instance
