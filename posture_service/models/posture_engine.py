"""
PostureCare Posture Service - Streaming Engine

Turns a live sequence of pose frames into a smoothed, continuously updated
EngineState.

States:
- Uncalibrated: valid frames fill a calibration buffer. When it reaches
  capacity the baseline becomes the per-keypoint mean of the buffer.
- Calibrated: each frame is classified against the baseline, the raw label
  goes into a FIFO window and the window's majority label is emitted with the
  instantaneous score of the latest frame.

Only the engine's own transition methods mutate the baseline and state.
Observers get immutable snapshots via subscribe().
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence

import numpy as np

from core.config import settings

from .feature_extractor import FeatureSet
from .frame_validator import validate_frame
from .keypoints import (
    CLASSIFIER_KEYPOINTS,
    Keypoint,
    PoseFrame,
    PostureLabel,
    empty_counts,
)
from .rule_classifier import ClassificationResult, RuleClassifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineState:
    """Read-only snapshot of the engine's observable state."""
    ready: bool = False
    label: PostureLabel = PostureLabel.NORMAL
    score: float = 0.0
    counts: Dict[PostureLabel, int] = field(default_factory=empty_counts)
    metrics: Optional[FeatureSet] = None
    calibration_frames: int = 0
    timestamp: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready": self.ready,
            "label": self.label.value,
            "score": round(self.score, 4),
            "counts": {label.value: n for label, n in self.counts.items()},
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "calibration_frames": self.calibration_frames,
            "timestamp": self.timestamp,
        }


StateListener = Callable[[EngineState], None]


def majority(labels: Iterable[PostureLabel]) -> PostureLabel:
    """
    Most frequent label.

    Ties go to the tied label seen first in the window: [B, A, A, B] -> B.
    """
    tally: Dict[PostureLabel, int] = {}
    for label in labels:
        tally[label] = tally.get(label, 0) + 1

    best, best_n = PostureLabel.NORMAL, -1
    for label, n in tally.items():
        if n > best_n:
            best, best_n = label, n
    return best


def average_frames(
    frames: List[PoseFrame],
    timestamp: Optional[float] = None,
    names: Sequence[str] = CLASSIFIER_KEYPOINTS,
) -> PoseFrame:
    """
    Coordinate-wise mean of frames over ``names``.

    Extra points some frames carry are ignored. z is averaged only when every
    frame carries it for that keypoint.

    Raises:
        ValueError: no frames
        MissingKeypointError: a frame lacks one of ``names``
    """
    if not frames:
        raise ValueError("average_frames() needs at least one frame")

    keypoints = []
    for name in names:
        points = [f.require(name, "calibration frame") for f in frames]
        xy = np.array([[p.x, p.y] for p in points], dtype=np.float64).mean(axis=0)
        z = None
        if all(p.z is not None for p in points):
            z = float(np.mean([p.z for p in points]))
        keypoints.append(Keypoint(name=name, x=float(xy[0]), y=float(xy[1]), z=z))

    return PoseFrame(
        timestamp=timestamp if timestamp is not None else time.time() * 1000.0,
        keypoints=tuple(keypoints),
    )


class PostureEngine:
    """
    Smoothing and auto-calibration state machine around the rule classifier.

    Single-threaded: callers feed frames in arrival order and must not call
    update() concurrently on the same engine.
    """

    def __init__(
        self,
        smooth_window: Optional[int] = None,
        auto_calib_frames: Optional[int] = None,
        classifier: Optional[RuleClassifier] = None,
        baseline: Optional[PoseFrame] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            smooth_window: Majority-vote window capacity (default from settings)
            auto_calib_frames: Calibration buffer capacity (default from settings)
            classifier: Shared RuleClassifier (a new one if None)
            baseline: Initial baseline, skips auto-calibration
            clock: Millisecond clock used to stamp averaged baselines
        """
        self.smooth_window = settings.SMOOTH_WINDOW if smooth_window is None else smooth_window
        self.auto_calib_frames = settings.AUTO_CALIB_FRAMES if auto_calib_frames is None else auto_calib_frames
        if self.smooth_window < 1 or self.auto_calib_frames < 1:
            raise ValueError("smooth_window and auto_calib_frames must be >= 1")

        self.classifier = classifier or RuleClassifier()
        self._clock = clock or (lambda: time.time() * 1000.0)

        self._baseline: Optional[PoseFrame] = None
        self._window: Deque[PostureLabel] = deque(maxlen=self.smooth_window)
        self._calib_buffer: List[PoseFrame] = []
        self._state = EngineState()
        self._enabled = True
        self._listeners: List[StateListener] = []

        if baseline is not None:
            self.set_baseline(baseline)

    # ═══════════════════════════════════════════════════════════════════════════
    # READ-ONLY VIEWS
    # ═══════════════════════════════════════════════════════════════════════════

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def baseline(self) -> Optional[PoseFrame]:
        return self._baseline

    @property
    def ready(self) -> bool:
        return self._baseline is not None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def window(self) -> List[PostureLabel]:
        return list(self._window)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ═══════════════════════════════════════════════════════════════════════════
    # TRANSITIONS
    # ═══════════════════════════════════════════════════════════════════════════

    def set_enabled(self, enabled: bool):
        """Pause or resume frame intake. No state is reset."""
        self._enabled = bool(enabled)

    def update(self, frame: Optional[PoseFrame]) -> EngineState:
        """
        Feed one frame.

        Disabled engines, missing frames and invalid frames leave the state
        untouched.
        """
        if not self._enabled or frame is None:
            return self._state

        report = validate_frame(frame, CLASSIFIER_KEYPOINTS)
        if not report.ok:
            logger.debug(f"Skipping invalid frame: {', '.join(report.reasons)}")
            return self._state

        baseline = self._baseline
        if baseline is None:
            return self._calibrate(frame)

        result = self.classifier.classify(baseline, frame)
        return self._apply(result, frame.timestamp)

    def set_baseline(self, frame: PoseFrame):
        """Adopt ``frame`` as baseline immediately and clear both buffers."""
        self._baseline = frame
        self._window.clear()
        self._calib_buffer = []
        self._emit(EngineState(
            ready=True,
            label=self._state.label,
            score=self._state.score,
            counts=dict(self._state.counts),
            metrics=self._state.metrics,
            calibration_frames=0,
            timestamp=self._state.timestamp,
        ))
        logger.info("📐 Baseline set")

    def clear_baseline(self):
        """Drop the baseline and return to auto-calibration."""
        self._baseline = None
        self._window.clear()
        self._calib_buffer = []
        self._emit(EngineState(
            ready=False,
            label=self._state.label,
            score=self._state.score,
            counts=dict(self._state.counts),
            metrics=self._state.metrics,
            calibration_frames=0,
            timestamp=self._state.timestamp,
        ))
        logger.info("🧹 Baseline cleared")

    def reset_counts(self):
        """Zero the per-label counters. Calibration and window are untouched."""
        self._emit(EngineState(
            ready=self._state.ready,
            label=self._state.label,
            score=self._state.score,
            counts=empty_counts(),
            metrics=self._state.metrics,
            calibration_frames=self._state.calibration_frames,
            timestamp=self._state.timestamp,
        ))

    # ═══════════════════════════════════════════════════════════════════════════
    # INTERNALS
    # ═══════════════════════════════════════════════════════════════════════════

    def _calibrate(self, frame: PoseFrame) -> EngineState:
        self._calib_buffer.append(frame)

        if len(self._calib_buffer) >= self.auto_calib_frames:
            try:
                self._baseline = average_frames(self._calib_buffer, self._clock())
            finally:
                self._calib_buffer = []
            logger.info(f"✅ Auto-calibration complete ({self.auto_calib_frames} frames)")
            return self._emit(EngineState(
                ready=True,
                label=self._state.label,
                score=self._state.score,
                counts=dict(self._state.counts),
                metrics=self._state.metrics,
                calibration_frames=0,
                timestamp=frame.timestamp,
            ))

        return self._emit(EngineState(
            ready=False,
            label=self._state.label,
            score=self._state.score,
            counts=dict(self._state.counts),
            metrics=self._state.metrics,
            calibration_frames=len(self._calib_buffer),
            timestamp=frame.timestamp,
        ))

    def _apply(self, result: ClassificationResult, timestamp: float) -> EngineState:
        self._window.append(result.label)
        smoothed = majority(self._window)

        counts = dict(self._state.counts)
        counts[result.label] = counts.get(result.label, 0) + 1

        if smoothed != self._state.label:
            logger.debug(f"Posture {self._state.label.value} -> {smoothed.value}")

        return self._emit(EngineState(
            ready=True,
            label=smoothed,
            score=result.score,
            counts=counts,
            metrics=result.metrics,
            calibration_frames=0,
            timestamp=timestamp,
        ))

    def _emit(self, state: EngineState) -> EngineState:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"State listener failed: {type(e).__name__}: {e}")
        return state
