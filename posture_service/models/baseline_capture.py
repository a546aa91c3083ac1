"""
PostureCare Posture Service - Baseline Capture

Bounded polling for one frame good enough to become a baseline while the
user holds a pose. Momentary occlusion is expected, so invalid polls are
absorbed until the deadline.
"""

import asyncio
import logging
from typing import Callable, Optional, Sequence

from core.config import settings

from .frame_validator import ValidationReport, validate_kp7
from .keypoints import Keypoint

logger = logging.getLogger(__name__)

FrameSource = Callable[[], Optional[Sequence[Keypoint]]]
Validator = Callable[[Optional[Sequence[Keypoint]]], ValidationReport]


async def capture_stable(
    frame_source: FrameSource,
    timeout_ms: Optional[float] = None,
    poll_interval_ms: Optional[float] = None,
    validator: Validator = validate_kp7,
) -> Optional[Sequence[Keypoint]]:
    """
    Poll ``frame_source`` until it yields keypoints that pass ``validator``.

    Args:
        frame_source: Returns the latest keypoints, or None if no frame yet
        timeout_ms: Overall deadline (default CAPTURE_TIMEOUT_MS)
        poll_interval_ms: Delay between polls (default CAPTURE_POLL_MS)
        validator: Acceptance check, the seven-point check by default

    Returns:
        The first valid keypoints, or None once the deadline passes.

    Cancelling the awaiting task stops the loop at its next sleep.
    """
    timeout_ms = settings.CAPTURE_TIMEOUT_MS if timeout_ms is None else timeout_ms
    poll_interval_ms = settings.CAPTURE_POLL_MS if poll_interval_ms is None else poll_interval_ms

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000.0
    attempts = 0
    last_report: Optional[ValidationReport] = None

    while loop.time() < deadline:
        attempts += 1
        keypoints = frame_source()
        if keypoints is not None:
            last_report = validator(keypoints)
            if last_report.ok:
                logger.info(f"📸 Stable baseline captured after {attempts} poll(s)")
                return keypoints

        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(poll_interval_ms / 1000.0, remaining))

    reasons = ", ".join(last_report.reasons) if last_report else "no frames"
    logger.info(f"⏱️ Baseline capture timed out after {attempts} poll(s): {reasons}")
    return None
