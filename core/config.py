"""
PostureCare Configuration

Environment variables and application settings.
"""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "PostureCare"
    DEBUG: bool = True
    LOG_LEVEL: str = "DEBUG"

    # Local storage (event log + baselines)
    DATA_PATH: str = "data"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:5173"]

    # WebSocket
    WS_MAX_CONNECTIONS: int = 100
    WS_HEARTBEAT_INTERVAL: int = 30

    # Streaming engine
    SMOOTH_WINDOW: int = 10
    AUTO_CALIB_FRAMES: int = 30

    # Rule classifier (threshold, ramp span to saturation)
    SHOULDER_TILT_THRESHOLD: float = 0.08
    SHOULDER_TILT_SPAN: float = 0.25
    NECK_TILT_THRESHOLD_DEG: float = 12.0
    NECK_TILT_SPAN_DEG: float = 20.0
    FORWARD_HEAD_THRESHOLD: float = 0.18
    FORWARD_HEAD_SPAN: float = 0.30
    TORSO_REDUCE_THRESHOLD: float = 0.12
    TORSO_REDUCE_SPAN: float = 0.25
    SHOULDER_WIDTH_EPSILON: float = 1e-6

    # Frame validation
    MIN_KEYPOINT_CONFIDENCE: float = 0.5
    FRAME_MARGIN: float = 0.05

    # Baseline capture
    CAPTURE_TIMEOUT_MS: int = 1500
    CAPTURE_POLL_MS: int = 60

    # Event log
    EVENT_LOG_ENABLED: bool = True
    EVENT_LOG_MIN_INTERVAL_MS: int = 1000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
