"""
POISE Configuration

Environment variables and application settings.
"""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "POISE"
    DEBUG: bool = True

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:8080", "http://localhost:3000"]

    # WebSocket
    WS_MAX_CONNECTIONS: int = 100
    WS_HEARTBEAT_INTERVAL: int = 30

    # Thread Pool
    THREAD_POOL_SIZE: int = 4

    # Landmark source (MediaPipe Pose)
    POSE_MODEL_COMPLEXITY: int = 1
    POSE_MIN_DETECTION_CONFIDENCE: float = 0.5
    POSE_MIN_TRACKING_CONFIDENCE: float = 0.5
    VIDEO_SAMPLE_RATE: int = 5  # Evaluate every Nth frame of uploaded videos

    # Coaching sessions
    SESSION_INITIAL_POSTURE: int = 75
    SESSION_SMOOTHING_ALPHA: float = 1.0  # 1.0 disables smoothing
    SESSION_SMOOTHING_WINDOW: int = 300

    # Posture thresholds (normalized image units)
    POSTURE_HEAD_LEAN: float = 0.08
    POSTURE_SHOULDER_TILT: float = 0.05
    POSTURE_SLOUCH: float = -0.15
    POSTURE_DISTANCE_MIN: float = 0.1
    POSTURE_DISTANCE_MAX: float = 0.7
    POSTURE_SPINE: float = 0.05
    POSTURE_MIN_VISIBILITY: float = 0.0

    # Posture penalties (score points)
    POSTURE_HEAD_LEAN_PENALTY: int = 15
    POSTURE_SHOULDER_TILT_PENALTY: int = 10
    POSTURE_SLOUCH_PENALTY: int = 20
    POSTURE_DISTANCE_PENALTY: int = 10
    POSTURE_SPINE_PENALTY: int = 10

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
