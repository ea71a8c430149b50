"""
POISE Posture Service Models

Rule-based posture scoring from MediaPipe body landmarks.
"""

from .posture_evaluator import (
    PostureEvaluator,
    PostureThresholds,
    PostureResult,
    PostureIssue,
    IssueKind,
    Severity,
    Landmark,
    LandmarkIndex,
    Frame,
    get_posture_evaluator
)

from .coaching_session import (
    CoachingSession,
    CoachingSessionHandler,
    ScoreSmoother,
    SessionType,
    SessionState,
    SessionNotFoundError,
    SessionStateError,
    get_session_handler
)

__all__ = [
    # Posture Evaluator
    "PostureEvaluator",
    "PostureThresholds",
    "PostureResult",
    "PostureIssue",
    "IssueKind",
    "Severity",
    "Landmark",
    "LandmarkIndex",
    "Frame",
    "get_posture_evaluator",
    # Coaching Session
    "CoachingSession",
    "CoachingSessionHandler",
    "ScoreSmoother",
    "SessionType",
    "SessionState",
    "SessionNotFoundError",
    "SessionStateError",
    "get_session_handler",
]
