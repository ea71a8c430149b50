"""
POISE Posture Service - Coaching Session Handler

Tracks posture across a debate or interview practice session.
Receives every successful frame evaluation, keeps the live posture score,
and builds the end-of-session posture report.
"""

import logging
import math
import time
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np

from core.config import settings
from .posture_evaluator import (
    Frame,
    IssueKind,
    PostureEvaluator,
    PostureIssue,
    PostureResult,
    get_posture_evaluator,
)

logger = logging.getLogger(__name__)

PostureListener = Callable[[int, List[PostureIssue]], None]

POOR_POSTURE_THRESHOLD = 70
RECURRING_ISSUE_RATIO = 0.25

ISSUE_TIPS = {
    IssueKind.HEAD_LEAN: "Keep your head stacked over your shoulders instead of leaning toward the screen",
    IssueKind.SHOULDER_TILT: "Level your shoulders; check that your chair and desk are at an even height",
    IssueKind.SLOUCHING: "Sit tall with your back against the chair to avoid slouching",
    IssueKind.DISTANCE: "Position the camera so your head and shoulders fill the upper half of the frame",
    IssueKind.SPINE: "Center your body in front of the camera instead of leaning to one side",
}


class SessionNotFoundError(KeyError):
    """Raised when a session id is unknown."""


class SessionStateError(RuntimeError):
    """Raised when an operation does not fit the session state."""


class SessionType(Enum):
    """Practice session kinds."""
    DEBATE = "debate"
    INTERVIEW = "interview"


class SessionState(Enum):
    """Coaching session states."""
    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


# ═══════════════════════════════════════════════════════════════════════════════
# SMOOTHING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ScoreSmoother:
    """
    Exponential moving average over posture scores.

    alpha=1.0 passes scores through unchanged. Skipped frames do not
    decay the average; it only moves when a new score arrives.
    `window` bounds the history kept for statistics.
    """
    alpha: float = 1.0
    window: int = 300
    value: Optional[float] = None
    history: Deque[int] = field(default_factory=deque)

    def __post_init__(self):
        if not 0.0 < self.alpha <= 1.0:
            raise ValueError(f"Smoothing alpha must be in (0, 1], got {self.alpha}")
        if self.window < 1:
            raise ValueError(f"Smoothing window must be positive, got {self.window}")
        self.history = deque(self.history, maxlen=self.window)

    def update(self, score: int) -> int:
        """Fold a new score in and return the smoothed integer score."""
        self.history.append(score)
        if self.value is None:
            self.value = float(score)
        else:
            self.value = self.alpha * score + (1.0 - self.alpha) * self.value
        return round_half_up(self.value)

    @property
    def window_mean(self) -> Optional[float]:
        if not self.history:
            return None
        return float(np.mean(self.history))

    def reset(self):
        self.value = None
        self.history.clear()


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION DATA
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class CoachingSession:
    """Posture state for one practice session."""
    session_id: str
    user_id: str
    session_type: SessionType
    state: SessionState = SessionState.IDLE

    # Live posture
    current_posture: int = 75
    last_issues: List[PostureIssue] = field(default_factory=list)
    smoother: ScoreSmoother = field(default_factory=ScoreSmoother)

    # Frame counters
    frames_received: int = 0
    frames_evaluated: int = 0
    frames_skipped: int = 0

    # Aggregates over every evaluated frame
    score_total: int = 0
    min_score: Optional[int] = None
    max_score: Optional[int] = None
    good_frames: int = 0
    issue_counts: Counter = field(default_factory=Counter)

    # Timing
    created_at: float = field(default_factory=time.time)
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    listeners: List[PostureListener] = field(default_factory=list)

    @property
    def mean_score(self) -> Optional[float]:
        if not self.frames_evaluated:
            return None
        return self.score_total / self.frames_evaluated

    @property
    def duration_seconds(self) -> float:
        if self.start_time is None:
            return 0.0
        return (self.end_time or time.time()) - self.start_time

    def record(self, result: PostureResult) -> int:
        """Fold one evaluation into the session and return the live score."""
        self.frames_evaluated += 1
        self.score_total += result.score
        self.min_score = result.score if self.min_score is None else min(self.min_score, result.score)
        self.max_score = result.score if self.max_score is None else max(self.max_score, result.score)

        if result.is_good:
            self.good_frames += 1
        else:
            self.issue_counts.update(issue.kind for issue in result.issues)

        self.current_posture = self.smoother.update(result.score)
        self.last_issues = list(result.issues)
        return self.current_posture

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        mean = self.mean_score
        recent = self.smoother.window_mean
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "session_type": self.session_type.value,
            "state": self.state.value,
            "current_posture": self.current_posture,
            "current_issues": [issue.to_dict() for issue in self.last_issues],
            "frames_received": self.frames_received,
            "frames_evaluated": self.frames_evaluated,
            "frames_skipped": self.frames_skipped,
            "avg_posture": round(mean, 1) if mean is not None else None,
            "recent_avg_posture": round(recent, 1) if recent is not None else None,
            "duration_seconds": round(self.duration_seconds, 1),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION HANDLER
# ═══════════════════════════════════════════════════════════════════════════════

class CoachingSessionHandler:
    """
    Manages coaching sessions with live posture scoring.

    Features:
    - Per-frame posture evaluation
    - Listener callbacks for live display
    - Optional score smoothing
    - End-of-session posture report
    """

    def __init__(
        self,
        evaluator: Optional[PostureEvaluator] = None,
        smoothing_alpha: Optional[float] = None,
        smoothing_window: Optional[int] = None,
        initial_posture: Optional[int] = None,
    ):
        """
        Initialize session handler.

        Args:
            evaluator: PostureEvaluator instance (uses global if None)
            smoothing_alpha: EMA factor for the live score (settings if None)
            smoothing_window: History length kept per session (settings if None)
            initial_posture: Score reported before the first evaluation
        """
        self.evaluator = evaluator or get_posture_evaluator()
        self.smoothing_alpha = smoothing_alpha if smoothing_alpha is not None else settings.SESSION_SMOOTHING_ALPHA
        self.smoothing_window = smoothing_window or settings.SESSION_SMOOTHING_WINDOW
        self.initial_posture = initial_posture if initial_posture is not None else settings.SESSION_INITIAL_POSTURE
        self.active_sessions: Dict[str, CoachingSession] = {}

    def create_session(self, user_id: str, session_type: SessionType) -> CoachingSession:
        """Create a new idle session."""
        session_id = str(uuid.uuid4())[:8]

        session = CoachingSession(
            session_id=session_id,
            user_id=user_id,
            session_type=session_type,
            current_posture=self.initial_posture,
            smoother=ScoreSmoother(alpha=self.smoothing_alpha, window=self.smoothing_window),
        )
        self.active_sessions[session_id] = session

        logger.info(f"Created {session_type.value} session {session_id} for user {user_id}")
        return session

    def get_session(self, session_id: str) -> Optional[CoachingSession]:
        """Get session by ID."""
        return self.active_sessions.get(session_id)

    def _require(self, session_id: str) -> CoachingSession:
        session = self.active_sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def add_listener(self, session_id: str, listener: PostureListener):
        """Register a callback invoked with (score, issues) after each scored frame."""
        self._require(session_id).listeners.append(listener)

    def remove_listener(self, session_id: str, listener: PostureListener):
        session = self._require(session_id)
        if listener in session.listeners:
            session.listeners.remove(listener)

    def start_session(self, session_id: str) -> CoachingSession:
        session = self._require(session_id)
        if session.state == SessionState.COMPLETED:
            raise SessionStateError(f"Session {session_id} already completed")

        session.state = SessionState.ACTIVE
        if session.start_time is None:
            session.start_time = time.time()
        return session

    def pause_session(self, session_id: str) -> CoachingSession:
        session = self._require(session_id)
        if session.state != SessionState.ACTIVE:
            raise SessionStateError(f"Session {session_id} is {session.state.value}, not active")
        session.state = SessionState.PAUSED
        return session

    def resume_session(self, session_id: str) -> CoachingSession:
        session = self._require(session_id)
        if session.state != SessionState.PAUSED:
            raise SessionStateError(f"Session {session_id} is not paused")
        session.state = SessionState.ACTIVE
        return session

    def process_frame(self, session_id: str, frame: Frame) -> Optional[PostureResult]:
        """
        Evaluate a frame for an active session.

        Returns the result, or None when the session is not active or the
        frame lacks the required landmarks. Listeners run only on results.
        """
        session = self._require(session_id)
        session.frames_received += 1

        if session.state != SessionState.ACTIVE:
            session.frames_skipped += 1
            return None

        result = self.evaluator.evaluate(frame)
        if result is None:
            session.frames_skipped += 1
            return None

        score = session.record(result)
        for listener in list(session.listeners):
            try:
                listener(score, result.issues)
            except Exception as e:
                logger.exception(f"Posture listener failed in session {session_id}: {e}")

        return result

    def complete_session(
        self,
        session_id: str,
        speech_metrics: Optional[Dict[str, float]] = None,
    ) -> Dict[str, Any]:
        """
        Complete a session and generate its posture report.

        Args:
            session_id: Session to finish
            speech_metrics: Optional clarity/confidence/eye_contact scores
                from the external grader, folded into an overall score

        Raises:
            SessionStateError: when the session was already completed
        """
        session = self._require(session_id)
        if session.state == SessionState.COMPLETED:
            raise SessionStateError(f"Session {session_id} already completed")

        session.state = SessionState.COMPLETED
        session.end_time = time.time()
        session.listeners.clear()

        summary = self._generate_summary(session, speech_metrics)
        logger.info(
            f"Completed session {session_id}: posture {summary['posture']['score']} "
            f"over {session.frames_evaluated} frames"
        )
        return summary

    def _generate_summary(
        self,
        session: CoachingSession,
        speech_metrics: Optional[Dict[str, float]],
    ) -> Dict[str, Any]:
        mean = session.mean_score
        posture = round_half_up(mean) if mean is not None else session.current_posture
        good_ratio = session.good_frames / session.frames_evaluated if session.frames_evaluated else 0.0

        report: Dict[str, Any] = {
            "status": "completed",
            "session_id": session.session_id,
            "user_id": session.user_id,
            "session_type": session.session_type.value,
            "posture": {
                "score": posture,
                "last_score": session.current_posture,
                "min_score": session.min_score,
                "max_score": session.max_score,
                "rating": rate_score(posture),
                "good_posture_ratio": round(good_ratio, 3),
                "frames_evaluated": session.frames_evaluated,
                "frames_skipped": session.frames_skipped,
                "issue_counts": {kind.value: count for kind, count in session.issue_counts.most_common()},
            },
            "duration_seconds": round(session.duration_seconds, 1),
            "recommendations": self._get_recommendations(session, posture),
            "completed_at": datetime.now().isoformat(),
        }

        if speech_metrics:
            report["overall"] = combine_overall(speech_metrics, posture)

        return report

    def _get_recommendations(self, session: CoachingSession, posture: int) -> List[str]:
        """Posture recommendations for the final report."""
        recommendations = []

        if posture < POOR_POSTURE_THRESHOLD:
            recommendations.append("Sit upright and maintain good posture throughout the interview")

        if session.frames_evaluated:
            for kind, count in session.issue_counts.most_common():
                if count / session.frames_evaluated >= RECURRING_ISSUE_RATIO:
                    recommendations.append(ISSUE_TIPS[kind])

        return recommendations

    def get_session_status(self, session_id: str) -> Dict[str, Any]:
        """Get current session status."""
        return self._require(session_id).to_dict()

    def cleanup_session(self, session_id: str):
        """Remove session from active sessions."""
        if session_id in self.active_sessions:
            del self.active_sessions[session_id]


def round_half_up(value: float) -> int:
    """Round .5 upwards, matching the scores shown in the web client."""
    return int(math.floor(value + 0.5))


def rate_score(score: float) -> str:
    """Map a posture score to its display band."""
    if score >= 80:
        return "good"
    elif score >= 60:
        return "fair"
    else:
        return "poor"


def combine_overall(speech_metrics: Dict[str, float], posture: int) -> int:
    """Average clarity, confidence and eye contact with the posture score."""
    parts = [
        float(speech_metrics.get("clarity", 0)),
        float(speech_metrics.get("confidence", 0)),
        float(speech_metrics.get("eye_contact", 0)),
        float(posture),
    ]
    return round_half_up(sum(parts) / len(parts))


# ═══════════════════════════════════════════════════════════════════════════════
# MODULE-LEVEL SINGLETON
# ═══════════════════════════════════════════════════════════════════════════════

_handler_instance: Optional[CoachingSessionHandler] = None

def get_session_handler() -> CoachingSessionHandler:
    """Get or create the global session handler instance."""
    global _handler_instance
    if _handler_instance is None:
        _handler_instance = CoachingSessionHandler()
    return _handler_instance
