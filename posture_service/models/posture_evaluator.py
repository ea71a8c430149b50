"""
POISE Posture Service - Posture Evaluator

Rule-based posture scoring from body landmarks.
Converts one frame of normalized keypoints into a 0-100 score and an ordered
list of posture issues. Stateless: smoothing and aggregation belong to the caller.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from core.config import settings

logger = logging.getLogger(__name__)

# Tolerance for float noise in derived quantities (0.58 - 0.5 != 0.08 exactly)
BOUNDARY_EPSILON = 1e-9


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS AND DATA CLASSES
# ═══════════════════════════════════════════════════════════════════════════════

class LandmarkIndex(Enum):
    """BlazePose anatomical landmark layout (33 points)."""
    NOSE = 0
    LEFT_EYE_INNER = 1
    LEFT_EYE = 2
    LEFT_EYE_OUTER = 3
    RIGHT_EYE_INNER = 4
    RIGHT_EYE = 5
    RIGHT_EYE_OUTER = 6
    LEFT_EAR = 7
    RIGHT_EAR = 8
    MOUTH_LEFT = 9
    MOUTH_RIGHT = 10
    LEFT_SHOULDER = 11
    RIGHT_SHOULDER = 12
    LEFT_ELBOW = 13
    RIGHT_ELBOW = 14
    LEFT_WRIST = 15
    RIGHT_WRIST = 16
    LEFT_PINKY = 17
    RIGHT_PINKY = 18
    LEFT_INDEX = 19
    RIGHT_INDEX = 20
    LEFT_THUMB = 21
    RIGHT_THUMB = 22
    LEFT_HIP = 23
    RIGHT_HIP = 24
    LEFT_KNEE = 25
    RIGHT_KNEE = 26
    LEFT_ANKLE = 27
    RIGHT_ANKLE = 28
    LEFT_HEEL = 29
    RIGHT_HEEL = 30
    LEFT_FOOT_INDEX = 31
    RIGHT_FOOT_INDEX = 32


NUM_LANDMARKS = len(LandmarkIndex)

REQUIRED_LANDMARKS = (
    LandmarkIndex.NOSE,
    LandmarkIndex.LEFT_SHOULDER,
    LandmarkIndex.RIGHT_SHOULDER,
    LandmarkIndex.LEFT_HIP,
    LandmarkIndex.RIGHT_HIP,
)


class IssueKind(str, Enum):
    """Posture issue categories, in rule order."""
    HEAD_LEAN = "head-lean"
    SHOULDER_TILT = "shoulder-tilt"
    SLOUCHING = "slouching"
    DISTANCE = "distance"
    SPINE = "spine-misalignment"
    GOOD = "good"


class Severity(str, Enum):
    """Display styling only; does not weight the score."""
    GOOD = "good"
    WARNING = "warning"
    ERROR = "error"


ISSUE_MESSAGES = {
    IssueKind.HEAD_LEAN: "Head leaning forward - keep head aligned with shoulders",
    IssueKind.SHOULDER_TILT: "Shoulders uneven - sit up straight",
    IssueKind.SLOUCHING: "Slouching detected - straighten your back",
    IssueKind.DISTANCE: "Adjust distance from camera",
    IssueKind.SPINE: "Leaning to one side - center your body",
    IssueKind.GOOD: "Excellent posture! Keep it up!",
}


@dataclass(frozen=True)
class Landmark:
    """A single pose landmark in normalized image coordinates."""
    x: float
    y: float
    z: float = 0.0
    visibility: float = 0.0

    @property
    def is_finite(self) -> bool:
        return math.isfinite(self.x) and math.isfinite(self.y)


@dataclass(frozen=True)
class Frame:
    """
    One snapshot of detected landmarks keyed by anatomical index.

    Absent keys mean the detector did not supply that landmark.
    An empty frame means no person was detected.
    """
    landmarks: Dict[int, Landmark] = field(default_factory=dict)
    timestamp: float = 0.0

    @classmethod
    def from_sequence(cls, points: Sequence[Optional[Any]], timestamp: float = 0.0) -> "Frame":
        """
        Build a frame from an ordered landmark list.

        Entries may be Landmark objects, objects exposing x/y/visibility
        (e.g. MediaPipe landmarks), dicts, or None for a missing point.
        Entries past index 32 are ignored.
        """
        landmarks: Dict[int, Landmark] = {}
        for idx, point in enumerate(points[:NUM_LANDMARKS]):
            landmark = _coerce_landmark(point)
            if landmark is not None:
                landmarks[idx] = landmark
        return cls(landmarks=landmarks, timestamp=timestamp)

    def get(self, index: LandmarkIndex) -> Optional[Landmark]:
        return self.landmarks.get(index.value)

    @property
    def is_empty(self) -> bool:
        return not self.landmarks


@dataclass(frozen=True)
class PostureIssue:
    """A severity-tagged deviation from reference posture."""
    kind: IssueKind
    severity: Severity
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
        }


@dataclass(frozen=True)
class PostureResult:
    """Score and issues for one evaluated frame."""
    score: int
    issues: List[PostureIssue]

    @property
    def is_good(self) -> bool:
        return len(self.issues) == 1 and self.issues[0].kind == IssueKind.GOOD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "issues": [issue.to_dict() for issue in self.issues],
        }


@dataclass(frozen=True)
class PostureThresholds:
    """
    Tunable thresholds and penalties for the five posture rules.

    Distances are in normalized image units; penalties in score points.
    `min_visibility` > 0 additionally treats low-confidence required
    landmarks as missing.
    """
    head_lean: float = 0.08
    shoulder_tilt: float = 0.05
    slouch: float = -0.15
    distance_min: float = 0.1
    distance_max: float = 0.7
    spine: float = 0.05
    min_visibility: float = 0.0

    head_lean_penalty: int = 15
    shoulder_tilt_penalty: int = 10
    slouch_penalty: int = 20
    distance_penalty: int = 10
    spine_penalty: int = 10

    @classmethod
    def from_settings(cls) -> "PostureThresholds":
        return cls(
            head_lean=settings.POSTURE_HEAD_LEAN,
            shoulder_tilt=settings.POSTURE_SHOULDER_TILT,
            slouch=settings.POSTURE_SLOUCH,
            distance_min=settings.POSTURE_DISTANCE_MIN,
            distance_max=settings.POSTURE_DISTANCE_MAX,
            spine=settings.POSTURE_SPINE,
            min_visibility=settings.POSTURE_MIN_VISIBILITY,
            head_lean_penalty=settings.POSTURE_HEAD_LEAN_PENALTY,
            shoulder_tilt_penalty=settings.POSTURE_SHOULDER_TILT_PENALTY,
            slouch_penalty=settings.POSTURE_SLOUCH_PENALTY,
            distance_penalty=settings.POSTURE_DISTANCE_PENALTY,
            spine_penalty=settings.POSTURE_SPINE_PENALTY,
        )

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def _coerce_landmark(point: Any) -> Optional[Landmark]:
    if point is None:
        return None
    if isinstance(point, Landmark):
        return point
    if isinstance(point, dict):
        if point.get("x") is None or point.get("y") is None:
            return None
        return Landmark(
            x=float(point["x"]),
            y=float(point["y"]),
            z=float(point.get("z") or 0.0),
            visibility=float(point.get("visibility") or 0.0),
        )
    return Landmark(
        x=float(point.x),
        y=float(point.y),
        z=float(getattr(point, "z", 0.0) or 0.0),
        visibility=float(getattr(point, "visibility", 0.0) or 0.0),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# POSTURE EVALUATOR CLASS
# ═══════════════════════════════════════════════════════════════════════════════

class PostureEvaluator:
    """
    Rule-based posture evaluator.

    Checks, in order:
    - Head forward lean (nose vs. shoulder midpoint, horizontal)
    - Shoulder tilt (shoulder height difference)
    - Slouching (shoulder midpoint not far enough above hip midpoint)
    - Camera distance (nose height in frame)
    - Spine lateral lean (shoulder vs. hip midpoint, horizontal)

    All rules run on every frame so several issues can be reported at once.
    """

    def __init__(self, thresholds: Optional[PostureThresholds] = None):
        self.thresholds = thresholds or PostureThresholds.from_settings()

    def evaluate(self, frame: Frame) -> Optional[PostureResult]:
        """
        Score one frame.

        Returns None when a required landmark is missing, non-finite, or
        below the configured visibility; the caller should keep its last
        result in that case.
        """
        points = self._required_points(frame)
        if points is None:
            return None

        nose, left_shoulder, right_shoulder, left_hip, right_hip = points
        t = self.thresholds

        shoulder_mid_x = (left_shoulder.x + right_shoulder.x) / 2
        shoulder_mid_y = (left_shoulder.y + right_shoulder.y) / 2
        hip_mid_x = (left_hip.x + right_hip.x) / 2
        hip_mid_y = (left_hip.y + right_hip.y) / 2

        issues: List[PostureIssue] = []
        penalty = 0

        # 1. Head forward lean
        if _exceeds(abs(nose.x - shoulder_mid_x), t.head_lean):
            issues.append(_issue(IssueKind.HEAD_LEAN, Severity.WARNING))
            penalty += t.head_lean_penalty

        # 2. Shoulder tilt
        if _exceeds(abs(left_shoulder.y - right_shoulder.y), t.shoulder_tilt):
            issues.append(_issue(IssueKind.SHOULDER_TILT, Severity.WARNING))
            penalty += t.shoulder_tilt_penalty

        # 3. Slouching (image y grows downwards)
        if _exceeds(shoulder_mid_y - hip_mid_y, t.slouch):
            issues.append(_issue(IssueKind.SLOUCHING, Severity.ERROR))
            penalty += t.slouch_penalty

        # 4. Camera distance
        if _exceeds(t.distance_min, nose.y) or _exceeds(nose.y, t.distance_max):
            issues.append(_issue(IssueKind.DISTANCE, Severity.WARNING))
            penalty += t.distance_penalty

        # 5. Spine lateral lean
        if _exceeds(abs(shoulder_mid_x - hip_mid_x), t.spine):
            issues.append(_issue(IssueKind.SPINE, Severity.WARNING))
            penalty += t.spine_penalty

        if not issues:
            issues.append(_issue(IssueKind.GOOD, Severity.GOOD))

        score = int(max(0, min(100, 100 - penalty)))
        logger.debug(f"Posture score {score}: {[i.kind.value for i in issues]}")

        return PostureResult(score=score, issues=issues)

    def evaluate_many(self, frames: Iterable[Frame]) -> List[Optional[PostureResult]]:
        """Evaluate frames independently, preserving order."""
        return [self.evaluate(frame) for frame in frames]

    def _required_points(self, frame: Frame) -> Optional[List[Landmark]]:
        points = []
        for index in REQUIRED_LANDMARKS:
            landmark = frame.get(index)
            if landmark is None or not landmark.is_finite:
                return None
            if landmark.visibility < self.thresholds.min_visibility:
                return None
            points.append(landmark)
        return points


def _exceeds(value: float, threshold: float) -> bool:
    """Strictly greater than, ignoring float noise at the boundary."""
    return value > threshold + BOUNDARY_EPSILON


def _issue(kind: IssueKind, severity: Severity) -> PostureIssue:
    return PostureIssue(kind=kind, severity=severity, message=ISSUE_MESSAGES[kind])


# ═══════════════════════════════════════════════════════════════════════════════
# MODULE-LEVEL SINGLETON
# ═══════════════════════════════════════════════════════════════════════════════

_evaluator_instance: Optional[PostureEvaluator] = None

def get_posture_evaluator() -> PostureEvaluator:
    """Get or create the global posture evaluator instance."""
    global _evaluator_instance
    if _evaluator_instance is None:
        _evaluator_instance = PostureEvaluator()
    return _evaluator_instance
