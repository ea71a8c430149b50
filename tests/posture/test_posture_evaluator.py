"""
POISE Posture Service - Posture Evaluator Tests

Covers every rule, its strict threshold boundary, the missing-landmark
guard, and score clamping.
"""

import dataclasses

import numpy as np
import pytest

from posture_service.models.posture_evaluator import (
    Frame,
    IssueKind,
    Landmark,
    LandmarkIndex,
    PostureEvaluator,
    PostureThresholds,
    Severity,
)


# ═══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════

BASELINE = {
    LandmarkIndex.NOSE: (0.5, 0.3),
    LandmarkIndex.LEFT_SHOULDER: (0.4, 0.4),
    LandmarkIndex.RIGHT_SHOULDER: (0.6, 0.4),
    LandmarkIndex.LEFT_HIP: (0.4, 0.65),
    LandmarkIndex.RIGHT_HIP: (0.6, 0.65),
}


def make_frame(**overrides) -> Frame:
    """
    Baseline good-posture frame; override points by lower-case role name,
    e.g. make_frame(nose=(0.59, 0.3)). Pass None to drop a landmark.
    """
    points = {index: BASELINE[index] for index in BASELINE}
    for name, value in overrides.items():
        points[LandmarkIndex[name.upper()]] = value

    landmarks = {
        index.value: Landmark(x=xy[0], y=xy[1], visibility=1.0)
        for index, xy in points.items()
        if xy is not None
    }
    return Frame(landmarks=landmarks)


@pytest.fixture
def evaluator() -> PostureEvaluator:
    return PostureEvaluator(PostureThresholds())


def kinds(result):
    return [issue.kind for issue in result.issues]


# ═══════════════════════════════════════════════════════════════════════════════
# BASELINE AND SINGLE RULES
# ═══════════════════════════════════════════════════════════════════════════════

def test_good_posture_baseline(evaluator):
    result = evaluator.evaluate(make_frame())

    assert result.score == 100
    assert len(result.issues) == 1
    assert result.issues[0].kind == IssueKind.GOOD
    assert result.issues[0].severity == Severity.GOOD
    assert result.issues[0].message == "Excellent posture! Keep it up!"
    assert result.is_good


def test_head_lean_only(evaluator):
    result = evaluator.evaluate(make_frame(nose=(0.5 + 0.09, 0.3)))

    assert result.score == 85
    assert kinds(result) == [IssueKind.HEAD_LEAN]
    assert result.issues[0].severity == Severity.WARNING


def test_shoulder_tilt_only(evaluator):
    result = evaluator.evaluate(make_frame(right_shoulder=(0.6, 0.46)))

    assert result.score == 90
    assert kinds(result) == [IssueKind.SHOULDER_TILT]


def test_slouching_only_is_error(evaluator):
    result = evaluator.evaluate(make_frame(left_shoulder=(0.4, 0.51), right_shoulder=(0.6, 0.51)))

    assert result.score == 80
    assert kinds(result) == [IssueKind.SLOUCHING]
    assert result.issues[0].severity == Severity.ERROR


@pytest.mark.parametrize("nose_y", [0.05, 0.75])
def test_distance_only(evaluator, nose_y):
    result = evaluator.evaluate(make_frame(nose=(0.5, nose_y)))

    assert result.score == 90
    assert kinds(result) == [IssueKind.DISTANCE]


def test_spine_misalignment_only(evaluator):
    result = evaluator.evaluate(make_frame(left_hip=(0.46, 0.65), right_hip=(0.66, 0.65)))

    assert result.score == 90
    assert kinds(result) == [IssueKind.SPINE]
    assert result.issues[0].kind.value == "spine-misalignment"


# ═══════════════════════════════════════════════════════════════════════════════
# MULTIPLE ISSUES AND CLAMPING
# ═══════════════════════════════════════════════════════════════════════════════

def test_head_lean_and_shoulder_tilt_add_up(evaluator):
    result = evaluator.evaluate(make_frame(nose=(0.59, 0.3), right_shoulder=(0.6, 0.46)))

    assert result.score == 75
    assert kinds(result) == [IssueKind.HEAD_LEAN, IssueKind.SHOULDER_TILT]


def pathological_frame() -> Frame:
    return make_frame(
        nose=(0.7, 0.05),
        left_shoulder=(0.4, 0.6),
        right_shoulder=(0.6, 0.7),
        left_hip=(0.6, 0.7),
        right_hip=(0.8, 0.7),
    )


def test_all_rules_fire_in_order(evaluator):
    result = evaluator.evaluate(pathological_frame())

    assert result.score == 35
    assert kinds(result) == [
        IssueKind.HEAD_LEAN,
        IssueKind.SHOULDER_TILT,
        IssueKind.SLOUCHING,
        IssueKind.DISTANCE,
        IssueKind.SPINE,
    ]


def test_score_clamps_at_zero():
    heavy = PostureThresholds(
        head_lean_penalty=30,
        shoulder_tilt_penalty=30,
        slouch_penalty=30,
        distance_penalty=30,
        spine_penalty=30,
    )
    result = PostureEvaluator(heavy).evaluate(pathological_frame())

    assert result.score == 0
    assert len(result.issues) == 5


def test_score_never_exceeds_hundred():
    bonus = PostureThresholds(head_lean_penalty=-50)
    result = PostureEvaluator(bonus).evaluate(make_frame(nose=(0.7, 0.3)))

    assert result.score == 100


# ═══════════════════════════════════════════════════════════════════════════════
# THRESHOLD BOUNDARIES (strictly greater than)
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.parametrize("overrides", [
    # |nose.x - 0.5| == 0.08 on either side
    {"nose": (0.58, 0.3)},
    {"nose": (0.42, 0.3)},
    # |LS.y - RS.y| == 0.05 on either side
    {"right_shoulder": (0.6, 0.45)},
    {"right_shoulder": (0.6, 0.35)},
    # shoulderMidY - hipMidY == -0.15
    {"left_shoulder": (0.4, 0.5), "right_shoulder": (0.6, 0.5)},
    # nose.y exactly at both distance limits
    {"nose": (0.5, 0.1)},
    {"nose": (0.5, 0.7)},
    # |shoulderMidX - hipMidX| == 0.05 on either side
    {"left_hip": (0.45, 0.65), "right_hip": (0.65, 0.65)},
    {"left_hip": (0.35, 0.65), "right_hip": (0.55, 0.65)},
])
def test_values_at_threshold_do_not_trigger(evaluator, overrides):
    result = evaluator.evaluate(make_frame(**overrides))

    assert result.score == 100
    assert kinds(result) == [IssueKind.GOOD]


def test_custom_thresholds_change_verdict():
    lenient = PostureThresholds(head_lean=0.2)
    result = PostureEvaluator(lenient).evaluate(make_frame(nose=(0.65, 0.3)))

    assert kinds(result) == [IssueKind.GOOD]


# ═══════════════════════════════════════════════════════════════════════════════
# INCOMPLETE AND MALFORMED INPUT
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.parametrize("missing", ["nose", "left_shoulder", "right_shoulder", "left_hip", "right_hip"])
def test_missing_required_landmark_returns_none(evaluator, missing):
    assert evaluator.evaluate(make_frame(**{missing: None})) is None


def test_empty_frame_returns_none(evaluator):
    frame = Frame()
    assert frame.is_empty
    assert evaluator.evaluate(frame) is None


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_coordinates_treated_as_missing(evaluator, bad):
    assert evaluator.evaluate(make_frame(nose=(bad, 0.3))) is None
    assert evaluator.evaluate(make_frame(left_hip=(0.4, bad))) is None


def test_visibility_ignored_by_default(evaluator):
    frame = Frame.from_sequence([{"x": 0.5, "y": 0.3}] + [None] * 10 + [
        {"x": 0.4, "y": 0.4}, {"x": 0.6, "y": 0.4},
    ] + [None] * 10 + [
        {"x": 0.4, "y": 0.65}, {"x": 0.6, "y": 0.65},
    ])

    result = evaluator.evaluate(frame)

    assert result is not None
    assert result.score == 100


def test_min_visibility_treats_occluded_landmark_as_missing():
    strict = PostureEvaluator(PostureThresholds(min_visibility=0.5))
    frame = make_frame()
    landmarks = dict(frame.landmarks)
    landmarks[LandmarkIndex.LEFT_HIP.value] = dataclasses.replace(
        landmarks[LandmarkIndex.LEFT_HIP.value], visibility=0.2
    )

    assert strict.evaluate(Frame(landmarks=landmarks)) is None
    assert strict.evaluate(frame) is not None


# ═══════════════════════════════════════════════════════════════════════════════
# FRAME CONSTRUCTION
# ═══════════════════════════════════════════════════════════════════════════════

class _MediaPipeLikePoint:
    def __init__(self, x, y, visibility=None):
        self.x = x
        self.y = y
        self.z = 0.0
        self.visibility = visibility


def test_from_sequence_accepts_detector_objects_and_ignores_extras():
    points = [_MediaPipeLikePoint(0.5, 0.5, 0.9) for _ in range(40)]
    points[3] = None

    frame = Frame.from_sequence(points, timestamp=12.5)

    assert len(frame.landmarks) == 32
    assert 3 not in frame.landmarks
    assert max(frame.landmarks) == 32
    assert frame.timestamp == 12.5


def test_from_sequence_defaults_missing_visibility_to_zero():
    frame = Frame.from_sequence([_MediaPipeLikePoint(0.1, 0.2)])

    assert frame.get(LandmarkIndex.NOSE).visibility == 0.0


def test_short_sequence_means_missing_landmarks(evaluator):
    frame = Frame.from_sequence([{"x": 0.5, "y": 0.3, "visibility": 1.0}] * 12)

    assert evaluator.evaluate(frame) is None


# ═══════════════════════════════════════════════════════════════════════════════
# PURITY AND BOUNDS
# ═══════════════════════════════════════════════════════════════════════════════

def test_evaluate_is_idempotent(evaluator):
    frame = make_frame(nose=(0.59, 0.3), right_shoulder=(0.6, 0.46))

    assert evaluator.evaluate(frame) == evaluator.evaluate(frame)


def test_random_frames_stay_in_bounds(evaluator):
    rng = np.random.default_rng(7)

    for _ in range(500):
        coords = rng.uniform(-0.2, 1.2, size=(33, 2))
        frame = Frame.from_sequence([{"x": x, "y": y, "visibility": 1.0} for x, y in coords])
        result = evaluator.evaluate(frame)

        assert result is not None
        assert 0 <= result.score <= 100
        assert isinstance(result.score, int)
        assert len(result.issues) >= 1


def test_evaluate_many_preserves_order(evaluator):
    frames = [make_frame(), Frame(), make_frame(nose=(0.59, 0.3))]

    results = evaluator.evaluate_many(frames)

    assert [r.score if r else None for r in results] == [100, None, 85]


def test_result_serializes_to_plain_dict(evaluator):
    payload = evaluator.evaluate(make_frame(nose=(0.59, 0.3))).to_dict()

    assert payload == {
        "score": 85,
        "issues": [{
            "kind": "head-lean",
            "severity": "warning",
            "message": "Head leaning forward - keep head aligned with shoulders",
        }],
    }
