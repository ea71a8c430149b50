"""
POISE Posture Service - API Tests

Exercises the HTTP and WebSocket endpoints with synthetic landmark frames.
"""

import pytest
from fastapi.testclient import TestClient

from main import app
from posture_service.models import get_session_handler


def landmark_list(nose=(0.5, 0.3), right_shoulder=(0.6, 0.4)):
    """33 landmarks in MediaPipe order with the five scored points set."""
    points = [{"x": 0.5, "y": 0.5, "visibility": 0.9} for _ in range(33)]
    points[0] = {"x": nose[0], "y": nose[1], "visibility": 1.0}
    points[11] = {"x": 0.4, "y": 0.4, "visibility": 1.0}
    points[12] = {"x": right_shoulder[0], "y": right_shoulder[1], "visibility": 1.0}
    points[23] = {"x": 0.4, "y": 0.65, "visibility": 1.0}
    points[24] = {"x": 0.6, "y": 0.65, "visibility": 1.0}
    return points


@pytest.fixture(scope="module")
def client():
    return TestClient(app)


@pytest.fixture
def session_id(client):
    response = client.post("/api/posture/session/start", json={"user_id": "u-1", "session_type": "debate"})
    assert response.status_code == 200
    return response.json()["session_id"]


# ═══════════════════════════════════════════════════════════════════════════════
# EVALUATION
# ═══════════════════════════════════════════════════════════════════════════════

def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_evaluate_good_frame(client):
    response = client.post("/api/posture/evaluate", json={"landmarks": landmark_list()})

    body = response.json()
    assert response.status_code == 200
    assert body["pose_detected"] is True
    assert body["score"] == 100
    assert body["issues"] == [{"kind": "good", "severity": "good", "message": "Excellent posture! Keep it up!"}]


def test_evaluate_multiple_issues(client):
    payload = {"landmarks": landmark_list(nose=(0.59, 0.3), right_shoulder=(0.6, 0.46))}

    body = client.post("/api/posture/evaluate", json=payload).json()

    assert body["score"] == 75
    assert [i["kind"] for i in body["issues"]] == ["head-lean", "shoulder-tilt"]


def test_evaluate_missing_landmark(client):
    points = landmark_list()
    points[24] = None

    body = client.post("/api/posture/evaluate", json={"landmarks": points}).json()

    assert body["pose_detected"] is False
    assert "score" not in body


def test_evaluate_empty_frame(client):
    body = client.post("/api/posture/evaluate", json={"landmarks": []}).json()

    assert body["pose_detected"] is False


def test_evaluate_nan_coordinate_is_not_scored(client):
    raw = '{"landmarks": [{"x": NaN, "y": 0.3}]}'

    response = client.post("/api/posture/evaluate", content=raw, headers={"Content-Type": "application/json"})

    assert response.status_code == 200
    assert response.json()["pose_detected"] is False


def test_evaluate_rejects_malformed_landmark(client):
    response = client.post("/api/posture/evaluate", json={"landmarks": [{"x": "left"}]})

    assert response.status_code == 422


def test_evaluate_batch(client):
    frames = [
        {"landmarks": landmark_list()},
        {"landmarks": []},
        {"landmarks": landmark_list(nose=(0.59, 0.3))},
    ]

    body = client.post("/api/posture/evaluate/batch", json={"frames": frames}).json()

    assert body["frames"] == 3
    assert body["frames_scored"] == 2
    assert [r.get("score") for r in body["results"]] == [100, None, 85]


def test_thresholds(client):
    body = client.get("/api/posture/thresholds").json()

    assert body["head_lean"] == 0.08
    assert body["slouch"] == -0.15
    assert body["slouch_penalty"] == 20


# ═══════════════════════════════════════════════════════════════════════════════
# SESSIONS
# ═══════════════════════════════════════════════════════════════════════════════

def test_start_session_rejects_unknown_type(client):
    response = client.post("/api/posture/session/start", json={"user_id": "u-1", "session_type": "karaoke"})

    assert response.status_code == 400


def test_session_frame_flow(client, session_id):
    status = client.get(f"/api/posture/session/{session_id}").json()
    assert status["state"] == "active"
    assert status["current_posture"] == 75

    body = client.post(
        f"/api/posture/session/{session_id}/frame",
        json={"landmarks": landmark_list(nose=(0.59, 0.3))},
    ).json()
    assert body["score"] == 85
    assert body["current_posture"] == 85

    body = client.post(f"/api/posture/session/{session_id}/frame", json={"landmarks": []}).json()
    assert body["pose_detected"] is False
    assert body["current_posture"] == 85


def test_pause_resume_and_conflicts(client, session_id):
    assert client.post(f"/api/posture/session/{session_id}/pause").json()["status"] == "paused"
    assert client.post(f"/api/posture/session/{session_id}/pause").status_code == 409
    assert client.post(f"/api/posture/session/{session_id}/resume").json()["status"] == "active"


def test_complete_session_with_speech_metrics(client, session_id):
    client.post(f"/api/posture/session/{session_id}/frame", json={"landmarks": landmark_list()})

    report = client.post(
        f"/api/posture/session/{session_id}/complete",
        json={"clarity": 80, "confidence": 70, "eye_contact": 90},
    ).json()

    assert report["status"] == "completed"
    assert report["posture"]["score"] == 100
    assert report["overall"] == 85


def test_complete_session_without_body(client, session_id):
    report = client.post(f"/api/posture/session/{session_id}/complete").json()

    assert report["posture"]["score"] == 75
    assert "overall" not in report


def test_completed_session_is_released(client, session_id):
    assert client.post(f"/api/posture/session/{session_id}/complete").status_code == 200

    assert get_session_handler().get_session(session_id) is None
    assert client.get(f"/api/posture/session/{session_id}").status_code == 404
    assert client.post(f"/api/posture/session/{session_id}/complete").status_code == 404


def test_complete_conflicts_when_already_completed(client, session_id):
    get_session_handler().complete_session(session_id)

    response = client.post(f"/api/posture/session/{session_id}/complete")

    assert response.status_code == 409


def test_unknown_session_returns_404(client):
    assert client.get("/api/posture/session/nope").status_code == 404
    assert client.post("/api/posture/session/nope/frame", json={"landmarks": []}).status_code == 404
    assert client.post("/api/posture/session/nope/complete").status_code == 404


def test_analyze_video_rejects_unreadable_upload(client):
    response = client.post(
        "/api/posture/analyze-video",
        files={"video": ("clip.mp4", b"not a video", "video/mp4")},
    )

    # 503 when MediaPipe is absent, 400 when OpenCV cannot open the file
    assert response.status_code in (400, 503)


# ═══════════════════════════════════════════════════════════════════════════════
# WEBSOCKETS
# ═══════════════════════════════════════════════════════════════════════════════

def test_stream_scores_landmark_frames(client, session_id):
    with client.websocket_connect(f"/api/posture/ws/session/{session_id}") as ws:
        connected = ws.receive_json()
        assert connected["type"] == "connected"
        assert connected["payload"]["session_id"] == session_id

        ws.send_json({"landmarks": landmark_list(nose=(0.59, 0.3))})
        update = ws.receive_json()
        assert update["type"] == "posture_update"
        assert update["payload"]["score"] == 85
        assert update["payload"]["issues"][0]["kind"] == "head-lean"

        ws.send_json({"landmarks": []})
        assert ws.receive_json()["type"] == "no_pose"

        ws.send_text("{not json")
        assert ws.receive_json()["type"] == "error"


def test_observer_gets_state_and_answers_ping(client, session_id):
    with client.websocket_connect(f"/api/posture/ws/observe/{session_id}") as observer:
        state = observer.receive_json()
        assert state["type"] == "session_state"
        assert state["payload"]["state"] == "active"

        observer.send_json({"type": "ping"})
        assert observer.receive_json()["type"] == "pong"


def test_stream_unknown_session(client):
    with client.websocket_connect("/api/posture/ws/session/nope") as ws:
        message = ws.receive_json()

    assert message["type"] == "error"
    assert message["payload"]["error_code"] == "SESSION_NOT_FOUND"


def test_stream_rejects_completed_session(client, session_id):
    get_session_handler().complete_session(session_id)

    with client.websocket_connect(f"/api/posture/ws/session/{session_id}") as ws:
        message = ws.receive_json()

    assert message["type"] == "error"
    assert message["payload"]["error_code"] == "SESSION_COMPLETED"
