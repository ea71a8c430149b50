"""
POISE Posture Service Router

Endpoints for posture evaluation, coaching sessions, and live streaming.
Clients send MediaPipe landmark frames (or raw camera images) and receive
posture scores with ranked issues.
"""

import json
import logging
import os
import tempfile
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, File, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from core.config import settings
from core.threading import run_pose_detection
from core.websocket import MessageType, WebSocketMessage, connection_manager, session_room
from shared.utils import error_response, log_execution_time

from .models import (
    CoachingSessionHandler,
    Frame,
    PostureEvaluator,
    PostureResult,
    SessionNotFoundError,
    SessionState,
    SessionStateError,
    SessionType,
    get_posture_evaluator,
    get_session_handler,
)
from .models.landmark_source import (
    LandmarkSourceUnavailable,
    PoseLandmarkSource,
    decode_image,
    frames_from_video,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# Service instances (singleton pattern)
_evaluator: Optional[PostureEvaluator] = None
_session_handler: Optional[CoachingSessionHandler] = None


def get_services():
    """Get or initialize service instances."""
    global _evaluator, _session_handler
    if _evaluator is None:
        _evaluator = get_posture_evaluator()
    if _session_handler is None:
        _session_handler = get_session_handler()
    return _evaluator, _session_handler


# ============= Pydantic Models =============

class LandmarkIn(BaseModel):
    x: float
    y: float
    z: Optional[float] = None
    visibility: Optional[float] = None


class FrameIn(BaseModel):
    landmarks: List[Optional[LandmarkIn]] = Field(default_factory=list)
    timestamp: float = 0.0

    def to_frame(self) -> Frame:
        return Frame.from_sequence(
            [lm.model_dump() if lm is not None else None for lm in self.landmarks],
            timestamp=self.timestamp,
        )


class BatchEvaluateRequest(BaseModel):
    frames: List[FrameIn]


class StartSessionRequest(BaseModel):
    user_id: str
    session_type: str = "interview"


class CompleteSessionRequest(BaseModel):
    clarity: Optional[float] = None
    confidence: Optional[float] = None
    eye_contact: Optional[float] = None

    def speech_metrics(self) -> Optional[Dict[str, float]]:
        metrics = {k: v for k, v in self.model_dump().items() if v is not None}
        return metrics or None


def _result_payload(result: Optional[PostureResult]) -> Dict[str, Any]:
    if result is None:
        return {"pose_detected": False, "message": "Required landmarks not detected"}
    return {"pose_detected": True, **result.to_dict()}


def _session_or_404(session_handler: CoachingSessionHandler, session_id: str):
    session = session_handler.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


# ============= Evaluation Endpoints =============

@router.post("/evaluate")
async def evaluate_frame(request: FrameIn):
    """
    Score one landmark frame.

    Frames missing the nose, shoulders or hips return pose_detected=false.
    """
    evaluator, _ = get_services()
    return _result_payload(evaluator.evaluate(request.to_frame()))


@router.post("/evaluate/batch")
async def evaluate_batch(request: BatchEvaluateRequest):
    """Score a list of frames independently, preserving order."""
    evaluator, _ = get_services()
    results = evaluator.evaluate_many(f.to_frame() for f in request.frames)
    return {
        "results": [_result_payload(r) for r in results],
        "frames": len(results),
        "frames_scored": len([r for r in results if r is not None]),
    }


@router.get("/thresholds")
async def get_thresholds():
    """Get the active posture thresholds and penalties."""
    evaluator, _ = get_services()
    return evaluator.thresholds.to_dict()


# ============= Session Endpoints =============

@router.post("/session/start")
async def start_session(request: StartSessionRequest):
    """
    Start a new coaching session for live posture tracking.

    Returns a session ID for use with the WebSocket stream.
    """
    _, session_handler = get_services()

    try:
        session_type = SessionType(request.session_type)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid session type. Valid types: {[t.value for t in SessionType]}"
        )

    session = session_handler.create_session(user_id=request.user_id, session_type=session_type)
    session_handler.start_session(session.session_id)

    return {
        "status": "started",
        "session_id": session.session_id,
        "user_id": request.user_id,
        "session_type": session_type.value,
        "current_posture": session.current_posture,
        "websocket_url": f"/api/posture/ws/session/{session.session_id}"
    }


@router.post("/session/{session_id}/frame")
async def submit_session_frame(session_id: str, request: FrameIn):
    """Evaluate a landmark frame within a session."""
    _, session_handler = get_services()
    session = _session_or_404(session_handler, session_id)

    result = session_handler.process_frame(session_id, request.to_frame())

    return {
        **_result_payload(result),
        "session_id": session_id,
        "state": session.state.value,
        "current_posture": session.current_posture,
    }


@router.post("/session/{session_id}/pause")
async def pause_session(session_id: str):
    _, session_handler = get_services()
    _session_or_404(session_handler, session_id)
    try:
        session = session_handler.pause_session(session_id)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": session.state.value, "session_id": session_id}


@router.post("/session/{session_id}/resume")
async def resume_session(session_id: str):
    _, session_handler = get_services()
    _session_or_404(session_handler, session_id)
    try:
        session = session_handler.resume_session(session_id)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": session.state.value, "session_id": session_id}


@router.get("/session/{session_id}")
async def get_session_status(session_id: str):
    """Get live posture status of a session."""
    _, session_handler = get_services()
    try:
        return session_handler.get_session_status(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")


@router.post("/session/{session_id}/complete")
async def complete_session(session_id: str, request: Optional[CompleteSessionRequest] = None):
    """
    Complete a session and get the posture report.

    Optional clarity/confidence/eye_contact scores from the speech grader
    are combined with posture into an overall score. The session is
    released once observers have been notified.
    """
    _, session_handler = get_services()
    _session_or_404(session_handler, session_id)

    metrics = request.speech_metrics() if request else None
    try:
        report = session_handler.complete_session(session_id, speech_metrics=metrics)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    await connection_manager.broadcast_to_room(
        session_room(session_id),
        WebSocketMessage(type=MessageType.SESSION_COMPLETED, payload=report)
    )
    session_handler.cleanup_session(session_id)

    return report


# ============= Video Analysis =============

@log_execution_time
def _analyze_video_file(video_path: str, sample_rate: int) -> Dict[str, Any]:
    """Score sampled frames of a video and summarize them like a session."""
    evaluator, _ = get_services()
    handler = CoachingSessionHandler(evaluator=evaluator, smoothing_alpha=1.0)
    session = handler.create_session(user_id="video-analysis", session_type=SessionType.INTERVIEW)
    handler.start_session(session.session_id)

    timeline = []
    source = PoseLandmarkSource()
    try:
        for frame_index, frame in frames_from_video(source, video_path, sample_rate):
            result = handler.process_frame(session.session_id, frame)
            timeline.append({
                "frame": frame_index,
                "timestamp_ms": round(frame.timestamp, 1),
                "score": result.score if result else None,
            })
    finally:
        source.close()

    report = handler.complete_session(session.session_id)
    return {"posture": report["posture"], "recommendations": report["recommendations"], "timeline": timeline}


@router.post("/analyze-video")
async def analyze_video(video: UploadFile = File(...), sample_rate: Optional[int] = None):
    """
    Analyze posture across a recorded practice video.

    Samples every Nth frame, runs MediaPipe pose detection, and scores each
    frame with the same rules as the live stream.
    """
    suffix = os.path.splitext(video.filename or "")[1] or ".mp4"
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
        tmp.write(await video.read())
        tmp_path = tmp.name

    try:
        summary = await run_pose_detection(
            _analyze_video_file, tmp_path, sample_rate or settings.VIDEO_SAMPLE_RATE
        )
    except LandmarkSourceUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        os.unlink(tmp_path)

    return {"status": "completed", "video": video.filename, **summary}


# ============= WebSocket Endpoints =============

async def _frame_from_message(message: Dict[str, Any], source_holder: Dict[str, PoseLandmarkSource]) -> Optional[Frame]:
    """Turn an incoming WebSocket message into a Frame (None if undecodable)."""
    if message.get("text") is not None:
        payload = json.loads(message["text"])
        return FrameIn(**payload).to_frame()

    data = message.get("bytes")
    if data is None:
        return None

    rgb = await run_pose_detection(decode_image, data)
    if rgb is None:
        return None

    if "source" not in source_holder:
        source_holder["source"] = PoseLandmarkSource()
    return await run_pose_detection(source_holder["source"].detect, rgb)


@router.websocket("/ws/session/{session_id}")
async def session_stream(websocket: WebSocket, session_id: str):
    """
    Real-time posture stream for a coaching session.

    Accepts JSON landmark frames (text) or encoded camera images (binary).
    Replies with posture updates and relays them to session observers.
    """
    _, session_handler = get_services()
    client_id = f"stream_{session_id}_{uuid.uuid4().hex[:6]}"

    try:
        await connection_manager.connect(websocket, client_id)
    except ConnectionError:
        return

    session = session_handler.get_session(session_id)
    if not session:
        await connection_manager.send_to_client(client_id, WebSocketMessage(
            type=MessageType.ERROR,
            payload=error_response(f"Session {session_id} not found", "SESSION_NOT_FOUND")
        ))
        await connection_manager.disconnect(client_id)
        await websocket.close()
        return

    if session.state == SessionState.COMPLETED:
        await connection_manager.send_to_client(client_id, WebSocketMessage(
            type=MessageType.ERROR,
            payload=error_response(f"Session {session_id} already completed", "SESSION_COMPLETED")
        ))
        await connection_manager.disconnect(client_id)
        await websocket.close()
        return

    if session.state in (SessionState.IDLE, SessionState.PAUSED):
        session_handler.start_session(session_id)

    await connection_manager.send_to_client(client_id, WebSocketMessage(
        type=MessageType.CONNECTED,
        payload=session.to_dict()
    ))

    source_holder: Dict[str, PoseLandmarkSource] = {}
    room = session_room(session_id)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            try:
                frame = await _frame_from_message(message, source_holder)
                result = session_handler.process_frame(session_id, frame) if frame is not None else None
            except LandmarkSourceUnavailable as e:
                await connection_manager.send_to_client(client_id, WebSocketMessage(
                    type=MessageType.ERROR,
                    payload=error_response(str(e), "LANDMARK_SOURCE_UNAVAILABLE")
                ))
                continue
            except SessionNotFoundError:
                break
            except Exception as e:
                logger.error(f"Frame processing error in session {session_id}: {e}")
                await connection_manager.send_to_client(client_id, WebSocketMessage(
                    type=MessageType.ERROR,
                    payload=error_response(f"Processing error: {e}", "FRAME_ERROR")
                ))
                continue

            if result is None:
                await connection_manager.send_to_client(client_id, WebSocketMessage(
                    type=MessageType.NO_POSE,
                    payload={"session_id": session_id, "state": session.state.value,
                             "current_posture": session.current_posture}
                ))
                continue

            update = WebSocketMessage(
                type=MessageType.POSTURE_UPDATE,
                payload={
                    "session_id": session_id,
                    "current_posture": session.current_posture,
                    **result.to_dict(),
                }
            )
            await connection_manager.send_to_client(client_id, update)
            await connection_manager.broadcast_to_room(room, update)

    except WebSocketDisconnect:
        logger.info(f"Session {session_id} stream disconnected")
        if session.state == SessionState.ACTIVE:
            session_handler.pause_session(session_id)
    finally:
        if "source" in source_holder:
            source_holder["source"].close()
        await connection_manager.disconnect(client_id)


@router.websocket("/ws/observe/{session_id}")
async def observe_session(websocket: WebSocket, session_id: str):
    """Subscribe a display to live posture updates of a session."""
    _, session_handler = get_services()
    client_id = f"observer_{session_id}_{uuid.uuid4().hex[:6]}"

    try:
        await connection_manager.connect(websocket, client_id)
    except ConnectionError:
        return

    session = session_handler.get_session(session_id)
    if not session:
        await connection_manager.send_to_client(client_id, WebSocketMessage(
            type=MessageType.ERROR,
            payload=error_response(f"Session {session_id} not found", "SESSION_NOT_FOUND")
        ))
        await connection_manager.disconnect(client_id)
        await websocket.close()
        return

    await connection_manager.subscribe(client_id, session_room(session_id))
    await connection_manager.send_to_client(client_id, WebSocketMessage(
        type=MessageType.SESSION_STATE,
        payload=session.to_dict()
    ))

    try:
        while True:
            data = await websocket.receive_text()
            await connection_manager.handle_message(client_id, data)
    except WebSocketDisconnect:
        pass
    finally:
        await connection_manager.disconnect(client_id)
