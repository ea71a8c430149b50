"""
POISE Posture Service - Landmark Source

MediaPipe Pose adapter that turns camera images into landmark Frames.
The detector is an external capability; this module only converts its output.
"""

import logging
from typing import Iterator, Optional, Tuple

import cv2
import numpy as np

from core.config import settings
from .posture_evaluator import Frame

try:
    import mediapipe as mp
    MEDIAPIPE_AVAILABLE = True
except ImportError:
    MEDIAPIPE_AVAILABLE = False

logger = logging.getLogger(__name__)


class LandmarkSourceUnavailable(RuntimeError):
    """Raised when the pose detector cannot be initialized."""


class PoseLandmarkSource:
    """
    Wraps MediaPipe Pose (33 BlazePose landmarks, normalized coordinates).

    One instance tracks one video stream; MediaPipe keeps tracking state
    between calls, so streams must not share an instance.
    """

    def __init__(
        self,
        model_complexity: Optional[int] = None,
        min_detection_confidence: Optional[float] = None,
        min_tracking_confidence: Optional[float] = None,
        static_image_mode: bool = False,
    ):
        if not MEDIAPIPE_AVAILABLE:
            raise LandmarkSourceUnavailable(
                "MediaPipe is not installed. Install with: pip install mediapipe"
            )

        try:
            self._pose = mp.solutions.pose.Pose(
                static_image_mode=static_image_mode,
                model_complexity=model_complexity if model_complexity is not None else settings.POSE_MODEL_COMPLEXITY,
                smooth_landmarks=True,
                enable_segmentation=False,
                min_detection_confidence=min_detection_confidence or settings.POSE_MIN_DETECTION_CONFIDENCE,
                min_tracking_confidence=min_tracking_confidence or settings.POSE_MIN_TRACKING_CONFIDENCE,
            )
        except Exception as e:
            raise LandmarkSourceUnavailable(f"Failed to initialize MediaPipe Pose: {e}") from e

        logger.info("MediaPipe pose detector initialized")

    def detect(self, rgb: np.ndarray, timestamp_ms: float = 0.0) -> Frame:
        """
        Detect landmarks in an RGB image (H, W, 3).

        Returns an empty Frame when no person is found.
        """
        results = self._pose.process(rgb)
        if not results or not results.pose_landmarks:
            return Frame(timestamp=timestamp_ms)

        return Frame.from_sequence(results.pose_landmarks.landmark, timestamp=timestamp_ms)

    def close(self):
        """Release detector resources."""
        if self._pose is not None:
            self._pose.close()
            self._pose = None


def decode_image(data: bytes) -> Optional[np.ndarray]:
    """Decode JPEG/PNG bytes into an RGB array, or None if undecodable."""
    nparr = np.frombuffer(data, np.uint8)
    frame = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    if frame is None:
        return None
    return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)


def frames_from_video(
    source: PoseLandmarkSource,
    video_path: str,
    sample_rate: Optional[int] = None,
) -> Iterator[Tuple[int, Frame]]:
    """
    Yield (frame_index, Frame) for every Nth frame of a video file.

    Raises:
        ValueError: if the video cannot be opened
    """
    sample_rate = max(1, sample_rate or settings.VIDEO_SAMPLE_RATE)

    cap = cv2.VideoCapture(video_path)
    if not cap.isOpened():
        raise ValueError(f"Could not open video: {video_path}")

    fps = cap.get(cv2.CAP_PROP_FPS) or 30
    frame_count = 0

    try:
        while cap.isOpened():
            ret, image = cap.read()
            if not ret:
                break

            if frame_count % sample_rate == 0:
                rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
                timestamp_ms = (frame_count / fps) * 1000
                yield frame_count, source.detect(rgb, timestamp_ms)

            frame_count += 1
    finally:
        cap.release()

    logger.debug(f"Read {frame_count} frames from {video_path}")
