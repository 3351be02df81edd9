"""
Headturn — Face Landmark Detection
==================================
MediaPipe FaceLandmarker adapter. Turns a BGR camera frame into a
FrameEvent carrying the first face's normalized (478, 3) mesh, or a
no-face event.

The landmarker runs in VIDEO mode on the engine's detection thread, so
results come back synchronously, one frame at a time.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Optional

import cv2
import numpy as np

from headturn_types import DetectorUnavailableError, FrameEvent

_log = logging.getLogger("HeadturnFacePipeline")

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))

DEFAULT_MIN_DETECTION_CONFIDENCE = 0.5


class FaceLandmarkDetector:
    """Single-face MediaPipe landmark detector.

    Raises DetectorUnavailableError from __init__ when MediaPipe is missing,
    the model file cannot be found, or the task fails to build. Callers
    treat that as fatal for the session.
    """

    def __init__(
        self,
        model_path: str = "face_landmarker.task",
        min_detection_confidence: float = DEFAULT_MIN_DETECTION_CONFIDENCE,
        num_faces: int = 1,
        mirror: bool = True,
    ) -> None:
        """Initialize the landmarker.

        Args:
            model_path: .task model file, absolute or relative to this module.
            min_detection_confidence: Detection/presence confidence floor.
            num_faces: Faces tracked by MediaPipe; only the first is reported.
            mirror: Flip frames horizontally first (front-camera preview).
        """
        self._mirror = mirror
        self._frame_timestamp_ms: int = 0
        self._landmarker = None

        full_path = model_path if os.path.isabs(model_path) else os.path.join(_SCRIPT_DIR, model_path)
        if not os.path.exists(full_path):
            raise DetectorUnavailableError(f"MediaPipe model not found: {full_path}")

        try:
            import mediapipe as mp
            from mediapipe.tasks import python
            from mediapipe.tasks.python import vision
        except ImportError as e:
            raise DetectorUnavailableError(f"mediapipe is not installed: {e}") from e

        self._mp = mp
        base_options = python.BaseOptions(
            model_asset_path=full_path,
            delegate=python.BaseOptions.Delegate.CPU,
        )
        options = vision.FaceLandmarkerOptions(
            base_options=base_options,
            running_mode=vision.RunningMode.VIDEO,
            num_faces=num_faces,
            min_face_detection_confidence=min_detection_confidence,
            min_face_presence_confidence=min_detection_confidence,
            min_tracking_confidence=0.5,
        )
        try:
            self._landmarker = vision.FaceLandmarker.create_from_options(options)
        except (RuntimeError, ValueError) as e:
            raise DetectorUnavailableError(f"Face Landmarker failed to initialize: {e}") from e

        _log.info(
            "FaceLandmarkDetector initialized — model=%s mirror=%s",
            os.path.basename(full_path), mirror,
        )

    @classmethod
    def from_config(cls, config: dict) -> "FaceLandmarkDetector":
        det = config.get("detector", {})
        return cls(
            model_path=det.get("model_path", "face_landmarker.task"),
            min_detection_confidence=float(
                det.get("min_detection_confidence", DEFAULT_MIN_DETECTION_CONFIDENCE)
            ),
            num_faces=int(det.get("num_faces", 1)),
            mirror=bool(det.get("mirror", True)),
        )

    @property
    def mirror(self) -> bool:
        return self._mirror

    def prepare_frame(self, frame: np.ndarray) -> np.ndarray:
        """Mirror (if configured) the BGR frame the way the user sees it."""
        return cv2.flip(frame, 1) if self._mirror else frame

    def detect(self, frame: np.ndarray, timestamp: Optional[float] = None) -> FrameEvent:
        """Detect the face mesh in a BGR frame.

        Args:
            frame: BGR uint8 image. Pass it through prepare_frame() first
                   if the caller also displays it; detect() does not flip.
            timestamp: Monotonic capture time, carried into the event.

        Returns:
            FrameEvent with (478, 3) float32 landmarks, or landmarks=None.
        """
        if self._landmarker is None:
            raise DetectorUnavailableError("FaceLandmarkDetector has been released")

        h, w = frame.shape[:2]
        ts = time.monotonic() if timestamp is None else timestamp

        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        mp_image = self._mp.Image(image_format=self._mp.ImageFormat.SRGB, data=rgb_frame)

        # VIDEO mode requires strictly increasing timestamps
        self._frame_timestamp_ms += 33
        try:
            result = self._landmarker.detect_for_video(mp_image, self._frame_timestamp_ms)
        except (RuntimeError, ValueError) as e:
            _log.debug("MediaPipe detection failed: %s", e)
            return FrameEvent(None, w, h, ts)

        if not result or not result.face_landmarks:
            return FrameEvent(None, w, h, ts)

        face_lms = result.face_landmarks[0]
        landmarks = np.array([[lm.x, lm.y, lm.z] for lm in face_lms], dtype=np.float32)
        return FrameEvent(landmarks, w, h, ts)

    def release(self) -> None:
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None
        _log.info("FaceLandmarkDetector released")

    def __enter__(self) -> "FaceLandmarkDetector":
        return self

    def __exit__(self, *args) -> None:
        self.release()
