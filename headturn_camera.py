"""
Headturn — Frame Source
=======================
The only module that touches cv2.VideoCapture. Live cameras and video
files share one reader; they differ in how strictly frames are screened.

  - 1-frame capture buffer, the estimator only wants the freshest frame
  - Structural checks on every frame (shape, dtype, channels, size)
  - Blank-frame rejection (lens cap / saturated sensor) for live cameras
  - Health counters with a per-reason breakdown of rejected frames
"""

from __future__ import annotations

import logging
import time
from collections import Counter, deque
from typing import Optional, Union

import cv2
import numpy as np

_log = logging.getLogger("HeadturnCamera")

Source = Union[int, str]


class HeadturnCamera:
    """Validated frame source over a camera index or a video file."""

    MIN_SIZE: tuple[int, int] = (160, 120)   # (w, h)
    CHANNELS: int = 3
    BLANK_LOW: float = 5.0      # mean at or below: black frame
    BLANK_HIGH: float = 250.0   # mean at or above: white frame
    FPS_WINDOW: int = 30

    def __init__(
        self,
        source: Source = 0,
        width: Optional[int] = None,
        height: Optional[int] = None,
        backend: int = cv2.CAP_ANY,
        reject_blank: Optional[bool] = None,
    ) -> None:
        """Open the source.

        Args:
            source: Camera index or video file path.
            width: Requested frame width (best effort, cameras only).
            height: Requested frame height (best effort, cameras only).
            backend: OpenCV capture backend constant.
            reject_blank: Drop all-black / all-white frames. None means
                          on for cameras and off for files, where fades
                          and title cards are legitimate content.
        """
        self.source = source
        self.is_file_source = isinstance(source, str) and not source.isdigit()
        self.reject_blank = (not self.is_file_source) if reject_blank is None else bool(reject_blank)

        self._cap = cv2.VideoCapture(int(source) if isinstance(source, str) and source.isdigit() else source, backend)
        self._cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        for prop, value in ((cv2.CAP_PROP_FRAME_WIDTH, width), (cv2.CAP_PROP_FRAME_HEIGHT, height)):
            if value:
                self._cap.set(prop, value)

        self.resolution: tuple[int, int] = (
            int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        self.end_of_stream = False

        self._reads = 0
        self._rejected: Counter = Counter()
        self._last_ok = 0.0
        self._ok_times: deque[float] = deque(maxlen=self.FPS_WINDOW)

        _log.info(
            "Source opened: %s (%s) resolution=%s reject_blank=%s",
            source, "file" if self.is_file_source else "camera",
            self.resolution, self.reject_blank,
        )

    @classmethod
    def from_config(cls, config: dict) -> "HeadturnCamera":
        cam = config.get("camera", {})
        return cls(
            source=cam.get("id", 0),
            width=cam.get("width"),
            height=cam.get("height"),
            reject_blank=cam.get("reject_blank_frames"),
        )

    # ── Reading ───────────────────────────────────────────────

    def read_validated_frame(self) -> tuple[bool, Optional[np.ndarray], float]:
        """Grab one frame and screen it.

        Returns:
            (True, frame, monotonic_timestamp) or (False, None, 0.0) when the
            frame was rejected. Rejections are counted by reason.
        """
        self._reads += 1
        ts = time.monotonic()
        ret, frame = self._cap.read()

        reason = self.reject_reason(ret, frame)
        if reason is not None:
            self._rejected[reason] += 1
            if reason == "no_frame" and self.is_file_source and not self.end_of_stream:
                self.end_of_stream = True
                _log.info("End of video file %s after %d reads", self.source, self._reads)
            return False, None, 0.0

        self._last_ok = ts
        self._ok_times.append(ts)
        return True, frame, ts

    def reject_reason(self, ret: bool, frame: Optional[np.ndarray]) -> Optional[str]:
        """Why a frame would be dropped, or None if it is usable."""
        if not ret or frame is None:
            return "no_frame"
        if frame.ndim != 3 or frame.shape[2] != self.CHANNELS:
            _log.debug("Rejected frame shape %s", frame.shape)
            return "shape"
        if frame.dtype != np.uint8:
            _log.debug("Rejected frame dtype %s", frame.dtype)
            return "dtype"

        h, w = frame.shape[:2]
        min_w, min_h = self.MIN_SIZE
        if w < min_w or h < min_h:
            _log.debug("Rejected %dx%d frame, minimum is %dx%d", w, h, min_w, min_h)
            return "too_small"

        if self.reject_blank:
            mean = float(frame.mean())
            if mean <= self.BLANK_LOW or mean >= self.BLANK_HIGH:
                _log.debug("Rejected blank frame (mean=%.2f)", mean)
                return "blank"
        return None

    # ── Health ────────────────────────────────────────────────

    def get_health_status(self) -> dict:
        dropped = sum(self._rejected.values())
        age_ms = (time.monotonic() - self._last_ok) * 1000.0 if self._last_ok > 0 else float("inf")
        return {
            "connected": self._cap.isOpened(),
            "fps_actual": self._fps(),
            "frames_total": self._reads,
            "frames_dropped": dropped,
            "drop_rate_pct": dropped / self._reads * 100.0 if self._reads else 0.0,
            "drop_reasons": dict(self._rejected),
            "last_valid_frame_age_ms": round(age_ms, 2),
            "resolution": self.resolution,
            "end_of_stream": self.end_of_stream,
        }

    def is_opened(self) -> bool:
        return self._cap.isOpened()

    def release(self) -> None:
        health = self.get_health_status()
        _log.info(
            "Releasing source %s: %d reads, %d rejected %s",
            self.source, health["frames_total"], health["frames_dropped"], health["drop_reasons"],
        )
        self._cap.release()

    def __enter__(self) -> "HeadturnCamera":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def _fps(self) -> float:
        if len(self._ok_times) < 2:
            return 0.0
        span = self._ok_times[-1] - self._ok_times[0]
        return (len(self._ok_times) - 1) / span if span > 0 else 0.0
