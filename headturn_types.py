"""
Headturn — Shared Types
=======================
Dataclasses passed between the detector, the challenge session, the engine
and the HUD, plus the error taxonomy of the pose pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional

import numpy as np


# ─── Errors ───────────────────────────────────────────────────

class DetectorUnavailableError(RuntimeError):
    """The face-landmark detector could not be initialized."""


class PoseSolveError(RuntimeError):
    """solvePnP failed for this frame's correspondences.

    Attributes:
        previous: Last successfully solved PoseResult, or None.
    """

    def __init__(self, message: str, previous: Optional["PoseResult"] = None):
        super().__init__(message)
        self.previous = previous


class MalformedLandmarksError(ValueError):
    """Landmark input is too short or has the wrong shape."""


# ─── Data ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class Landmark:
    """A single normalized facial keypoint (x, y in [0, 1], z relative depth)."""
    x: float
    y: float
    z: float = 0.0


@dataclass
class PoseResult:
    """Solved head pose for one frame.

    pitch/yaw/roll are the RQ-decomposed Euler angles multiplied by 360.
    """
    rotation_vector: np.ndarray
    translation_vector: np.ndarray
    rotation_matrix: np.ndarray
    pitch: float
    yaw: float
    roll: float = 0.0


@dataclass
class FrameEvent:
    """One detector output. landmarks=None means no face was found."""
    landmarks: Optional[np.ndarray]
    image_width: int
    image_height: int
    timestamp: float = 0.0

    @property
    def has_face(self) -> bool:
        return self.landmarks is not None


@dataclass
class FrameResult:
    """What the session reports after processing one FrameEvent."""
    instruction: str
    yaw: Optional[float]
    pitch: Optional[float]
    flags: Dict[str, bool]
    done: bool
    completed_now: bool = False
    step_completed: Optional[str] = None
    face_in_box: bool = False
    pose_ok: bool = False
    timestamp: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EngineResult:
    """Aggregate result for a processed camera frame."""
    frame: Optional[np.ndarray]
    frame_result: FrameResult
    fps: float
    timing_breakdown: dict = field(default_factory=dict)
    camera_health: Dict[str, Any] = field(default_factory=dict)
