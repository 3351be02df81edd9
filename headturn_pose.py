"""
Headturn — Head Pose Estimation
===============================
Recovers yaw/pitch from six MediaPipe mesh landmarks with solvePnP.

Pipeline per call:
  1. Select landmarks {33, 263, 1, 61, 291, 199} in mesh order
  2. Scale to pixels: 2D (x*w, y*h), pseudo-3D (x*w, y*h, z)
  3. Camera matrix from image size, zero distortion
  4. solvePnP (iterative) -> Rodrigues -> RQDecomp3x3
  5. pitch = euler[0] * 360, yaw = euler[1] * 360

The downstream challenge thresholds (+-15, -10, +-8) were tuned against
exactly this pipeline, including its quirks (see build_camera_matrix and
PoseEstimator.ANGLE_SCALE). Do not "correct" them without retuning.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import cv2
import numpy as np

from headturn_geometry import (
    POSE_LANDMARK_INDICES,
    as_landmark_array,
    select_pose_landmarks,
)
from headturn_types import MalformedLandmarksError, PoseResult, PoseSolveError

_log = logging.getLogger("HeadturnPose")


def build_camera_matrix(image_width: int, image_height: int) -> np.ndarray:
    """Pinhole intrinsics with focal length = image width.

    NOTE: the principal point is (h/2, w/2), i.e. swapped relative to the
    usual (w/2, h/2). Likely a latent defect, kept because the thresholds
    depend on it.
    """
    focal_length = float(image_width)
    return np.array([
        [focal_length, 0.0, image_height / 2.0],
        [0.0, focal_length, image_width / 2.0],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)


def build_correspondences(
    landmarks: np.ndarray,
    image_width: int,
    image_height: int,
    indices: Sequence[int] = POSE_LANDMARK_INDICES,
) -> tuple[np.ndarray, np.ndarray]:
    """Return (model_points_3d, image_points_2d) for solvePnP.

    The "model" points are the observed pixels plus the detector's raw z,
    not an anthropometric head model.
    """
    selected = select_pose_landmarks(landmarks, indices)
    # single-precision products, widened afterwards
    px = (selected[:, 0] * np.float32(image_width)).astype(np.float64)
    py = (selected[:, 1] * np.float32(image_height)).astype(np.float64)
    pz = selected[:, 2].astype(np.float64)

    image_points = np.column_stack([px, py])
    model_points = np.column_stack([px, py, pz])
    return model_points, image_points


class PoseEstimator:
    """Landmarks + image size -> PoseResult.

    Stateless apart from `last_pose`, which a PoseSolveError hands back so
    the caller can keep showing the previous angles.
    """

    # RQDecomp3x3 already reports degrees; the extra x360 is a latent
    # defect that the challenge thresholds are calibrated against.
    ANGLE_SCALE: float = 360.0

    _DIST_COEFFS = np.zeros((4, 1), dtype=np.float64)

    def __init__(
        self,
        landmark_indices: Sequence[int] = POSE_LANDMARK_INDICES,
        angle_scale: Optional[float] = None,
    ) -> None:
        self._indices = tuple(int(i) for i in landmark_indices)
        if len(self._indices) < 4:
            raise ValueError("solvePnP needs at least 4 landmark indices")
        self._angle_scale = float(angle_scale if angle_scale is not None else self.ANGLE_SCALE)
        self.last_pose: Optional[PoseResult] = None

    @classmethod
    def from_config(cls, config: dict) -> "PoseEstimator":
        pose_cfg = config.get("pose", {})
        return cls(
            landmark_indices=pose_cfg.get("landmark_indices", POSE_LANDMARK_INDICES),
            angle_scale=pose_cfg.get("angle_scale"),
        )

    def estimate(
        self,
        landmarks: Any,
        image_width: int,
        image_height: int,
    ) -> PoseResult:
        """Solve the head pose for one face.

        Args:
            landmarks: Normalized mesh landmarks (see as_landmark_array).
            image_width: Source image width in pixels.
            image_height: Source image height in pixels.

        Returns:
            PoseResult with pitch/yaw/roll in the x360 convention.

        Raises:
            MalformedLandmarksError: Too few landmarks or bad image size.
            PoseSolveError: solvePnP failed; `previous` holds the last pose.
        """
        if image_width <= 0 or image_height <= 0:
            raise MalformedLandmarksError(
                f"image size must be positive, got {image_width}x{image_height}"
            )
        arr = as_landmark_array(landmarks)
        model_points, image_points = build_correspondences(
            arr, image_width, image_height, self._indices
        )
        camera_matrix = build_camera_matrix(image_width, image_height)

        try:
            success, rotation_vec, translation_vec = cv2.solvePnP(
                model_points,
                image_points,
                camera_matrix,
                self._DIST_COEFFS,
                flags=cv2.SOLVEPNP_ITERATIVE,
            )
        except cv2.error as e:
            _log.debug("solvePnP raised: %s", e)
            raise PoseSolveError(f"solvePnP raised: {e}", self.last_pose) from e

        if not success or rotation_vec is None or not np.all(np.isfinite(rotation_vec)):
            raise PoseSolveError("solvePnP did not converge", self.last_pose)

        rotation_mat, _ = cv2.Rodrigues(rotation_vec)
        euler_angles = cv2.RQDecomp3x3(rotation_mat)[0]

        pose = PoseResult(
            rotation_vector=rotation_vec,
            translation_vector=translation_vec,
            rotation_matrix=rotation_mat,
            pitch=float(euler_angles[0]) * self._angle_scale,
            yaw=float(euler_angles[1]) * self._angle_scale,
            roll=float(euler_angles[2]) * self._angle_scale,
        )
        self.last_pose = pose
        return pose
