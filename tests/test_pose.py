"""
Headturn — Pose Estimator Tests
===============================
Landmark selection order, camera intrinsics layout, the x360 angle
convention and solver failure handling. solvePnP is mocked except for
one real frontal solve.
"""

from __future__ import annotations

import math
import sys
from pathlib import Path
from unittest.mock import patch

import cv2
import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from headturn_pose import PoseEstimator, build_camera_matrix, build_correspondences
from headturn_geometry import POSE_LANDMARK_INDICES, select_pose_landmarks
from headturn_types import MalformedLandmarksError, PoseSolveError


# ─── Fixtures ─────────────────────────────────────────────────

_FACE_POINTS = {
    1: (0.50, 0.55),    # nose tip
    33: (0.40, 0.45),   # eye corner
    263: (0.60, 0.45),  # eye corner
    61: (0.43, 0.65),   # mouth corner
    291: (0.57, 0.65),  # mouth corner
    199: (0.50, 0.75),  # chin
}


def _make_landmarks(n: int = 478, z: float = 0.0) -> np.ndarray:
    lms = np.full((n, 3), 0.5, dtype=np.float32)
    lms[:, 2] = z
    for idx, (x, y) in _FACE_POINTS.items():
        lms[idx, 0] = x
        lms[idx, 1] = y
    return lms


def _mock_solve(rvec, success=True):
    return (success, np.array(rvec, dtype=np.float64).reshape(3, 1),
            np.array([[0.0], [0.0], [1000.0]]))


# ─── Correspondences ──────────────────────────────────────────

def test_selection_walks_mesh_in_ascending_order():
    lms = np.zeros((478, 3), dtype=np.float32)
    lms[:, 0] = np.arange(478)
    selected = select_pose_landmarks(lms, POSE_LANDMARK_INDICES)
    assert selected[:, 0].tolist() == [1, 33, 61, 199, 263, 291]


def test_selection_rejects_short_mesh():
    with pytest.raises(MalformedLandmarksError):
        select_pose_landmarks(np.zeros((100, 3), dtype=np.float32), POSE_LANDMARK_INDICES)


def test_correspondences_use_pixels_and_raw_depth():
    lms = _make_landmarks(z=-0.03)
    model_pts, image_pts = build_correspondences(lms, 640, 480)

    assert model_pts.shape == (6, 3)
    assert image_pts.shape == (6, 2)
    assert model_pts.dtype == np.float64
    np.testing.assert_array_equal(model_pts[:, :2], image_pts)
    np.testing.assert_allclose(model_pts[:, 2], -0.03, rtol=1e-6)

    # first row is landmark 1 (nose), product formed in float32
    expected_x = float(np.float32(0.50) * np.float32(640))
    assert image_pts[0, 0] == expected_x


def test_camera_matrix_has_swapped_principal_point():
    k = build_camera_matrix(640, 480)
    assert k[0, 0] == 640.0
    assert k[1, 1] == 640.0
    assert k[0, 2] == 240.0
    assert k[1, 2] == 320.0
    assert k[2, 2] == 1.0


# ─── Estimator ────────────────────────────────────────────────

def test_estimator_requires_four_indices():
    with pytest.raises(ValueError):
        PoseEstimator(landmark_indices=(1, 33, 61))


def test_estimator_rejects_bad_image_size():
    with pytest.raises(MalformedLandmarksError):
        PoseEstimator().estimate(_make_landmarks(), 0, 480)


def test_estimator_rejects_short_landmarks():
    with pytest.raises(MalformedLandmarksError):
        PoseEstimator().estimate(_make_landmarks(n=200), 640, 480)


def test_yaw_is_scaled_by_360():
    theta = 0.1
    with patch("headturn_pose.cv2.solvePnP", return_value=_mock_solve([0.0, theta, 0.0])):
        pose = PoseEstimator().estimate(_make_landmarks(), 640, 480)

    assert abs(pose.yaw) == pytest.approx(math.degrees(theta) * 360.0, rel=1e-4)
    assert pose.pitch == pytest.approx(0.0, abs=1e-6)
    assert pose.rotation_matrix.shape == (3, 3)


def test_pitch_is_scaled_by_360():
    theta = 0.05
    with patch("headturn_pose.cv2.solvePnP", return_value=_mock_solve([theta, 0.0, 0.0])):
        pose = PoseEstimator().estimate(_make_landmarks(), 640, 480)

    assert abs(pose.pitch) == pytest.approx(math.degrees(theta) * 360.0, rel=1e-4)
    assert pose.yaw == pytest.approx(0.0, abs=1e-6)


def test_angle_scale_is_configurable():
    est = PoseEstimator.from_config({"pose": {"angle_scale": 1.0}})
    theta = 0.1
    with patch("headturn_pose.cv2.solvePnP", return_value=_mock_solve([0.0, theta, 0.0])):
        pose = est.estimate(_make_landmarks(), 640, 480)
    assert abs(pose.yaw) == pytest.approx(math.degrees(theta), rel=1e-4)


def test_solver_failure_raises_with_previous_pose():
    est = PoseEstimator()
    lms = _make_landmarks()

    with patch("headturn_pose.cv2.solvePnP", return_value=_mock_solve([0.0, 0.0, 0.0], success=False)):
        with pytest.raises(PoseSolveError) as exc:
            est.estimate(lms, 640, 480)
    assert exc.value.previous is None

    with patch("headturn_pose.cv2.solvePnP", return_value=_mock_solve([0.0, 0.02, 0.0])):
        good = est.estimate(lms, 640, 480)

    with patch("headturn_pose.cv2.solvePnP", side_effect=cv2.error("solver blew up")):
        with pytest.raises(PoseSolveError) as exc:
            est.estimate(lms, 640, 480)
    assert exc.value.previous is good


def test_non_finite_rotation_is_a_solve_failure():
    with patch("headturn_pose.cv2.solvePnP", return_value=_mock_solve([np.nan, 0.0, 0.0])):
        with pytest.raises(PoseSolveError):
            PoseEstimator().estimate(_make_landmarks(), 640, 480)


def test_accepts_landmark_objects():
    class _Lm:
        def __init__(self, x, y, z):
            self.x, self.y, self.z = x, y, z

    objs = [_Lm(*row) for row in _make_landmarks().tolist()]
    with patch("headturn_pose.cv2.solvePnP", return_value=_mock_solve([0.0, 0.0, 0.0])) as solve:
        PoseEstimator().estimate(objs, 640, 480)
    assert solve.call_args.kwargs["flags"] == cv2.SOLVEPNP_ITERATIVE


# ─── Real solve ───────────────────────────────────────────────

def test_flat_face_solves_to_frontal_pose():
    """With z == 0 the observed pixels are an exact planar fit
    (R = I), so both angles come out near zero."""
    pose = PoseEstimator().estimate(_make_landmarks(z=0.0), 640, 480)
    assert pose.yaw == pytest.approx(0.0, abs=1.0)
    assert pose.pitch == pytest.approx(0.0, abs=1.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
