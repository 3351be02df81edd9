"""
Headturn — Landmark Geometry Helpers
====================================
Landmark normalization, pose-point selection and the framing gate that
decides whether a face sits inside the on-screen oval guide.

Accepted landmark inputs:
  - (N, >=3) NumPy array of normalized (x, y, z)
  - sequence of objects exposing .x .y .z (MediaPipe NormalizedLandmark)
  - sequence of (x, y, z) tuples
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np

from headturn_types import MalformedLandmarksError


# ─── Landmark indices (MediaPipe 468/478 mesh) ────────────────

POSE_LANDMARK_INDICES: tuple[int, ...] = (33, 263, 1, 61, 291, 199)

LEFT_CHEEK_INDEX = 234
FOREHEAD_INDEX = 10
RIGHT_CHEEK_INDEX = 454
CHIN_INDEX = 200


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle in view pixels (left, top, right, bottom)."""
    left: float
    top: float
    right: float
    bottom: float

    @property
    def is_empty(self) -> bool:
        return self.left >= self.right or self.top >= self.bottom

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    def contains_rect(self, left: float, top: float, right: float, bottom: float) -> bool:
        """True if this non-empty rect fully contains the given one (edges inclusive)."""
        return (
            not self.is_empty
            and self.left <= left
            and self.top <= top
            and self.right >= right
            and self.bottom >= bottom
        )

    def scaled(self, factor: float) -> "Rect":
        return Rect(
            self.left * factor,
            self.top * factor,
            self.right * factor,
            self.bottom * factor,
        )


def as_landmark_array(landmarks: Any) -> np.ndarray:
    """Normalize any accepted landmark container into a float32 (N, 3) array.

    Raises:
        MalformedLandmarksError: On None, wrong shape or non-numeric entries.
    """
    if landmarks is None:
        raise MalformedLandmarksError("landmarks is None")

    if isinstance(landmarks, np.ndarray):
        arr = landmarks
    else:
        rows = []
        for lm in landmarks:
            if hasattr(lm, "x") and hasattr(lm, "y"):
                rows.append((lm.x, lm.y, getattr(lm, "z", 0.0) or 0.0))
            else:
                rows.append(tuple(lm)[:3])
        try:
            arr = np.asarray(rows, dtype=np.float32)
        except (TypeError, ValueError) as e:
            raise MalformedLandmarksError(f"landmarks are not numeric: {e}") from e

    if arr.ndim != 2 or arr.shape[1] < 3:
        raise MalformedLandmarksError(
            f"expected (N, 3) landmarks, got shape {arr.shape}"
        )
    return np.ascontiguousarray(arr[:, :3], dtype=np.float32)


def require_landmarks(arr: np.ndarray, max_index: int) -> None:
    """Fail fast if arr cannot address max_index."""
    if arr.shape[0] <= max_index:
        raise MalformedLandmarksError(
            f"need at least {max_index + 1} landmarks, got {arr.shape[0]}"
        )


def select_pose_landmarks(
    arr: np.ndarray,
    indices: Sequence[int] = POSE_LANDMARK_INDICES,
) -> np.ndarray:
    """Pick the pose landmarks in order of appearance in the mesh.

    Walking the mesh once and keeping matches yields ascending index order
    (1, 33, 61, 199, 263, 291), not the order of `indices`. solvePnP sees
    the points in this order.
    """
    wanted = set(int(i) for i in indices)
    require_landmarks(arr, max(wanted))
    order = [idx for idx in range(arr.shape[0]) if idx in wanted]
    return arr[order]


def is_inside_the_box(
    landmarks: Any,
    image_width: int,
    image_height: int,
    box: Rect,
    view_width: int,
    view_height: int,
) -> bool:
    """Check that the face outline fits inside `box` on a cover-fit view.

    The image is scaled by max(view_w / image_w, view_h / image_h) and the
    rectangle spanned by the left cheek, forehead, right cheek and chin is
    tested for containment. No centring offset is applied.
    """
    if image_width <= 0 or image_height <= 0:
        raise MalformedLandmarksError(
            f"image size must be positive, got {image_width}x{image_height}"
        )
    arr = as_landmark_array(landmarks)
    require_landmarks(arr, max(LEFT_CHEEK_INDEX, FOREHEAD_INDEX, RIGHT_CHEEK_INDEX, CHIN_INDEX))

    scale = max(view_width / image_width, view_height / image_height)

    return box.contains_rect(
        float(arr[LEFT_CHEEK_INDEX, 0]) * image_width * scale,
        float(arr[FOREHEAD_INDEX, 1]) * image_height * scale,
        float(arr[RIGHT_CHEEK_INDEX, 0]) * image_width * scale,
        float(arr[CHIN_INDEX, 1]) * image_height * scale,
    )


def oval_guide_rect(view_width: int, view_height: int) -> Rect:
    """Bounding rect of the on-screen oval the user frames their face in."""
    center_x = view_width // 2
    center_y = view_height / 2.8
    radius_x = view_width / 2.8
    radius_y = view_height / 3.4
    return Rect(
        center_x - radius_x,
        center_y - radius_y,
        center_x + radius_x,
        center_y + radius_y,
    )
