"""
Headturn — Geometry Tests
=========================
Rect containment, landmark normalization and the oval framing gate.
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from headturn_geometry import (
    CHIN_INDEX,
    FOREHEAD_INDEX,
    LEFT_CHEEK_INDEX,
    RIGHT_CHEEK_INDEX,
    Rect,
    as_landmark_array,
    is_inside_the_box,
    oval_guide_rect,
)
from headturn_types import Landmark, MalformedLandmarksError


def _face(left=0.3, top=0.15, right=0.7, bottom=0.55, n=478) -> np.ndarray:
    lms = np.full((n, 3), 0.5, dtype=np.float32)
    lms[LEFT_CHEEK_INDEX, 0] = left
    lms[FOREHEAD_INDEX, 1] = top
    lms[RIGHT_CHEEK_INDEX, 0] = right
    lms[CHIN_INDEX, 1] = bottom
    return lms


# ─── Rect ─────────────────────────────────────────────────────

def test_rect_contains_is_edge_inclusive():
    r = Rect(10, 10, 100, 100)
    assert r.contains_rect(10, 10, 100, 100)
    assert r.contains_rect(20, 20, 80, 80)
    assert not r.contains_rect(9.9, 20, 80, 80)
    assert not r.contains_rect(20, 20, 80, 100.1)


def test_empty_rect_contains_nothing():
    r = Rect(50, 50, 50, 100)
    assert r.is_empty
    assert not r.contains_rect(50, 60, 50, 70)


def test_rect_scaled():
    r = Rect(1, 2, 3, 4).scaled(2)
    assert r == Rect(2, 4, 6, 8)
    assert r.width == 4
    assert r.height == 4


# ─── Landmark normalization ───────────────────────────────────

def test_as_landmark_array_accepts_objects_and_tuples():
    objs = [Landmark(0.1, 0.2, 0.3), Landmark(0.4, 0.5, 0.6)]
    tuples = [(0.1, 0.2, 0.3), (0.4, 0.5, 0.6)]

    a = as_landmark_array(objs)
    b = as_landmark_array(tuples)
    assert a.shape == (2, 3)
    assert a.dtype == np.float32
    np.testing.assert_array_equal(a, b)


def test_as_landmark_array_rejects_bad_input():
    with pytest.raises(MalformedLandmarksError):
        as_landmark_array(None)
    with pytest.raises(MalformedLandmarksError):
        as_landmark_array(np.zeros((10, 2)))
    with pytest.raises(MalformedLandmarksError):
        as_landmark_array([("a", "b", "c")])


# ─── Oval guide ───────────────────────────────────────────────

def test_oval_guide_rect_geometry():
    box = oval_guide_rect(640, 480)
    assert box.left == pytest.approx(320 - 640 / 2.8)
    assert box.right == pytest.approx(320 + 640 / 2.8)
    assert box.top == pytest.approx(480 / 2.8 - 480 / 3.4)
    assert box.bottom == pytest.approx(480 / 2.8 + 480 / 3.4)


# ─── Framing gate ─────────────────────────────────────────────

def test_centered_face_is_inside():
    box = oval_guide_rect(640, 480)
    assert is_inside_the_box(_face(), 640, 480, box, 640, 480) is True


def test_face_touching_edge_is_outside():
    box = oval_guide_rect(640, 480)
    assert is_inside_the_box(_face(left=0.05), 640, 480, box, 640, 480) is False
    assert is_inside_the_box(_face(bottom=0.95), 640, 480, box, 640, 480) is False


def test_gate_is_scale_invariant():
    small_box = oval_guide_rect(640, 480)
    big_box = oval_guide_rect(1280, 960)

    for face in (_face(), _face(left=0.05)):
        small = is_inside_the_box(face, 640, 480, small_box, 640, 480)
        big = is_inside_the_box(face, 640, 480, big_box, 1280, 960)
        assert small == big


def test_gate_is_invariant_when_image_and_view_scale_together():
    for k in (2, 3):
        box = oval_guide_rect(640 * k, 480 * k)
        for face in (_face(), _face(right=0.9), _face(top=0.02)):
            base = is_inside_the_box(face, 640, 480, oval_guide_rect(640, 480), 640, 480)
            scaled = is_inside_the_box(face, 640 * k, 480 * k, box, 640 * k, 480 * k)
            assert base == scaled


def test_cover_fit_uses_larger_scale():
    # 640x480 image on a 1280x720 view: scale = max(2.0, 1.5) = 2.0
    box = Rect(0, 0, 1280, 720)
    face = _face(left=0.1, top=0.1, right=0.9, bottom=0.7)
    # chin at 0.7 * 480 * 2 = 672 <= 720
    assert is_inside_the_box(face, 640, 480, box, 1280, 720) is True
    face_low = _face(left=0.1, top=0.1, right=0.9, bottom=0.8)
    # chin at 768 > 720
    assert is_inside_the_box(face_low, 640, 480, box, 1280, 720) is False


def test_empty_box_rejects_everything():
    assert is_inside_the_box(_face(), 640, 480, Rect(0, 0, 0, 0), 640, 480) is False


def test_gate_rejects_bad_input():
    box = oval_guide_rect(640, 480)
    with pytest.raises(MalformedLandmarksError):
        is_inside_the_box(_face(), 0, 480, box, 640, 480)
    with pytest.raises(MalformedLandmarksError):
        is_inside_the_box(_face(n=300), 640, 480, box, 640, 480)


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
