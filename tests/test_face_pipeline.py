"""
Headturn — Face Landmark Detector Tests
=======================================
MediaPipe is replaced by a MagicMock module tree so the adapter logic
(initialization errors, mirroring, timestamps, result conversion) can be
tested without the model file.
"""

from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from headturn_face_pipeline import FaceLandmarkDetector
from headturn_types import DetectorUnavailableError


# ─── Fixtures ─────────────────────────────────────────────────

@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "face_landmarker.task"
    path.write_bytes(b"\x00")
    return str(path)


@pytest.fixture
def fake_mediapipe():
    mp = MagicMock(name="mediapipe")
    modules = {
        "mediapipe": mp,
        "mediapipe.tasks": mp.tasks,
        "mediapipe.tasks.python": mp.tasks.python,
        "mediapipe.tasks.python.vision": mp.tasks.python.vision,
    }
    with patch.dict(sys.modules, modules):
        yield mp


def _landmarker(mp) -> MagicMock:
    return mp.tasks.python.vision.FaceLandmarker.create_from_options.return_value


def _mesh(n: int = 478):
    return [SimpleNamespace(x=i / n, y=0.5, z=-0.01) for i in range(n)]


def _frame() -> np.ndarray:
    return np.full((480, 640, 3), 120, dtype=np.uint8)


# ─── Initialization ───────────────────────────────────────────

def test_missing_model_raises_detector_unavailable(tmp_path):
    with pytest.raises(DetectorUnavailableError):
        FaceLandmarkDetector(model_path=str(tmp_path / "nope.task"))


def test_missing_mediapipe_raises_detector_unavailable(model_file):
    with patch.dict(sys.modules, {"mediapipe": None}):
        with pytest.raises(DetectorUnavailableError):
            FaceLandmarkDetector(model_path=model_file)


def test_failed_task_creation_raises_detector_unavailable(model_file, fake_mediapipe):
    vision = fake_mediapipe.tasks.python.vision
    vision.FaceLandmarker.create_from_options.side_effect = RuntimeError("bad model")
    with pytest.raises(DetectorUnavailableError):
        FaceLandmarkDetector(model_path=model_file)


def test_options_follow_config(model_file, fake_mediapipe):
    FaceLandmarkDetector.from_config({
        "detector": {"model_path": model_file, "min_detection_confidence": 0.7, "num_faces": 1},
    })
    vision = fake_mediapipe.tasks.python.vision
    kwargs = vision.FaceLandmarkerOptions.call_args.kwargs
    assert kwargs["num_faces"] == 1
    assert kwargs["min_face_detection_confidence"] == 0.7
    assert kwargs["running_mode"] is vision.RunningMode.VIDEO


# ─── Detection ────────────────────────────────────────────────

def test_detect_returns_first_face_mesh(model_file, fake_mediapipe):
    _landmarker(fake_mediapipe).detect_for_video.return_value = SimpleNamespace(
        face_landmarks=[_mesh(), _mesh()]
    )
    det = FaceLandmarkDetector(model_path=model_file)
    event = det.detect(_frame(), timestamp=5.0)

    assert event.has_face
    assert event.landmarks.shape == (478, 3)
    assert event.landmarks.dtype == np.float32
    assert event.landmarks[1, 0] == pytest.approx(1 / 478)
    assert (event.image_width, event.image_height) == (640, 480)
    assert event.timestamp == 5.0


def test_detect_without_face(model_file, fake_mediapipe):
    _landmarker(fake_mediapipe).detect_for_video.return_value = SimpleNamespace(face_landmarks=[])
    det = FaceLandmarkDetector(model_path=model_file)
    event = det.detect(_frame())

    assert not event.has_face
    assert event.landmarks is None


def test_detection_error_is_reported_as_no_face(model_file, fake_mediapipe):
    _landmarker(fake_mediapipe).detect_for_video.side_effect = RuntimeError("graph error")
    det = FaceLandmarkDetector(model_path=model_file)
    assert det.detect(_frame()).landmarks is None


def test_video_timestamps_increase(model_file, fake_mediapipe):
    landmarker = _landmarker(fake_mediapipe)
    landmarker.detect_for_video.return_value = SimpleNamespace(face_landmarks=[])
    det = FaceLandmarkDetector(model_path=model_file)
    for _ in range(3):
        det.detect(_frame())

    stamps = [c.args[1] for c in landmarker.detect_for_video.call_args_list]
    assert stamps == sorted(set(stamps))
    assert len(stamps) == 3


# ─── Mirroring & lifecycle ────────────────────────────────────

def test_prepare_frame_mirrors_front_camera(model_file, fake_mediapipe):
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    frame[:, 0] = 255

    mirrored = FaceLandmarkDetector(model_path=model_file, mirror=True).prepare_frame(frame)
    assert mirrored[0, -1, 0] == 255
    assert mirrored[0, 0, 0] == 0

    plain = FaceLandmarkDetector(model_path=model_file, mirror=False).prepare_frame(frame)
    assert plain is frame


def test_detect_after_release_raises(model_file, fake_mediapipe):
    with FaceLandmarkDetector(model_path=model_file) as det:
        pass
    _landmarker(fake_mediapipe).close.assert_called_once()
    with pytest.raises(DetectorUnavailableError):
        det.detect(_frame())


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
