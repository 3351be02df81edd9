"""
Headturn — Challenge Session & Engine
=====================================
ChallengeSession is the synchronous per-frame core: one FrameEvent in, one
FrameResult out. HeadturnEngine wraps it in the threaded capture pipeline.

Architecture: two worker threads + main (HUD) thread
  1. Camera thread: validated frames -> camera_queue (size 1, keep latest)
  2. Detection thread: detector -> session -> result_queue (size 1)
  3. Main thread: get_latest_result() -> HUD

Pose estimation only cares about the freshest frame, so both queues drop
the older item instead of blocking. At most one estimate is in flight.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from headturn_camera import HeadturnCamera
from headturn_challenge import (
    ChallengeStateMachine,
    ChallengeThresholds,
    MSG_FACE_DETECTED,
    MSG_HOLD_STILL,
    MSG_NO_FACE,
)
from headturn_face_pipeline import FaceLandmarkDetector
from headturn_geometry import Rect, is_inside_the_box, oval_guide_rect
from headturn_logger import HeadturnLogger, get_logger
from headturn_pose import PoseEstimator
from headturn_types import (
    EngineResult,
    FrameEvent,
    FrameResult,
    MalformedLandmarksError,
    PoseSolveError,
)
from headturn_utils import CONFIG, _deep_merge

_log = logging.getLogger("HeadturnEngine")


class NoFacePolicy(str, Enum):
    """What a no-face frame does to challenge progress."""
    RESET = "reset"   # start over (camera screen behaviour)
    KEEP = "keep"     # only change the message


class ChallengeListener:
    """Receives session feedback. Override what you need."""

    def on_message(self, message: str) -> None:
        pass

    def on_step(self, step: str, yaw: float, pitch: float) -> None:
        pass

    def on_complete(self) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


# ═══════════════════════════════════════════════════════════════
# ChallengeSession
# ═══════════════════════════════════════════════════════════════

class ChallengeSession:
    """One user's challenge: a PoseEstimator + ChallengeStateMachine pair.

    process() is serialized by a lock, so overlapping callers cannot race
    on the flags. Never share an instance between users.
    """

    def __init__(
        self,
        estimator: Optional[PoseEstimator] = None,
        machine: Optional[ChallengeStateMachine] = None,
        no_face_policy: NoFacePolicy | str = NoFacePolicy.RESET,
        strict_landmarks: bool = False,
        solve_failure_hint_after: int = 30,
        detect_only: bool = False,
        listener: Optional[ChallengeListener] = None,
        audit_logger: Optional[HeadturnLogger] = None,
    ) -> None:
        self.estimator = estimator or PoseEstimator()
        self.machine = machine or ChallengeStateMachine()
        self.no_face_policy = NoFacePolicy(no_face_policy)
        self.strict_landmarks = strict_landmarks
        self.solve_failure_hint_after = int(solve_failure_hint_after)
        self.detect_only = detect_only
        self.listener = listener or ChallengeListener()
        self.audit = audit_logger

        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._last_yaw: Optional[float] = None
        self._last_pitch: Optional[float] = None
        self._last_message: Optional[str] = None
        self.last_result: Optional[FrameResult] = None

    @classmethod
    def from_config(
        cls,
        config: dict,
        listener: Optional[ChallengeListener] = None,
        audit_logger: Optional[HeadturnLogger] = None,
        detect_only: bool = False,
    ) -> "ChallengeSession":
        ch = config.get("challenge", {})
        return cls(
            estimator=PoseEstimator.from_config(config),
            machine=ChallengeStateMachine(ChallengeThresholds.from_config(config)),
            no_face_policy=ch.get("on_no_face", NoFacePolicy.RESET),
            strict_landmarks=bool(ch.get("strict_landmarks", False)),
            solve_failure_hint_after=int(ch.get("solve_failure_hint_after", 30)),
            detect_only=detect_only,
            listener=listener,
            audit_logger=audit_logger,
        )

    # ── Properties ────────────────────────────────────────────

    @property
    def done(self) -> bool:
        return self.machine.done

    @property
    def flags(self) -> dict:
        return self.machine.flags.as_dict()

    @property
    def consecutive_solve_failures(self) -> int:
        return self._consecutive_failures

    # ── Public API ────────────────────────────────────────────

    def process(
        self,
        event: FrameEvent,
        box: Optional[Rect] = None,
        view_size: Optional[Tuple[int, int]] = None,
    ) -> FrameResult:
        """Run one detector event through the framing gate, pose and challenge.

        Args:
            event: Detector output for one frame.
            box: Framing rectangle in view pixels. None disables the gate.
            view_size: (width, height) of the view `box` lives in. Defaults
                       to the image size.

        Raises:
            MalformedLandmarksError: Only when strict_landmarks is set.
        """
        with self._lock:
            result = self._process_locked(event, box, view_size)
            self.last_result = result
            self._emit_message(result.instruction)
            return result

    def reset(self) -> None:
        """Start the challenge over."""
        with self._lock:
            self._reset_locked(reason="manual")

    # ── Internals ─────────────────────────────────────────────

    def _process_locked(
        self,
        event: FrameEvent,
        box: Optional[Rect],
        view_size: Optional[Tuple[int, int]],
    ) -> FrameResult:
        if not event.has_face:
            return self._no_face(event)

        if box is not None:
            view_w, view_h = view_size or (event.image_width, event.image_height)
            try:
                inside = is_inside_the_box(
                    event.landmarks, event.image_width, event.image_height,
                    box, view_w, view_h,
                )
            except MalformedLandmarksError as e:
                return self._malformed(event, e, face_in_box=False)
            if not inside:
                return self._no_face(event)

        if self.detect_only:
            return self._result(event, MSG_FACE_DETECTED, face_in_box=True)

        # prompt reflects progress before this frame's update
        prompt = self.machine.instruction

        try:
            pose = self.estimator.estimate(event.landmarks, event.image_width, event.image_height)
        except PoseSolveError as e:
            return self._solve_failed(event, e, prompt)
        except MalformedLandmarksError as e:
            return self._malformed(event, e, face_in_box=True, prompt=prompt)

        self._consecutive_failures = 0
        self._last_yaw, self._last_pitch = pose.yaw, pose.pitch

        was_done = self.machine.done
        step = self.machine.update(pose.yaw, pose.pitch)
        completed_now = self.machine.done and not was_done

        if step:
            if self.audit:
                self.audit.log_step(step, pose.yaw, pose.pitch)
            self._notify("on_step", step, pose.yaw, pose.pitch)
        if completed_now:
            _log.info("Challenge complete")
            if self.audit:
                self.audit.log({"flags": self.machine.flags.as_dict()}, event="challenge_complete")
            self._notify("on_complete")

        return self._result(
            event, prompt,
            face_in_box=True, pose_ok=True,
            step_completed=step, completed_now=completed_now,
        )

    def _no_face(self, event: FrameEvent) -> FrameResult:
        # a finished challenge is terminal; only reset() clears it
        if self.no_face_policy is NoFacePolicy.RESET and not self.machine.done:
            self._reset_locked(reason="no_face")
        return FrameResult(
            instruction=MSG_NO_FACE,
            yaw=None,
            pitch=None,
            flags=self.machine.flags.as_dict(),
            done=self.machine.done,
            timestamp=event.timestamp,
        )

    def _solve_failed(self, event: FrameEvent, error: PoseSolveError, prompt: str) -> FrameResult:
        self._consecutive_failures += 1
        _log.debug("Pose solve failed (%d in a row): %s", self._consecutive_failures, error)

        instruction = prompt
        if self._consecutive_failures >= self.solve_failure_hint_after:
            instruction = MSG_HOLD_STILL
            if self._consecutive_failures == self.solve_failure_hint_after and self.audit:
                self.audit.log(
                    {"consecutive_failures": self._consecutive_failures, "error": str(error)},
                    level="WARN", event="solve_failed",
                )

        if error.previous is not None:
            self._last_yaw, self._last_pitch = error.previous.yaw, error.previous.pitch
        return self._result(event, instruction, face_in_box=True)

    def _malformed(
        self,
        event: FrameEvent,
        error: MalformedLandmarksError,
        face_in_box: bool,
        prompt: Optional[str] = None,
    ) -> FrameResult:
        if self.strict_landmarks:
            raise error
        _log.warning("Skipping frame with malformed landmarks: %s", error)
        return self._result(event, prompt or self.machine.instruction, face_in_box=face_in_box)

    def _result(
        self,
        event: FrameEvent,
        instruction: str,
        face_in_box: bool = False,
        pose_ok: bool = False,
        step_completed: Optional[str] = None,
        completed_now: bool = False,
    ) -> FrameResult:
        return FrameResult(
            instruction=instruction,
            yaw=self._last_yaw,
            pitch=self._last_pitch,
            flags=self.machine.flags.as_dict(),
            done=self.machine.done,
            completed_now=completed_now,
            step_completed=step_completed,
            face_in_box=face_in_box,
            pose_ok=pose_ok,
            timestamp=event.timestamp,
        )

    def _reset_locked(self, reason: str) -> None:
        had_progress = any(self.machine.flags.as_dict().values())
        self.machine.reset()
        self._consecutive_failures = 0
        if had_progress:
            _log.info("Challenge reset (%s)", reason)
            if self.audit:
                self.audit.log({"reason": reason}, event="challenge_reset")

    def _emit_message(self, message: str) -> None:
        if message != self._last_message:
            self._last_message = message
            self._notify("on_message", message)

    def notify_error(self, error: Exception) -> None:
        """Report an error raised outside process() to the listener."""
        self._notify("on_error", error)

    def _notify(self, method: str, *args) -> None:
        try:
            getattr(self.listener, method)(*args)
        except Exception as e:
            _log.warning("Listener %s failed: %s", method, e)


# ═══════════════════════════════════════════════════════════════
# HeadturnEngine
# ═══════════════════════════════════════════════════════════════

class HeadturnEngine:
    """Camera -> detector -> session pipeline with keep-latest backpressure."""

    def __init__(
        self,
        config: Optional[dict] = None,
        listener: Optional[ChallengeListener] = None,
        camera: Optional[HeadturnCamera] = None,
        detector: Optional[FaceLandmarkDetector] = None,
        audit_logger: Optional[HeadturnLogger] = None,
        detect_only: bool = False,
    ) -> None:
        """Build the pipeline.

        Raises:
            DetectorUnavailableError: The landmark detector failed to start.
                The camera is released before the error propagates.
        """
        self.config = _deep_merge(CONFIG, config or {})
        self.listener = listener or ChallengeListener()

        self.audit = audit_logger or get_logger(self.config["logging"]["log_dir"])
        self.audit.log({"event": "engine_init_start"})

        self.camera = camera or HeadturnCamera.from_config(self.config)
        try:
            self.detector = detector or FaceLandmarkDetector.from_config(self.config)
        except Exception as e:
            self.audit.error("Landmark detector unavailable", exception=e)
            self.camera.release()
            raise

        self.session = ChallengeSession.from_config(
            self.config, listener=self.listener,
            audit_logger=self.audit, detect_only=detect_only,
        )
        self.framing_enabled = bool(self.config["framing"].get("enabled", True))

        self.camera_queue: queue.Queue = queue.Queue(maxsize=1)
        self.result_queue: queue.Queue = queue.Queue(maxsize=1)
        self.frames_dropped = 0

        self.running = False
        self._frame_times: deque = deque(maxlen=60)
        self._cam_thread: Optional[threading.Thread] = None
        self._ai_thread: Optional[threading.Thread] = None

        self.audit.log({"event": "engine_init_complete"})

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self) -> None:
        self.running = True
        self._cam_thread = threading.Thread(target=self._camera_thread, daemon=True)
        self._ai_thread = threading.Thread(target=self._detection_thread, daemon=True)
        self._cam_thread.start()
        self._ai_thread.start()
        self.audit.log({"event": "engine_started"})

    def stop(self) -> None:
        """Stop threads, drop pending frames and release devices."""
        self.running = False
        cam_done = self._join(self._cam_thread, "camera")
        ai_done = self._join(self._ai_thread, "detection")
        self._drain(self.camera_queue)

        # a thread still inside read/detect keeps its device
        if cam_done:
            self.camera.release()
        if ai_done:
            self.detector.release()
        self.audit.log({"event": "engine_stopped", "frames_dropped": self.frames_dropped})

    def reset_challenge(self) -> None:
        self.session.reset()

    def get_latest_result(self) -> Optional[EngineResult]:
        try:
            return self.result_queue.get_nowait()
        except queue.Empty:
            return None

    # ── Frame processing ──────────────────────────────────────

    def process_frame(self, frame: np.ndarray, ts: float) -> EngineResult:
        """Detect, gate, estimate and update for one camera frame."""
        t_start = time.monotonic()
        timing = {}

        display = self.detector.prepare_frame(frame)
        h, w = display.shape[:2]

        t0 = time.monotonic()
        event = self.detector.detect(display, ts)
        timing["detect_ms"] = (time.monotonic() - t0) * 1000

        box = oval_guide_rect(w, h) if self.framing_enabled else None
        t0 = time.monotonic()
        frame_result = self.session.process(event, box=box, view_size=(w, h))
        timing["challenge_ms"] = (time.monotonic() - t0) * 1000

        t_total = time.monotonic() - t_start
        timing["total_ms"] = t_total * 1000
        self._frame_times.append(t_total)
        fps = len(self._frame_times) / sum(self._frame_times) if sum(self._frame_times) > 0 else 0.0

        return EngineResult(
            frame=display,
            frame_result=frame_result,
            fps=fps,
            timing_breakdown=timing,
            camera_health=self.camera.get_health_status(),
        )

    # ── Worker threads ────────────────────────────────────────

    def _camera_thread(self) -> None:
        while self.running:
            ok, frame, ts = self.camera.read_validated_frame()
            if ok:
                self._offer(self.camera_queue, (frame, ts))
            else:
                time.sleep(0.01)

    def _detection_thread(self) -> None:
        while self.running:
            try:
                frame, ts = self.camera_queue.get(timeout=0.1)
            except queue.Empty:
                continue

            try:
                result = self.process_frame(frame, ts)
            except MalformedLandmarksError as e:
                # strict mode: contract violation surfaces to the caller
                self.audit.error("Malformed landmarks", exception=e)
                self.session.notify_error(e)
                self.running = False
                break
            except Exception as e:
                _log.exception("Detection thread error")
                self.audit.error(f"Detection thread error: {e}", exception=e)
                self.session.notify_error(e)
                continue

            self._offer(self.result_queue, result)

    def _offer(self, q: queue.Queue, item) -> None:
        """Put without blocking; evict the older item if the slot is full."""
        try:
            q.put_nowait(item)
        except queue.Full:
            try:
                q.get_nowait()
                self.frames_dropped += 1
            except queue.Empty:
                pass
            try:
                q.put_nowait(item)
            except queue.Full:
                self.frames_dropped += 1

    def _join(self, thread: Optional[threading.Thread], name: str, timeout: float = 1.0) -> bool:
        """Join a worker; False if it is still running after `timeout`."""
        if thread is None:
            return True
        thread.join(timeout=timeout)
        if thread.is_alive():
            _log.warning("%s thread did not stop within %.1fs; device left open", name, timeout)
            self.audit.warn(f"{name} thread still running at shutdown")
            return False
        return True

    @staticmethod
    def _drain(q: queue.Queue) -> None:
        while True:
            try:
                q.get_nowait()
            except queue.Empty:
                return
