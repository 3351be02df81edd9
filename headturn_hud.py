import time
import logging
import cv2
import numpy as np
from typing import Optional, Tuple

from headturn_challenge import STEPS, MSG_DONE, MSG_NO_FACE, MSG_HOLD_STILL
from headturn_geometry import Rect, oval_guide_rect
from headturn_types import EngineResult

_log = logging.getLogger("HeadturnHUD")


class HeadturnHUD:
    """Challenge overlay for the live preview.

    Dims everything outside the oval guide, prints the current instruction,
    the raw yaw/pitch readout and one indicator per challenge step.
    """

    COLORS = {
        "GUIDE":     (255, 255, 255),
        "GUIDE_OK":  (0, 200, 0),
        "PENDING":   (128, 128, 128),
        "COMPLETED": (0, 200, 0),
        "NO_FACE":   (0, 0, 220),
        "HOLD":      (0, 200, 255),
        "TEXT":      (255, 255, 255),
    }

    DIM_ALPHA = 0.5

    def __init__(self, show_angles: bool = True):
        self.show_angles = show_angles
        _log.info("HeadturnHUD initialized")

    def render(self, frame: np.ndarray, engine_result: EngineResult) -> Tuple[Optional[np.ndarray], float]:
        """Draw overlay onto the provided frame.

        Args:
            frame: BGR image (already mirrored if the detector mirrors).
            engine_result: Output from HeadturnEngine.

        Returns:
            (annotated_frame, hud_render_time_seconds)
        """
        t_hud_start = time.monotonic()

        if frame is None:
            return None, 0.0

        viz = frame.copy()
        h, w = viz.shape[:2]
        result = engine_result.frame_result
        box = oval_guide_rect(w, h)

        # 1. Oval guide
        self._draw_oval_guide(viz, box, result.face_in_box)

        # 2. Instruction
        self._draw_instruction(viz, result.instruction, box)

        # 3. Angle readout
        if self.show_angles:
            self._draw_angles(viz, result.yaw, result.pitch)

        # 4. Step indicators
        self._draw_steps(viz, result.flags)

        # 5. Completion
        if result.done:
            self._draw_banner(viz, "CHALLENGE COMPLETE")

        self._draw_fps(viz, engine_result.fps)

        t_hud = time.monotonic() - t_hud_start
        return viz, t_hud

    def _draw_oval_guide(self, frame: np.ndarray, box: Rect, face_in_box: bool):
        h, w = frame.shape[:2]
        center = (int(round((box.left + box.right) / 2)), int(round((box.top + box.bottom) / 2)))
        axes = (int(round(box.width / 2)), int(round(box.height / 2)))

        mask = np.zeros((h, w), dtype=np.uint8)
        cv2.ellipse(mask, center, axes, 0, 0, 360, 255, -1)

        # Semi-transparent dim outside the oval
        dimmed = cv2.addWeighted(frame, 1 - self.DIM_ALPHA, np.zeros_like(frame), self.DIM_ALPHA, 0)
        outside = mask == 0
        frame[outside] = dimmed[outside]

        color = self.COLORS["GUIDE_OK"] if face_in_box else self.COLORS["GUIDE"]
        cv2.ellipse(frame, center, axes, 0, 0, 360, color, 2)

    def _draw_instruction(self, frame: np.ndarray, text: str, box: Rect):
        h, w = frame.shape[:2]
        font = cv2.FONT_HERSHEY_SIMPLEX
        scale = 1.0
        thickness = 2

        if text == MSG_NO_FACE:
            color = self.COLORS["NO_FACE"]
        elif text == MSG_HOLD_STILL:
            color = self.COLORS["HOLD"]
        elif text == MSG_DONE:
            color = self.COLORS["COMPLETED"]
        else:
            color = self.COLORS["TEXT"]

        (tw, th), _ = cv2.getTextSize(text.upper(), font, scale, thickness)
        x = (w - tw) // 2
        y = min(int(box.bottom) + th + 20, h - 50)

        pad = 10
        cv2.rectangle(frame, (x - pad, y - th - pad), (x + tw + pad, y + pad), (0, 0, 0), -1)
        cv2.putText(frame, text.upper(), (x, y), font, scale, color, thickness)

    def _draw_angles(self, frame: np.ndarray, yaw: Optional[float], pitch: Optional[float]):
        h, w = frame.shape[:2]
        if yaw is None or pitch is None:
            label = "Y: --  P: --"
        else:
            label = f"Y: {yaw:.1f}  P: {pitch:.1f}"
        text_w = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, 0.6, 1)[0][0]
        cv2.putText(frame, label, (w - text_w - 10, 30),
            cv2.FONT_HERSHEY_SIMPLEX, 0.6, (200, 200, 200), 1)

    def _draw_steps(self, frame: np.ndarray, flags: dict):
        """Draw bottom bar with one dot + label per step."""
        h, w = frame.shape[:2]
        bar_h = 40
        overlay = frame.copy()
        cv2.rectangle(overlay, (0, h - bar_h), (w, h), (0, 0, 0), -1)
        alpha = 0.6
        cv2.addWeighted(overlay, alpha, frame, 1 - alpha, 0, frame)

        slot_w = w // len(STEPS)
        for i, step in enumerate(STEPS):
            done = bool(flags.get(step, False))
            color = self.COLORS["COMPLETED"] if done else self.COLORS["PENDING"]
            cx = i * slot_w + 15
            cy = h - bar_h // 2
            cv2.circle(frame, (cx, cy), 7, color, -1 if done else 2)
            cv2.putText(frame, step.upper(), (cx + 14, cy + 5),
                cv2.FONT_HERSHEY_SIMPLEX, 0.45, color, 1)

    def _draw_banner(self, frame: np.ndarray, text: str):
        """Large centred notification."""
        h, w = frame.shape[:2]
        font = cv2.FONT_HERSHEY_SIMPLEX
        scale = 1.2
        thickness = 3
        color = self.COLORS["COMPLETED"]

        (fw, fh), _ = cv2.getTextSize(text, font, scale, thickness)
        cx, cy = w // 2, h // 2

        pad = 20
        cv2.rectangle(frame,
            (cx - fw // 2 - pad, cy - fh // 2 - pad),
            (cx + fw // 2 + pad, cy + fh // 2 + pad),
            (0, 0, 0), -1)
        cv2.rectangle(frame,
            (cx - fw // 2 - pad, cy - fh // 2 - pad),
            (cx + fw // 2 + pad, cy + fh // 2 + pad),
            color, 2)
        cv2.putText(frame, text, (cx - fw // 2, cy + fh // 2), font, scale, color, thickness)

    def _draw_fps(self, frame: np.ndarray, fps: float):
        cv2.putText(frame, f"FPS: {fps:.1f}", (10, 30),
            cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 255, 0), 2)
