"""
Headturn — Pose Challenge State Machine
=======================================
Drives the ordered liveness challenge: front -> right -> left -> up -> down.

Each step is a monotonic flag. A step only registers once the step before it
is set, so jumping straight to a later pose is ignored as noise. The rules
are checked as an ordered if/elif chain and at most one flag is set per
update.

  ┌─────────┬──────────────────────────────┬────────────┐
  │ step    │ condition                    │ requires   │
  ├─────────┼──────────────────────────────┼────────────┤
  │ left    │ yaw   < -15                  │ right      │
  │ up      │ pitch > 15                   │ left       │
  │ down    │ pitch < -10                  │ up         │
  │ right   │ yaw   > 15                   │ front      │
  │ front   │ |yaw| <= 8 and |pitch| <= 8  │ -          │
  └─────────┴──────────────────────────────┴────────────┘
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Optional

_log = logging.getLogger("HeadturnChallenge")


# ─── Steps & instructions ─────────────────────────────────────

STEPS: tuple[str, ...] = ("front", "right", "left", "up", "down")

INSTRUCTIONS = {
    "front": "look straight",
    "right": "look right",
    "left": "look left",
    "up": "look up",
    "down": "look down",
}

MSG_DONE = "done"
MSG_NO_FACE = "no face"
MSG_FACE_DETECTED = "face detected"
MSG_WAITING_CAMERA = "waiting for camera"
MSG_HOLD_STILL = "hold still"


@dataclass(frozen=True)
class ChallengeThresholds:
    """Angle thresholds in the estimator's x360 degree convention."""
    front_tolerance: float = 8.0
    right_yaw: float = 15.0
    left_yaw: float = -15.0
    up_pitch: float = 15.0
    down_pitch: float = -10.0

    @classmethod
    def from_config(cls, config: dict) -> "ChallengeThresholds":
        section = config.get("challenge", {})
        names = {f.name for f in fields(cls)}
        return cls(**{k: float(v) for k, v in section.items() if k in names})


@dataclass
class ChallengeFlags:
    front: bool = False
    right: bool = False
    left: bool = False
    up: bool = False
    down: bool = False

    @property
    def done(self) -> bool:
        return self.front and self.right and self.left and self.up and self.down

    def as_dict(self) -> dict:
        return {name: getattr(self, name) for name in STEPS}


class ChallengeStateMachine:
    """Five-step head-turn challenge.

    One instance per session; not shared. Callers serialize access
    (ChallengeSession holds a lock around process()).
    """

    def __init__(self, thresholds: Optional[ChallengeThresholds] = None) -> None:
        self.thresholds = thresholds or ChallengeThresholds()
        self.flags = ChallengeFlags()
        self._updates = 0

    @property
    def done(self) -> bool:
        return self.flags.done

    @property
    def instruction(self) -> str:
        """Prompt for the first step not yet completed."""
        step = self.next_step
        return INSTRUCTIONS[step] if step else MSG_DONE

    @property
    def next_step(self) -> Optional[str]:
        for name in STEPS:
            if not getattr(self.flags, name):
                return name
        return None

    def update(self, yaw: float, pitch: float) -> Optional[str]:
        """Feed one (yaw, pitch) sample.

        Returns:
            Name of the flag set by this call, or None.
        """
        self._updates += 1
        t = self.thresholds
        f = self.flags
        fired: Optional[str] = None

        if yaw < t.left_yaw and f.right and not f.left:
            f.left = True
            fired = "left"
        elif pitch > t.up_pitch and f.left and not f.up:
            f.up = True
            fired = "up"
        elif pitch < t.down_pitch and f.up and not f.down:
            f.down = True
            fired = "down"
        elif yaw > t.right_yaw and f.front and not f.right:
            f.right = True
            fired = "right"
        elif (
            -t.front_tolerance <= yaw <= t.front_tolerance
            and -t.front_tolerance <= pitch <= t.front_tolerance
            and not f.front
        ):
            f.front = True
            fired = "front"

        if fired:
            _log.debug("Step '%s' registered (yaw=%.2f pitch=%.2f)", fired, yaw, pitch)
        return fired

    def reset(self) -> None:
        """Clear all five flags."""
        self.flags = ChallengeFlags()

    def get_summary(self) -> dict:
        return {
            "flags": self.flags.as_dict(),
            "done": self.done,
            "next_step": self.next_step,
            "instruction": self.instruction,
            "updates": self._updates,
        }
