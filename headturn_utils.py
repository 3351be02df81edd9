"""
Headturn — Shared Utility Module
================================
Configuration loading and console logging shared by every Headturn module.

config.yaml is deep-merged over DEFAULT_CONFIG, so a partial file (or no
file at all) still yields a complete configuration.
"""

from __future__ import annotations

import copy
import logging
import os
from typing import Optional

import yaml


# ===================================================================
# Configuration
# ===================================================================

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, "config.yaml")

DEFAULT_CONFIG: dict = {
    "pose": {
        "landmark_indices": [33, 263, 1, 61, 291, 199],
        "angle_scale": 360.0,
    },
    "challenge": {
        "front_tolerance": 8.0,
        "right_yaw": 15.0,
        "left_yaw": -15.0,
        "up_pitch": 15.0,
        "down_pitch": -10.0,
        "on_no_face": "reset",
        "strict_landmarks": False,
        "solve_failure_hint_after": 30,
    },
    "framing": {
        "enabled": True,
    },
    "detector": {
        "model_path": "face_landmarker.task",
        "min_detection_confidence": 0.5,
        "num_faces": 1,
        "mirror": True,
    },
    "camera": {
        "id": 0,
        "width": 640,
        "height": 480,
        "reject_blank_frames": None,
    },
    "logging": {
        "level": "INFO",
        "log_dir": "logs",
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> dict:
    """Load configuration from config.yaml merged over the defaults.

    Args:
        path: Explicit YAML path. Defaults to config.yaml beside this module.

    Returns:
        Complete configuration dictionary.
    """
    target = path or _config_path
    if not os.path.exists(target):
        if path is not None:
            raise FileNotFoundError(f"Config file not found: {target}")
        return copy.deepcopy(DEFAULT_CONFIG)
    with open(target, "r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config root must be a mapping: {target}")
    return _deep_merge(DEFAULT_CONFIG, loaded)


CONFIG = load_config()


# ===================================================================
# Logging Setup
# ===================================================================

def setup_logger(name: str, level: int | str = logging.INFO) -> logging.Logger:
    """Create a configured logger for Headturn modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '[%(asctime)s] %(name)-14s %(levelname)-7s %(message)s',
            datefmt='%H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
