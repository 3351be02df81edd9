"""
Headturn — Structured Audit Logger
==================================
Appends challenge events to a JSONL audit trail so a session can be
reconstructed afterwards (which step fired at which angles, when the
challenge completed, how often the solver failed).

  - JSONL (one JSON object per line)
  - Thread-safe: the engine's detection thread and the main thread both log
  - Levels: SYSTEM, AUDIT, WARN, ERROR
"""

import json
import logging
import os
import sys
import threading
import time
from typing import Any, Dict, Optional

import numpy as np

_log = logging.getLogger("HeadturnLogger")


class HeadturnJSONEncoder(json.JSONEncoder):
    """Handles NumPy types for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        return super().default(obj)


class HeadturnLogger:
    """JSONL audit trail for challenge sessions."""

    def __init__(self, log_dir: str = "logs", filename: str = "headturn_audit.jsonl"):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.log_path = os.path.join(self.log_dir, filename)
        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()

        self.log({
            "event": "system_startup",
            "python_version": sys.version,
            "platform": sys.platform
        }, level="SYSTEM")

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append one entry."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data
        }
        line = json.dumps(entry, cls=HeadturnJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    def log_step(self, step: str, yaw: float, pitch: float):
        self.log({"step": step, "yaw": yaw, "pitch": pitch}, event="step_completed")

    def warn(self, message: str, context: Optional[Dict] = None):
        _log.warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="system_warning")

    def error(self, message: str, exception: Optional[Exception] = None):
        _log.error(message)
        err_details = str(exception) if exception else None
        self.log({"message": message, "exception": err_details}, level="ERROR", event="system_error")

    def close(self):
        """Clean shutdown."""
        self.log({"message": "Logger shutting down"}, level="SYSTEM", event="system_shutdown")
        with self._lock:
            if not self._file.closed:
                self._file.close()


_logger: Optional[HeadturnLogger] = None


def get_logger(log_dir: str = "logs") -> HeadturnLogger:
    global _logger
    if _logger is None or _logger._file.closed:
        _logger = HeadturnLogger(log_dir)
    return _logger
