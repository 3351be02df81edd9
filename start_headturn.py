"""
Headturn — Launcher
===================
Runs the head-turn liveness challenge on a live camera (or video file)
with the oval-guide HUD.

Usage:
  python start_headturn.py --source 0
  python start_headturn.py --source clip.mp4 --no-mirror --headless

Keys: Q / ESC quit, R restart the challenge.
"""

import argparse
import os
import sys
import time

import cv2

# Add root
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from headturn_challenge import MSG_WAITING_CAMERA
from headturn_engine import ChallengeListener, HeadturnEngine
from headturn_hud import HeadturnHUD
from headturn_types import DetectorUnavailableError
from headturn_utils import load_config, setup_logger


WINDOW_NAME = "Headturn | Liveness Challenge"


class ConsoleListener(ChallengeListener):
    """Echo challenge progress to stdout."""

    def __init__(self):
        self.completions = 0

    def on_step(self, step, yaw, pitch):
        print(f"[HEADTURN] Step '{step}' (yaw={yaw:.1f} pitch={pitch:.1f})")

    def on_complete(self):
        self.completions += 1
        print("[HEADTURN] CHALLENGE COMPLETE")

    def on_error(self, error):
        print(f"[HEADTURN] Error: {error}")


def build_config(args) -> dict:
    config = load_config(args.config)

    if args.source is not None:
        config["camera"]["id"] = int(args.source) if args.source.isdigit() else args.source
    if args.width:
        config["camera"]["width"] = args.width
    if args.height:
        config["camera"]["height"] = args.height
    if args.model:
        config["detector"]["model_path"] = args.model
    if args.no_mirror:
        config["detector"]["mirror"] = False
    if args.keep_on_no_face:
        config["challenge"]["on_no_face"] = "keep"
    return config


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Headturn liveness challenge")
    parser.add_argument("--source", type=str, default=None, help="Camera ID (0, 1, etc.) or video file path")
    parser.add_argument("--model", type=str, default=None, help="Path to face_landmarker.task")
    parser.add_argument("--config", type=str, default=None, help="YAML config file (default: config.yaml)")
    parser.add_argument("--width", type=int, default=None, help="Camera width")
    parser.add_argument("--height", type=int, default=None, help="Camera height")
    parser.add_argument("--no-mirror", action="store_true", help="Do not mirror frames (rear camera / video)")
    parser.add_argument("--keep-on-no-face", action="store_true", help="Keep progress when the face is lost")
    parser.add_argument("--detect-only", action="store_true", help="Only report face detected / no face")
    parser.add_argument("--headless", action="store_true", help="Run without UI window")
    parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING, ...")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    config = build_config(args)

    level = (args.log_level or config["logging"]["level"]).upper()
    for name in ("HeadturnEngine", "HeadturnPose", "HeadturnChallenge",
                 "HeadturnCamera", "HeadturnFacePipeline", "HeadturnHUD", "HeadturnLogger"):
        setup_logger(name, level)

    print("=" * 60)
    print("  Headturn — Starting...")
    print(f"  Source: {config['camera']['id']}")
    print(f"  Resolution: {config['camera']['width']}x{config['camera']['height']}")
    print(f"  Model:  {config['detector']['model_path']}")
    print(f"  Mirror: {config['detector']['mirror']}")
    print("=" * 60)

    listener = ConsoleListener()
    hud = HeadturnHUD()
    engine = None
    exit_code = 0

    try:
        engine = HeadturnEngine(config, listener=listener, detect_only=args.detect_only)

        if not args.headless:
            cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_AUTOSIZE)

        engine.start()
        print("[HEADTURN] Active. 'Q'/'ESC' to exit, 'R' to restart.")
        print(f"[HEADTURN] {MSG_WAITING_CAMERA}...")

        while engine.running:
            if not args.headless:
                key = cv2.waitKey(1) & 0xFF
                if key in (ord('q'), ord('Q'), 27):
                    print("\n[HEADTURN] Exit key pressed — shutting down...")
                    break
                if key in (ord('r'), ord('R')):
                    engine.reset_challenge()
                    print("[HEADTURN] Challenge restarted.")

            result = engine.get_latest_result()
            if result and result.frame is not None:
                if not args.headless:
                    annotated_frame, _ = hud.render(result.frame, result)
                    cv2.imshow(WINDOW_NAME, annotated_frame)
            else:
                time.sleep(0.005)

    except DetectorUnavailableError as e:
        print(f"[HEADTURN] Landmark detector unavailable: {e}")
        exit_code = 2
    except KeyboardInterrupt:
        print("\n[HEADTURN] Interrupted by user.")
    finally:
        print("[HEADTURN] Cleaning up...")
        if engine:
            engine.running = False

        if not args.headless:
            cv2.destroyAllWindows()
            cv2.waitKey(1)

        if engine:
            engine.stop()
            engine.audit.close()

        print("[HEADTURN] Shutdown complete.")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
