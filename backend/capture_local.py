"""Run a capture session against the local camera with an OpenCV preview window.

Usage: python capture_local.py [--camera 0] [--out captures] [--upload]
"""
import argparse
import asyncio
import logging
import time

import cv2

from capture.camera import Camera
from config import CAMERA_INDEX, LOG_LEVEL, OUTPUT_DIR, UPLOAD_URL
from delivery.upload import ClipUploader, upload_items
from errors import CameraError, ModelLoadError, RecorderError, UploadError
from models.loader import load_all_models
from processing.face_analysis import FaceAnalyzer
from processing.orchestrator import RecordingOrchestrator
from processing.overlay import draw_guide_overlay
from recording.artifacts import export_artifacts
from schemas.messages import CompletionEvent, MessageEvent, SessionResetEvent
from state.session_log import SessionLogBuffer

logger = logging.getLogger("uvicorn.error")


def main():
    parser = argparse.ArgumentParser(description="Segmented identity-verification capture")
    parser.add_argument("--camera", type=int, default=CAMERA_INDEX)
    parser.add_argument("--out", default=str(OUTPUT_DIR))
    parser.add_argument("--upload", action="store_true", help=f"upload clips to {UPLOAD_URL}")
    args = parser.parse_args()

    logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s: %(message)s")

    try:
        registry = load_all_models()
    except ModelLoadError as e:
        logger.error(f"Cannot start: {e}")
        return 1

    analyzer = FaceAnalyzer(registry)
    orchestrator = RecordingOrchestrator(analyzer, log_buffer=SessionLogBuffer(LOG_LEVEL))
    completion = None
    try:
        with Camera(args.camera) as camera:
            if not orchestrator.start():
                completion = next((e for e in orchestrator.drain_events() if isinstance(e, CompletionEvent)), None)
            while completion is None:
                frame = camera.read()
                orchestrator.step(frame, time.monotonic())
                for event in orchestrator.drain_events():
                    if isinstance(event, MessageEvent) and event.text:
                        print(f"[{event.slot}] {event.text}")
                    elif isinstance(event, SessionResetEvent):
                        print(f"Session reset ({event.reason}), attempt {event.reset_count + 1}")
                    elif isinstance(event, CompletionEvent):
                        completion = event

                preview = cv2.flip(frame, 1)
                if orchestrator.guide is not None:
                    preview = draw_guide_overlay(preview, orchestrator.guide, orchestrator.overlay_view())
                cv2.imshow("capture", preview)
                if cv2.waitKey(1) & 0xFF == ord("q"):
                    break
    except CameraError as e:
        logger.error(f"Camera error: {e}")
        print(e.user_message)
        return 1
    finally:
        orchestrator.teardown()
        analyzer.close()
        cv2.destroyAllWindows()

    if completion is None:
        print("Capture abandoned.")
        return 1
    if not completion.success:
        print(f"Capture failed: {completion.reason}")
        return 1

    try:
        paths = export_artifacts(orchestrator.result, args.out)
    except RecorderError as e:
        logger.error(f"Could not write the clips: {e}")
        return 1
    print(f"Wrote {len(paths)} files to {args.out}")
    if args.upload:
        uploader = ClipUploader(UPLOAD_URL)
        try:
            asyncio.run(uploader.upload_all(orchestrator.result.session_id, upload_items(orchestrator.result)))
        except UploadError as e:
            print(f"{e} (run again with --upload to retry)")
            return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
