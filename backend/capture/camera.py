import logging
import os

import cv2

from config import (
    CAMERA_INDEX, CAMERA_WIDTH, CAMERA_HEIGHT, CAMERA_FPS,
    MIN_CAMERA_WIDTH, MIN_CAMERA_HEIGHT, MIN_CAMERA_FPS,
)
from errors import CameraError, CameraFailure

logger = logging.getLogger("uvicorn.error")


def classify_failure(index: int, device_path: str | None = None) -> CameraFailure:
    """Guess why a camera could not be opened from the state of its device node."""
    path = device_path or f"/dev/video{index}"
    if not os.path.exists(path):
        return CameraFailure.NO_DEVICE
    if not os.access(path, os.R_OK):
        return CameraFailure.PERMISSION_DENIED
    return CameraFailure.UNKNOWN


def camera_warnings(width: int, height: int, fps: float) -> list[str]:
    warnings = []
    if width < MIN_CAMERA_WIDTH or height < MIN_CAMERA_HEIGHT:
        warnings.append("Low camera resolution. Face detection may not work properly.")
    if 0 < fps < MIN_CAMERA_FPS:
        warnings.append("Low camera frame rate. Recording may look choppy.")
    return warnings


class Camera:
    """Exclusively owned video source; video only, released on exit."""

    def __init__(self, index: int = CAMERA_INDEX, width: int = CAMERA_WIDTH,
                 height: int = CAMERA_HEIGHT, fps: int = CAMERA_FPS):
        self.index = index
        self.width = width
        self.height = height
        self.fps = min(fps, 30)
        self.cap: cv2.VideoCapture | None = None
        self.warnings: list[str] = []

    def open(self) -> "Camera":
        cap = cv2.VideoCapture(self.index)
        if not cap.isOpened():
            cap.release()
            reason = classify_failure(self.index)
            raise CameraError(reason, f"could not open camera {self.index}")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        cap.set(cv2.CAP_PROP_FPS, self.fps)
        self.cap = cap

        w = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        h = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        fps = cap.get(cv2.CAP_PROP_FPS)
        logger.info(f"[Camera] opened index {self.index}: {w}x{h} @ {fps:.0f}fps")
        self.warnings = camera_warnings(w, h, fps)
        for warning in self.warnings:
            logger.warning(f"[Camera] {warning}")
        return self

    def read(self):
        if self.cap is None:
            raise CameraError(CameraFailure.UNKNOWN, "camera is not open")
        ok, frame = self.cap.read()
        if not ok:
            raise CameraError(CameraFailure.UNKNOWN, "camera stopped delivering frames")
        return frame

    def release(self):
        if self.cap is not None:
            self.cap.release()
            self.cap = None
            logger.info(f"[Camera] released index {self.index}")

    def __enter__(self) -> "Camera":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.release()
