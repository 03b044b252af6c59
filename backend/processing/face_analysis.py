import logging

import cv2
import dlib
import numpy as np
import mediapipe as mp
import torch
from PIL import Image

from config import EXPRESSION_LABELS, FACE_DETECTOR_PATH
from models.registry import ModelRegistry
from processing.detection import DetectionSnapshot, FaceBox

logger = logging.getLogger("uvicorn.error")


def create_face_detector():
    """Create a new MediaPipe FaceDetector in IMAGE mode (thread-safe, per-session)."""
    BaseOptions = mp.tasks.BaseOptions
    FaceDetector = mp.tasks.vision.FaceDetector
    FaceDetectorOptions = mp.tasks.vision.FaceDetectorOptions
    VisionRunningMode = mp.tasks.vision.RunningMode

    options = FaceDetectorOptions(
        base_options=BaseOptions(model_asset_path=str(FACE_DETECTOR_PATH)),
        running_mode=VisionRunningMode.IMAGE,
        min_detection_confidence=0.5,
    )
    return FaceDetector.create_from_options(options)


def _to_rect(box: FaceBox) -> dlib.rectangle:
    return dlib.rectangle(int(box.x), int(box.y), int(box.x + box.width), int(box.y + box.height))


def _shape_to_array(shape) -> np.ndarray:
    return np.array([(shape.part(i).x, shape.part(i).y) for i in range(shape.num_parts)], dtype=np.float64)


class FaceAnalyzer:
    """Binds the face-analysis capability set to MediaPipe, dlib and the expression model."""

    def __init__(self, registry: ModelRegistry, detector=None):
        self.registry = registry
        self.detector = detector if detector is not None else create_face_detector()

    def close(self):
        if self.detector is not None:
            self.detector.close()
            self.detector = None

    def detect_all(self, frame_bgr: np.ndarray) -> list[FaceBox]:
        frame_rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=frame_rgb)
        result = self.detector.detect(mp_image)
        return [
            FaceBox(d.bounding_box.origin_x, d.bounding_box.origin_y,
                    d.bounding_box.width, d.bounding_box.height)
            for d in result.detections
        ]

    def detect_single(self, frame_bgr: np.ndarray, frame_index: int = 0) -> DetectionSnapshot | None:
        """Largest dlib face with its 68 landmarks, or None."""
        frame_rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        rects = self.registry.face_detector(frame_rgb, 0)
        if len(rects) == 0:
            return None
        rect = max(rects, key=lambda r: r.width() * r.height())
        shape = self.registry.shape_predictor(frame_rgb, rect)
        box = FaceBox(rect.left(), rect.top(), rect.width(), rect.height())
        return DetectionSnapshot(box=box, landmarks=_shape_to_array(shape), frame_index=frame_index)

    def descriptor(self, frame_bgr: np.ndarray, snapshot: DetectionSnapshot | None = None) -> np.ndarray | None:
        """128-d dlib descriptor for the given (or freshly detected) face."""
        frame_rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        if snapshot is None:
            snapshot = self.detect_single(frame_bgr)
            if snapshot is None:
                return None
        shape = self.registry.shape_predictor(frame_rgb, _to_rect(snapshot.box))
        descriptor = self.registry.face_encoder.compute_face_descriptor(frame_rgb, shape)
        return np.array(descriptor, dtype=np.float64)

    def expressions(self, frame_bgr: np.ndarray, box: FaceBox) -> dict[str, float]:
        """Softmax scores of the expression classifier for the face inside `box`, keyed by label."""
        h, w = frame_bgr.shape[:2]
        x0, y0 = max(0, int(box.x)), max(0, int(box.y))
        x1, y1 = min(w, int(box.x + box.width)), min(h, int(box.y + box.height))
        if x1 <= x0 or y1 <= y0:
            return {}
        crop = Image.fromarray(cv2.cvtColor(frame_bgr[y0:y1, x0:x1], cv2.COLOR_BGR2RGB))
        batch = self.registry.expression_transform(crop).unsqueeze(0).to(self.registry.device)
        with torch.no_grad():
            scores = torch.softmax(self.registry.expression_model(batch), dim=1)[0].cpu()
        return dict(zip(EXPRESSION_LABELS, scores.tolist()))
