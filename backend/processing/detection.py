from dataclasses import dataclass
from typing import Protocol

import numpy as np


@dataclass(frozen=True)
class FaceBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    @property
    def area(self) -> float:
        return self.width * self.height

    def as_dict(self) -> dict:
        return {"x": int(self.x), "y": int(self.y), "width": int(self.width), "height": int(self.height)}


@dataclass
class DetectionSnapshot:
    """Latest single-face detection: box plus a (68, 2) landmark array in frame pixels."""
    box: FaceBox
    landmarks: np.ndarray
    frame_index: int = 0


class FaceAnalysis(Protocol):
    """Face-analysis capability the capture flow consumes."""

    def detect_all(self, frame: np.ndarray) -> list[FaceBox]: ...

    def detect_single(self, frame: np.ndarray, frame_index: int = 0) -> DetectionSnapshot | None: ...

    def descriptor(self, frame: np.ndarray, snapshot: DetectionSnapshot | None = None) -> np.ndarray | None: ...

    def expressions(self, frame: np.ndarray, box: FaceBox) -> dict[str, float]: ...
