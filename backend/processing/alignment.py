import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum

import numpy as np

from config import (
    GUIDE_RADIUS_RATIO, GUIDE_INNER_RATIO, GUIDE_CONTAINMENT_FACTOR,
    FILL_SMOOTHING_WINDOW, FILL_RANGE, STABLE_FRAMES_REQUIRED,
)
from processing.detection import DetectionSnapshot, FaceBox

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class GuideRegion:
    """Circular guide centred in the frame; `height` is the guide's diameter."""
    frame_width: int
    frame_height: int
    cx: float
    cy: float
    outer_radius: float
    inner_radius: float

    @classmethod
    def from_frame(cls, width: int, height: int) -> "GuideRegion":
        outer = min(width, height) * GUIDE_RADIUS_RATIO
        return cls(
            frame_width=width,
            frame_height=height,
            cx=width / 2,
            cy=height / 2,
            outer_radius=outer,
            inner_radius=outer * GUIDE_INNER_RATIO,
        )

    @property
    def height(self) -> float:
        return self.outer_radius * 2

    @property
    def containment_radius(self) -> float:
        return self.outer_radius * GUIDE_CONTAINMENT_FACTOR

    def matches(self, width: int, height: int) -> bool:
        return self.frame_width == width and self.frame_height == height

    def distances(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return np.hypot(pts[:, 0] - self.cx, pts[:, 1] - self.cy)

    def contains_all(self, points: np.ndarray, radius: float | None = None) -> bool:
        radius = self.containment_radius if radius is None else radius
        return bool(np.all(self.distances(points) <= radius))


def count_faces_in_guide(boxes: list[FaceBox], guide: GuideRegion) -> int:
    """Faces whose box centre falls within the containment radius."""
    if not boxes:
        return 0
    centers = np.array([b.center for b in boxes])
    return int(np.count_nonzero(guide.distances(centers) <= guide.containment_radius))


class DistanceHint(str, Enum):
    OK = "ok"
    MOVE_CLOSER = "move_closer"
    MOVE_BACK = "move_back"


@dataclass
class AlignmentVerdict:
    face_present: bool
    fill_percent: float = 0.0
    distance: DistanceHint = DistanceHint.OK
    inside_guide: bool = False
    stable_frames: int = 0
    stable: bool = False

    @property
    def aligned(self) -> bool:
        return self.face_present and self.inside_guide and self.distance == DistanceHint.OK


class AlignmentScorer:
    """Smoothed fill percentage plus landmark containment, debounced over consecutive frames."""

    def __init__(self, window: int = FILL_SMOOTHING_WINDOW, fill_range: tuple[float, float] = FILL_RANGE,
                 frames_required: int = STABLE_FRAMES_REQUIRED):
        self.fill_history: deque[float] = deque(maxlen=window)
        self.fill_range = fill_range
        self.frames_required = frames_required
        self.stable_frames = 0

    def reset(self):
        self.fill_history.clear()
        self.stable_frames = 0

    def update(self, snapshot: DetectionSnapshot | None, guide: GuideRegion) -> AlignmentVerdict:
        if snapshot is None:
            self.reset()
            return AlignmentVerdict(face_present=False)

        self.fill_history.append(snapshot.box.height / guide.height * 100.0)
        fill = sum(self.fill_history) / len(self.fill_history)

        low, high = self.fill_range
        if fill < low:
            distance = DistanceHint.MOVE_CLOSER
        elif fill > high:
            distance = DistanceHint.MOVE_BACK
        else:
            distance = DistanceHint.OK

        inside = guide.contains_all(snapshot.landmarks)
        verdict = AlignmentVerdict(
            face_present=True,
            fill_percent=fill,
            distance=distance,
            inside_guide=inside,
        )

        if verdict.aligned:
            self.stable_frames += 1
        else:
            self.stable_frames = 0
        verdict.stable_frames = self.stable_frames
        verdict.stable = self.stable_frames >= self.frames_required
        return verdict
