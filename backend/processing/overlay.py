from dataclasses import dataclass

import cv2
import numpy as np

from config import DARK_THRESHOLD, BRIGHT_THRESHOLD
from processing.alignment import GuideRegion
from state.session import Direction

WHITE = (255, 255, 255)
BLACK = (0, 0, 0)
GREEN = (74, 163, 22)
CUE_BLUE = (255, 191, 0)

# Degrees, clockwise from +x with y pointing down. The preview is mirrored,
# so a left turn is cued on the right-hand side.
CUE_ARCS = {
    Direction.LEFT: (-90, 90),
    Direction.RIGHT: (90, 270),
    Direction.DOWN: (0, 180),
    Direction.UP: (180, 360),
}


@dataclass
class OverlayView:
    brightness: float = 100.0
    recording: bool = False
    aligned: bool = False
    progress: float = 0.0
    cue: Direction | None = None
    cue_visible: bool = False
    instruction: str = ""


def _dashed_circle(img, center, radius, color, thickness, dash_deg=8, gap_deg=6):
    angle = 0
    while angle < 360:
        cv2.ellipse(img, center, (radius, radius), 0, angle, min(angle + dash_deg, 360), color, thickness, cv2.LINE_AA)
        angle += dash_deg + gap_deg


def draw_guide_overlay(frame: np.ndarray, guide: GuideRegion, view: OverlayView) -> np.ndarray:
    """Return a copy of `frame` with the guide, progress and challenge cue drawn on it."""
    out = frame.copy()
    center = (int(guide.cx), int(guide.cy))
    outer = int(guide.outer_radius)
    bigger = int(guide.containment_radius)

    # Background wash, with the containment circle left untouched.
    if view.brightness < DARK_THRESHOLD:
        wash, alpha = WHITE, 1.0
    elif view.brightness > BRIGHT_THRESHOLD:
        wash, alpha = BLACK, 1.0
    else:
        wash, alpha = BLACK, 0.6
    hole = np.zeros(out.shape[:2], dtype=np.uint8)
    cv2.circle(hole, center, bigger, 255, -1)
    outside = hole == 0
    out[outside] = (out[outside] * (1 - alpha) + np.array(wash) * alpha).astype(np.uint8)

    ring = GREEN if view.recording and view.aligned else WHITE
    cv2.circle(out, center, bigger, ring, 5, cv2.LINE_AA)
    _dashed_circle(out, center, outer, WHITE, 3)

    if view.recording and view.progress > 0:
        sweep = 360 * min(view.progress, 1.0)
        cv2.ellipse(out, center, (bigger + 4, bigger + 4), -90, 0, sweep, GREEN, 4, cv2.LINE_AA)

    if view.cue is not None and view.cue_visible:
        start, end = CUE_ARCS[view.cue]
        radius = bigger + 10
        cv2.ellipse(out, center, (radius, radius), 0, start, end, CUE_BLUE, 12, cv2.LINE_AA)

    if view.instruction:
        (tw, th), _ = cv2.getTextSize(view.instruction, cv2.FONT_HERSHEY_SIMPLEX, 0.6, 2)
        org = (max(int(guide.cx - tw / 2), 5), min(int(guide.cy + bigger + 30 + th), out.shape[0] - 5))
        cv2.putText(out, view.instruction, org, cv2.FONT_HERSHEY_SIMPLEX, 0.6, WHITE, 2, cv2.LINE_AA)
    return out
