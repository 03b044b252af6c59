import logging
import math
from dataclasses import dataclass
from enum import Enum

import cv2
import numpy as np

from config import (
    QUALITY_SAMPLE_WIDTH, DARK_THRESHOLD, BRIGHT_THRESHOLD, BLUR_VARIANCE_MIN,
    BLANK_PIXEL_THRESHOLD, BLANK_RATIO_MAX, GLARE_LUMA_THRESHOLD,
    GLARE_AREA_RANGE, GLARE_RADIUS_RANGE, GLARE_CIRCULARITY_RANGE,
)
from processing.alignment import GuideRegion

logger = logging.getLogger("uvicorn.error")

# BGR order
LUMA_WEIGHTS = np.array([0.0722, 0.7152, 0.2126], dtype=np.float32)


class QualityIssue(str, Enum):
    BLANK = "blank"
    GLARE = "glare"
    TOO_DARK = "too_dark"
    TOO_BRIGHT = "too_bright"
    BLURRED = "blurred"
    MULTIPLE_FACES = "multiple_faces"


# issue -> (message slot, user text)
QUALITY_MESSAGES = {
    QualityIssue.BLANK: ("camera_error", "Camera feed appears blank. Check your camera or refresh the page."),
    QualityIssue.GLARE: ("brightness", "Bright spot detected in the oval. Please adjust lighting or avoid reflections."),
    QualityIssue.TOO_DARK: ("brightness", "Too dark, please move to a brighter place."),
    QualityIssue.TOO_BRIGHT: ("brightness", "Too bright, reduce lighting."),
    QualityIssue.BLURRED: ("guide_alignment", "Video is blurry. Clean your camera lens or adjust focus."),
    QualityIssue.MULTIPLE_FACES: ("verification", "Multiple faces detected inside the guide. Please ensure only one face is visible."),
}


@dataclass
class QualityVerdict:
    issue: QualityIssue | None
    brightness: float
    variance: float = 0.0

    @property
    def ok(self) -> bool:
        return self.issue is None


def sample_frame(frame_bgr: np.ndarray, width: int = QUALITY_SAMPLE_WIDTH) -> np.ndarray:
    h, w = frame_bgr.shape[:2]
    if w <= width:
        return frame_bgr
    height = max(1, round(h * width / w))
    return cv2.resize(frame_bgr, (width, height), interpolation=cv2.INTER_AREA)


def luma(frame_bgr: np.ndarray) -> np.ndarray:
    return frame_bgr.astype(np.float32) @ LUMA_WEIGHTS


def is_blank(frame_bgr: np.ndarray, threshold: int = BLANK_PIXEL_THRESHOLD,
             max_ratio: float = BLANK_RATIO_MAX) -> bool:
    """True when nearly every pixel is black in all three channels."""
    black = np.all(frame_bgr < threshold, axis=2)
    return float(black.mean()) > max_ratio


def detect_glare(frame_bgr: np.ndarray, center: tuple[float, float], radius: float) -> bool:
    """Look for a compact, roughly round highlight inside the guide's inner circle."""
    gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
    _, thresh = cv2.threshold(gray, GLARE_LUMA_THRESHOLD, 255, cv2.THRESH_BINARY)

    cx, cy = int(center[0]), int(center[1])
    mask = np.zeros_like(gray)
    cv2.circle(mask, (cx, cy), max(int(radius), 1), 255, -1)
    masked = cv2.bitwise_and(thresh, mask)

    contours, _ = cv2.findContours(masked, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    min_area, max_area = GLARE_AREA_RANGE
    min_r, max_r = GLARE_RADIUS_RANGE
    min_c, max_c = GLARE_CIRCULARITY_RANGE
    for contour in contours:
        area = cv2.contourArea(contour)
        if area < min_area or area > max_area:
            continue
        (sx, sy), r = cv2.minEnclosingCircle(contour)
        if math.hypot(sx - cx, sy - cy) > radius:
            continue
        if r < min_r or r > max_r:
            continue
        perimeter = cv2.arcLength(contour, True)
        if perimeter == 0:
            continue
        circularity = 4 * math.pi * area / (perimeter * perimeter)
        if min_c <= circularity <= max_c:
            logger.debug(f"[Quality] glare spot area={area:.0f} radius={r:.1f} circularity={circularity:.2f}")
            return True
    return False


class QualityGate:
    def __init__(self, dark: float = DARK_THRESHOLD, bright: float = BRIGHT_THRESHOLD,
                 blur_min: float = BLUR_VARIANCE_MIN, sample_width: int = QUALITY_SAMPLE_WIDTH):
        self.dark = dark
        self.bright = bright
        self.blur_min = blur_min
        self.sample_width = sample_width
        self.last: QualityVerdict | None = None

    def check(self, frame_bgr: np.ndarray, guide: GuideRegion, faces_in_guide: int = 1) -> QualityVerdict:
        """First failing check wins: blank, glare, dark/bright, blur, then multiple faces."""
        sample = sample_frame(frame_bgr, self.sample_width)
        y = luma(sample)
        brightness = float(y.mean())
        variance = float(y.var())

        if is_blank(sample):
            issue = QualityIssue.BLANK
        elif detect_glare(frame_bgr, (guide.cx, guide.cy), guide.inner_radius):
            issue = QualityIssue.GLARE
        elif brightness < self.dark:
            issue = QualityIssue.TOO_DARK
        elif brightness > self.bright:
            issue = QualityIssue.TOO_BRIGHT
        elif variance < self.blur_min:
            issue = QualityIssue.BLURRED
        elif faces_in_guide > 1:
            issue = QualityIssue.MULTIPLE_FACES
        else:
            issue = None

        verdict = QualityVerdict(issue=issue, brightness=brightness, variance=variance)
        if issue is not None and (self.last is None or self.last.issue != issue):
            logger.info(f"[Quality] {issue.value} (brightness={brightness:.1f}, variance={variance:.1f})")
        self.last = verdict
        return verdict
