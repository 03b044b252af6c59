import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np
from scipy.spatial import distance

from config import DESCRIPTOR_DISTANCE_MAX, MISMATCH_ESCALATION

logger = logging.getLogger("uvicorn.error")


class FaceCheck(str, Enum):
    NO_REFERENCE = "no_reference"
    NO_FACE = "no_face"
    MATCH = "match"
    MISMATCH = "mismatch"
    ESCALATED = "escalated"


@dataclass
class FaceCheckResult:
    status: FaceCheck
    distance: float | None = None
    mismatches: int = 0


class FaceConsistencyMonitor:
    """Tracks consecutive descriptor mismatches against the reference face."""

    def __init__(self, max_distance: float = DESCRIPTOR_DISTANCE_MAX, escalation: int = MISMATCH_ESCALATION):
        self.max_distance = max_distance
        self.escalation = escalation
        self.reference: np.ndarray | None = None
        self.mismatches = 0

    def set_reference(self, descriptor: np.ndarray):
        self.reference = np.asarray(descriptor, dtype=np.float64)
        self.mismatches = 0

    def reset(self):
        self.reference = None
        self.mismatches = 0

    def compare(self, descriptor: np.ndarray | None) -> FaceCheckResult:
        if self.reference is None:
            logger.info("[FaceCheck] No reference descriptor; skipping check.")
            return FaceCheckResult(FaceCheck.NO_REFERENCE)
        if descriptor is None:
            # A missed detection is not evidence of a different person.
            logger.warning(f"[FaceCheck] No face detected, counter stays at {self.mismatches}")
            return FaceCheckResult(FaceCheck.NO_FACE, mismatches=self.mismatches)

        d = float(distance.euclidean(self.reference, np.asarray(descriptor, dtype=np.float64)))
        logger.info(f"[FaceCheck] distance={d:.3f}, counter={self.mismatches}")

        if d <= self.max_distance:
            if self.mismatches > 0:
                logger.info("[FaceCheck] Face match restored, counter reset.")
            self.mismatches = 0
            return FaceCheckResult(FaceCheck.MATCH, d, 0)

        self.mismatches += 1
        logger.warning(f"[FaceCheck] Mismatch counter incremented: {self.mismatches}")
        if self.mismatches >= self.escalation:
            logger.error(f"[FaceCheck] Different face detected consistently for {self.mismatches} checks")
            count, self.mismatches = self.mismatches, 0
            return FaceCheckResult(FaceCheck.ESCALATED, d, count)
        return FaceCheckResult(FaceCheck.MISMATCH, d, self.mismatches)
