import logging
import math
import random
from dataclasses import dataclass
from enum import Enum

import numpy as np

from config import (
    CHALLENGE_TIMEOUT, CHALLENGE_CLIP_CHUNKS, CHUNK_INTERVAL_MS,
    YAW_HARD, YAW_NEAR_RATIO,
    PITCH_DOWN_HARD, PITCH_DOWN_NEAR, PITCH_UP_HARD, PITCH_UP_NEAR,
)
from errors import RecorderError
from processing.alignment import GuideRegion
from processing.detection import DetectionSnapshot
from recording.clips import Clip, VideoChunk
from recording.codecs import CodecProfile
from recording.recorder import Recorder, RecorderFactory, RecorderState
from state.session import Direction

logger = logging.getLogger("uvicorn.error")

# 68-point indices
LEFT_EYE = slice(36, 42)
RIGHT_EYE = slice(42, 48)
NOSE_TIP = 30
CHIN = 8

DIRECTION_PROMPTS = {
    Direction.LEFT: "Please turn your head LEFT",
    Direction.RIGHT: "Please turn your head RIGHT",
    Direction.UP: "Please tilt your head UP",
    Direction.DOWN: "Please tilt your head DOWN",
}


def yaw_from_landmarks(landmarks: np.ndarray) -> float:
    """Horizontal nose offset from the outer-eye midpoint, in inter-eye distances."""
    left_outer = landmarks[LEFT_EYE][0]
    right_outer = landmarks[RIGHT_EYE][3]
    eye_dist = max(1.0, float(right_outer[0] - left_outer[0]))
    eye_mid_x = (left_outer[0] + right_outer[0]) / 2
    return float(landmarks[NOSE_TIP][0] - eye_mid_x) / eye_dist


def pitch_from_landmarks(landmarks: np.ndarray) -> float:
    """Nose height between the eye line (0) and the chin (1)."""
    left, right = landmarks[LEFT_EYE], landmarks[RIGHT_EYE]
    left_y = (left[1][1] + left[5][1]) / 2
    right_y = (right[1][1] + right[5][1]) / 2
    eye_mid_y = (left_y + right_y) / 2
    face_height = max(1.0, float(landmarks[CHIN][1] - eye_mid_y))
    return float(landmarks[NOSE_TIP][1] - eye_mid_y) / face_height


@dataclass(frozen=True)
class Thresholds:
    axis: str
    near: float
    hard: float
    # +1: value must rise above the thresholds, -1: fall below them
    sign: int

    def measure(self, landmarks: np.ndarray) -> float:
        if self.axis == "yaw":
            return yaw_from_landmarks(landmarks)
        return pitch_from_landmarks(landmarks)

    def past_near(self, value: float) -> bool:
        return value * self.sign > self.near * self.sign

    def past_hard(self, value: float) -> bool:
        return value * self.sign > self.hard * self.sign


THRESHOLDS = {
    Direction.LEFT: Thresholds("yaw", -YAW_HARD * YAW_NEAR_RATIO, -YAW_HARD, -1),
    Direction.RIGHT: Thresholds("yaw", YAW_HARD * YAW_NEAR_RATIO, YAW_HARD, 1),
    Direction.DOWN: Thresholds("pitch", PITCH_DOWN_NEAR, PITCH_DOWN_HARD, 1),
    Direction.UP: Thresholds("pitch", PITCH_UP_NEAR, PITCH_UP_HARD, -1),
}


def choose_direction(used: list[Direction], fallback_exclude: list[Direction] | None = None,
                     rng: random.Random | None = None) -> Direction:
    """Random direction not used yet this session.

    Once all four have been used, only `fallback_exclude` (the directions
    last shown for other segments) is avoided.
    """
    rng = rng or random
    candidates = [d for d in Direction if d not in used]
    if not candidates:
        candidates = [d for d in Direction if d not in (fallback_exclude or [])] or list(Direction)
    return rng.choice(candidates)


class ChallengeSignal(str, Enum):
    WAITING = "waiting"
    NEAR_STARTED = "near_started"
    NEAR_LOST = "near_lost"
    OUTSIDE_GUIDE = "outside_guide"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"


class ChallengeAttempt:
    """One timed head-turn attempt, polled at a fixed short interval."""

    def __init__(self, direction: Direction, started_at: float, timeout: float = CHALLENGE_TIMEOUT):
        self.direction = direction
        self.thresholds = THRESHOLDS[direction]
        self.started_at = started_at
        self.timeout = timeout
        self.near_active = False
        self.done = False
        self.success = False
        self.last_value: float | None = None

    def remaining(self, now: float) -> float:
        return max(self.timeout - (now - self.started_at), 0.0)

    def poll(self, snapshot: DetectionSnapshot | None, guide: GuideRegion, now: float) -> ChallengeSignal:
        if self.done:
            return ChallengeSignal.CONFIRMED if self.success else ChallengeSignal.TIMED_OUT
        if now - self.started_at >= self.timeout:
            self.done = True
            self.near_active = False
            logger.error(f"[Challenge] TIMEOUT. Direction: {self.direction.value} not verified in time.")
            return ChallengeSignal.TIMED_OUT
        if snapshot is None:
            return ChallengeSignal.WAITING

        cx, cy = snapshot.box.center
        if math.hypot(cx - guide.cx, cy - guide.cy) > guide.outer_radius:
            if self.near_active:
                self.near_active = False
                logger.info("[Challenge] User moved outside the guide, dropping the motion clip.")
                return ChallengeSignal.OUTSIDE_GUIDE
            return ChallengeSignal.WAITING

        value = self.thresholds.measure(snapshot.landmarks)
        self.last_value = value
        logger.debug(f"[Challenge] {self.thresholds.axis}={value:.3f}")

        if self.thresholds.past_hard(value):
            self.done = True
            self.success = True
            self.near_active = False
            logger.info(f"[Challenge] VERIFIED direction {self.direction.value.upper()}, "
                        f"{self.thresholds.axis}={value:.3f}")
            return ChallengeSignal.CONFIRMED

        near = self.thresholds.past_near(value)
        if near and not self.near_active:
            self.near_active = True
            logger.info(f"[Challenge] Started recording (near {self.direction.value} threshold).")
            return ChallengeSignal.NEAR_STARTED
        if not near and self.near_active:
            self.near_active = False
            logger.info(f"[Challenge] Stopped recording (back inside near {self.direction.value} threshold).")
            return ChallengeSignal.NEAR_LOST
        return ChallengeSignal.WAITING


class ChallengeClipRecorder:
    """Short dedicated recording of the head motion; keeps only the trailing chunks."""

    def __init__(self, recorder_factory: RecorderFactory, codec: CodecProfile,
                 keep_chunks: int = CHALLENGE_CLIP_CHUNKS, chunk_interval_ms: int = CHUNK_INTERVAL_MS):
        self.recorder_factory = recorder_factory
        self.codec = codec
        self.keep_chunks = keep_chunks
        self.chunk_interval_ms = chunk_interval_ms
        self.recorder: Recorder | None = None
        self.chunks: list[VideoChunk] = []

    @property
    def recording(self) -> bool:
        return self.recorder is not None and self.recorder.state != RecorderState.INACTIVE

    def start(self):
        if self.recording:
            return
        self.chunks = []
        recorder = self.recorder_factory(self.codec)
        recorder.on_chunk = self.chunks.append
        recorder.on_stop = None
        recorder.start(self.chunk_interval_ms)
        self.recorder = recorder

    def write(self, frame, now: float):
        if self.recording:
            self.recorder.write(frame, now)

    def _stop(self):
        recorder, self.recorder = self.recorder, None
        if recorder is not None and recorder.state != RecorderState.INACTIVE:
            try:
                recorder.stop()
            except RecorderError as e:
                logger.error(f"[Challenge] clip recorder stop failed: {e}")

    def abort(self):
        self._stop()
        self.chunks = []

    def finish(self) -> Clip | None:
        self._stop()
        kept, self.chunks = self.chunks[-self.keep_chunks:], []
        if not kept:
            return None
        return Clip(kept, self.codec)


class ChallengeEngine:
    """Runs attempts and their motion clips; the caller counts attempts."""

    def __init__(self, recorder_factory: RecorderFactory, codec: CodecProfile,
                 timeout: float = CHALLENGE_TIMEOUT):
        self.clip_recorder = ChallengeClipRecorder(recorder_factory, codec)
        self.timeout = timeout
        self.attempt: ChallengeAttempt | None = None
        self.last_clip: Clip | None = None

    @property
    def active(self) -> bool:
        return self.attempt is not None and not self.attempt.done

    def begin(self, direction: Direction, now: float) -> ChallengeAttempt:
        self.clip_recorder.abort()
        self.last_clip = None
        self.attempt = ChallengeAttempt(direction, now, self.timeout)
        logger.info(f"[Challenge] Started. Direction: {direction.value}, timeout={self.timeout:.0f}s")
        return self.attempt

    def write(self, frame, now: float):
        self.clip_recorder.write(frame, now)

    def poll(self, snapshot: DetectionSnapshot | None, guide: GuideRegion, now: float) -> ChallengeSignal:
        if self.attempt is None:
            return ChallengeSignal.WAITING
        signal = self.attempt.poll(snapshot, guide, now)
        if signal == ChallengeSignal.NEAR_STARTED:
            self.clip_recorder.start()
        elif signal in (ChallengeSignal.NEAR_LOST, ChallengeSignal.OUTSIDE_GUIDE):
            self.clip_recorder.abort()
        elif signal in (ChallengeSignal.CONFIRMED, ChallengeSignal.TIMED_OUT):
            clip = self.clip_recorder.finish()
            if clip is not None:
                self.last_clip = clip
        return signal

    def cancel(self):
        self.clip_recorder.abort()
        self.attempt = None
