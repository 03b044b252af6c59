import random

import numpy as np
import pytest

from errors import RecorderError
from processing.detection import DetectionSnapshot, FaceBox
from processing.orchestrator import RecordingOrchestrator
from recording.clips import VideoChunk
from recording.codecs import CODEC_PREFERENCES
from recording.recorder import RecorderState
from state.session import Direction, SegmentPlan, Session

WIDTH, HEIGHT = 640, 480
GUIDE_OUTER = min(WIDTH, HEIGHT) * 0.35
NEUTRAL_POSE = (0.0, 0.24)

POSES = {
    Direction.LEFT: {"near": (-0.15, 0.24), "hard": (-0.5, 0.24)},
    Direction.RIGHT: {"near": (0.15, 0.24), "hard": (0.5, 0.24)},
    Direction.DOWN: {"near": (0.0, 0.32), "hard": (0.0, 0.45)},
    Direction.UP: {"near": (0.0, 0.16), "hard": (0.0, 0.05)},
}


def make_landmarks(cx=WIDTH / 2, cy=HEIGHT / 2, yaw=0.0, pitch=0.24) -> np.ndarray:
    """68 points around (cx, cy); eyes, nose tip and chin placed so yaw/pitch come out as given."""
    pts = np.tile([cx, cy], (68, 1)).astype(np.float64)
    eye_y = cy - 40
    left = [(-40, 0), (-30, -5), (-20, -5), (-10, 0), (-20, 5), (-30, 5)]
    right = [(10, 0), (20, -5), (30, -5), (40, 0), (30, 5), (20, 5)]
    for i, (dx, dy) in enumerate(left):
        pts[36 + i] = (cx + dx, eye_y + dy)
    for i, (dx, dy) in enumerate(right):
        pts[42 + i] = (cx + dx, eye_y + dy)
    pts[8] = (cx, eye_y + 100)
    pts[30] = (cx + yaw * 80, eye_y + pitch * 100)
    return pts


def make_snapshot(fill=65.0, yaw=0.0, pitch=0.24, cx=WIDTH / 2, cy=HEIGHT / 2, frame_index=0):
    h = fill / 100 * GUIDE_OUTER * 2
    w = h * 0.9
    box = FaceBox(cx - w / 2, cy - h / 2, w, h)
    return DetectionSnapshot(box=box, landmarks=make_landmarks(cx, cy, yaw, pitch), frame_index=frame_index)


def striped_frame(low=80, high=160, width=WIDTH, height=HEIGHT) -> np.ndarray:
    """Evenly lit frame with enough structure to pass the blur check."""
    cols = (np.arange(width) // 40) % 2
    row = np.where(cols == 0, low, high).astype(np.uint8)
    return np.repeat(np.repeat(row[None, :, None], height, axis=0), 3, axis=2)


def uniform_frame(value, width=WIDTH, height=HEIGHT) -> np.ndarray:
    return np.full((height, width, 3), value, dtype=np.uint8)


class FakeRecorder:
    """Recorder stand-in that emits one synthetic chunk per interval of frame time."""

    instances: list["FakeRecorder"] = []

    def __init__(self, codec):
        self.codec = codec
        self.on_chunk = None
        self.on_stop = None
        self._state = RecorderState.INACTIVE
        self._interval = 1.0
        self._current = None
        self.calls = []
        FakeRecorder.instances.append(self)

    @property
    def state(self):
        return self._state

    def start(self, chunk_interval_ms=1000):
        if self._state != RecorderState.INACTIVE:
            raise RecorderError("already started")
        self._interval = chunk_interval_ms / 1000
        self._state = RecorderState.RECORDING
        self.calls.append("start")

    def pause(self):
        if self._state == RecorderState.RECORDING:
            self._state = RecorderState.PAUSED
            self.calls.append("pause")

    def resume(self):
        if self._state == RecorderState.PAUSED:
            self._state = RecorderState.RECORDING
            self.calls.append("resume")

    def stop(self):
        if self._state == RecorderState.INACTIVE:
            raise RecorderError("not started")
        self._flush()
        self._state = RecorderState.INACTIVE
        self.calls.append("stop")
        if self.on_stop is not None:
            self.on_stop()

    def write(self, frame, now):
        if self._state != RecorderState.RECORDING:
            return
        if self._current is None:
            self._current = VideoChunk(started_at=now, ended_at=now)
        self._current.frames.append(b"frame")
        self._current.ended_at = now
        if now - self._current.started_at >= self._interval:
            self._flush()

    def _flush(self):
        chunk, self._current = self._current, None
        if chunk is not None and chunk.frames and self.on_chunk is not None:
            self.on_chunk(chunk)


class FakeAnalyzer:
    """Scripted face analysis: one face at a configurable fill and head pose."""

    def __init__(self):
        self.face = True
        self.fill = 65.0
        self.pose = NEUTRAL_POSE
        self.center = (WIDTH / 2, HEIGHT / 2)
        self.extra_faces = 0
        self.descriptor_value = np.zeros(128)
        self.on_detect = None
        self.descriptor_calls = 0

    def detect_all(self, frame):
        if not self.face:
            return []
        snap = self._snapshot()
        return [snap.box] * (1 + self.extra_faces)

    def detect_single(self, frame, frame_index=0):
        if self.on_detect is not None:
            self.on_detect()
        if not self.face:
            return None
        return self._snapshot(frame_index)

    def descriptor(self, frame, snapshot=None):
        self.descriptor_calls += 1
        if not self.face:
            return None
        return self.descriptor_value.copy()

    def expressions(self, frame, box):
        return {"neutral": 0.9, "happy": 0.1}

    def _snapshot(self, frame_index=0):
        yaw, pitch = self.pose
        cx, cy = self.center
        return make_snapshot(self.fill, yaw, pitch, cx, cy, frame_index)


class Driver:
    """Feeds frames at a fixed rate with a manual clock."""

    def __init__(self, orchestrator, fps=10):
        self.orch = orchestrator
        self.dt = 1.0 / fps
        self.t = 0.0
        self.frame = striped_frame()

    def tick(self, frame=None):
        response = self.orch.step(self.frame if frame is None else frame, self.t)
        self.t = round(self.t + self.dt, 6)
        return response

    def run(self, seconds, frame=None):
        for _ in range(round(seconds / self.dt)):
            self.tick(frame)

    def until(self, predicate, max_seconds=120.0) -> bool:
        for _ in range(round(max_seconds / self.dt)):
            if predicate():
                return True
            self.tick()
        return predicate()


@pytest.fixture(autouse=True)
def _reset_fake_recorders():
    FakeRecorder.instances = []
    yield


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def codec():
    return CODEC_PREFERENCES[1]


@pytest.fixture
def orchestrator(analyzer, codec):
    orch = RecordingOrchestrator(
        analyzer,
        recorder_factory=FakeRecorder,
        codec=codec,
        rng=random.Random(3),
        quality_every=1,
        challenge_timeout=2.0,
    )
    orch.session = Session(total_seconds=10, plans=[SegmentPlan(1, 3), SegmentPlan(2, 4), SegmentPlan(3, 3)])
    return orch


@pytest.fixture
def driver(orchestrator):
    return Driver(orchestrator)
