from enum import Enum
from typing import Callable, Protocol

import cv2
import numpy as np

from errors import RecorderError
from recording.clips import VideoChunk
from recording.codecs import CodecProfile


class RecorderState(str, Enum):
    INACTIVE = "inactive"
    RECORDING = "recording"
    PAUSED = "paused"


ChunkCallback = Callable[[VideoChunk], None]
StopCallback = Callable[[], None]


class Recorder(Protocol):
    """Start/pause/resume/stop recording capability with a chunk sink.

    `write` is how frames reach the recorder; a real media pipeline would
    pull them from the camera track instead.
    """
    codec: CodecProfile
    on_chunk: ChunkCallback | None
    on_stop: StopCallback | None

    @property
    def state(self) -> RecorderState: ...

    def start(self, chunk_interval_ms: int) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def stop(self) -> None: ...

    def write(self, frame: np.ndarray, now: float) -> None: ...


RecorderFactory = Callable[[CodecProfile], Recorder]


class FrameRecorder:
    """Recorder that JPEG-encodes frames and emits them in fixed-interval chunks."""

    def __init__(self, codec: CodecProfile, jpeg_quality: int = 85):
        self.codec = codec
        self.jpeg_quality = jpeg_quality
        self.on_chunk: ChunkCallback | None = None
        self.on_stop: StopCallback | None = None
        self._state = RecorderState.INACTIVE
        self._interval = 1.0
        self._current: VideoChunk | None = None

    @property
    def state(self) -> RecorderState:
        return self._state

    def start(self, chunk_interval_ms: int = 1000):
        if self._state != RecorderState.INACTIVE:
            raise RecorderError(f"start() called while {self._state.value}")
        self._interval = chunk_interval_ms / 1000.0
        self._current = None
        self._state = RecorderState.RECORDING

    def pause(self):
        if self._state == RecorderState.RECORDING:
            self._state = RecorderState.PAUSED

    def resume(self):
        if self._state == RecorderState.PAUSED:
            self._state = RecorderState.RECORDING

    def stop(self):
        if self._state == RecorderState.INACTIVE:
            raise RecorderError("stop() called on an inactive recorder")
        self._flush()
        self._state = RecorderState.INACTIVE
        if self.on_stop is not None:
            self.on_stop()

    def write(self, frame: np.ndarray, now: float):
        if self._state != RecorderState.RECORDING:
            return
        ok, buf = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not ok:
            return
        if self._current is None:
            self._current = VideoChunk(started_at=now, ended_at=now)
        self._current.frames.append(buf.tobytes())
        self._current.ended_at = now
        if now - self._current.started_at >= self._interval:
            self._flush()

    def _flush(self):
        chunk, self._current = self._current, None
        if chunk is not None and chunk.frames and self.on_chunk is not None:
            self.on_chunk(chunk)


def frame_recorder_factory(codec: CodecProfile) -> FrameRecorder:
    return FrameRecorder(codec)
