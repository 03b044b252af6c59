import os
import tempfile
from dataclasses import dataclass, field

import cv2
import numpy as np

from config import CAMERA_FPS
from errors import RecorderError
from recording.codecs import CodecProfile


@dataclass
class VideoChunk:
    """One chunk interval worth of JPEG-encoded frames."""
    frames: list[bytes] = field(default_factory=list)
    started_at: float = 0.0
    ended_at: float = 0.0

    @property
    def size(self) -> int:
        return sum(len(f) for f in self.frames)

    @property
    def frame_count(self) -> int:
        return len(self.frames)


@dataclass
class Clip:
    chunks: list[VideoChunk]
    codec: CodecProfile

    @property
    def frame_count(self) -> int:
        return sum(c.frame_count for c in self.chunks)

    @property
    def duration(self) -> float:
        if not self.chunks:
            return 0.0
        return max(self.chunks[-1].ended_at - self.chunks[0].started_at, 0.0)

    @property
    def fps(self) -> float:
        if self.duration <= 0 or self.frame_count < 2:
            return float(CAMERA_FPS)
        return min(self.frame_count / self.duration, float(CAMERA_FPS))

    def frames(self):
        for chunk in self.chunks:
            for jpeg in chunk.frames:
                frame = cv2.imdecode(np.frombuffer(jpeg, np.uint8), cv2.IMREAD_COLOR)
                if frame is not None:
                    yield frame

    def encode(self) -> bytes:
        """Mux the clip into the codec's container and return the file bytes."""
        frames = self.frames()
        first = next(frames, None)
        if first is None:
            return b""
        h, w = first.shape[:2]
        fd, path = tempfile.mkstemp(suffix=f".{self.codec.extension}")
        os.close(fd)
        writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*self.codec.fourcc), self.fps, (w, h))
        if not writer.isOpened():
            writer.release()
            os.remove(path)
            raise RecorderError(f"cannot open a {self.codec.mime_type} writer for {w}x{h}")
        try:
            if self.codec.bitrate is not None and hasattr(cv2, "VIDEOWRITER_PROP_BITRATE"):
                writer.set(cv2.VIDEOWRITER_PROP_BITRATE, self.codec.bitrate)
            writer.write(first)
            for frame in frames:
                if frame.shape[:2] != (h, w):
                    frame = cv2.resize(frame, (w, h))
                writer.write(frame)
        finally:
            writer.release()
        try:
            with open(path, "rb") as f:
                return f.read()
        finally:
            os.remove(path)


@dataclass
class SegmentClip:
    clip: Clip
    start_seconds: int
    end_seconds: int

    @property
    def duration(self) -> int:
        return self.end_seconds - self.start_seconds


class PartialClip(SegmentClip):
    """Fragment kept from an interrupted attempt."""
