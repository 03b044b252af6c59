import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Callable

import cv2

from errors import UnsupportedCodecError

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class CodecProfile:
    mime_type: str
    fourcc: str
    extension: str
    bitrate: int | None = None


# Preference order: VP9-in-WebM, WebM with its default codec, MP4 with an explicit bitrate.
CODEC_PREFERENCES = [
    CodecProfile("video/webm;codecs=vp9", "VP90", "webm"),
    CodecProfile("video/webm", "VP80", "webm"),
    CodecProfile("video/mp4", "mp4v", "mp4", bitrate=100000),
]


def opencv_supports(profile: CodecProfile) -> bool:
    """Probe the local OpenCV build by opening a throwaway writer for the profile."""
    fd, path = tempfile.mkstemp(suffix=f".{profile.extension}")
    os.close(fd)
    try:
        writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*profile.fourcc), 30.0, (64, 48))
        ok = writer.isOpened()
        writer.release()
        return ok
    finally:
        os.remove(path)


def select_codec(supports: Callable[[CodecProfile], bool] = opencv_supports,
                 preferences: list[CodecProfile] = CODEC_PREFERENCES) -> CodecProfile:
    for profile in preferences:
        if supports(profile):
            logger.info(f"[Recorder] codec selected: {profile.mime_type} ({profile.fourcc})")
            return profile
    raise UnsupportedCodecError("No supported video codec found for recording")
