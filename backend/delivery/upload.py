import asyncio
import logging

import requests

from config import UPLOAD_URL, UPLOAD_TIMEOUT
from errors import UploadError
from recording.artifacts import CaptureResult, collect_artifacts
from recording.clips import Clip

logger = logging.getLogger("uvicorn.error")


def upload_items(result: CaptureResult) -> list[tuple[int, Clip]]:
    """Completed segments as 1..n, the confirming head-turn clip as 0."""
    return [(a.upload_index, a.clip) for a in collect_artifacts(result) if a.upload_index is not None]


class ClipUploader:
    """Posts clips as multipart form data. Never retries on its own; callers decide."""

    def __init__(self, url: str = UPLOAD_URL, timeout: float = UPLOAD_TIMEOUT,
                 session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self.http = session or requests.Session()

    def upload_one(self, session_id: str, index: int, clip: Clip | bytes, mime_type: str = "video/webm"):
        if isinstance(clip, Clip):
            mime_type = clip.codec.mime_type.split(";")[0]
            extension = clip.codec.extension
            data = clip.encode()
        else:
            extension = "webm" if "webm" in mime_type else "mp4"
            data = clip
        files = {"file": (f"segment_{index}.{extension}", data, mime_type)}
        form = {"userId": session_id, "index": str(index)}
        response = self.http.post(self.url, data=form, files=files, timeout=self.timeout)
        response.raise_for_status()
        logger.info(f"[Upload] clip {index} uploaded ({len(data)} bytes)")

    async def upload_all(self, session_id: str, items: list[tuple[int, Clip | bytes]]):
        """Issue every upload concurrently and wait for all of them."""
        tasks = [asyncio.to_thread(self.upload_one, session_id, index, clip) for index, clip in items]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        failed = []
        for (index, _), res in zip(items, results):
            if isinstance(res, BaseException):
                logger.error(f"[Upload] clip {index} failed: {res}")
                failed.append(index)
        if failed:
            raise UploadError(failed, "one or more uploads failed, please retry")
        logger.info(f"[Upload] all {len(items)} clips uploaded for {session_id}")
