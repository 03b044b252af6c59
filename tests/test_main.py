import time
from types import SimpleNamespace

import cv2
import pytest

pytest.importorskip("httpx")
pytest.importorskip("torch")
pytest.importorskip("torchvision")
pytest.importorskip("dlib")
pytest.importorskip("mediapipe")

from fastapi.testclient import TestClient  # noqa: E402

import main  # noqa: E402
from conftest import FakeAnalyzer, striped_frame  # noqa: E402
from recording.codecs import CODEC_PREFERENCES  # noqa: E402


class SlowAnalyzer(FakeAnalyzer):
    """Records the order of detection and close(); single-face detection takes half a second."""

    def __init__(self, events):
        super().__init__()
        self.events = events
        self.closed = False

    def detect_single(self, frame, frame_index=0):
        self.events.append("detect_start")
        time.sleep(0.5)
        self.events.append(f"detect_end closed={self.closed}")
        return super().detect_single(frame, frame_index)

    def close(self):
        self.closed = True
        self.events.append("close")


@pytest.fixture
def events():
    return []


@pytest.fixture
def client(monkeypatch, events):
    monkeypatch.setattr(main, "load_all_models", lambda: SimpleNamespace(loaded=True))
    monkeypatch.setattr(main, "select_codec", lambda: CODEC_PREFERENCES[1])
    monkeypatch.setattr(main, "FaceAnalyzer", lambda registry: SlowAnalyzer(events))
    with TestClient(main.app) as c:
        yield c


class TestCaptureSocket:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["codec"] == CODEC_PREFERENCES[1].mime_type

    def test_disconnect_waits_for_the_frame_in_flight(self, client, events):
        ok, jpeg = cv2.imencode(".jpg", striped_frame())
        assert ok
        with client.websocket_connect("/ws/capture") as ws:
            ws.send_bytes(jpeg.tobytes())
            deadline = time.monotonic() + 5
            while "detect_start" not in events and time.monotonic() < deadline:
                time.sleep(0.01)
        assert events == ["detect_start", "detect_end closed=False", "close"]
