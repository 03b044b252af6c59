from types import SimpleNamespace

import numpy as np
import pytest

torch = pytest.importorskip("torch")
pytest.importorskip("dlib")
pytest.importorskip("mediapipe")

from config import EXPRESSION_LABELS  # noqa: E402
from processing.detection import FaceBox  # noqa: E402
from processing.face_analysis import FaceAnalyzer  # noqa: E402


class TestExpressions:
    """Expression scores for a face crop."""

    def setup_method(self):
        self.crops = []

        def transform(img):
            self.crops.append(np.asarray(img))
            return torch.zeros(3, 4, 4)

        logits = torch.zeros(1, len(EXPRESSION_LABELS))
        logits[0, 1] = 3.0
        registry = SimpleNamespace(expression_model=lambda batch: logits, expression_transform=transform,
                                   device="cpu")
        self.analyzer = FaceAnalyzer(registry, detector=object())

    def test_scores_keyed_by_label(self):
        frame = np.zeros((120, 160, 3), dtype=np.uint8)
        frame[..., 0] = 255
        scores = self.analyzer.expressions(frame, FaceBox(20, 10, 50, 60))
        assert list(scores) == EXPRESSION_LABELS
        assert max(scores, key=scores.get) == "happy"
        assert sum(scores.values()) == pytest.approx(1.0)

        [crop] = self.crops
        assert crop.shape == (60, 50, 3)
        # Crops are handed to the model as RGB.
        assert crop[0, 0].tolist() == [0, 0, 255]

    def test_box_outside_frame(self):
        frame = np.zeros((120, 160, 3), dtype=np.uint8)
        assert self.analyzer.expressions(frame, FaceBox(200, 10, 40, 40)) == {}
        assert self.crops == []
