from dataclasses import dataclass, field
from typing import Any
import torch


@dataclass
class ModelRegistry:
    device: torch.device = field(default_factory=lambda: torch.device("cpu"))
    face_detector: Any = None
    shape_predictor: Any = None
    face_encoder: Any = None
    expression_model: torch.nn.Module | None = None
    expression_transform: Any = None

    @property
    def loaded(self) -> list[str]:
        names = ["face_detector", "shape_predictor", "face_encoder", "expression_model"]
        return [n for n in names if getattr(self, n) is not None]
