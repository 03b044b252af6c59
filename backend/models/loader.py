import os
import dlib
import torch
from torchvision import transforms, models

from config import (
    SHAPE_PREDICTOR_PATH, FACE_ENCODER_PATH, FACE_DETECTOR_PATH, EXPRESSION_WEIGHT,
    EXPRESSION_LABELS, EXPRESSION_MEAN, EXPRESSION_STD, EXPRESSION_SIZE,
)
from errors import ModelLoadError
from models.registry import ModelRegistry


def _require(path) -> str:
    path = str(path)
    if not os.path.isfile(path):
        raise ModelLoadError(f"model weight not found: {path}")
    return path


def _load_expression_model(weight_path: str, device: torch.device):
    model = models.convnext_tiny(weights=None)
    in_features = model.classifier[2].in_features
    model.classifier[2] = torch.nn.Linear(in_features, len(EXPRESSION_LABELS))

    checkpoint = torch.load(weight_path, map_location=device, weights_only=True)
    state_dict = checkpoint.get("state_dict", checkpoint)
    state_dict = {
        k.replace("model.", "", 1): v
        for k, v in state_dict.items()
    }
    model.load_state_dict(state_dict)
    model.to(device)
    model.eval()
    return model


def load_all_models() -> ModelRegistry:
    """Load every weight from the bundle; any failure is fatal to session start."""
    device = torch.device("cpu")
    registry = ModelRegistry(device=device)

    # The MediaPipe detector is created per session; only check it exists here.
    _require(FACE_DETECTOR_PATH)

    try:
        registry.face_detector = dlib.get_frontal_face_detector()

        print(f"Loading landmark predictor: {SHAPE_PREDICTOR_PATH}")
        registry.shape_predictor = dlib.shape_predictor(_require(SHAPE_PREDICTOR_PATH))

        print(f"Loading face encoder: {FACE_ENCODER_PATH}")
        registry.face_encoder = dlib.face_recognition_model_v1(_require(FACE_ENCODER_PATH))

        print(f"Loading expression model: {EXPRESSION_WEIGHT}")
        registry.expression_model = _load_expression_model(_require(EXPRESSION_WEIGHT), device)
        registry.expression_transform = transforms.Compose([
            transforms.Resize(EXPRESSION_SIZE),
            transforms.ToTensor(),
            transforms.Normalize(EXPRESSION_MEAN, EXPRESSION_STD),
        ])
        print("Expression model loaded (ConvNeXt-Tiny)")
    except ModelLoadError:
        raise
    except (RuntimeError, KeyError, OSError) as e:
        raise ModelLoadError(f"failed to load face models: {e}") from e

    return registry
