import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / ".env")
load_dotenv(Path(__file__).resolve().parent / ".env")

BASE_DIR = Path(__file__).resolve().parent

# Weights / model paths
SHAPE_PREDICTOR_PATH = BASE_DIR / os.getenv("SHAPE_PREDICTOR_PATH", "weights/shape_predictor_68_face_landmarks.dat")
FACE_ENCODER_PATH = BASE_DIR / os.getenv("FACE_ENCODER_PATH", "weights/dlib_face_recognition_resnet_model_v1.dat")
FACE_DETECTOR_PATH = BASE_DIR / os.getenv("FACE_DETECTOR_PATH", "weights/blaze_face_short_range.tflite")
EXPRESSION_WEIGHT = BASE_DIR / os.getenv("EXPRESSION_WEIGHT", "weights/expression_convnext_tiny.pth")

# Expression classifier
EXPRESSION_LABELS = ["neutral", "happy", "sad", "angry", "fearful", "disgusted", "surprised"]
EXPRESSION_MEAN = [0.485, 0.456, 0.406]
EXPRESSION_STD = [0.229, 0.224, 0.225]
EXPRESSION_SIZE = [224, 224]

# Camera
CAMERA_INDEX = int(os.getenv("CAMERA_INDEX", "0"))
CAMERA_WIDTH = int(os.getenv("CAMERA_WIDTH", "640"))
CAMERA_HEIGHT = int(os.getenv("CAMERA_HEIGHT", "480"))
CAMERA_FPS = min(int(os.getenv("CAMERA_FPS", "30")), 30)
MIN_CAMERA_WIDTH = 400
MIN_CAMERA_HEIGHT = 300
MIN_CAMERA_FPS = 15

# Session plan
TOTAL_DURATION_SECONDS = int(os.getenv("TOTAL_DURATION_SECONDS", "10"))
TOTAL_SEGMENTS = 3

# Frame cadence
QUALITY_EVERY = int(os.getenv("QUALITY_EVERY", "6"))
DETECT_EVERY = int(os.getenv("DETECT_EVERY", "1"))

# Quality gate
QUALITY_SAMPLE_WIDTH = 160
DARK_THRESHOLD = float(os.getenv("DARK_THRESHOLD", "60"))
BRIGHT_THRESHOLD = float(os.getenv("BRIGHT_THRESHOLD", "180"))
BLUR_VARIANCE_MIN = float(os.getenv("BLUR_VARIANCE_MIN", "50"))
BLANK_PIXEL_THRESHOLD = 30
BLANK_RATIO_MAX = 0.95
GLARE_LUMA_THRESHOLD = 230
GLARE_AREA_RANGE = (500, 70000)
GLARE_RADIUS_RANGE = (20, 180)
GLARE_CIRCULARITY_RANGE = (0.3, 1.3)

# Guide region
GUIDE_RADIUS_RATIO = 0.35
GUIDE_INNER_RATIO = 0.7
GUIDE_CONTAINMENT_FACTOR = 1.2

# Alignment
FILL_SMOOTHING_WINDOW = 5
FILL_RANGE = (55.0, 80.0)
STABLE_FRAMES_REQUIRED = int(os.getenv("STABLE_FRAMES_REQUIRED", "3"))

# Face consistency
DESCRIPTOR_DISTANCE_MAX = float(os.getenv("DESCRIPTOR_DISTANCE_MAX", "0.6"))
MISMATCH_ESCALATION = 3

# Segment recording (seconds unless noted)
CHUNK_INTERVAL_MS = 1000
GRACE_SECONDS = int(os.getenv("GRACE_SECONDS", "1"))
SEGMENT_RETRY_DELAY = 0.6
NEXT_SEGMENT_DELAY = 0.6
INTERRUPT_COOLDOWN = 1.0
TICK_INTERVAL = 1.0

# Liveness challenge
CHALLENGE_POLL_INTERVAL = 0.15
CHALLENGE_TIMEOUT = float(os.getenv("CHALLENGE_TIMEOUT", "30"))
CHALLENGE_MAX_ATTEMPTS = 2
CHALLENGE_RETRY_DELAY = 1.5
CHALLENGE_RESULT_HOLD = float(os.getenv("CHALLENGE_RESULT_HOLD", "3.0"))
CHALLENGE_CUE_BLINK = 0.5
YAW_HARD = 0.35
YAW_NEAR_RATIO = 0.2
PITCH_DOWN_HARD = 0.38
PITCH_DOWN_NEAR = 0.27
PITCH_UP_HARD = 0.12
PITCH_UP_NEAR = 0.20
CHALLENGE_CLIP_CHUNKS = 3

# Upload / export
UPLOAD_URL = os.getenv("UPLOAD_URL", "http://localhost:8080/UploadVideoSegment")
UPLOAD_TIMEOUT = float(os.getenv("UPLOAD_TIMEOUT", "30"))
OUTPUT_DIR = BASE_DIR / os.getenv("OUTPUT_DIR", "captures")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Server
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
