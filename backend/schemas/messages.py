from pydantic import BaseModel


class BBox(BaseModel):
    x: int
    y: int
    width: int
    height: int


class AlignmentResult(BaseModel):
    fill_percent: float
    distance: str
    inside_guide: bool
    stable: bool


class QualityResult(BaseModel):
    issue: str | None = None
    brightness: float


class SegmentProgress(BaseModel):
    segment: int
    total_segments: int
    elapsed: int
    target: int
    paused: bool = False


class ChallengeResult(BaseModel):
    segment: int
    direction: str
    attempt: int
    remaining: float
    value: float | None = None


class FrameResponse(BaseModel):
    type: str = "frame_result"
    step: str
    face_detected: bool
    bbox: BBox | None = None
    alignment: AlignmentResult | None = None
    quality: QualityResult | None = None
    recording: SegmentProgress | None = None
    challenge: ChallengeResult | None = None
    mismatches: int = 0


class MessageEvent(BaseModel):
    type: str = "message"
    slot: str
    text: str
    level: str = "info"


class SessionResetEvent(BaseModel):
    type: str = "session_reset"
    reason: str
    reset_count: int


class ArtifactInfo(BaseModel):
    name: str
    upload_index: int | None = None


class CompletionEvent(BaseModel):
    type: str = "completion"
    success: bool
    session_id: str
    reason: str | None = None
    artifacts: list[ArtifactInfo] = []
    expressions: dict[str, float] = {}
    reset_count: int = 0


class UploadResultEvent(BaseModel):
    type: str = "upload_result"
    success: bool
    failed_indices: list[int] = []
    retryable: bool = False
    message: str = ""


class ResetAck(BaseModel):
    type: str = "reset_ack"
    step: str


class ErrorEvent(BaseModel):
    type: str = "error"
    message: str
