from enum import Enum


class CaptureError(Exception):
    """Base class for failures the capture flow cannot resolve on its own."""


class CameraFailure(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    NO_DEVICE = "no_device"
    UNKNOWN = "unknown"


CAMERA_MESSAGES = {
    CameraFailure.PERMISSION_DENIED: "Camera permission denied. Please allow access and refresh.",
    CameraFailure.NO_DEVICE: "No camera found on this device.",
    CameraFailure.UNKNOWN: "Failed to access the camera. Try again.",
}


class CameraError(CaptureError):
    def __init__(self, reason: CameraFailure, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)

    @property
    def user_message(self) -> str:
        return CAMERA_MESSAGES[self.reason]


class ModelLoadError(CaptureError):
    pass


class RecorderError(CaptureError):
    pass


class UnsupportedCodecError(RecorderError):
    pass


class UploadError(CaptureError):
    def __init__(self, failed_indices: list[int], detail: str = ""):
        self.failed_indices = failed_indices
        super().__init__(f"Upload failed for clips {failed_indices}: {detail}")
