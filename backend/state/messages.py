import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger("uvicorn.error")


class MessageSlot(str, Enum):
    STATUS = "status"
    CAMERA_ERROR = "camera_error"
    BRIGHTNESS = "brightness"
    DISTANCE = "distance"
    GUIDE_ALIGNMENT = "guide_alignment"
    OVAL_ALIGNMENT = "oval_alignment"
    RECORDING = "recording"
    VERIFICATION = "verification"
    CHALLENGE_ATTEMPT = "challenge_attempt"


@dataclass
class StatusMessage:
    slot: MessageSlot
    text: str
    level: str = "info"


class StatusBoard:
    """User-facing messages, one per slot. Only changes are queued for delivery."""

    def __init__(self):
        self.current: dict[MessageSlot, str] = {slot: "" for slot in MessageSlot}
        self._outbox: list[StatusMessage] = []

    def show(self, slot: MessageSlot | str, text: str, level: str = "info") -> bool:
        slot = MessageSlot(slot)
        if self.current[slot] == text:
            return False
        self.current[slot] = text
        self._outbox.append(StatusMessage(slot, text, level))
        if text:
            logger.log(logging.getLevelName(level.upper()), f"[Message] {slot.value}: {text}")
        return True

    def clear(self, slot: MessageSlot | str) -> bool:
        return self.show(slot, "")

    def clear_all(self):
        for slot in MessageSlot:
            self.clear(slot)

    def drain(self) -> list[StatusMessage]:
        out, self._outbox = self._outbox, []
        return out

    def snapshot(self) -> dict[str, str]:
        return {slot.value: text for slot, text in self.current.items() if text}
