import random
import uuid
from enum import Enum
from dataclasses import dataclass, field

import numpy as np

from config import TOTAL_DURATION_SECONDS, TOTAL_SEGMENTS
from recording.clips import Clip, PartialClip, SegmentClip, VideoChunk


class CaptureStep(str, Enum):
    AWAITING_ALIGNMENT = "AWAITING_ALIGNMENT"
    CAPTURING_REFERENCE = "CAPTURING_REFERENCE"
    SEGMENT_PENDING = "SEGMENT_PENDING"
    RECORDING_SEGMENT = "RECORDING_SEGMENT"
    SEGMENT_INTERRUPTED = "SEGMENT_INTERRUPTED"
    CHALLENGE = "CHALLENGE"
    FINALIZING = "FINALIZING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


TERMINAL_STEPS = (CaptureStep.COMPLETE, CaptureStep.FAILED)


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"


@dataclass(frozen=True)
class SegmentPlan:
    index: int
    target_seconds: int


def generate_segment_plans(total_seconds: int = TOTAL_DURATION_SECONDS,
                           rng: random.Random | None = None) -> list[SegmentPlan]:
    """Split the session into three segments: 2-3s, 2-4s, and the remainder.

    Every segment gets at least one second and the targets always sum to
    `total_seconds`, shrinking the random picks when the total is small.
    """
    if total_seconds < TOTAL_SEGMENTS:
        raise ValueError(f"total_seconds must be >= {TOTAL_SEGMENTS}, got {total_seconds}")
    rng = rng or random.Random()
    first = min(rng.randint(2, 3), total_seconds - 2)
    second = min(rng.randint(2, 4), total_seconds - 1 - first)
    last = total_seconds - first - second
    return [SegmentPlan(1, first), SegmentPlan(2, second), SegmentPlan(3, last)]


@dataclass
class SegmentRecordingState:
    segment: int
    target_seconds: int
    elapsed: int = 0
    checkpoint: int = 0
    grace_ticks: int = 0
    valid: bool = True
    invalid_reason: str | None = None
    chunks: list[VideoChunk] = field(default_factory=list)
    # Shared with Session.partial_clips[segment]; survives across attempts.
    partials: list[PartialClip] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return max(self.target_seconds - self.elapsed, 0)


@dataclass
class ChallengeState:
    segment: int
    direction: Direction
    attempt: int = 0
    done: bool = False
    success: bool = False


@dataclass
class Session:
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    total_seconds: int = TOTAL_DURATION_SECONDS
    plans: list[SegmentPlan] = field(default_factory=list)
    current_segment: int = 1
    reference_descriptor: np.ndarray | None = None
    reference_expressions: dict[str, float] = field(default_factory=dict)

    completed_clips: dict[int, SegmentClip] = field(default_factory=dict)
    partial_clips: dict[int, list[PartialClip]] = field(default_factory=dict)
    challenge_clips: dict[int, Clip] = field(default_factory=dict)
    head_turn_clip: Clip | None = None

    used_directions: list[Direction] = field(default_factory=list)
    segment_directions: dict[int, Direction] = field(default_factory=dict)
    challenge_attempts: dict[int, int] = field(default_factory=dict)
    challenge_clip_attempt: dict[int, int] = field(default_factory=dict)
    challenge_success: dict[int, bool] = field(default_factory=dict)
    deferred_challenge: bool = False

    reset_count: int = 0

    def __post_init__(self):
        if not self.plans:
            self.plans = generate_segment_plans(self.total_seconds)
        if sum(p.target_seconds for p in self.plans) != self.total_seconds:
            raise ValueError("segment targets must sum to the session duration")

    def target_for(self, segment: int) -> int:
        return self.plans[segment - 1].target_seconds

    def partials_for(self, segment: int) -> list[PartialClip]:
        return self.partial_clips.setdefault(segment, [])

    @property
    def total_segments(self) -> int:
        return len(self.plans)

    @classmethod
    def restarted(cls, previous: "Session") -> "Session":
        """Fresh state for a full restart; only identity, plan and the reset count carry over."""
        return cls(
            session_id=previous.session_id,
            total_seconds=previous.total_seconds,
            plans=list(previous.plans),
            reset_count=previous.reset_count + 1,
        )
