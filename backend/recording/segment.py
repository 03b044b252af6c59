import logging
from enum import Enum
from dataclasses import dataclass
from typing import Callable

from config import CHUNK_INTERVAL_MS, GRACE_SECONDS
from errors import RecorderError
from recording.clips import Clip, PartialClip, SegmentClip, VideoChunk
from recording.codecs import CodecProfile
from recording.recorder import Recorder, RecorderFactory, RecorderState
from state.session import SegmentRecordingState

logger = logging.getLogger("uvicorn.error")


class StopTag(str, Enum):
    COMPLETE = "complete"
    INTERRUPTED = "interrupted"
    DISCARD = "discard"


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    REJECTED = "rejected"
    INTERRUPTED = "interrupted"
    DISCARDED = "discarded"


class TickResult(str, Enum):
    IDLE = "idle"
    PAUSED = "paused"
    ADVANCED = "advanced"
    GRACE = "grace"
    TARGET_REACHED = "target_reached"


@dataclass
class SegmentOutcome:
    kind: OutcomeKind
    segment: int
    elapsed: int
    clip: SegmentClip | None = None
    partial: PartialClip | None = None
    reason: str | None = None


class SegmentRecorder:
    """One physical recording attempt per segment on top of a Recorder.

    Stops are idempotent: only the first stop() of an attempt reaches the
    recorder, later calls return False until the next start().
    """

    def __init__(self, recorder_factory: RecorderFactory, codec: CodecProfile,
                 on_finished: Callable[[SegmentOutcome], None],
                 chunk_interval_ms: int = CHUNK_INTERVAL_MS, grace_seconds: int = GRACE_SECONDS):
        self.recorder_factory = recorder_factory
        self.codec = codec
        self.on_finished = on_finished
        self.chunk_interval_ms = chunk_interval_ms
        self.grace_seconds = grace_seconds

        self.state: SegmentRecordingState | None = None
        self.recorder: Recorder | None = None
        self._stop_tag: StopTag | None = None

    @property
    def active(self) -> bool:
        return (self.recorder is not None
                and self.recorder.state != RecorderState.INACTIVE
                and self._stop_tag is None)

    @property
    def stopping(self) -> bool:
        return self._stop_tag is not None

    def start(self, segment: int, target_seconds: int, partials: list[PartialClip],
              resume_seconds: int = 0) -> SegmentRecordingState:
        if self.active:
            raise RecorderError(f"segment {self.state.segment} is still recording")
        if resume_seconds >= target_seconds:
            raise ValueError(f"resume point {resume_seconds}s is past the {target_seconds}s target")

        self.state = SegmentRecordingState(
            segment=segment,
            target_seconds=target_seconds,
            elapsed=resume_seconds,
            checkpoint=resume_seconds,
            partials=partials,
        )
        self._stop_tag = None

        recorder = self.recorder_factory(self.codec)
        recorder.on_chunk = self._on_chunk
        recorder.on_stop = self._on_stop
        recorder.start(self.chunk_interval_ms)
        self.recorder = recorder

        kind = "fresh" if resume_seconds == 0 else f"resumed at {resume_seconds}s"
        logger.info(f"[Segment] {segment} started ({kind}), target={target_seconds}s, "
                    f"partials so far={len(partials)}")
        return self.state

    def write(self, frame, now: float):
        if self.active:
            self.recorder.write(frame, now)

    def set_aligned(self, aligned: bool):
        """Pause in place while alignment is lost, resume once it returns."""
        if not self.active:
            return
        if not aligned and self.recorder.state == RecorderState.RECORDING:
            self.recorder.pause()
            logger.info(f"[Segment] {self.state.segment} paused at {self.state.elapsed}s (alignment lost)")
        elif aligned and self.recorder.state == RecorderState.PAUSED:
            self.recorder.resume()
            logger.info(f"[Segment] {self.state.segment} resumed at {self.state.elapsed}s")

    def tick(self, aligned: bool) -> TickResult:
        if not self.active:
            return TickResult.IDLE
        self.set_aligned(aligned)
        if not aligned:
            return TickResult.PAUSED

        st = self.state
        if st.elapsed < st.target_seconds:
            st.elapsed += 1
            if st.elapsed < st.target_seconds or self.grace_seconds > 0:
                return TickResult.ADVANCED
            return TickResult.TARGET_REACHED
        # Grace ticks let the chunk in progress close before the stop.
        st.grace_ticks += 1
        if st.grace_ticks < self.grace_seconds:
            return TickResult.GRACE
        return TickResult.TARGET_REACHED

    def invalidate(self, reason: str):
        if self.state is not None and self.state.valid:
            self.state.valid = False
            self.state.invalid_reason = reason
            logger.info(f"[Segment] {self.state.segment} attempt invalidated: {reason}")

    def stop(self, tag: StopTag) -> bool:
        if not self.active:
            logger.debug(f"[Segment] stop({tag.value}) ignored, no active attempt")
            return False
        self._stop_tag = tag
        try:
            self.recorder.stop()
        except RecorderError as e:
            logger.error(f"[Segment] recorder stop failed: {e}")
            self._on_stop()
        return True

    def _on_chunk(self, chunk: VideoChunk):
        if self.state is not None:
            self.state.chunks.append(chunk)

    def _on_stop(self):
        if self.recorder is None:
            return
        st = self.state
        tag = self._stop_tag or StopTag.COMPLETE
        self.recorder = None
        self._stop_tag = None

        if tag == StopTag.DISCARD:
            outcome = SegmentOutcome(OutcomeKind.DISCARDED, st.segment, st.elapsed)
        elif tag == StopTag.INTERRUPTED:
            partial = None
            if st.chunks and st.elapsed - st.checkpoint > 0:
                partial = PartialClip(Clip(list(st.chunks), self.codec), st.checkpoint, st.elapsed)
                st.partials.append(partial)
            outcome = SegmentOutcome(OutcomeKind.INTERRUPTED, st.segment, st.elapsed,
                                     partial=partial, reason=st.invalid_reason)
        else:
            reason = self._rejection_reason(st)
            if reason is None:
                outcome = SegmentOutcome(OutcomeKind.COMPLETED, st.segment, st.elapsed,
                                         clip=SegmentClip(Clip(list(st.chunks), self.codec),
                                                          st.checkpoint, st.elapsed))
            else:
                outcome = SegmentOutcome(OutcomeKind.REJECTED, st.segment, st.elapsed, reason=reason)

        logger.info(f"[Segment] {st.segment} stopped ({tag.value}) -> {outcome.kind.value}, "
                    f"elapsed={st.elapsed}s, chunks={len(st.chunks)}")
        self.on_finished(outcome)

    @staticmethod
    def _rejection_reason(st: SegmentRecordingState) -> str | None:
        if not st.valid:
            return st.invalid_reason or "disqualified"
        if st.elapsed < st.target_seconds:
            return f"only {st.elapsed}s of {st.target_seconds}s recorded"
        if not st.chunks:
            return "no chunks recorded"
        return None
