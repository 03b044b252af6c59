import logging
import random
from collections import deque
from typing import Callable

import numpy as np

from config import (
    TOTAL_DURATION_SECONDS, QUALITY_EVERY, DETECT_EVERY,
    SEGMENT_RETRY_DELAY, NEXT_SEGMENT_DELAY, INTERRUPT_COOLDOWN, TICK_INTERVAL,
    CHALLENGE_POLL_INTERVAL, CHALLENGE_TIMEOUT, CHALLENGE_MAX_ATTEMPTS,
    CHALLENGE_RETRY_DELAY, CHALLENGE_RESULT_HOLD, CHALLENGE_CUE_BLINK,
)
from errors import RecorderError, UnsupportedCodecError
from processing.alignment import AlignmentScorer, AlignmentVerdict, DistanceHint, GuideRegion, count_faces_in_guide
from processing.challenge import ChallengeEngine, ChallengeSignal, DIRECTION_PROMPTS, choose_direction
from processing.consistency import FaceCheck, FaceConsistencyMonitor
from processing.detection import DetectionSnapshot, FaceAnalysis
from processing.overlay import OverlayView
from processing.quality import QUALITY_MESSAGES, QualityGate, QualityVerdict
from recording.artifacts import CaptureResult, collect_artifacts
from recording.codecs import CodecProfile, opencv_supports, select_codec
from recording.recorder import RecorderFactory, RecorderState, frame_recorder_factory
from recording.segment import OutcomeKind, SegmentOutcome, SegmentRecorder, StopTag, TickResult
from schemas.messages import (
    AlignmentResult, ArtifactInfo, BBox, ChallengeResult, CompletionEvent, FrameResponse,
    MessageEvent, QualityResult, SegmentProgress, SessionResetEvent,
)
from state.messages import MessageSlot, StatusBoard
from state.scheduler import TimerQueue
from state.session import CaptureStep, ChallengeState, Session, TERMINAL_STEPS, generate_segment_plans
from state.session_log import SessionLogBuffer

logger = logging.getLogger("uvicorn.error")

QUALITY_SLOTS = {MessageSlot(slot) for slot, _ in QUALITY_MESSAGES.values()}
QUALITY_TEXTS = {text for _, text in QUALITY_MESSAGES.values()}


class StaleResult(Exception):
    """An inference result arrived after the session it belonged to was torn down or reset."""


class RecordingOrchestrator:
    """Sequences reference capture, segment recording, head-turn challenges and finalization.

    Everything runs in the caller's thread. `step(frame, now)` is the per-frame
    entry point; due timers are drained at the start of every step (or with
    `advance(now)`) and all triggers go through one run-to-completion event
    queue, so a handler never re-enters another.
    """

    def __init__(self, analyzer: FaceAnalysis, recorder_factory: RecorderFactory = frame_recorder_factory,
                 codec: CodecProfile | None = None,
                 codec_probe: Callable[[CodecProfile], bool] = opencv_supports,
                 total_seconds: int = TOTAL_DURATION_SECONDS, rng: random.Random | None = None,
                 quality_every: int = QUALITY_EVERY, detect_every: int = DETECT_EVERY,
                 challenge_timeout: float = CHALLENGE_TIMEOUT, log_buffer: SessionLogBuffer | None = None):
        self.analyzer = analyzer
        self.recorder_factory = recorder_factory
        self.codec = codec
        self.codec_probe = codec_probe
        self.rng = rng or random.Random()
        self.quality_every = max(1, quality_every)
        self.detect_every = max(1, detect_every)
        self.challenge_timeout = challenge_timeout
        self.log_buffer = log_buffer

        self.session = Session(total_seconds=total_seconds, plans=self._plans(total_seconds))
        self.capture_step = CaptureStep.AWAITING_ALIGNMENT
        self.board = StatusBoard()
        self.timers = TimerQueue()
        self.quality_gate = QualityGate()
        self.scorer = AlignmentScorer()
        self.consistency = FaceConsistencyMonitor()
        self.segments: SegmentRecorder | None = None
        self.challenge_engine: ChallengeEngine | None = None

        self.guide: GuideRegion | None = None
        self.snapshot: DetectionSnapshot | None = None
        self.alignment = AlignmentVerdict(face_present=False)
        self.quality: QualityVerdict | None = None
        self.challenge: ChallengeState | None = None
        self.challenge_result_until = 0.0

        self.epoch = 0
        self.frame_index = 0
        self.now = 0.0
        self.last_frame: np.ndarray | None = None
        self.cooldown_until = float("-inf")
        self.started = False
        self.torn_down = False

        self.result: CaptureResult | None = None
        self.completion_emitted = False
        self._events: list = []
        self._queue: deque = deque()
        self._dispatching = False
        self._handlers = {
            "frame": self._on_frame,
            "tick": self._on_tick,
            "segment_finished": self._on_segment_finished,
            "start_segment": self._on_start_segment,
            "challenge_begin": self._on_challenge_begin,
            "challenge_poll": self._on_challenge_poll,
        }

    def _plans(self, total_seconds: int):
        return generate_segment_plans(total_seconds, self.rng)

    # ------------------------------------------------------------------
    # lifecycle

    def start(self) -> bool:
        """Negotiate the codec and wire the recorders. False when the session cannot start."""
        if self.started:
            return self.capture_step != CaptureStep.FAILED
        self.started = True
        if self.log_buffer is not None:
            self.log_buffer.attach()
        try:
            if self.codec is None:
                self.codec = select_codec(self.codec_probe)
        except UnsupportedCodecError as e:
            logger.error(f"[Orchestrator] {e}")
            self.board.show(MessageSlot.STATUS, "Video recording is not supported on this device.", "error")
            self._fail(str(e))
            return False

        self.segments = SegmentRecorder(self.recorder_factory, self.codec, self._segment_finished_callback)
        self.challenge_engine = ChallengeEngine(self.recorder_factory, self.codec, self.challenge_timeout)
        logger.info(f"[Orchestrator] session {self.session.session_id} ready, "
                    f"plan={[p.target_seconds for p in self.session.plans]}s, codec={self.codec.mime_type}")
        self.board.show(MessageSlot.STATUS, "Position your face inside the dashed circle.")
        return True

    def teardown(self):
        """Drop everything in flight. Later steps are no-ops and late inference results are discarded."""
        if self.torn_down:
            return
        self.torn_down = True
        self.epoch += 1
        self.timers.cancel_all()
        if self.segments is not None:
            self.segments.stop(StopTag.DISCARD)
        if self.challenge_engine is not None:
            self.challenge_engine.cancel()
        self._queue.clear()
        if self.log_buffer is not None:
            self.log_buffer.detach()
        logger.info(f"[Orchestrator] torn down after {self.frame_index} frames, step={self.capture_step.value}")

    def restart(self, reason: str = "requested"):
        """Explicit user restart: a brand-new session, also allowed after completion."""
        if self.torn_down or (self.capture_step == CaptureStep.FAILED and self.segments is None):
            return
        self._discard_in_flight()
        self.session = Session(total_seconds=self.session.total_seconds,
                               plans=self._plans(self.session.total_seconds))
        self._clear_session_state()
        self.result = None
        self.completion_emitted = False
        if self.log_buffer is not None:
            self.log_buffer.clear()
        self.capture_step = CaptureStep.AWAITING_ALIGNMENT
        logger.info(f"[Orchestrator] restart ({reason}), new session {self.session.session_id}")
        self._emit(SessionResetEvent(reason=reason, reset_count=self.session.reset_count))

    def drain_events(self) -> list:
        for msg in self.board.drain():
            self._events.append(MessageEvent(slot=msg.slot.value, text=msg.text, level=msg.level))
        out, self._events = self._events, []
        return out

    # ------------------------------------------------------------------
    # frame step

    def advance(self, now: float):
        """Fire every timer due at `now`."""
        self.now = max(self.now, now)
        while not self.torn_down:
            entry = self.timers.pop_due(self.now)
            if entry is None:
                break
            try:
                self._dispatch(entry.name, entry.payload)
            except StaleResult:
                logger.info(f"[Orchestrator] discarded a stale inference result ({entry.name})")
                break

    def step(self, frame: np.ndarray, now: float) -> FrameResponse:
        if not self.started:
            self.start()
        if self.torn_down or self.capture_step in TERMINAL_STEPS:
            return self._frame_response()

        self.advance(now)
        if self.torn_down or self.capture_step in TERMINAL_STEPS:
            return self._frame_response()

        self.frame_index += 1
        self.last_frame = frame
        h, w = frame.shape[:2]
        if self.guide is None or not self.guide.matches(w, h):
            self.guide = GuideRegion.from_frame(w, h)
            self.scorer.reset()
            logger.info(f"[Orchestrator] guide region set for {w}x{h}: r={self.guide.outer_radius:.0f}")

        try:
            if (self.frame_index - 1) % self.detect_every == 0:
                self.snapshot = self._infer(self.analyzer.detect_single, frame, self.frame_index)
            fresh_quality = (self.frame_index - 1) % self.quality_every == 0
            if fresh_quality:
                boxes = self._infer(self.analyzer.detect_all, frame)
                faces = count_faces_in_guide(boxes, self.guide)
                self.quality = self.quality_gate.check(frame, self.guide, faces)
            self.alignment = self.scorer.update(self.snapshot, self.guide)
            self._dispatch("frame", (frame, fresh_quality))
        except StaleResult:
            logger.info("[Orchestrator] discarded a stale inference result")
            return self._frame_response()

        if self.segments is not None:
            self.segments.write(frame, now)
        if self.challenge_engine is not None:
            self.challenge_engine.write(frame, now)
        return self._frame_response()

    def _infer(self, fn, *args):
        epoch = self.epoch
        result = fn(*args)
        if epoch != self.epoch or self.torn_down:
            raise StaleResult()
        return result

    def _on_frame(self, payload):
        frame, fresh_quality = payload
        self._show_quality()
        quality_ok = self.quality is None or self.quality.ok
        if quality_ok:
            self._show_alignment()
        else:
            # Quality problems block progress towards a stable alignment.
            self.scorer.stable_frames = 0
            self.alignment.stable = False

        if self.capture_step == CaptureStep.AWAITING_ALIGNMENT:
            if self.alignment.stable:
                self._capture_reference(frame)
            return

        if self.capture_step == CaptureStep.RECORDING_SEGMENT:
            if fresh_quality and not quality_ok:
                self._interrupt(self.quality.issue.value)
                return
            self.segments.set_aligned(self.alignment.stable)

    # ------------------------------------------------------------------
    # reference capture

    def _capture_reference(self, frame: np.ndarray):
        self.capture_step = CaptureStep.CAPTURING_REFERENCE
        self.board.show(MessageSlot.STATUS, "Perfect! Stay still inside the dashed circle.")
        descriptor = self._infer(self.analyzer.descriptor, frame, self.snapshot)
        if descriptor is None:
            logger.warning("[Orchestrator] reference capture found no face, waiting for alignment again")
            self.scorer.reset()
            self.capture_step = CaptureStep.AWAITING_ALIGNMENT
            return
        expressions = {}
        if self.snapshot is not None:
            expressions = self._infer(self.analyzer.expressions, frame, self.snapshot.box)
        self.session.reference_descriptor = descriptor
        self.session.reference_expressions = expressions
        self.consistency.set_reference(descriptor)
        top = max(expressions, key=expressions.get) if expressions else "n/a"
        logger.info(f"[Orchestrator] reference descriptor captured (expression={top})")
        self.capture_step = CaptureStep.SEGMENT_PENDING
        self._start_segment(0)

    # ------------------------------------------------------------------
    # segments

    def _segment_finished_callback(self, outcome: SegmentOutcome):
        self._dispatch("segment_finished", outcome)

    def _on_start_segment(self, resume_seconds: int):
        if self.capture_step not in (CaptureStep.SEGMENT_PENDING, CaptureStep.SEGMENT_INTERRUPTED):
            return
        self._start_segment(resume_seconds or 0)

    def _start_segment(self, resume_seconds: int):
        n = self.session.current_segment
        target = self.session.target_for(n)
        try:
            self.segments.start(n, target, self.session.partials_for(n), resume_seconds)
        except RecorderError as e:
            logger.error(f"[Orchestrator] error starting segment {n}: {e}")
            self.board.show(MessageSlot.STATUS, "Unable to start recording. Please try again.", "error")
            self.capture_step = CaptureStep.SEGMENT_PENDING
            self.timers.schedule("start_segment", SEGMENT_RETRY_DELAY, self.now, payload=resume_seconds)
            return
        self.capture_step = CaptureStep.RECORDING_SEGMENT
        self.segments.set_aligned(self.alignment.stable)
        self.timers.schedule("tick", TICK_INTERVAL, self.now, repeat=TICK_INTERVAL)
        self.board.show(MessageSlot.STATUS, "")
        self.board.show(MessageSlot.RECORDING,
                        f"Recording segment {n} of {self.session.total_segments} ({resume_seconds}/{target}s)")

    def _on_tick(self, _payload=None):
        if self.capture_step != CaptureStep.RECORDING_SEGMENT or self.segments is None or not self.segments.active:
            return
        st = self.segments.state

        if self.last_frame is not None:
            descriptor = self._infer(self.analyzer.descriptor, self.last_frame, self.snapshot) \
                if self.snapshot is not None else None
            check = self.consistency.compare(descriptor)
            if check.status == FaceCheck.MISMATCH:
                self.board.show(MessageSlot.VERIFICATION, "Different face detected! Please stay in front of the camera.", "warn")
            elif check.status == FaceCheck.MATCH:
                self.board.clear(MessageSlot.VERIFICATION)
            elif check.status == FaceCheck.ESCALATED:
                self.board.show(MessageSlot.VERIFICATION,
                                "Different face detected for several seconds! Restarting from scratch...", "error")
                self.segments.invalidate("face mismatch")
                self._reset_session("face mismatch")
                return

        result = self.segments.tick(self.alignment.stable)
        if result == TickResult.PAUSED:
            self.board.show(MessageSlot.RECORDING,
                            f"Recording paused at {st.elapsed}s. Align your face to continue.", "warn")
        elif result == TickResult.ADVANCED:
            self.board.show(MessageSlot.RECORDING,
                            f"Recording segment {st.segment} of {self.session.total_segments} "
                            f"({st.elapsed}/{st.target_seconds}s)")
        elif result == TickResult.TARGET_REACHED:
            self.timers.cancel("tick")
            self.segments.stop(StopTag.COMPLETE)

    def _interrupt(self, reason: str):
        if self.now < self.cooldown_until:
            logger.debug(f"[Orchestrator] interruption ({reason}) ignored during cooldown")
            return
        if self.segments is None or not self.segments.active:
            return
        self.cooldown_until = self.now + INTERRUPT_COOLDOWN
        logger.warning(f"[Orchestrator] interrupting segment {self.segments.state.segment}: {reason}")
        self.segments.invalidate(reason)
        self.segments.stop(StopTag.INTERRUPTED)

    def _on_segment_finished(self, outcome: SegmentOutcome):
        self.timers.cancel("tick")
        if outcome.kind == OutcomeKind.DISCARDED or self.capture_step in TERMINAL_STEPS:
            return
        n = outcome.segment

        if outcome.kind == OutcomeKind.INTERRUPTED:
            target = self.session.target_for(n)
            resume = max(outcome.elapsed - 1, self.segments.state.checkpoint)
            resume = min(resume, target - 1)
            self.capture_step = CaptureStep.SEGMENT_INTERRUPTED
            self.board.show(MessageSlot.RECORDING,
                            f"Segment {n} interrupted, resuming from {resume}s...", "warn")
            self.timers.schedule("start_segment", INTERRUPT_COOLDOWN, self.now, payload=resume)
            return

        if outcome.kind == OutcomeKind.REJECTED:
            logger.warning(f"[Orchestrator] segment {n} rejected: {outcome.reason}, retrying")
            self.capture_step = CaptureStep.SEGMENT_PENDING
            self.board.show(MessageSlot.RECORDING, f"Segment {n} was not usable, recording it again...", "warn")
            self.timers.schedule("start_segment", SEGMENT_RETRY_DELAY, self.now, payload=0)
            return

        self.session.completed_clips[n] = outcome.clip
        self.board.show(MessageSlot.RECORDING, f"Segment {n} complete.")
        logger.info(f"[Orchestrator] segment {n} complete "
                    f"({outcome.clip.start_seconds}-{outcome.clip.end_seconds}s)")
        if self._challenge_required(n):
            self._begin_challenge(n)
        elif n < self.session.total_segments:
            self._next_segment(n)
        else:
            self._finalize()

    def _challenge_required(self, segment: int) -> bool:
        last = self.session.total_segments
        if segment < last:
            return True
        return self.session.deferred_challenge or self.session.challenge_success.get(last - 1) is False

    def _next_segment(self, finished: int):
        self.session.current_segment = finished + 1
        self.capture_step = CaptureStep.SEGMENT_PENDING
        self.timers.schedule("start_segment", NEXT_SEGMENT_DELAY, self.now, payload=0)

    # ------------------------------------------------------------------
    # challenges

    def _begin_challenge(self, segment: int):
        self.capture_step = CaptureStep.CHALLENGE
        self.cooldown_until = float("-inf")
        self._on_challenge_begin(segment)

    def _on_challenge_begin(self, segment: int):
        if self.capture_step != CaptureStep.CHALLENGE:
            return
        s = self.session
        fallback = [d for seg, d in s.segment_directions.items() if seg != segment]
        direction = choose_direction(s.used_directions, fallback, self.rng)
        s.used_directions.append(direction)
        s.segment_directions[segment] = direction
        attempt = s.challenge_attempts.get(segment, 0) + 1
        s.challenge_attempts[segment] = attempt

        self.challenge = ChallengeState(segment=segment, direction=direction, attempt=attempt)
        self.challenge_engine.begin(direction, self.now)
        self.timers.schedule("challenge_poll", CHALLENGE_POLL_INTERVAL, self.now, repeat=CHALLENGE_POLL_INTERVAL)
        self.board.show(MessageSlot.CHALLENGE_ATTEMPT, DIRECTION_PROMPTS[direction])
        logger.info(f"[Challenge] segment {segment} attempt {attempt}: prompting {direction.value}")

    def _on_challenge_poll(self, _payload=None):
        if self.capture_step != CaptureStep.CHALLENGE or self.challenge is None or self.challenge.done:
            self.timers.cancel("challenge_poll")
            return
        signal = self.challenge_engine.poll(self.snapshot, self.guide, self.now)
        if signal in (ChallengeSignal.CONFIRMED, ChallengeSignal.TIMED_OUT):
            self.timers.cancel("challenge_poll")
            self._challenge_finished(signal == ChallengeSignal.CONFIRMED)

    def _challenge_finished(self, success: bool):
        s = self.session
        ch = self.challenge
        ch.done = True
        ch.success = success
        clip = self.challenge_engine.last_clip
        if clip is not None:
            s.challenge_clips[ch.segment] = clip
            s.challenge_clip_attempt[ch.segment] = ch.attempt

        if success:
            s.challenge_success[ch.segment] = True
            if clip is not None:
                s.head_turn_clip = clip
            self.challenge_result_until = self.now + CHALLENGE_RESULT_HOLD
            self.board.show(MessageSlot.CHALLENGE_ATTEMPT, "Head turn verified.")
            if ch.segment >= s.total_segments:
                self._finalize()
            else:
                self._next_segment(ch.segment)
            return

        self.board.show(MessageSlot.VERIFICATION,
                        f"Head movement ({ch.direction.value.upper()}) not detected in time. Please try again.", "warn")
        if ch.attempt < CHALLENGE_MAX_ATTEMPTS:
            self.board.show(MessageSlot.CHALLENGE_ATTEMPT,
                            f"Head turn failed attempt {ch.attempt}. Please try again.", "warn")
            self.timers.schedule("challenge_begin", CHALLENGE_RETRY_DELAY, self.now, payload=ch.segment)
            return

        if ch.segment == 1 or ch.segment >= s.total_segments:
            self.board.show(MessageSlot.CHALLENGE_ATTEMPT,
                            f"Verification {ch.segment} failed {ch.attempt} times. Restarting all segments.", "error")
            self._reset_session(f"challenge {ch.segment} failed")
            return

        s.challenge_success[ch.segment] = False
        s.deferred_challenge = True
        self.board.show(MessageSlot.CHALLENGE_ATTEMPT,
                        f"Verification {ch.segment} failed. Will verify again after the final segment.", "warn")
        logger.warning(f"[Challenge] segment {ch.segment} exhausted, deferring to the last segment")
        self._next_segment(ch.segment)

    # ------------------------------------------------------------------
    # reset / finish

    def _discard_in_flight(self):
        self.epoch += 1
        self.timers.cancel_all()
        if self.segments is not None:
            self.segments.stop(StopTag.DISCARD)
        if self.challenge_engine is not None:
            self.challenge_engine.cancel()
        self._queue.clear()

    def _clear_session_state(self):
        self.consistency.reset()
        self.scorer.reset()
        self.alignment = AlignmentVerdict(face_present=False)
        self.challenge = None
        self.challenge_result_until = 0.0
        self.cooldown_until = float("-inf")

    def _reset_session(self, reason: str):
        """Full restart: the session value is replaced, never patched."""
        logger.warning(f"[Orchestrator] session reset: {reason}")
        self._discard_in_flight()
        self.session = Session.restarted(self.session)
        self._clear_session_state()
        self.capture_step = CaptureStep.AWAITING_ALIGNMENT
        self.board.show(MessageSlot.RECORDING, "")
        self.board.show(MessageSlot.STATUS, "Position your face inside the dashed circle to start again.")
        self._emit(SessionResetEvent(reason=reason, reset_count=self.session.reset_count))

    def _finalize(self):
        self.capture_step = CaptureStep.FINALIZING
        self.timers.cancel_all()
        s = self.session
        self.result = CaptureResult(
            session_id=s.session_id,
            segments=[s.completed_clips[n] for n in sorted(s.completed_clips)],
            partials={n: list(p) for n, p in s.partial_clips.items() if p},
            challenge_clips=dict(s.challenge_clips),
            challenge_attempts=dict(s.challenge_clip_attempt),
            head_turn=s.head_turn_clip,
            reference_expressions=dict(s.reference_expressions),
            reset_count=s.reset_count,
        )
        self.board.show(MessageSlot.RECORDING, "All segments & verifications complete. Thank you!")
        logger.info(f"[Orchestrator] session {s.session_id} complete: "
                    f"{len(self.result.segments)} segments, {sum(len(p) for p in self.result.partials.values())} partials, "
                    f"{s.reset_count} resets")
        if self.log_buffer is not None:
            self.result.log_text = self.log_buffer.text()
        self.capture_step = CaptureStep.COMPLETE
        self._complete(True)

    def _fail(self, reason: str):
        self.timers.cancel_all()
        self.capture_step = CaptureStep.FAILED
        self._complete(False, reason)

    def _complete(self, success: bool, reason: str | None = None):
        if self.completion_emitted:
            return
        self.completion_emitted = True
        artifacts = []
        if self.result is not None:
            artifacts = [ArtifactInfo(name=a.name, upload_index=a.upload_index)
                         for a in collect_artifacts(self.result)]
        self._emit(CompletionEvent(
            success=success,
            session_id=self.session.session_id,
            reason=reason,
            artifacts=artifacts,
            expressions=self.session.reference_expressions,
            reset_count=self.session.reset_count,
        ))

    # ------------------------------------------------------------------
    # plumbing

    def _emit(self, event):
        for msg in self.board.drain():
            self._events.append(MessageEvent(slot=msg.slot.value, text=msg.text, level=msg.level))
        self._events.append(event)

    def _dispatch(self, name: str, payload=None):
        self._queue.append((self.epoch, name, payload))
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._queue:
                epoch, event, data = self._queue.popleft()
                if epoch != self.epoch or self.torn_down:
                    continue
                self._handlers[event](data)
        except Exception:
            self._queue.clear()
            raise
        finally:
            self._dispatching = False

    def _show_quality(self):
        if self.quality is None:
            return
        failing = None
        if not self.quality.ok:
            slot, text = QUALITY_MESSAGES[self.quality.issue]
            failing = MessageSlot(slot)
            self.board.show(failing, text, "warn")
        # Slots are shared with other messages; only take back our own text.
        for slot in QUALITY_SLOTS:
            if slot != failing and self.board.current[slot] in QUALITY_TEXTS:
                self.board.clear(slot)

    def _show_alignment(self):
        a = self.alignment
        if not a.face_present:
            self.board.show(MessageSlot.DISTANCE, "")
            self.board.show(MessageSlot.OVAL_ALIGNMENT, "")
            self.board.show(MessageSlot.GUIDE_ALIGNMENT, "No face detected. Look at the camera.", "warn")
            return
        if a.distance == DistanceHint.MOVE_CLOSER:
            self.board.show(MessageSlot.DISTANCE, "Please move closer to the camera.")
        elif a.distance == DistanceHint.MOVE_BACK:
            self.board.show(MessageSlot.DISTANCE, "Please move slightly farther away from the camera.")
        else:
            self.board.clear(MessageSlot.DISTANCE)
        self.board.show(MessageSlot.OVAL_ALIGNMENT, "Your face is inside the guide." if a.inside_guide else "")
        if not a.inside_guide:
            self.board.show(MessageSlot.GUIDE_ALIGNMENT, "Your entire face must be inside the dashed circle.")
        else:
            self.board.clear(MessageSlot.GUIDE_ALIGNMENT)

    def _frame_response(self) -> FrameResponse:
        a = self.alignment
        response = FrameResponse(
            step=self.capture_step.value,
            face_detected=self.snapshot is not None,
            mismatches=self.consistency.mismatches,
        )
        if self.snapshot is not None:
            response.bbox = BBox(**self.snapshot.box.as_dict())
            response.alignment = AlignmentResult(
                fill_percent=round(a.fill_percent, 1),
                distance=a.distance.value,
                inside_guide=a.inside_guide,
                stable=a.stable,
            )
        if self.quality is not None:
            response.quality = QualityResult(
                issue=self.quality.issue.value if self.quality.issue else None,
                brightness=round(self.quality.brightness, 1),
            )
        if self.segments is not None and self.segments.state is not None and self.capture_step in (
                CaptureStep.RECORDING_SEGMENT, CaptureStep.SEGMENT_INTERRUPTED):
            st = self.segments.state
            response.recording = SegmentProgress(
                segment=st.segment,
                total_segments=self.session.total_segments,
                elapsed=st.elapsed,
                target=st.target_seconds,
                paused=self.segments.recorder is not None and self.segments.recorder.state == RecorderState.PAUSED,
            )
        if self.capture_step == CaptureStep.CHALLENGE and self.challenge is not None:
            attempt = self.challenge_engine.attempt
            response.challenge = ChallengeResult(
                segment=self.challenge.segment,
                direction=self.challenge.direction.value,
                attempt=self.challenge.attempt,
                remaining=round(attempt.remaining(self.now), 1) if attempt else 0.0,
                value=attempt.last_value if attempt else None,
            )
        return response

    def overlay_view(self) -> OverlayView:
        recording = self.capture_step == CaptureStep.RECORDING_SEGMENT
        progress = 0.0
        if recording and self.segments.state is not None:
            st = self.segments.state
            progress = st.elapsed / max(st.target_seconds, 1)
        cue = None
        cue_visible = False
        if self.capture_step == CaptureStep.CHALLENGE and self.challenge_engine.active:
            cue = self.challenge.direction
            cue_visible = int(self.now / CHALLENGE_CUE_BLINK) % 2 == 0
        instruction = self.board.current[MessageSlot.CHALLENGE_ATTEMPT] if cue else ""
        if not instruction:
            for slot in (MessageSlot.CAMERA_ERROR, MessageSlot.BRIGHTNESS, MessageSlot.VERIFICATION,
                         MessageSlot.DISTANCE, MessageSlot.GUIDE_ALIGNMENT, MessageSlot.RECORDING, MessageSlot.STATUS):
                if self.board.current[slot]:
                    instruction = self.board.current[slot]
                    break
        return OverlayView(
            brightness=self.quality.brightness if self.quality is not None else 100.0,
            recording=recording,
            aligned=self.alignment.stable or self.now < self.challenge_result_until,
            progress=progress,
            cue=cue,
            cue_visible=cue_visible,
            instruction=instruction,
        )
