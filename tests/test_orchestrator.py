import random

import numpy as np

from conftest import NEUTRAL_POSE, POSES, Driver, FakeRecorder, uniform_frame
from errors import RecorderError
from processing.orchestrator import RecordingOrchestrator
from recording.codecs import CODEC_PREFERENCES
from recording.recorder import RecorderState
from schemas.messages import CompletionEvent, MessageEvent, SessionResetEvent
from state.messages import MessageSlot
from state.session import CaptureStep, SegmentPlan, Session
from state.session_log import SessionLogBuffer

MISMATCHED = np.full(128, 0.72 / np.sqrt(128))


def start_recording(driver):
    assert driver.until(lambda: driver.orch.capture_step == CaptureStep.RECORDING_SEGMENT)


def finish_segment(driver):
    n = driver.orch.session.current_segment
    assert driver.until(lambda: n in driver.orch.session.completed_clips)


def pass_challenge(driver, analyzer):
    orch = driver.orch
    assert orch.capture_step == CaptureStep.CHALLENGE
    direction = orch.challenge.direction
    analyzer.pose = POSES[direction]["near"]
    driver.run(0.5)
    analyzer.pose = POSES[direction]["hard"]
    driver.run(0.4)
    analyzer.pose = NEUTRAL_POSE
    assert orch.challenge.done and orch.challenge.success


def fail_challenge(driver):
    """Let both attempts time out (2s timeout, 1.5s retry delay)."""
    orch = driver.orch
    segment = orch.challenge.segment
    driver.run(2.3)
    assert orch.challenge.done and not orch.challenge.success
    driver.run(1.6)
    assert orch.challenge.attempt == 2 and orch.challenge.segment == segment
    driver.run(2.3)


def completions(events):
    return [e for e in events if isinstance(e, CompletionEvent)]


class SilentRecorder(FakeRecorder):
    """Records without ever producing a chunk."""

    def write(self, frame, now):
        pass


class BrokenStartRecorder(FakeRecorder):
    def start(self, chunk_interval_ms=1000):
        raise RecorderError("camera busy")


def first_recorder(cls):
    """Factory that builds `cls` for the first attempt and plain FakeRecorders after that."""

    def factory(codec):
        return cls(codec) if not FakeRecorder.instances else FakeRecorder(codec)

    return factory


class TestReferenceAndRecording:
    """Alignment gating, reference capture and the first segment."""

    def test_recording_starts_after_three_stable_frames(self, driver, analyzer):
        orch = driver.orch
        driver.tick()
        driver.tick()
        assert orch.capture_step == CaptureStep.AWAITING_ALIGNMENT
        driver.tick()
        assert orch.capture_step == CaptureStep.RECORDING_SEGMENT
        assert orch.session.reference_descriptor is not None
        assert orch.session.reference_expressions["neutral"] == 0.9
        assert orch.segments.state.segment == 1

    def test_misaligned_face_never_starts(self, driver, analyzer):
        analyzer.fill = 40
        driver.run(2.0)
        assert driver.orch.capture_step == CaptureStep.AWAITING_ALIGNMENT
        assert driver.orch.board.current[MessageSlot.DISTANCE] == "Please move closer to the camera."

    def test_frame_response_reports_progress(self, driver):
        start_recording(driver)
        driver.run(1.1)
        response = driver.tick()
        assert response.step == "RECORDING_SEGMENT"
        assert response.face_detected
        assert response.alignment.stable
        assert response.recording.segment == 1
        assert response.recording.elapsed == 1
        assert response.recording.target == 3

    def test_lost_face_pauses_recording(self, driver, analyzer):
        orch = driver.orch
        start_recording(driver)
        analyzer.face = False
        driver.tick()
        elapsed = orch.segments.state.elapsed
        driver.run(2.0)
        assert orch.capture_step == CaptureStep.RECORDING_SEGMENT
        assert orch.segments.recorder.state == RecorderState.PAUSED
        assert orch.segments.state.elapsed == elapsed
        assert orch.consistency.mismatches == 0
        assert orch.board.current[MessageSlot.GUIDE_ALIGNMENT] == "No face detected. Look at the camera."

        analyzer.face = True
        driver.run(1.5)
        assert orch.segments.recorder.state == RecorderState.RECORDING
        assert orch.segments.state.elapsed > elapsed


class TestInterruptions:
    """Quality failures during a segment."""

    def test_interrupt_and_resume(self, driver):
        orch = driver.orch
        start_recording(driver)
        assert driver.until(lambda: orch.segments.state.elapsed >= 2)
        driver.tick(uniform_frame(45))

        assert orch.capture_step == CaptureStep.SEGMENT_INTERRUPTED
        partials = orch.session.partial_clips[1]
        assert [(p.start_seconds, p.end_seconds) for p in partials] == [(0, 2)]
        assert orch.session.reset_count == 0
        assert orch.board.current[MessageSlot.BRIGHTNESS] == "Too dark, please move to a brighter place."

        driver.run(1.2)
        assert orch.capture_step == CaptureStep.RECORDING_SEGMENT
        assert orch.segments.state.checkpoint == 1
        assert orch.segments.state.elapsed == 1
        assert orch.board.current[MessageSlot.BRIGHTNESS] == ""

        finish_segment(driver)
        clip = orch.session.completed_clips[1]
        assert (clip.start_seconds, clip.end_seconds) == (1, 3)

    def test_second_face_interrupts(self, driver, analyzer):
        orch = driver.orch
        start_recording(driver)
        analyzer.extra_faces = 1
        driver.tick()
        assert orch.capture_step == CaptureStep.SEGMENT_INTERRUPTED
        assert orch.board.current[MessageSlot.VERIFICATION].startswith("Multiple faces detected")

    def test_quality_ignored_during_challenge(self, driver):
        orch = driver.orch
        start_recording(driver)
        finish_segment(driver)
        driver.run(0.5, frame=uniform_frame(45))
        assert orch.capture_step == CaptureStep.CHALLENGE


    def test_repeated_interruptions_keep_the_checkpoint(self, driver):
        orch = driver.orch
        start_recording(driver)
        assert driver.until(lambda: orch.segments.state.elapsed >= 2)
        driver.tick(uniform_frame(45))
        assert driver.until(lambda: orch.capture_step == CaptureStep.RECORDING_SEGMENT, max_seconds=2)
        assert orch.segments.state.checkpoint == 1

        # Interrupted again before the resumed attempt gained a second.
        driver.tick(uniform_frame(45))
        assert orch.capture_step == CaptureStep.SEGMENT_INTERRUPTED
        assert [(p.start_seconds, p.end_seconds) for p in orch.session.partial_clips[1]] == [(0, 2)]
        assert driver.until(lambda: orch.capture_step == CaptureStep.RECORDING_SEGMENT, max_seconds=2)
        assert (orch.segments.state.checkpoint, orch.segments.state.elapsed) == (1, 1)

        finish_segment(driver)
        clip = orch.session.completed_clips[1]
        assert (clip.start_seconds, clip.end_seconds) == (1, 3)

    def test_target_stop_and_quality_failure_in_one_step(self, driver):
        orch = driver.orch
        start_recording(driver)
        assert driver.until(lambda: orch.segments.state.elapsed == 3)
        assert orch.timers.pending("tick")
        due = orch.timers.next_due()
        while driver.t < due:
            driver.tick()
        assert orch.capture_step == CaptureStep.RECORDING_SEGMENT

        response = driver.tick(uniform_frame(45))
        assert response.step == "CHALLENGE"
        clip = orch.session.completed_clips[1]
        assert (clip.start_seconds, clip.end_seconds) == (0, 3)
        assert not orch.session.partial_clips.get(1)
        assert FakeRecorder.instances[0].calls.count("stop") == 1


class TestSegmentRetries:
    """Attempts that cannot be used are recorded again from the start."""

    def test_rejected_attempt_restarts_from_zero(self, orchestrator, driver):
        orch = orchestrator
        orch.recorder_factory = first_recorder(SilentRecorder)
        start_recording(driver)
        assert driver.until(lambda: orch.capture_step == CaptureStep.SEGMENT_PENDING, max_seconds=6)
        assert orch.session.completed_clips == {}
        assert orch.board.current[MessageSlot.RECORDING] == "Segment 1 was not usable, recording it again..."
        assert FakeRecorder.instances[0].calls == ["start", "stop"]

        driver.run(0.4)
        assert orch.capture_step == CaptureStep.SEGMENT_PENDING
        assert driver.until(lambda: orch.capture_step == CaptureStep.RECORDING_SEGMENT, max_seconds=0.5)
        assert len(FakeRecorder.instances) == 2
        assert (orch.segments.state.elapsed, orch.segments.state.checkpoint) == (0, 0)
        assert orch.session.current_segment == 1
        assert orch.session.reset_count == 0

        finish_segment(driver)
        clip = orch.session.completed_clips[1]
        assert (clip.start_seconds, clip.end_seconds) == (0, 3)

    def test_recorder_start_failure_is_retried(self, orchestrator, driver):
        orch = orchestrator
        orch.recorder_factory = first_recorder(BrokenStartRecorder)
        driver.run(0.3)
        assert orch.capture_step == CaptureStep.SEGMENT_PENDING
        assert orch.board.current[MessageSlot.STATUS] == "Unable to start recording. Please try again."
        assert len(FakeRecorder.instances) == 1

        driver.run(0.4)
        assert orch.capture_step == CaptureStep.SEGMENT_PENDING
        assert driver.until(lambda: orch.capture_step == CaptureStep.RECORDING_SEGMENT, max_seconds=0.5)
        assert len(FakeRecorder.instances) == 2
        assert orch.segments.state.elapsed == 0
        assert orch.session.reset_count == 0


class TestFaceMismatch:
    def test_three_mismatches_restart_the_session(self, driver, analyzer):
        orch = driver.orch
        session_id = orch.session.session_id
        start_recording(driver)
        finish_segment(driver)
        pass_challenge(driver, analyzer)
        start_recording(driver)
        assert orch.session.current_segment == 2

        analyzer.descriptor_value = MISMATCHED
        assert driver.until(lambda: orch.session.reset_count == 1, max_seconds=5)
        assert orch.capture_step == CaptureStep.AWAITING_ALIGNMENT
        assert orch.session.session_id == session_id
        assert orch.session.current_segment == 1
        assert orch.session.completed_clips == {}
        assert orch.session.head_turn_clip is None
        assert orch.segments.recorder is None

        resets = [e for e in orch.drain_events() if isinstance(e, SessionResetEvent)]
        assert [r.reason for r in resets] == ["face mismatch"]

    def test_intermittent_mismatch_does_not_restart(self, driver, analyzer):
        orch = driver.orch
        start_recording(driver)
        reference = analyzer.descriptor_value
        analyzer.descriptor_value = MISMATCHED
        driver.run(2.5)
        assert orch.consistency.mismatches == 2
        analyzer.descriptor_value = reference
        driver.run(1.0)
        assert orch.consistency.mismatches == 0
        assert orch.session.reset_count == 0


class TestChallenges:
    """Head-turn challenges between segments."""

    def test_full_session(self, driver, analyzer):
        orch = driver.orch
        start_recording(driver)
        finish_segment(driver)
        pass_challenge(driver, analyzer)
        finish_segment(driver)
        pass_challenge(driver, analyzer)
        finish_segment(driver)

        assert orch.capture_step == CaptureStep.COMPLETE
        result = orch.result
        assert [(s.start_seconds, s.end_seconds) for s in result.segments] == [(0, 3), (0, 4), (0, 3)]
        assert result.head_turn is not None
        assert set(result.challenge_clips) == {1, 2}
        assert len(set(orch.session.used_directions)) == 2

        events = orch.drain_events()
        [done] = completions(events)
        assert done.success
        assert done.expressions == {"neutral": 0.9, "happy": 0.1}
        names = {a.name: a.upload_index for a in done.artifacts}
        assert names == {
            "segment_1_0-3.webm": 1,
            "segment_2_0-4.webm": 2,
            "segment_3_0-3.webm": 3,
            "segment_1_head1.webm": None,
            "segment_2_head1.webm": None,
            "head_turn.webm": 0,
        }

        driver.run(1.0)
        assert completions(orch.drain_events()) == []

    def test_restart_after_completion(self, driver, analyzer):
        orch = driver.orch
        start_recording(driver)
        finish_segment(driver)
        pass_challenge(driver, analyzer)
        finish_segment(driver)
        pass_challenge(driver, analyzer)
        finish_segment(driver)
        old_id = orch.session.session_id
        orch.drain_events()

        orch.restart()
        assert orch.session.session_id != old_id
        assert orch.capture_step == CaptureStep.AWAITING_ALIGNMENT
        assert orch.result is None
        assert any(isinstance(e, SessionResetEvent) and e.reason == "requested" for e in orch.drain_events())
        start_recording(driver)

    def test_failed_first_challenge_restarts(self, driver):
        orch = driver.orch
        start_recording(driver)
        finish_segment(driver)
        first = orch.challenge.direction
        driver.run(2.3)
        assert orch.capture_step == CaptureStep.CHALLENGE
        driver.run(1.6)
        assert orch.challenge.attempt == 2
        assert orch.challenge.direction != first

        assert driver.until(lambda: orch.session.reset_count == 1, max_seconds=3)
        assert orch.capture_step == CaptureStep.AWAITING_ALIGNMENT
        assert orch.session.completed_clips == {}
        assert orch.session.used_directions == []

    def test_failed_middle_challenge_is_deferred(self, driver, analyzer):
        orch = driver.orch
        start_recording(driver)
        finish_segment(driver)
        pass_challenge(driver, analyzer)
        finish_segment(driver)
        fail_challenge(driver)

        assert orch.session.deferred_challenge
        assert orch.session.challenge_success[2] is False
        assert orch.session.reset_count == 0
        assert orch.session.current_segment == 3

        finish_segment(driver)
        assert orch.capture_step == CaptureStep.CHALLENGE
        assert orch.challenge.segment == 3
        pass_challenge(driver, analyzer)

        assert orch.capture_step == CaptureStep.COMPLETE
        used = orch.session.used_directions
        assert len(used) == 4 and len(set(used)) == 4
        assert set(orch.result.challenge_clips) == {1, 3}
        [done] = completions(orch.drain_events())
        assert done.success

    def test_failed_final_challenge_restarts(self, driver, analyzer):
        orch = driver.orch
        start_recording(driver)
        finish_segment(driver)
        pass_challenge(driver, analyzer)
        finish_segment(driver)
        fail_challenge(driver)
        finish_segment(driver)
        assert orch.challenge.segment == 3
        # Keep the face out of range so alignment does not restart capture right away.
        analyzer.fill = 40
        fail_challenge(driver)

        assert orch.session.reset_count == 1
        assert orch.capture_step == CaptureStep.AWAITING_ALIGNMENT
        assert orch.session.deferred_challenge is False
        assert completions(orch.drain_events()) == []

    def test_overlay_cues_direction(self, driver):
        orch = driver.orch
        start_recording(driver)
        finish_segment(driver)
        view = orch.overlay_view()
        assert view.cue == orch.challenge.direction
        assert view.instruction.startswith("Please")
        assert not view.recording


class TestLifecycle:
    def test_unsupported_codec_fails_once(self, analyzer):
        orch = RecordingOrchestrator(analyzer, recorder_factory=FakeRecorder, codec_probe=lambda profile: False)
        assert not orch.start()
        assert orch.capture_step == CaptureStep.FAILED
        events = orch.drain_events()
        [done] = completions(events)
        assert not done.success
        assert any(isinstance(e, MessageEvent) and "not supported" in e.text for e in events)

        driver = Driver(orch)
        driver.run(0.5)
        assert completions(orch.drain_events()) == []

    def test_codec_negotiated_on_start(self, analyzer):
        probed = []

        def probe(profile):
            probed.append(profile)
            return profile.extension == "mp4"

        orch = RecordingOrchestrator(analyzer, recorder_factory=FakeRecorder, codec_probe=probe)
        assert orch.start()
        assert orch.codec == CODEC_PREFERENCES[2]
        assert probed == CODEC_PREFERENCES

    def test_teardown_stops_everything(self, driver):
        orch = driver.orch
        start_recording(driver)
        driver.run(1.0)
        orch.teardown()
        assert orch.segments.recorder is None
        assert orch.timers.next_due() is None
        step = orch.capture_step
        driver.run(2.0)
        assert orch.capture_step == step
        assert completions(orch.drain_events()) == []

    def test_late_inference_result_is_discarded(self, driver, analyzer):
        orch = driver.orch
        analyzer.on_detect = orch.teardown
        response = driver.tick()
        assert not response.face_detected
        assert orch.snapshot is None
        assert orch.scorer.stable_frames == 0

    def test_session_log_exported_with_result(self, analyzer, codec):
        buffer = SessionLogBuffer("INFO")
        orch = RecordingOrchestrator(analyzer, recorder_factory=FakeRecorder, codec=codec,
                                     rng=random.Random(5), quality_every=1, challenge_timeout=2.0,
                                     log_buffer=buffer)
        orch.session = Session(total_seconds=10, plans=[SegmentPlan(1, 3), SegmentPlan(2, 4), SegmentPlan(3, 3)])
        driver = Driver(orch)
        try:
            start_recording(driver)
            finish_segment(driver)
            pass_challenge(driver, analyzer)
            finish_segment(driver)
            pass_challenge(driver, analyzer)
            finish_segment(driver)
        finally:
            orch.teardown()

        assert "[Orchestrator]" in orch.result.log_text
        [done] = completions(orch.drain_events())
        assert f"logs_{orch.session.session_id}.txt" in {a.name for a in done.artifacts}
