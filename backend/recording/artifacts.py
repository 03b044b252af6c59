import logging
from dataclasses import dataclass, field
from pathlib import Path

from recording.clips import Clip, PartialClip, SegmentClip

logger = logging.getLogger("uvicorn.error")


@dataclass
class CaptureResult:
    """Everything a successful session hands to the caller."""
    session_id: str
    segments: list[SegmentClip]
    partials: dict[int, list[PartialClip]] = field(default_factory=dict)
    challenge_clips: dict[int, Clip] = field(default_factory=dict)
    challenge_attempts: dict[int, int] = field(default_factory=dict)
    head_turn: Clip | None = None
    reference_expressions: dict[str, float] = field(default_factory=dict)
    reset_count: int = 0
    log_text: str = ""


@dataclass
class Artifact:
    name: str
    clip: Clip | None = None
    text: str | None = None
    upload_index: int | None = None


def segment_clip_name(segment: int, start: int, end: int, extension: str, part: int | None = None) -> str:
    if part is None:
        return f"segment_{segment}_{start}-{end}.{extension}"
    return f"segment_{segment}_{start}-{end}_({part}).{extension}"


def head_clip_name(extension: str, attempt: int | None = None) -> str:
    if attempt is None:
        return f"head_turn.{extension}"
    return f"head{attempt}.{extension}"


def collect_artifacts(result: CaptureResult) -> list[Artifact]:
    artifacts = []
    for seg in result.segments:
        index = len(artifacts) + 1
        artifacts.append(Artifact(
            name=segment_clip_name(index, seg.start_seconds, seg.end_seconds, seg.clip.codec.extension),
            clip=seg.clip,
            upload_index=index,
        ))
    for segment in sorted(result.partials):
        for k, partial in enumerate(result.partials[segment], start=1):
            artifacts.append(Artifact(
                name=segment_clip_name(segment, partial.start_seconds, partial.end_seconds,
                                       partial.clip.codec.extension, part=k),
                clip=partial.clip,
            ))
    for segment in sorted(result.challenge_clips):
        clip = result.challenge_clips[segment]
        attempt = result.challenge_attempts.get(segment, 1)
        artifacts.append(Artifact(
            name=f"segment_{segment}_{head_clip_name(clip.codec.extension, attempt)}",
            clip=clip,
        ))
    if result.head_turn is not None:
        artifacts.append(Artifact(
            name=head_clip_name(result.head_turn.codec.extension),
            clip=result.head_turn,
            upload_index=0,
        ))
    if result.log_text:
        artifacts.append(Artifact(name=f"logs_{result.session_id}.txt", text=result.log_text))
    return artifacts


def export_artifacts(result: CaptureResult, out_dir: Path) -> list[Path]:
    """Write every clip and the session log under out_dir/<session_id>/."""
    target = Path(out_dir) / result.session_id
    target.mkdir(parents=True, exist_ok=True)
    written = []
    for artifact in collect_artifacts(result):
        path = target / artifact.name
        if artifact.clip is not None:
            path.write_bytes(artifact.clip.encode())
        else:
            path.write_text(artifact.text or "")
        written.append(path)
        logger.info(f"[Export] wrote {path}")
    return written
