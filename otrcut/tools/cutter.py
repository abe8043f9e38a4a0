from __future__ import annotations

import logging
from pathlib import Path

from otrcut.config import CutterSettings
from otrcut.errors import SpecIncompleteError
from otrcut.models import CutSpec, Segment
from otrcut.pipeline.progress import ProgressHandle
from otrcut.tools.runner import ToolRunner, parse_progress, run_tool

DIAGNOSTICS_SUFFIX = ".cut.error"
OUTPUT_SUFFIX = ".cut.mkv"

logger = logging.getLogger(__name__)


def format_timestamp(seconds: float) -> str:
    """Format seconds as HH:MM:SS.ffffff."""

    total_micros = round(max(seconds, 0.0) * 1_000_000)
    whole_seconds, micros = divmod(total_micros, 1_000_000)
    hours, remainder = divmod(whole_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{micros:06d}"


def build_split_spec(spec: CutSpec) -> str:
    """Express the cutlist as an mkvmerge --split argument.

    Frame ranges are preferred; time ranges are used when not every segment
    has frames. Mixed cutlists are converted to frames with the cutlist fps.
    """

    segments = spec.segments
    if not segments:
        raise SpecIncompleteError(f"Cutlist {spec.source_id} contains no segments.")

    if all(segment.has_frame_range for segment in segments):
        ranges = [_frame_range(segment.frame_start, segment.frame_duration) for segment in segments]
        return "parts-frames:" + ",+".join(ranges)

    if all(segment.has_time_range for segment in segments):
        ranges = [
            f"{format_timestamp(segment.time_start)}-{format_timestamp(segment.time_start + segment.time_duration)}"
            for segment in segments
        ]
        return "parts:" + ",+".join(ranges)

    if not spec.fps:
        raise SpecIncompleteError(
            f"Cutlist {spec.source_id} mixes time and frame segments but declares no frame rate."
        )
    ranges = [_frame_range(*_as_frames(segment, spec.fps)) for segment in segments]
    return "parts-frames:" + ",+".join(ranges)


def build_cut_command(settings: CutterSettings, source: Path, split_spec: str, output: Path) -> list[str]:
    return [
        settings.executable,
        "-o",
        str(output),
        "--split",
        split_spec,
        str(source),
    ]


def cut_video(
    *,
    key: str,
    source: Path,
    spec: CutSpec,
    output_dir: Path,
    log_dir: Path,
    settings: CutterSettings,
    runner: ToolRunner,
    progress: ProgressHandle | None = None,
) -> Path:
    """Cut a decoded recording according to its cutlist and return the output path."""

    output_path = output_dir / f"{key}{OUTPUT_SUFFIX}"
    command = build_cut_command(settings, source, build_split_spec(spec), output_path)
    output_dir.mkdir(parents=True, exist_ok=True)

    def _on_output(line: str) -> None:
        percent = parse_progress(line)
        if percent is not None and progress is not None:
            progress.set(percent)

    try:
        run_tool(
            runner,
            command,
            tool_name=Path(settings.executable).name,
            diagnostics_path=diagnostics_path(log_dir, key),
            on_output=_on_output,
        )
    finally:
        if progress is not None:
            progress.complete()

    logger.info("Cut %s into %s using cutlist %s", source.name, output_path, spec.source_id)
    return output_path


def diagnostics_path(log_dir: Path, key: str) -> Path:
    return log_dir / f"{key}{DIAGNOSTICS_SUFFIX}"


def _frame_range(start: int, duration: int) -> str:
    return f"{start}-{start + duration}"


def _as_frames(segment: Segment, fps: float) -> tuple[int, int]:
    if segment.has_frame_range:
        return segment.frame_start, segment.frame_duration
    return round(segment.time_start * fps), round(segment.time_duration * fps)
