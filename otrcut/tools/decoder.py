from __future__ import annotations

import logging
from pathlib import Path

from otrcut.config import DecoderSettings
from otrcut.errors import ToolInvocationError
from otrcut.pipeline.progress import ProgressHandle
from otrcut.tools.runner import ToolRunner, parse_progress, run_tool

DIAGNOSTICS_SUFFIX = ".decode.error"
PHASE_MARKERS = ("Dekodiere", "Ausgabe")
PHASE_COUNT = 3

logger = logging.getLogger(__name__)


class DecodeProgress:
    """Folds otrdecoder's per-phase percentages into one overall value.

    otrdecoder reports 0-100% for each of its three phases (input check,
    decoding, output check); a phase marker word precedes phases two and three.
    """

    def __init__(self, handle: ProgressHandle | None = None) -> None:
        self._handle = handle
        self._completed_phases = 0
        self.overall = 0

    def feed(self, line: str) -> None:
        for word in line.split():
            if any(marker in word for marker in PHASE_MARKERS):
                self._completed_phases = min(self._completed_phases + 1, PHASE_COUNT - 1)
                continue

            percent = parse_progress(word)
            if percent is None:
                continue
            overall = (self._completed_phases * 100 + percent) // PHASE_COUNT
            if overall > self.overall:
                self.overall = overall
                if self._handle is not None:
                    self._handle.set(overall)


def build_decode_command(settings: DecoderSettings, source: Path, output_dir: Path) -> list[str]:
    if not settings.username or not settings.password:
        raise ToolInvocationError("OTR credentials are not configured (decoder.username / decoder.password).")

    return [
        settings.executable,
        "-e",
        settings.username,
        "-p",
        settings.password,
        "-i",
        str(source),
        "-o",
        str(output_dir),
    ]


def decode_video(
    *,
    key: str,
    source: Path,
    output_dir: Path,
    log_dir: Path,
    settings: DecoderSettings,
    runner: ToolRunner,
    progress: ProgressHandle | None = None,
) -> Path:
    """Decode an .otrkey file into output_dir and return the decoded file path."""

    command = build_decode_command(settings, source, output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    tracker = DecodeProgress(progress)
    try:
        run_tool(
            runner,
            command,
            tool_name=Path(settings.executable).name,
            diagnostics_path=diagnostics_path(log_dir, key),
            on_output=tracker.feed,
        )
    finally:
        if progress is not None:
            progress.complete()

    decoded_path = output_dir / key
    logger.info("Decoded %s to %s", source.name, decoded_path)
    return decoded_path


def diagnostics_path(log_dir: Path, key: str) -> Path:
    return log_dir / f"{key}{DIAGNOSTICS_SUFFIX}"
