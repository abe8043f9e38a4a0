from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from otrcut.config import Settings
from otrcut.cutlists.client import fetch_headers
from otrcut.cutlists.selector import fetch_detail
from otrcut.errors import OtrCutError
from otrcut.models import Video, VideoResult, VideoStatus
from otrcut.pipeline.progress import ProgressRegistry, Stage
from otrcut.tools import cutter, decoder
from otrcut.tools.runner import SubprocessToolRunner, ToolRunner, remove_diagnostics

JOIN_DEGREE = 2

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunContext:
    """Everything a pipeline run needs, built once and passed to each stage."""

    settings: Settings
    runner: ToolRunner = field(default_factory=SubprocessToolRunner)
    progress: ProgressRegistry = field(default_factory=ProgressRegistry)


@dataclass(slots=True)
class StageSignal:
    """Completion message sent by a predecessor stage to the apply stage."""

    stage: Stage
    ok: bool
    error: str | None = None


class JoinBarrier:
    """Collects a fixed number of stage signals before releasing the waiter."""

    def __init__(self, degree: int = JOIN_DEGREE) -> None:
        self.degree = degree
        self._signals: list[StageSignal] = []
        self._condition = threading.Condition()

    @property
    def pending(self) -> int:
        with self._condition:
            return self.degree - len(self._signals)

    def signal(self, signal: StageSignal) -> None:
        with self._condition:
            if len(self._signals) >= self.degree:
                raise RuntimeError(f"Join barrier already received {self.degree} signals.")
            self._signals.append(signal)
            self._condition.notify_all()

    def wait(self, timeout: float | None = None) -> list[StageSignal]:
        with self._condition:
            released = self._condition.wait_for(lambda: len(self._signals) >= self.degree, timeout=timeout)
            if not released:
                raise TimeoutError(f"Join barrier still waiting for {self.degree - len(self._signals)} signals.")
            return list(self._signals)


def process_videos(videos: Mapping[str, Video], context: RunContext) -> list[str]:
    """Decode, fetch cutlists for and cut every video that is not cut yet.

    Blocks until all stage groups have finished and returns the keys of the
    videos that were processed.
    """

    eligible = [video for video in videos.values() if video.status is not VideoStatus.CUT]
    if not eligible:
        logger.info("Nothing to process: all %d videos are cut.", len(videos))
        return []

    max_items = context.settings.pipeline.max_parallel_items
    logger.info("Processing %d videos with up to %d in parallel", len(eligible), max_items)

    with ThreadPoolExecutor(max_workers=JOIN_DEGREE * max_items, thread_name_prefix="stage") as stage_pool:
        with ThreadPoolExecutor(max_workers=max_items, thread_name_prefix="video") as group_pool:
            groups = [group_pool.submit(run_stage_group, video, context, stage_pool) for video in eligible]
            wait(groups)

    for group in groups:
        group.result()

    return [video.key for video in eligible]


def run_stage_group(video: Video, context: RunContext, stage_pool: ThreadPoolExecutor) -> None:
    """Run decode and acquire concurrently for one video, then apply once both are done."""

    barrier = JoinBarrier()
    stages: list[Future[None]] = []

    if video.status is VideoStatus.RAW:
        stages.append(stage_pool.submit(decode_stage, video, context, barrier))
    else:
        barrier.signal(StageSignal(Stage.DECODE, ok=True))

    stages.append(stage_pool.submit(acquire_stage, video, context, barrier))

    signals = barrier.wait()
    apply_stage(video, context, signals)

    for stage in stages:
        stage.result()


def decode_stage(video: Video, context: RunContext, barrier: JoinBarrier) -> None:
    signal = StageSignal(Stage.DECODE, ok=False, error="decode stage aborted")
    try:
        signal = _decode(video, context)
    finally:
        barrier.signal(signal)


def acquire_stage(video: Video, context: RunContext, barrier: JoinBarrier) -> None:
    signal = StageSignal(Stage.ACQUIRE, ok=False, error="cutlist stage aborted")
    try:
        signal = _acquire(video, context)
    finally:
        barrier.signal(signal)


def apply_stage(video: Video, context: RunContext, signals: list[StageSignal]) -> None:
    failures = [signal for signal in signals if not signal.ok]
    if failures:
        logger.info("Not cutting %s: %s", video.key, "; ".join(str(signal.error) for signal in failures))
        video.result = VideoResult.ERROR
        video.error = video.error or failures[0].error
        return

    if not video.is_cut_eligible:
        video.result = VideoResult.ERROR
        video.error = "video is not decoded or has no usable cutlist"
        logger.error("Not cutting %s: %s", video.key, video.error)
        return

    paths = context.settings.paths
    diagnostics = cutter.diagnostics_path(paths.log_dir, video.key)
    remove_diagnostics(diagnostics)

    try:
        source = _stage_file(video.path, paths.decoded_dir)
        video.path = source
        output = cutter.cut_video(
            key=video.key,
            source=source,
            spec=video.cut_spec,
            output_dir=paths.cut_dir,
            log_dir=paths.log_dir,
            settings=context.settings.cutter,
            runner=context.runner,
            progress=context.progress.handle(video.key, Stage.APPLY),
        )
    except (OtrCutError, OSError) as exc:
        logger.error("Cutting %s failed: %s", video.key, exc)
        video.result = VideoResult.ERROR
        video.error = str(exc)
        return

    if context.settings.pipeline.cleanup:
        _remove_superseded(source)
    video.status = VideoStatus.CUT
    video.path = output
    video.result = VideoResult.OK
    video.error = None


def _decode(video: Video, context: RunContext) -> StageSignal:
    paths = context.settings.paths
    diagnostics = decoder.diagnostics_path(paths.log_dir, video.key)
    remove_diagnostics(diagnostics)

    try:
        source = _stage_file(video.path, paths.encoded_dir)
        video.path = source
        decoded = decoder.decode_video(
            key=video.key,
            source=source,
            output_dir=paths.decoded_dir,
            log_dir=paths.log_dir,
            settings=context.settings.decoder,
            runner=context.runner,
            progress=context.progress.handle(video.key, Stage.DECODE),
        )
    except (OtrCutError, OSError) as exc:
        logger.error("Decoding %s failed: %s", video.key, exc)
        video.result = VideoResult.ERROR
        video.error = str(exc)
        return StageSignal(Stage.DECODE, ok=False, error=str(exc))

    if context.settings.pipeline.cleanup:
        _remove_superseded(source)
    video.status = VideoStatus.DECODED
    video.path = decoded
    video.result = VideoResult.OK
    return StageSignal(Stage.DECODE, ok=True)


def _acquire(video: Video, context: RunContext) -> StageSignal:
    cutlist = context.settings.cutlist
    with context.progress.handle(video.key, Stage.ACQUIRE).ticking():
        headers = fetch_headers(
            video.key,
            server_url=cutlist.server_url,
            timeout_seconds=cutlist.timeout_seconds,
        )
        if not headers:
            return StageSignal(Stage.ACQUIRE, ok=False, error="no cutlists available")

        spec = fetch_detail(
            [header.id for header in headers],
            server_url=cutlist.server_url,
            timeout_seconds=cutlist.timeout_seconds,
        )

    if spec is None:
        return StageSignal(Stage.ACQUIRE, ok=False, error="no cutlist could be read")

    video.cut_spec = spec
    return StageSignal(Stage.ACQUIRE, ok=True)


def _stage_file(path: Path, directory: Path) -> Path:
    """Move a file into the working sub-directory for its status if it lives elsewhere."""

    target = directory / path.name
    if path.parent.expanduser().resolve() == directory.expanduser().resolve():
        return path

    directory.mkdir(parents=True, exist_ok=True)
    moved = Path(shutil.move(str(path), str(target)))
    logger.debug("Moved %s to %s", path, moved)
    return moved


def _remove_superseded(path: Path) -> None:
    try:
        path.unlink()
    except OSError as exc:
        logger.warning("%s could not be deleted: %s", path, exc)
    else:
        logger.debug("%s has been deleted", path)
