from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from time import perf_counter
from typing import Callable, TypeVar

import typer
import yaml

from otrcut.catalog.scanner import build_catalog
from otrcut.config import Settings, ensure_working_dirs, load_settings
from otrcut.cutlists.client import has_cutlists
from otrcut.errors import CatalogUnavailableError, OtrCutError
from otrcut.logging_config import configure_logging
from otrcut.models import Video, VideoStatus
from otrcut.pipeline.orchestrator import RunContext, process_videos
from otrcut.pipeline.progress import ProgressRegistry, Stage
from otrcut.report.summary import render_json, render_table

app = typer.Typer(help="Decode OTR recordings, fetch cutlists and cut out the commercials.")
config_app = typer.Typer(help="Configuration commands.")

app.add_typer(config_app, name="config")

logger = logging.getLogger(__name__)

T = TypeVar("T")

OUTPUT_FORMATS = ("table", "json")
STAGE_LABELS = {Stage.DECODE: "Decode", Stage.ACQUIRE: "Fetch cutlist", Stage.APPLY: "Cut"}

CONFIG_OPTION = typer.Option(
    Path("configs/default.yaml"),
    "--config",
    "-c",
    envvar="OTRCUT_CONFIG",
    help="Path to YAML configuration file.",
)
PATTERNS_ARGUMENT = typer.Argument(None, help="Additional files or glob patterns to scan.")
FORMAT_OPTION = typer.Option("table", "--format", "-f", help="Summary format: table or json.")
CHECK_CUTLISTS_OPTION = typer.Option(
    True,
    help="Ask the cutlist server whether cutlists exist for each video (CL column).",
)


def _run_with_progress(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    step = f"[{step_index}/{total_steps}] {label}"
    typer.echo(f"{step}...", err=True)
    started_at = perf_counter()
    try:
        result = work()
    except OtrCutError:
        elapsed = perf_counter() - started_at
        logger.debug("%s failed after %.3fs", label, elapsed)
        typer.echo(f"{step} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    logger.info("%s finished in %.3fs", label, elapsed)
    typer.echo(f"{step} done in {elapsed:.1f}s", err=True)
    return result


def _bootstrap(config_path: Path) -> Settings:
    try:
        settings = load_settings(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    configure_logging(settings.logging)
    ensure_working_dirs(settings)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _echo_stage_done(key: str, stage: Stage, percent: int) -> None:
    if percent >= 100:
        typer.echo(f"    {STAGE_LABELS[stage]:<13} :: {key} 100%", err=True)


def _cutlist_flags(videos: list[Video], settings: Settings) -> dict[str, bool]:
    pending = [video for video in videos if video.status is not VideoStatus.CUT and video.cut_spec is None]
    if not pending:
        return {}

    def _check(video: Video) -> bool:
        return has_cutlists(
            video.key,
            server_url=settings.cutlist.server_url,
            timeout_seconds=settings.cutlist.timeout_seconds,
        )

    with ThreadPoolExecutor(max_workers=settings.pipeline.max_parallel_items) as pool:
        flags = list(pool.map(_check, pending))
    return {video.key: flag for video, flag in zip(pending, flags)}


def _render(videos: list[Video], output_format: str, cutlist_flags: dict[str, bool] | None) -> str:
    if output_format == "json":
        return render_json(videos, cutlist_flags=cutlist_flags)
    return render_table(videos, cutlist_flags=cutlist_flags)


def _validate_format(output_format: str) -> str:
    if output_format not in OUTPUT_FORMATS:
        raise typer.BadParameter(f"must be one of {', '.join(OUTPUT_FORMATS)}", param_hint="--format")
    return output_format


@config_app.command("show")
def show_config(config_path: Path = CONFIG_OPTION) -> None:
    """Print resolved runtime configuration (password masked)."""

    settings = _bootstrap(config_path)
    payload = settings.model_dump(mode="json")
    if payload["decoder"]["password"]:
        payload["decoder"]["password"] = "***"
    typer.echo(json.dumps(payload, indent=2))


@app.command("list")
def list_videos(
    patterns: list[str] | None = PATTERNS_ARGUMENT,
    config_path: Path = CONFIG_OPTION,
    output_format: str = FORMAT_OPTION,
    check_cutlists: bool = CHECK_CUTLISTS_OPTION,
) -> None:
    """List videos with their status; nothing is decoded or cut."""

    output_format = _validate_format(output_format)
    settings = _bootstrap(config_path)
    total_steps = 2

    try:
        scan = _run_with_progress(1, total_steps, "Scan videos", lambda: build_catalog(settings, patterns or []))
        videos = list(scan.videos.values())
        flags = (
            _run_with_progress(2, total_steps, "Check cutlists", lambda: _cutlist_flags(videos, settings))
            if check_cutlists
            else None
        )
    except CatalogUnavailableError as exc:
        logger.error("Scan failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(_render(videos, output_format, flags))


@app.command("process")
def process(
    patterns: list[str] | None = PATTERNS_ARGUMENT,
    config_path: Path = CONFIG_OPTION,
    output_format: str = FORMAT_OPTION,
    check_cutlists: bool = CHECK_CUTLISTS_OPTION,
) -> None:
    """Decode, fetch cutlists for and cut all videos, then print a summary."""

    output_format = _validate_format(output_format)
    settings = _bootstrap(config_path)
    total_steps = 3
    context = RunContext(settings=settings, progress=ProgressRegistry(listener=_echo_stage_done))

    try:
        scan = _run_with_progress(1, total_steps, "Scan videos", lambda: build_catalog(settings, patterns or []))
        processed = _run_with_progress(2, total_steps, "Process videos", lambda: process_videos(scan.videos, context))
        videos = list(scan.videos.values())
        flags = (
            _run_with_progress(3, total_steps, "Check cutlists", lambda: _cutlist_flags(videos, settings))
            if check_cutlists
            else None
        )
    except CatalogUnavailableError as exc:
        logger.error("Scan failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    logger.info("Processed %d of %d videos", len(processed), len(videos))
    typer.echo(_render(videos, output_format, flags))


if __name__ == "__main__":
    app()
