from __future__ import annotations

import glob
import logging
import os
import re
from pathlib import Path
from typing import Iterable

from otrcut.config import Settings
from otrcut.errors import CatalogUnavailableError, ScanError
from otrcut.models import CatalogScan, Video, VideoStatus

logger = logging.getLogger(__name__)

OTR_NAME_PATTERN = re.compile(r"\w+_\d{2}\.\d{2}\.\d{2}_\d{2}-\d{2}_\w+")
ENCRYPTED_SUFFIX = ".otrkey"
CUT_MARKER = ".cut."
CUT_OUTPUT_SUFFIX = ".cut.mkv"
OTR_CONTAINERS = (".avi", ".mp4", ".mkv", ".ac3")
GLOB_MAGIC = re.compile(r"[*?[]")


def classify_filename(file_name: str) -> tuple[str, VideoStatus]:
    """Derive (key, status) from an OTR file name.

    The key is the name of the decoded recording, container included, so
    `X.mpg.HQ.avi.otrkey`, `X.mpg.HQ.avi`, `X.mpg.HQ.avi.cut.mkv` and
    `X.mpg.HQ.cut.avi` all map to `X.mpg.HQ.avi`.

    Raises ScanError for names that do not follow the OTR convention.
    """

    if not OTR_NAME_PATTERN.search(file_name):
        raise ScanError(file_name, "not an OTR recording")

    if file_name.endswith(ENCRYPTED_SUFFIX):
        return file_name[: -len(ENCRYPTED_SUFFIX)], VideoStatus.RAW

    if file_name.endswith(CUT_OUTPUT_SUFFIX):
        stem = file_name[: -len(CUT_OUTPUT_SUFFIX)]
        if os.path.splitext(stem)[1].lower() in OTR_CONTAINERS:
            return stem, VideoStatus.CUT

    if CUT_MARKER in file_name:
        return file_name.replace(CUT_MARKER, ".", 1), VideoStatus.CUT

    return file_name, VideoStatus.DECODED


def build_catalog(settings: Settings, extra_patterns: Iterable[str] = ()) -> CatalogScan:
    """Scan extra patterns plus the working directories into one video catalog."""

    patterns = [*extra_patterns, *(str(directory / "*") for directory in settings.paths.working_dirs())]
    scan = CatalogScan()
    scanned_locations = 0

    for pattern in patterns:
        matches = sorted(glob.glob(os.path.expanduser(pattern)))
        if matches or _base_dir_exists(pattern):
            scanned_locations += 1

        for raw_path in matches:
            file_path = Path(raw_path)
            if not file_path.is_file():
                continue

            try:
                key, status = classify_filename(file_path.name)
            except ScanError as exc:
                logger.debug("Skipping %s: %s", file_path, exc.reason)
                scan.errors.append(ScanError(file_path, exc.reason))
                continue

            existing = scan.videos.get(key)
            if existing is None:
                scan.videos[key] = Video(key=key, status=status, path=file_path)
                logger.debug("Found %s (%s) at %s", key, status.value, file_path)
                continue

            merge_into(existing, status=status, path=file_path, cleanup=settings.pipeline.cleanup)

    if scanned_locations == 0:
        raise CatalogUnavailableError(
            f"None of the input locations could be scanned: {', '.join(patterns)}"
        )

    logger.info("Catalog contains %d videos (%d files skipped)", len(scan.videos), len(scan.errors))
    return scan


def merge_into(video: Video, *, status: VideoStatus, path: Path, cleanup: bool) -> None:
    """Merge another file with the same key into an existing catalog entry."""

    same_file = _same_file(video.path, path)

    if status.rank > video.status.rank:
        loser = video.path
        video.status = status
        video.path = path
    elif status.rank < video.status.rank:
        loser = path
    else:
        loser = video.path
        video.path = path
        if same_file:
            return

    if same_file or not cleanup:
        return
    _remove_file(loser)


def _remove_file(path: Path) -> None:
    try:
        path.unlink()
    except OSError as exc:
        logger.warning("%s could not be deleted: %s", path, exc)
    else:
        logger.info("Deleted superseded file %s", path)


def _same_file(left: Path, right: Path) -> bool:
    return left.expanduser().resolve() == right.expanduser().resolve()


def _base_dir_exists(pattern: str) -> bool:
    base = os.path.expanduser(pattern)
    while GLOB_MAGIC.search(base):
        base = os.path.dirname(base)
    return Path(base or ".").exists()
