from __future__ import annotations

import configparser
import logging
from typing import Iterable
from urllib import parse

from otrcut.cutlists import client
from otrcut.errors import FetchError, SpecIncompleteError
from otrcut.models import CutSpec, Segment

SECTION_GENERAL = "general"
SECTION_CUT_PREFIX = "cut"
KEY_NUM_CUTS = "noofcuts"
KEY_RATIO = "displayaspectratio"
KEY_FPS = "framespersecond"
KEY_APPLICATION = "intendedcutapplicationname"
KEY_TIME_START = "start"
KEY_TIME_DURATION = "duration"
KEY_FRAME_START = "startframe"
KEY_FRAME_DURATION = "durationframes"

logger = logging.getLogger(__name__)


def fetch_detail(
    candidate_ids: Iterable[str],
    *,
    server_url: str = client.DEFAULT_SERVER_URL,
    timeout_seconds: int = client.DEFAULT_TIMEOUT_SECONDS,
) -> CutSpec | None:
    """Return the first candidate, in the given order, that parses into a usable cutlist."""

    for candidate_id in candidate_ids:
        url = f"{server_url}getfile.php?{parse.urlencode({'id': candidate_id})}"
        try:
            payload = client.download(url, timeout_seconds=timeout_seconds)
            spec = parse_cutlist(candidate_id, client.decode_text(payload))
        except FetchError as exc:
            logger.warning("Cutlist %s unavailable: %s", candidate_id, exc)
            continue
        except SpecIncompleteError as exc:
            logger.warning("Cutlist %s rejected: %s", candidate_id, exc)
            continue

        logger.info("Using cutlist %s with %d segments", candidate_id, len(spec.segments))
        return spec

    return None


def parse_cutlist(candidate_id: str, text: str) -> CutSpec:
    """Parse a cutlist INI document.

    Metadata keys are optional. A missing segment count, a segment without
    any complete time or frame range, or zero segments reject the whole
    cutlist with SpecIncompleteError.
    """

    sections = _load_sections(candidate_id, text)

    general = sections.get(SECTION_GENERAL)
    if general is None:
        raise SpecIncompleteError(f"Cutlist {candidate_id} has no [{SECTION_GENERAL}] section.")

    spec = CutSpec(source_id=candidate_id, segments=[])
    spec.aspect_ratio = _optional_text(candidate_id, general, KEY_RATIO)
    fps_text = _optional_text(candidate_id, general, KEY_FPS)
    spec.fps = _to_float(fps_text) if fps_text else None
    spec.application = _optional_text(candidate_id, general, KEY_APPLICATION)

    num_cuts_text = general.get(KEY_NUM_CUTS)
    if num_cuts_text is None:
        raise SpecIncompleteError(f"Cutlist {candidate_id} does not declare '{KEY_NUM_CUTS}'.")
    try:
        num_cuts = int(num_cuts_text.strip())
    except ValueError as exc:
        raise SpecIncompleteError(
            f"Cutlist {candidate_id} has invalid '{KEY_NUM_CUTS}': {num_cuts_text!r}"
        ) from exc

    for index in range(num_cuts):
        section_name = f"{SECTION_CUT_PREFIX}{index}"
        section = sections.get(section_name)
        if section is None:
            logger.error("Cutlist %s does not have section [%s]", candidate_id, section_name)
            break

        segment = _parse_segment(section)
        if not segment.is_valid:
            raise SpecIncompleteError(
                f"Cutlist {candidate_id}: [{section_name}] has neither a time nor a frame range."
            )
        spec.segments.append(segment)

    if not spec.segments:
        raise SpecIncompleteError(f"Cutlist {candidate_id} contains no segments.")

    return spec


def _load_sections(candidate_id: str, text: str) -> dict[str, dict[str, str]]:
    parser = configparser.ConfigParser(strict=False, interpolation=None)
    try:
        parser.read_string(text.lstrip("\ufeff"), source=f"cutlist {candidate_id}")
    except configparser.Error as exc:
        raise FetchError(f"Cutlist {candidate_id} is not a valid INI document: {exc}") from exc

    return {name.lower(): dict(parser.items(name, raw=True)) for name in parser.sections()}


def _parse_segment(section: dict[str, str]) -> Segment:
    segment = Segment()
    time_start = _to_float(section.get(KEY_TIME_START))
    time_duration = _to_float(section.get(KEY_TIME_DURATION))
    if time_start is not None and time_duration is not None:
        segment.time_start = time_start
        segment.time_duration = time_duration

    frame_start = _to_int(section.get(KEY_FRAME_START))
    frame_duration = _to_int(section.get(KEY_FRAME_DURATION))
    if frame_start is not None and frame_duration is not None:
        segment.frame_start = frame_start
        segment.frame_duration = frame_duration

    return segment


def _optional_text(candidate_id: str, section: dict[str, str], key: str) -> str | None:
    value = section.get(key)
    if value is None or not value.strip():
        logger.warning("Cutlist %s does not have key '%s'", candidate_id, key)
        return None
    return value.strip()


def _to_float(raw_value: str | None) -> float | None:
    if raw_value is None or not raw_value.strip():
        return None
    try:
        return float(raw_value.strip().replace(",", "."))
    except ValueError:
        return None


def _to_int(raw_value: str | None) -> int | None:
    if raw_value is None or not raw_value.strip():
        return None
    try:
        return int(raw_value.strip())
    except ValueError:
        return None
