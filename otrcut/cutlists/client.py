from __future__ import annotations

import http.client
import logging
import math
import re
from urllib import parse, request
from urllib.error import HTTPError, URLError
from xml.etree import ElementTree

from otrcut.errors import FetchError
from otrcut.models import CandidateHeader

DEFAULT_SERVER_URL = "http://cutlist.at/"
DEFAULT_TIMEOUT_SECONDS = 20
USER_AGENT = "otrcut/0.1"
LEGACY_ENCODINGS = ("utf-8", "cp1252")

CUTLIST_TAG = "CUTLIST"
ID_TAG = "ID"
RATING_TAG = "RATING"

_XML_DECLARATION = re.compile(rb"^\s*<\?xml[^>]*\?>")

logger = logging.getLogger(__name__)


def fetch_headers(
    name: str,
    *,
    server_url: str = DEFAULT_SERVER_URL,
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
) -> list[CandidateHeader]:
    """Return the cutlists the server lists for a recording, best score first.

    Any network or decoding problem yields an empty list.
    """

    url = f"{server_url}getxml.php?{parse.urlencode({'name': name})}"
    try:
        payload = download(url, timeout_seconds=timeout_seconds)
        headers = parse_headers(payload)
    except FetchError as exc:
        logger.warning("No cutlist headers for %s: %s", name, exc)
        return []

    ranked = rank_headers(headers)
    logger.debug("Cutlist headers for %s: %s", name, [(header.id, header.score) for header in ranked])
    return ranked


def has_cutlists(
    name: str,
    *,
    server_url: str = DEFAULT_SERVER_URL,
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
) -> bool:
    """Check whether the server lists at least one cutlist for a recording."""

    return bool(fetch_headers(name, server_url=server_url, timeout_seconds=timeout_seconds))


def rank_headers(headers: list[CandidateHeader]) -> list[CandidateHeader]:
    """Sort descending by score; equal scores keep their response order."""

    return sorted(headers, key=lambda header: header.score, reverse=True)


def parse_headers(payload: bytes) -> list[CandidateHeader]:
    """Extract (id, rating) pairs from a cutlist listing document."""

    root = _parse_xml(payload)

    headers: list[CandidateHeader] = []
    for element in root.iter():
        if _local_name(element.tag) != CUTLIST_TAG:
            continue

        values: dict[str, str] = {}
        for child in element:
            tag = _local_name(child.tag)
            if tag in (ID_TAG, RATING_TAG):
                values[tag] = (child.text or "").strip()

        header_id = values.get(ID_TAG, "")
        if not header_id:
            continue
        headers.append(CandidateHeader(id=header_id, score=_to_score(values.get(RATING_TAG))))

    return headers


def download(url: str, *, timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS) -> bytes:
    """GET a cutlist server resource and return the raw body."""

    req = request.Request(url, method="GET", headers={"User-Agent": USER_AGENT})
    try:
        with request.urlopen(req, timeout=timeout_seconds) as response:
            return response.read()
    except (HTTPError, URLError, http.client.HTTPException, TimeoutError, OSError, ValueError) as exc:
        raise FetchError(f"Request to {url} failed: {exc}") from exc


def decode_text(payload: bytes) -> str:
    """Decode server text, falling back to legacy single-byte encodings."""

    for encoding in LEGACY_ENCODINGS:
        try:
            return payload.decode(encoding)
        except UnicodeDecodeError:
            continue
    # latin-1 maps every byte
    return payload.decode("latin-1", errors="replace")


def _parse_xml(payload: bytes) -> ElementTree.Element:
    try:
        return ElementTree.fromstring(payload)
    except ElementTree.ParseError as exc:
        logger.debug("Strict XML parse failed (%s); retrying with legacy decoding.", exc)

    text = decode_text(_XML_DECLARATION.sub(b"", payload, count=1))
    try:
        return ElementTree.fromstring(text)
    except ElementTree.ParseError as exc:
        raise FetchError(f"Cutlist listing is not valid XML: {exc}") from exc


def _local_name(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].upper()


def _to_score(raw_value: str | None) -> float:
    if raw_value in (None, ""):
        return 0.0
    try:
        score = float(raw_value.replace(",", "."))
    except ValueError:
        return 0.0
    return score if math.isfinite(score) else 0.0
