from __future__ import annotations

import json
from typing import Any, Iterable, Mapping

import typer

from otrcut.models import Video, VideoResult, VideoStatus

KEY_WIDTH = 60
STATUS_WIDTH = 8
CUTLIST_WIDTH = 2
RESULT_WIDTH = 8
RULE_WIDTH = KEY_WIDTH + STATUS_WIDTH + CUTLIST_WIDTH + RESULT_WIDTH + 3

NO_VIDEOS_MESSAGE = "No videos found."


def render_table(
    videos: Iterable[Video],
    *,
    cutlist_flags: Mapping[str, bool] | None = None,
    color: bool = True,
) -> str:
    """Render the per-video summary as a fixed-width text table."""

    ordered = sorted(videos, key=lambda video: video.key)
    if not ordered:
        return NO_VIDEOS_MESSAGE

    header = _row("Video", "Status", "CL", "Result")
    lines = [typer.style(header, bold=True) if color else header, "-" * RULE_WIDTH]
    for video in ordered:
        lines.append(
            _row(
                _shorten(video.key, KEY_WIDTH),
                video.status.value.upper(),
                _cutlist_marker(video, cutlist_flags, color=color),
                _result_label(video, color=color),
            )
        )
    return "\n".join(lines)


def summary_payload(
    videos: Iterable[Video],
    *,
    cutlist_flags: Mapping[str, bool] | None = None,
) -> list[dict[str, Any]]:
    """Build a JSON-serializable summary, one entry per video."""

    payload: list[dict[str, Any]] = []
    for video in sorted(videos, key=lambda item: item.key):
        spec = video.cut_spec
        payload.append(
            {
                "key": video.key,
                "status": video.status.value,
                "result": video.result.value if video.result else None,
                "path": str(video.path),
                "has_cutlists": _has_cutlists(video, cutlist_flags),
                "cutlist_id": spec.source_id if spec else None,
                "segment_count": len(spec.segments) if spec else 0,
                "error": video.error,
            }
        )
    return payload


def render_json(videos: Iterable[Video], *, cutlist_flags: Mapping[str, bool] | None = None) -> str:
    return json.dumps(summary_payload(videos, cutlist_flags=cutlist_flags), indent=2, ensure_ascii=False)


def _row(key: str, status: str, cutlist: str, result: str) -> str:
    return f"{key:<{KEY_WIDTH}} {status:<{STATUS_WIDTH}} {cutlist:<{CUTLIST_WIDTH}} {result}"


def _shorten(text: str, width: int) -> str:
    if len(text) <= width:
        return text
    return text[: width - 3] + "..."


def _has_cutlists(video: Video, cutlist_flags: Mapping[str, bool] | None) -> bool | None:
    if video.cut_spec is not None:
        return True
    if cutlist_flags is None or video.key not in cutlist_flags:
        return None
    return cutlist_flags[video.key]


def _cutlist_marker(video: Video, cutlist_flags: Mapping[str, bool] | None, *, color: bool) -> str:
    available = _has_cutlists(video, cutlist_flags)
    if available is None:
        return "  "
    marker = "++" if available else "--"
    if not color:
        return marker
    return typer.style(marker, fg=typer.colors.GREEN if available else typer.colors.RED, bold=True)


def _result_label(video: Video, *, color: bool) -> str:
    result = video.result
    if result is None:
        return "" if video.status is VideoStatus.CUT else "pending"
    label = result.value.upper()
    if not color:
        return label
    return typer.style(label, fg=typer.colors.GREEN if result is VideoResult.OK else typer.colors.RED, bold=True)
