from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class VideoStatus(str, Enum):
    RAW = "raw"
    DECODED = "decoded"
    CUT = "cut"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {VideoStatus.RAW: 0, VideoStatus.DECODED: 1, VideoStatus.CUT: 2}


class VideoResult(str, Enum):
    OK = "ok"
    ERROR = "error"


@dataclass(slots=True)
class Segment:
    """One part of a recording that is kept when cutting."""

    time_start: float | None = None
    time_duration: float | None = None
    frame_start: int | None = None
    frame_duration: int | None = None

    @property
    def has_time_range(self) -> bool:
        return self.time_start is not None and self.time_duration is not None

    @property
    def has_frame_range(self) -> bool:
        return self.frame_start is not None and self.frame_duration is not None

    @property
    def is_valid(self) -> bool:
        return self.has_time_range or self.has_frame_range


@dataclass(slots=True)
class CutSpec:
    """A parsed cutlist: metadata plus the ordered segments to keep."""

    source_id: str
    segments: list[Segment]
    aspect_ratio: str | None = None
    fps: float | None = None
    application: str | None = None


@dataclass(slots=True)
class CandidateHeader:
    """Cutlist listing entry; higher score is preferred."""

    id: str
    score: float


@dataclass(slots=True)
class Video:
    """A recording tracked through raw -> decoded -> cut within one run."""

    key: str
    status: VideoStatus
    path: Path
    result: VideoResult | None = None
    cut_spec: CutSpec | None = None
    error: str | None = None

    @property
    def is_cut_eligible(self) -> bool:
        return (
            self.status is VideoStatus.DECODED
            and self.cut_spec is not None
            and any(segment.is_valid for segment in self.cut_spec.segments)
        )


@dataclass(slots=True)
class CatalogScan:
    """Outcome of scanning all input locations."""

    videos: dict[str, Video] = field(default_factory=dict)
    errors: list[Exception] = field(default_factory=list)
