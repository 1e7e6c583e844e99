"""
Pydantic models for the editable multi-track timeline.

The editor owns and mutates these structures; the export pipeline only
reads them. This module defines:
- Tracks and the clips placed on them
- Media assets (owned by the asset registry) and their caption documents
- The analysis summary produced for a timeline (gaps, segments, concurrency)

All times are in seconds. Clip ``start_time`` is timeline-absolute while
``trim_in``/``trim_out`` are relative to the backing asset.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


# =============================================================================
# ENUMS
# =============================================================================


class TrackKind(str, Enum):
    """Type of track content."""

    VIDEO = "video"
    AUDIO = "audio"
    OVERLAY = "overlay"  # Video drawn above the main video tracks


# =============================================================================
# CAPTIONS
# =============================================================================


class CaptionSpan(BaseModel):
    """A single time-stamped piece of caption text."""

    start: float = Field(ge=0, description="Start time in seconds")
    end: float = Field(ge=0, description="End time in seconds")
    text: str = Field(description="Caption text (may contain newlines)")

    @model_validator(mode="after")
    def _check_order(self) -> CaptionSpan:
        if self.end < self.start:
            raise ValueError("Caption span end must not precede its start")
        return self

    @property
    def duration(self) -> float:
        return self.end - self.start


class CaptionDocument(BaseModel):
    """
    Ordered caption spans.

    Documents attached to an asset are asset-relative; documents produced by
    the caption rebaser are timeline-relative.
    """

    spans: list[CaptionSpan] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.spans

    @classmethod
    def from_srt(cls, text: str) -> CaptionDocument:
        """Parse SubRip text into a document."""
        from utils.caption_utils import parse_srt

        return parse_srt(text)

    def to_srt(self) -> str:
        """Serialize to SubRip text, re-indexed from 1."""
        from utils.caption_utils import format_srt

        return format_srt(self)


# =============================================================================
# ASSETS
# =============================================================================


class Asset(BaseModel):
    """
    Media descriptor for an imported file.

    Assets are immutable once imported. Stream flags come from the external
    probe step and are trusted as-is.
    """

    model_config = ConfigDict(frozen=True)

    asset_id: str = Field(description="Registry identifier")
    file_path: str = Field(description="Absolute path to the media file")
    duration: float = Field(ge=0, description="Total media duration in seconds")
    has_audio: bool = Field(default=True)
    has_video: bool = Field(default=True)
    captions: CaptionDocument | None = Field(
        default=None, description="Asset-relative caption document"
    )


# =============================================================================
# TRACKS AND CLIPS
# =============================================================================


class TimelineClip(BaseModel):
    """
    A timeline-placed reference to a trimmed sub-range of an asset.

    ``trim_in``/``trim_out`` are supplied by the editor and are not trusted:
    the export preparer clamps them against the real asset duration.
    """

    clip_id: str = Field(description="Unique clip identifier")
    asset_id: str = Field(description="Backing asset identifier")
    start_time: float = Field(ge=0, description="Timeline position in seconds")
    trim_in: float = Field(default=0.0, ge=0, description="Asset-relative in point")
    trim_out: float = Field(ge=0, description="Asset-relative out point")

    @property
    def duration(self) -> float:
        return self.trim_out - self.trim_in

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


class Track(BaseModel):
    """
    Ordered container of clips.

    Clips within a track may overlap in time. Overlap is reported by the
    analyzer, never rejected here.
    """

    track_id: int = Field(description="Track number; higher tracks draw on top")
    name: str = Field(default="")
    kind: TrackKind = Field(default=TrackKind.VIDEO)
    clips: list[TimelineClip] = Field(default_factory=list)
    muted: bool = Field(default=False, description="Exclude this track's audio")
    locked: bool = Field(default=False, description="Editor-only edit lock")

    def sorted_clips(self) -> list[TimelineClip]:
        return sorted(self.clips, key=lambda c: c.start_time)


# =============================================================================
# ANALYSIS RESULTS
# =============================================================================


class TimelineGap(BaseModel):
    """An uncovered interval ``[start_time, end_time)`` on a single track."""

    track_id: int
    track_kind: TrackKind
    start_time: float
    end_time: float

    @computed_field
    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


class SegmentClipRef(BaseModel):
    track_id: int
    track_kind: TrackKind
    clip_id: str


class TimelineSegment(BaseModel):
    """A maximal interval during which a constant set of clips is active."""

    start_time: float
    end_time: float
    clips: list[SegmentClipRef] = Field(default_factory=list)

    @computed_field
    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def concurrency(self) -> int:
        return len(self.clips)


class TimelineAnalysis(BaseModel):
    """Summary of a timeline's structure used to pick a composition strategy."""

    total_duration: float = 0.0
    gaps: list[TimelineGap] = Field(default_factory=list)
    segments: list[TimelineSegment] = Field(default_factory=list)
    has_overlapping_clips: bool = False
    max_concurrent_tracks: int = 0

    @property
    def has_gaps(self) -> bool:
        return bool(self.gaps)

    @property
    def requires_compositing(self) -> bool:
        return (
            self.has_gaps
            or self.has_overlapping_clips
            or self.max_concurrent_tracks > 1
        )
