"""
Pydantic models for timeline export.

This module defines schemas for:
- Export options (resolution, frame rate, quality, codecs, container)
- Export-ready clips and the validation result of preparing a timeline
- Export session progress and the results of start/cancel requests
- HTTP request/response envelopes for the export endpoints
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from models.timeline_models import (
    Asset,
    CaptionDocument,
    TimelineAnalysis,
    Track,
)


# =============================================================================
# ENUMS
# =============================================================================


class Resolution(str, Enum):
    """Target output resolution."""

    P480 = "480p"
    P720 = "720p"
    P1080 = "1080p"
    SOURCE = "source"  # No scaling filter


class FrameRate(str, Enum):
    """Target output frame rate."""

    FPS_24 = "24"
    FPS_30 = "30"
    FPS_60 = "60"
    SOURCE = "source"  # No frame-rate filter


class ExportQuality(str, Enum):
    """Quality tier, mapped to a CRF value by the command compiler."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    MAXIMUM = "maximum"


class VideoCodec(str, Enum):
    """Supported video codecs."""

    H264 = "h264"  # libx264
    H265 = "h265"  # libx265


class AudioCodec(str, Enum):
    """Supported audio codecs."""

    AAC = "aac"
    MP3 = "mp3"  # libmp3lame


class Container(str, Enum):
    """Output container; the output file extension always matches it."""

    MP4 = "mp4"
    MOV = "mov"


class ExportStage(str, Enum):
    """Stage of the single active export session."""

    IDLE = "idle"
    PREPARING = "preparing"  # Resolving clips and compiling the command
    ENCODING = "encoding"  # Encoder process running
    COMPLETE = "complete"  # Output written
    ERROR = "error"  # Failed; message carries the cause


RESOLUTION_SIZES: dict[Resolution, tuple[int, int]] = {
    Resolution.P480: (854, 480),
    Resolution.P720: (1280, 720),
    Resolution.P1080: (1920, 1080),
}


# =============================================================================
# EXPORT OPTIONS
# =============================================================================


class CustomResolution(BaseModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)


class ExportOptions(BaseModel):
    """User-selected export settings."""

    output_path: str = Field(description="Destination file path (~ allowed)")
    resolution: Resolution = Field(default=Resolution.SOURCE)
    custom_resolution: CustomResolution | None = Field(
        default=None, description="Explicit size; overrides the resolution preset"
    )
    framerate: FrameRate = Field(default=FrameRate.SOURCE)
    quality: ExportQuality = Field(default=ExportQuality.HIGH)
    video_codec: VideoCodec = Field(default=VideoCodec.H264)
    audio_codec: AudioCodec = Field(default=AudioCodec.AAC)
    container: Container = Field(default=Container.MP4)
    audio_bitrate: str = Field(default="128k", description="Audio bitrate e.g. '192k'")
    sample_rate: int = Field(default=48000, gt=0, description="Audio sample rate in Hz")
    encoder_preset: str = Field(
        default="medium",
        description="x264/x265 preset: ultrafast ... veryslow",
    )

    def target_size(self) -> tuple[int, int] | None:
        """Output size, or None to keep the source size."""
        if self.custom_resolution is not None:
            return (self.custom_resolution.width, self.custom_resolution.height)
        return RESOLUTION_SIZES.get(self.resolution)

    def target_framerate(self) -> int | None:
        """Output frame rate, or None to keep the source rate."""
        if self.framerate == FrameRate.SOURCE:
            return None
        return int(self.framerate.value)

    @property
    def requires_reencode(self) -> bool:
        return self.target_size() is not None or self.target_framerate() is not None


# =============================================================================
# PREPARED TIMELINE
# =============================================================================


class PreparedClip(BaseModel):
    """
    Export-ready projection of a timeline clip.

    Trim bounds are already clamped to the asset and stream flags reflect
    both the asset and its track (muted tracks carry no audio, audio tracks
    carry no video). Never mutated after preparation.
    """

    model_config = ConfigDict(frozen=True)

    clip_id: str
    track_id: int
    track_index: int = Field(description="Declaration order of the clip's track")
    file_path: str
    start_time: float = Field(ge=0)
    trim_in: float = Field(ge=0)
    trim_out: float = Field(ge=0)
    has_audio: bool
    has_video: bool
    captions: CaptionDocument | None = None

    @property
    def duration(self) -> float:
        return self.trim_out - self.trim_in

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


class ValidationResult(BaseModel):
    """Blocking errors and informational warnings from export preparation."""

    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class PreparedTimeline(BaseModel):
    """Ordered prepared clips plus the analysis of what will be rendered."""

    model_config = ConfigDict(frozen=True)

    clips: list[PreparedClip] = Field(default_factory=list)
    analysis: TimelineAnalysis = Field(default_factory=TimelineAnalysis)
    validation: ValidationResult = Field(default_factory=ValidationResult)


# =============================================================================
# SESSION STATE
# =============================================================================


class ExportProgress(BaseModel):
    """Snapshot of the export session for the UI."""

    stage: ExportStage = Field(default=ExportStage.IDLE)
    progress: int = Field(default=0, ge=0, le=100, description="Estimated percent")
    message: str = Field(default="")
    output_path: str | None = None
    error_detail: str | None = Field(
        default=None, description="Raw encoder diagnostics for support"
    )


class ExportRejection(str, Enum):
    """Why a start request was refused."""

    IN_PROGRESS = "in_progress"
    INVALID_TIMELINE = "invalid_timeline"
    COMPILATION_FAILED = "compilation_failed"
    SPAWN_FAILED = "spawn_failed"
    CANCELLED = "cancelled"


class ExportStartResult(BaseModel):
    accepted: bool
    reason: str | None = None
    rejection: ExportRejection | None = None
    output_path: str | None = None


class ExportCancelResult(BaseModel):
    success: bool
    message: str


# =============================================================================
# API REQUEST/RESPONSE MODELS
# =============================================================================


class ExportRequest(BaseModel):
    """Request to export a timeline."""

    options: ExportOptions
    tracks: list[Track] = Field(default_factory=list)
    assets: list[Asset] = Field(
        default_factory=list, description="Descriptors for every referenced asset"
    )


class ExportValidationResponse(BaseModel):
    ok: bool = True
    validation: ValidationResult
    analysis: TimelineAnalysis


class ExportStartResponse(BaseModel):
    ok: bool = True
    output_path: str
    warnings: list[str] = Field(default_factory=list)


class ExportProgressResponse(BaseModel):
    ok: bool = True
    progress: ExportProgress


class ExportCancelResponse(BaseModel):
    ok: bool = True
    message: str
