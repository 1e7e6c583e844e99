from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from models.export_models import (
    AudioCodec,
    Container,
    ExportOptions,
    ExportQuality,
    PreparedClip,
    PreparedTimeline,
    VideoCodec,
)
from models.timeline_models import TimelineAnalysis

logger = logging.getLogger(__name__)


QUALITY_CRF: dict[ExportQuality, int] = {
    ExportQuality.LOW: 28,
    ExportQuality.MEDIUM: 23,
    ExportQuality.HIGH: 18,
    ExportQuality.MAXIMUM: 15,
}

VIDEO_ENCODERS: dict[VideoCodec, str] = {
    VideoCodec.H264: "libx264",
    VideoCodec.H265: "libx265",
}

AUDIO_ENCODERS: dict[AudioCodec, str] = {
    AudioCodec.AAC: "aac",
    AudioCodec.MP3: "libmp3lame",
}

# Used when the output keeps the source format but a synthesized canvas
# still needs a concrete size and rate.
DEFAULT_CANVAS_SIZE = (1920, 1080)
DEFAULT_CANVAS_RATE = 30
CANVAS_COLOR = "black"
CHANNEL_LAYOUT = "stereo"
PIXEL_FORMAT = "yuv420p"


class CompilationError(Exception):
    pass


class CompositionStrategy(str, Enum):
    LINEAR = "linear"
    COMPOSITING = "compositing"


class StageKind(str, Enum):
    BASE = "base"  # Synthesized canvas / silent bed
    TRIM = "trim"  # Per-clip trim and timestamp reset
    FILLER = "filler"  # Black frames or silence for a missing stream
    OVERLAY = "overlay"
    MIX = "mix"
    CONCAT = "concat"
    FORMAT = "format"
    BURN_IN = "burn_in"


# =============================================================================
# ESCAPING
# =============================================================================


_FILTER_VALUE_SPECIALS = re.compile(r"([\\':])")
_FILTERGRAPH_SPECIALS = re.compile(r"([\\'\[\],;])")


def escape_filter_value(value: str) -> str:
    """Escape a single filter option value (first escaping level)."""
    return _FILTER_VALUE_SPECIALS.sub(r"\\\1", value)


def escape_filtergraph(text: str) -> str:
    """Escape a filter description for embedding in a filtergraph."""
    return _FILTERGRAPH_SPECIALS.sub(r"\\\1", text)


def format_number(value: float | int) -> str:
    if isinstance(value, int):
        return str(value)
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return format_number(value)
    return str(value)


def quote_concat_path(path: str) -> str:
    return "'" + path.replace("'", "'\\''") + "'"


# =============================================================================
# GRAPH TYPES
# =============================================================================


@dataclass
class FilterSpec:
    name: str
    params: dict[str, Any] = field(default_factory=dict)
    positional: list[Any] = field(default_factory=list)

    def render(self) -> str:
        parts = [escape_filter_value(_format_value(v)) for v in self.positional]
        parts.extend(
            f"{key}={escape_filter_value(_format_value(value))}"
            for key, value in self.params.items()
        )
        text = f"{self.name}={':'.join(parts)}" if parts else self.name
        return escape_filtergraph(text)


@dataclass
class FilterStage:
    kind: StageKind
    inputs: list[str]
    filters: list[FilterSpec]
    outputs: list[str]
    clip_id: str | None = None

    def render(self) -> str:
        ins = "".join(f"[{label}]" for label in self.inputs)
        outs = "".join(f"[{label}]" for label in self.outputs)
        chain = ",".join(spec.render() for spec in self.filters)
        return f"{ins}{chain}{outs}"

    def filter_names(self) -> list[str]:
        return [spec.name for spec in self.filters]


@dataclass
class InputSource:
    index: int
    path: str
    options: list[str] = field(default_factory=list)
    clip_id: str | None = None

    def to_args(self) -> list[str]:
        return [*self.options, "-i", self.path]


@dataclass
class ScratchArtifact:
    """A file the command needs on disk before the encoder starts."""

    path: str
    content: str


@dataclass
class CompiledCommand:
    strategy: CompositionStrategy
    inputs: list[InputSource]
    stages: list[FilterStage]
    maps: list[str]
    output_options: list[str]
    output_path: str
    total_duration: float
    passthrough: bool = False
    artifacts: list[ScratchArtifact] = field(default_factory=list)

    def filter_complex(self) -> str:
        return ";".join(stage.render() for stage in self.stages)

    def stages_of(self, kind: StageKind) -> list[FilterStage]:
        return [stage for stage in self.stages if stage.kind == kind]

    def to_args(self) -> list[str]:
        """Encoder arguments, without the binary itself."""
        args = ["-hide_banner", "-y"]
        for source in self.inputs:
            args.extend(source.to_args())
        if self.stages:
            args.extend(["-filter_complex", self.filter_complex()])
        for stream in self.maps:
            args.extend(["-map", stream])
        args.extend(self.output_options)
        args.append(self.output_path)
        return args


def select_strategy(analysis: TimelineAnalysis) -> CompositionStrategy:
    if analysis.requires_compositing:
        return CompositionStrategy.COMPOSITING
    return CompositionStrategy.LINEAR


# =============================================================================
# COMPILER
# =============================================================================


class TimelineToFFmpeg:
    """
    Translate prepared clips into one encoder invocation.

    Pure: nothing is executed or written. Files the command depends on
    (the concat list for passthrough) are returned as artifacts for the
    caller to materialize.
    """

    def __init__(
        self,
        clips: list[PreparedClip],
        analysis: TimelineAnalysis,
        options: ExportOptions,
        output_path: str,
        caption_path: str | None = None,
        scratch_dir: str | None = None,
    ):
        # Timeline order; at the same instant the higher track comes later.
        self.clips = sorted(
            clips, key=lambda c: (c.start_time, c.track_id, c.track_index)
        )
        self.analysis = analysis
        self.options = options
        self.output_path = output_path
        self.caption_path = caption_path
        self.scratch_dir = scratch_dir

        self._inputs: list[InputSource] = []
        self._stages: list[FilterStage] = []
        self._filter_counter = 0

    def build(self) -> CompiledCommand:
        self._inputs = []
        self._stages = []
        self._filter_counter = 0

        self._check_clips()
        strategy = select_strategy(self.analysis)

        if strategy == CompositionStrategy.COMPOSITING:
            command = self._build_compositing()
        elif self._can_passthrough():
            command = self._build_passthrough()
        else:
            command = self._build_linear()

        logger.info(
            f"Compiled {len(self.clips)} clips with {command.strategy.value} strategy "
            f"({len(command.stages)} stages, passthrough={command.passthrough})"
        )
        return command

    def _check_clips(self) -> None:
        if not self.clips:
            raise CompilationError("No prepared clips to compile")
        for clip in self.clips:
            if not clip.has_video and not clip.has_audio:
                raise CompilationError(f"Clip {clip.clip_id} has no audio or video stream")
            if clip.duration <= 0:
                raise CompilationError(f"Clip {clip.clip_id} has non-positive duration")

    def _next_label(self, prefix: str) -> str:
        label = f"{prefix}{self._filter_counter}"
        self._filter_counter += 1
        return label

    def _add_clip_inputs(self) -> None:
        for clip in self.clips:
            self._inputs.append(
                InputSource(index=len(self._inputs), path=clip.file_path, clip_id=clip.clip_id)
            )

    # -------------------------------------------------------------------------
    # Linear strategy
    # -------------------------------------------------------------------------

    def _can_passthrough(self) -> bool:
        if self.options.requires_reencode or self.caption_path:
            return False
        layouts = {(clip.has_video, clip.has_audio) for clip in self.clips}
        return len(layouts) == 1

    def _build_passthrough(self) -> CompiledCommand:
        lines = ["ffconcat version 1.0"]
        for clip in self.clips:
            lines.append(f"file {quote_concat_path(clip.file_path)}")
            lines.append(f"inpoint {format_number(clip.trim_in)}")
            lines.append(f"outpoint {format_number(clip.trim_out)}")
        content = "\n".join(lines) + "\n"

        digest = hashlib.sha1(content.encode("utf-8")).hexdigest()[:12]
        list_path = str(Path(self.scratch_dir or ".") / f"concat_{digest}.txt")
        self._inputs.append(
            InputSource(index=0, path=list_path, options=["-f", "concat", "-safe", "0"])
        )

        maps = []
        if self.clips[0].has_video:
            maps.append("0:v:0")
        if self.clips[0].has_audio:
            maps.append("0:a:0")

        return CompiledCommand(
            strategy=CompositionStrategy.LINEAR,
            inputs=self._inputs,
            stages=[],
            maps=maps,
            output_options=["-c", "copy", *self._container_options()],
            output_path=self.output_path,
            total_duration=sum(clip.duration for clip in self.clips),
            passthrough=True,
            artifacts=[ScratchArtifact(path=list_path, content=content)],
        )

    def _build_linear(self) -> CompiledCommand:
        self._add_clip_inputs()

        any_video = any(clip.has_video for clip in self.clips)
        any_audio = any(clip.has_audio for clip in self.clips)
        mixed_video = any_video and not all(clip.has_video for clip in self.clips)

        # Fillers need a concrete size, and concat needs every part to match it.
        size = self.options.target_size()
        if size is None and mixed_video:
            size = DEFAULT_CANVAS_SIZE
        rate = self.options.target_framerate()

        concat_inputs: list[str] = []
        for source, clip in zip(self._inputs, self.clips):
            if any_video:
                if clip.has_video:
                    concat_inputs.append(self._trim_video(source.index, clip, size, rate))
                else:
                    concat_inputs.append(self._filler_video(clip, size, rate))
            if any_audio:
                if clip.has_audio:
                    concat_inputs.append(self._trim_audio(source.index, clip))
                else:
                    concat_inputs.append(self._filler_audio(clip))

        video_out: str | None = None
        audio_out: str | None = None
        if len(self.clips) == 1:
            labels = iter(concat_inputs)
            video_out = next(labels) if any_video else None
            audio_out = next(labels) if any_audio else None
        else:
            video_out, audio_out = self._concat(concat_inputs, any_video, any_audio)

        if video_out and self.caption_path:
            video_out = self._burn_in(video_out)

        return CompiledCommand(
            strategy=CompositionStrategy.LINEAR,
            inputs=self._inputs,
            stages=self._stages,
            maps=[f"[{label}]" for label in (video_out, audio_out) if label],
            output_options=self._build_output_options(),
            output_path=self.output_path,
            total_duration=sum(clip.duration for clip in self.clips),
        )

    def _trim_video(
        self,
        input_index: int,
        clip: PreparedClip,
        size: tuple[int, int] | None,
        rate: int | None,
        offset: float | None = None,
    ) -> str:
        pts = "PTS-STARTPTS" if offset is None else f"PTS-STARTPTS+{format_number(offset)}/TB"
        filters = [
            FilterSpec("trim", {"start": clip.trim_in, "duration": clip.duration}),
            FilterSpec("setpts", positional=[pts]),
        ]
        if size is not None:
            filters.extend(self._fit_filters(size))
        if rate is not None:
            filters.append(FilterSpec("fps", {"fps": rate}))

        label = self._next_label("v")
        self._stages.append(
            FilterStage(
                kind=StageKind.TRIM,
                inputs=[f"{input_index}:v"],
                filters=filters,
                outputs=[label],
                clip_id=clip.clip_id,
            )
        )
        return label

    def _trim_audio(self, input_index: int, clip: PreparedClip, delay: float | None = None) -> str:
        filters = [
            FilterSpec("atrim", {"start": clip.trim_in, "duration": clip.duration}),
            FilterSpec("asetpts", positional=["PTS-STARTPTS"]),
            FilterSpec(
                "aformat",
                {
                    "sample_rates": self.options.sample_rate,
                    "channel_layouts": CHANNEL_LAYOUT,
                },
            ),
        ]
        if delay:
            filters.append(
                FilterSpec("adelay", {"delays": int(round(delay * 1000)), "all": 1})
            )

        label = self._next_label("a")
        self._stages.append(
            FilterStage(
                kind=StageKind.TRIM,
                inputs=[f"{input_index}:a"],
                filters=filters,
                outputs=[label],
                clip_id=clip.clip_id,
            )
        )
        return label

    def _filler_video(
        self, clip: PreparedClip, size: tuple[int, int] | None, rate: int | None
    ) -> str:
        width, height = size or DEFAULT_CANVAS_SIZE
        label = self._next_label("vfill")
        self._stages.append(
            FilterStage(
                kind=StageKind.FILLER,
                inputs=[],
                filters=[
                    FilterSpec(
                        "color",
                        {
                            "c": CANVAS_COLOR,
                            "s": f"{width}x{height}",
                            "r": rate or DEFAULT_CANVAS_RATE,
                            "d": clip.duration,
                        },
                    ),
                    FilterSpec("setsar", positional=[1]),
                ],
                outputs=[label],
                clip_id=clip.clip_id,
            )
        )
        return label

    def _filler_audio(self, clip: PreparedClip) -> str:
        label = self._next_label("afill")
        self._stages.append(
            FilterStage(
                kind=StageKind.FILLER,
                inputs=[],
                filters=[
                    FilterSpec(
                        "anullsrc", {"r": self.options.sample_rate, "cl": CHANNEL_LAYOUT}
                    ),
                    FilterSpec("atrim", {"duration": clip.duration}),
                ],
                outputs=[label],
                clip_id=clip.clip_id,
            )
        )
        return label

    def _concat(
        self, labels: list[str], any_video: bool, any_audio: bool
    ) -> tuple[str | None, str | None]:
        video_out = self._next_label("vcat") if any_video else None
        audio_out = self._next_label("acat") if any_audio else None
        self._stages.append(
            FilterStage(
                kind=StageKind.CONCAT,
                inputs=labels,
                filters=[
                    FilterSpec(
                        "concat",
                        {
                            "n": len(self.clips),
                            "v": 1 if any_video else 0,
                            "a": 1 if any_audio else 0,
                        },
                    )
                ],
                outputs=[label for label in (video_out, audio_out) if label],
            )
        )
        return video_out, audio_out

    def _fit_filters(self, size: tuple[int, int]) -> list[FilterSpec]:
        width, height = size
        return [
            FilterSpec(
                "scale",
                {"w": width, "h": height, "force_original_aspect_ratio": "decrease"},
            ),
            FilterSpec(
                "pad", {"w": width, "h": height, "x": "(ow-iw)/2", "y": "(oh-ih)/2"}
            ),
            FilterSpec("setsar", positional=[1]),
        ]

    # -------------------------------------------------------------------------
    # Compositing strategy
    # -------------------------------------------------------------------------

    def _build_compositing(self) -> CompiledCommand:
        total = self.analysis.total_duration
        if total <= 0:
            raise CompilationError("Compositing requires a positive total duration")

        self._add_clip_inputs()

        size = self.options.target_size()
        canvas_size = size or DEFAULT_CANVAS_SIZE
        canvas_rate = self.options.target_framerate() or DEFAULT_CANVAS_RATE

        video = self._base_canvas(canvas_size, canvas_rate, total)
        audio = self._base_bed(total)

        # Each overlay draws over the running composite, so later clips win.
        for source, clip in zip(self._inputs, self.clips):
            if clip.has_video:
                clip_video = self._trim_video(
                    source.index, clip, size, None, offset=clip.start_time
                )
                video = self._overlay(video, clip_video, clip)
            if clip.has_audio:
                clip_audio = self._trim_audio(source.index, clip, delay=clip.start_time)
                audio = self._mix(audio, clip_audio, clip)

        video = self._format(video)
        if self.caption_path:
            video = self._burn_in(video)

        return CompiledCommand(
            strategy=CompositionStrategy.COMPOSITING,
            inputs=self._inputs,
            stages=self._stages,
            maps=[f"[{video}]", f"[{audio}]"],
            output_options=self._build_output_options(),
            output_path=self.output_path,
            total_duration=total,
        )

    def _base_canvas(self, size: tuple[int, int], rate: int, duration: float) -> str:
        width, height = size
        label = self._next_label("base_v")
        self._stages.append(
            FilterStage(
                kind=StageKind.BASE,
                inputs=[],
                filters=[
                    FilterSpec(
                        "color",
                        {"c": CANVAS_COLOR, "s": f"{width}x{height}", "r": rate, "d": duration},
                    ),
                    FilterSpec("setsar", positional=[1]),
                ],
                outputs=[label],
            )
        )
        return label

    def _base_bed(self, duration: float) -> str:
        label = self._next_label("base_a")
        self._stages.append(
            FilterStage(
                kind=StageKind.BASE,
                inputs=[],
                filters=[
                    FilterSpec(
                        "anullsrc", {"r": self.options.sample_rate, "cl": CHANNEL_LAYOUT}
                    ),
                    FilterSpec("atrim", {"duration": duration}),
                ],
                outputs=[label],
            )
        )
        return label

    def _overlay(self, base: str, layer: str, clip: PreparedClip) -> str:
        start = format_number(clip.start_time)
        end = format_number(clip.end_time)
        label = self._next_label("ov")
        self._stages.append(
            FilterStage(
                kind=StageKind.OVERLAY,
                inputs=[base, layer],
                filters=[
                    FilterSpec(
                        "overlay",
                        {
                            "x": "(W-w)/2",
                            "y": "(H-h)/2",
                            "eof_action": "pass",
                            "enable": f"between(t,{start},{end})",
                        },
                    )
                ],
                outputs=[label],
                clip_id=clip.clip_id,
            )
        )
        return label

    def _mix(self, base: str, layer: str, clip: PreparedClip) -> str:
        label = self._next_label("mix")
        self._stages.append(
            FilterStage(
                kind=StageKind.MIX,
                inputs=[base, layer],
                filters=[
                    FilterSpec(
                        "amix",
                        {"inputs": 2, "duration": "first", "dropout_transition": 0, "normalize": 0},
                    )
                ],
                outputs=[label],
                clip_id=clip.clip_id,
            )
        )
        return label

    def _format(self, video: str) -> str:
        label = self._next_label("vfmt")
        self._stages.append(
            FilterStage(
                kind=StageKind.FORMAT,
                inputs=[video],
                filters=[FilterSpec("format", {"pix_fmts": PIXEL_FORMAT})],
                outputs=[label],
            )
        )
        return label

    # -------------------------------------------------------------------------
    # Shared
    # -------------------------------------------------------------------------

    def _burn_in(self, video: str) -> str:
        label = self._next_label("vsub")
        self._stages.append(
            FilterStage(
                kind=StageKind.BURN_IN,
                inputs=[video],
                filters=[FilterSpec("subtitles", {"filename": self.caption_path})],
                outputs=[label],
            )
        )
        return label

    def _container_options(self) -> list[str]:
        if self.options.container in (Container.MP4, Container.MOV):
            return ["-movflags", "+faststart"]
        return []

    def _build_output_options(self) -> list[str]:
        options: list[str] = [
            "-c:v",
            VIDEO_ENCODERS[self.options.video_codec],
            "-crf",
            str(QUALITY_CRF[self.options.quality]),
            "-preset",
            self.options.encoder_preset,
            "-pix_fmt",
            PIXEL_FORMAT,
        ]
        if self.options.video_codec == VideoCodec.H265 and self.options.container == Container.MOV:
            # QuickTime only plays HEVC tagged as hvc1.
            options.extend(["-tag:v", "hvc1"])

        options.extend(
            [
                "-c:a",
                AUDIO_ENCODERS[self.options.audio_codec],
                "-b:a",
                self.options.audio_bitrate,
                "-ar",
                str(self.options.sample_rate),
                "-ac",
                "2",
            ]
        )
        options.extend(self._container_options())
        return options


def build_export_command(
    prepared: PreparedTimeline,
    options: ExportOptions,
    output_path: str,
    caption_path: str | None = None,
    scratch_dir: str | None = None,
) -> CompiledCommand:
    compiler = TimelineToFFmpeg(
        prepared.clips,
        prepared.analysis,
        options,
        output_path,
        caption_path=caption_path,
        scratch_dir=scratch_dir,
    )
    return compiler.build()


def estimate_export_duration(total_duration: float, options: ExportOptions, passthrough: bool = False) -> float:
    """Rough wall-clock seconds needed to encode ``total_duration`` of output."""
    if passthrough:
        return total_duration * 0.05

    preset_multipliers = {
        "ultrafast": 0.5,
        "superfast": 0.6,
        "veryfast": 0.8,
        "faster": 1.0,
        "fast": 1.2,
        "medium": 1.5,
        "slow": 3.0,
        "slower": 5.0,
        "veryslow": 10.0,
    }
    multiplier = preset_multipliers.get(options.encoder_preset, 1.5)
    if options.video_codec == VideoCodec.H265:
        multiplier *= 2.0
    return total_duration * multiplier
