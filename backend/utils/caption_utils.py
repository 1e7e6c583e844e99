"""
Caption rebasing and SubRip (SRT) serialization.

Caption documents arrive asset-relative from the transcription service.
Before burn-in they are shifted into timeline time for each clip, merged
in clip order and written out as one SRT artifact.
"""

from __future__ import annotations

import logging
import re
import uuid
from pathlib import Path

from models.timeline_models import CaptionDocument, CaptionSpan

logger = logging.getLogger(__name__)

SRT_TIME_RE = re.compile(r"^(\d{2}):(\d{2}):(\d{2})[,.](\d{3})$")
SRT_TIMING_LINE_RE = re.compile(
    r"^(\d{2}:\d{2}:\d{2}[,.]\d{3})\s*-->\s*(\d{2}:\d{2}:\d{2}[,.]\d{3})"
)


def rebase_caption_spans(
    document: CaptionDocument,
    trim_in: float,
    start_time: float,
    trim_out: float | None = None,
) -> list[CaptionSpan]:
    """
    Shift asset-relative spans onto the timeline for one clip.

    Each bound becomes ``max(0, t - trim_in) + start_time``. Spans that end
    at or before the trim point are dropped. When ``trim_out`` is given,
    spans starting at or after it are dropped and longer spans are cut at it.
    """
    rebased: list[CaptionSpan] = []
    for span in document.spans:
        end = span.end
        if trim_out is not None:
            if span.start >= trim_out:
                continue
            end = min(end, trim_out)

        adjusted_start = max(0.0, span.start - trim_in)
        adjusted_end = max(0.0, end - trim_in)
        if adjusted_end <= 0:
            continue

        rebased.append(
            CaptionSpan(
                start=adjusted_start + start_time,
                end=adjusted_end + start_time,
                text=span.text,
            )
        )
    return rebased


def merge_clip_captions(clips) -> CaptionDocument:
    """
    Merge the captions of prepared clips into one timeline document.

    ``clips`` are consumed in the given order; each needs ``captions``,
    ``trim_in``, ``trim_out`` and ``start_time`` attributes. Spans are
    concatenated, not re-sorted.
    """
    spans: list[CaptionSpan] = []
    for clip in clips:
        if clip.captions is None or clip.captions.is_empty:
            continue
        spans.extend(
            rebase_caption_spans(
                clip.captions,
                trim_in=clip.trim_in,
                start_time=clip.start_time,
                trim_out=clip.trim_out,
            )
        )
    return CaptionDocument(spans=spans)


def format_srt_time(seconds: float) -> str:
    total_ms = int(round(max(0.0, seconds) * 1000))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def parse_srt_time(value: str) -> float:
    match = SRT_TIME_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid SRT timestamp: {value!r}")
    hours, minutes, secs, millis = (int(part) for part in match.groups())
    return hours * 3600 + minutes * 60 + secs + millis / 1000


def format_srt(document: CaptionDocument) -> str:
    blocks = []
    for index, span in enumerate(document.spans, start=1):
        blocks.append(
            f"{index}\n"
            f"{format_srt_time(span.start)} --> {format_srt_time(span.end)}\n"
            f"{span.text}\n"
        )
    return "\n".join(blocks)


def parse_srt(text: str) -> CaptionDocument:
    """Parse SRT text; malformed blocks and empty cues are skipped."""
    if not text or not text.strip():
        return CaptionDocument()

    spans: list[CaptionSpan] = []
    normalized = text.replace("\r\n", "\n").strip()
    for block in re.split(r"\n\s*\n", normalized):
        lines = block.strip().split("\n")
        if len(lines) < 2 or not lines[0].strip().isdigit():
            continue

        match = SRT_TIMING_LINE_RE.match(lines[1].strip())
        if not match:
            continue

        body = "\n".join(lines[2:]).strip()
        if not body:
            continue

        start = parse_srt_time(match.group(1))
        end = parse_srt_time(match.group(2))
        if end < start:
            logger.warning(f"Skipping SRT cue {lines[0].strip()} with end before start")
            continue
        spans.append(CaptionSpan(start=start, end=end, text=body))

    spans.sort(key=lambda span: span.start)
    return CaptionDocument(spans=spans)


def write_caption_artifact(document: CaptionDocument, directory: str | Path) -> Path:
    """Write ``document`` as an SRT file in ``directory`` and return its path."""
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / f"captions_{uuid.uuid4().hex}.srt"
    path.write_text(format_srt(document), encoding="utf-8")
    logger.info(f"Wrote {len(document.spans)} caption spans to {path}")
    return path


def get_active_caption(document: CaptionDocument, timeline_time: float) -> str | None:
    for span in document.spans:
        if span.start <= timeline_time < span.end:
            return span.text
    return None
