from __future__ import annotations

import logging
from typing import Protocol

from models.export_models import PreparedClip, PreparedTimeline, ValidationResult
from models.timeline_models import Asset, TimelineClip, Track, TrackKind
from utils.timeline_analysis import analyze_timeline

logger = logging.getLogger(__name__)


# Clips at or below this duration are dropped from the export.
MIN_CLIP_DURATION = 0.01


class AssetNotFoundError(Exception):
    def __init__(self, asset_id: str):
        self.asset_id = asset_id
        super().__init__(f"Asset not found: {asset_id}")


class AssetRegistry(Protocol):
    def resolve(self, asset_id: str) -> Asset: ...


class InMemoryAssetRegistry:
    def __init__(self, assets: list[Asset] | None = None):
        self._assets: dict[str, Asset] = {}
        for asset in assets or []:
            self.add(asset)

    def add(self, asset: Asset) -> None:
        self._assets[asset.asset_id] = asset

    def resolve(self, asset_id: str) -> Asset:
        asset = self._assets.get(asset_id)
        if asset is None:
            raise AssetNotFoundError(asset_id)
        return asset


def clamp_trim(clip: TimelineClip, asset: Asset) -> tuple[float, float]:
    """Clamp editor-supplied trim points to the asset's real duration."""
    trim_in = min(max(0.0, clip.trim_in), asset.duration)
    trim_out = max(trim_in, min(clip.trim_out, asset.duration))
    return trim_in, trim_out


def validate_timeline_for_export(
    tracks: list[Track], registry: AssetRegistry
) -> ValidationResult:
    return prepare_timeline_for_export(tracks, registry).validation


def prepare_timeline_for_export(
    tracks: list[Track], registry: AssetRegistry
) -> PreparedTimeline:
    """
    Resolve every clip to its asset and build the export-ready clip list.

    Problems are reported in the returned validation result rather than
    raised. Errors (no clips, missing assets, nothing left after trimming)
    block the export; warnings are informational.
    """
    errors: list[str] = []
    warnings: list[str] = []

    all_clips = [clip for track in tracks for clip in track.clips]
    if not all_clips:
        errors.append("No clips available for export")
        return PreparedTimeline(validation=ValidationResult(errors=errors))

    prepared: list[PreparedClip] = []
    render_tracks: list[Track] = []
    missing: list[str] = []
    zero_duration = 0
    no_streams = 0

    for track_index, track in enumerate(tracks):
        kept: list[TimelineClip] = []
        for clip in track.clips:
            try:
                asset = registry.resolve(clip.asset_id)
            except AssetNotFoundError:
                missing.append(clip.clip_id)
                continue
            if not asset.file_path:
                missing.append(clip.clip_id)
                continue

            trim_in, trim_out = clamp_trim(clip, asset)
            if trim_out - trim_in <= MIN_CLIP_DURATION:
                zero_duration += 1
                continue

            has_video = asset.has_video and track.kind != TrackKind.AUDIO
            has_audio = asset.has_audio and not track.muted
            if not has_video and not has_audio:
                no_streams += 1
                continue

            prepared.append(
                PreparedClip(
                    clip_id=clip.clip_id,
                    track_id=track.track_id,
                    track_index=track_index,
                    file_path=asset.file_path,
                    start_time=clip.start_time,
                    trim_in=trim_in,
                    trim_out=trim_out,
                    has_audio=has_audio,
                    has_video=has_video,
                    captions=asset.captions,
                )
            )
            kept.append(clip.model_copy(update={"trim_in": trim_in, "trim_out": trim_out}))
        render_tracks.append(track.model_copy(update={"clips": kept}))

    if missing:
        errors.append(f"{len(missing)} clips are missing media files")
        logger.warning(f"Clips reference missing assets: {', '.join(missing)}")

    if not prepared and not missing:
        if zero_duration and not no_streams:
            errors.append("All clips have zero or negative duration after trimming")
        else:
            errors.append("No clips available for export")
    elif zero_duration:
        warnings.append(
            f"{zero_duration} clips have zero duration after trimming and were skipped"
        )

    if no_streams:
        warnings.append(
            f"{no_streams} clips have no audible or visible streams and were skipped"
        )

    # Analyze what will actually be rendered, not what the editor holds.
    analysis = analyze_timeline(render_tracks)

    if analysis.has_overlapping_clips:
        warnings.append(
            "Timeline contains overlapping clips - only the topmost clip will be visible"
        )
    if analysis.gaps:
        warnings.append(
            f"Timeline contains {len(analysis.gaps)} gaps - these will be filled "
            "with black frames/silence"
        )
    if analysis.max_concurrent_tracks > 1:
        warnings.append(
            f"Timeline uses {analysis.max_concurrent_tracks} concurrent tracks - "
            "complex composition will be applied"
        )

    prepared.sort(key=lambda c: (c.start_time, c.track_id, c.track_index))

    logger.info(
        f"Prepared {len(prepared)} clips for export "
        f"({len(errors)} errors, {len(warnings)} warnings)"
    )
    return PreparedTimeline(
        clips=prepared,
        analysis=analysis,
        validation=ValidationResult(errors=errors, warnings=warnings),
    )
