from __future__ import annotations

from dataclasses import dataclass

from models.timeline_models import (
    SegmentClipRef,
    TimelineAnalysis,
    TimelineClip,
    TimelineGap,
    TimelineSegment,
    Track,
    TrackKind,
)

# Float noise below this is neither a gap nor an overlap.
GAP_EPSILON = 1e-3


@dataclass
class ExportClip:
    clip: TimelineClip
    track_id: int
    track_kind: TrackKind


def analyze_timeline(tracks: list[Track]) -> TimelineAnalysis:
    """
    Inspect every track for gaps, overlaps and concurrency depth.

    Pure: the same track list always yields the same analysis, so it is safe
    to call on every timeline mutation.
    """
    gaps: list[TimelineGap] = []
    has_overlap = False

    for track in tracks:
        track_gaps, track_overlaps = _scan_track(track)
        gaps.extend(track_gaps)
        has_overlap = has_overlap or track_overlaps

    segments = _build_segments(tracks)
    max_concurrent = max((seg.concurrency for seg in segments), default=0)

    return TimelineAnalysis(
        total_duration=calculate_timeline_duration(tracks),
        gaps=gaps,
        segments=segments,
        has_overlapping_clips=has_overlap,
        max_concurrent_tracks=max_concurrent,
    )


def calculate_timeline_duration(tracks: list[Track]) -> float:
    ends = [clip.end_time for track in tracks for clip in _playable(track.clips)]
    return max(ends, default=0.0)


def get_export_clips(tracks: list[Track]) -> list[ExportClip]:
    """All playable clips across tracks, sorted by start time."""
    result = [
        ExportClip(clip=clip, track_id=track.track_id, track_kind=track.kind)
        for track in tracks
        for clip in _playable(track.clips)
    ]
    result.sort(key=lambda item: item.clip.start_time)
    return result


def has_timeline_gaps(tracks: list[Track]) -> bool:
    return any(_scan_track(track)[0] for track in tracks)


def get_track_gaps(tracks: list[Track], track_id: int) -> list[TimelineGap]:
    for track in tracks:
        if track.track_id == track_id:
            return _scan_track(track)[0]
    return []


def _playable(clips: list[TimelineClip]) -> list[TimelineClip]:
    return [clip for clip in clips if clip.duration > 0]


def _scan_track(track: Track) -> tuple[list[TimelineGap], bool]:
    clips = _playable(track.sorted_clips())
    gaps: list[TimelineGap] = []
    has_overlap = False

    # Running max end, so a long clip covers any shorter clip it contains.
    covered_until = 0.0
    for clip in clips:
        distance = clip.start_time - covered_until
        if distance > GAP_EPSILON:
            gaps.append(
                TimelineGap(
                    track_id=track.track_id,
                    track_kind=track.kind,
                    start_time=covered_until,
                    end_time=clip.start_time,
                )
            )
        elif distance < -GAP_EPSILON:
            has_overlap = True
        covered_until = max(covered_until, clip.end_time)

    return gaps, has_overlap


def _build_segments(tracks: list[Track]) -> list[TimelineSegment]:
    entries = get_export_clips(tracks)
    if not entries:
        return []

    points: set[float] = set()
    for entry in entries:
        points.add(entry.clip.start_time)
        points.add(entry.clip.end_time)
    boundaries = sorted(points)

    segments: list[TimelineSegment] = []
    for start, end in zip(boundaries, boundaries[1:]):
        active = [
            SegmentClipRef(
                track_id=entry.track_id,
                track_kind=entry.track_kind,
                clip_id=entry.clip.clip_id,
            )
            for entry in entries
            if entry.clip.start_time <= start and entry.clip.end_time >= end
        ]
        if active:
            segments.append(TimelineSegment(start_time=start, end_time=end, clips=active))

    return segments
