"""
Tests for caption rebasing and SRT handling.
"""

from pathlib import Path

import pytest

from models.export_models import PreparedClip
from models.timeline_models import CaptionDocument, CaptionSpan
from utils.caption_utils import (
    format_srt,
    format_srt_time,
    get_active_caption,
    merge_clip_captions,
    parse_srt,
    parse_srt_time,
    rebase_caption_spans,
    write_caption_artifact,
)


SAMPLE_SRT = """1
00:00:01,000 --> 00:00:02,500
Hello there

2
00:00:03.000 --> 00:00:05,000
Second line
continues here

not-a-number
00:00:06,000 --> 00:00:07,000
Skipped block

3
00:00:08,000 --> 00:00:09,000
"""


@pytest.fixture
def document() -> CaptionDocument:
    """Asset-relative captions."""
    return CaptionDocument(
        spans=[
            CaptionSpan(start=0.5, end=1.5, text="before trim"),
            CaptionSpan(start=1.5, end=3.0, text="straddles trim"),
            CaptionSpan(start=4.0, end=5.0, text="inside"),
            CaptionSpan(start=9.0, end=11.0, text="crosses out point"),
            CaptionSpan(start=12.0, end=13.0, text="after out point"),
        ]
    )


def make_prepared(clip_id: str, start: float, trim_in: float, trim_out: float, captions=None):
    return PreparedClip(
        clip_id=clip_id,
        track_id=1,
        track_index=0,
        file_path=f"/media/{clip_id}.mp4",
        start_time=start,
        trim_in=trim_in,
        trim_out=trim_out,
        has_audio=True,
        has_video=True,
        captions=captions,
    )


class TestRebase:
    """Tests for shifting spans into timeline time."""

    def test_shift_by_trim_and_start(self, document):
        spans = rebase_caption_spans(document, trim_in=2.0, start_time=10.0)

        assert [s.text for s in spans] == [
            "straddles trim",
            "inside",
            "crosses out point",
            "after out point",
        ]
        assert spans[0].start == pytest.approx(10.0)
        assert spans[0].end == pytest.approx(11.0)
        assert spans[1].start == pytest.approx(12.0)
        assert spans[1].end == pytest.approx(13.0)

    def test_span_ending_at_trim_point_is_dropped(self):
        doc = CaptionDocument(spans=[CaptionSpan(start=0.0, end=2.0, text="gone")])

        assert rebase_caption_spans(doc, trim_in=2.0, start_time=0.0) == []

    def test_trim_out_clamps_and_drops(self, document):
        spans = rebase_caption_spans(document, trim_in=2.0, start_time=0.0, trim_out=10.0)

        assert [s.text for s in spans] == ["straddles trim", "inside", "crosses out point"]
        assert spans[-1].start == pytest.approx(7.0)
        assert spans[-1].end == pytest.approx(8.0)

    def test_rebase_is_idempotent_and_ordered(self, document):
        first = rebase_caption_spans(document, trim_in=1.0, start_time=4.0)
        second = rebase_caption_spans(document, trim_in=1.0, start_time=4.0)

        assert first == second
        starts = [s.start for s in first]
        assert starts == sorted(starts)


class TestMerge:
    """Tests for merging captions from several clips."""

    def test_merge_in_clip_order(self):
        doc_a = CaptionDocument(spans=[CaptionSpan(start=1.0, end=2.0, text="a")])
        doc_b = CaptionDocument(spans=[CaptionSpan(start=5.0, end=6.0, text="b")])
        clips = [
            make_prepared("one", start=0.0, trim_in=0.0, trim_out=3.0, captions=doc_a),
            make_prepared("two", start=3.0, trim_in=0.0, trim_out=2.0),
            make_prepared("three", start=5.0, trim_in=4.0, trim_out=8.0, captions=doc_b),
        ]

        merged = merge_clip_captions(clips)

        assert [s.text for s in merged.spans] == ["a", "b"]
        assert merged.spans[1].start == pytest.approx(6.0)
        assert merged.spans[1].end == pytest.approx(7.0)

    def test_merge_without_captions(self):
        merged = merge_clip_captions([make_prepared("one", 0.0, 0.0, 3.0)])

        assert merged.is_empty

    def test_merged_output_is_byte_identical(self, document):
        clips = [make_prepared("one", 2.0, 1.0, 10.0, captions=document)]

        assert format_srt(merge_clip_captions(clips)) == format_srt(merge_clip_captions(clips))


class TestSrt:
    """Tests for SRT formatting and parsing."""

    def test_format_time(self):
        assert format_srt_time(0) == "00:00:00,000"
        assert format_srt_time(3661.5) == "01:01:01,500"
        assert format_srt_time(59.9996) == "00:01:00,000"
        assert format_srt_time(-3) == "00:00:00,000"

    def test_parse_time(self):
        assert parse_srt_time("01:01:01,500") == pytest.approx(3661.5)
        assert parse_srt_time("00:00:02.250") == pytest.approx(2.25)
        with pytest.raises(ValueError):
            parse_srt_time("1:02")

    def test_format_reindexes(self):
        doc = CaptionDocument(
            spans=[
                CaptionSpan(start=0, end=1.25, text="first"),
                CaptionSpan(start=2, end=3, text="second"),
            ]
        )

        assert format_srt(doc) == (
            "1\n00:00:00,000 --> 00:00:01,250\nfirst\n"
            "\n"
            "2\n00:00:02,000 --> 00:00:03,000\nsecond\n"
        )

    def test_parse_skips_malformed_blocks(self):
        doc = parse_srt(SAMPLE_SRT)

        assert [s.text for s in doc.spans] == ["Hello there", "Second line\ncontinues here"]
        assert doc.spans[0].start == pytest.approx(1.0)
        assert doc.spans[0].end == pytest.approx(2.5)
        assert doc.spans[1].start == pytest.approx(3.0)

    def test_parse_empty(self):
        assert parse_srt("").is_empty
        assert parse_srt("   \n").is_empty

    def test_document_helpers(self):
        doc = CaptionDocument.from_srt(SAMPLE_SRT)

        assert CaptionDocument.from_srt(doc.to_srt()) == doc

    def test_active_caption(self):
        doc = parse_srt(SAMPLE_SRT)

        assert get_active_caption(doc, 1.2) == "Hello there"
        assert get_active_caption(doc, 2.5) is None
        assert get_active_caption(doc, 0.0) is None


class TestArtifact:
    """Tests for writing the caption artifact."""

    def test_write_artifact(self, tmp_path: Path):
        doc = CaptionDocument(spans=[CaptionSpan(start=0, end=1, text="hi")])

        path = write_caption_artifact(doc, tmp_path / "scratch")

        assert path.parent == tmp_path / "scratch"
        assert path.suffix == ".srt"
        assert path.read_text(encoding="utf-8") == format_srt(doc)
