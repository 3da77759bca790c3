import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings as hsettings, strategies as st

from transcoding.errors import TranscodeError
from transcoding.transcoder import (
    Rendition,
    build_rendition_args,
    load_ladder,
    manifest_rendition_names,
    parse_bitrate,
    parse_timecode,
    transcode_to_renditions,
    validate_hls_output,
    write_master_manifest,
)

from .conftest import FakeMediaTool


def test_parse_timecode():
    assert parse_timecode("frame=1 time=00:01:23.45 bitrate=1k") == pytest.approx(83.45)
    assert parse_timecode("time=01:00:00.00") == pytest.approx(3600.0)
    assert parse_timecode("Stream mapping:") is None


def test_parse_bitrate():
    assert parse_bitrate("600k") == 600_000
    assert parse_bitrate("2.5M") == 2_500_000
    assert parse_bitrate("128000") == 128_000
    with pytest.raises(ValueError):
        parse_bitrate("fast")


def test_load_ladder_preserves_configured_order(settings):
    settings.TRANSCODE_LADDER = [
        {"name": "low", "width": 320, "height": 180, "video_bitrate": "300k", "audio_bitrate": "48k"},
        {"name": "high", "width": 1920, "height": 1080, "video_bitrate": "5000k", "audio_bitrate": "192k"},
    ]
    assert [r.name for r in load_ladder()] == ["low", "high"]


def test_load_ladder_rejects_duplicates():
    entry = {"name": "a", "width": 1, "height": 1, "video_bitrate": "1k", "audio_bitrate": "1k"}
    with pytest.raises(ValueError):
        load_ladder([entry, entry])


def test_rendition_args_scale_pad_and_hls_flags(tmp_path):
    r = Rendition("360p", 640, 360, "600k", "64k")
    args = build_rendition_args("in.mp4", tmp_path / "360p", r, hls_time=6)

    vf = args[args.index("-vf") + 1]
    assert vf == "scale=640:360:force_original_aspect_ratio=decrease,pad=640:360:(ow-iw)/2:(oh-ih)/2"
    assert args[args.index("-preset") + 1] == "fast"
    assert args[args.index("-b:v") + 1] == "600k"
    assert args[args.index("-maxrate") + 1] == "600k"
    assert args[args.index("-bufsize") + 1] == "1200k"
    assert args[args.index("-b:a") + 1] == "64k"
    assert args[args.index("-hls_time") + 1] == "6"
    assert args[args.index("-hls_list_size") + 1] == "0"
    assert args[-1] == str(tmp_path / "360p" / "playlist.m3u8")


def test_rendition_args_without_audio(tmp_path):
    r = Rendition("360p", 640, 360, "600k", "64k")
    args = build_rendition_args("in.mp4", tmp_path, r, has_audio=False)
    assert "-an" in args
    assert "-c:a" not in args


def test_progress_passes_through_rendition_boundaries(tmp_path, ladder):
    """120s input over a 3-rendition ladder reports ~0, 1/3, 2/3 and 1."""
    tool = FakeMediaTool(duration=120.0)
    reported = []

    transcode_to_renditions("in.mp4", tmp_path, ladder, reported.append, tool=tool, hls_time=6)

    assert reported[0] == pytest.approx(0.0)
    assert reported[-1] == pytest.approx(1.0)
    for boundary in (1 / 3, 2 / 3):
        assert any(v == pytest.approx(boundary) for v in reported)
    assert reported == sorted(reported)


def test_renditions_encoded_sequentially_in_ladder_order(tmp_path, ladder, fake_tool):
    transcode_to_renditions("in.mp4", tmp_path, ladder, None, tool=fake_tool, duration=120.0, hls_time=6)

    outputs = [Path(call[-1]).parent.name for call in fake_tool.encode_calls]
    assert outputs == ["360p", "480p", "720p"]
    # duration given: no extra probe
    assert fake_tool.probe_calls == []


def test_duration_probed_when_not_given(tmp_path, ladder, fake_tool):
    transcode_to_renditions("in.mp4", tmp_path, ladder, None, tool=fake_tool, hls_time=6)
    assert fake_tool.probe_calls == ["in.mp4"]


def test_second_rendition_failure_aborts_without_manifest(tmp_path, ladder):
    tool = FakeMediaTool(fail_renditions={"480p"})

    with pytest.raises(TranscodeError) as exc_info:
        transcode_to_renditions("in.mp4", tmp_path, ladder, None, tool=tool, hls_time=6)

    assert exc_info.value.rendition == "480p"
    assert "480p" in str(exc_info.value)
    assert not (tmp_path / "master.m3u8").exists()
    assert not (tmp_path / "720p").exists()
    assert len(tool.encode_calls) == 2


def test_master_manifest_lists_ladder_in_order(tmp_path, ladder):
    path = write_master_manifest(tmp_path, ladder)
    text = path.read_text()

    assert text.startswith("#EXTM3U\n#EXT-X-VERSION:3\n")
    assert "#EXT-X-STREAM-INF:BANDWIDTH=600000,RESOLUTION=640x360\n360p/playlist.m3u8" in text
    assert "#EXT-X-STREAM-INF:BANDWIDTH=2500000,RESOLUTION=1280x720\n720p/playlist.m3u8" in text
    assert manifest_rendition_names(path) == ["360p", "480p", "720p"]


def test_generated_manifest_references_exactly_the_ladder(tmp_path, ladder, fake_tool):
    master = transcode_to_renditions("in.mp4", tmp_path, ladder, None, tool=fake_tool, hls_time=6)
    assert manifest_rendition_names(master) == [r.name for r in ladder]
    validate_hls_output(tmp_path, ladder)


def test_validate_rejects_rendition_without_segments(tmp_path, ladder, fake_tool):
    transcode_to_renditions("in.mp4", tmp_path, ladder, None, tool=fake_tool, hls_time=6)
    (tmp_path / "720p" / "segment_000.ts").unlink()

    with pytest.raises(TranscodeError) as exc_info:
        validate_hls_output(tmp_path, ladder)
    assert exc_info.value.rendition == "720p"


def test_zero_duration_still_reports_completion(tmp_path, ladder):
    tool = FakeMediaTool(duration=0.0)
    reported = []
    transcode_to_renditions("in.mp4", tmp_path, ladder, reported.append, tool=tool, hls_time=6)
    assert reported[-1] == pytest.approx(1.0)
    assert reported == sorted(reported)


@hsettings(max_examples=50, deadline=None)
@given(
    duration=st.floats(min_value=0.5, max_value=7200),
    points=st.lists(st.floats(min_value=0.0, max_value=1.5), max_size=8),
    size=st.integers(min_value=1, max_value=5),
)
def test_reported_progress_is_non_decreasing_and_bounded(duration, points, size):
    ladder = [Rendition(f"r{i}", 320 * (i + 1), 180 * (i + 1), f"{300 * (i + 1)}k", "64k") for i in range(size)]
    tool = FakeMediaTool(duration=duration, progress_points=tuple(points))
    reported = []

    with tempfile.TemporaryDirectory() as d:
        transcode_to_renditions("in.mp4", d, ladder, reported.append, tool=tool, hls_time=6)
        assert manifest_rendition_names(Path(d) / "master.m3u8") == [r.name for r in ladder]

    assert reported == sorted(reported)
    assert all(0.0 <= v <= 1.0 for v in reported)
    assert reported[-1] == pytest.approx(1.0)
