import pytest

from transcoding.errors import ProbeError
from transcoding.inspector import probe_duration, probe_media_info


class StaticProbe:
    def __init__(self, metadata):
        self.metadata = metadata

    def probe(self, path):
        return self.metadata

    def encode(self, args, on_stderr_line=None):
        raise AssertionError("inspector must not encode")


def test_probe_duration_reads_format_duration():
    tool = StaticProbe({"format": {"duration": "120.480000"}})
    assert probe_duration("in.mp4", tool) == pytest.approx(120.48)


@pytest.mark.parametrize(
    "metadata",
    [
        {},
        {"format": {}},
        {"format": {"duration": "N/A"}},
        {"format": {"duration": "-3"}},
        {"format": {"duration": "nan"}},
    ],
)
def test_probe_duration_rejects_missing_or_bad_values(metadata):
    with pytest.raises(ProbeError):
        probe_duration("in.mp4", StaticProbe(metadata))


def test_probe_error_from_tool_propagates(fake_tool):
    fake_tool.fail_probe = True
    with pytest.raises(ProbeError):
        probe_duration("in.mp4", fake_tool)


def test_probe_media_info_detects_streams():
    tool = StaticProbe(
        {
            "format": {"duration": "10.0"},
            "streams": [{"codec_type": "video", "width": 1280, "height": 720}],
        }
    )
    info = probe_media_info("in.mp4", tool)
    assert info.duration == 10.0
    assert (info.width, info.height) == (1280, 720)
    assert info.has_audio is False
