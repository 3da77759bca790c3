from pathlib import Path
from unittest.mock import MagicMock

import pytest
from PIL import Image

from transcoding.errors import DownloadError, EncoderFailed, ProbeError
from transcoding.models import Lesson, TranscodeJob
from transcoding.transcoder import Rendition


def timecode(seconds: float) -> str:
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return f"{int(h):02d}:{int(m):02d}:{s:05.2f}"


class FakeMediaTool:
    """
    Stands in for ffprobe/ffmpeg. Rendition encodes write a playlist and one
    segment and emit time= progress lines; thumbnail encodes write a real JPEG.
    """

    def __init__(
        self,
        duration=120.0,
        *,
        has_audio=True,
        fail_renditions=(),
        fail_thumbnail=False,
        fail_probe=False,
        progress_points=(0.25, 0.5, 0.75, 1.0),
    ):
        self.duration = duration
        self.has_audio = has_audio
        self.fail_renditions = set(fail_renditions)
        self.fail_thumbnail = fail_thumbnail
        self.fail_probe = fail_probe
        self.progress_points = progress_points
        self.encode_calls = []
        self.probe_calls = []

    def probe(self, path):
        self.probe_calls.append(str(path))
        if self.fail_probe:
            raise ProbeError("ffprobe failed (1): Invalid data found when processing input")
        streams = [{"codec_type": "video", "width": 1920, "height": 1080}]
        if self.has_audio:
            streams.append({"codec_type": "audio"})
        return {"format": {"duration": f"{self.duration:.6f}"}, "streams": streams}

    def encode(self, args, on_stderr_line=None):
        self.encode_calls.append(list(args))
        output = Path(args[-1])

        if output.suffix == ".jpg":
            if self.fail_thumbnail:
                raise EncoderFailed(1, "Output file is empty, nothing was encoded")
            Image.new("RGB", (640, 360), (20, 40, 60)).save(output, format="JPEG")
            return

        rendition_dir = output.parent
        if rendition_dir.name in self.fail_renditions:
            raise EncoderFailed(1, "Conversion failed!")
        for point in self.progress_points:
            if on_stderr_line is not None:
                on_stderr_line(
                    f"frame=  100 fps= 50 q=28.0 size=     512kB "
                    f"time={timecode(point * self.duration)} bitrate= 600.0kbits/s speed=2.0x"
                )
        (rendition_dir / "segment_000.ts").write_bytes(b"\x47" * 188)
        output.write_text("#EXTM3U\n#EXT-X-ENDLIST\n", encoding="utf-8")


@pytest.fixture
def ladder():
    return [
        Rendition("360p", 640, 360, "600k", "64k"),
        Rendition("480p", 854, 480, "1200k", "96k"),
        Rendition("720p", 1280, 720, "2500k", "128k"),
    ]


@pytest.fixture
def fake_tool():
    return FakeMediaTool()


@pytest.fixture
def pipeline_settings(settings, tmp_path):
    settings.TRANSCODE_TEMP_DIR = str(tmp_path / "work")
    settings.S3_PUBLIC_BASE_URL = "https://cdn.example.com"
    settings.S3_BUCKET = "lesson-videos"
    settings.S3_UPLOAD_MAX_WORKERS = 4
    settings.HLS_TIME_SECONDS = 6
    return settings


@pytest.fixture
def s3_client():
    return MagicMock(name="s3")


class RecordingDownloader:
    def __init__(self, fail=False):
        self.fail = fail
        self.destinations = []

    def __call__(self, url, dst):
        self.destinations.append(Path(dst))
        if self.fail:
            raise DownloadError(f"download failed: HTTP 503 for {url}")
        Path(dst).write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64)
        return Path(dst)


@pytest.fixture
def downloader():
    return RecordingDownloader()


@pytest.fixture
def lesson(db):
    return Lesson.objects.create(pk="lesson-1", title="Engine basics")


@pytest.fixture
def job(lesson):
    return TranscodeJob.objects.create(lesson=lesson, source_url="https://uploads.example.com/raw/lesson-1.mp4")
