from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from django.conf import settings

from .errors import EncoderFailed, TranscodeError
from .inspector import probe_duration
from .media import MediaTool
from .utils import ensure_dir

logger = logging.getLogger(__name__)

# ffmpeg stderr progress: time=00:01:23.45
_RE_TIME = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_RE_BITRATE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kKmM]?)\s*$")

MASTER_MANIFEST = "master.m3u8"
RENDITION_PLAYLIST = "playlist.m3u8"

ProgressCallback = Callable[[float], None]


def parse_bitrate(value: str) -> int:
    """'600k' -> 600000 bits/s, '2M' -> 2000000."""
    m = _RE_BITRATE.match(str(value))
    if not m:
        raise ValueError(f"invalid bitrate: {value!r}")
    number, unit = float(m.group(1)), m.group(2).lower()
    factor = {"": 1, "k": 1000, "m": 1000 * 1000}[unit]
    return int(number * factor)


@dataclass(frozen=True)
class Rendition:
    name: str
    width: int
    height: int
    video_bitrate: str
    audio_bitrate: str

    @property
    def bandwidth(self) -> int:
        return parse_bitrate(self.video_bitrate)

    @property
    def buffer_size(self) -> str:
        return f"{2 * self.bandwidth // 1000}k"

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


def load_ladder(entries: Optional[Iterable[dict]] = None) -> List[Rendition]:
    """Bitrate ladder from settings.TRANSCODE_LADDER, in configured (ascending) order."""
    entries = settings.TRANSCODE_LADDER if entries is None else entries
    ladder = [Rendition(**e) for e in entries]
    if not ladder:
        raise ValueError("bitrate ladder is empty")
    names = [r.name for r in ladder]
    if len(set(names)) != len(names):
        raise ValueError(f"duplicate rendition names in ladder: {names}")
    return ladder


def parse_timecode(line: str) -> Optional[float]:
    """Seconds from the last time=HH:MM:SS.xx on an ffmpeg stderr line."""
    matches = _RE_TIME.findall(line)
    if not matches:
        return None
    h, m, s = matches[-1]
    return int(h) * 3600 + int(m) * 60 + float(s)


def build_rendition_args(
    input_path: str,
    rendition_dir: Path,
    rendition: Rendition,
    *,
    has_audio: bool = True,
    hls_time: int = 6,
) -> List[str]:
    w, h = rendition.width, rendition.height
    args = [
        "-i", str(input_path),
        "-vf", f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2",
        "-c:v", "libx264",
        "-preset", "fast",
        "-b:v", rendition.video_bitrate,
        "-maxrate", rendition.video_bitrate,
        "-bufsize", rendition.buffer_size,
    ]
    if has_audio:
        args += ["-c:a", "aac", "-b:a", rendition.audio_bitrate]
    else:
        args += ["-an"]
    args += [
        "-f", "hls",
        "-hls_time", str(hls_time),
        "-hls_list_size", "0",
        "-hls_playlist_type", "vod",
        "-hls_segment_filename", str(rendition_dir / "segment_%03d.ts"),
        str(rendition_dir / RENDITION_PLAYLIST),
    ]
    return args


def write_master_manifest(output_dir: Path, ladder: Sequence[Rendition]) -> Path:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", ""]
    for r in ladder:
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={r.bandwidth},RESOLUTION={r.resolution}")
        lines.append(f"{r.name}/{RENDITION_PLAYLIST}")
        lines.append("")
    path = Path(output_dir) / MASTER_MANIFEST
    path.write_text("\n".join(lines), encoding="utf-8")
    return path


def manifest_rendition_names(manifest_path: Path) -> List[str]:
    """Rendition directory names referenced by a master manifest, in order."""
    names = []
    for raw in Path(manifest_path).read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        names.append(line.split("/", 1)[0])
    return names


def validate_hls_output(output_dir: Path, ladder: Sequence[Rendition]) -> None:
    """
    Fail the job on a broken encode instead of publishing it:
    - master.m3u8 exists and lists exactly the ladder, in order
    - every rendition has its playlist and at least one segment
    """
    output_dir = Path(output_dir)
    master = output_dir / MASTER_MANIFEST
    if not master.exists():
        raise TranscodeError("master.m3u8 missing")

    expected = [r.name for r in ladder]
    found = manifest_rendition_names(master)
    if found != expected:
        raise TranscodeError(f"master.m3u8 lists {found}, expected {expected}")

    for r in ladder:
        rdir = output_dir / r.name
        if not (rdir / RENDITION_PLAYLIST).exists():
            raise TranscodeError(f"playlist missing for {r.name}", rendition=r.name)
        if not any(rdir.glob("*.ts")):
            raise TranscodeError(f"no segments produced for {r.name}", rendition=r.name)


def transcode_to_renditions(
    input_path,
    output_dir,
    ladder: Sequence[Rendition],
    on_progress: Optional[ProgressCallback] = None,
    *,
    tool: MediaTool,
    duration: Optional[float] = None,
    has_audio: bool = True,
    hls_time: Optional[int] = None,
) -> Path:
    """
    Encode every rendition of the ladder as an HLS segment set, one after another,
    then write the master manifest. Returns the manifest path.

    on_progress receives the overall fraction (index + fraction) / len(ladder).
    An encoder failure aborts the remaining renditions and no manifest is written.
    """
    output_dir = ensure_dir(Path(output_dir))
    hls_time = settings.HLS_TIME_SECONDS if hls_time is None else hls_time
    if duration is None:
        duration = probe_duration(input_path, tool)

    count = len(ladder)
    last = -1.0

    def report(value: float) -> None:
        nonlocal last
        value = min(1.0, max(0.0, value))
        if value <= last:
            return
        last = value
        if on_progress is not None:
            on_progress(value)

    for index, rendition in enumerate(ladder):
        rendition_dir = ensure_dir(output_dir / rendition.name)
        report(index / count)

        def on_line(line: str, index: int = index) -> None:
            current = parse_timecode(line)
            if current is None or not duration:
                return
            fraction = min(current / duration, 1.0)
            report((index + fraction) / count)

        logger.info("transcoding %s (%d/%d) %s", rendition.name, index + 1, count, rendition.resolution)
        args = build_rendition_args(
            str(input_path), rendition_dir, rendition, has_audio=has_audio, hls_time=hls_time
        )
        try:
            tool.encode(args, on_stderr_line=on_line)
        except EncoderFailed as e:
            raise TranscodeError(
                f"rendition {rendition.name} failed: {e}", rendition=rendition.name
            ) from e

        report((index + 1) / count)
        logger.info("rendition %s complete", rendition.name)

    master = write_master_manifest(output_dir, ladder)
    logger.info("master playlist written: %s", master)
    return master
