from __future__ import annotations

from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from .errors import EncoderFailed, ProbeError, ThumbnailError
from .inspector import probe_duration
from .media import MediaTool
from .utils import ensure_dir

THUMBNAIL_SIZE = (640, 360)
MAX_CAPTURE_SECONDS = 5.0


def capture_instant(duration: float) -> float:
    """5s in, or a quarter of the way through clips shorter than 20s."""
    return max(0.0, min(MAX_CAPTURE_SECONDS, duration / 4))


def extract_thumbnail(
    input_path,
    output_path,
    *,
    tool: MediaTool,
    duration: Optional[float] = None,
) -> Path:
    """Grab one JPEG frame scaled to THUMBNAIL_SIZE. Raises ThumbnailError."""
    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    if duration is None:
        try:
            duration = probe_duration(input_path, tool)
        except ProbeError as e:
            raise ThumbnailError(f"thumbnail probe failed: {e}") from e

    at = capture_instant(duration)
    w, h = THUMBNAIL_SIZE
    args = [
        "-ss", f"{at:.3f}",
        "-i", str(input_path),
        "-frames:v", "1",
        "-vf", f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2",
        "-q:v", "2",
        str(output_path),
    ]
    try:
        tool.encode(args)
    except EncoderFailed as e:
        raise ThumbnailError(f"thumbnail ffmpeg failed: {e}") from e

    if not output_path.exists():
        raise ThumbnailError("thumbnail was not written")
    try:
        with Image.open(output_path) as img:
            img.verify()
    except (UnidentifiedImageError, OSError) as e:
        raise ThumbnailError(f"thumbnail is not a valid image: {e}") from e
    return output_path
