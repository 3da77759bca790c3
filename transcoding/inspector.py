from __future__ import annotations

import math
from dataclasses import dataclass

from .errors import ProbeError
from .media import MediaTool


@dataclass(frozen=True)
class MediaInfo:
    duration: float
    width: int
    height: int
    has_audio: bool


def _duration_from(metadata: dict) -> float:
    raw = (metadata.get("format") or {}).get("duration")
    if raw is None:
        raise ProbeError("probe output has no format.duration")
    try:
        sec = float(raw)
    except (TypeError, ValueError):
        raise ProbeError(f"unparseable duration: {raw!r}")
    if not math.isfinite(sec) or sec < 0:
        raise ProbeError(f"invalid duration: {raw!r}")
    return sec


def probe_duration(path, tool: MediaTool) -> float:
    """Duration of the local media file in seconds. No retries here."""
    return _duration_from(tool.probe(str(path)))


def probe_media_info(path, tool: MediaTool) -> MediaInfo:
    metadata = tool.probe(str(path))
    streams = metadata.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), {})
    return MediaInfo(
        duration=_duration_from(metadata),
        width=int(video.get("width") or 0),
        height=int(video.get("height") or 0),
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
    )
