"""
Process boundary to the external media tools.

Everything that shells out to ffprobe/ffmpeg goes through a ``MediaTool`` so the
pipeline can run against a fake in tests.
"""
from __future__ import annotations

import json
import logging
import queue
import subprocess
import threading
import time
from collections import deque
from typing import Callable, Optional, Protocol, Sequence

from django.conf import settings

from .errors import EncoderFailed, ProbeError
from .utils import trim_tail

logger = logging.getLogger(__name__)

StderrCallback = Callable[[str], None]


class MediaTool(Protocol):
    def probe(self, path: str) -> dict:
        ...

    def encode(self, args: Sequence[str], on_stderr_line: Optional[StderrCallback] = None) -> None:
        ...


class FFmpegTool:
    """ffprobe/ffmpeg via subprocess."""

    STDERR_TAIL_LINES = 50

    def __init__(self, ffmpeg_bin: str, ffprobe_bin: str, probe_timeout: int, encode_timeout: int):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.probe_timeout = probe_timeout
        self.encode_timeout = encode_timeout

    def probe(self, path: str) -> dict:
        cmd = [
            self.ffprobe_bin,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        try:
            p = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                timeout=self.probe_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ProbeError(f"ffprobe timeout ({self.probe_timeout}s)") from e
        except OSError as e:
            raise ProbeError(f"ffprobe could not be started: {e}") from e

        if p.returncode != 0:
            raise ProbeError(f"ffprobe failed ({p.returncode}): {trim_tail(p.stderr)}")

        try:
            return json.loads(p.stdout or "")
        except ValueError as e:
            raise ProbeError("ffprobe returned invalid JSON") from e

    def encode(self, args: Sequence[str], on_stderr_line: Optional[StderrCallback] = None) -> None:
        cmd = [self.ffmpeg_bin, "-hide_banner", "-y", *args]
        logger.debug("running %s", " ".join(cmd))

        tail: deque = deque(maxlen=self.STDERR_TAIL_LINES)
        try:
            # text mode translates ffmpeg's \r progress updates into separate lines;
            # input metadata echoed on stderr is not necessarily UTF-8
            p = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise EncoderFailed(None, f"ffmpeg could not be started: {e}") from e

        # The reader thread only moves lines; callbacks run on the caller's thread,
        # which owns the job's DB connection.
        lines: queue.Queue = queue.Queue()

        def read_stderr() -> None:
            try:
                for line in p.stderr:
                    lines.put(line.rstrip("\n"))
            except (OSError, ValueError) as e:
                logger.warning("ffmpeg stderr reader stopped: %s", e)
            finally:
                lines.put(None)

        reader = threading.Thread(target=read_stderr, daemon=True)

        with p:
            reader.start()
            try:
                deadline = time.monotonic() + self.encode_timeout
                self._pump(lines, tail, deadline, on_stderr_line)
                try:
                    p.wait(timeout=max(1.0, deadline - time.monotonic()))
                except subprocess.TimeoutExpired:
                    raise EncoderFailed(None, trim_tail("\n".join(tail)))
            except BaseException:
                # includes SoftTimeLimitExceeded raised by the worker
                p.kill()
                raise
            finally:
                reader.join(timeout=2.0)

        if p.returncode != 0:
            raise EncoderFailed(p.returncode, trim_tail("\n".join(tail)))

    @staticmethod
    def _pump(lines: queue.Queue, tail: deque, deadline: float, on_stderr_line: Optional[StderrCallback]) -> None:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise EncoderFailed(None, trim_tail("\n".join(tail)))
            try:
                line = lines.get(timeout=min(remaining, 1.0))
            except queue.Empty:
                continue
            if line is None:
                return
            tail.append(line)
            if on_stderr_line is not None:
                on_stderr_line(line)


def default_media_tool() -> FFmpegTool:
    return FFmpegTool(
        ffmpeg_bin=settings.FFMPEG_BIN,
        ffprobe_bin=settings.FFPROBE_BIN,
        probe_timeout=settings.FFPROBE_TIMEOUT_SECONDS,
        encode_timeout=settings.FFMPEG_TIMEOUT_SECONDS,
    )
