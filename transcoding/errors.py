from __future__ import annotations


class PipelineError(RuntimeError):
    """Base for failures of a pipeline stage. Retryable unless a subclass says otherwise."""

    stage = "pipeline"
    retryable = True


class DownloadError(PipelineError):
    stage = "download"

    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class ProbeError(PipelineError):
    stage = "probe"


class TranscodeError(PipelineError):
    stage = "transcode"

    def __init__(self, message: str, *, rendition: str | None = None):
        super().__init__(message)
        self.rendition = rendition


class ThumbnailError(PipelineError):
    """Thumbnail extraction failed. The orchestrator degrades instead of failing the job."""

    stage = "thumbnail"


class UploadError(PipelineError):
    stage = "upload"

    def __init__(self, message: str, *, key: str | None = None):
        super().__init__(message)
        self.key = key


class PersistenceError(RuntimeError):
    """Writing job/lesson status failed. Logged by the orchestrator, never raised to the worker."""


class EncoderFailed(RuntimeError):
    """The encoder/prober subprocess exited non-zero or timed out."""

    def __init__(self, returncode: int | None, stderr_tail: str = ""):
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        if returncode is None:
            msg = "process timed out"
        else:
            msg = f"process exited with code {returncode}"
        if stderr_tail:
            msg = f"{msg}: {stderr_tail}"
        super().__init__(msg)
