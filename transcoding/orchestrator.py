"""
Drives one attempt of a transcode job:

    acquire -> workspace -> download -> probe -> transcode -> thumbnail
            -> upload -> finalize -> completed | failed

Each step persists (status=processing, progress) so a poller sees live progress.
The workspace is removed on every exit path. Fatal errors are recorded on the
job and re-raised for the queue's retry policy; a thumbnail failure only drops
the thumbnail.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from django.conf import settings
from django.db import DatabaseError
from django.utils import timezone

from .download import download_source
from .errors import PersistenceError, ThumbnailError
from .inspector import probe_media_info
from .media import MediaTool, default_media_tool
from .models import Lesson, ProcessingStatus, TranscodeJob
from .s3 import THUMBNAIL_NAME, StorageUploader
from .thumbnail import extract_thumbnail
from .transcoder import Rendition, load_ladder, transcode_to_renditions, validate_hls_output
from .utils import job_workspace, source_filename, trim_tail

logger = logging.getLogger(__name__)

# Persisted progress per stage; transcoding is spread over TRANSCODE_START..TRANSCODE_END.
PROGRESS_DOWNLOAD = 10
PROGRESS_PROBE = 20
PROGRESS_TRANSCODE_START = 30
PROGRESS_TRANSCODE_END = 80
PROGRESS_THUMBNAIL = 80
PROGRESS_UPLOAD = 85
PROGRESS_FINALIZE = 95
PROGRESS_DONE = 100

ERROR_MESSAGE_LIMIT = 4000


@dataclass(frozen=True)
class TranscodeResult:
    manifest_url: str
    thumbnail_url: Optional[str]
    duration_seconds: int


def transcode_progress(fraction: float) -> int:
    """Map the transcoder's 0..1 fraction onto the job's 30..80 band."""
    fraction = min(1.0, max(0.0, fraction))
    span = PROGRESS_TRANSCODE_END - PROGRESS_TRANSCODE_START
    return PROGRESS_TRANSCODE_START + round(span * fraction)


def _update(job: TranscodeJob, *, status=None, progress=None, error=None, **fields) -> None:
    """
    Persist a job status change. Progress never moves backwards within an attempt.
    A failed write is logged and swallowed: the worker keeps going.
    """
    if status:
        job.status = status
    if progress is not None:
        job.progress = max(job.progress, max(0, min(100, int(progress))))
    if error is not None:
        job.error_message = error
    for name, value in fields.items():
        setattr(job, name, value)
    update_fields = ["status", "progress", "error_message", "updated_at", *fields]
    try:
        job.save(update_fields=update_fields)
    except DatabaseError as e:
        err = PersistenceError(f"job {job.pk} status write failed: {e}")
        logger.error("%s", err)


def _update_lesson(lesson: Lesson, **fields) -> None:
    for name, value in fields.items():
        setattr(lesson, name, value)
    try:
        lesson.save(update_fields=[*fields, "updated_at"])
    except DatabaseError as e:
        err = PersistenceError(f"lesson {lesson.pk} status write failed: {e}")
        logger.error("%s", err)


class JobOrchestrator:
    def __init__(
        self,
        *,
        tool: Optional[MediaTool] = None,
        uploader: Optional[StorageUploader] = None,
        downloader: Optional[Callable[[str, Path], Path]] = None,
        ladder: Optional[Sequence[Rendition]] = None,
        temp_dir=None,
    ):
        self.tool = tool or default_media_tool()
        self.uploader = uploader or StorageUploader()
        self.downloader = downloader or download_source
        self.ladder = list(ladder) if ladder is not None else load_ladder()
        self.temp_dir = temp_dir or settings.TRANSCODE_TEMP_DIR

    def run(self, job_id, *, final_attempt: bool = True) -> TranscodeResult:
        job = TranscodeJob.objects.select_related("lesson").get(pk=job_id)
        lesson = job.lesson

        if job.status == TranscodeJob.Status.COMPLETED:
            # redelivered after success
            logger.info("job %s already completed, skipping", job.pk)
            return TranscodeResult(job.manifest_url, job.thumbnail_url, job.duration_seconds)

        self._acquire(job, lesson)
        try:
            result = self._execute(job, lesson)
        except Exception as e:
            logger.exception("job %s failed at %s%%: %s", job.pk, job.progress, e)
            self._fail(job, lesson, e, final_attempt=final_attempt)
            raise

        logger.info("job %s completed manifest=%s", job.pk, result.manifest_url)
        return result

    def _acquire(self, job: TranscodeJob, lesson: Lesson) -> None:
        # a new attempt starts from scratch: progress and error of a previous attempt are dropped
        job.progress = 0
        job.error_message = None
        _update(
            job,
            status=TranscodeJob.Status.PROCESSING,
            attempts=job.attempts + 1,
            started_at=timezone.now(),
            completed_at=None,
        )
        _update_lesson(lesson, processing_status=ProcessingStatus.PROCESSING)
        logger.info("job %s attempt %s started for lesson %s", job.pk, job.attempts, lesson.pk)

    def _execute(self, job: TranscodeJob, lesson: Lesson) -> TranscodeResult:
        with job_workspace(self.temp_dir, job.pk) as wd:
            src_path = wd / source_filename(job.source_url)
            out_dir = wd / "output"

            _update(job, progress=PROGRESS_DOWNLOAD)
            logger.info("job %s downloading %s", job.pk, job.source_url)
            self.downloader(job.source_url, src_path)

            _update(job, progress=PROGRESS_PROBE)
            info = probe_media_info(src_path, self.tool)
            logger.info(
                "job %s source duration=%.2fs %sx%s audio=%s",
                job.pk, info.duration, info.width, info.height, info.has_audio,
            )

            _update(job, progress=PROGRESS_TRANSCODE_START)
            last_pct = PROGRESS_TRANSCODE_START

            def on_progress(fraction: float) -> None:
                nonlocal last_pct
                pct = transcode_progress(fraction)
                if pct > last_pct:
                    last_pct = pct
                    _update(job, progress=pct)

            transcode_to_renditions(
                src_path,
                out_dir,
                self.ladder,
                on_progress,
                tool=self.tool,
                duration=info.duration,
                has_audio=info.has_audio,
            )
            validate_hls_output(out_dir, self.ladder)

            _update(job, progress=PROGRESS_THUMBNAIL)
            has_thumbnail = self._thumbnail(job, src_path, out_dir / THUMBNAIL_NAME, info.duration)

            _update(job, progress=PROGRESS_UPLOAD)
            uploaded = self.uploader.upload_output(lesson.pk, out_dir, has_thumbnail=has_thumbnail)

            _update(job, progress=PROGRESS_FINALIZE)
            result = TranscodeResult(
                manifest_url=uploaded.manifest_url,
                thumbnail_url=uploaded.thumbnail_url,
                duration_seconds=int(round(info.duration)),
            )
            self._finalize(job, lesson, result)
            return result

    def _thumbnail(self, job: TranscodeJob, src_path: Path, thumb_path: Path, duration: float) -> bool:
        try:
            extract_thumbnail(src_path, thumb_path, tool=self.tool, duration=duration)
        except ThumbnailError as e:
            logger.warning("job %s thumbnail skipped: %s", job.pk, e)
            thumb_path.unlink(missing_ok=True)
            return False
        return True

    def _finalize(self, job: TranscodeJob, lesson: Lesson, result: TranscodeResult) -> None:
        _update_lesson(
            lesson,
            manifest_url=result.manifest_url,
            thumbnail_url=result.thumbnail_url,
            duration_seconds=result.duration_seconds,
            processing_status=ProcessingStatus.COMPLETED,
        )
        _update(
            job,
            status=TranscodeJob.Status.COMPLETED,
            progress=PROGRESS_DONE,
            manifest_url=result.manifest_url,
            thumbnail_url=result.thumbnail_url,
            duration_seconds=result.duration_seconds,
            completed_at=timezone.now(),
        )

    def _fail(self, job: TranscodeJob, lesson: Lesson, exc: BaseException, *, final_attempt: bool) -> None:
        message = trim_tail(str(exc), ERROR_MESSAGE_LIMIT) or exc.__class__.__name__
        _update(
            job,
            status=TranscodeJob.Status.FAILED,
            error=message,
            completed_at=timezone.now(),
        )
        if final_attempt:
            _update_lesson(lesson, processing_status=ProcessingStatus.FAILED)


def run_transcode_job(job_id, *, final_attempt: bool = True, **deps) -> TranscodeResult:
    return JobOrchestrator(**deps).run(job_id, final_attempt=final_attempt)
