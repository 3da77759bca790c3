import logging

from celery import shared_task
from django.conf import settings
from django.core.exceptions import ObjectDoesNotExist
from django.db import DatabaseError, transaction

from .errors import PipelineError
from .models import Lesson, ProcessingStatus, TranscodeJob
from .orchestrator import run_transcode_job

logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ObjectDoesNotExist):
        return False
    if isinstance(exc, PipelineError):
        return exc.retryable
    return True


def retry_countdown(retries: int) -> int:
    """Exponential backoff: base, 2*base, 4*base, ..."""
    return settings.TRANSCODE_RETRY_BASE_DELAY * (2 ** retries)


@shared_task(
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    time_limit=settings.CELERY_TASK_TIME_LIMIT,
    max_retries=None,  # attempts are bounded by TRANSCODE_MAX_ATTEMPTS below
)
def transcode_video(self, job_id: str):
    """
    One delivery of a transcode job. Failed attempts are re-queued with
    exponential backoff until TRANSCODE_MAX_ATTEMPTS is reached.
    """
    attempt = self.request.retries + 1
    max_attempts = settings.TRANSCODE_MAX_ATTEMPTS

    try:
        # the lesson is only marked failed when no retry will follow
        result = run_transcode_job(job_id, final_attempt=attempt >= max_attempts)
    except Exception as e:
        if attempt < max_attempts and _is_retryable(e):
            countdown = retry_countdown(self.request.retries)
            logger.warning(
                "job %s attempt %s/%s failed, retrying in %ss: %s",
                job_id, attempt, max_attempts, countdown, e,
            )
            raise self.retry(exc=e, countdown=countdown)
        if attempt < max_attempts:
            # gave up early on a non-retryable error; the orchestrator left the lesson processing
            _mark_lesson_failed(job_id)
        logger.error("job %s failed permanently after %s attempt(s): %s", job_id, attempt, e)
        raise

    return {
        "job_id": str(job_id),
        "manifest_url": result.manifest_url,
        "thumbnail_url": result.thumbnail_url,
        "duration_seconds": result.duration_seconds,
    }


def _mark_lesson_failed(job_id) -> None:
    try:
        Lesson.objects.filter(transcode_jobs__id=job_id).update(processing_status=ProcessingStatus.FAILED)
    except DatabaseError:
        logger.exception("could not mark lesson failed for job %s", job_id)


def enqueue_transcode(lesson: Lesson, source_url: str, job_id=None) -> TranscodeJob:
    """
    Create a pending job for the lesson and queue it once the surrounding
    transaction commits.
    """
    with transaction.atomic():
        job = TranscodeJob.objects.create(
            **({"id": job_id} if job_id else {}),
            lesson=lesson,
            source_url=source_url,
        )
        lesson.video_url = source_url
        lesson.processing_status = ProcessingStatus.PENDING
        lesson.save(update_fields=["video_url", "processing_status", "updated_at"])
        transaction.on_commit(lambda: transcode_video.delay(str(job.id)))

    logger.info("queued transcode job %s for lesson %s", job.id, lesson.pk)
    return job
