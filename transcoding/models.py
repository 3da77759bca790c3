import uuid
from django.db import models


class ProcessingStatus(models.TextChoices):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Lesson(models.Model):
    """
    Owner record of a video. Only the processing fields written by the pipeline
    live here; the rest of the lesson belongs to the course catalog.
    """
    id = models.CharField(primary_key=True, max_length=64)
    title = models.CharField(max_length=255, blank=True, default="")
    video_url = models.URLField(max_length=1024, blank=True, default="")  # original upload
    processing_status = models.CharField(
        max_length=16, choices=ProcessingStatus.choices, default=ProcessingStatus.PENDING
    )
    manifest_url = models.URLField(max_length=1024, null=True, blank=True)
    thumbnail_url = models.URLField(max_length=1024, null=True, blank=True)
    duration_seconds = models.PositiveIntegerField(null=True, blank=True)

    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Lesson {self.id} ({self.processing_status})"


class TranscodeJob(models.Model):
    Status = ProcessingStatus

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    lesson = models.ForeignKey(Lesson, on_delete=models.PROTECT, related_name="transcode_jobs")
    source_url = models.URLField(max_length=1024)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    progress = models.PositiveSmallIntegerField(default=0)  # 0..100
    error_message = models.TextField(null=True, blank=True)  # set iff status == failed
    attempts = models.PositiveSmallIntegerField(default=0)

    # copy of the published result, kept with the audit trail
    manifest_url = models.URLField(max_length=1024, null=True, blank=True)
    thumbnail_url = models.URLField(max_length=1024, null=True, blank=True)
    duration_seconds = models.PositiveIntegerField(null=True, blank=True)

    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"TranscodeJob {self.id} {self.status} {self.progress}%"
