import os
from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "video_pipeline.settings")

celery_app = Celery("video_pipeline")
celery_app.config_from_object("django.conf:settings", namespace="CELERY")

# Transcode jobs get their own queue so encoding hosts can consume only them.
celery_app.conf.task_default_queue = "default"
celery_app.conf.task_routes = {
    "transcoding.tasks.transcode_video": {"queue": "video-processing"},
}

celery_app.autodiscover_tasks()
