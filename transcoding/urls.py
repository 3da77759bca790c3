from django.urls import path
from .views import EnqueueJobView, JobDetailView, LessonProcessingView

urlpatterns = [
    path("jobs/", EnqueueJobView.as_view(), name="enqueue_job"),
    path("jobs/<uuid:job_id>/", JobDetailView.as_view(), name="job_detail"),
    path("lessons/<str:lesson_id>/processing/", LessonProcessingView.as_view(), name="lesson_processing"),
]
