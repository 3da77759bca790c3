from django.shortcuts import get_object_or_404
from rest_framework import status, views
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from .models import Lesson, TranscodeJob
from .serializers import (
    EnqueueJobRequestSerializer,
    LessonProcessingSerializer,
    TranscodeJobSerializer,
)
from .tasks import enqueue_transcode


class EnqueueJobView(views.APIView):
    """
    Creates a pending TranscodeJob for a lesson whose source video is already
    uploaded, and queues it for the video workers.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = EnqueueJobRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        lesson, _ = Lesson.objects.get_or_create(pk=data["lesson_id"])
        job = enqueue_transcode(lesson, data["source_url"], job_id=data.get("job_id"))
        return Response(
            {"job_id": str(job.id), "status": job.status},
            status=status.HTTP_202_ACCEPTED,
        )


class JobDetailView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, job_id):
        job = get_object_or_404(TranscodeJob.objects.select_related("lesson"), pk=job_id)
        return Response(TranscodeJobSerializer(job).data)


class LessonProcessingView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, lesson_id):
        lesson = get_object_or_404(Lesson, pk=lesson_id)
        return Response(LessonProcessingSerializer(lesson).data)
