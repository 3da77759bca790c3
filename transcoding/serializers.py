from rest_framework import serializers
from .models import Lesson, TranscodeJob


class LessonProcessingSerializer(serializers.ModelSerializer):
    class Meta:
        model = Lesson
        fields = [
            "id",
            "processing_status",
            "manifest_url",
            "thumbnail_url",
            "duration_seconds",
            "updated_at",
        ]


class TranscodeJobSerializer(serializers.ModelSerializer):
    lesson = LessonProcessingSerializer(read_only=True)

    class Meta:
        model = TranscodeJob
        fields = [
            "id",
            "status",
            "progress",
            "error_message",
            "attempts",
            "source_url",
            "manifest_url",
            "thumbnail_url",
            "duration_seconds",
            "started_at",
            "completed_at",
            "created_at",
            "updated_at",
            "lesson",
        ]


class EnqueueJobRequestSerializer(serializers.Serializer):
    lesson_id = serializers.CharField(max_length=64)
    source_url = serializers.URLField(max_length=1024)
    job_id = serializers.UUIDField(required=False)

    def validate_source_url(self, value):
        if not value.lower().startswith(("http://", "https://")):
            raise serializers.ValidationError("source_url must be an http(s) URL.")
        return value

    def validate_job_id(self, value):
        if TranscodeJob.objects.filter(pk=value).exists():
            raise serializers.ValidationError("A job with this id already exists.")
        return value
