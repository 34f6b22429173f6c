# serializers.py
from rest_framework import serializers
from .models import Email, UnsubscribeJob
from .states import dump_state


class UnsubscribeJobSerializer(serializers.ModelSerializer):
    class Meta:
        model = UnsubscribeJob
        fields = ["id", "job_status", "last_attempted_at", "result"]
        read_only_fields = fields


class EmailSerializer(serializers.ModelSerializer):
    category = serializers.CharField(source="category.name", default=None)
    unsubscribe_state = serializers.SerializerMethodField()
    unsubscribe_jobs = UnsubscribeJobSerializer(many=True, read_only=True)

    class Meta:
        model = Email
        fields = [
            "id",
            "message_id",
            "thread_id",
            "sender",
            "recipient",
            "subject",
            "snippet",
            "body",
            "summary",
            "received_at",
            "imported_at",
            "category",
            "confidence",
            "is_archived",
            "unsubscribe_links",
            "unsubscribe_state",
            "unsubscribe_jobs",
        ]
        read_only_fields = fields

    def get_unsubscribe_state(self, obj):
        return dump_state(obj.unsubscribe_state)
