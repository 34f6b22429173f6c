from django.conf import settings
from django_celery_beat.models import PeriodicTask, IntervalSchedule
import json

SWEEP_TASK_NAME = "run-ingestion-sweep"


def setup_ingestion_schedule():
    schedule, _ = IntervalSchedule.objects.get_or_create(
        every=settings.INGESTION_INTERVAL_SECONDS, period=IntervalSchedule.SECONDS
    )
    task, _ = PeriodicTask.objects.update_or_create(
        name=SWEEP_TASK_NAME,
        defaults={
            "interval": schedule,
            "task": "inbox.tasks.run_ingestion_sweep",
            "args": json.dumps([]),
            "enabled": True,
        }
    )
    return task
