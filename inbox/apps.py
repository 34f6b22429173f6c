import sys
import logging

from django.apps import AppConfig
from django.db import DatabaseError

logger = logging.getLogger(__name__)


class InboxConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'inbox'

    def ready(self):
        if any(cmd in sys.argv for cmd in ("celery", "celerybeat", "beat")):
            from .startup import setup_ingestion_schedule
            try:
                setup_ingestion_schedule()
            except DatabaseError as e:
                logger.warning("Could not install the ingestion schedule (run migrations first?): %s", e)
