# inbox/tasks.py
import logging

from celery import shared_task

from .ingestion import IngestionSweep, run_ingestion_cycle

logger = logging.getLogger(__name__)


@shared_task
def run_ingestion_sweep():
    reports = IngestionSweep().run_all()
    logger.info("[SWEEP] Finished sweep over %d accounts", len(reports))
    return [report.as_dict() for report in reports]


@shared_task
def ingest_account(account_id):
    return run_ingestion_cycle(account_id).as_dict()
