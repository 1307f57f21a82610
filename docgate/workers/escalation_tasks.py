"""Celery tasks for approval escalation.

The beat schedule runs the escalation scan every
``escalation_interval_minutes``. Run exactly one beat process: the scan
is not safe to run concurrently with itself.
"""

from typing import Any, Dict
import logging

from celery import Celery, shared_task

from docgate.db.session import SessionLocal
from docgate.services.escalation import run_approval_escalations
from docgate.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# Initialize Celery
celery_app = Celery(
    'docgate',
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_routes={
        'docgate.workers.escalation_tasks.run_escalation_scan': {'queue': 'escalations'},
    },
    task_default_queue='default',
    beat_schedule={
        'approval-escalation-scan': {
            'task': 'docgate.workers.escalation_tasks.run_escalation_scan',
            'schedule': settings.escalation_interval_minutes * 60.0,
            'options': {'expires': settings.escalation_interval_minutes * 60.0},
        },
    },
)


@shared_task(bind=True, max_retries=2, default_retry_delay=60)
def run_escalation_scan(self) -> Dict[str, Any]:
    """
    Periodic task scanning for overdue approval steps.

    Returns:
        Scan summary
    """
    db = SessionLocal()
    try:
        summary = run_approval_escalations(db)
        logger.info(f"Escalation scan completed: {summary}")
        return summary

    except Exception as e:
        logger.exception("Escalation scan failed")
        # Retry on transient errors
        if "connection" in str(e).lower() or "timeout" in str(e).lower():
            raise self.retry(exc=e)
        raise

    finally:
        db.close()
