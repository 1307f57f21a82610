"""Celery workers for docgate."""

from docgate.workers.escalation_tasks import celery_app, run_escalation_scan

__all__ = [
    "celery_app",
    "run_escalation_scan",
]
