from intelhub.celery_app import celery_app
from intelhub.tasks import intelligence, job_reconciler

__all__ = [
    "celery_app",
    "intelligence",
    "job_reconciler",
]
