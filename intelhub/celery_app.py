from celery import Celery, signals

from intelhub.config import settings


@signals.worker_process_init.connect
def init_worker_process(**kwargs):
    """
    Reset the async database engine after fork.

    Async engines created in the parent process are bound to its event loop
    and are unusable in a forked worker, so each worker builds its own on
    first use.
    """
    import logging

    logger = logging.getLogger(__name__)
    logger.info("Initializing worker process - resetting database connections")

    import intelhub.db.session as session_module

    session_module._engine = None
    session_module._AsyncSessionLocal = None


@signals.worker_process_shutdown.connect
def shutdown_worker_process(**kwargs):
    """Dispose of the worker's async database connections."""
    import logging
    import asyncio

    logger = logging.getLogger(__name__)

    import intelhub.db.session as session_module

    if session_module._engine is not None:
        try:
            asyncio.run(session_module.dispose_engine())
        except Exception as e:
            logger.error(f"Error disposing database engine during shutdown: {e}")

    logger.info("Worker process shutdown complete")


celery_app = Celery(
    "intelhub",
    broker=settings.celery_broker_url or settings.valkey_url,
    backend=settings.celery_result_backend or settings.celery_broker_url or settings.valkey_url,
)

celery_app.conf.update(
    task_serializer=settings.celery_task_serializer,
    result_serializer=settings.celery_result_serializer,
    timezone="UTC",
    enable_utc=True,
    # Agent runs last minutes; a worker takes one at a time
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    beat_schedule={
        "job-reconciler": {
            "task": "job_reconciler.reconcile_jobs",
            "schedule": 60.0,  # Every minute
        },
    },
)

celery_app.autodiscover_tasks(["intelhub.tasks"])


def get_celery_app() -> Celery:
    return celery_app
