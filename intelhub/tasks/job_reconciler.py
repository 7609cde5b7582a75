"""
Job reconciler - periodic housekeeping for intelligence jobs.

1. Running jobs whose row has not been touched for ``stale_job_minutes``
   belong to a dead runner (API restart, worker crash); they are failed.
2. Pending jobs older than ``ORPHAN_PENDING_SECONDS`` were never picked up
   (dispatch failed, or the in-process runner died before starting); they
   are handed to a Celery worker. A job dispatched within the last
   ``REDISPATCH_SECONDS`` is assumed to be waiting in the queue and is left
   alone.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from celery import shared_task
from sqlalchemy import and_, or_, select, update

from intelhub.celery_app import celery_app
from intelhub.config import settings
from intelhub.db.session import get_session_local
from intelhub.models.jobs import IntelligenceJob
from intelhub.models.pydantic_models.intelligence import JobStatus
from intelhub.tasks.task_lock import with_task_lock

logger = logging.getLogger(__name__)

ORPHAN_PENDING_SECONDS = 60
REDISPATCH_SECONDS = 600
STALE_JOB_ERROR = "Job runner stopped responding; marked failed by the reconciler"


async def _fail_stale_running_jobs(session, now: datetime) -> int:
    """
    Fail RUNNING jobs whose runner has stopped writing progress.

    Returns:
        Number of jobs failed
    """
    cutoff = now - timedelta(minutes=settings.stale_job_minutes)
    result = await session.execute(
        update(IntelligenceJob)
        .where(
            and_(
                IntelligenceJob.status == JobStatus.RUNNING.value,
                IntelligenceJob.updated_at < cutoff,
            )
        )
        .values(
            status=JobStatus.ERROR.value,
            error=STALE_JOB_ERROR,
            completed_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount:
        logger.info(f"Failed {result.rowcount} stale RUNNING intelligence jobs")
    return result.rowcount


async def _dispatch_orphaned_pending_jobs(session, now: datetime) -> Dict[str, Any]:
    cutoff = now - timedelta(seconds=ORPHAN_PENDING_SECONDS)
    redispatch_cutoff = now - timedelta(seconds=REDISPATCH_SECONDS)
    result = await session.execute(
        select(IntelligenceJob.job_id)
        .where(
            and_(
                IntelligenceJob.status == JobStatus.PENDING.value,
                IntelligenceJob.created_at < cutoff,
                or_(
                    IntelligenceJob.dispatched_at.is_(None),
                    IntelligenceJob.dispatched_at < redispatch_cutoff,
                ),
            )
        )
        .order_by(IntelligenceJob.created_at)
    )
    job_ids = [row[0] for row in result.all()]

    dispatched = 0
    errors = []
    for job_id in job_ids:
        try:
            celery_app.send_task("intelligence.run_job", kwargs={"job_id": str(job_id)})
            await session.execute(
                update(IntelligenceJob)
                .where(
                    and_(
                        IntelligenceJob.job_id == job_id,
                        IntelligenceJob.status == JobStatus.PENDING.value,
                    )
                )
                .values(dispatched_at=now)
                .execution_options(synchronize_session=False)
            )
            dispatched += 1
        except Exception as exc:
            error_msg = f"Failed to dispatch job {job_id}: {exc}"
            logger.error(error_msg)
            errors.append(error_msg)
    await session.commit()

    if job_ids:
        logger.info(f"Re-dispatched {dispatched} of {len(job_ids)} orphaned pending jobs")
    return {"jobs_found": len(job_ids), "jobs_dispatched": dispatched, "errors": errors}


async def _reconcile_jobs() -> Dict[str, Any]:
    from intelhub.db.session import dispose_engine

    try:
        AsyncSessionLocal = get_session_local()
        async with AsyncSessionLocal() as session:
            now = datetime.now(timezone.utc)
            stale = await _fail_stale_running_jobs(session, now)
            pending = await _dispatch_orphaned_pending_jobs(session, now)
            return {"status": "success", "stale_jobs_failed": stale, **pending}
    except Exception as exc:
        logger.error(f"Job reconciler failed: {exc}", exc_info=True)
        return {"status": "error", "error": str(exc)}
    finally:
        # Each Celery invocation runs on a fresh event loop
        await dispose_engine()


@shared_task(name="job_reconciler.reconcile_jobs")
@with_task_lock(lock_name="job_reconciler")
def reconcile_jobs() -> Dict[str, Any]:
    """Celery periodic task: fail stale running jobs, re-dispatch orphaned pending ones."""
    return asyncio.run(_reconcile_jobs())
