"""
Intelligence job runner.

Executes one pending job: marks it running, drives the agent, appends every
progress event to the job's log, then writes the terminal status. All writes
are conditional on the job still being active, so a job cancelled mid-run
stays cancelled.
"""

import asyncio
import logging
import uuid as _uuid
from typing import Any, Dict

import httpx
from celery import shared_task

from intelhub.config import settings
from intelhub.core import job_manager
from intelhub.core.agent_engine import AgentEvent, AgentOutcome
from intelhub.core.analysis import (
    IntelligenceServices,
    analyze_entity,
    build_services,
    summarize_result,
)
from intelhub.core.change_detection import detect_changes
from intelhub.core.streaming import to_log_entry
from intelhub.db.session import get_session_local
from intelhub.models.jobs import IntelligenceJob
from intelhub.models.pydantic_models.intelligence import JobStatus

logger = logging.getLogger(__name__)

# Stored error messages are truncated to keep job rows small
MAX_ERROR_CHARS = 2000


def _truncate_error(message: str) -> str:
    if len(message) <= MAX_ERROR_CHARS:
        return message
    return message[:MAX_ERROR_CHARS] + "... [truncated]"


async def _record_change_detection(db, job_id: _uuid.UUID, previous_job_id, output) -> None:
    """Diff against the superseded job. Informational; failures are only logged."""
    try:
        previous = None
        if previous_job_id is not None:
            previous = await db.get(IntelligenceJob, previous_job_id)
        changes = detect_changes(output, previous.result if previous else None)
        job = await db.get(IntelligenceJob, job_id)
        job.change_detection = changes.model_dump(mode="json")
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.warning(f"Change detection failed for job {job_id}: {e}")


async def run_intelligence_job(
    job_id: _uuid.UUID | str,
    services: IntelligenceServices,
    session_factory=None,
) -> Dict[str, Any]:
    """
    Execute a single intelligence job to a terminal state.

    Args:
        job_id: Job to run
        services: Model client, tools and CRM client
        session_factory: Async session factory, defaults to the app's

    Returns:
        Dict with the job id and final status (or the reason it was skipped)
    """
    job_id = _uuid.UUID(str(job_id))
    AsyncSessionLocal = session_factory or get_session_local()

    async with AsyncSessionLocal() as db:
        job = await db.get(IntelligenceJob, job_id)
        if job is None:
            logger.error(f"Intelligence job {job_id} not found")
            return {"job_id": str(job_id), "status": "missing"}

        if not await job_manager.mark_running(db, job_id):
            await db.refresh(job)
            logger.info(f"Skipping intelligence job {job_id}: status is {job.status}")
            return {"job_id": str(job_id), "status": "skipped", "job_status": job.status}

        logger.info(
            f"Running intelligence job {job_id} for {job.entity_type} {job.entity_id}"
        )
        entity_type, entity_id, entity_name = job.entity_type, job.entity_id, job.entity_name
        previous_job_id = job.previous_job_id

        logs: list[dict[str, Any]] = []

        async def record_event(event: AgentEvent) -> None:
            logs.append(to_log_entry(event))
            await job_manager.update_running_job(db, job_id, logs=list(logs))

        try:
            result, output = await analyze_entity(
                services,
                db,
                entity_type,
                entity_id,
                entity_name,
                emit=record_event,
                cancel_token=job_manager.StoreCancellationToken(AsyncSessionLocal, job_id),
                max_iterations=settings.job_max_iterations,
            )
        except Exception as e:
            logger.error(f"Intelligence job {job_id} crashed: {e}", exc_info=True)
            await db.rollback()
            await job_manager.finish_job(
                db,
                job_id,
                JobStatus.ERROR,
                error=_truncate_error(f"{type(e).__name__}: {e}"),
                logs=logs,
            )
            return {"job_id": str(job_id), "status": JobStatus.ERROR.value}

        stats = result.stats()

        if result.outcome == AgentOutcome.COMPLETED:
            written = await job_manager.finish_job(
                db,
                job_id,
                JobStatus.COMPLETE,
                result=output,
                result_summary=summarize_result(output),
                stats=stats,
                logs=logs,
            )
            if written:
                await _record_change_detection(db, job_id, previous_job_id, output)
                logger.info(
                    f"Intelligence job {job_id} complete in {result.iterations} iterations, "
                    f"{result.tool_calls} tool calls"
                )
                return {"job_id": str(job_id), "status": JobStatus.COMPLETE.value}

        elif result.outcome in (AgentOutcome.BUDGET_EXHAUSTED, AgentOutcome.FAILED):
            written = await job_manager.finish_job(
                db,
                job_id,
                JobStatus.ERROR,
                error=_truncate_error(result.error or "Unknown agent error"),
                result=result.partial,
                stats=stats,
                logs=logs,
            )
            if written:
                logger.warning(f"Intelligence job {job_id} ended with {result.outcome.value}: {result.error}")
                return {"job_id": str(job_id), "status": JobStatus.ERROR.value}

        # Cancelled, or the job left the running state while the agent worked
        await db.refresh(job)
        logger.info(f"Intelligence job {job_id} stopped; status is {job.status}")
        return {"job_id": str(job_id), "status": job.status}


# ---------------------------------------------------------------------------
# Dispatchers
# ---------------------------------------------------------------------------


class InProcessDispatcher:
    """Runs jobs as asyncio tasks on the API's event loop."""

    def __init__(self, services: IntelligenceServices, session_factory=None):
        self.services = services
        self.session_factory = session_factory
        self._tasks: set[asyncio.Task] = set()

    async def dispatch(self, job_id: _uuid.UUID) -> None:
        task = asyncio.create_task(
            run_intelligence_job(job_id, self.services, self.session_factory),
            name=f"intelligence-job-{job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Background intelligence task {task.get_name()} failed",
                exc_info=task.exception(),
            )

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class CeleryDispatcher:
    """Hands jobs to a Celery worker."""

    def __init__(self, celery_app):
        self.celery_app = celery_app

    async def dispatch(self, job_id: _uuid.UUID) -> None:
        self.celery_app.send_task("intelligence.run_job", kwargs={"job_id": str(job_id)})


# ---------------------------------------------------------------------------
# Celery task
# ---------------------------------------------------------------------------


async def _run_job_in_worker(job_id: str) -> Dict[str, Any]:
    from intelhub.db.session import dispose_engine

    try:
        async with httpx.AsyncClient(timeout=settings.tool_timeout_s) as http_client:
            services = build_services(http_client)
            return await run_intelligence_job(job_id, services)
    finally:
        await dispose_engine()


@shared_task(name="intelligence.run_job")
def run_job_task(job_id: str) -> Dict[str, Any]:
    return asyncio.run(_run_job_in_worker(job_id))
