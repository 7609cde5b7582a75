"""
Intelligence API - create, list, inspect and cancel entity intelligence
jobs, and run an analysis inside the request.
"""

import logging
import uuid as _uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from intelhub.api.v1.endpoints.utils.intelligence import (
    buffered_analysis,
    created_job_payload,
    get_services,
    get_session_factory,
    job_detail_payload,
    job_summary_payload,
    load_deals,
    render_job_list,
    stream_analysis,
    wants_event_stream,
)
from intelhub.api.v1.helpers.authentication import (
    AuthenticatedPrincipal,
    get_current_user,
)
from intelhub.core import job_manager
from intelhub.core.errors import IntelligenceError
from intelhub.db.session import get_db
from intelhub.models.pydantic_models.intelligence import (
    EntityType,
    JobBatchRequest,
    JobCreateRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def _http_error(exc: IntelligenceError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def _parse_job_id(job_id: str) -> _uuid.UUID:
    try:
        return _uuid.UUID(job_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid job_id format")


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------


@router.post("", status_code=202)
async def create_intelligence_job(
    data: JobCreateRequest,
    request: Request,
    user: AuthenticatedPrincipal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Queue an intelligence job for one CRM entity.

    Returns immediately with the pending job. A rerun for an entity that
    already has a completed job gets the next version and carries the
    previous analyses in its history.
    """
    try:
        job = await job_manager.create_job(
            db,
            data.entityType,
            data.entityId,
            data.entityName,
            user_id=user.user_id,
            dispatcher=getattr(request.app.state, "dispatcher", None),
        )
    except IntelligenceError as e:
        raise _http_error(e)
    return {"success": True, "job": created_job_payload(job)}


@router.post("/batch", status_code=202)
async def create_intelligence_jobs_batch(
    data: JobBatchRequest,
    request: Request,
    user: AuthenticatedPrincipal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Queue intelligence jobs for several entities at once.

    Each job is chained to its entity's latest completed job exactly as a
    single create would be. One invalid item rejects the whole batch.
    """
    items = [item.model_dump() for item in data.jobs] if data.jobs else None
    try:
        jobs = await job_manager.create_jobs(
            db,
            items,
            user_id=user.user_id,
            dispatcher=getattr(request.app.state, "dispatcher", None),
        )
    except IntelligenceError as e:
        raise _http_error(e)
    payloads = [created_job_payload(job) for job in jobs]
    return {
        "success": True,
        "jobs": payloads,
        "count": len(payloads),
        "reruns": sum(1 for payload in payloads if payload["isRerun"]),
    }


@router.get("")
async def list_intelligence_jobs(
    status: str | None = Query(None),
    entity_type: str | None = Query(None, alias="entityType"),
    entity_id: str | None = Query(None, alias="entityId"),
    limit: int = Query(job_manager.DEFAULT_LIST_LIMIT, ge=1, le=job_manager.MAX_LIST_LIMIT),
    sort: str = Query(job_manager.DEFAULT_SORT),
    latest_only: bool = Query(False, alias="latestOnly"),
    db: AsyncSession = Depends(get_db),
):
    """List jobs, newest first by default. Deal rows carry a freshly computed deal score."""
    try:
        jobs = await job_manager.list_jobs(
            db,
            status=status,
            entity_type=entity_type,
            entity_id=entity_id,
            limit=limit,
            sort=sort,
            latest_only=latest_only,
        )
    except IntelligenceError as e:
        raise _http_error(e)

    deal_ids = list(
        {job.entity_id for job in jobs if job.entity_type == EntityType.DEAL.value}
    )
    deals = await load_deals(db, deal_ids)
    rows = render_job_list(jobs, deals)
    return {"jobs": rows, "count": len(rows)}


@router.delete("")
async def cancel_all_intelligence_jobs(db: AsyncSession = Depends(get_db)):
    """Cancel every pending or running job."""
    outcome = await job_manager.cancel_all(db)
    return {
        "success": True,
        "cancelled": outcome["cancelled"],
        "total": outcome["total"],
        "jobIds": outcome["job_ids"],
    }


# ---------------------------------------------------------------------------
# Entity views (declared before /{job_id})
# ---------------------------------------------------------------------------


@router.get("/entity")
async def get_entity_timeline(
    entity_type: str = Query(..., alias="entityType"),
    entity_id: str = Query(..., alias="entityId"),
    limit: int = Query(job_manager.DEFAULT_LIST_LIMIT, ge=1, le=job_manager.MAX_LIST_LIMIT),
    db: AsyncSession = Depends(get_db),
):
    """Completed analyses of one entity, newest first."""
    try:
        jobs = await job_manager.entity_history(db, entity_type, entity_id, limit=limit)
    except IntelligenceError as e:
        raise _http_error(e)
    return {
        "entityType": entity_type,
        "entityId": entity_id,
        "jobs": [job_detail_payload(job) for job in jobs],
        "count": len(jobs),
    }


@router.get("/analyze/{entity_type}/{entity_id}")
async def analyze_entity_now(
    entity_type: str,
    entity_id: str,
    request: Request,
    entity_name: str | None = Query(None, alias="entityName"),
    db: AsyncSession = Depends(get_db),
):
    """
    Run an analysis inside the request.

    With ``Accept: text/event-stream`` progress is streamed as Server-Sent
    Events and the stream ends with one ``complete`` or ``error`` frame.
    Otherwise the run is capped at ``sync_max_iterations`` and returned as
    one JSON document with its progress log.
    """
    try:
        kind = EntityType(entity_type.lower())
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid entityType '{entity_type}'. Must be one of: "
            + ", ".join(e.value for e in EntityType),
        )

    services = get_services(request)
    if wants_event_stream(request):
        return stream_analysis(
            services, get_session_factory(request), kind.value, entity_id, entity_name
        )
    return await buffered_analysis(services, db, kind.value, entity_id, entity_name)


# ---------------------------------------------------------------------------
# Single job
# ---------------------------------------------------------------------------


@router.get("/{job_id}")
async def get_intelligence_job(job_id: str, db: AsyncSession = Depends(get_db)):
    """Full job record including logs, history and change detection."""
    jid = _parse_job_id(job_id)
    try:
        job = await job_manager.get_job(db, jid)
    except IntelligenceError as e:
        raise _http_error(e)
    previous = await job_manager.get_job_summary(db, job.previous_job_id)
    return {"job": job_detail_payload(job, previous)}


@router.delete("/{job_id}")
async def cancel_intelligence_job(job_id: str, db: AsyncSession = Depends(get_db)):
    """Cancel one job. Terminal jobs are returned unchanged."""
    jid = _parse_job_id(job_id)
    try:
        job = await job_manager.cancel_job(db, jid)
    except IntelligenceError as e:
        raise _http_error(e)
    return {"success": True, "job": job_summary_payload(job)}
