"""
Helpers for the intelligence endpoints: response shaping, deal details for
listings, and the in-request (streaming or buffered) analysis runs.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from intelhub.config import settings
from intelhub.core.analysis import IntelligenceServices, analyze_entity
from intelhub.core.scoring import (
    DealSnapshot,
    format_deal_amount,
    get_stage_label,
    score_deal,
)
from intelhub.core.streaming import SSE_MEDIA_TYPE, ProgressChannel, ProgressLog
from intelhub.db.session import get_session_local
from intelhub.models.deals import Deal
from intelhub.models.jobs import IntelligenceJob
from intelhub.models.pydantic_models.intelligence import EntityType

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def get_services(request: Request) -> IntelligenceServices:
    return request.app.state.services


def get_session_factory(request: Request):
    return getattr(request.app.state, "session_factory", None) or get_session_local()


def wants_event_stream(request: Request) -> bool:
    return SSE_MEDIA_TYPE in request.headers.get("accept", "")


# ---------------------------------------------------------------------------
# Response shaping
# ---------------------------------------------------------------------------


def created_job_payload(job: IntelligenceJob) -> dict[str, Any]:
    return {
        "id": str(job.job_id),
        "entityType": job.entity_type,
        "entityId": job.entity_id,
        "entityName": job.entity_name,
        "status": job.status,
        "startedAt": _iso(job.started_at),
        "version": job.version,
        "isRerun": job.previous_job_id is not None,
        "previousJobId": str(job.previous_job_id) if job.previous_job_id else None,
        "historyCount": len(job.history or []),
    }


def job_summary_payload(job: IntelligenceJob) -> dict[str, Any]:
    """Listing row. Only projected columns are read."""
    return {
        "id": str(job.job_id),
        "entityType": job.entity_type,
        "entityId": job.entity_id,
        "entityName": job.entity_name,
        "status": job.status,
        "version": job.version,
        "previousJobId": str(job.previous_job_id) if job.previous_job_id else None,
        "hasHistory": job.previous_job_id is not None,
        "resultSummary": job.result_summary,
        "error": job.error,
        "stats": job.stats,
        "startedAt": _iso(job.started_at),
        "completedAt": _iso(job.completed_at),
        "createdAt": _iso(job.created_at),
    }


def job_stub_payload(job: IntelligenceJob, exc: Exception) -> dict[str, Any]:
    """Minimal row for a job whose stored data could not be rendered."""
    try:
        job_id = str(job.job_id)
    except Exception:
        job_id = ""
    return {
        "id": job_id,
        "entityType": getattr(job, "entity_type", None) or EntityType.DEAL.value,
        "entityId": getattr(job, "entity_id", None) or "",
        "entityName": getattr(job, "entity_name", None) or "Unknown",
        "status": getattr(job, "status", None) or "error",
        "error": f"Failed to process job: {exc}",
    }


def job_detail_payload(
    job: IntelligenceJob, previous: IntelligenceJob | None = None
) -> dict[str, Any]:
    payload = job_summary_payload(job)
    payload.update(
        {
            "analysisId": job.analysis_id,
            "result": job.result,
            "logs": job.logs or [],
            "history": job.history or [],
            "historyCount": len(job.history or []),
            "changeDetection": job.change_detection,
            "userId": job.user_id,
            "updatedAt": _iso(job.updated_at),
            "previousJob": job_summary_payload(previous) if previous is not None else None,
        }
    )
    return payload


# ---------------------------------------------------------------------------
# Deal details
# ---------------------------------------------------------------------------


async def load_deals(
    db: AsyncSession, deal_ids: list[str], timeout_s: float | None = None
) -> dict[str, Deal]:
    """
    Fetch cached deals by CRM id within a time budget.

    Deal details are decoration on a listing; on timeout or error the
    listing goes out without them.
    """
    if not deal_ids:
        return {}
    timeout_s = timeout_s if timeout_s is not None else settings.deal_lookup_timeout_s
    try:
        result = await asyncio.wait_for(
            db.execute(select(Deal).where(Deal.hubspot_id.in_(deal_ids))),
            timeout=timeout_s,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Deal lookup exceeded {timeout_s}s; listing without deal details")
        return {}
    except Exception as e:
        logger.error(f"Error fetching deals (continuing without deal data): {e}")
        await db.rollback()
        return {}
    return {deal.hubspot_id: deal for deal in result.scalars().all()}


def build_deal_details(deal: Deal, now: datetime | None = None) -> dict[str, Any]:
    """Deal display fields plus a freshly computed score."""
    details = {
        "dealstage": deal.dealstage or "",
        "stageLabel": get_stage_label(deal.dealstage or ""),
        "amount": deal.amount,
        "amountFormatted": format_deal_amount(deal.amount),
        "pipeline": deal.pipeline or "",
        "closedate": _iso(deal.closedate),
        "dealtype": deal.dealtype,
        "isClosed": bool(deal.is_closed),
        "isWon": bool(deal.is_won),
        "isLost": bool(deal.is_lost),
    }
    try:
        score = score_deal(DealSnapshot.from_model(deal), now=now)
        details["dealScore"] = score.model_dump(mode="json")
    except Exception as e:
        logger.error(f"Error calculating deal score for deal {deal.hubspot_id}: {e}")
    return details


def render_job_list(
    jobs: list[IntelligenceJob], deals: dict[str, Deal], now: datetime | None = None
) -> list[dict[str, Any]]:
    rows = []
    for job in jobs:
        try:
            row = job_summary_payload(job)
            deal = deals.get(job.entity_id) if job.entity_type == EntityType.DEAL.value else None
            if deal is not None:
                row["dealDetails"] = build_deal_details(deal, now=now)
            rows.append(row)
        except Exception as e:
            logger.error(f"Error processing job {getattr(job, 'job_id', '?')}: {e}")
            rows.append(job_stub_payload(job, e))
    return rows


# ---------------------------------------------------------------------------
# In-request analysis
# ---------------------------------------------------------------------------


def _analysis_payload(
    entity_type: str, entity_id: str, output, stats: dict[str, Any]
) -> dict[str, Any]:
    return {
        "entityType": entity_type,
        "entityId": entity_id,
        "intelligence": output,
        "agentStats": stats,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def stream_analysis(
    services: IntelligenceServices,
    session_factory,
    entity_type: str,
    entity_id: str,
    entity_name: str | None = None,
) -> StreamingResponse:
    """
    Run an analysis inside the request and relay its progress as SSE.

    The agent runs in its own task; the response generator drains the
    channel. If the client goes away the generator is closed and the agent
    task is cancelled.
    """
    channel = ProgressChannel()

    async def produce():
        try:
            async with session_factory() as db:
                result, output = await analyze_entity(
                    services,
                    db,
                    entity_type,
                    entity_id,
                    entity_name,
                    emit=channel,
                    max_iterations=settings.job_max_iterations,
                )
            if result.success:
                await channel.complete(
                    {
                        "step": "complete",
                        "message": "Analysis complete",
                        "status": "complete",
                        "data": _analysis_payload(entity_type, entity_id, output, result.stats()),
                    }
                )
            else:
                await channel.error(
                    result.error or "Analysis failed",
                    {"agentStats": result.stats(), "partial": result.partial},
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Streaming analysis of {entity_type} {entity_id} failed: {e}", exc_info=True)
            await channel.error(str(e))

    async def frames():
        producer = asyncio.create_task(produce())
        try:
            async for frame in channel.frames():
                yield frame
        finally:
            if not producer.done():
                if not channel.closed:
                    logger.info(
                        f"Client disconnected; cancelling analysis of {entity_type} {entity_id}"
                    )
                    producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)

    return StreamingResponse(
        frames(),
        media_type=SSE_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def buffered_analysis(
    services: IntelligenceServices,
    db: AsyncSession,
    entity_type: str,
    entity_id: str,
    entity_name: str | None = None,
) -> JSONResponse:
    """
    Run a capped analysis and return its output together with the progress log.

    A run that ends without a final answer is a 500 carrying the error,
    agent stats and progress log collected so far.
    """
    progress = ProgressLog()
    result, output = await analyze_entity(
        services,
        db,
        entity_type,
        entity_id,
        entity_name,
        emit=progress,
        max_iterations=settings.sync_max_iterations,
        quick=True,
    )
    if not result.success:
        return JSONResponse(
            status_code=500,
            content={
                "error": result.error or "Failed to generate intelligence",
                "agentStats": result.stats(),
                "progressLog": progress.entries,
            },
        )

    payload = _analysis_payload(entity_type, entity_id, output, result.stats())
    payload["progressLog"] = progress.entries
    return JSONResponse(content=payload)
