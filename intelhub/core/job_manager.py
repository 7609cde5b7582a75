"""
Job lifecycle manager: creation with rerun chaining, listing, lookup and
cooperative cancellation of intelligence jobs.

State machine::

    pending -> running -> complete | error | cancelled
    pending -> cancelled

Every write that moves a job forward is conditional on its current status,
so no write ever leaves a terminal state.
"""

import asyncio
import logging
import uuid as _uuid
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import load_only

from intelhub.config import settings
from intelhub.core.change_detection import append_history, create_history_snapshot
from intelhub.core.errors import JobNotFoundError, StoreTimeoutError, ValidationError
from intelhub.models.jobs import IntelligenceJob
from intelhub.models.pydantic_models.intelligence import (
    ACTIVE_STATUSES,
    EntityType,
    JobStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200
MAX_BATCH_SIZE = 50
DEFAULT_SORT = "-started_at"
SORTABLE_FIELDS = {
    "started_at",
    "completed_at",
    "created_at",
    "version",
    "entity_name",
    "status",
}
# camelCase aliases accepted from API callers
_SORT_ALIASES = {
    "startedAt": "started_at",
    "completedAt": "completed_at",
    "createdAt": "created_at",
    "entityName": "entity_name",
}

# Columns loaded for listings; result, history and logs are never read here
LIST_COLUMNS = (
    IntelligenceJob.job_id,
    IntelligenceJob.entity_type,
    IntelligenceJob.entity_id,
    IntelligenceJob.entity_name,
    IntelligenceJob.status,
    IntelligenceJob.version,
    IntelligenceJob.previous_job_id,
    IntelligenceJob.result_summary,
    IntelligenceJob.error,
    IntelligenceJob.stats,
    IntelligenceJob.user_id,
    IntelligenceJob.started_at,
    IntelligenceJob.completed_at,
    IntelligenceJob.created_at,
)

_ACTIVE = [s.value for s in ACTIVE_STATUSES]


class JobDispatcher(Protocol):
    async def dispatch(self, job_id: _uuid.UUID) -> None: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def validate_job_request(
    entity_type: str | None, entity_id: str | None, entity_name: str | None
) -> tuple[EntityType, str, str]:
    """
    Check a job request before anything is persisted.

    Raises:
        ValidationError: On a missing or blank field, or an unknown entity type
    """
    missing = [
        name
        for name, value in (
            ("entityType", entity_type),
            ("entityId", entity_id),
            ("entityName", entity_name),
        )
        if value is None or not str(value).strip()
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    try:
        kind = EntityType(str(entity_type).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Invalid entityType '{entity_type}'. Must be one of: "
            + ", ".join(e.value for e in EntityType)
        )
    return kind, str(entity_id).strip(), str(entity_name).strip()


async def get_latest_completed_job(
    db: AsyncSession, entity_type: str, entity_id: str
) -> IntelligenceJob | None:
    result = await db.execute(
        select(IntelligenceJob)
        .where(
            and_(
                IntelligenceJob.entity_type == entity_type,
                IntelligenceJob.entity_id == entity_id,
                IntelligenceJob.status == JobStatus.COMPLETE.value,
            )
        )
        .order_by(IntelligenceJob.completed_at.desc(), IntelligenceJob.version.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_job(
    db: AsyncSession,
    entity_type: str | None,
    entity_id: str | None,
    entity_name: str | None,
    user_id: str | None = None,
    dispatcher: JobDispatcher | None = None,
) -> IntelligenceJob:
    """
    Persist a new pending job, chained to the entity's latest completed job,
    then hand it to the dispatcher without waiting for it to run.

    Args:
        db: Database session
        entity_type: company | contact | deal
        entity_id: External CRM key
        entity_name: Display name
        user_id: Who triggered the job, None for system jobs
        dispatcher: Starts execution; when None the reconciler picks the job up

    Returns:
        The created IntelligenceJob

    Raises:
        ValidationError: If the request is invalid (nothing is persisted)
    """
    kind, entity_id, entity_name = validate_job_request(entity_type, entity_id, entity_name)

    previous = await get_latest_completed_job(db, kind.value, entity_id)
    if previous is not None:
        version = previous.version + 1
        history = append_history(
            previous.history,
            create_history_snapshot(previous, previous.change_detection),
        )
    else:
        version = 1
        history = []

    job = IntelligenceJob(
        job_id=_uuid.uuid4(),
        entity_type=kind.value,
        entity_id=entity_id,
        entity_name=entity_name,
        status=JobStatus.PENDING.value,
        version=version,
        previous_job_id=previous.job_id if previous is not None else None,
        analysis_id=f"{kind.value}-{entity_id}-v{version}-{_uuid.uuid4().hex[:8]}",
        history=history,
        logs=[],
        user_id=user_id,
        started_at=_now(),
        dispatched_at=_now() if dispatcher is not None else None,
    )
    db.add(job)
    await db.commit()
    await db.refresh(job)

    logger.info(
        f"Created intelligence job {job.job_id} for {kind.value} {entity_id} "
        f"(version {version}, history {len(history)})"
    )

    if dispatcher is not None:
        try:
            await dispatcher.dispatch(job.job_id)
        except Exception as exc:
            # The job stays pending; the reconciler re-dispatches it
            logger.warning(f"Failed to dispatch intelligence job {job.job_id}: {exc}")
            await db.execute(
                update(IntelligenceJob)
                .where(
                    and_(
                        IntelligenceJob.job_id == job.job_id,
                        IntelligenceJob.status == JobStatus.PENDING.value,
                    )
                )
                .values(dispatched_at=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            await db.refresh(job)

    return job


async def create_jobs(
    db: AsyncSession,
    items: list[dict[str, Any]] | None,
    user_id: str | None = None,
    dispatcher: JobDispatcher | None = None,
) -> list[IntelligenceJob]:
    """
    Create a batch of jobs, each chained to its entity's latest completed job.

    The whole batch is validated before anything is persisted, so one bad
    item rejects all of them.

    Args:
        db: Database session
        items: Dicts with entityType, entityId and entityName
        user_id: Who triggered the batch
        dispatcher: Starts execution of each created job

    Raises:
        ValidationError: On an empty or oversized batch, or any invalid item
    """
    if not items:
        raise ValidationError("jobs array is required and must not be empty")
    if len(items) > MAX_BATCH_SIZE:
        raise ValidationError(f"At most {MAX_BATCH_SIZE} jobs can be created per batch")

    for index, item in enumerate(items):
        try:
            validate_job_request(item.get("entityType"), item.get("entityId"), item.get("entityName"))
        except ValidationError as e:
            raise ValidationError(f"jobs[{index}]: {e}")

    jobs = []
    for item in items:
        jobs.append(
            await create_job(
                db,
                item.get("entityType"),
                item.get("entityId"),
                item.get("entityName"),
                user_id=user_id,
                dispatcher=dispatcher,
            )
        )
    logger.info(f"Created batch of {len(jobs)} intelligence jobs")
    return jobs


def _parse_sort(sort: str | None):
    sort = (sort or DEFAULT_SORT).strip()
    descending = sort.startswith("-")
    field = sort.lstrip("-+")
    field = _SORT_ALIASES.get(field, field)
    if field not in SORTABLE_FIELDS:
        raise ValidationError(
            f"Invalid sort field '{field}'. Must be one of: {', '.join(sorted(SORTABLE_FIELDS))}"
        )
    column = getattr(IntelligenceJob, field)
    return column.desc() if descending else column.asc()


def _clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_LIST_LIMIT
    return max(1, min(int(limit), MAX_LIST_LIMIT))


def _filters(
    status: str | None, entity_type: str | None, entity_id: str | None
) -> list:
    conditions = []
    if status:
        try:
            conditions.append(IntelligenceJob.status == JobStatus(status).value)
        except ValueError:
            raise ValidationError(f"Invalid status '{status}'")
    if entity_type:
        try:
            conditions.append(IntelligenceJob.entity_type == EntityType(entity_type).value)
        except ValueError:
            raise ValidationError(f"Invalid entityType '{entity_type}'")
    if entity_id:
        conditions.append(IntelligenceJob.entity_id == entity_id)
    return conditions


async def list_jobs(
    db: AsyncSession,
    status: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int | None = DEFAULT_LIST_LIMIT,
    sort: str | None = DEFAULT_SORT,
    latest_only: bool = False,
    timeout_s: float | None = None,
) -> list[IntelligenceJob]:
    """
    List jobs as a projection (no result, history or logs payload).

    ``latest_only`` keeps one row per entity key, the most recently started.

    Raises:
        ValidationError: On an unknown filter value or sort field
        StoreTimeoutError: If the query exceeds its time budget
    """
    conditions = _filters(status, entity_type, entity_id)
    order_by = _parse_sort(sort)
    limit = _clamp_limit(limit)
    timeout_s = timeout_s if timeout_s is not None else settings.list_query_timeout_s

    stmt = select(IntelligenceJob).options(load_only(*LIST_COLUMNS))
    if conditions:
        stmt = stmt.where(and_(*conditions))

    if latest_only:
        rank = (
            func.row_number()
            .over(
                partition_by=(IntelligenceJob.entity_type, IntelligenceJob.entity_id),
                order_by=(
                    IntelligenceJob.started_at.desc(),
                    IntelligenceJob.created_at.desc(),
                ),
            )
            .label("entity_rank")
        )
        ranked = select(IntelligenceJob.job_id, rank)
        if conditions:
            ranked = ranked.where(and_(*conditions))
        ranked = ranked.subquery()
        latest_ids = select(ranked.c.job_id).where(ranked.c.entity_rank == 1)
        stmt = stmt.where(IntelligenceJob.job_id.in_(latest_ids))

    stmt = stmt.order_by(order_by, IntelligenceJob.job_id).limit(limit)

    try:
        result = await asyncio.wait_for(db.execute(stmt), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.error(f"Intelligence job listing exceeded {timeout_s}s")
        raise StoreTimeoutError(
            f"Job store did not respond within {timeout_s:g}s"
        )
    return list(result.scalars().all())


async def get_job(db: AsyncSession, job_id: _uuid.UUID) -> IntelligenceJob:
    result = await db.execute(
        select(IntelligenceJob).where(IntelligenceJob.job_id == job_id)
    )
    job = result.scalar_one_or_none()
    if job is None:
        raise JobNotFoundError(job_id)
    return job


async def get_job_summary(
    db: AsyncSession, job_id: _uuid.UUID | None
) -> IntelligenceJob | None:
    if job_id is None:
        return None
    result = await db.execute(
        select(IntelligenceJob)
        .options(load_only(*LIST_COLUMNS))
        .where(IntelligenceJob.job_id == job_id)
    )
    return result.scalar_one_or_none()


async def entity_history(
    db: AsyncSession, entity_type: str, entity_id: str, limit: int = 50
) -> list[IntelligenceJob]:
    """Completed jobs for one entity, newest first."""
    kind, entity_id, _ = validate_job_request(entity_type, entity_id, "-")
    result = await db.execute(
        select(IntelligenceJob)
        .where(
            and_(
                IntelligenceJob.entity_type == kind.value,
                IntelligenceJob.entity_id == entity_id,
                IntelligenceJob.status == JobStatus.COMPLETE.value,
            )
        )
        .order_by(IntelligenceJob.completed_at.desc(), IntelligenceJob.version.desc())
        .limit(_clamp_limit(limit))
    )
    return list(result.scalars().all())


async def cancel_job(db: AsyncSession, job_id: _uuid.UUID) -> IntelligenceJob:
    """Cancel one job. A terminal job is returned unchanged."""
    job = await get_job(db, job_id)
    result = await db.execute(
        update(IntelligenceJob)
        .where(
            and_(
                IntelligenceJob.job_id == job_id,
                IntelligenceJob.status.in_(_ACTIVE),
            )
        )
        .values(status=JobStatus.CANCELLED.value, completed_at=_now())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info(f"Cancelled intelligence job {job_id}")
    await db.refresh(job)
    return job


async def cancel_all(db: AsyncSession) -> dict[str, Any]:
    """
    Mark every pending or running job cancelled.

    Cancellation is cooperative: a running agent stops at its next check,
    and any tool or model call already in flight completes first.

    Returns:
        Dict with cancelled count, total active jobs found, and their ids
    """
    found = await db.execute(
        select(IntelligenceJob.job_id).where(IntelligenceJob.status.in_(_ACTIVE))
    )
    job_ids = [row[0] for row in found.all()]
    if not job_ids:
        return {"cancelled": 0, "total": 0, "job_ids": []}

    result = await db.execute(
        update(IntelligenceJob)
        .where(
            and_(
                IntelligenceJob.job_id.in_(job_ids),
                IntelligenceJob.status.in_(_ACTIVE),
            )
        )
        .values(status=JobStatus.CANCELLED.value, completed_at=_now())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info(f"Cancelled {result.rowcount} of {len(job_ids)} active intelligence jobs")
    return {
        "cancelled": result.rowcount,
        "total": len(job_ids),
        "job_ids": [str(job_id) for job_id in job_ids],
    }


# ---------------------------------------------------------------------------
# Runner-side transitions
# ---------------------------------------------------------------------------


async def mark_running(db: AsyncSession, job_id: _uuid.UUID) -> bool:
    """pending -> running. False when the job was cancelled or already taken."""
    result = await db.execute(
        update(IntelligenceJob)
        .where(
            and_(
                IntelligenceJob.job_id == job_id,
                IntelligenceJob.status == JobStatus.PENDING.value,
            )
        )
        .values(status=JobStatus.RUNNING.value, started_at=_now())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return bool(result.rowcount)


async def update_running_job(db: AsyncSession, job_id: _uuid.UUID, **values) -> bool:
    """Write progress fields while the job is still running."""
    result = await db.execute(
        update(IntelligenceJob)
        .where(
            and_(
                IntelligenceJob.job_id == job_id,
                IntelligenceJob.status == JobStatus.RUNNING.value,
            )
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return bool(result.rowcount)


async def finish_job(
    db: AsyncSession, job_id: _uuid.UUID, status: JobStatus, **values
) -> bool:
    """
    Move a non-terminal job to a terminal status and stamp ``completed_at``.

    Returns False when the job had already reached a terminal state (for
    instance it was cancelled mid-run); nothing is written in that case.
    """
    result = await db.execute(
        update(IntelligenceJob)
        .where(
            and_(
                IntelligenceJob.job_id == job_id,
                IntelligenceJob.status.in_(_ACTIVE),
            )
        )
        .values(status=status.value, completed_at=_now(), **values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return bool(result.rowcount)


class StoreCancellationToken:
    """
    Cancellation token backed by the job's status in the store.

    Any status other than running stops the agent: a cancel, a failure
    written by the reconciler, or a deleted row.
    """

    def __init__(self, session_factory, job_id: _uuid.UUID):
        self._session_factory = session_factory
        self._job_id = job_id

    async def is_cancelled(self) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                select(IntelligenceJob.status).where(
                    IntelligenceJob.job_id == self._job_id
                )
            )
            status = result.scalar_one_or_none()
        return status != JobStatus.RUNNING.value
