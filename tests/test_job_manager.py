"""Tests for the intelligence job lifecycle manager."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from intelhub.core import job_manager
from intelhub.core.errors import JobNotFoundError, StoreTimeoutError, ValidationError
from intelhub.core.change_detection import HISTORY_LIMIT


@pytest.mark.asyncio
async def test_first_job_for_entity_starts_at_version_one(db_session, dispatcher):
    job = await job_manager.create_job(
        db_session, "company", "123", "Acme Corp", user_id="user-1", dispatcher=dispatcher
    )

    assert job.status == "pending"
    assert job.version == 1
    assert job.previous_job_id is None
    assert job.history == []
    assert job.started_at is not None
    assert job.analysis_id.startswith("company-123-v1-")
    assert dispatcher.dispatched == [job.job_id]


@pytest.mark.asyncio
async def test_rerun_after_completed_job_chains_version_and_history(db_session, job_factory):
    first = await job_factory(
        status="complete",
        result={"health_score": 6},
        completed_at=datetime.now(timezone.utc),
        change_detection={"summary": "Initial analysis - no previous data to compare."},
    )

    second = await job_manager.create_job(db_session, "company", "123", "Acme Corp")

    assert second.version == 2
    assert second.previous_job_id == first.job_id
    assert len(second.history) == 1
    assert second.history[0]["job_id"] == str(first.job_id)
    assert second.history[0]["result"] == {"health_score": 6}
    assert second.history[0]["changes"]["summary"].startswith("Initial analysis")


@pytest.mark.asyncio
async def test_rerun_ignores_jobs_that_did_not_complete(db_session, job_factory):
    await job_factory(status="error")
    await job_factory(status="cancelled")

    job = await job_manager.create_job(db_session, "company", "123", "Acme Corp")

    assert job.version == 1
    assert job.previous_job_id is None


@pytest.mark.asyncio
async def test_history_is_capped_at_limit(db_session, job_factory):
    history = [{"version": v, "job_id": str(uuid4())} for v in range(1, HISTORY_LIMIT + 1)]
    await job_factory(
        status="complete",
        version=HISTORY_LIMIT + 1,
        history=history,
        completed_at=datetime.now(timezone.utc),
    )

    job = await job_manager.create_job(db_session, "company", "123", "Acme Corp")

    assert job.version == HISTORY_LIMIT + 2
    assert len(job.history) == HISTORY_LIMIT
    assert job.history[0]["version"] == 2
    assert job.history[-1]["version"] == HISTORY_LIMIT + 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "entity_type, entity_id, entity_name, missing",
    [
        ("planet", "1", "Mars", "Invalid entityType"),
        (None, "1", "Acme", "entityType"),
        ("company", "  ", "Acme", "entityId"),
        ("company", "1", "", "entityName"),
    ],
)
async def test_invalid_requests_are_rejected_before_persisting(
    db_session, entity_type, entity_id, entity_name, missing
):
    with pytest.raises(ValidationError) as exc_info:
        await job_manager.create_job(db_session, entity_type, entity_id, entity_name)

    assert missing in str(exc_info.value)
    assert await job_manager.list_jobs(db_session) == []


@pytest.mark.asyncio
async def test_dispatch_failure_leaves_job_pending(db_session):
    failing = AsyncMock()
    failing.dispatch.side_effect = RuntimeError("broker down")

    job = await job_manager.create_job(
        db_session, "deal", "d-1", "Renewal", dispatcher=failing
    )

    assert job.status == "pending"
    assert job.dispatched_at is None
    failing.dispatch.assert_awaited_once_with(job.job_id)


@pytest.mark.asyncio
async def test_dispatched_job_records_dispatch_time(db_session, dispatcher):
    job = await job_manager.create_job(db_session, "deal", "d-1", "Renewal", dispatcher=dispatcher)
    assert job.dispatched_at is not None

    undispatched = await job_manager.create_job(db_session, "deal", "d-2", "Upsell")
    assert undispatched.dispatched_at is None


# ---------------------------------------------------------------------------
# Batch create
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_batch_chains_each_entity_to_its_own_history(db_session, job_factory, dispatcher):
    previous = await job_factory(
        status="complete",
        version=3,
        completed_at=datetime.now(timezone.utc),
    )

    jobs = await job_manager.create_jobs(
        db_session,
        [
            {"entityType": "company", "entityId": "123", "entityName": "Acme Corp"},
            {"entityType": "contact", "entityId": "p-1", "entityName": "Ada"},
        ],
        user_id="user-1",
        dispatcher=dispatcher,
    )

    rerun, fresh = jobs
    assert rerun.version == 4
    assert rerun.previous_job_id == previous.job_id
    assert len(rerun.history) == 1
    assert fresh.version == 1
    assert fresh.previous_job_id is None
    assert {job.user_id for job in jobs} == {"user-1"}
    assert dispatcher.dispatched == [rerun.job_id, fresh.job_id]


@pytest.mark.asyncio
async def test_batch_with_one_bad_item_persists_nothing(db_session, dispatcher):
    with pytest.raises(ValidationError) as exc_info:
        await job_manager.create_jobs(
            db_session,
            [
                {"entityType": "company", "entityId": "1", "entityName": "Acme"},
                {"entityType": "company", "entityId": "2"},
            ],
            dispatcher=dispatcher,
        )

    assert str(exc_info.value).startswith("jobs[1]: Missing required fields: entityName")
    assert await job_manager.list_jobs(db_session) == []
    assert dispatcher.dispatched == []


@pytest.mark.asyncio
@pytest.mark.parametrize("items", [None, []])
async def test_empty_batch_is_rejected(db_session, items):
    with pytest.raises(ValidationError, match="must not be empty"):
        await job_manager.create_jobs(db_session, items)


@pytest.mark.asyncio
async def test_oversized_batch_is_rejected(db_session):
    items = [
        {"entityType": "company", "entityId": str(i), "entityName": f"Co {i}"}
        for i in range(job_manager.MAX_BATCH_SIZE + 1)
    ]
    with pytest.raises(ValidationError, match="At most"):
        await job_manager.create_jobs(db_session, items)
    assert await job_manager.list_jobs(db_session) == []


@pytest.mark.asyncio
async def test_list_filters_and_sorts(db_session, job_factory):
    now = datetime.now(timezone.utc)
    older = await job_factory(entity_id="1", status="complete", started_at=now - timedelta(hours=2))
    newer = await job_factory(entity_id="2", status="complete", started_at=now - timedelta(hours=1))
    await job_factory(entity_type="deal", entity_id="d-1", status="pending", started_at=now)

    jobs = await job_manager.list_jobs(db_session, status="complete")
    assert [j.job_id for j in jobs] == [newer.job_id, older.job_id]

    jobs = await job_manager.list_jobs(db_session, status="complete", sort="startedAt")
    assert [j.job_id for j in jobs] == [older.job_id, newer.job_id]

    jobs = await job_manager.list_jobs(db_session, entity_type="deal")
    assert [j.entity_id for j in jobs] == ["d-1"]

    assert len(await job_manager.list_jobs(db_session, limit=1)) == 1


@pytest.mark.asyncio
async def test_list_latest_only_keeps_one_row_per_entity(db_session, job_factory):
    now = datetime.now(timezone.utc)
    await job_factory(entity_id="1", version=1, status="complete", started_at=now - timedelta(days=2))
    latest = await job_factory(entity_id="1", version=2, status="running", started_at=now)
    other = await job_factory(entity_id="2", status="complete", started_at=now - timedelta(days=1))

    jobs = await job_manager.list_jobs(db_session, latest_only=True)

    assert {j.job_id for j in jobs} == {latest.job_id, other.job_id}


@pytest.mark.asyncio
async def test_list_rejects_unknown_sort_field(db_session):
    with pytest.raises(ValidationError):
        await job_manager.list_jobs(db_session, sort="-result")


@pytest.mark.asyncio
async def test_list_times_out_with_typed_error(db_session):
    async def slow_execute(*args, **kwargs):
        await asyncio.sleep(1)

    with patch.object(db_session, "execute", side_effect=slow_execute):
        with pytest.raises(StoreTimeoutError):
            await job_manager.list_jobs(db_session, timeout_s=0.01)


@pytest.mark.asyncio
async def test_get_job_raises_when_missing(db_session):
    with pytest.raises(JobNotFoundError):
        await job_manager.get_job(db_session, uuid4())


@pytest.mark.asyncio
async def test_cancel_all_cancels_every_active_job(db_session, job_factory):
    pending = await job_factory(entity_id="1", status="pending")
    running = await job_factory(entity_id="2", status="running")
    done = await job_factory(entity_id="3", status="complete")

    outcome = await job_manager.cancel_all(db_session)

    assert outcome["cancelled"] == 2
    assert outcome["total"] == 2
    assert set(outcome["job_ids"]) == {str(pending.job_id), str(running.job_id)}

    for job in (pending, running):
        await db_session.refresh(job)
        assert job.status == "cancelled"
        assert job.completed_at is not None
    await db_session.refresh(done)
    assert done.status == "complete"
    assert await job_manager.list_jobs(db_session, status="pending") == []
    assert await job_manager.list_jobs(db_session, status="running") == []


@pytest.mark.asyncio
async def test_cancel_job_is_noop_on_terminal_job(db_session, job_factory):
    job = await job_factory(status="error")

    cancelled = await job_manager.cancel_job(db_session, job.job_id)

    assert cancelled.status == "error"


@pytest.mark.asyncio
async def test_runner_writes_never_leave_terminal_state(db_session, job_factory):
    job = await job_factory(status="pending")

    assert await job_manager.mark_running(db_session, job.job_id) is True
    assert await job_manager.mark_running(db_session, job.job_id) is False

    await job_manager.cancel_job(db_session, job.job_id)

    assert await job_manager.update_running_job(db_session, job.job_id, logs=[{"x": 1}]) is False
    assert (
        await job_manager.finish_job(
            db_session, job.job_id, job_manager.JobStatus.COMPLETE, result={"a": 1}
        )
        is False
    )
    await db_session.refresh(job)
    assert job.status == "cancelled"
    assert job.result is None


@pytest.mark.asyncio
async def test_store_cancellation_token(db_session, job_factory, test_session_factory):
    job = await job_factory(status="running")
    token = job_manager.StoreCancellationToken(test_session_factory, job.job_id)

    assert await token.is_cancelled() is False
    await job_manager.cancel_job(db_session, job.job_id)
    assert await token.is_cancelled() is True
    assert await job_manager.StoreCancellationToken(test_session_factory, uuid4()).is_cancelled()


@pytest.mark.asyncio
async def test_store_cancellation_token_stops_on_any_terminal_status(
    db_session, job_factory, test_session_factory
):
    """A job failed by another writer reads as cancelled to the agent."""
    errored = await job_factory(status="error")
    completed = await job_factory(entity_id="456", status="complete")

    for job in (errored, completed):
        token = job_manager.StoreCancellationToken(test_session_factory, job.job_id)
        assert await token.is_cancelled() is True


@pytest.mark.asyncio
async def test_entity_history_returns_completed_jobs_newest_first(db_session, job_factory):
    now = datetime.now(timezone.utc)
    v1 = await job_factory(version=1, status="complete", completed_at=now - timedelta(days=1))
    v2 = await job_factory(version=2, status="complete", completed_at=now)
    await job_factory(version=3, status="running")

    jobs = await job_manager.entity_history(db_session, "company", "123")

    assert [j.job_id for j in jobs] == [v2.job_id, v1.job_id]
