"""
Shared test fixtures for intelhub.

Uses a file-backed SQLite database (aiosqlite) with per-test table
create/drop, a scripted model client in place of litellm, and an
empty tool registry unless a test registers its own tools.
"""

import json
import os
from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-tests")
os.environ.setdefault("API_TOKEN", "test-api-token")

from intelhub.core.analysis import IntelligenceServices  # noqa: E402
from intelhub.core.llms import ModelResponse, ToolCallRequest  # noqa: E402
from intelhub.core.tools import ToolRegistry  # noqa: E402
from intelhub.db.base import Base  # noqa: E402
from intelhub.main import app  # noqa: E402


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Async engine on a throwaway SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def test_session_factory(test_engine):
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine, test_session_factory):
    """Fresh tables per test: create → yield session → drop."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with test_session_factory() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Model client
# ---------------------------------------------------------------------------


def _final_answer(payload: dict[str, Any]) -> ModelResponse:
    return ModelResponse(content=f"```json\n{json.dumps(payload)}\n```")


def _tool_call(name: str, arguments: dict[str, Any] | None = None, call_id: str | None = None):
    return ModelResponse(
        content=None,
        tool_calls=[
            ToolCallRequest(id=call_id or f"call_{uuid4().hex[:8]}", name=name, arguments=arguments or {})
        ],
    )


COMPANY_RESULT = {
    "executive_summary": "Acme is a growing logistics customer.",
    "health_score": 7,
    "insights": ["Expanded to two new regions"],
    "recommended_actions": ["Schedule a quarterly review"],
    "risk_factors": ["Single champion"],
    "opportunity_signals": ["Hiring in operations"],
    "confidence": 0.8,
}

DEAL_RESULT = {
    "executive_summary": "Late-stage renewal with strong engagement.",
    "health_score": 8,
    "insights": ["Budget approved"],
    "recommended_actions": ["Send the final proposal"],
    "risk_factors": [],
    "opportunity_signals": ["Upsell interest"],
}


class ScriptedModelClient:
    """Returns queued responses in order; records every request it receives."""

    def __init__(self, responses: list | None = None):
        self.responses = list(responses or [])
        self.requests: list[dict[str, Any]] = []

    async def complete(self, messages, tools=None) -> ModelResponse:
        self.requests.append({"messages": list(messages), "tools": tools})
        if not self.responses:
            raise AssertionError("ScriptedModelClient ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture()
def final_answer():
    """Builds a model response carrying a fenced JSON final answer."""
    return _final_answer


@pytest.fixture()
def tool_call():
    """Builds a model response requesting one tool call."""
    return _tool_call


@pytest.fixture()
def company_result():
    return dict(COMPANY_RESULT)


@pytest.fixture()
def deal_result():
    return dict(DEAL_RESULT)


@pytest.fixture()
def model_client():
    return ScriptedModelClient()


@pytest.fixture()
def quick_model_client():
    return ScriptedModelClient()


@pytest.fixture()
def services(model_client):
    return IntelligenceServices(model_client=model_client, tools=ToolRegistry())


# ---------------------------------------------------------------------------
# Test client
# ---------------------------------------------------------------------------


class RecordingDispatcher:
    def __init__(self):
        self.dispatched = []

    async def dispatch(self, job_id):
        self.dispatched.append(job_id)


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest_asyncio.fixture(scope="function")
async def test_client(db_session, test_session_factory, services, dispatcher):
    from intelhub.db.session import get_db

    async def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.state.services = services
    app.state.session_factory = test_session_factory
    app.state.dispatcher = dispatcher

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture()
def api_token_headers():
    return {"X-API-Token": "test-api-token"}


@pytest.fixture()
def auth_headers():
    """JWT auth headers for a test user."""
    from intelhub.api.v1.helpers.authentication import create_access_token

    return {"Authorization": f"Bearer {create_access_token({'sub': 'user-123'})}"}


# ---------------------------------------------------------------------------
# Celery mock
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_celery():
    """A Celery app stand-in that captures send_task calls."""
    dispatched: list[dict[str, Any]] = []

    def fake_send_task(name, args=None, kwargs=None, **kw):
        dispatched.append({"name": name, "args": args, "kwargs": kwargs})
        result = MagicMock()
        result.id = str(uuid4())
        return result

    celery = MagicMock(send_task=fake_send_task)
    celery.dispatched = dispatched
    return celery


# ---------------------------------------------------------------------------
# Factory fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture(scope="function")
async def job_factory(db_session):
    from intelhub.models.jobs import IntelligenceJob

    async def _create(
        entity_type: str = "company",
        entity_id: str = "123",
        entity_name: str = "Acme Corp",
        status: str = "pending",
        version: int = 1,
        previous_job_id=None,
        result: dict | None = None,
        history: list | None = None,
        change_detection: dict | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        dispatched_at: datetime | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> IntelligenceJob:
        job = IntelligenceJob(
            job_id=uuid4(),
            entity_type=entity_type,
            entity_id=entity_id,
            entity_name=entity_name,
            status=status,
            version=version,
            previous_job_id=previous_job_id,
            analysis_id=f"{entity_type}-{entity_id}-v{version}-{uuid4().hex[:8]}",
            result=result,
            history=history or [],
            logs=[],
            change_detection=change_detection,
            started_at=started_at or datetime.now(timezone.utc),
            completed_at=completed_at,
            dispatched_at=dispatched_at,
        )
        db_session.add(job)
        await db_session.commit()

        stamps = {}
        if created_at is not None:
            stamps["created_at"] = created_at
        if updated_at is not None:
            stamps["updated_at"] = updated_at
        if stamps:
            await db_session.execute(
                update(IntelligenceJob)
                .where(IntelligenceJob.job_id == job.job_id)
                .values(**stamps)
            )
            await db_session.commit()
            await db_session.refresh(job)
            await db_session.commit()

        return job

    return _create


@pytest_asyncio.fixture(scope="function")
async def deal_factory(db_session):
    from intelhub.models.deals import Deal

    async def _create(
        hubspot_id: str = "deal-1",
        dealname: str = "Acme renewal",
        amount: float | None = 150_000,
        dealstage: str = "contractsent",
        closedate: datetime | None = None,
        company_ids: list | None = None,
        contact_ids: list | None = None,
        last_activity_date: datetime | None = None,
        is_closed: bool = False,
        is_won: bool = False,
        is_lost: bool = False,
    ) -> Deal:
        deal = Deal(
            hubspot_id=hubspot_id,
            dealname=dealname,
            amount=amount,
            dealstage=dealstage,
            pipeline="default",
            closedate=closedate,
            is_closed=is_closed,
            is_won=is_won,
            is_lost=is_lost,
            company_ids=company_ids if company_ids is not None else ["c1"],
            contact_ids=contact_ids if contact_ids is not None else ["p1"],
            last_activity_date=last_activity_date,
        )
        db_session.add(deal)
        await db_session.commit()
        return deal

    return _create
