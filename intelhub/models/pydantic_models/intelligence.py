"""
Pydantic schemas for intelligence jobs and the agent's structured output.

The agent's result is a tagged union keyed by ``entity_type``; each entity
kind has its own schema.
"""

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class EntityType(str, Enum):
    COMPANY = "company"
    CONTACT = "contact"
    DEAL = "deal"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (JobStatus.COMPLETE, JobStatus.ERROR, JobStatus.CANCELLED)
ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


def _as_text(item: Any) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        for key in ("text", "description", "title", "action", "insight", "name"):
            if isinstance(item.get(key), str):
                return item[key]
    return json.dumps(item, default=str)


# ---------------------------------------------------------------------------
# Agent output
# ---------------------------------------------------------------------------


class BaseIntelligence(BaseModel):
    insights: list[str] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    opportunity_signals: list[str] = Field(default_factory=list)
    executive_summary: str
    investigation_summary: str | None = None
    confidence: float | None = Field(default=None, ge=0, le=1)

    @field_validator(
        "insights",
        "recommended_actions",
        "risk_factors",
        "opportunity_signals",
        mode="before",
    )
    @classmethod
    def _coerce_text_list(cls, value):
        if value is None:
            return []
        if isinstance(value, (str, dict)):
            value = [value]
        return [_as_text(item) for item in value]


class CompanyIntelligence(BaseIntelligence):
    entity_type: Literal["company"] = "company"
    health_score: float = Field(ge=1, le=10)
    similar_companies_analysis: str | None = None


class ContactIntelligence(BaseIntelligence):
    entity_type: Literal["contact"] = "contact"
    engagement_score: float = Field(ge=1, le=10)
    role_assessment: str | None = None


class DealIntelligence(BaseIntelligence):
    entity_type: Literal["deal"] = "deal"
    health_score: float = Field(ge=1, le=10)
    deal_stage_analysis: str | None = None
    stakeholders: list[Any] = Field(default_factory=list)
    timeline: str | None = None
    similar_deals_analysis: str | None = None


IntelligenceResult = Annotated[
    Union[CompanyIntelligence, ContactIntelligence, DealIntelligence],
    Field(discriminator="entity_type"),
]

intelligence_result_adapter = TypeAdapter(IntelligenceResult)


def validate_intelligence(entity_type: str, payload: dict[str, Any]):
    """Validate a raw agent payload against the schema for ``entity_type``."""
    return intelligence_result_adapter.validate_python(
        {**payload, "entity_type": entity_type}
    )


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class JobCreateRequest(BaseModel):
    entityType: str | None = None
    entityId: str | None = None
    entityName: str | None = None

    @field_validator("entityType", "entityId", "entityName", mode="before")
    @classmethod
    def _numbers_as_strings(cls, value):
        # CRM ids often arrive as JSON numbers
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class JobBatchRequest(BaseModel):
    jobs: list[JobCreateRequest] | None = None
