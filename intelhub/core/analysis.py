"""
Entity analysis: loads CRM context, runs the research agent and, for deals,
attaches the deterministic deal score computed from the local deal cache.

Shared by the background job runner and the in-request analyze endpoint.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from intelhub.core.agent_engine import (
    AgentConfig,
    AgentEngine,
    AgentResult,
    CancellationToken,
    EmitCallback,
)
from intelhub.core.errors import UpstreamToolError
from intelhub.core.llms import ModelClient
from intelhub.core.model_resolver import TaskType
from intelhub.core.prompts import build_user_message
from intelhub.core.scoring import DealScore, DealSnapshot, score_deal
from intelhub.core.tools import ToolRegistry, build_tool_registry
from intelhub.models.deals import Deal

logger = logging.getLogger(__name__)


@dataclass
class IntelligenceServices:
    """Service handles shared read-only by every concurrent analysis."""

    model_client: ModelClient
    tools: ToolRegistry
    # Used to load the entity record before the agent starts; optional
    hubspot: Any = None
    # Serves capped in-request runs; falls back to model_client
    quick_model_client: ModelClient | None = None


def build_services(http_client: httpx.AsyncClient) -> IntelligenceServices:
    from intelhub.config import settings
    from intelhub.integrations.hubspot import HubSpotClient

    hubspot = None
    if settings.hubspot_access_token:
        hubspot = HubSpotClient(
            http_client,
            access_token=settings.hubspot_access_token,
            base_url=settings.hubspot_base_url,
        )
    return IntelligenceServices(
        model_client=ModelClient(task=TaskType.ENTITY_RESEARCH),
        tools=build_tool_registry(http_client),
        hubspot=hubspot,
        quick_model_client=ModelClient(task=TaskType.QUICK_ANALYSIS),
    )


async def load_entity_record(
    services: IntelligenceServices, entity_type: str, entity_id: str
) -> dict[str, Any] | None:
    if services.hubspot is None:
        return None
    try:
        return await services.hubspot.get_object(entity_type, entity_id)
    except UpstreamToolError as e:
        logger.warning(f"Could not load {entity_type} {entity_id} from CRM: {e}")
        return None


async def load_deal_snapshot(db: AsyncSession, deal_id: str) -> DealSnapshot | None:
    result = await db.execute(select(Deal).where(Deal.hubspot_id == deal_id))
    deal = result.scalar_one_or_none()
    return DealSnapshot.from_model(deal) if deal is not None else None


def merge_deal_score(output: dict[str, Any], deal_score: DealScore) -> dict[str, Any]:
    """Attach the deal score and fold its recommendations into the agent's, deduplicated."""
    merged = dict(output)
    merged["deal_score"] = deal_score.model_dump(mode="json")

    seen = set()
    actions = []
    for action in list(output.get("recommended_actions") or []) + deal_score.recommendations:
        key = action.strip().lower()
        if key and key not in seen:
            seen.add(key)
            actions.append(action)
    merged["recommended_actions"] = actions
    return merged


def summarize_result(result: dict[str, Any] | None) -> dict[str, Any] | None:
    """Small projection of a result kept alongside it for listings."""
    if not result:
        return None
    deal_score = result.get("deal_score")
    return {
        "health_score": result.get("health_score"),
        "engagement_score": result.get("engagement_score"),
        "deal_score": deal_score.get("total_score") if isinstance(deal_score, dict) else None,
        "executive_summary": result.get("executive_summary"),
        "confidence": result.get("confidence"),
    }


async def analyze_entity(
    services: IntelligenceServices,
    db: AsyncSession,
    entity_type: str,
    entity_id: str,
    entity_name: str | None = None,
    emit: EmitCallback | None = None,
    cancel_token: CancellationToken | None = None,
    max_iterations: int | None = None,
    quick: bool = False,
    now: datetime | None = None,
) -> tuple[AgentResult, dict[str, Any] | None]:
    """
    Run one analysis.

    Args:
        services: Model client, tool registry and CRM client
        db: Session used to read the local deal cache
        entity_type: company | contact | deal
        entity_id: External CRM key
        entity_name: Display name, falls back to the CRM record or the id
        emit: Receives agent events in order
        cancel_token: Checked between agent steps
        max_iterations: Agent budget, None for no cap
        quick: Use the latency-oriented model of a bounded run
        now: Reference time for deal scoring

    Returns:
        (agent result, final output) where the output is None unless the
        agent completed
    """
    record = await load_entity_record(services, entity_type, entity_id)
    if not entity_name:
        properties = (record or {}).get("properties", {})
        entity_name = (
            properties.get("name")
            or properties.get("dealname")
            or " ".join(
                p for p in (properties.get("firstname"), properties.get("lastname")) if p
            )
            or entity_id
        )

    engine = AgentEngine(
        AgentConfig(name=f"{entity_type}-intelligence", entity_type=entity_type),
        (services.quick_model_client if quick else None) or services.model_client,
        services.tools,
    )
    result = await engine.run(
        build_user_message(entity_type, entity_id, entity_name, record),
        context={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "entity_name": entity_name,
        },
        emit=emit,
        cancel_token=cancel_token,
        max_iterations=max_iterations,
    )
    if not result.success:
        return result, None

    output = result.output
    if entity_type == "deal":
        snapshot = await load_deal_snapshot(db, entity_id)
        if snapshot is not None:
            output = merge_deal_score(output, score_deal(snapshot, now=now))
        else:
            logger.info(f"Deal {entity_id} is not in the local cache; skipping deal score")
    return result, output
