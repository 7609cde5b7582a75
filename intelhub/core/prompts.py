"""
Prompt templates for the entity research agent.
"""

import json
from typing import Any

FINISH_TOOL_NAME = "finish_analysis"

_COMMON_OUTPUT_FIELDS = """\
  "insights": ["Key finding backed by data you retrieved", ...],
  "recommended_actions": ["Specific, actionable next step", ...],
  "risk_factors": ["Concern or warning sign", ...],
  "opportunity_signals": ["Positive indicator or upsell opening", ...],
  "executive_summary": "2-3 sentence summary for a sales leader",
  "investigation_summary": "What you looked at and which tools you used",
  "confidence": 0.0-1.0"""

OUTPUT_SCHEMAS = {
    "company": f"""{{
  "health_score": 1-10,
{_COMMON_OUTPUT_FIELDS},
  "similar_companies_analysis": "How this account compares to similar customers"
}}""",
    "contact": f"""{{
  "engagement_score": 1-10,
{_COMMON_OUTPUT_FIELDS},
  "role_assessment": "Decision-making role and influence of this person"
}}""",
    "deal": f"""{{
  "health_score": 1-10,
  "deal_stage_analysis": "Is the deal where it should be, and what is blocking it",
  "stakeholders": [{{"name": "...", "role": "...", "sentiment": "..."}}],
  "timeline": "Assessment of the close date and momentum",
{_COMMON_OUTPUT_FIELDS},
  "similar_deals_analysis": "What comparable deals tell us"
}}""",
}

_FOCUS = {
    "company": (
        "Assess the overall health of this customer account: engagement, open "
        "and closed deals, key contacts, industry position and growth signals."
    ),
    "contact": (
        "Assess this person's engagement, their role in buying decisions, and "
        "the best way to move the relationship forward."
    ),
    "deal": (
        "Assess the likelihood and timing of this deal closing: stage, "
        "stakeholders, activity, competition and comparable deals."
    ),
}

SYSTEM_PROMPT_TEMPLATE = """You are a senior sales intelligence analyst researching a CRM {entity_type}.

{focus}

Work in steps. Use the available tools to gather facts before drawing
conclusions: look up the record and its associations in the CRM, search the
knowledge base for similar customers, and check the web when it helps.
Do not invent data; when a tool fails, note it and continue with what you have.

When you have enough information, call `{finish_tool}` with a short summary,
then reply with ONLY a JSON object in this exact shape:

{output_schema}
"""

FINAL_OUTPUT_REQUEST = (
    "Now provide your final analysis as a single JSON object matching the "
    "required format. Reply with the JSON only."
)

INVALID_OUTPUT_FEEDBACK = (
    "Your final answer could not be accepted: {error}\n"
    "Reply with ONLY a corrected JSON object in the required format."
)


def build_system_prompt(entity_type: str) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(
        entity_type=entity_type,
        focus=_FOCUS[entity_type],
        finish_tool=FINISH_TOOL_NAME,
        output_schema=OUTPUT_SCHEMAS[entity_type],
    )


def build_user_message(
    entity_type: str, entity_id: str, entity_name: str, record: dict[str, Any] | None
) -> str:
    lines = [
        f"Analyze {entity_type} '{entity_name}' (CRM id {entity_id}).",
    ]
    if record:
        lines.append("")
        lines.append("Current CRM record:")
        lines.append(json.dumps(record, indent=2, default=str))
    else:
        lines.append("The CRM record could not be loaded; look it up with the tools.")
    return "\n".join(lines)
