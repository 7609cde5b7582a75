"""Central model resolver that picks the best available LLM for each task type.

Each task type has a priority-ordered list of (model, provider) pairs.
``resolve_model`` walks the list and returns the first model whose provider
has an API key configured in the environment.
"""

import logging
from enum import Enum
from typing import Dict, List, Set, Tuple

from intelhub.config import settings

logger = logging.getLogger(__name__)


class TaskType(str, Enum):
    # Multi-step research loop; needs strong tool use
    ENTITY_RESEARCH = "entity_research"
    # Bounded request/response run; favours latency
    QUICK_ANALYSIS = "quick_analysis"


MODEL_PRIORITY: Dict[TaskType, List[Tuple[str, str]]] = {
    TaskType.ENTITY_RESEARCH: [
        ("claude-sonnet-4-5", "anthropic"),
        ("gpt-5", "openai"),
        ("gemini-2.5-pro", "gemini"),
    ],
    TaskType.QUICK_ANALYSIS: [
        ("claude-haiku-4-5", "anthropic"),
        ("gpt-5-mini", "openai"),
        ("gemini-2.5-flash", "gemini"),
    ],
}


def get_available_providers() -> Set[str]:
    """Return providers that have a non-empty API key configured."""
    available: Set[str] = set()
    if settings.openai_api_key:
        available.add("openai")
    if settings.anthropic_api_key:
        available.add("anthropic")
    if settings.gemini_api_key:
        available.add("gemini")
    return available


def resolve_model(task: TaskType) -> str:
    """Return the best available model for *task*.

    ``settings.intelligence_model`` wins when set. Otherwise walks the
    priority list and returns the first model whose provider has an API key
    configured. Raises ``RuntimeError`` when no provider is available at all.
    """
    if settings.intelligence_model:
        return settings.intelligence_model

    available = get_available_providers()
    priority = MODEL_PRIORITY[task]

    for model_name, provider in priority:
        if provider in available:
            logger.debug(
                "Resolved model for %s: %s (provider=%s)", task.value, model_name, provider
            )
            return model_name

    raise RuntimeError(
        f"No LLM API key configured for task '{task.value}'. "
        "Set at least one of: OPENAI_API_KEY, ANTHROPIC_API_KEY, GEMINI_API_KEY"
    )
