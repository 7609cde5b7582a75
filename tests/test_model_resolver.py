"""Tests for the LLM model routing / resolver logic."""

import pytest

from intelhub.core.model_resolver import TaskType, get_available_providers, resolve_model


@pytest.fixture(autouse=True)
def _clear_api_keys(monkeypatch):
    """Start each test with no API keys and no pinned model."""
    monkeypatch.setattr("intelhub.config.settings.openai_api_key", "")
    monkeypatch.setattr("intelhub.config.settings.anthropic_api_key", "")
    monkeypatch.setattr("intelhub.config.settings.gemini_api_key", "")
    monkeypatch.setattr("intelhub.config.settings.intelligence_model", "")


@pytest.mark.parametrize(
    "key_attr,task_type,expected_model",
    [
        ("anthropic_api_key", TaskType.ENTITY_RESEARCH, "claude-sonnet-4-5"),
        ("openai_api_key", TaskType.ENTITY_RESEARCH, "gpt-5"),
        ("gemini_api_key", TaskType.QUICK_ANALYSIS, "gemini-2.5-flash"),
        ("openai_api_key", TaskType.QUICK_ANALYSIS, "gpt-5-mini"),
    ],
    ids=["anthropic-research", "openai-research", "gemini-quick", "openai-quick"],
)
def test_resolve_single_provider(monkeypatch, key_attr, task_type, expected_model):
    monkeypatch.setattr(f"intelhub.config.settings.{key_attr}", "key")
    assert resolve_model(task_type) == expected_model


def test_resolve_priority_order_all_keys(monkeypatch):
    """With all keys set, the first provider in priority wins."""
    for attr in ("openai_api_key", "anthropic_api_key", "gemini_api_key"):
        monkeypatch.setattr(f"intelhub.config.settings.{attr}", "key")

    assert get_available_providers() == {"openai", "anthropic", "gemini"}
    assert resolve_model(TaskType.ENTITY_RESEARCH) == "claude-sonnet-4-5"
    assert resolve_model(TaskType.QUICK_ANALYSIS) == "claude-haiku-4-5"


def test_pinned_model_wins(monkeypatch):
    monkeypatch.setattr("intelhub.config.settings.intelligence_model", "gpt-4.1")
    assert resolve_model(TaskType.ENTITY_RESEARCH) == "gpt-4.1"


def test_resolve_no_keys_raises():
    with pytest.raises(RuntimeError, match="No LLM API key configured"):
        resolve_model(TaskType.ENTITY_RESEARCH)


def test_every_task_type_has_a_priority_list():
    from intelhub.core.model_resolver import MODEL_PRIORITY

    assert set(MODEL_PRIORITY) == set(TaskType)


def test_build_services_uses_quick_model_for_bounded_runs(monkeypatch):
    import httpx

    from intelhub.core.analysis import build_services

    monkeypatch.setattr("intelhub.config.settings.anthropic_api_key", "key")
    services = build_services(httpx.AsyncClient())

    assert services.model_client.task == TaskType.ENTITY_RESEARCH
    assert services.quick_model_client.task == TaskType.QUICK_ANALYSIS
    assert services.quick_model_client.model.endswith("claude-haiku-4-5")
