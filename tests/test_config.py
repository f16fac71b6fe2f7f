import dataclasses

import pytest

from decoder.config import fallback_deployment_or_none, load_settings
from decoder.errors import ConfigurationError


def test_load_settings_from_env(monkeypatch):
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://res.openai.azure.com/")
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", "k")
    monkeypatch.setenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o")
    monkeypatch.delenv("DECODER_OPENAI_DEPLOYMENT", raising=False)
    monkeypatch.setenv("DECODER_DEBUG_BYPASS", "yes")
    monkeypatch.setenv("AZURE_SEARCH_ENDPOINT", "https://search.example.net/")
    monkeypatch.delenv("AZURE_SEARCH_INDEX", raising=False)
    settings = load_settings()
    assert settings.deployment == "gpt-4o"
    assert settings.debug_bypass
    assert settings.search_endpoint == "https://search.example.net"
    assert not settings.retrieval_enabled


def test_deployment_read_from_url(settings):
    s = dataclasses.replace(
        settings,
        endpoint="https://res.openai.azure.com/openai/deployments/mini/chat/completions?api-version=x",
        deployment="",
    )
    assert s.resolve_provider() == ("https://res.openai.azure.com", "mini")


def test_explicit_deployment_wins(settings):
    s = dataclasses.replace(settings, endpoint="https://res.openai.azure.com/openai/deployments/mini")
    assert s.resolve_provider() == ("https://res.openai.azure.com", "primary")


def test_missing_config_raises(settings):
    with pytest.raises(ConfigurationError):
        dataclasses.replace(settings, api_key="").resolve_provider()
    with pytest.raises(ConfigurationError):
        dataclasses.replace(settings, deployment="").resolve_provider()


def test_fallback_ignored_when_same_as_primary(settings):
    assert fallback_deployment_or_none(dataclasses.replace(settings, fallback_deployment="primary"), "primary") is None
    assert fallback_deployment_or_none(dataclasses.replace(settings, fallback_deployment="b"), "primary") == "b"
