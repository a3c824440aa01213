import pytest

from coach_core.domain.exceptions import ConfigurationError
from coach_core.domain.models import ProviderConfig
from coach_core.providers import create_provider
from coach_core.providers.gemini_client import GeminiClient
from coach_core.providers.openai_client import OpenAIClient
from coach_core.providers.registry import get_provider_spec, resolve_model, resolve_provider_config


class DummySettings:
    default_provider = "gemini"
    default_model = "coach-chat"
    gemini_api_key = None
    openai_api_key = None
    openai_base_url = "https://api.openai.com/v1"
    openai_max_tokens = 2048
    http_timeout = 1.0


def test_resolve_prefers_default_provider():
    cfg = DummySettings()
    cfg.gemini_api_key = "gemini-key-123"
    cfg.openai_api_key = "openai-key-123"
    resolved = resolve_provider_config(cfg)
    assert resolved.provider_id == "gemini"
    assert resolved.api_key == "gemini-key-123"


def test_resolve_explicit_preference():
    cfg = DummySettings()
    cfg.gemini_api_key = "gemini-key-123"
    cfg.openai_api_key = "openai-key-123"
    resolved = resolve_provider_config(cfg, preferred="openai")
    assert resolved.provider_id == "openai"
    assert resolved.max_tokens == 2048


def test_resolve_falls_back_to_only_openai_key():
    cfg = DummySettings()
    cfg.openai_api_key = "openai-key-123"
    resolved = resolve_provider_config(cfg)
    assert resolved.provider_id == "openai"
    assert resolved.base_url == "https://api.openai.com/v1"


def test_resolve_falls_back_to_only_gemini_key():
    cfg = DummySettings()
    cfg.default_provider = "openai"
    cfg.gemini_api_key = "gemini-key-123"
    assert resolve_provider_config(cfg).provider_id == "gemini"


def test_resolve_without_keys_fails():
    with pytest.raises(ConfigurationError):
        resolve_provider_config(DummySettings())


def test_registry_maps_logical_model():
    assert resolve_model(get_provider_spec("GEMINI"), "coach-chat").provider_model == "gemini-2.5-flash"
    assert resolve_model(get_provider_spec("openai"), "coach-chat").provider_model == "gpt-4o-mini"
    assert resolve_model(get_provider_spec("openai"), "gpt-4o").provider_model == "gpt-4o"
    with pytest.raises(KeyError):
        get_provider_spec("kimi")


def test_create_provider_openai():
    provider = create_provider(ProviderConfig(provider_id="openai", api_key="k"))
    assert isinstance(provider, OpenAIClient)
    assert provider.supports_sessions is False


def test_create_provider_gemini(monkeypatch):
    monkeypatch.setattr("google.generativeai.configure", lambda **kw: None)
    provider = create_provider(ProviderConfig(provider_id="gemini", api_key="k"))
    assert isinstance(provider, GeminiClient)
    assert provider.supports_sessions is True
