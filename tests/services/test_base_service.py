"""
Unit tests for services/base_service.py

Configuration failures are fatal; a service built with an injected client never
touches provider credentials.
"""

import pytest

from services.base_service import BaseService, clean_api_key
from services.errors import ConfigurationError

VALID_OPENAI_KEY = "sk-test-" + "a" * 32


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("LLM_PROVIDER", "LLM_MODEL", "LLM_LITE_MODEL", "GOOGLE_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestCleanApiKey:
    @pytest.mark.parametrize(
        "raw,expected",
        [('"AIzaSyExample"', "AIzaSyExample"), ("  'quoted' ", "quoted"), (None, ""), ("", "")],
    )
    def test_quotes_and_whitespace_are_removed(self, raw, expected):
        assert clean_api_key(raw) == expected


class TestConfiguration:
    def test_missing_key_is_fatal(self, clean_env):
        with pytest.raises(ConfigurationError) as exc_info:
            BaseService(default_model_provider="google")
        assert "GOOGLE_API_KEY" in str(exc_info.value)

    def test_short_key_is_fatal(self, clean_env):
        clean_env.setenv("OPENAI_API_KEY", "sk-short")
        with pytest.raises(ConfigurationError):
            BaseService(default_model_provider="openai")

    def test_unknown_provider(self, clean_env):
        with pytest.raises(ConfigurationError):
            BaseService(default_model_provider="mistral")

    def test_provider_from_environment(self, clean_env):
        clean_env.setenv("LLM_PROVIDER", "openai")
        clean_env.setenv("OPENAI_API_KEY", f'"{VALID_OPENAI_KEY}"')

        service = BaseService()

        assert service.llm_client.model_name == "gpt-4o"
        assert service.lite_client.model_name == "gpt-4o-mini"

    def test_model_override(self, clean_env):
        clean_env.setenv("OPENAI_API_KEY", VALID_OPENAI_KEY)
        clean_env.setenv("LLM_MODEL", "gpt-4o-mini")

        service = BaseService(default_model_provider="openai")

        assert service.llm_client.model_name == "gpt-4o-mini"


class TestInjectedClient:
    def test_injected_client_skips_credentials(self, clean_env, make_client):
        client = make_client(default="ok")

        service = BaseService(llm_client=client)

        assert service.llm_client is client
        assert service.lite_client is client

    def test_get_prompt(self, make_client):
        service = BaseService(llm_client=make_client(default="ok"))

        assert "{title_1}" in service.get_prompt("task_similarity_service", "semantic_similarity")
        with pytest.raises(ValueError):
            service.get_prompt("task_similarity_service", "does_not_exist")
