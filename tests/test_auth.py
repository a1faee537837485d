"""Tests for upstream API key resolution."""

import pytest

from src.auth import AuthenticationError, extract_api_key, resolve_api_key
from src.transformers.base import Provider


class TestExtractApiKey:
    """Tests for reading the key from provider-specific headers."""

    def test_openai_bearer(self) -> None:
        headers = {"authorization": "Bearer sk-openai"}
        assert extract_api_key(Provider.OPENAI, headers) == "sk-openai"

    def test_openai_requires_bearer_scheme(self) -> None:
        headers = {"authorization": "Basic abc"}
        assert extract_api_key(Provider.OPENAI, headers) is None

    def test_anthropic_x_api_key(self) -> None:
        headers = {"x-api-key": "sk-ant"}
        assert extract_api_key(Provider.ANTHROPIC, headers) == "sk-ant"

    def test_anthropic_falls_back_to_bearer(self) -> None:
        headers = {"authorization": "Bearer sk-ant"}
        assert extract_api_key(Provider.ANTHROPIC, headers) == "sk-ant"

    def test_gemini_header(self) -> None:
        headers = {"x-goog-api-key": "AIza-header"}
        assert extract_api_key(Provider.GEMINI, headers, query_key="AIza-query") == "AIza-header"

    def test_gemini_query_parameter(self) -> None:
        assert extract_api_key(Provider.GEMINI, {}, query_key="AIza-query") == "AIza-query"

    def test_missing_key(self) -> None:
        assert extract_api_key(Provider.ANTHROPIC, {}) is None


class TestResolveApiKey:
    """Tests for resolve_api_key with the configured fallback."""

    def test_client_key_wins_over_fallback(self) -> None:
        headers = {"authorization": "Bearer sk-client"}
        assert resolve_api_key(Provider.OPENAI, headers, fallback="sk-env") == "sk-client"

    def test_fallback_used_when_client_sends_none(self) -> None:
        assert resolve_api_key(Provider.OPENAI, {}, fallback="sk-env") == "sk-env"

    def test_missing_everywhere_raises(self) -> None:
        with pytest.raises(AuthenticationError, match="x-api-key"):
            resolve_api_key(Provider.ANTHROPIC, {}, fallback=None)
