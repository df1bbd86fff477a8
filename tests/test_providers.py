"""
Tests for the networked backends with their SDKs and HTTP calls mocked.

Every backend must turn vendor failures into ProviderError (so the queue
retries them) and report health as a boolean rather than raising.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import requests

from knowman.errors import PermanentJobError, ProviderError
from knowman.providers.base import get_registry


def _chat_response(text, total_tokens=42):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


class TestRegistry:

    def test_all_backends_registered(self):
        names = set(get_registry().list_providers())
        assert {"offline", "openai", "anthropic", "gemini", "llamacpp"} <= names

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown AI provider"):
            get_registry().create("watson")

    def test_constructor_errors_become_runtime_errors(self):
        with pytest.raises(RuntimeError, match="OPENAI_API_KEY is required"):
            get_registry().create("openai", {"api_key": None})


class TestOpenAIProvider:

    @pytest.fixture
    def client(self):
        with patch("openai.OpenAI") as cls:
            yield cls.return_value

    @pytest.fixture
    def provider(self, client):
        from knowman.providers.openai import OpenAIProvider
        return OpenAIProvider(api_key="sk-test", model="gpt-4o-mini", enable_logging=False)

    def test_summarize_strips_preamble(self, provider, client):
        client.chat.completions.create.return_value = _chat_response(
            "Here is a summary: Cats sleep a lot."
        )
        result = provider.summarize("Cats sleep sixteen hours a day.", title="Cats")
        assert result.summary == "Cats sleep a lot."
        assert result.model == "gpt-4o-mini"
        assert result.tokens_used == 42

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["messages"][0]["role"] == "system"
        assert "Title: Cats" in kwargs["messages"][1]["content"]

    def test_tags_parsed(self, provider, client):
        client.chat.completions.create.return_value = _chat_response("Cats, Sleep, pets")
        result = provider.generate_tags("Cats sleep.", max_tags=2)
        assert result.tags == ["cats", "sleep"]
        assert result.confidence == 0.9

    def test_embedding_dimension_known_for_model(self, provider, client):
        client.embeddings.create.return_value = SimpleNamespace(
            data=[SimpleNamespace(embedding=[0.1] * 1536)]
        )
        result = provider.generate_embeddings("text", title="T")
        assert len(result.vector) == provider.embedding_dimension == 1536
        assert client.embeddings.create.call_args.kwargs["input"] == "T\n\ntext"

    def test_api_error_becomes_provider_error(self, provider, client):
        from openai import OpenAIError

        client.chat.completions.create.side_effect = OpenAIError("rate limited")
        with pytest.raises(ProviderError, match="rate limited") as exc_info:
            provider.summarize("text")
        assert exc_info.value.provider == "openai"

    def test_health_check_false_on_error(self, provider, client):
        from openai import OpenAIError

        client.chat.completions.create.side_effect = OpenAIError("bad key")
        assert provider.health_check() is False

    def test_requires_api_key(self, client):
        from knowman.providers.openai import OpenAIProvider
        with pytest.raises(ValueError):
            OpenAIProvider(api_key=None)


class TestAnthropicProvider:

    @pytest.fixture
    def client(self):
        with patch("anthropic.Anthropic") as cls:
            yield cls.return_value

    @pytest.fixture
    def provider(self, client):
        from knowman.providers.anthropic import AnthropicProvider
        return AnthropicProvider(api_key="k", enable_logging=False)

    def test_summarize_counts_tokens(self, provider, client):
        client.messages.create.return_value = SimpleNamespace(
            content=[SimpleNamespace(text="Summary: Short and sweet.")],
            usage=SimpleNamespace(input_tokens=10, output_tokens=5),
        )
        result = provider.summarize("Long text.")
        assert result.summary == "Short and sweet."
        assert result.tokens_used == 15

    def test_embeddings_unsupported(self, provider):
        with pytest.raises(PermanentJobError):
            provider.generate_embeddings("text")

    def test_api_error_becomes_provider_error(self, provider, client):
        from anthropic import AnthropicError

        client.messages.create.side_effect = AnthropicError("overloaded")
        with pytest.raises(ProviderError):
            provider.generate_tags("text")


class TestGeminiProvider:

    @pytest.fixture
    def client(self):
        with patch("google.genai.Client") as cls:
            yield cls.return_value

    @pytest.fixture
    def provider(self, client):
        from knowman.providers.gemini import GeminiProvider
        return GeminiProvider(api_key="k", enable_logging=False)

    def test_tags_strip_code_fences(self, provider, client):
        client.models.generate_content.return_value = SimpleNamespace(
            text="```\nalpha, beta\n```", usage_metadata=None,
        )
        assert provider.generate_tags("text").tags == ["alpha", "beta"]

    def test_embeddings(self, provider, client):
        client.models.embed_content.return_value = SimpleNamespace(
            embeddings=[SimpleNamespace(values=[0.5] * 768)]
        )
        result = provider.generate_embeddings("text")
        assert len(result.vector) == provider.embedding_dimension == 768

    def test_network_error_becomes_provider_error(self, provider, client):
        import httpx

        client.models.generate_content.side_effect = httpx.ConnectError("unreachable")
        with pytest.raises(ProviderError, match="unreachable"):
            provider.summarize("text")


class TestLlamaCppProvider:

    @pytest.fixture
    def provider(self):
        from knowman.providers.llamacpp import LlamaCppProvider
        return LlamaCppProvider(base_url="http://llama:8080/", enable_logging=False)

    @staticmethod
    def _response(status=200, json_data=None):
        response = MagicMock()
        response.ok = status < 400
        response.status_code = status
        response.text = "" if json_data is not None else "server exploded"
        response.json.return_value = json_data
        return response

    def test_summarize_uses_chat_endpoint(self, provider):
        data = {
            "choices": [{"message": {"content": "A summary."}}],
            "usage": {"total_tokens": 7},
        }
        with patch("requests.post", return_value=self._response(json_data=data)) as post:
            result = provider.summarize("text")
        assert result.summary == "A summary."
        assert result.tokens_used == 7
        assert post.call_args.args[0] == "http://llama:8080/v1/chat/completions"

    def test_embedding_response_shapes(self, provider):
        legacy = {"embedding": [0.1, 0.2, 0.3]}
        current = [{"index": 0, "embedding": [[0.4, 0.5]]}]
        with patch("requests.post", return_value=self._response(json_data=legacy)):
            assert provider.generate_embeddings("x").vector == [0.1, 0.2, 0.3]
        with patch("requests.post", return_value=self._response(json_data=current)):
            assert provider.generate_embeddings("x").vector == [0.4, 0.5]

    def test_http_error(self, provider):
        with patch("requests.post", return_value=self._response(status=500)):
            with pytest.raises(ProviderError, match="HTTP 500"):
                provider.generate_tags("text")

    def test_connection_error(self, provider):
        with patch("requests.post", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(ProviderError, match="Cannot reach llama.cpp server"):
                provider.summarize("text")

    def test_missing_choices(self, provider):
        with patch("requests.post", return_value=self._response(json_data={"choices": []})):
            with pytest.raises(ProviderError, match="missing choices"):
                provider.summarize("text")

    def test_health_check(self, provider):
        with patch("requests.get", return_value=self._response(json_data={})) as get:
            assert provider.health_check() is True
        assert get.call_args.args[0] == "http://llama:8080/health"
        with patch("requests.get", side_effect=requests.ConnectionError("down")):
            assert provider.health_check() is False
