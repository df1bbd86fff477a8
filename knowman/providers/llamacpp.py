"""
llama.cpp server backend.

Talks to a local `llama-server` over HTTP: the OpenAI-compatible chat
endpoint for summaries and tags, /embedding for vectors, /health for the
health check. Start the server with --embedding to enable vectors.
"""

import logging
from typing import Optional

import requests

from ..errors import ProviderError
from .base import (
    SUMMARIZATION_SYSTEM_PROMPT,
    TAGGING_SYSTEM_PROMPT,
    EmbeddingResult,
    SummarizationResult,
    TaggingResult,
    build_summarization_prompt,
    build_tagging_prompt,
    embedding_text,
    get_registry,
    parse_tag_list,
    strip_summary_preamble,
)

logger = logging.getLogger(__name__)


class LlamaCppProvider:
    """
    Backend using a llama.cpp HTTP server.

    No API key; LLAMACPP_BASE_URL points at the server
    (default: http://localhost:8080).
    """

    provider_type = "llamacpp"
    # Whatever model the server loaded decides the vector length
    embedding_dimension = None

    def __init__(
        self,
        base_url: str = "http://localhost:8080",
        model: str = "llama2",
        temperature: float = 0.8,
        max_tokens: int = 1000,
        timeout: float = 30.0,
        enable_logging: bool = True,
    ):
        if not base_url:
            raise ValueError("LLAMACPP_BASE_URL is required for llama.cpp provider")
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.enable_logging = enable_logging
        self._timeout = (min(10.0, timeout), timeout)  # (connect, read)

    @property
    def model_info(self) -> str:
        return f"{self.model} (llama.cpp @ {self.base_url})"

    def _post(self, path: str, payload: dict) -> dict:
        try:
            response = requests.post(
                f"{self.base_url}{path}", json=payload, timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(
                f"Cannot reach llama.cpp server at {self.base_url}: {e}",
                provider="llamacpp",
            ) from e
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise ProviderError(
                f"llama.cpp request failed (model={self.model}): "
                f"HTTP {response.status_code} from {self.base_url}{path}. {detail}",
                provider="llamacpp",
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                f"llama.cpp returned invalid JSON from {path}", provider="llamacpp"
            ) from e

    def _chat(self, system: str, user: str, max_tokens: int) -> tuple[str, Optional[int]]:
        data = self._post("/v1/chat/completions", {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": self.temperature,
            "max_tokens": max_tokens,
            "stream": False,
        })
        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(
                "llama.cpp chat response missing choices", provider="llamacpp"
            ) from e
        tokens = (data.get("usage") or {}).get("total_tokens")
        return text, tokens

    def summarize(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        max_length: int = 500,
    ) -> SummarizationResult:
        text, tokens = self._chat(
            SUMMARIZATION_SYSTEM_PROMPT,
            build_summarization_prompt(content, title, max_length),
            self.max_tokens,
        )
        summary = strip_summary_preamble(text)
        if self.enable_logging:
            logger.info("llama.cpp summarization completed: %s...", summary[:100])
        return SummarizationResult(summary=summary, model=self.model, tokens_used=tokens)

    def generate_tags(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        existing_tags: Optional[list[str]] = None,
        max_tags: int = 5,
    ) -> TaggingResult:
        text, _ = self._chat(
            TAGGING_SYSTEM_PROMPT,
            build_tagging_prompt(content, title, existing_tags, max_tags),
            200,
        )
        tags = parse_tag_list(text, max_tags)
        if self.enable_logging:
            logger.info("llama.cpp tagging completed: %s", ", ".join(tags))
        return TaggingResult(tags=tags, model=self.model, confidence=0.7)

    def generate_embeddings(
        self,
        content: str,
        *,
        title: Optional[str] = None,
    ) -> EmbeddingResult:
        data = self._post("/embedding", {"content": embedding_text(content, title)})
        # Older servers answer {"embedding": [...]}, newer ones a list of
        # {"index": 0, "embedding": [[...]]} entries
        if isinstance(data, list):
            data = data[0] if data else {}
        vector = data.get("embedding") or []
        if vector and isinstance(vector[0], list):
            vector = vector[0]
        if self.enable_logging:
            logger.info("llama.cpp embeddings generated: %d dimensions", len(vector))
        return EmbeddingResult(vector=[float(v) for v in vector], model=self.model)

    def health_check(self) -> bool:
        try:
            response = requests.get(f"{self.base_url}/health", timeout=5)
            return response.ok
        except requests.RequestException as e:
            logger.warning("llama.cpp health check failed: %s", e)
            return False


# Register providers
_registry = get_registry()
_registry.register("llamacpp", LlamaCppProvider)
