"""
OpenAI backend (chat completions + embeddings).
"""

import logging
from typing import Optional

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

EMBEDDING_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class OpenAIProvider:
    """
    Backend using OpenAI's API, or any OpenAI-compatible endpoint via base_url.

    Requires: OPENAI_API_KEY.

    The SDK's own retry (max_retries) handles short rate-limit bursts;
    anything that survives it is raised as ProviderError so the job queue
    can retry later.
    """

    provider_type = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str = "gpt-4o-mini",
        embedding_model: str = "text-embedding-3-small",
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout: float = 30.0,
        max_retries: int = 3,
        enable_logging: bool = True,
    ):
        try:
            from openai import OpenAI, OpenAIError
        except ImportError:
            raise RuntimeError("OpenAIProvider requires 'openai' library")

        if not api_key:
            raise ValueError("OPENAI_API_KEY is required for OpenAI provider")

        self.model = model
        self.embedding_model = embedding_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.enable_logging = enable_logging
        self._error_types = (OpenAIError,)
        self._client = OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
        )

    @property
    def model_info(self) -> str:
        return f"{self.model} (OpenAI)"

    @property
    def embedding_dimension(self) -> Optional[int]:
        return EMBEDDING_DIMENSIONS.get(self.embedding_model)

    def _chat(self, system: str, user: str, max_tokens: int):
        try:
            return self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=self.temperature,
                max_tokens=max_tokens,
            )
        except self._error_types as e:
            raise ProviderError(f"OpenAI request failed: {e}", provider="openai") from e

    def summarize(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        max_length: int = 500,
    ) -> SummarizationResult:
        """Generate a summary using OpenAI."""
        response = self._chat(
            SUMMARIZATION_SYSTEM_PROMPT,
            build_summarization_prompt(content, title, max_length),
            self.max_tokens,
        )
        text = response.choices[0].message.content if response.choices else ""
        summary = strip_summary_preamble(text or "")
        if self.enable_logging:
            logger.info("OpenAI summarization completed: %s...", summary[:100])
        usage = getattr(response, "usage", None)
        return SummarizationResult(
            summary=summary,
            model=self.model,
            tokens_used=getattr(usage, "total_tokens", None),
        )

    def generate_tags(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        existing_tags: Optional[list[str]] = None,
        max_tags: int = 5,
    ) -> TaggingResult:
        """Generate tags using OpenAI."""
        response = self._chat(
            TAGGING_SYSTEM_PROMPT,
            build_tagging_prompt(content, title, existing_tags, max_tags),
            200,
        )
        text = response.choices[0].message.content if response.choices else ""
        tags = parse_tag_list(text or "", max_tags)
        if self.enable_logging:
            logger.info("OpenAI tagging completed: %s", ", ".join(tags))
        return TaggingResult(tags=tags, model=self.model, confidence=0.9)

    def generate_embeddings(
        self,
        content: str,
        *,
        title: Optional[str] = None,
    ) -> EmbeddingResult:
        """Embed title + content with the configured embedding model."""
        try:
            response = self._client.embeddings.create(
                model=self.embedding_model,
                input=embedding_text(content, title),
            )
        except self._error_types as e:
            raise ProviderError(
                f"OpenAI embedding request failed: {e}", provider="openai"
            ) from e
        vector = list(response.data[0].embedding) if response.data else []
        if self.enable_logging:
            logger.info(
                "OpenAI embeddings generated: %d dimensions using %s",
                len(vector), self.embedding_model,
            )
        return EmbeddingResult(vector=vector, model=self.embedding_model)

    def health_check(self) -> bool:
        """Tiny completion request; False on any API error."""
        try:
            self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": "Hello"}],
                max_tokens=5,
            )
            return True
        except self._error_types as e:
            logger.warning("OpenAI health check failed: %s", e)
            return False


# Register providers
_registry = get_registry()
_registry.register("openai", OpenAIProvider)
