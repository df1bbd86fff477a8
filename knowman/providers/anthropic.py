"""
Anthropic backend (messages API).

Anthropic offers no embedding endpoint; configuration validation rejects
it as EMBEDDING_PROVIDER, so the resolver never hands it an embed call.
"""

import logging
from typing import Optional

from ..errors import PermanentJobError, ProviderError
from .base import (
    SUMMARIZATION_SYSTEM_PROMPT,
    TAGGING_SYSTEM_PROMPT,
    EmbeddingResult,
    SummarizationResult,
    TaggingResult,
    build_summarization_prompt,
    build_tagging_prompt,
    get_registry,
    parse_tag_list,
    strip_summary_preamble,
)

logger = logging.getLogger(__name__)


class AnthropicProvider:
    """
    Backend using Anthropic's Claude API.

    Requires: ANTHROPIC_API_KEY.

    Default model is claude-3-haiku (cheapest, plenty for summaries and tags).
    """

    provider_type = "anthropic"
    embedding_dimension = None

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "claude-3-haiku-20240307",
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout: float = 30.0,
        max_retries: int = 3,
        enable_logging: bool = True,
    ):
        try:
            from anthropic import Anthropic, AnthropicError
        except ImportError:
            raise RuntimeError("AnthropicProvider requires 'anthropic' library")

        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY is required for Anthropic provider")

        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.enable_logging = enable_logging
        self._error_types = (AnthropicError,)
        self._client = Anthropic(api_key=api_key, timeout=timeout, max_retries=max_retries)

    @property
    def model_info(self) -> str:
        return f"{self.model} (Anthropic)"

    def _message(self, system: str, user: str, max_tokens: int):
        try:
            return self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=self.temperature,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
        except self._error_types as e:
            raise ProviderError(
                f"Anthropic request failed: {e}", provider="anthropic"
            ) from e

    @staticmethod
    def _text(response) -> str:
        if response.content and len(response.content) > 0:
            return response.content[0].text or ""
        return ""

    def summarize(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        max_length: int = 500,
    ) -> SummarizationResult:
        """Generate summary using Anthropic Claude."""
        response = self._message(
            SUMMARIZATION_SYSTEM_PROMPT,
            build_summarization_prompt(content, title, max_length),
            self.max_tokens,
        )
        summary = strip_summary_preamble(self._text(response))
        if self.enable_logging:
            logger.info("Anthropic summarization completed: %s...", summary[:100])
        usage = getattr(response, "usage", None)
        tokens = None
        if usage is not None:
            tokens = (usage.input_tokens or 0) + (usage.output_tokens or 0)
        return SummarizationResult(summary=summary, model=self.model, tokens_used=tokens)

    def generate_tags(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        existing_tags: Optional[list[str]] = None,
        max_tags: int = 5,
    ) -> TaggingResult:
        """Generate tags using Anthropic Claude."""
        response = self._message(
            TAGGING_SYSTEM_PROMPT,
            build_tagging_prompt(content, title, existing_tags, max_tags),
            200,
        )
        tags = parse_tag_list(self._text(response), max_tags)
        if self.enable_logging:
            logger.info("Anthropic tagging completed: %s", ", ".join(tags))
        return TaggingResult(tags=tags, model=self.model, confidence=0.9)

    def generate_embeddings(
        self,
        content: str,
        *,
        title: Optional[str] = None,
    ) -> EmbeddingResult:
        raise PermanentJobError("Anthropic provider does not support embeddings")

    def health_check(self) -> bool:
        try:
            self._client.messages.create(
                model=self.model,
                max_tokens=5,
                messages=[{"role": "user", "content": "Hello"}],
            )
            return True
        except self._error_types as e:
            logger.warning("Anthropic health check failed: %s", e)
            return False


# Register providers
_registry = get_registry()
_registry.register("anthropic", AnthropicProvider)
