"""
Google Gemini backend (google-genai SDK).
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
    "text-embedding-004": 768,
    "gemini-embedding-001": 3072,
}


class GeminiProvider:
    """
    Backend using Google's Gemini API (Google AI Studio key).

    Requires: GEMINI_API_KEY.

    Default model is gemini-1.5-flash; embeddings use text-embedding-004.
    """

    provider_type = "gemini"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gemini-1.5-flash",
        embedding_model: str = "text-embedding-004",
        temperature: float = 0.7,
        max_output_tokens: int = 1000,
        timeout: float = 30.0,
        enable_logging: bool = True,
    ):
        try:
            import httpx
            from google import genai
            from google.genai import errors, types
        except ImportError:
            raise RuntimeError("GeminiProvider requires 'google-genai' library")

        if not api_key:
            raise ValueError("GEMINI_API_KEY is required for Gemini provider")

        self.model = model
        self.embedding_model = embedding_model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.enable_logging = enable_logging
        self._types = types
        # Network failures surface as httpx errors underneath the SDK
        self._error_types = (errors.APIError, httpx.HTTPError)
        self._client = genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=int(timeout * 1000)),
        )

    @property
    def model_info(self) -> str:
        return f"{self.model} (Gemini)"

    @property
    def embedding_dimension(self) -> Optional[int]:
        return EMBEDDING_DIMENSIONS.get(self.embedding_model)

    def _generate(self, system: str, user: str, max_output_tokens: int):
        try:
            return self._client.models.generate_content(
                model=self.model,
                contents=user,
                config=self._types.GenerateContentConfig(
                    system_instruction=system,
                    temperature=self.temperature,
                    max_output_tokens=max_output_tokens,
                ),
            )
        except self._error_types as e:
            raise ProviderError(f"Gemini request failed: {e}", provider="gemini") from e

    def summarize(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        max_length: int = 500,
    ) -> SummarizationResult:
        """Generate summary using Google Gemini."""
        response = self._generate(
            SUMMARIZATION_SYSTEM_PROMPT,
            build_summarization_prompt(content, title, max_length),
            self.max_output_tokens,
        )
        summary = strip_summary_preamble(response.text or "")
        if self.enable_logging:
            logger.info("Gemini summarization completed: %s...", summary[:100])
        usage = getattr(response, "usage_metadata", None)
        return SummarizationResult(
            summary=summary,
            model=self.model,
            tokens_used=getattr(usage, "total_token_count", None),
        )

    def generate_tags(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        existing_tags: Optional[list[str]] = None,
        max_tags: int = 5,
    ) -> TaggingResult:
        """Generate tags using Google Gemini."""
        response = self._generate(
            TAGGING_SYSTEM_PROMPT,
            build_tagging_prompt(content, title, existing_tags, max_tags),
            200,
        )
        text = (response.text or "").strip()
        # Strip markdown code fences if present
        if text.startswith("```"):
            text = text.split("\n", 1)[1] if "\n" in text else text[3:]
            if text.endswith("```"):
                text = text[:-3].strip()
        tags = parse_tag_list(text, max_tags)
        if self.enable_logging:
            logger.info("Gemini tagging completed: %s", ", ".join(tags))
        return TaggingResult(tags=tags, model=self.model, confidence=0.85)

    def generate_embeddings(
        self,
        content: str,
        *,
        title: Optional[str] = None,
    ) -> EmbeddingResult:
        try:
            response = self._client.models.embed_content(
                model=self.embedding_model,
                contents=embedding_text(content, title),
            )
        except self._error_types as e:
            raise ProviderError(
                f"Gemini embedding request failed: {e}", provider="gemini"
            ) from e
        vector = list(response.embeddings[0].values) if response.embeddings else []
        if self.enable_logging:
            logger.info(
                "Gemini embeddings generated: %d dimensions using %s",
                len(vector), self.embedding_model,
            )
        return EmbeddingResult(vector=vector, model=self.embedding_model)

    def health_check(self) -> bool:
        try:
            self._client.models.generate_content(model=self.model, contents="Hello")
            return True
        except self._error_types as e:
            logger.warning("Gemini health check failed: %s", e)
            return False


# Register providers
_registry = get_registry()
_registry.register("gemini", GeminiProvider)
