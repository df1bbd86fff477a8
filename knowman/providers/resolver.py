"""
Backend selection with graceful degradation.

The main backend serves summaries and tags, the embedding backend serves
vectors. Each is constructed on first use and cached. Anything that
prevents construction (bad config, missing key, unknown name, missing SDK)
substitutes the offline backend; the substitution is logged, emitted as a
provider_fallback event and kept in fallback_reasons.
"""

import logging
import threading
from typing import Any, Optional

from ..config import AIConfig
from ..events import PROVIDER_FALLBACK, PipelineEvents
from .base import AIProvider, ProviderRegistry, get_registry
from .offline import OfflineProvider

logger = logging.getLogger(__name__)


class ProviderResolver:
    """Lazily resolves and caches the main and embedding backends."""

    def __init__(
        self,
        config: AIConfig,
        registry: Optional[ProviderRegistry] = None,
        events: Optional[PipelineEvents] = None,
    ):
        self.config = config
        self._registry = registry or get_registry()
        self._events = events
        self._lock = threading.Lock()
        self._cache: dict[bool, AIProvider] = {}
        # role ("main" / "embedding") -> reason the offline backend was used
        self.fallback_reasons: dict[str, str] = {}

    @property
    def main(self) -> AIProvider:
        """Backend for summarization and tagging."""
        return self._resolve(for_embeddings=False)

    @property
    def embedding(self) -> AIProvider:
        """Backend for embeddings."""
        return self._resolve(for_embeddings=True)

    def get(self, for_embeddings: bool = False) -> AIProvider:
        return self._resolve(for_embeddings)

    def reset(self) -> None:
        """Drop cached backends; the next use re-reads configuration."""
        with self._lock:
            self._cache.clear()
            self.fallback_reasons.clear()

    def _resolve(self, for_embeddings: bool) -> AIProvider:
        with self._lock:
            provider = self._cache.get(for_embeddings)
            if provider is None:
                provider = self._create(for_embeddings)
                self._cache[for_embeddings] = provider
            return provider

    def _create(self, for_embeddings: bool) -> AIProvider:
        role = "embedding" if for_embeddings else "main"
        backend = self.config.backend_for(for_embeddings)

        errors = self.config.validate(for_embeddings=for_embeddings)
        if errors:
            return self._fallback(role, backend, "; ".join(errors))

        if backend == "offline":
            return OfflineProvider()

        try:
            provider = self._registry.create(
                backend, self.config.provider_params(backend, for_embeddings)
            )
        except (ValueError, RuntimeError) as e:
            return self._fallback(role, backend, str(e))

        logger.info("Using %s backend for %s: %s", backend, role, provider.model_info)
        return provider

    def _fallback(self, role: str, backend: str, reason: str) -> AIProvider:
        self.fallback_reasons[role] = reason
        logger.warning(
            "AI provider '%s' unavailable for %s, falling back to offline: %s",
            backend, role, reason,
            extra={
                "event": PROVIDER_FALLBACK,
                "role": role,
                "backend": backend,
                "reason": reason,
            },
        )
        if self._events is not None:
            self._events.emit(PROVIDER_FALLBACK, role=role, backend=backend, reason=reason)
        return OfflineProvider()

    def test_provider(self, for_embeddings: bool = False) -> dict[str, Any]:
        """
        Self-test the main or embedding backend.

        Returns:
            {provider, health, config: {main_provider, embedding_provider,
            model, testing}}
        """
        provider = self._resolve(for_embeddings)
        health = provider.health_check()
        result = {
            "provider": provider.provider_type,
            "health": health,
            "config": {
                "main_provider": self.config.main_backend,
                "embedding_provider": self.config.embedding_backend,
                "model": provider.model_info,
                "testing": "embedding" if for_embeddings else "main",
            },
        }
        role = "embedding" if for_embeddings else "main"
        if role in self.fallback_reasons:
            result["fallback_reason"] = self.fallback_reasons[role]
        return result
