"""
AI backends for the enrichment stages.

Every backend implements the AIProvider protocol: summaries, tags,
embeddings and a health check. Backends are created by name from the
registry; the resolver picks the configured ones and falls back to the
offline backend when a backend cannot be constructed.

Concrete backends are auto-registered when this module is imported.
"""

from .base import (
    AIProvider,
    EmbeddingResult,
    ProviderRegistry,
    SummarizationResult,
    TaggingResult,
    get_registry,
)

# Import concrete providers to trigger registration
from . import offline
from . import openai
from . import anthropic
from . import gemini
from . import llamacpp

from .offline import OfflineProvider
from .resolver import ProviderResolver

__all__ = [
    # Protocol
    "AIProvider",
    # Data types
    "SummarizationResult",
    "TaggingResult",
    "EmbeddingResult",
    # Registry
    "ProviderRegistry",
    "get_registry",
    "ProviderResolver",
    "OfflineProvider",
]
