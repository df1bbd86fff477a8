"""
Base provider protocol and registry.

Every AI backend answers the same capability interface (summarize, tag,
embed, health check) so pipeline stages never care which vendor is
configured. Using Protocol for structural subtyping - no explicit
inheritance required.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------

@dataclass
class SummarizationResult:
    summary: str
    model: str
    tokens_used: Optional[int] = None


@dataclass
class TaggingResult:
    tags: list[str]
    model: str
    confidence: Optional[float] = None


@dataclass
class EmbeddingResult:
    vector: list[float] = field(default_factory=list)
    model: str = ""


# -----------------------------------------------------------------------------
# Provider protocol
# -----------------------------------------------------------------------------

@runtime_checkable
class AIProvider(Protocol):
    """
    Uniform capability interface over AI backends.

    Implementations must let backend failures propagate (as ProviderError)
    so the job queue can retry them; only the resolver decides to fall
    back, and only for configuration problems.

    Example implementation:
        class EchoProvider:
            provider_type = "echo"
            model_info = "echo-1"
            embedding_dimension = 3

            def summarize(self, content, *, title=None, max_length=500):
                return SummarizationResult(content[:max_length], "echo-1")

            def generate_tags(self, content, *, title=None,
                              existing_tags=None, max_tags=5):
                return TaggingResult(list(existing_tags or []), "echo-1")

            def generate_embeddings(self, content, *, title=None):
                return EmbeddingResult([0.0, 0.0, 0.0], "echo-1")

            def health_check(self):
                return True
    """

    @property
    def provider_type(self) -> str:
        """Backend identifier ("openai", "offline", ...)."""
        ...

    @property
    def model_info(self) -> str:
        """Human-readable model description."""
        ...

    @property
    def embedding_dimension(self) -> Optional[int]:
        """
        Length of vectors from generate_embeddings, if the model declares one.

        None means the backend cannot know in advance (e.g. a local server
        with an arbitrary model loaded).
        """
        ...

    def summarize(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        max_length: int = 500,
    ) -> SummarizationResult:
        """
        Generate a summary of the content.

        Args:
            content: The full document content
            title: Optional document title for context
            max_length: Approximate maximum length in characters
        """
        ...

    def generate_tags(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        existing_tags: Optional[list[str]] = None,
        max_tags: int = 5,
    ) -> TaggingResult:
        """
        Generate tags for the content.

        Returned tags are lowercase strings. Backends may include the
        existing tags in the result; callers merge and de-duplicate.
        """
        ...

    def generate_embeddings(
        self,
        content: str,
        *,
        title: Optional[str] = None,
    ) -> EmbeddingResult:
        """Generate an embedding vector for the content."""
        ...

    def health_check(self) -> bool:
        """Cheap real or synthetic call; True when the backend answers."""
        ...


# -----------------------------------------------------------------------------
# Prompts shared by the LLM-backed providers
# -----------------------------------------------------------------------------

SUMMARIZATION_SYSTEM_PROMPT = (
    "You are a helpful assistant that creates concise, accurate summaries "
    "of text content."
)

TAGGING_SYSTEM_PROMPT = (
    "You are a helpful assistant that analyzes text content and generates "
    "relevant, concise tags."
)

# Content limits sent to remote models
SUMMARY_CONTENT_LIMIT = 8000
TAGGING_CONTENT_LIMIT = 4000
EMBEDDING_CONTENT_LIMIT = 8000


def build_summarization_prompt(content: str, title: Optional[str], max_length: int) -> str:
    """Build the user prompt for summarization."""
    return (
        "Please summarize the following content in a concise way. "
        "Focus on the main points and key insights.\n\n"
        f"Title: {title or 'Untitled'}\n\n"
        f"Content:\n{content[:SUMMARY_CONTENT_LIMIT]}\n\n"
        "Provide a summary that captures the essence of the content in "
        f"{max_length} characters or less."
    )


def build_tagging_prompt(
    content: str,
    title: Optional[str],
    existing_tags: Optional[list[str]],
    max_tags: int,
) -> str:
    """Build the user prompt for tag generation."""
    existing = ", ".join(existing_tags) if existing_tags else "None"
    return (
        "Analyze the following content and generate relevant tags. "
        "Consider the main topics, themes, and key concepts.\n\n"
        f"Title: {title or 'Untitled'}\n\n"
        f"Content:\n{content[:TAGGING_CONTENT_LIMIT]}\n\n"
        f"Existing tags (if any): {existing}\n\n"
        f"Generate {max_tags} relevant tags. Return only a comma-separated "
        "list of tags, no explanations."
    )


def embedding_text(content: str, title: Optional[str]) -> str:
    """Text sent to an embedding model: title line plus content, truncated."""
    text = f"{title}\n\n{content}" if title else content
    return text[:EMBEDDING_CONTENT_LIMIT]


_TAG_SPLIT_RE = re.compile(r"[,\n]")


def parse_tag_list(text: str, max_tags: int) -> list[str]:
    """
    Parse a model's comma-separated tag answer.

    Strips list markers, quotes and whitespace; lowercases; drops empties.
    """
    tags = []
    for raw in _TAG_SPLIT_RE.split(text or ""):
        tag = raw.strip().strip("-*#\"'`").strip().lower()
        if tag:
            tags.append(tag)
    return tags[:max_tags]


def strip_summary_preamble(text: str) -> str:
    """
    Remove common LLM preambles from summaries.

    Many models add introductory phrases despite instructions not to.
    """
    preambles = [
        r"^here is a summary[^:]*[:.]\s*",
        r"^here is a concise summary[^:]*:\s*",
        r"^here's a summary[^:]*:\s*",
        r"^summary:\s*",
    ]
    result = text.strip()
    for pattern in preambles:
        result = re.sub(pattern, "", result, flags=re.IGNORECASE)
    return result


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating AI backends.

    Backends register by name and are instantiated from configuration,
    so AI_PROVIDER=gemini needs no code change.

    Example:
        registry = ProviderRegistry()
        registry.register("offline", OfflineProvider)
        provider = registry.create("offline")
    """

    def __init__(self):
        self._providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily import backend modules so they register themselves.

        The modules only import vendor SDKs inside constructors, so the
        imports are cheap and always succeed.
        """
        if self._lazy_loaded:
            return
        self._lazy_loaded = True

        from . import offline, openai, anthropic, gemini, llamacpp  # noqa: F401

    def register(self, name: str, provider_class: type) -> None:
        """Register a backend class."""
        self._providers[name] = provider_class

    def create(self, name: str, params: dict | None = None) -> AIProvider:
        """
        Create a backend instance.

        Raises:
            ValueError: Unknown backend name
            RuntimeError: Backend constructor failed (missing SDK, bad params)
        """
        self._ensure_providers_loaded()
        if name not in self._providers:
            available = ", ".join(self._providers.keys()) or "none"
            raise ValueError(
                f"Unknown AI provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return self._providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create AI provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e
        except Exception as e:
            raise RuntimeError(
                f"Failed to create AI provider '{name}': {e}"
            ) from e

    def list_providers(self) -> list[str]:
        """List registered backend names."""
        self._ensure_providers_loaded()
        return list(self._providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
