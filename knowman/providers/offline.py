"""
Deterministic offline backend.

Used when no real backend is configured (or configuration is broken).
Never touches the network, and the same input always produces the same
output, which makes it the backend of choice for tests.
"""

import re
from collections import Counter
from typing import Optional

from .base import EmbeddingResult, SummarizationResult, TaggingResult, get_registry

OFFLINE_EMBEDDING_DIMENSION = 384

MAX_SUMMARY_SENTENCES = 3
MAX_SUMMARY_LENGTH = 500
EMBEDDING_TEXT_LIMIT = 1000

STOP_WORDS = frozenset({
    "that", "this", "with", "from", "have", "what", "when",
    "where", "which", "will", "your", "they", "their",
})

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
# ASCII word boundaries so tokenization doesn't depend on locale
_WORD_SPLIT_RE = re.compile(r"\W+", re.ASCII)


def _tokens(text: str, min_length: int) -> list[str]:
    """Lowercase word tokens strictly longer than min_length."""
    return [w for w in _WORD_SPLIT_RE.split(text.lower()) if len(w) > min_length]


def offline_summary(content: str, max_length: int = MAX_SUMMARY_LENGTH) -> str:
    """Leading sentences (at most three), hard-truncated with an ellipsis."""
    limit = max_length if max_length and max_length > 3 else MAX_SUMMARY_LENGTH
    sentences = [s.strip() for s in _SENTENCE_SPLIT_RE.split(content)]
    sentences = [s for s in sentences if s][:MAX_SUMMARY_SENTENCES]
    if not sentences:
        return content.strip()[:limit]
    summary = ". ".join(sentences) + "."
    if len(summary) > limit:
        summary = summary[:limit - 3] + "..."
    return summary


def offline_tags(
    content: str,
    title: Optional[str] = None,
    existing_tags: Optional[list[str]] = None,
    max_tags: int = 5,
) -> list[str]:
    """Most frequent non-stop-words, appended after the existing tags."""
    words = [
        w for w in _tokens(f"{title or ''} {content}", 3)
        if w not in STOP_WORDS
    ]
    # most_common is stable: ties keep first-appearance order
    top = [word for word, _ in Counter(words).most_common(max_tags)]
    merged: list[str] = []
    for tag in list(existing_tags or []) + top:
        if tag not in merged:
            merged.append(tag)
    return merged


def offline_embedding(content: str) -> list[float]:
    """Hash-bucket pseudo-embedding over unique tokens of the leading text.

    Only good for placeholder similarity, not semantics.
    """
    unique = list(dict.fromkeys(_tokens(content[:EMBEDDING_TEXT_LIMIT], 2)))
    vector = [0.0] * OFFLINE_EMBEDDING_DIMENSION
    for i, word in enumerate(unique):
        bucket = (sum(ord(c) for c in word) + i) % OFFLINE_EMBEDDING_DIMENSION
        vector[bucket] = (vector[bucket] + 1) / (len(unique) + 1)
    return vector


class OfflineProvider:
    """Network-free backend with deterministic summaries, tags and vectors."""

    provider_type = "offline"
    model_info = "offline-provider-v1.0"
    embedding_dimension = OFFLINE_EMBEDDING_DIMENSION

    def summarize(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        max_length: int = MAX_SUMMARY_LENGTH,
    ) -> SummarizationResult:
        return SummarizationResult(
            summary=offline_summary(content, max_length),
            model="offline-summarizer",
        )

    def generate_tags(
        self,
        content: str,
        *,
        title: Optional[str] = None,
        existing_tags: Optional[list[str]] = None,
        max_tags: int = 5,
    ) -> TaggingResult:
        return TaggingResult(
            tags=offline_tags(content, title, existing_tags, max_tags),
            model="offline-tagger",
            confidence=0.8,
        )

    def generate_embeddings(
        self,
        content: str,
        *,
        title: Optional[str] = None,
    ) -> EmbeddingResult:
        return EmbeddingResult(
            vector=offline_embedding(content),
            model="offline-embedder",
        )

    def health_check(self) -> bool:
        return True


# Register providers
_registry = get_registry()
_registry.register("offline", OfflineProvider)
