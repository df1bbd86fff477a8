"""
Pure stage functions for the enrichment pipeline.

Each function takes a job's self-contained input payload (plus the backend
it needs) and returns a StageResult describing what to write onto the
knowledge item. No store reads or writes happen here, so a handler that
outlives its timeout can simply be ignored: the caller applies the result
only if it arrives in time.

Backend errors (ProviderError) propagate unchanged; the worker decides
whether to retry.
"""

import logging
import re
from typing import Any, Callable

from .errors import EmbeddingDimensionError, PermanentJobError
from .providers.base import AIProvider
from .types import ItemStatus, JobType, MergeStrategy, StageResult, StageUpdate

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 100000
DEFAULT_SUMMARY_LENGTH = 500
DEFAULT_MAX_TAGS = 5

# Mean words per sentence below this reads as "easy"
READABLE_WORDS_PER_SENTENCE = 30
READABILITY_EASY = 0.8
READABILITY_DEFAULT = 0.5

_SENTENCE_END_RE = re.compile(r"[.!?]+")


def _require(payload: dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value is None:
        raise PermanentJobError(f"Job input is missing '{key}'")
    return value


# --- Extraction ---

def extract_article_text(html: str) -> tuple[str, str | None]:
    """
    Pull readable article text and the document title out of HTML.

    Prefers <article>, then <main>, then <body>. Scripts and styles are
    dropped and whitespace collapsed to single spaces.

    Returns:
        (text, title or None)
    """
    from bs4 import BeautifulSoup

    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()

    title = None
    if soup.title and soup.title.string:
        title = soup.title.string.strip() or None

    root = soup.find("article") or soup.find("main") or soup.body or soup
    text = " ".join(root.get_text(" ").split())
    return text, title


def readability_score(text: str) -> float:
    """Crude readability: short sentences score higher."""
    words = len(text.split())
    if not words:
        return READABILITY_DEFAULT
    sentences = len(_SENTENCE_END_RE.split(text))
    if words / sentences < READABLE_WORDS_PER_SENTENCE:
        return READABILITY_EASY
    return READABILITY_DEFAULT


def process_extraction(
    payload: dict[str, Any],
    *,
    max_content_length: int = MAX_CONTENT_LENGTH,
) -> StageResult:
    """Extract article text from captured HTML. No backend call."""
    html = _require(payload, "html")
    text, extracted_title = extract_article_text(html)
    text = text[:max_content_length]
    title = extracted_title or payload.get("title")
    score = readability_score(text)

    fields: dict[str, Any] = {"raw_content": html, "readability_score": score}
    # Empty extraction keeps the content supplied at capture time
    if text:
        fields["content"] = text
    if title:
        fields["title"] = title

    return StageResult(
        job_type=JobType.EXTRACTION.value,
        update=StageUpdate(fields=fields, advance_to=ItemStatus.PROCESSING),
        output={
            "content_length": len(text),
            "title": title,
            "readability_score": score,
        },
    )


# --- AI stages ---

def process_summarization(payload: dict[str, Any], *, provider: AIProvider) -> StageResult:
    """Summarize content with the main backend."""
    result = provider.summarize(
        _require(payload, "content"),
        title=payload.get("title"),
        max_length=payload.get("max_length") or DEFAULT_SUMMARY_LENGTH,
    )
    output = {"summary": result.summary, "model": result.model}
    if result.tokens_used is not None:
        output["tokens_used"] = result.tokens_used
    return StageResult(
        job_type=JobType.SUMMARIZATION.value,
        update=StageUpdate(
            fields={"summary": result.summary},
            advance_to=ItemStatus.PROCESSED,
        ),
        output=output,
    )


def process_tagging(payload: dict[str, Any], *, provider: AIProvider) -> StageResult:
    """Generate tags; they are unioned with the item's stored tags on write."""
    existing = list(payload.get("existing_tags") or [])
    result = provider.generate_tags(
        _require(payload, "content"),
        title=payload.get("title"),
        existing_tags=existing,
        max_tags=payload.get("max_tags") or DEFAULT_MAX_TAGS,
    )
    return StageResult(
        job_type=JobType.TAGGING.value,
        update=StageUpdate(tags=list(result.tags), merge=MergeStrategy.UNION_SET),
        output={
            "tags": list(result.tags),
            "model": result.model,
            "confidence": result.confidence,
        },
    )


def process_embedding(payload: dict[str, Any], *, provider: AIProvider) -> StageResult:
    """
    Embed content with the embedding backend.

    Raises:
        EmbeddingDimensionError: Vector is empty or does not match the
            backend's declared dimension
    """
    result = provider.generate_embeddings(
        _require(payload, "content"), title=payload.get("title"),
    )
    vector = [float(v) for v in result.vector]
    expected = provider.embedding_dimension
    if not vector:
        raise EmbeddingDimensionError(f"{result.model} returned an empty embedding")
    if expected is not None and len(vector) != expected:
        raise EmbeddingDimensionError(
            f"{result.model} returned {len(vector)} dimensions, expected {expected}"
        )
    return StageResult(
        job_type=JobType.EMBEDDING.value,
        update=StageUpdate(fields={"embedding": vector}),
        output={"embedding_size": len(vector), "model": result.model},
    )


def run_stage(
    job_type: str,
    payload: dict[str, Any],
    resolver,
    *,
    max_content_length: int = MAX_CONTENT_LENGTH,
) -> StageResult:
    """Dispatch a job to its stage function, resolving the backend it needs."""
    stage = JobType(job_type)
    if stage == JobType.EXTRACTION:
        return process_extraction(payload, max_content_length=max_content_length)
    if stage == JobType.EMBEDDING:
        return process_embedding(payload, provider=resolver.embedding)
    handler: Callable[..., StageResult] = {
        JobType.SUMMARIZATION: process_summarization,
        JobType.TAGGING: process_tagging,
    }[stage]
    return handler(payload, provider=resolver.main)
