"""
Tests for the deterministic offline backend and the shared prompt helpers.
"""

from knowman.providers.base import parse_tag_list, strip_summary_preamble
from knowman.providers.offline import (
    OFFLINE_EMBEDDING_DIMENSION,
    OfflineProvider,
    offline_embedding,
    offline_summary,
    offline_tags,
)


class TestOfflineSummary:
    """Leading-sentence summaries."""

    def test_first_three_sentences(self):
        assert offline_summary("Hello. World. Foo. Bar.") == "Hello. World. Foo."

    def test_mixed_terminators(self):
        assert offline_summary("Really? Yes! Fine.") == "Really. Yes. Fine."

    def test_long_summary_truncated_with_ellipsis(self):
        content = "word " * 300 + "."
        summary = offline_summary(content, max_length=100)
        assert len(summary) == 100
        assert summary.endswith("...")

    def test_no_sentences_returns_stripped_content(self):
        assert offline_summary("   ...   ") == "..."

    def test_provider_reports_model(self):
        result = OfflineProvider().summarize("One. Two.")
        assert result.summary == "One. Two."
        assert result.model == "offline-summarizer"
        assert result.tokens_used is None


class TestOfflineTags:
    """Frequency-based tags."""

    def test_words_longer_than_three_characters(self):
        assert offline_tags("Hello. World. Foo. Bar.", "T") == ["hello", "world"]

    def test_most_frequent_first(self):
        tags = offline_tags("python python python rust rust golang")
        assert tags[:3] == ["python", "rust", "golang"]

    def test_stop_words_dropped(self):
        assert offline_tags("this that with from have python") == ["python"]

    def test_existing_tags_come_first_without_duplicates(self):
        tags = offline_tags("python python rust", existing_tags=["python", "notes"])
        assert tags == ["python", "notes", "rust"]

    def test_max_tags(self):
        content = "alpha bravo charlie delta echoes foxtrot golfer"
        assert len(offline_tags(content, max_tags=3)) == 3

    def test_confidence(self):
        result = OfflineProvider().generate_tags("python rust")
        assert result.confidence == 0.8
        assert result.model == "offline-tagger"


class TestOfflineEmbedding:
    """Hash-bucket pseudo-embeddings."""

    def test_dimension(self):
        vector = offline_embedding("Hello world, this is a test")
        assert len(vector) == OFFLINE_EMBEDDING_DIMENSION == 384

    def test_deterministic(self):
        assert offline_embedding("same text here") == offline_embedding("same text here")

    def test_different_text_differs(self):
        assert offline_embedding("apples and pears") != offline_embedding("rockets and moons")

    def test_empty_content_is_zero_vector(self):
        assert offline_embedding("") == [0.0] * 384

    def test_provider_dimension_matches_vector(self):
        provider = OfflineProvider()
        result = provider.generate_embeddings("some content")
        assert len(result.vector) == provider.embedding_dimension

    def test_health_check(self):
        assert OfflineProvider().health_check() is True


class TestResponseParsing:
    """Helpers that clean up model answers."""

    def test_parse_tag_list(self):
        text = "- Python\n* Machine Learning, 'data', , `AI`"
        assert parse_tag_list(text, 10) == ["python", "machine learning", "data", "ai"]

    def test_parse_tag_list_limit(self):
        assert parse_tag_list("a, b, c, d", 2) == ["a", "b"]

    def test_parse_tag_list_empty(self):
        assert parse_tag_list("", 5) == []

    def test_strip_summary_preamble(self):
        assert strip_summary_preamble("Here is a summary of the text: It works.") == "It works."
        assert strip_summary_preamble("Summary: Short.") == "Short."
        assert strip_summary_preamble("Plain answer.") == "Plain answer."
