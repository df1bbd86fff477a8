"""
End-to-end tests for capture and job management through a real Pipeline.

The pipeline runs on the offline backend and is drained on the test
thread, so every result below is deterministic.
"""

import time

import pytest

from knowman.config import AIConfig, KnowmanConfig
from knowman.errors import (
    InvalidTransitionError,
    ItemNotFoundError,
    JobNotFoundError,
    ValidationError,
)
from knowman.pipeline import Pipeline
from knowman.types import CANCELLED_MESSAGE

from conftest import FlakyProvider, StubResolver


def _by_type(jobs):
    return {j.type: j for j in jobs}


class TestCapture:

    def test_plain_text_creates_three_jobs(self, pipeline):
        item, jobs = pipeline.capture("Hello. World. Foo. Bar.", "T", "alice")
        assert item.status == "processing"
        assert item.source_type == "document"
        assert [(j.type, j.priority, j.status) for j in jobs] == [
            ("summarization", 5, "pending"),
            ("tagging", 3, "pending"),
            ("embedding", 1, "pending"),
        ]
        assert all(j.knowledge_item_id == item.id and j.user_id == "alice" for j in jobs)

    def test_html_adds_extraction(self, pipeline):
        item, jobs = pipeline.capture(
            "Placeholder.", "T", "alice",
            url="https://example.com/a", html="<article>Real text.</article>",
        )
        assert item.status == "captured"
        assert item.source_type == "webpage"
        assert item.source_url == "https://example.com/a"
        assert [j.type for j in jobs][0] == "extraction"
        assert jobs[0].priority == 10
        assert jobs[0].input["html"] == "<article>Real text.</article>"

    def test_jobs_are_queued(self, pipeline):
        pipeline.capture("Hello.", "T", "alice")
        counts = pipeline.orchestrator.queue_counts()
        assert counts["summarization"]["waiting"] == 1
        assert counts["tagging"]["waiting"] == 1
        assert counts["embedding"]["waiting"] == 1
        assert counts["extraction"]["waiting"] == 0

    def test_stored_content_truncated_but_stages_get_full_text(self, pipeline):
        item, jobs = pipeline.capture("x" * 20000, "T", "alice")
        assert len(item.content) == 10000
        assert len(pipeline.store.get_item(item.id).content) == 10000
        assert [len(j.input["content"]) for j in jobs] == [20000, 20000, 20000]

    def test_reenqueue_uses_stored_content(self, pipeline):
        item, _ = pipeline.capture("x" * 20000, "T", "alice")
        jobs = pipeline.orchestrator.enqueue_stages_for(pipeline.store.get_item(item.id))
        assert [len(j.input["content"]) for j in jobs] == [10000, 10000, 10000]

    def test_metadata_kept(self, pipeline):
        item, _ = pipeline.capture("Hello.", "T", "alice", metadata={"via": "cli"})
        assert pipeline.store.get_item(item.id).metadata == {"via": "cli"}

    @pytest.mark.parametrize("content,title,user", [
        ("", "T", "alice"),
        ("Hello.", "   ", "alice"),
        ("Hello.", "T", ""),
    ])
    def test_empty_input_rejected(self, pipeline, content, title, user):
        with pytest.raises(ValidationError):
            pipeline.capture(content, title, user)
        assert pipeline.store.list_items() == []


class TestEndToEnd:
    """Capture, drain, inspect."""

    def test_plain_text_enrichment(self, pipeline):
        item, _ = pipeline.capture("Hello. World. Foo. Bar.", "T", "alice")
        pipeline.drain()

        result = pipeline.orchestrator.capture_status(item.id, "alice")
        enriched = result["knowledge_item"]
        assert enriched.summary == "Hello. World. Foo."
        assert enriched.tags == ["hello", "world"]
        assert len(enriched.embedding) == 384
        assert enriched.status == "processed"
        assert enriched.processed_at is not None
        assert all(j.status == "completed" for j in result["processing_jobs"])
        assert pipeline.store.tag_usage("alice") == {"hello": 1, "world": 1}

    def test_html_enrichment(self, pipeline):
        html = (
            "<html><head><title>Cats</title></head><body>"
            "<nav>menu</nav><article><p>Cats sleep. Cats purr.</p></article>"
            "</body></html>"
        )
        item, _ = pipeline.capture("Pending.", "Draft", "alice", html=html)
        pipeline.drain()

        enriched = pipeline.store.get_item(item.id)
        assert enriched.content == "Cats sleep. Cats purr."
        assert enriched.title == "Cats"
        assert enriched.readability_score == 0.8
        assert enriched.raw_content == html
        assert enriched.status == "processed"
        # AI stages worked from the content captured up front
        assert enriched.summary == "Pending."

    def test_recapture_does_not_duplicate_tags(self, pipeline):
        item, _ = pipeline.capture("Python python rust.", "Langs", "alice")
        pipeline.drain()
        first = pipeline.store.get_item(item.id).tags

        jobs = pipeline.orchestrator.enqueue_stages_for(pipeline.store.get_item(item.id))
        assert [j.type for j in jobs] == ["summarization", "tagging", "embedding"]
        pipeline.drain()
        assert pipeline.store.get_item(item.id).tags == first
        assert set(pipeline.store.tag_usage("alice").values()) == {1}

    def test_status_overview(self, pipeline):
        pipeline.capture("Hello. World.", "T", "alice")
        pipeline.drain()
        pipeline.capture("Another.", "T2", "bob")

        overview = pipeline.orchestrator.status_overview()
        assert overview["summary"] == {
            "total": 6, "pending": 3, "processing": 0, "completed": 3, "failed": 0,
        }
        assert len(overview["recent_jobs"]) == 6
        assert {q["name"] for q in overview["queue_stats"]} == {
            "extraction", "summarization", "tagging", "embedding",
        }
        alice = pipeline.orchestrator.status_overview("alice")
        assert alice["summary"]["total"] == 3
        assert alice["summary"]["completed"] == 3


class TestJobManagement:

    def test_get_job_scoped_to_user(self, pipeline):
        _, jobs = pipeline.capture("Hello.", "T", "alice")
        assert pipeline.orchestrator.get_job(jobs[0].id, "alice").id == jobs[0].id
        with pytest.raises(JobNotFoundError):
            pipeline.orchestrator.get_job(jobs[0].id, "bob")
        with pytest.raises(JobNotFoundError):
            pipeline.orchestrator.get_job("missing")

    def test_cancel_pending(self, pipeline):
        _, jobs = pipeline.capture("Hello.", "T", "alice")
        job = pipeline.orchestrator.cancel(jobs[0].id)
        assert job.status == "failed"
        assert job.error == CANCELLED_MESSAGE
        assert pipeline.orchestrator.queue_counts()["summarization"]["waiting"] == 0

    def test_cancel_completed_rejected(self, pipeline):
        _, jobs = pipeline.capture("Hello.", "T", "alice")
        pipeline.drain()
        with pytest.raises(InvalidTransitionError, match="completed"):
            pipeline.orchestrator.cancel(jobs[0].id)

    def test_retry_requires_failed(self, pipeline):
        _, jobs = pipeline.capture("Hello.", "T", "alice")
        with pytest.raises(InvalidTransitionError, match="pending"):
            pipeline.orchestrator.retry(jobs[0].id)

    def test_retry_cancelled_job(self, pipeline):
        item, jobs = pipeline.capture("Hello. World.", "T", "alice")
        tagging = _by_type(jobs)["tagging"]
        pipeline.orchestrator.cancel(tagging.id)
        pipeline.drain()
        assert pipeline.store.get_item(item.id).tags == []

        pipeline.orchestrator.retry(tagging.id)
        pipeline.drain()
        assert pipeline.store.get_job(tagging.id).status == "completed"
        assert pipeline.store.get_item(item.id).tags == ["hello", "world"]

    def test_retry_failed_summarization(self, tmp_path):
        config = KnowmanConfig(data_dir=tmp_path / "data", ai=AIConfig())
        resolver = StubResolver(main=FlakyProvider(failures=1))
        with Pipeline(config=config, resolver=resolver, ops_log=False) as pipeline:
            item, jobs = pipeline.capture("Hello. World. Foo. Bar.", "T", "alice")
            summarization = _by_type(jobs)["summarization"]
            # Simulate a run that already exhausted its attempts
            pipeline.store.mark_processing(summarization.id)
            pipeline.store.mark_failed(summarization.id, "rate limited")
            pipeline.queues.remove("summarization", summarization.id)
            pipeline.drain()
            assert pipeline.store.get_job(summarization.id).status == "failed"

            pipeline.orchestrator.retry(summarization.id)
            # First call fails (retried after 1s), second succeeds
            pipeline.drain(max_wait=10)

            job = pipeline.store.get_job(summarization.id)
            assert job.status == "completed"
            assert job.attempts == 2
            assert pipeline.store.get_item(item.id).summary == "Hello. World. Foo."


class TestListing:

    def test_filters_and_pagination(self, pipeline):
        for i in range(3):
            pipeline.capture(f"Item {i}.", f"T{i}", "alice")
        pipeline.capture("Other.", "T", "bob")

        page = pipeline.orchestrator.list_jobs(user_id="alice", limit=4)
        assert page["total"] == 9
        assert len(page["jobs"]) == 4
        assert page["has_more"] is True

        last = pipeline.orchestrator.list_jobs(user_id="alice", limit=4, offset=8)
        assert len(last["jobs"]) == 1
        assert last["has_more"] is False

        tagging = pipeline.orchestrator.list_jobs(type="tagging", status="pending")
        assert tagging["total"] == 4

    def test_filter_by_item(self, pipeline):
        item, _ = pipeline.capture("Hello.", "T", "alice")
        pipeline.capture("Other.", "T", "alice")
        page = pipeline.orchestrator.list_jobs(knowledge_item_id=item.id)
        assert page["total"] == 3

    @pytest.mark.parametrize("kwargs", [
        {"status": "running"},
        {"type": "transcription"},
        {"limit": 0},
        {"offset": -1},
    ])
    def test_invalid_filters(self, pipeline, kwargs):
        with pytest.raises(ValidationError):
            pipeline.orchestrator.list_jobs(**kwargs)


class TestItemStatus:

    def test_capture_status_scoped(self, pipeline):
        item, _ = pipeline.capture("Hello.", "T", "alice")
        result = pipeline.orchestrator.capture_status(item.id)
        assert result["knowledge_item"].id == item.id
        assert len(result["processing_jobs"]) == 3
        with pytest.raises(ItemNotFoundError):
            pipeline.orchestrator.capture_status(item.id, "bob")


class TestCleanup:

    def test_default_keeps_recent_jobs(self, pipeline):
        pipeline.capture("Hello.", "T", "alice")
        pipeline.drain()
        assert pipeline.orchestrator.cleanup() == 0

    def test_zero_days_deletes_finished_only(self, pipeline):
        pipeline.capture("Hello.", "T", "alice")
        pipeline.drain()
        pipeline.capture("Later.", "T", "alice")
        time.sleep(0.01)

        assert pipeline.orchestrator.cleanup(0) == 3
        remaining = pipeline.orchestrator.list_jobs()
        assert remaining["total"] == 3
        assert all(j.status == "pending" for j in remaining["jobs"])

    def test_scoped_to_user(self, pipeline):
        pipeline.capture("Hello.", "T", "alice")
        pipeline.capture("Hello.", "T", "bob")
        pipeline.drain()
        time.sleep(0.01)
        assert pipeline.orchestrator.cleanup(0, user_id="bob") == 3
        assert pipeline.orchestrator.list_jobs(user_id="alice")["total"] == 3

    def test_negative_days_rejected(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.orchestrator.cleanup(-1)
