"""
Tests for pipeline event hooks and the logging listener.
"""

import logging

import pytest

from knowman.events import (
    COMPLETED,
    FAILED,
    RETRYING,
    PipelineEvents,
    default_events,
    log_event,
)

from conftest import RecordingListener


class TestPipelineEvents:

    def test_specific_and_wildcard_listeners(self):
        events = PipelineEvents()
        specific, everything = RecordingListener(), RecordingListener()
        events.on(COMPLETED, specific)
        events.on("*", everything)

        events.emit(COMPLETED, job_id="j1")
        events.emit(FAILED, job_id="j2")

        assert specific.events == [(COMPLETED, {"job_id": "j1"})]
        assert everything.names() == [COMPLETED, FAILED]

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError, match="Unknown pipeline event"):
            PipelineEvents().on("exploded", RecordingListener())

    def test_off(self):
        events = PipelineEvents()
        listener = events.on(COMPLETED, RecordingListener())
        events.off(COMPLETED, listener)
        events.emit(COMPLETED, job_id="j1")
        assert listener.events == []

    def test_failing_listener_is_logged(self, caplog):
        events = PipelineEvents()
        after = RecordingListener()

        def broken(event, payload):
            raise RuntimeError("bad listener")

        events.on(COMPLETED, broken)
        events.on(COMPLETED, after)
        with caplog.at_level(logging.ERROR, logger="knowman.events"):
            events.emit(COMPLETED, job_id="j1")

        assert after.names() == [COMPLETED]
        assert any("failed on completed" in r.getMessage() for r in caplog.records)


class TestLogEvent:

    def test_payload_attached_as_extra(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="knowman.events"):
            log_event(RETRYING, {
                "queue": "summarization", "job_id": "j1", "attempts": 1,
                "delay_ms": 1000, "error": "rate limited",
            })
        (record,) = caplog.records
        assert record.levelno == logging.WARNING
        assert record.event == RETRYING
        assert record.queue == "summarization"
        assert record.delay_ms == 1000
        assert "retrying in 1000ms" in record.getMessage()

    def test_failures_logged_as_errors(self, caplog):
        events = default_events()
        with caplog.at_level(logging.DEBUG, logger="knowman.events"):
            events.emit(FAILED, queue="embedding", job_id="j9", error="bad vector")
        (record,) = caplog.records
        assert record.levelno == logging.ERROR
        assert "Job j9 failed in embedding: bad vector" == record.getMessage()
