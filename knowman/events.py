"""
Pipeline observer hooks.

Workers, the queue set and the provider resolver announce what they do
through a PipelineEvents instance. Listeners are plain callables taking
(event, payload). The default listener writes each event to the log with
the payload attached as structured `extra` fields.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

ADDED = "added"
ACTIVE = "active"
COMPLETED = "completed"
RETRYING = "retrying"
FAILED = "failed"
STALLED = "stalled"
PROVIDER_FALLBACK = "provider_fallback"

EVENT_NAMES = (ADDED, ACTIVE, COMPLETED, RETRYING, FAILED, STALLED, PROVIDER_FALLBACK)

Listener = Callable[[str, dict[str, Any]], None]


class PipelineEvents:
    """Registry of event listeners.

    A failing listener is logged and skipped; it never breaks the worker
    that emitted the event.
    """

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, listener: Listener) -> Listener:
        """Subscribe a listener; "*" subscribes to every event."""
        if event != "*" and event not in EVENT_NAMES:
            raise ValueError(f"Unknown pipeline event: {event!r}")
        with self._lock:
            self._listeners[event].append(listener)
        return listener

    def off(self, event: str, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners.get(event, []):
                self._listeners[event].remove(listener)

    def emit(self, event: str, **payload: Any) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event, [])) + list(self._listeners.get("*", []))
        for listener in listeners:
            try:
                listener(event, payload)
            except Exception:
                logger.exception("Event listener %r failed on %s", listener, event)


def log_event(event: str, payload: dict[str, Any]) -> None:
    """Default listener: one log line per event."""
    extra = {"event": event, **payload}
    job = payload.get("job_id", "")
    queue = payload.get("queue", "")
    if event == FAILED:
        logger.error("Job %s failed in %s: %s", job, queue, payload.get("error"), extra=extra)
    elif event == RETRYING:
        logger.warning(
            "Job %s in %s failed (attempt %s), retrying in %dms: %s",
            job, queue, payload.get("attempts"), payload.get("delay_ms", 0),
            payload.get("error"), extra=extra,
        )
    elif event == STALLED:
        logger.warning("Recovered %s stalled job(s) in %s", payload.get("count"), queue, extra=extra)
    elif event == PROVIDER_FALLBACK:
        # The resolver already logged the warning
        logger.debug("Provider fallback recorded: %s", payload.get("reason"), extra=extra)
    elif event == COMPLETED:
        logger.info("Job %s completed in %s", job, queue, extra=extra)
    else:
        logger.debug("Job %s %s in %s", job, event, queue, extra=extra)


def default_events() -> PipelineEvents:
    """Events instance with the logging listener attached."""
    events = PipelineEvents()
    events.on("*", log_event)
    return events
