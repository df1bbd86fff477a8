"""
Error types and error logging for knowman.

The pipeline distinguishes errors by what retrying can achieve:
ProviderError (transient, retried per queue policy) versus
PermanentJobError (failed immediately). Configuration problems never
reach callers; the provider resolver falls back to the offline backend.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class KnowmanError(Exception):
    """Base class for knowman errors."""


class ConfigurationError(KnowmanError):
    """Invalid or incomplete configuration for a backend."""


class ProviderError(KnowmanError):
    """A backend call failed (network, auth, rate limit, bad response).

    Transient from the pipeline's point of view: the job is retried
    according to its queue's policy.
    """

    def __init__(self, message: str, *, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class StageTimeoutError(ProviderError):
    """A stage exceeded the per-job timeout."""


class PermanentJobError(KnowmanError):
    """A job failure that retrying cannot fix."""


class ItemNotFoundError(PermanentJobError):
    """The knowledge item a job targets no longer exists."""

    def __init__(self, item_id: str):
        super().__init__(f"Knowledge item {item_id} not found")
        self.item_id = item_id


class EmbeddingDimensionError(PermanentJobError):
    """A backend returned a vector of the wrong length for its model."""


class JobNotFoundError(KnowmanError):
    """No job record with the given id."""

    def __init__(self, job_id: str):
        super().__init__(f"Processing job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(KnowmanError):
    """A requested job state change is not allowed from its current state."""


class ValidationError(KnowmanError, ValueError):
    """Invalid capture input."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting KNOWMAN_DATA_DIR."""
    data_dir = os.environ.get("KNOWMAN_DATA_DIR")
    if data_dir:
        return Path(data_dir) / "knowman-errors.log"
    return Path.home() / ".knowman" / "knowman-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
