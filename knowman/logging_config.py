"""
Logging configuration for knowman.

HTTP and vendor SDK loggers are noisy at INFO; keep them quiet by default.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Third-party loggers that chatter about every request
_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "anthropic", "google_genai", "urllib3")


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore", category=DeprecationWarning)
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
    else:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.NOTSET)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("knowman").setLevel(logging.DEBUG)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)


def configure_console_log(level: int = logging.INFO):
    """Send knowman's own log records to stderr (used by the worker command)."""
    knowman_logger = logging.getLogger("knowman")
    if any(getattr(h, "_knowman_console", False) for h in knowman_logger.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler._knowman_console = True  # type: ignore[attr-defined]
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    ))
    knowman_logger.addHandler(handler)
    if knowman_logger.level == logging.NOTSET or knowman_logger.level > level:
        knowman_logger.setLevel(level)


def configure_ops_log(data_dir):
    """Configure a persistent operations log for a knowman data directory.

    Writes to {data_dir}/knowman-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    log_path = Path(data_dir) / "knowman-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    knowman_logger = logging.getLogger("knowman")
    knowman_logger.addHandler(handler)
    # Ensure knowman logger allows INFO through even in quiet mode
    if knowman_logger.level == logging.NOTSET or knowman_logger.level > logging.INFO:
        knowman_logger.setLevel(logging.INFO)

    return handler
