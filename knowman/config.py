"""
Configuration management for knowman.

Settings come from three places, later ones winning:
1. Built-in defaults
2. knowman.toml in the data directory
3. Environment variables (AI_PROVIDER, OPENAI_API_KEY, PROCESSING_WORKERS, ...)

Loading never fails on bad values. Problems are collected and reported
by validate(), and the provider resolver reacts to them by falling back
to the offline backend instead of refusing to start.
"""

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore


CONFIG_FILENAME = "knowman.toml"
CONFIG_VERSION = 1
DEFAULT_DATA_DIR = Path.home() / ".knowman"

BACKENDS = ("openai", "anthropic", "gemini", "llamacpp", "offline")

# Older deployments call the offline backend "mock"
BACKEND_ALIASES = {"mock": "offline"}

# Backends that cannot produce embeddings
NO_EMBEDDING_BACKENDS = frozenset({"anthropic"})

# Attributes never written back to knowman.toml; credentials belong in the environment
_SECRET_FIELDS = frozenset({"openai_api_key", "anthropic_api_key", "gemini_api_key"})


def normalize_backend(name: Optional[str]) -> Optional[str]:
    """Lowercase a backend name and resolve aliases."""
    if name is None:
        return None
    name = name.strip().lower()
    if not name:
        return None
    return BACKEND_ALIASES.get(name, name)


@dataclass
class AIConfig:
    """Backend selection and per-backend knobs."""
    provider: str = "offline"
    embedding_provider: Optional[str] = None

    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.7
    openai_max_tokens: int = 1000
    openai_embedding_model: str = "text-embedding-3-small"

    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-3-haiku-20240307"
    anthropic_temperature: float = 0.7
    anthropic_max_tokens: int = 1000

    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash"
    gemini_temperature: float = 0.7
    gemini_max_output_tokens: int = 1000
    gemini_embedding_model: str = "text-embedding-004"

    llamacpp_base_url: str = "http://localhost:8080"
    llamacpp_model: str = "llama2"
    llamacpp_temperature: float = 0.8
    llamacpp_max_tokens: int = 1000
    llamacpp_embedding_model: Optional[str] = None

    request_timeout: int = 30000  # milliseconds
    max_retries: int = 3
    enable_logging: bool = True

    # Values that could not be parsed while loading
    load_errors: list[str] = field(default_factory=list)

    @property
    def main_backend(self) -> str:
        return normalize_backend(self.provider) or "offline"

    @property
    def embedding_backend(self) -> str:
        return normalize_backend(self.embedding_provider) or self.main_backend

    def backend_for(self, for_embeddings: bool = False) -> str:
        return self.embedding_backend if for_embeddings else self.main_backend

    def validation_errors(self, backend: str) -> list[str]:
        """Problems that prevent constructing the given backend."""
        errors: list[str] = []
        if backend not in BACKENDS:
            errors.append(
                f"Unknown AI provider '{backend}'. "
                f"Expected one of: {', '.join(BACKENDS)}"
            )
            return errors

        if backend == "openai" and not self.openai_api_key:
            errors.append("OPENAI_API_KEY is required when AI_PROVIDER=openai")
        elif backend == "anthropic" and not self.anthropic_api_key:
            errors.append("ANTHROPIC_API_KEY is required when AI_PROVIDER=anthropic")
        elif backend == "gemini" and not self.gemini_api_key:
            errors.append("GEMINI_API_KEY is required when AI_PROVIDER=gemini")
        elif backend == "llamacpp" and not self.llamacpp_base_url:
            errors.append("LLAMACPP_BASE_URL is required when AI_PROVIDER=llamacpp")

        for attr, (low, high) in _RANGES.items():
            if _section_of(attr) not in (backend, "ai"):
                continue
            value = getattr(self, attr)
            if value is not None and not (low <= value <= high):
                errors.append(
                    f"{_env_name(attr)}={value} out of range [{low}, {high}]"
                )
        return errors

    def validate(self, for_embeddings: bool = False) -> list[str]:
        """
        Validate configuration for the main or the embedding backend.

        Returns:
            List of error strings; empty when valid.
        """
        backend = self.backend_for(for_embeddings)
        errors = list(self.load_errors)
        errors.extend(self.validation_errors(backend))
        if for_embeddings and backend in NO_EMBEDDING_BACKENDS:
            errors.append(f"AI provider '{backend}' does not support embeddings")
        return errors

    def provider_params(self, backend: str, for_embeddings: bool = False) -> dict[str, Any]:
        """Constructor keyword arguments for a backend."""
        timeout = self.request_timeout / 1000.0
        if backend == "openai":
            return {
                "api_key": self.openai_api_key,
                "base_url": self.openai_base_url,
                "model": self.openai_model,
                "embedding_model": self.openai_embedding_model,
                "temperature": self.openai_temperature,
                "max_tokens": self.openai_max_tokens,
                "timeout": timeout,
                "max_retries": self.max_retries,
                "enable_logging": self.enable_logging,
            }
        if backend == "anthropic":
            return {
                "api_key": self.anthropic_api_key,
                "model": self.anthropic_model,
                "temperature": self.anthropic_temperature,
                "max_tokens": self.anthropic_max_tokens,
                "timeout": timeout,
                "max_retries": self.max_retries,
                "enable_logging": self.enable_logging,
            }
        if backend == "gemini":
            return {
                "api_key": self.gemini_api_key,
                "model": self.gemini_model,
                "embedding_model": self.gemini_embedding_model,
                "temperature": self.gemini_temperature,
                "max_output_tokens": self.gemini_max_output_tokens,
                "timeout": timeout,
                "enable_logging": self.enable_logging,
            }
        if backend == "llamacpp":
            embedding_model = self.llamacpp_embedding_model or self.llamacpp_model
            return {
                "base_url": self.llamacpp_base_url,
                "model": embedding_model if for_embeddings else self.llamacpp_model,
                "temperature": self.llamacpp_temperature,
                "max_tokens": self.llamacpp_max_tokens,
                "timeout": timeout,
                "enable_logging": self.enable_logging,
            }
        return {}


_RANGES: dict[str, tuple[float, float]] = {
    "openai_temperature": (0, 2),
    "openai_max_tokens": (1, 4000),
    "anthropic_temperature": (0, 1),
    "anthropic_max_tokens": (1, 4096),
    "gemini_temperature": (0, 1),
    "gemini_max_output_tokens": (1, 8192),
    "llamacpp_temperature": (0, 2),
    "llamacpp_max_tokens": (1, 4000),
    "request_timeout": (1000, 60000),
    "max_retries": (0, 5),
}

# Environment names that do not follow the SECTION_KEY pattern
_ENV_OVERRIDES = {
    "provider": "AI_PROVIDER",
    "embedding_provider": "EMBEDDING_PROVIDER",
    "request_timeout": "AI_REQUEST_TIMEOUT",
    "max_retries": "AI_MAX_RETRIES",
    "enable_logging": "AI_ENABLE_LOGGING",
}


def _section_of(attr: str) -> str:
    """TOML section holding an AIConfig attribute: backend name or 'ai'."""
    prefix = attr.split("_", 1)[0]
    if prefix in BACKENDS and prefix != "offline":
        return prefix
    return "ai"


def _toml_key(attr: str) -> str:
    section = _section_of(attr)
    if section == "ai":
        return attr
    return attr[len(section) + 1:]


def _env_name(attr: str) -> str:
    return _ENV_OVERRIDES.get(attr, attr.upper())


def _coerce(raw: Any, template: Any) -> Any:
    """Convert a raw TOML/env value to the type of the field's default."""
    if isinstance(template, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(template, int):
        return int(raw)
    if isinstance(template, float):
        return float(raw)
    return str(raw)


@dataclass
class KnowmanConfig:
    """Complete configuration: AI backends plus processing settings."""
    data_dir: Path
    ai: AIConfig = field(default_factory=AIConfig)
    version: int = CONFIG_VERSION

    workers: int = 2
    processing_timeout: int = 30000  # milliseconds, per job
    max_content_length: int = 100000
    # Processing-setting problems found while loading; never affect backends
    load_errors: list[str] = field(default_factory=list)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.data_dir / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        """SQLite database for items, jobs and tags."""
        return self.data_dir / "knowman.db"

    @property
    def broker_path(self) -> Path:
        """SQLite database backing the job queues."""
        return self.data_dir / "queue.db"

    @property
    def processing_timeout_seconds(self) -> float:
        return self.processing_timeout / 1000.0

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def _apply_ai_values(ai: AIConfig, values: Mapping[str, Any], source: str) -> None:
    """Set AIConfig attributes from {attr: raw}, collecting parse errors."""
    defaults = AIConfig()
    for attr, raw in values.items():
        if raw is None or raw == "":
            continue
        try:
            setattr(ai, attr, _coerce(raw, getattr(defaults, attr)))
        except (TypeError, ValueError):
            ai.load_errors.append(f"Invalid value for {source}{attr}: {raw!r}")


def _ai_values_from_toml(data: dict) -> dict[str, Any]:
    values = {}
    for f in fields(AIConfig):
        if f.name == "load_errors":
            continue
        section = data.get(_section_of(f.name), {})
        key = _toml_key(f.name)
        if key in section:
            values[f.name] = section[key]
    return values


def _ai_values_from_env(environ: Mapping[str, str]) -> dict[str, Any]:
    values = {}
    for f in fields(AIConfig):
        if f.name == "load_errors":
            continue
        name = _env_name(f.name)
        if name in environ:
            values[f.name] = environ[name]
    return values


def resolve_data_dir(data_dir: Optional[Path] = None,
                     environ: Optional[Mapping[str, str]] = None) -> Path:
    """Data directory: explicit argument, KNOWMAN_DATA_DIR, or ~/.knowman."""
    if data_dir is not None:
        return Path(data_dir)
    env = os.environ if environ is None else environ
    if env.get("KNOWMAN_DATA_DIR"):
        return Path(env["KNOWMAN_DATA_DIR"]).expanduser()
    return DEFAULT_DATA_DIR


def load_config(
    data_dir: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> KnowmanConfig:
    """
    Load configuration from knowman.toml (if present) and the environment.

    Args:
        data_dir: Data directory; defaults to KNOWMAN_DATA_DIR or ~/.knowman
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ValueError: If the config file version is newer than supported
    """
    env = os.environ if environ is None else environ
    path = resolve_data_dir(data_dir, env)
    config = KnowmanConfig(data_dir=path)

    data: dict = {}
    if config.config_path.exists():
        with open(config.config_path, "rb") as f:
            data = tomllib.load(f)
        version = data.get("knowman", {}).get("version", 1)
        if version > CONFIG_VERSION:
            raise ValueError(
                f"Config version {version} is newer than supported ({CONFIG_VERSION})"
            )

    _apply_ai_values(config.ai, _ai_values_from_toml(data), "knowman.toml ")
    _apply_ai_values(config.ai, _ai_values_from_env(env), "env ")

    processing = data.get("processing", {})
    for attr, env_name in (
        ("workers", "PROCESSING_WORKERS"),
        ("processing_timeout", "PROCESSING_TIMEOUT"),
        ("max_content_length", "MAX_CONTENT_LENGTH"),
    ):
        raw = env.get(env_name, processing.get(attr.replace("processing_", "")))
        if raw is None or raw == "":
            continue
        try:
            setattr(config, attr, int(raw))
        except (TypeError, ValueError):
            config.load_errors.append(f"Invalid value for {env_name}: {raw!r}")

    if config.workers < 1:
        config.load_errors.append(f"PROCESSING_WORKERS must be >= 1 (got {config.workers})")
        config.workers = 1

    return config


def save_config(config: KnowmanConfig) -> None:
    """
    Save configuration to the data directory.

    API keys are never written; they must come from the environment.
    Creates the directory if it doesn't exist.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    config.data_dir.mkdir(parents=True, exist_ok=True)

    data: dict[str, dict[str, Any]] = {
        "knowman": {"version": config.version},
        "processing": {
            "workers": config.workers,
            "timeout": config.processing_timeout,
            "max_content_length": config.max_content_length,
        },
    }
    for f in fields(AIConfig):
        if f.name == "load_errors" or f.name in _SECRET_FIELDS:
            continue
        value = getattr(config.ai, f.name)
        if value is None:
            continue
        data.setdefault(_section_of(f.name), {})[_toml_key(f.name)] = value

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)
