"""Pipeline configuration with environment overrides."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "RAG_"


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_from_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        LOGGER.warning("Invalid integer for %s: %s; using default %s", name, value, default)
        return default


def _float_from_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        LOGGER.warning("Invalid float for %s: %s; using default %s", name, value, default)
        return default


@dataclass(slots=True)
class PipelineConfig:
    """Retry, batching and token-budget knobs shared by every stage."""

    max_retries: int = 3
    initial_backoff_seconds: float = 2.0
    batch_size: int = 2
    inter_batch_delay_seconds: float = 3.0
    call_timeout_seconds: float = 120.0
    synthesis_group_count: int = 3
    compression_trigger_tokens: int = 10_000
    compression_section_chars: int = 15_000
    truncation_fallback_chars: int = 12_000
    section_token_limit: int = 12_000
    prompt_token_limit: int = 20_000
    total_token_limit: int = 36_000
    cache_ttl_seconds: float = 24 * 60 * 60

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError("batch_size must be a positive integer")
        if self.max_retries < 0:
            raise ValueError("max_retries must be a non-negative integer")
        if self.synthesis_group_count <= 0:
            raise ValueError("synthesis_group_count must be a positive integer")

    def backoff_delay(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count`` (zero based)."""

        return self.initial_backoff_seconds * (2**retry_count)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build a config from ``RAG_*`` variables, e.g. ``RAG_BATCH_SIZE``."""

        defaults = cls()
        values: dict[str, object] = {}
        for field in fields(cls):
            env_name = f"{ENV_PREFIX}{field.name.upper()}"
            current = getattr(defaults, field.name)
            if isinstance(current, int):
                values[field.name] = _int_from_env(env_name, current)
            else:
                values[field.name] = _float_from_env(env_name, float(current))
        return cls(**values)


@dataclass(slots=True)
class CollaboratorSettings:
    """Connection settings for the remote collaborator endpoints."""

    base_url: str | None
    token: str | None
    timeout_seconds: float
    use_mock: bool

    @classmethod
    def from_env(cls) -> "CollaboratorSettings":
        base_url = os.getenv("RAG_COLLABORATOR_URL") or None
        selected = os.getenv("RAG_COLLABORATOR", "").strip().lower()
        return cls(
            base_url=base_url,
            token=os.getenv("RAG_COLLABORATOR_TOKEN") or None,
            timeout_seconds=_float_from_env("RAG_COLLABORATOR_TIMEOUT", 120.0),
            use_mock=selected == "mock" or _env_flag("RAG_COLLABORATOR_MOCK") or base_url is None,
        )


def cache_dir_from_env() -> str:
    return os.getenv("RAG_CACHE_DIR", "rag_cache")


__all__ = ["CollaboratorSettings", "PipelineConfig", "cache_dir_from_env"]
