"""Content-addressed, phase-keyed cache for expensive pipeline stages.

One JSON file is kept per document fingerprint and every save overwrites it,
so only the most recently saved phase survives for a given document. Entries
older than the TTL, entries saved under a different phase and entries whose
payload no longer decodes are all reported as a miss. Storage errors never
escape this module: caching is an optimisation, not a correctness
dependency.
"""
from __future__ import annotations

import base64
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, List, Optional, Union

from pydantic import ValidationError

from .models import LogicalSection
from .telemetry import emit_cache_event

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
FINGERPRINT_SAMPLE_CHARS = 1000
FINGERPRINT_DIGEST_CHARS = 50


class CachePhase(str, Enum):
    CHUNKS = "chunks"
    ANALYSES = "analyses"
    SECTIONS = "sections"


@dataclass(slots=True)
class CachedChunks:
    phase: ClassVar[CachePhase] = CachePhase.CHUNKS
    chunks: List[str]

    def to_json(self) -> Any:
        return list(self.chunks)

    @classmethod
    def from_json(cls, raw: Any) -> "CachedChunks":
        return cls(chunks=_string_list(raw))


@dataclass(slots=True)
class CachedAnalyses:
    phase: ClassVar[CachePhase] = CachePhase.ANALYSES
    analyses: List[str]

    def to_json(self) -> Any:
        return list(self.analyses)

    @classmethod
    def from_json(cls, raw: Any) -> "CachedAnalyses":
        return cls(analyses=_string_list(raw))


@dataclass(slots=True)
class CachedSections:
    phase: ClassVar[CachePhase] = CachePhase.SECTIONS
    sections: List[LogicalSection]

    def to_json(self) -> Any:
        return [section.model_dump() for section in self.sections]

    @classmethod
    def from_json(cls, raw: Any) -> "CachedSections":
        if not isinstance(raw, list):
            raise ValueError("cached sections must be a list")
        return cls(sections=[LogicalSection.model_validate(item) for item in raw])


CachePayload = Union[CachedChunks, CachedAnalyses, CachedSections]

_PAYLOAD_TYPES: Dict[CachePhase, type] = {
    CachePhase.CHUNKS: CachedChunks,
    CachePhase.ANALYSES: CachedAnalyses,
    CachePhase.SECTIONS: CachedSections,
}


def _string_list(raw: Any) -> List[str]:
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ValueError("cached value must be a list of strings")
    return list(raw)


def wrap_payload(phase: CachePhase, data: Any) -> CachePayload:
    """Wrap plain stage output into the typed payload for *phase*."""

    phase = CachePhase(phase)
    if phase is CachePhase.CHUNKS:
        return CachedChunks(chunks=list(data))
    if phase is CachePhase.ANALYSES:
        return CachedAnalyses(analyses=list(data))
    return CachedSections(
        sections=[
            item if isinstance(item, LogicalSection) else LogicalSection.model_validate(item)
            for item in data
        ]
    )


def unwrap_payload(payload: CachePayload) -> Any:
    if isinstance(payload, CachedChunks):
        return list(payload.chunks)
    if isinstance(payload, CachedAnalyses):
        return list(payload.analyses)
    return list(payload.sections)


def generate_fingerprint(content: str) -> str:
    """Cheap, collision-tolerant document identifier.

    ``"{len(content)}-{base64(content[:1000])[:50]}"``. Not suitable where
    an adversary controls the documents; see :func:`content_digest`.
    """

    sample = content[:FINGERPRINT_SAMPLE_CHARS]
    encoded = base64.b64encode(sample.encode("utf-8")).decode("ascii")
    return f"{len(content)}-{encoded[:FINGERPRINT_DIGEST_CHARS]}"


def content_digest(content: str) -> str:
    """SHA-256 of the full content, stored alongside entries to detect fingerprint collisions."""

    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class DocumentCache:
    """Persist stage results on disk keyed by document fingerprint."""

    def __init__(
        self,
        cache_dir: str | Path,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _entry_path(self, fingerprint: str) -> Path:
        name = hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{name}.json"

    def save(
        self,
        fingerprint: str,
        phase: CachePhase | str,
        data: Any,
        *,
        digest: str | None = None,
    ) -> None:
        """Store *data* for *fingerprint*, replacing any earlier entry."""

        phase_value = getattr(phase, "value", phase)
        try:
            payload = wrap_payload(CachePhase(phase), data)
            entry = {
                "document_fingerprint": fingerprint,
                "phase": phase_value,
                "data": payload.to_json(),
                "timestamp": self._clock(),
                "content_digest": digest,
            }
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            path = self._entry_path(fingerprint)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(entry, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(path)
        except (OSError, TypeError, ValueError, ValidationError) as error:
            LOGGER.warning("Cache save failed for %s (%s): %s", fingerprint, phase_value, error)
            emit_cache_event("error", fingerprint=fingerprint, phase=phase_value, reason=str(error))
            return
        emit_cache_event("save", fingerprint=fingerprint, phase=phase_value)

    def load(
        self,
        fingerprint: str,
        phase: CachePhase | str,
        *,
        digest: str | None = None,
    ) -> Optional[Any]:
        """Return cached data for (*fingerprint*, *phase*) or ``None`` on a miss."""

        phase = CachePhase(phase)
        payload = self.load_payload(fingerprint, phase, digest=digest)
        if payload is None:
            return None
        return unwrap_payload(payload)

    def load_payload(
        self,
        fingerprint: str,
        phase: CachePhase,
        *,
        digest: str | None = None,
    ) -> Optional[CachePayload]:
        path = self._entry_path(fingerprint)
        try:
            if not path.exists():
                emit_cache_event("miss", fingerprint=fingerprint, phase=phase.value, reason="absent")
                return None
            entry = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as error:
            LOGGER.warning("Cache load failed for %s (%s): %s", fingerprint, phase.value, error)
            emit_cache_event("error", fingerprint=fingerprint, phase=phase.value, reason=str(error))
            return None

        if not isinstance(entry, dict) or entry.get("phase") != phase.value:
            emit_cache_event("miss", fingerprint=fingerprint, phase=phase.value, reason="phase")
            return None

        timestamp = entry.get("timestamp")
        if not isinstance(timestamp, (int, float)) or self._clock() - timestamp >= self.ttl_seconds:
            emit_cache_event("miss", fingerprint=fingerprint, phase=phase.value, reason="expired")
            return None

        stored_digest = entry.get("content_digest")
        if digest and stored_digest and digest != stored_digest:
            emit_cache_event("miss", fingerprint=fingerprint, phase=phase.value, reason="digest")
            return None

        payload_type = _PAYLOAD_TYPES[phase]
        try:
            payload = payload_type.from_json(entry.get("data"))
        except (ValueError, ValidationError) as error:
            LOGGER.warning("Discarding malformed cache entry for %s (%s): %s", fingerprint, phase.value, error)
            emit_cache_event("error", fingerprint=fingerprint, phase=phase.value, reason=str(error))
            return None

        emit_cache_event("hit", fingerprint=fingerprint, phase=phase.value)
        return payload


__all__ = [
    "CachePayload",
    "CachePhase",
    "CachedAnalyses",
    "CachedChunks",
    "CachedSections",
    "DocumentCache",
    "content_digest",
    "generate_fingerprint",
    "unwrap_payload",
    "wrap_payload",
]
