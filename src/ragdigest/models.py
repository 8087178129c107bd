"""Data models passed between pipeline stages."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Optional

from pydantic import BaseModel, Field

_FAILURE_MARKER_RE = re.compile(r"^\[CHUNK (\d+) NOT PROCESSED: (.*)\]$", re.DOTALL)


@dataclass(frozen=True, slots=True)
class Document:
    """Raw document text together with its declared page count."""

    content: str
    total_pages: int
    name: str = "document"


@dataclass(frozen=True, slots=True)
class Chunk:
    """Zero-indexed window ``content[start:end]`` of a document."""

    index: int
    start: int
    end: int
    text: str

    def __len__(self) -> int:
        return self.end - self.start


@dataclass(slots=True)
class ChunkProgress:
    """Progress snapshot reported before each analysis batch."""

    current: int
    total: int
    status: str


def failure_marker(chunk_index: int, reason: str) -> str:
    """Sentinel stored in place of a permanently failed chunk analysis."""

    return f"[CHUNK {chunk_index + 1} NOT PROCESSED: {reason}]"


def is_failure_marker(analysis: str) -> bool:
    return _FAILURE_MARKER_RE.match(analysis) is not None


class LogicalSection(BaseModel):
    """Topic-coherent section derived from the synthesized narrative."""

    content: str = Field(..., min_length=1)
    title: str = ""
    keywords: List[str] = Field(default_factory=list)

    @property
    def metadata(self) -> dict[str, Any]:
        return {"title": self.title, "keywords": list(self.keywords)}


class LogicalSectionsResponse(BaseModel):
    """Shape expected from the logical segmentation collaborator."""

    sections: List[LogicalSection]


class RelevanceResponse(BaseModel):
    """Shape expected from the relevance filtering collaborator.

    Either the kept ``sections`` or their ``relevant_indices`` are accepted.
    """

    sections: Optional[List[LogicalSection]] = None
    relevant_indices: Optional[List[int]] = None
    reasoning: str = ""


@dataclass(slots=True)
class RelevantSection:
    """Logical section kept by relevance filtering."""

    content: str
    reasoning: str
    title: str = ""


@dataclass(slots=True)
class ConsolidationRequest:
    """Final payload dispatched to the streaming consolidation call."""

    sections: List[str]
    user_goal: str
    document_name: str
    total_pages: int
    prompt: str = ""
    max_output_tokens: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "sections": list(self.sections),
            "userMessage": self.user_goal,
            "fileName": self.document_name,
            "totalPages": self.total_pages,
            "prompt": self.prompt,
            "maxOutputTokens": self.max_output_tokens,
        }


__all__ = [
    "Chunk",
    "ChunkProgress",
    "ConsolidationRequest",
    "Document",
    "LogicalSection",
    "LogicalSectionsResponse",
    "RelevanceResponse",
    "RelevantSection",
    "failure_marker",
    "is_failure_marker",
]
