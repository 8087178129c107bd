"""Collaborator interface used by every pipeline stage."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from ragdigest.errors import CollaboratorError, is_rate_limit_message

__all__ = [
    "ANALYZE_CHUNK",
    "COMPRESS_SECTION",
    "CONSOLIDATE",
    "Collaborator",
    "CollaboratorResult",
    "FILTER_RELEVANT",
    "LOGICAL_SECTIONS",
    "SYNTHESIZE_SECTION",
]

ANALYZE_CHUNK = "rag-analyze-chunk"
SYNTHESIZE_SECTION = "rag-synthesize-section"
LOGICAL_SECTIONS = "rag-logical-sections"
FILTER_RELEVANT = "rag-filter-relevant"
COMPRESS_SECTION = "rag-compress-section"
CONSOLIDATE = "rag-consolidate"


@dataclass(slots=True)
class CollaboratorResult:
    """``{data, error}`` pair returned by :meth:`Collaborator.invoke`."""

    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429 or is_rate_limit_message(self.error)

    def raise_for_error(self, task: str) -> Dict[str, Any]:
        """Return ``data`` or raise :class:`CollaboratorError`."""

        if self.error is not None:
            raise CollaboratorError(
                f"{task} failed: {self.error}",
                task=task,
                status_code=self.status_code,
            )
        return self.data or {}


class Collaborator(ABC):
    """External text-generation capability invoked by task name."""

    @abstractmethod
    async def invoke(self, task: str, payload: Dict[str, Any]) -> CollaboratorResult:
        """Run *task* with *payload*; failures are reported, not raised."""

    @abstractmethod
    def stream(
        self,
        task: str,
        payload: Dict[str, Any],
        *,
        credential: str | None = None,
    ) -> AsyncIterator[str]:
        """Yield raw server-sent-event lines produced by *task*.

        Implementations are async generators: closing the generator must
        release the underlying network stream. Failures to open the stream
        raise :class:`CollaboratorError`.
        """

    async def aclose(self) -> None:
        """Release pooled resources held by the collaborator."""

        return None
