"""Phase-aware progress reporting for long pipeline runs."""
from __future__ import annotations

import inspect
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from .models import ChunkProgress


class PipelinePhase(str, Enum):
    CHUNKING = "chunking"
    ANALYSIS = "analysis"
    SYNTHESIS = "synthesis"
    FILTERING = "filtering"
    CONSOLIDATION = "consolidation"


_PHASE_ORDER = list(PipelinePhase)

# Seconds per document page spent in each phase.
SECONDS_PER_PAGE = {
    PipelinePhase.CHUNKING: 0.1,
    PipelinePhase.ANALYSIS: 2.0,
    PipelinePhase.SYNTHESIS: 1.5,
    PipelinePhase.FILTERING: 0.8,
    PipelinePhase.CONSOLIDATION: 1.0,
}


@dataclass(slots=True)
class PipelineProgress:
    phase: PipelinePhase
    percent: float
    step: str
    estimated_seconds_remaining: int
    completed_steps: Optional[int] = None
    total_steps: Optional[int] = None


ProgressCallback = Callable[[PipelineProgress], Union[None, Awaitable[None]]]
ChunkProgressCallback = Callable[[ChunkProgress], Union[None, Awaitable[None]]]
StatusCallback = Callable[[str], Union[None, Awaitable[None]]]


async def maybe_await(result: Any) -> Any:
    """Await result if it is awaitable."""

    if inspect.isawaitable(result):
        return await result
    return result


def estimate_remaining_seconds(phase: PipelinePhase, percent: float, total_pages: int) -> int:
    """Remaining time for the rest of *phase* plus every later phase."""

    if total_pages <= 0:
        return 0
    current = SECONDS_PER_PAGE[phase] * total_pages * (100.0 - percent) / 100.0
    later = sum(SECONDS_PER_PAGE[item] * total_pages for item in _PHASE_ORDER[_PHASE_ORDER.index(phase) + 1 :])
    return int(math.ceil(current + later))


class ProgressTracker:
    """Translate stage callbacks into :class:`PipelineProgress` updates."""

    def __init__(self, total_pages: int, callback: Optional[ProgressCallback] = None) -> None:
        self.total_pages = total_pages
        self._callback = callback
        self.last: Optional[PipelineProgress] = None

    async def update(
        self,
        phase: PipelinePhase,
        percent: float,
        step: str,
        *,
        completed_steps: int | None = None,
        total_steps: int | None = None,
    ) -> None:
        clamped = min(100.0, max(0.0, percent))
        self.last = PipelineProgress(
            phase=phase,
            percent=clamped,
            step=step,
            estimated_seconds_remaining=estimate_remaining_seconds(phase, clamped, self.total_pages),
            completed_steps=completed_steps,
            total_steps=total_steps,
        )
        if self._callback is not None:
            await maybe_await(self._callback(self.last))

    async def on_chunk_progress(self, progress: ChunkProgress) -> None:
        percent = 100.0 * progress.current / progress.total if progress.total else 100.0
        await self.update(
            PipelinePhase.ANALYSIS,
            percent,
            progress.status,
            completed_steps=progress.current,
            total_steps=progress.total,
        )


__all__ = [
    "ChunkProgressCallback",
    "PipelinePhase",
    "PipelineProgress",
    "ProgressCallback",
    "ProgressTracker",
    "SECONDS_PER_PAGE",
    "StatusCallback",
    "estimate_remaining_seconds",
    "maybe_await",
]
