"""Serial synthesis of coarse groups of chunk analyses."""
from __future__ import annotations

import logging
import math
import time
from typing import List, Optional, Sequence

from ragdigest.cancellation import CancellationToken
from ragdigest.config import PipelineConfig
from ragdigest.errors import CollaboratorError, StageError
from ragdigest.progress import StatusCallback, maybe_await
from ragdigest.providers.base import SYNTHESIZE_SECTION, Collaborator
from ragdigest.telemetry import emit_stage_event

LOGGER = logging.getLogger(__name__)

STAGE = "synthesis"


def group_analyses(analyses: Sequence[str], group_count: int = 3) -> List[List[str]]:
    """Slice *analyses* into consecutive groups of ``ceil(len / group_count)``."""

    if not analyses:
        return []
    group_size = math.ceil(len(analyses) / group_count)
    return [list(analyses[start : start + group_size]) for start in range(0, len(analyses), group_size)]


class SynthesisStage:
    """One collaborator call per group, awaited strictly in order.

    Unlike chunk analysis there is no retry here: the first failure aborts
    the stage with :class:`StageError`.
    """

    def __init__(self, collaborator: Collaborator, *, config: Optional[PipelineConfig] = None) -> None:
        self.collaborator = collaborator
        self.config = config or PipelineConfig()

    async def synthesize_sections(
        self,
        analyses: Sequence[str],
        on_progress: Optional[StatusCallback] = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[str]:
        groups = group_analyses(analyses, self.config.synthesis_group_count)
        started = time.perf_counter()
        emit_stage_event(STAGE, "start", analyses=len(analyses), groups=len(groups))

        syntheses: List[str] = []
        for index, group in enumerate(groups):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            if on_progress is not None:
                await maybe_await(on_progress(f"Synthesizing section {index + 1} of {len(groups)}"))

            result = await self.collaborator.invoke(
                SYNTHESIZE_SECTION,
                {
                    "analyses": group,
                    "sectionIndex": index,
                    "totalSections": len(groups),
                },
            )
            try:
                data = result.raise_for_error(SYNTHESIZE_SECTION)
            except CollaboratorError as error:
                LOGGER.error("Section %s synthesis failed: %s", index + 1, error)
                raise StageError(f"Section {index + 1} failed: {error}", stage=STAGE, cause=error) from error

            synthesis = data.get("synthesis")
            if not isinstance(synthesis, str) or not synthesis.strip():
                raise StageError(f"Section {index + 1} failed: response has no synthesis", stage=STAGE)
            syntheses.append(synthesis)

        emit_stage_event(
            STAGE,
            "complete",
            duration_ms=(time.perf_counter() - started) * 1000.0,
            syntheses=len(syntheses),
        )
        return syntheses


__all__ = ["SynthesisStage", "group_analyses"]
