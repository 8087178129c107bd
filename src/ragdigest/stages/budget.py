"""Token budget enforcement with adaptive section compression."""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from ragdigest.cancellation import CancellationToken
from ragdigest.config import PipelineConfig
from ragdigest.errors import BudgetExceededError
from ragdigest.providers.base import COMPRESS_SECTION, Collaborator
from ragdigest.telemetry import emit_budget_event
from ragdigest.tokens import estimate_sections_tokens

LOGGER = logging.getLogger(__name__)


class BudgetEnforcer:
    """Compress oversized sections, then fail loudly if still over budget.

    Compression only runs when the estimate is above
    ``compression_trigger_tokens`` and only touches sections longer than
    ``compression_section_chars``. A failed compression call degrades to a
    hard truncation instead of blocking the pipeline. The final check
    against ``section_token_limit`` is never degraded further.
    """

    def __init__(self, collaborator: Collaborator, *, config: Optional[PipelineConfig] = None) -> None:
        self.collaborator = collaborator
        self.config = config or PipelineConfig()

    async def enforce(
        self,
        sections: Sequence[str],
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[str]:
        config = self.config
        estimated = estimate_sections_tokens(sections)
        emit_budget_event("estimate", estimated_tokens=estimated, limit=config.compression_trigger_tokens, sections=len(sections))

        result = list(sections)
        if estimated > config.compression_trigger_tokens:
            compressed = 0
            for index, section in enumerate(result):
                if len(section) <= config.compression_section_chars:
                    continue
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                result[index] = await self.compress_section(section)
                compressed += 1
            before = estimated
            estimated = estimate_sections_tokens(result)
            LOGGER.info("Compressed %s sections: %s -> %s estimated tokens", compressed, before, estimated)
            emit_budget_event(
                "compressed",
                estimated_tokens=estimated,
                limit=config.section_token_limit,
                sections=len(result),
                compressed=compressed,
            )

        if estimated > config.section_token_limit:
            LOGGER.error(
                "Sections still need %s tokens after compression (limit %s)", estimated, config.section_token_limit
            )
            raise BudgetExceededError(
                f"Filtered sections need {estimated} tokens after compression, limit is {config.section_token_limit}",
                estimated_tokens=estimated,
                limit=config.section_token_limit,
                scope="sections",
            )
        return result

    async def compress_section(self, section: str) -> str:
        fallback_chars = self.config.truncation_fallback_chars
        result = await self.collaborator.invoke(COMPRESS_SECTION, {"section": section})
        compressed = (result.data or {}).get("compressed") if result.ok else None
        if not isinstance(compressed, str) or not compressed.strip():
            reason = result.error or "response has no compressed text"
            LOGGER.warning(
                "Compression of %s-char section failed (%s); truncating to %s chars",
                len(section),
                reason,
                fallback_chars,
            )
            return section[:fallback_chars]
        LOGGER.debug("Compressed section %s -> %s chars", len(section), len(compressed))
        return compressed


__all__ = ["BudgetEnforcer"]
