"""Goal-driven filtering of logical sections."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

from pydantic import ValidationError

from ragdigest.errors import CollaboratorError, InvalidCollaboratorResponseError, StageError
from ragdigest.models import LogicalSection, RelevanceResponse, RelevantSection
from ragdigest.providers.base import FILTER_RELEVANT, Collaborator
from ragdigest.telemetry import log_event

LOGGER = logging.getLogger(__name__)

STAGE = "relevance"


@dataclass(slots=True)
class RelevanceResult:
    sections: List[RelevantSection]
    reasoning: str

    @property
    def contents(self) -> List[str]:
        return [section.content for section in self.sections]


class RelevanceFilter:
    def __init__(self, collaborator: Collaborator) -> None:
        self.collaborator = collaborator

    async def filter_relevant_sections(self, sections: Sequence[LogicalSection], user_goal: str) -> List[str]:
        """Return the content of every kept section, in the collaborator's order."""

        result = await self.filter_sections(sections, user_goal)
        return result.contents

    async def filter_sections(self, sections: Sequence[LogicalSection], user_goal: str) -> RelevanceResult:
        result = await self.collaborator.invoke(
            FILTER_RELEVANT,
            {
                "sections": [section.model_dump() for section in sections],
                "userMessage": user_goal,
            },
        )
        try:
            data = result.raise_for_error(FILTER_RELEVANT)
        except CollaboratorError as error:
            raise StageError(f"Relevance filtering failed: {error}", stage=STAGE, cause=error) from error

        try:
            parsed = RelevanceResponse.model_validate(data)
        except ValidationError as error:
            raise InvalidCollaboratorResponseError(
                f"Relevance filtering returned an invalid payload: {error}", stage=STAGE, cause=error
            ) from error

        kept = self._kept_sections(parsed, sections)
        relevant = [
            RelevantSection(content=section.content, reasoning=parsed.reasoning, title=section.title)
            for section in kept
        ]

        LOGGER.info("Filtered %s -> %s sections", len(sections), len(relevant))
        log_event(
            LOGGER,
            "relevance.filtered",
            details={
                "before": len(sections),
                "after": len(relevant),
                "reasoning": parsed.reasoning,
            },
        )
        if not relevant:
            LOGGER.warning("No section was judged relevant to goal %r", user_goal[:120])
        return RelevanceResult(sections=relevant, reasoning=parsed.reasoning)

    @staticmethod
    def _kept_sections(parsed: RelevanceResponse, sections: Sequence[LogicalSection]) -> List[LogicalSection]:
        if parsed.sections is not None:
            return list(parsed.sections)
        if parsed.relevant_indices is None:
            raise InvalidCollaboratorResponseError(
                "Relevance filtering returned neither sections nor relevant_indices", stage=STAGE
            )
        kept: List[LogicalSection] = []
        for index in parsed.relevant_indices:
            if 0 <= index < len(sections):
                kept.append(sections[index])
            else:
                LOGGER.warning("Ignoring out-of-range relevant index %s (of %s)", index, len(sections))
        return kept


__all__ = ["RelevanceFilter", "RelevanceResult"]
