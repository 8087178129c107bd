"""Re-derive topic-coherent sections from the combined syntheses."""
from __future__ import annotations

import logging
from typing import List, Sequence

from pydantic import ValidationError

from ragdigest.errors import CollaboratorError, InvalidCollaboratorResponseError, StageError
from ragdigest.models import LogicalSection, LogicalSectionsResponse
from ragdigest.providers.base import LOGICAL_SECTIONS, Collaborator
from ragdigest.telemetry import traced_duration

LOGGER = logging.getLogger(__name__)

STAGE = "segmentation"
SYNTHESIS_DELIMITER = "\n\n---\n\n"


class LogicalSegmentation:
    """Delegates boundary detection to the collaborator and validates the result."""

    def __init__(self, collaborator: Collaborator) -> None:
        self.collaborator = collaborator

    async def create_logical_sections(self, syntheses: Sequence[str]) -> List[LogicalSection]:
        combined = SYNTHESIS_DELIMITER.join(syntheses)
        with traced_duration("stage.segmentation", logger=LOGGER, chars=len(combined)):
            result = await self.collaborator.invoke(LOGICAL_SECTIONS, {"synthesizedContent": combined})
            try:
                data = result.raise_for_error(LOGICAL_SECTIONS)
            except CollaboratorError as error:
                raise StageError(f"Logical segmentation failed: {error}", stage=STAGE, cause=error) from error

            try:
                parsed = LogicalSectionsResponse.model_validate(data)
            except ValidationError as error:
                raise InvalidCollaboratorResponseError(
                    f"Logical segmentation returned an invalid section list: {error}",
                    stage=STAGE,
                    cause=error,
                ) from error

        if not parsed.sections:
            raise InvalidCollaboratorResponseError("Logical segmentation returned no sections", stage=STAGE)
        LOGGER.info("Created %s logical sections from %s chars", len(parsed.sections), len(combined))
        return parsed.sections


__all__ = ["LogicalSegmentation", "SYNTHESIS_DELIMITER"]
