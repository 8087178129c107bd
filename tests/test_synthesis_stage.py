from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List

import pytest

from ragdigest.cancellation import CancellationToken
from ragdigest.errors import PipelineCancelledError, StageError
from ragdigest.providers.base import SYNTHESIZE_SECTION, Collaborator, CollaboratorResult
from ragdigest.stages.synthesis import SynthesisStage, group_analyses


class RecordingCollaborator(Collaborator):
    def __init__(self, *, fail_on: int | None = None) -> None:
        self.payloads: List[Dict[str, Any]] = []
        self.fail_on = fail_on

    async def invoke(self, task: str, payload: Dict[str, Any]) -> CollaboratorResult:
        assert task == SYNTHESIZE_SECTION
        self.payloads.append(payload)
        if payload["sectionIndex"] == self.fail_on:
            return CollaboratorResult(error="model overloaded", status_code=503)
        return CollaboratorResult(data={"synthesis": " + ".join(payload["analyses"])})

    async def stream(self, task: str, payload: Dict[str, Any], *, credential: str | None = None) -> AsyncIterator[str]:
        raise AssertionError("synthesis never streams")
        yield ""  # pragma: no cover


@pytest.mark.parametrize(
    ("count", "sizes"),
    [(0, []), (1, [1]), (2, [1, 1]), (5, [2, 2, 1]), (6, [2, 2, 2]), (7, [3, 3, 1]), (10, [4, 4, 2])],
)
def test_group_analyses_uses_ceil_sized_consecutive_groups(count: int, sizes: List[int]) -> None:
    analyses = [f"a{i}" for i in range(count)]

    groups = group_analyses(analyses)

    assert [len(group) for group in groups] == sizes
    assert [item for group in groups for item in group] == analyses


def test_synthesize_sections_calls_once_per_group_in_order() -> None:
    collaborator = RecordingCollaborator()
    statuses: List[str] = []

    syntheses = asyncio.run(
        SynthesisStage(collaborator).synthesize_sections([f"a{i}" for i in range(6)], statuses.append)
    )

    assert syntheses == ["a0 + a1", "a2 + a3", "a4 + a5"]
    assert [payload["sectionIndex"] for payload in collaborator.payloads] == [0, 1, 2]
    assert all(payload["totalSections"] == 3 for payload in collaborator.payloads)
    assert statuses == [
        "Synthesizing section 1 of 3",
        "Synthesizing section 2 of 3",
        "Synthesizing section 3 of 3",
    ]


def test_first_failure_aborts_the_stage() -> None:
    collaborator = RecordingCollaborator(fail_on=1)

    with pytest.raises(StageError) as excinfo:
        asyncio.run(SynthesisStage(collaborator).synthesize_sections(["a", "b", "c"]))

    assert excinfo.value.stage == "synthesis"
    assert "Section 2 failed" in str(excinfo.value)
    # No retry and no further groups after the failure.
    assert len(collaborator.payloads) == 2


def test_cancelled_token_stops_before_next_call() -> None:
    async def runner() -> None:
        token = CancellationToken()
        token.cancel()
        await SynthesisStage(RecordingCollaborator()).synthesize_sections(["a"], cancel_token=token)

    with pytest.raises(PipelineCancelledError):
        asyncio.run(runner())
