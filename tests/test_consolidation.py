from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List

import pytest

from ragdigest.cancellation import CancellationToken
from ragdigest.config import PipelineConfig
from ragdigest.errors import BudgetExceededError, CollaboratorError, StageError
from ragdigest.prompt_builder import build_consolidation_prompt, max_output_tokens_for, target_pages_for
from ragdigest.providers.base import CONSOLIDATE, Collaborator, CollaboratorResult
from ragdigest.stages.consolidation import STREAM_DONE, ConsolidationStreamer, parse_sse_line


def delta(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]})


class StreamingCollaborator(Collaborator):
    """Streams scripted SSE lines and records how far the consumer read."""

    def __init__(self, lines: List[str], *, fail_with: Exception | None = None) -> None:
        self.lines = lines
        self.fail_with = fail_with
        self.sent = 0
        self.closed = False
        self.payloads: List[Dict[str, Any]] = []
        self.credentials: List[str | None] = []

    async def invoke(self, task: str, payload: Dict[str, Any]) -> CollaboratorResult:
        raise AssertionError("consolidation only streams")

    async def stream(self, task: str, payload: Dict[str, Any], *, credential: str | None = None) -> AsyncIterator[str]:
        assert task == CONSOLIDATE
        self.payloads.append(payload)
        self.credentials.append(credential)
        if self.fail_with is not None:
            raise self.fail_with
        try:
            for line in self.lines:
                self.sent += 1
                yield line
        finally:
            self.closed = True


async def collect(stream: AsyncIterator[str]) -> List[str]:
    return [token async for token in stream]


def test_parse_sse_line_variants() -> None:
    assert parse_sse_line(delta("Hello")) == "Hello"
    assert parse_sse_line(delta("Hello") + "\r\n") == "Hello"
    assert parse_sse_line("data: [DONE]") is STREAM_DONE
    assert parse_sse_line("") is None
    assert parse_sse_line(": keep-alive") is None
    assert parse_sse_line('data: {"choices": [{"delta": {"con') is None
    assert parse_sse_line('data: {"choices": []}') is None
    assert parse_sse_line('data: {"choices": [{"delta": {}}]}') is None
    assert parse_sse_line("data: 42") is None


def test_stream_yields_deltas_until_done_and_skips_garbage() -> None:
    collaborator = StreamingCollaborator(
        [
            delta("The "),
            "",
            "data: {broken json",
            delta("answer"),
            'data: {"choices": [{"delta": {"role": "assistant"}}]}',
            "data: [DONE]",
            delta("after done"),
        ]
    )
    streamer = ConsolidationStreamer(collaborator, credential="secret")

    tokens = asyncio.run(collect(streamer.consolidate_and_stream(["Section body"], "What is it?", "doc.pdf", 10)))

    assert tokens == ["The ", "answer"]
    assert collaborator.closed
    assert collaborator.credentials == ["secret"]
    payload = collaborator.payloads[0]
    assert payload["sections"] == ["Section body"]
    assert payload["userMessage"] == "What is it?"
    assert payload["fileName"] == "doc.pdf"
    assert payload["totalPages"] == 10
    assert payload["maxOutputTokens"] == max_output_tokens_for(10)
    assert "[SECTION 1/1]" in payload["prompt"]


def test_consumer_stopping_early_closes_network_stream() -> None:
    collaborator = StreamingCollaborator([delta(f"t{i}") for i in range(100)])
    streamer = ConsolidationStreamer(collaborator)

    async def runner() -> List[str]:
        received: List[str] = []
        stream = streamer.consolidate_and_stream(["body"], "goal", "doc", 5)
        async for token in stream:
            received.append(token)
            if len(received) == 2:
                break
        await stream.aclose()
        return received

    received = asyncio.run(runner())

    assert received == ["t0", "t1"]
    assert collaborator.closed
    assert collaborator.sent == 2


def test_cancel_token_stops_stream_without_more_tokens() -> None:
    collaborator = StreamingCollaborator([delta(f"t{i}") for i in range(10)])
    token = CancellationToken()
    streamer = ConsolidationStreamer(collaborator)

    async def runner() -> List[str]:
        received: List[str] = []
        async for item in streamer.consolidate_and_stream(["body"], "goal", "doc", 5, cancel_token=token):
            received.append(item)
            token.cancel()
        return received

    assert asyncio.run(runner()) == ["t0"]
    assert collaborator.closed


class StallingCollaborator(StreamingCollaborator):
    """Sends one line, then hangs on the network read."""

    async def stream(self, task: str, payload: Dict[str, Any], *, credential: str | None = None) -> AsyncIterator[str]:
        try:
            yield delta("first")
            await asyncio.sleep(3600)
            yield delta("never")
        finally:
            self.closed = True


def test_cancel_during_stalled_read_ends_stream_and_closes_connection() -> None:
    collaborator = StallingCollaborator([])
    token = CancellationToken()
    streamer = ConsolidationStreamer(collaborator)

    async def runner() -> List[str]:
        received: List[str] = []

        async def consume() -> None:
            async for item in streamer.consolidate_and_stream(["body"], "goal", "doc", 5, cancel_token=token):
                received.append(item)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        token.cancel()
        await asyncio.wait_for(consumer, timeout=2.0)
        return received

    assert asyncio.run(runner()) == ["first"]
    assert collaborator.closed


def test_prompt_over_limit_is_rejected_before_dispatch() -> None:
    collaborator = StreamingCollaborator([delta("never")])
    streamer = ConsolidationStreamer(collaborator)
    sections = ["x" * 30_000, "y" * 25_000]

    with pytest.raises(BudgetExceededError) as excinfo:
        asyncio.run(collect(streamer.consolidate_and_stream(sections, "goal", "doc", 100)))

    assert excinfo.value.scope == "prompt"
    assert excinfo.value.limit == 20_000
    assert collaborator.payloads == []


def test_prompt_plus_output_over_total_limit_is_rejected() -> None:
    collaborator = StreamingCollaborator([delta("never")])
    config = PipelineConfig(total_token_limit=2_000)
    streamer = ConsolidationStreamer(collaborator, config=config)

    with pytest.raises(BudgetExceededError) as excinfo:
        streamer.build_request(["short section"], "goal", "doc", 100)

    assert excinfo.value.scope == "total"
    assert excinfo.value.estimated_tokens > 2_000


def test_stream_open_failure_is_stage_fatal() -> None:
    collaborator = StreamingCollaborator([], fail_with=CollaboratorError("HTTP 401: bad token", task=CONSOLIDATE))
    streamer = ConsolidationStreamer(collaborator)

    with pytest.raises(StageError) as excinfo:
        asyncio.run(collect(streamer.consolidate_and_stream(["body"], "goal", "doc", 5)))

    assert excinfo.value.stage == "consolidation"


def test_output_budget_follows_page_count() -> None:
    assert target_pages_for(1) == 1
    assert target_pages_for(100) == 30
    assert target_pages_for(50) == 20
    assert max_output_tokens_for(50) == 1_600
    assert max_output_tokens_for(1_000) == 2_400


def test_prompt_lists_sections_and_goal() -> None:
    prompt = build_consolidation_prompt(["alpha", "beta"], "  explain beta  ", "contract.pdf", 12)

    assert "[SECTION 1/2]\nalpha" in prompt
    assert "[SECTION 2/2]\nbeta" in prompt
    assert "explain beta" in prompt
    assert "contract.pdf" in prompt
    assert "(no relevant sections)" in build_consolidation_prompt([], "goal", "doc", 1)
