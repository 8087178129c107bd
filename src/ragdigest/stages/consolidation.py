"""Final consolidation call and incremental relay of its token stream."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import AsyncIterator, Optional, Sequence, Union

from ragdigest.cancellation import CancellationToken
from ragdigest.config import PipelineConfig
from ragdigest.errors import BudgetExceededError, CollaboratorError, StageError
from ragdigest.models import ConsolidationRequest
from ragdigest.prompt_builder import build_consolidation_prompt, max_output_tokens_for
from ragdigest.providers.base import CONSOLIDATE, Collaborator
from ragdigest.telemetry import emit_budget_event, emit_stream_event
from ragdigest.tokens import estimate_text_tokens

LOGGER = logging.getLogger(__name__)

STAGE = "consolidation"
DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


class _StreamDone:
    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return "STREAM_DONE"


STREAM_DONE = _StreamDone()
_CANCELLED = object()
_EXHAUSTED = object()


async def _read_line(lines: AsyncIterator[str]) -> object:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


async def _next_line(lines: AsyncIterator[str], cancel_token: Optional[CancellationToken]) -> object:
    """Read one line, giving up as soon as *cancel_token* fires.

    Returns the line, ``_EXHAUSTED`` at end of stream or ``_CANCELLED``.
    A read still pending at cancellation is cancelled.
    """

    if cancel_token is None:
        return await _read_line(lines)
    if cancel_token.cancelled:
        return _CANCELLED

    reader = asyncio.create_task(_read_line(lines))
    waiter = asyncio.create_task(cancel_token.wait())
    try:
        done, _ = await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    if reader not in done:
        return _CANCELLED
    return reader.result()


def parse_sse_line(line: str) -> Union[str, _StreamDone, None]:
    """Decode one server-sent-event line.

    Returns the delta text, :data:`STREAM_DONE` for the terminator, or
    ``None`` for anything that carries no text (comments, blank lines,
    malformed or partial JSON).
    """

    line = line.rstrip("\r\n")
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX) :]
    if data.strip() == DONE_MARKER:
        return STREAM_DONE
    try:
        parsed = json.loads(data)
    except ValueError:
        return None
    try:
        content = parsed["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    if isinstance(content, str) and content:
        return content
    return None


class ConsolidationStreamer:
    def __init__(
        self,
        collaborator: Collaborator,
        *,
        config: Optional[PipelineConfig] = None,
        credential: str | None = None,
    ) -> None:
        self.collaborator = collaborator
        self.config = config or PipelineConfig()
        self.credential = credential

    def build_request(
        self,
        sections: Sequence[str],
        user_goal: str,
        document_name: str,
        total_pages: int,
    ) -> ConsolidationRequest:
        """Assemble the request and check the prompt and total token ceilings."""

        prompt = build_consolidation_prompt(sections, user_goal, document_name, total_pages)
        prompt_tokens = estimate_text_tokens(prompt)
        output_tokens = max_output_tokens_for(total_pages)
        emit_budget_event("prompt", estimated_tokens=prompt_tokens, limit=self.config.prompt_token_limit, sections=len(sections))

        if prompt_tokens > self.config.prompt_token_limit:
            LOGGER.error("Consolidation prompt too large: %s tokens (limit %s)", prompt_tokens, self.config.prompt_token_limit)
            raise BudgetExceededError(
                f"Consolidation prompt needs {prompt_tokens} tokens, limit is {self.config.prompt_token_limit}",
                estimated_tokens=prompt_tokens,
                limit=self.config.prompt_token_limit,
                scope="prompt",
            )

        total_tokens = prompt_tokens + output_tokens
        emit_budget_event("total", estimated_tokens=total_tokens, limit=self.config.total_token_limit)
        if total_tokens > self.config.total_token_limit:
            LOGGER.error(
                "Consolidation total too large: %s tokens (prompt %s, output %s, limit %s)",
                total_tokens,
                prompt_tokens,
                output_tokens,
                self.config.total_token_limit,
            )
            raise BudgetExceededError(
                f"Consolidation needs {total_tokens} tokens in total, limit is {self.config.total_token_limit}",
                estimated_tokens=total_tokens,
                limit=self.config.total_token_limit,
                scope="total",
            )

        return ConsolidationRequest(
            sections=list(sections),
            user_goal=user_goal,
            document_name=document_name,
            total_pages=total_pages,
            prompt=prompt,
            max_output_tokens=output_tokens,
        )

    async def consolidate_and_stream(
        self,
        sections: Sequence[str],
        user_goal: str,
        document_name: str,
        total_pages: int,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        request = self.build_request(sections, user_goal, document_name, total_pages)
        tokens = self.stream_request(request, cancel_token=cancel_token)
        try:
            async for token in tokens:
                yield token
        finally:
            await tokens.aclose()

    async def stream_request(
        self,
        request: ConsolidationRequest,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """Relay text deltas until ``[DONE]``, end of stream or cancellation.

        The collaborator stream is closed in every case, including when the
        consumer stops pulling and closes this generator.
        """

        started = time.perf_counter()
        lines = self.collaborator.stream(CONSOLIDATE, request.to_payload(), credential=self.credential)
        tokens = 0
        status = "complete"
        try:
            while True:
                line = await _next_line(lines, cancel_token)
                if line is _CANCELLED:
                    status = "cancelled"
                    break
                if line is _EXHAUSTED:
                    break
                parsed = parse_sse_line(line)
                if parsed is STREAM_DONE:
                    break
                if parsed is None:
                    continue
                tokens += 1
                yield parsed
        except CollaboratorError as error:
            status = "error"
            raise StageError(f"Consolidation failed: {error}", stage=STAGE, cause=error) from error
        except GeneratorExit:
            status = "closed"
            raise
        finally:
            aclose = getattr(lines, "aclose", None)
            if aclose is not None:
                await aclose()
            emit_stream_event(status, tokens=tokens, duration_ms=(time.perf_counter() - started) * 1000.0)


__all__ = ["ConsolidationStreamer", "STREAM_DONE", "parse_sse_line"]
