"""Concurrent first-pass analysis of document chunks.

Chunks are analysed in fixed-size batches whose members run in parallel.
Each call is retried with exponential backoff; a chunk that still fails is
replaced by a failure marker so the stage always returns one entry per
chunk, in chunk order.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence, Union

from ragdigest.cache import CachePhase, DocumentCache
from ragdigest.cancellation import CancellationToken, cancellable_sleep
from ragdigest.config import PipelineConfig
from ragdigest.errors import CollaboratorError, is_rate_limit_message
from ragdigest.models import Chunk, ChunkProgress, failure_marker, is_failure_marker
from ragdigest.progress import ChunkProgressCallback, maybe_await
from ragdigest.providers.base import ANALYZE_CHUNK, Collaborator
from ragdigest.telemetry import emit_chunk_failure, emit_chunk_retry, emit_stage_event

LOGGER = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


def _chunk_text(chunk: Union[Chunk, str]) -> str:
    return chunk.text if isinstance(chunk, Chunk) else chunk


class AnalysisStage:
    def __init__(
        self,
        collaborator: Collaborator,
        *,
        config: Optional[PipelineConfig] = None,
        cache: Optional[DocumentCache] = None,
    ) -> None:
        self.collaborator = collaborator
        self.config = config or PipelineConfig()
        self.cache = cache

    async def analyze_chunks(
        self,
        chunks: Sequence[Union[Chunk, str]],
        total_pages: int,
        on_progress: Optional[ChunkProgressCallback] = None,
        fingerprint: Optional[str] = None,
        *,
        digest: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[str]:
        """Return one analysis (or failure marker) per chunk, in chunk order."""

        total = len(chunks)
        cached = self._load_cached(fingerprint, digest, total)
        if cached is not None:
            await self._report(on_progress, ChunkProgress(current=total, total=total, status="Loaded analyses from cache"))
            return cached

        started = time.perf_counter()
        emit_stage_event("analysis", "start", fingerprint=fingerprint, chunks=total, batch_size=self.config.batch_size)

        results: List[Optional[str]] = [None] * total
        batch_size = self.config.batch_size
        for batch_start in range(0, total, batch_size):
            if cancel_token is not None and cancel_token.cancelled:
                break
            batch_end = min(batch_start + batch_size, total)
            await self._report(
                on_progress,
                ChunkProgress(
                    current=batch_start,
                    total=total,
                    status=f"Analyzing chunks {batch_start + 1}-{batch_end} of {total}",
                ),
            )

            tasks = {
                index: asyncio.create_task(
                    self._analyze_with_retry(_chunk_text(chunks[index]), index, total, total_pages, cancel_token)
                )
                for index in range(batch_start, batch_end)
            }
            await self._join_batch(tasks, results, cancel_token)

            if batch_end < total:
                await cancellable_sleep(self.config.inter_batch_delay_seconds, cancel_token)

        cancelled = cancel_token is not None and cancel_token.cancelled
        final = [
            result if result is not None else failure_marker(index, CANCELLED_REASON)
            for index, result in enumerate(results)
        ]
        failed = sum(1 for analysis in final if is_failure_marker(analysis))
        if failed:
            LOGGER.warning("%s of %s chunks could not be analysed", failed, total)

        emit_stage_event(
            "analysis",
            "cancelled" if cancelled else "complete",
            duration_ms=(time.perf_counter() - started) * 1000.0,
            fingerprint=fingerprint,
            chunks=total,
            failed=failed,
        )

        if fingerprint and self.cache is not None and not cancelled:
            if failed:
                LOGGER.info("Not caching analyses for %s: %s chunks failed", fingerprint, failed)
            else:
                self.cache.save(fingerprint, CachePhase.ANALYSES, final, digest=digest)
        return final

    async def analyze_chunk(self, chunk: str, index: int, total: int, total_pages: int) -> str:
        """Run a single analysis call; raises :class:`CollaboratorError` on failure."""

        result = await self.collaborator.invoke(
            ANALYZE_CHUNK,
            {
                "chunk": chunk,
                "chunkIndex": index,
                "totalChunks": total,
                "totalPages": total_pages,
            },
        )
        data = result.raise_for_error(ANALYZE_CHUNK)
        analysis = data.get("analysis")
        if not isinstance(analysis, str):
            raise CollaboratorError(f"Chunk {index + 1} failed: response has no analysis", task=ANALYZE_CHUNK)
        return analysis

    async def _analyze_with_retry(
        self,
        chunk: str,
        index: int,
        total: int,
        total_pages: int,
        cancel_token: Optional[CancellationToken],
    ) -> str:
        retry_count = 0
        while True:
            try:
                return await asyncio.wait_for(
                    self.analyze_chunk(chunk, index, total, total_pages),
                    timeout=self.config.call_timeout_seconds,
                )
            except (CollaboratorError, asyncio.TimeoutError) as error:
                message = str(error) or f"timed out after {self.config.call_timeout_seconds}s"

            if retry_count >= self.config.max_retries:
                emit_chunk_failure(chunk_index=index, attempts=retry_count + 1, error=message)
                return failure_marker(index, message)

            delay = self.config.backoff_delay(retry_count)
            emit_chunk_retry(
                chunk_index=index,
                attempt=retry_count + 1,
                delay_seconds=delay,
                error=message,
                rate_limited=is_rate_limit_message(message),
            )
            retry_count += 1
            if await cancellable_sleep(delay, cancel_token):
                return failure_marker(index, CANCELLED_REASON)

    @staticmethod
    async def _join_batch(
        tasks: Dict[int, "asyncio.Task[str]"],
        results: List[Optional[str]],
        cancel_token: Optional[CancellationToken],
    ) -> None:
        """Wait for every task, writing results back by chunk index.

        When *cancel_token* fires first, tasks still in flight are cancelled
        and their slots marked as failed.
        """

        pending = set(tasks.values())
        waiter = asyncio.create_task(cancel_token.wait()) if cancel_token is not None else None
        try:
            while pending:
                watched = (pending | {waiter}) if waiter is not None else pending
                done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
                pending -= done
                if waiter is not None and waiter in done:
                    break
        finally:
            if waiter is not None:
                waiter.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for index, task in tasks.items():
            if task.cancelled():
                results[index] = failure_marker(index, CANCELLED_REASON)
            elif task.exception() is not None:
                error = task.exception()
                LOGGER.error("Chunk %s analysis raised %r", index + 1, error)
                results[index] = failure_marker(index, str(error) or type(error).__name__)
            else:
                results[index] = task.result()

    def _load_cached(self, fingerprint: Optional[str], digest: Optional[str], total: int) -> Optional[List[str]]:
        if not fingerprint or self.cache is None:
            return None
        cached = self.cache.load(fingerprint, CachePhase.ANALYSES, digest=digest)
        if cached is None:
            return None
        if len(cached) != total:
            LOGGER.warning(
                "Ignoring cached analyses for %s: %s entries for %s chunks", fingerprint, len(cached), total
            )
            return None
        LOGGER.info("Using %s cached analyses for %s", total, fingerprint)
        return cached

    @staticmethod
    async def _report(callback: Optional[ChunkProgressCallback], progress: ChunkProgress) -> None:
        if callback is not None:
            await maybe_await(callback(progress))


__all__ = ["AnalysisStage"]
