from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from ragdigest.cache import CachePhase, DocumentCache, content_digest, generate_fingerprint
from ragdigest.cancellation import CancellationToken
from ragdigest.chunker import create_chunks
from ragdigest.config import CollaboratorSettings, PipelineConfig, cache_dir_from_env
from ragdigest.errors import PipelineError, StageError
from ragdigest.logging_config import AUDIT_LOGGER_NAME
from ragdigest.models import ConsolidationRequest, Document, LogicalSection, is_failure_marker
from ragdigest.progress import PipelinePhase, ProgressCallback, ProgressTracker
from ragdigest.providers import get_collaborator
from ragdigest.providers.base import Collaborator
from ragdigest.stages.analysis import AnalysisStage
from ragdigest.stages.budget import BudgetEnforcer
from ragdigest.stages.consolidation import ConsolidationStreamer
from ragdigest.stages.relevance import RelevanceFilter
from ragdigest.stages.segmentation import LogicalSegmentation
from ragdigest.stages.synthesis import SynthesisStage, group_analyses
from ragdigest.telemetry import emit_exception, emit_stage_event

LOGGER = logging.getLogger(__name__)
AUDIT_LOGGER = logging.getLogger(AUDIT_LOGGER_NAME)

EMPTY_DOCUMENT_MESSAGE = "The document has no text to process."


@dataclass(slots=True)
class PreparedDigest:
    """Everything needed to open the consolidation stream for one run."""

    fingerprint: str
    document_name: str
    sections: List[str]
    request: ConsolidationRequest
    chunk_count: int
    failed_chunks: int
    sections_from_cache: bool
    started: float


class DocumentPipeline:
    """Chunk, analyse, synthesise, segment, filter, compress and consolidate a document."""

    def __init__(
        self,
        collaborator: Collaborator,
        cache: DocumentCache | None = None,
        config: PipelineConfig | None = None,
        credential: str | None = None,
    ) -> None:
        self.collaborator = collaborator
        self.cache = cache
        self.config = config or PipelineConfig()
        self.credential = credential

        self.analysis = AnalysisStage(collaborator, config=self.config, cache=cache)
        self.synthesis = SynthesisStage(collaborator, config=self.config)
        self.segmentation = LogicalSegmentation(collaborator)
        self.relevance = RelevanceFilter(collaborator)
        self.budget = BudgetEnforcer(collaborator, config=self.config)
        self.consolidation = ConsolidationStreamer(collaborator, config=self.config, credential=credential)

    async def run(
        self,
        document: Document,
        user_goal: str,
        *,
        document_name: str | None = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """Yield the consolidated answer token by token."""

        tracker = ProgressTracker(document.total_pages, on_progress)
        prepared = await self.prepare_digest(
            document,
            user_goal,
            document_name=document_name,
            tracker=tracker,
            cancel_token=cancel_token,
        )
        tokens = self.stream(prepared, tracker=tracker, cancel_token=cancel_token)
        try:
            async for token in tokens:
                yield token
        finally:
            await tokens.aclose()

    async def prepare(
        self,
        document: Document,
        user_goal: str,
        *,
        document_name: str | None = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[str]:
        """Run every stage before consolidation and return the final section texts."""

        prepared = await self.prepare_digest(
            document,
            user_goal,
            document_name=document_name,
            tracker=ProgressTracker(document.total_pages, on_progress),
            cancel_token=cancel_token,
        )
        return prepared.sections

    async def prepare_digest(
        self,
        document: Document,
        user_goal: str,
        *,
        document_name: str | None = None,
        tracker: ProgressTracker | None = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PreparedDigest:
        started = time.perf_counter()
        name = document_name or document.name
        tracker = tracker or ProgressTracker(document.total_pages)
        fingerprint = generate_fingerprint(document.content)
        digest = content_digest(document.content)
        chunk_count = 0
        failed_chunks = 0

        try:
            await tracker.update(PipelinePhase.CHUNKING, 0.0, "Checking cache")
            logical_sections = self._load_sections(fingerprint, digest)
            from_cache = logical_sections is not None

            if logical_sections is None:
                chunks = create_chunks(document.content, document.total_pages)
                if not chunks:
                    raise StageError("Document content is empty", stage="chunking", user_message=EMPTY_DOCUMENT_MESSAGE)
                chunk_count = len(chunks)
                await tracker.update(PipelinePhase.CHUNKING, 100.0, f"Created {chunk_count} chunks")
                self._check_cancelled(cancel_token)

                analyses = await self.analysis.analyze_chunks(
                    chunks,
                    document.total_pages,
                    tracker.on_chunk_progress,
                    fingerprint,
                    digest=digest,
                    cancel_token=cancel_token,
                )
                self._check_cancelled(cancel_token)
                failed_chunks = sum(1 for analysis in analyses if is_failure_marker(analysis))

                group_total = len(group_analyses(analyses, self.config.synthesis_group_count))
                started_groups = 0

                async def on_synthesis(status: str) -> None:
                    nonlocal started_groups
                    await tracker.update(
                        PipelinePhase.SYNTHESIS,
                        100.0 * started_groups / group_total if group_total else 100.0,
                        status,
                        completed_steps=started_groups,
                        total_steps=group_total,
                    )
                    started_groups += 1

                syntheses = await self.synthesis.synthesize_sections(
                    analyses, on_synthesis, cancel_token=cancel_token
                )
                self._check_cancelled(cancel_token)

                await tracker.update(PipelinePhase.SYNTHESIS, 100.0, "Identifying logical sections")
                logical_sections = await self.segmentation.create_logical_sections(syntheses)
                self._check_cancelled(cancel_token)
                if self.cache is not None and failed_chunks == 0:
                    self.cache.save(fingerprint, CachePhase.SECTIONS, logical_sections, digest=digest)
                elif failed_chunks:
                    LOGGER.warning(
                        "Not caching sections for %s: %s of %s chunks failed", fingerprint, failed_chunks, chunk_count
                    )

            await tracker.update(
                PipelinePhase.FILTERING,
                0.0,
                f"Selecting sections relevant to the request ({len(logical_sections)} candidates)",
            )
            relevant = await self.relevance.filter_relevant_sections(logical_sections, user_goal)
            self._check_cancelled(cancel_token)

            await tracker.update(PipelinePhase.FILTERING, 50.0, "Checking token budget")
            sections = await self.budget.enforce(relevant, cancel_token=cancel_token)
            request = self.consolidation.build_request(sections, user_goal, name, document.total_pages)
            await tracker.update(PipelinePhase.FILTERING, 100.0, f"{len(sections)} sections ready")
        except PipelineError as error:
            self._audit("failed", fingerprint, name, started, chunks=chunk_count, failed_chunks=failed_chunks, error=error)
            raise

        return PreparedDigest(
            fingerprint=fingerprint,
            document_name=name,
            sections=sections,
            request=request,
            chunk_count=chunk_count,
            failed_chunks=failed_chunks,
            sections_from_cache=from_cache,
            started=started,
        )

    async def stream(
        self,
        prepared: PreparedDigest,
        *,
        tracker: ProgressTracker | None = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """Relay the consolidation stream for an already prepared run."""

        tracker = tracker or ProgressTracker(prepared.request.total_pages)
        await tracker.update(PipelinePhase.CONSOLIDATION, 0.0, "Generating answer")
        tokens = 0
        status = "complete"
        error: PipelineError | None = None
        relay = self.consolidation.stream_request(prepared.request, cancel_token=cancel_token)
        try:
            async for token in relay:
                tokens += 1
                yield token
            if cancel_token is not None and cancel_token.cancelled:
                status = "cancelled"
            else:
                await tracker.update(PipelinePhase.CONSOLIDATION, 100.0, "Done")
        except PipelineError as exc:
            status = "failed"
            error = exc
            raise
        except GeneratorExit:
            status = "closed"
            raise
        finally:
            await relay.aclose()
            self._audit(
                status,
                prepared.fingerprint,
                prepared.document_name,
                prepared.started,
                chunks=prepared.chunk_count,
                failed_chunks=prepared.failed_chunks,
                sections=len(prepared.sections),
                sections_from_cache=prepared.sections_from_cache,
                tokens=tokens,
                error=error,
            )

    def _load_sections(self, fingerprint: str, digest: str) -> Optional[List[LogicalSection]]:
        if self.cache is None:
            return None
        cached = self.cache.load(fingerprint, CachePhase.SECTIONS, digest=digest)
        if cached:
            LOGGER.info("Using %s cached logical sections for %s", len(cached), fingerprint)
            return cached
        return None

    @staticmethod
    def _check_cancelled(cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

    @staticmethod
    def _audit(
        status: str,
        fingerprint: str,
        document_name: str,
        started: float,
        *,
        error: BaseException | None = None,
        **counts: object,
    ) -> None:
        entry: dict[str, object] = {
            "event": "pipeline_run",
            "status": status,
            "fingerprint": fingerprint,
            "document_name": document_name,
            "duration_ms": round((time.perf_counter() - started) * 1000.0, 3),
        }
        entry.update(counts)
        if error is not None:
            entry["error"] = str(error)
            emit_exception(module=__name__, error=error, fingerprint=fingerprint)
        AUDIT_LOGGER.info(entry)
        emit_stage_event("pipeline", status, duration_ms=entry["duration_ms"], fingerprint=fingerprint)


_pipeline: DocumentPipeline | None = None


def build_pipeline() -> DocumentPipeline:
    """Assemble a pipeline from ``RAG_*`` environment settings."""

    config = PipelineConfig.from_env()
    settings = CollaboratorSettings.from_env()
    cache = DocumentCache(cache_dir_from_env(), ttl_seconds=config.cache_ttl_seconds)
    return DocumentPipeline(get_collaborator(), cache=cache, config=config, credential=settings.token)


def get_pipeline() -> DocumentPipeline:
    """FastAPI dependency returning the shared :class:`DocumentPipeline` instance."""

    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


__all__ = ["DocumentPipeline", "PreparedDigest", "build_pipeline", "get_pipeline"]
