from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List

import pytest

from ragdigest.cache import CachePhase, DocumentCache, generate_fingerprint
from ragdigest.cancellation import CancellationToken
from ragdigest.config import PipelineConfig
from ragdigest.errors import BudgetExceededError, PipelineCancelledError, StageError
from ragdigest.logging_config import AUDIT_LOGGER_NAME
from ragdigest.models import Document
from ragdigest.progress import PipelinePhase, PipelineProgress
from ragdigest.providers.base import (
    ANALYZE_CHUNK,
    COMPRESS_SECTION,
    CONSOLIDATE,
    FILTER_RELEVANT,
    LOGICAL_SECTIONS,
    SYNTHESIZE_SECTION,
)
from ragdigest.providers.base import CollaboratorResult
from ragdigest.providers.mock import MockCollaborator
from ragdigest.services.pipeline import DocumentPipeline

MARKER = "Chapter 3: Termination of the agreement. "


def build_document() -> Document:
    filler = ("lorem ipsum dolor sit amet " * 14_000)[:350_000]
    content = filler[:119_000] + MARKER + filler[119_000 + len(MARKER) :]
    assert len(content) == 350_000
    return Document(content=content, total_pages=100, name="contract.pdf")


def fast_config(**overrides: Any) -> PipelineConfig:
    values: Dict[str, Any] = {"initial_backoff_seconds": 0.0, "inter_batch_delay_seconds": 0.0}
    values.update(overrides)
    return PipelineConfig(**values)


def tasks_of(collaborator: MockCollaborator) -> List[str]:
    return [task for task, _ in collaborator.calls]


def test_hundred_page_document_end_to_end(tmp_path: Path) -> None:
    collaborator = MockCollaborator()
    pipeline = DocumentPipeline(collaborator, cache=DocumentCache(tmp_path), config=fast_config(), credential="token")
    progress: List[PipelineProgress] = []

    async def runner() -> List[str]:
        return [token async for token in pipeline.run(build_document(), "summarize chapter 3", on_progress=progress.append)]

    tokens = asyncio.run(runner())

    calls = tasks_of(collaborator)
    assert calls.count(ANALYZE_CHUNK) == 6
    assert calls.count(SYNTHESIZE_SECTION) == 3
    assert calls.count(LOGICAL_SECTIONS) == 1
    assert calls.count(FILTER_RELEVANT) == 1
    assert COMPRESS_SECTION not in calls
    assert calls[-1] == CONSOLIDATE

    synth_payloads = [payload for task, payload in collaborator.calls if task == SYNTHESIZE_SECTION]
    assert [len(payload["analyses"]) for payload in synth_payloads] == [2, 2, 2]

    consolidate_payload = collaborator.calls[-1][1]
    assert len(consolidate_payload["sections"]) == 1
    assert "Chapter 3" in consolidate_payload["sections"][0]
    assert consolidate_payload["fileName"] == "contract.pdf"

    assert tokens
    assert "".join(tokens) == "MOCK_ANSWER: summarize chapter 3"

    phases = [item.phase for item in progress]
    assert phases[0] is PipelinePhase.CHUNKING
    assert PipelinePhase.ANALYSIS in phases
    assert PipelinePhase.SYNTHESIS in phases
    assert PipelinePhase.FILTERING in phases
    assert progress[-1].phase is PipelinePhase.CONSOLIDATION
    assert progress[-1].percent == 100.0
    assert all(0.0 <= item.percent <= 100.0 for item in progress)


def test_second_run_reuses_cached_sections(tmp_path: Path) -> None:
    cache = DocumentCache(tmp_path)
    document = build_document()

    first = MockCollaborator()
    asyncio.run(DocumentPipeline(first, cache=cache, config=fast_config()).prepare(document, "summarize chapter 3"))
    assert cache.load(generate_fingerprint(document.content), CachePhase.SECTIONS)

    second = MockCollaborator()
    sections = asyncio.run(
        DocumentPipeline(second, cache=cache, config=fast_config()).prepare(document, "summarize chapter 3")
    )

    assert tasks_of(second) == [FILTER_RELEVANT]
    assert len(sections) == 1


def test_prepare_stops_at_budget_error_before_streaming(tmp_path: Path) -> None:
    collaborator = MockCollaborator()
    config = fast_config(section_token_limit=10, compression_trigger_tokens=1_000_000)
    pipeline = DocumentPipeline(collaborator, cache=DocumentCache(tmp_path), config=config)

    async def runner() -> None:
        async for _ in pipeline.run(build_document(), "summarize chapter 3"):
            pass

    with pytest.raises(BudgetExceededError):
        asyncio.run(runner())
    assert CONSOLIDATE not in tasks_of(collaborator)


def test_empty_document_is_rejected() -> None:
    pipeline = DocumentPipeline(MockCollaborator(), config=fast_config())

    with pytest.raises(StageError) as excinfo:
        asyncio.run(pipeline.prepare(Document(content="", total_pages=1), "anything"))

    assert excinfo.value.stage == "chunking"


def test_cancelled_run_raises_at_next_boundary() -> None:
    collaborator = MockCollaborator()
    token = CancellationToken()
    token.cancel()
    pipeline = DocumentPipeline(collaborator, config=fast_config())

    with pytest.raises(PipelineCancelledError):
        asyncio.run(pipeline.prepare(build_document(), "goal", cancel_token=token))

    assert ANALYZE_CHUNK not in tasks_of(collaborator)


class RecordingHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: List[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def test_each_run_writes_one_audit_record() -> None:
    pipeline = DocumentPipeline(MockCollaborator(), config=fast_config())
    document = Document(content="Short chapter about payments. " * 20, total_pages=2, name="short.txt")
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    handler = RecordingHandler()
    previous_level = audit_logger.level
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)

    async def runner() -> str:
        return "".join([token async for token in pipeline.run(document, "payments")])

    try:
        answer = asyncio.run(runner())
    finally:
        audit_logger.removeHandler(handler)
        audit_logger.setLevel(previous_level)

    records = [record.msg for record in handler.records]
    assert answer == "MOCK_ANSWER: payments"
    assert len(records) == 1
    assert records[0]["status"] == "complete"
    assert records[0]["document_name"] == "short.txt"
    assert records[0]["chunks"] == 1


class FirstChunkUnavailable(MockCollaborator):
    async def invoke(self, task: str, payload: Dict[str, Any]) -> CollaboratorResult:
        if task == ANALYZE_CHUNK and payload.get("chunkIndex") == 0:
            self.calls.append((task, payload))
            return CollaboratorResult(error="HTTP 503: service unavailable", status_code=503)
        return await super().invoke(task, payload)


def test_partial_failure_leaves_nothing_cached_for_the_next_run(tmp_path: Path) -> None:
    cache = DocumentCache(tmp_path)
    document = build_document()
    fingerprint = generate_fingerprint(document.content)

    asyncio.run(
        DocumentPipeline(FirstChunkUnavailable(), cache=cache, config=fast_config(max_retries=0)).prepare(
            document, "summarize chapter 3"
        )
    )
    assert cache.load(fingerprint, CachePhase.SECTIONS) is None
    assert cache.load(fingerprint, CachePhase.ANALYSES) is None

    healthy = MockCollaborator()
    asyncio.run(DocumentPipeline(healthy, cache=cache, config=fast_config()).prepare(document, "summarize chapter 3"))

    assert tasks_of(healthy).count(ANALYZE_CHUNK) == 6
    assert cache.load(fingerprint, CachePhase.SECTIONS)
