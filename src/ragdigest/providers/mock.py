"""Deterministic collaborator for tests and offline runs."""
from __future__ import annotations

import json
import re
from typing import Any, AsyncIterator, Dict, List

from .base import (
    ANALYZE_CHUNK,
    COMPRESS_SECTION,
    CONSOLIDATE,
    FILTER_RELEVANT,
    LOGICAL_SECTIONS,
    SYNTHESIZE_SECTION,
    Collaborator,
    CollaboratorResult,
)

SECTION_DELIMITER = "\n\n---\n\n"
_WORD_RE = re.compile(r"\w+", re.UNICODE)


class MockCollaborator(Collaborator):
    """Answer every task with a predictable transformation of its payload."""

    def __init__(self) -> None:
        self.calls: List[tuple[str, Dict[str, Any]]] = []

    async def invoke(self, task: str, payload: Dict[str, Any]) -> CollaboratorResult:
        self.calls.append((task, payload))
        handler = {
            ANALYZE_CHUNK: self._analyze,
            SYNTHESIZE_SECTION: self._synthesize,
            LOGICAL_SECTIONS: self._logical_sections,
            FILTER_RELEVANT: self._filter,
            COMPRESS_SECTION: self._compress,
        }.get(task)
        if handler is None:
            return CollaboratorResult(error=f"unknown task {task}", status_code=404)
        return CollaboratorResult(data=handler(payload), status_code=200)

    async def stream(
        self,
        task: str,
        payload: Dict[str, Any],
        *,
        credential: str | None = None,
    ) -> AsyncIterator[str]:
        del credential  # The mock backend does not authenticate.
        self.calls.append((task, payload))
        answer = f"MOCK_ANSWER: {payload.get('userMessage', '')}".strip()
        words = answer.split(" ")
        for index, word in enumerate(words):
            token = word if index == 0 else f" {word}"
            yield "data: " + json.dumps({"choices": [{"delta": {"content": token}}]})
            yield ""
        yield "data: [DONE]"

    @staticmethod
    def _analyze(payload: Dict[str, Any]) -> Dict[str, Any]:
        index = int(payload.get("chunkIndex", 0))
        total = int(payload.get("totalChunks", 1))
        chunk = str(payload.get("chunk", ""))
        return {"analysis": f"## Chunk {index + 1}/{total}\n{chunk[:400]}"}

    @staticmethod
    def _synthesize(payload: Dict[str, Any]) -> Dict[str, Any]:
        index = int(payload.get("sectionIndex", 0))
        analyses = [str(item) for item in payload.get("analyses", [])]
        return {"synthesis": f"# Part {index + 1}\n" + "\n\n".join(analyses)}

    @staticmethod
    def _logical_sections(payload: Dict[str, Any]) -> Dict[str, Any]:
        content = str(payload.get("synthesizedContent", ""))
        sections = []
        for index, part in enumerate(content.split(SECTION_DELIMITER)):
            part = part.strip()
            if not part:
                continue
            title = part.splitlines()[0].lstrip("# ").strip() or f"Section {index + 1}"
            keywords = sorted({word.lower() for word in _WORD_RE.findall(part)[:8]})
            sections.append({"title": title, "content": part, "keywords": keywords})
        return {"sections": sections}

    @staticmethod
    def _filter(payload: Dict[str, Any]) -> Dict[str, Any]:
        sections = list(payload.get("sections", []))
        goal_words = {word.lower() for word in _WORD_RE.findall(str(payload.get("userMessage", ""))) if len(word) > 3}
        kept = [
            section
            for section in sections
            if goal_words & {word.lower() for word in _WORD_RE.findall(str(section.get("content", "")))}
        ]
        if not kept:
            kept = sections
            reasoning = "No section matched the goal directly; keeping all sections."
        else:
            reasoning = f"Kept sections mentioning: {', '.join(sorted(goal_words))}."
        return {"sections": kept, "reasoning": reasoning}

    @staticmethod
    def _compress(payload: Dict[str, Any]) -> Dict[str, Any]:
        section = str(payload.get("section", ""))
        return {"compressed": section[: int(len(section) * 0.4)]}


__all__ = ["MockCollaborator", "SECTION_DELIMITER"]
