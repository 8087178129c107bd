"""API router exposing the streaming document digest endpoint."""
from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ragdigest.errors import BudgetExceededError, PipelineError
from ragdigest.models import Document
from ragdigest.services.pipeline import DocumentPipeline, PreparedDigest, get_pipeline

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["digest"])

DONE_EVENT = "data: [DONE]\n\n"


class DigestRequest(BaseModel):
    """Request body accepted by the digest endpoint."""

    content: str = Field(..., min_length=1, description="Full extracted text of the document.")
    total_pages: int = Field(..., ge=1, description="Page count reported for the document.")
    document_name: str = Field("document", min_length=1, description="Display name used in the prompt.")
    user_goal: str = Field(..., min_length=1, description="What the user wants to learn from the document.")


def format_token_event(token: str) -> str:
    payload = {"choices": [{"delta": {"content": token}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def format_error_event(message: str) -> str:
    return f"event: error\ndata: {json.dumps({'error': message}, ensure_ascii=False)}\n\n"


async def _event_stream(pipeline: DocumentPipeline, prepared: PreparedDigest) -> AsyncIterator[str]:
    tokens = pipeline.stream(prepared)
    try:
        async for token in tokens:
            yield format_token_event(token)
    except PipelineError as exc:
        LOGGER.warning("Digest stream for %s failed: %s", prepared.document_name, exc)
        yield format_error_event(exc.user_message)
        return
    finally:
        await tokens.aclose()
    yield DONE_EVENT


@router.post("/digest")
async def digest_document(
    request: DigestRequest,
    pipeline: DocumentPipeline = Depends(get_pipeline),
) -> StreamingResponse:
    """Run the pipeline and stream the consolidated answer as server-sent events."""

    if not request.content.strip():
        raise HTTPException(status_code=422, detail="Document content must not be empty")
    if not request.user_goal.strip():
        raise HTTPException(status_code=422, detail="User goal must not be empty")

    document = Document(content=request.content, total_pages=request.total_pages, name=request.document_name)
    try:
        prepared = await pipeline.prepare_digest(document, request.user_goal)
    except BudgetExceededError as exc:
        raise HTTPException(status_code=413, detail=exc.user_message) from exc
    except PipelineError as exc:
        raise HTTPException(status_code=502, detail=exc.user_message) from exc

    return StreamingResponse(
        _event_stream(pipeline, prepared),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
