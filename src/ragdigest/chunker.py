from __future__ import annotations

import logging
from typing import List

from .models import Chunk

LOGGER = logging.getLogger(__name__)

CHARS_PER_PAGE = 3500
MAX_CHUNK_CHARS = 120_000
OVERLAP_RATIO = 0.15

# (max total pages, pages per chunk); anything larger uses _LARGEST_PAGES_PER_CHUNK.
_PAGE_STEPS: tuple[tuple[int, int], ...] = (
    (30, 15),
    (50, 15),
    (100, 20),
    (200, 20),
    (500, 25),
)
_LARGEST_PAGES_PER_CHUNK = 30


def pages_per_chunk(total_pages: int) -> int:
    """Return how many source pages one chunk should span."""

    for max_pages, pages in _PAGE_STEPS:
        if total_pages <= max_pages:
            return pages
    return _LARGEST_PAGES_PER_CHUNK


def chunk_size_for(total_pages: int) -> int:
    return min(pages_per_chunk(total_pages) * CHARS_PER_PAGE, MAX_CHUNK_CHARS)


def overlap_for(chunk_size: int) -> int:
    return int(chunk_size * OVERLAP_RATIO)


def create_chunks(content: str, total_pages: int) -> List[Chunk]:
    """Split *content* into overlapping windows sized from *total_pages*.

    Consecutive chunks share ``overlap_for(chunk_size)`` characters. The last
    chunk is cut at the end of the document, so every character of *content*
    belongs to at least one chunk and no chunk is empty.
    """

    if not content:
        return []

    chunk_size = chunk_size_for(total_pages)
    overlap = overlap_for(chunk_size)
    advance = chunk_size - overlap
    if advance <= 0:  # pragma: no cover - guarded by OVERLAP_RATIO < 1
        raise ValueError("chunk overlap must be smaller than the chunk size")

    text_length = len(content)
    chunks: List[Chunk] = []
    start = 0

    while start < text_length:
        end = min(start + chunk_size, text_length)
        chunks.append(Chunk(index=len(chunks), start=start, end=end, text=content[start:end]))
        if end == text_length:
            break
        start += advance

    LOGGER.info(
        "Created %s chunks (%s pages, chunk_size=%s, overlap=%s)",
        len(chunks),
        total_pages,
        chunk_size,
        overlap,
    )
    return chunks


__all__ = [
    "CHARS_PER_PAGE",
    "MAX_CHUNK_CHARS",
    "chunk_size_for",
    "create_chunks",
    "overlap_for",
    "pages_per_chunk",
]
