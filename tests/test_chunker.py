import random
import string

import pytest

from ragdigest.chunker import MAX_CHUNK_CHARS, chunk_size_for, create_chunks, overlap_for, pages_per_chunk


def generate_text(length: int) -> str:
    random.seed(42)
    alphabet = string.ascii_letters + " абвгдеёжзийклмнопрстуфхцчшщъыьэюя"
    return "".join(random.choice(alphabet) for _ in range(length))


@pytest.mark.parametrize(
    ("total_pages", "expected"),
    [(1, 15), (30, 15), (31, 15), (50, 15), (51, 20), (100, 20), (200, 20), (201, 25), (500, 25), (501, 30), (5000, 30)],
)
def test_pages_per_chunk_step_function(total_pages: int, expected: int) -> None:
    assert pages_per_chunk(total_pages) == expected


def test_chunk_size_never_exceeds_hard_cap() -> None:
    for total_pages in range(0, 3000, 7):
        assert chunk_size_for(total_pages) <= MAX_CHUNK_CHARS
    assert chunk_size_for(100) == 70_000
    assert overlap_for(70_000) == 10_500


def test_create_chunks_covers_entire_input() -> None:
    text = generate_text(200_000)

    chunks = create_chunks(text, total_pages=20)

    assert chunks, "Expected at least one chunk"
    assert chunks[0].start == 0
    assert chunks[-1].end == len(text)

    coverage = [False] * len(text)
    previous_end = 0
    for position, chunk in enumerate(chunks):
        assert chunk.index == position
        assert 0 <= chunk.start < chunk.end <= len(text)
        assert chunk.start <= previous_end
        assert chunk.text == text[chunk.start : chunk.end]
        for index in range(max(chunk.start, previous_end), chunk.end):
            coverage[index] = True
        previous_end = chunk.end

    assert all(coverage)

    # Dropping each chunk's overlap with its predecessor rebuilds the text exactly.
    rebuilt = chunks[0].text + "".join(
        chunk.text[chunks[i].end - chunk.start :] for i, chunk in enumerate(chunks[1:])
    )
    assert rebuilt == text


def test_consecutive_chunks_share_overlap() -> None:
    text = generate_text(150_000)
    chunks = create_chunks(text, total_pages=10)

    size = chunk_size_for(10)
    overlap = overlap_for(size)
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start == previous.start + size - overlap
        assert previous.end - current.start == overlap
    assert all(len(chunk.text) <= size for chunk in chunks)


def test_short_document_yields_single_chunk() -> None:
    chunks = create_chunks("short document", total_pages=1)

    assert len(chunks) == 1
    assert chunks[0].text == "short document"


def test_empty_document_yields_no_chunks() -> None:
    assert create_chunks("", total_pages=5) == []


def test_hundred_page_document_chunking() -> None:
    text = "x" * 350_000

    chunks = create_chunks(text, total_pages=100)

    assert [chunk.start for chunk in chunks] == [0, 59_500, 119_000, 178_500, 238_000, 297_500]
    assert all(len(chunk.text) <= 70_000 for chunk in chunks)
    assert chunks[-1].end == 350_000
