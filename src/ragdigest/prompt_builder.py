"""Utilities for constructing the final consolidation prompt."""
from __future__ import annotations

from pathlib import Path
from typing import Sequence

_PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
_CONSOLIDATE_PROMPT_PATH = _PROMPTS_DIR / "consolidate.md"

SECTION_SEPARATOR = "\n\n---\n\n"
MAX_TARGET_PAGES = 30
TARGET_PAGE_RATIO = 0.4
TOKENS_PER_OUTPUT_PAGE = 80
MAX_OUTPUT_TOKENS = 5000


def _load_template(path: Path) -> str:
    """Read and trim the contents of a template file."""
    return path.read_text(encoding="utf-8").strip()


_CONSOLIDATE_TEMPLATE = _load_template(_CONSOLIDATE_PROMPT_PATH)


def target_pages_for(total_pages: int) -> int:
    return max(min(int(total_pages * TARGET_PAGE_RATIO), MAX_TARGET_PAGES), 1)


def max_output_tokens_for(total_pages: int) -> int:
    """Output budget requested from the consolidation call."""

    return min(MAX_OUTPUT_TOKENS, target_pages_for(total_pages) * TOKENS_PER_OUTPUT_PAGE)


def build_consolidation_prompt(
    sections: Sequence[str],
    user_goal: str,
    document_name: str,
    total_pages: int,
) -> str:
    """Compose the full prompt, instructions and metadata included."""

    if user_goal is None:
        raise ValueError("user_goal must not be None")

    count = len(sections)
    blocks = [f"\n[SECTION {index}/{count}]\n{section}" for index, section in enumerate(sections, start=1)]
    sections_block = SECTION_SEPARATOR.join(blocks) if blocks else "(no relevant sections)"

    return _CONSOLIDATE_TEMPLATE.format(
        document_name=document_name,
        total_pages=total_pages,
        sections=sections_block,
        user_goal=user_goal.strip(),
        target_pages=target_pages_for(total_pages),
    )


__all__ = ["build_consolidation_prompt", "max_output_tokens_for", "target_pages_for"]
