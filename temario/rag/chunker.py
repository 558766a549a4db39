"""
Chunker module for splitting ingested legal/reference text into sections.

Two entry points:
    - section(): splits a document into ordered, titled sections using
      structural headers ("Artículo 42", "Art. 7", "Capítulo IV",
      "Título II", "Sección 2", "Tema 3"), falling back to paragraph
      splitting and finally to the whole text.
    - windows(): splits arbitrary long text into fixed-size overlapping
      windows for embedding when the text exceeds the provider's input budget.

Both are pure: the same input always yields the same output.
"""

import logging
import re
from typing import Iterator, List

from temario.models.document import SectionDraft

logger = logging.getLogger(__name__)

# Sections shorter than this are header noise (e.g. an index line "Artículo 3 ....... 12")
SECTION_MIN_CHARS = 100
# Hard cap per section to keep a single runaway article from dominating storage
SECTION_MAX_CHARS = 50000
# Paragraph fallback keeps only substantial paragraphs
PARAGRAPH_MIN_CHARS = 200
MAX_SECTIONS = 100

FALLBACK_TITLE = "Contenido completo"
# Text before the first structural header (exposición de motivos, index, etc.)
PREAMBLE_TITLE = "Preámbulo"

# Header markers and their canonical section labels, keyed by the first
# three lowercase letters of the marker
_MARKERS = r"Art[íi]culo|Art[º.]|Cap[íi]tulo|Cap\.|T[íi]tulo|T[íi]t\.|Secci[óo]n|Secc\.|Tema"
_LABELS = {
    "art": "Artículo",
    "cap": "Capítulo",
    "tit": "Título",
    "tít": "Título",
    "sec": "Sección",
    "tem": "Tema",
}
# Arabic numbers ("205.1", "3-bis" style) or uppercase roman numerals ("IV")
_NUMBER = r"\d+(?:[.\-]\d+)?|(?-i:[IVXLCDM]+)\b"

# One single-pass pattern: a header at the start of a line, its marker number,
# and the body up to the next header or the end of the text.
_HEADER = rf"^[ \t]*({_MARKERS})\s+({_NUMBER})"
SECTION_PATTERN = re.compile(
    _HEADER + rf"[:.\s](.*?)(?=^[ \t]*(?:{_MARKERS})\s+(?:{_NUMBER})[:.\s]|\Z)",
    re.IGNORECASE | re.DOTALL | re.MULTILINE,
)

_BLANK_LINES = re.compile(r"\n[ \t]*\n+")
_INLINE_SPACES = re.compile(r"[^\S\n]+")
_EXTRA_NEWLINES = re.compile(r"\n{3,}")


def section(raw_text: str) -> List[SectionDraft]:
    """Split raw document text into ordered, titled sections.

    Args:
        raw_text: Full text produced by the extraction step.

    Returns:
        List of SectionDraft in document order. Empty for empty input;
        the caller decides whether that is an ingestion failure.
    """
    if not raw_text or not raw_text.strip():
        logger.warning("[CHUNKER] Empty text, no sections produced")
        return []

    sections = _structural_sections(raw_text)
    strategy = "structural"

    if not sections:
        sections = _paragraph_sections(raw_text)
        strategy = "paragraph"

    if not sections:
        sections = [SectionDraft(
            title=FALLBACK_TITLE,
            content=raw_text.strip()[:SECTION_MAX_CHARS],
            order=0,
        )]
        strategy = "whole-text"

    if len(sections) > MAX_SECTIONS:
        logger.warning(
            f"[CHUNKER] {len(sections)} sections found, keeping first {MAX_SECTIONS}"
        )
        sections = sections[:MAX_SECTIONS]

    logger.info(
        f"[CHUNKER] Created {len(sections)} sections ({strategy}) "
        f"from {len(raw_text):,} chars"
    )
    return sections


def _structural_sections(text: str) -> List[SectionDraft]:
    matches = list(SECTION_PATTERN.finditer(text))
    headed = []
    for match in matches:
        content = match.group(0).strip()
        if len(content) <= SECTION_MIN_CHARS:
            continue

        keyword, number = match.group(1), match.group(2)
        label = _LABELS[keyword.lower()[:3]]
        headed.append((f"{label} {number}", content))
        logger.debug(f"[CHUNKER] {label} {number} ({len(content):,} chars)")

    if not headed:
        return []

    preamble = text[:matches[0].start()].strip()
    if len(preamble) > SECTION_MIN_CHARS:
        headed.insert(0, (PREAMBLE_TITLE, preamble))
        logger.debug(f"[CHUNKER] {PREAMBLE_TITLE} ({len(preamble):,} chars)")

    return [
        SectionDraft(title=title, content=content[:SECTION_MAX_CHARS], order=order)
        for order, (title, content) in enumerate(headed)
    ]


def _paragraph_sections(text: str) -> List[SectionDraft]:
    sections = []
    for paragraph in _BLANK_LINES.split(text):
        paragraph = paragraph.strip()
        if len(paragraph) <= PARAGRAPH_MIN_CHARS:
            continue
        sections.append(SectionDraft(
            title=f"Sección {len(sections) + 1}",
            content=paragraph[:SECTION_MAX_CHARS],
            order=len(sections),
        ))
    return sections


class TextWindows:
    """Lazy, finite, restartable sequence of overlapping text windows.

    Iterating twice yields the same windows; callers may stop early.
    Consecutive windows share exactly `overlap_chars` characters.
    """

    def __init__(self, text: str, max_chars: int, overlap_chars: int):
        if max_chars <= 0:
            raise ValueError("max_chars must be positive")
        if overlap_chars < 0:
            raise ValueError("overlap_chars cannot be negative")
        if overlap_chars >= max_chars:
            raise ValueError("overlap_chars must be smaller than max_chars")
        self.text = text or ""
        self.max_chars = max_chars
        self.overlap_chars = overlap_chars

    @property
    def step(self) -> int:
        return self.max_chars - self.overlap_chars

    def __iter__(self) -> Iterator[str]:
        total = len(self.text)
        start = 0
        while start < total:
            end = min(total, start + self.max_chars)
            yield self.text[start:end]
            if end >= total:
                break
            start += self.step

    def __len__(self) -> int:
        total = len(self.text)
        if total == 0:
            return 0
        if total <= self.max_chars:
            return 1
        # ceil((total - max_chars) / step) extra windows after the first
        return 1 + -(-(total - self.max_chars) // self.step)


def windows(text: str, max_chars: int, overlap_chars: int = 0) -> TextWindows:
    """Split text into fixed-size windows overlapping by `overlap_chars`.

    Args:
        text: Text to split.
        max_chars: Window size in characters.
        overlap_chars: Characters shared by consecutive windows.

    Returns:
        A restartable iterable of window strings.

    Raises:
        ValueError: If the size/overlap combination cannot make progress.
    """
    return TextWindows(text, max_chars, overlap_chars)


def clean_text(text: str) -> str:
    """Normalize whitespace for embedding and query input.

    Collapses runs of spaces/tabs, keeps at most one blank line between
    paragraphs and strips the ends.
    """
    if not text:
        return ""
    text = text.replace("\r\n", "\n")
    text = _INLINE_SPACES.sub(" ", text)
    text = re.sub(r" ?\n ?", "\n", text)
    text = _EXTRA_NEWLINES.sub("\n\n", text)
    return text.strip()
