"""Text chunking for knowledge entries.

Provides:
- normalize_text: whitespace/control-character cleanup applied before chunking
- chunk_text: overlapping, boundary-aware character chunking used by the indexing job
- chunk_sections: paragraph packing for callers that prefer non-overlapping sections

chunk_text guarantees:
- every chunk is at most max_size characters
- consecutive chunks share exactly `overlap` characters (chunks[i][-overlap:] == chunks[i+1][:overlap])
- identical input and parameters always produce identical output
"""
import re
from typing import List

# Hard safety cap (~0.5 MB of text) applied before any regex work
MAX_CHARS = 500_000

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_INLINE_SPACE = re.compile(r"[ \t\f\v\r]+")
_SPACE_AROUND_NEWLINE = re.compile(r" ?\n ?")
_MANY_NEWLINES = re.compile(r"\n{3,}")
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")

_SENTENCE_ENDINGS = (". ", "? ", "! ", ".\n", "?\n", "!\n")

# Boundary search only looks at the last fifth of a window so chunks stay close to max_size
_BOUNDARY_SEARCH_FRACTION = 0.8


def normalize_text(text: str) -> str:
    """Clean text before chunking.

    Removes control characters (except newline and tab), collapses runs of inline
    whitespace to one space, collapses 3+ newlines into a paragraph break and
    strips outer whitespace.

    Args:
        text: Raw entry body.

    Returns:
        str: Normalized text (possibly empty).
    """
    if len(text) > MAX_CHARS:
        text = text[:MAX_CHARS]
    text = text.replace("\r\n", "\n")
    text = _CONTROL_CHARS.sub("", text)
    text = _INLINE_SPACE.sub(" ", text)
    text = _SPACE_AROUND_NEWLINE.sub("\n", text)
    text = _MANY_NEWLINES.sub("\n\n", text)
    return text.strip()


def _find_cut(text: str, start: int, end: int, min_end: int) -> int:
    """Pick the end offset of a non-final window, preferring semantic boundaries.

    Order of preference inside [search_from, end]: paragraph break, sentence end,
    any whitespace. Falls back to the hard window end.
    """
    search_from = max(min_end, start + int((end - start) * _BOUNDARY_SEARCH_FRACTION))
    if search_from >= end:
        return end
    region = text[search_from:end]

    pos = region.rfind("\n\n")
    if pos != -1:
        return search_from + pos + 2

    best = -1
    for ending in _SENTENCE_ENDINGS:
        p = region.rfind(ending)
        if p != -1:
            best = max(best, p + len(ending))
    if best > 0:
        return search_from + best

    for i in range(len(region) - 1, -1, -1):
        if region[i].isspace():
            return search_from + i + 1

    return end


def chunk_text(text: str, max_size: int, overlap: int) -> List[str]:
    """Split text into overlapping chunks of at most max_size characters.

    Args:
        text: Input string to split.
        max_size: Maximum chunk size in characters.
        overlap: Characters shared by consecutive chunks; 0 < overlap < max_size.

    Returns:
        List[str]: Ordered chunks; empty list for empty/whitespace-only input.

    Raises:
        ValueError: If the size/overlap preconditions do not hold.
    """
    if max_size <= 0 or overlap <= 0 or overlap >= max_size:
        raise ValueError(
            f"chunking requires 0 < overlap < max_size (got max_size={max_size}, overlap={overlap})"
        )

    text = normalize_text(text or "")
    if not text:
        return []
    n = len(text)
    if n <= max_size:
        return [text]

    chunks: List[str] = []
    start = 0
    while True:
        end = min(n, start + max_size)
        if end < n:
            # leave room for the overlap plus at least one new character
            end = _find_cut(text, start, end, min_end=start + overlap + 1)
        chunks.append(text[start:end])
        if end >= n:
            break
        start = end - overlap
    return chunks


def chunk_sections(text: str, max_size: int = 1500, overlap: int = 100) -> List[str]:
    """Pack whole paragraphs into chunks of at most max_size characters.

    Paragraphs larger than max_size are split with chunk_text. Packed chunks do
    not overlap.

    Args:
        text: Input string; paragraphs are separated by blank lines.
        max_size: Maximum chunk size in characters.
        overlap: Overlap used only when an oversized paragraph is split.

    Returns:
        List[str]: Ordered chunks.
    """
    chunks: List[str] = []
    current = ""
    for section in _PARAGRAPH_SPLIT.split(normalize_text(text or "")):
        section = section.strip()
        if not section:
            continue
        if len(section) > max_size:
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(chunk_text(section, max_size, min(overlap, max_size - 1)))
            continue
        if not current:
            current = section
        elif len(current) + len(section) + 2 <= max_size:
            current = f"{current}\n\n{section}"
        else:
            chunks.append(current)
            current = section
    if current:
        chunks.append(current)
    return chunks
