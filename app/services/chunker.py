# =============================================================================
# Character-Window Text Chunker
# =============================================================================
#
# Splits extracted document text into overlapping fixed-size windows.
#
# ALGORITHM:
#   cursor = 0
#   while cursor < len(text):
#       emit text[cursor : cursor + size]
#       cursor += size - overlap
#
# If overlap >= size the step would be zero or negative; the cursor then
# jumps to the end of the window just emitted, so the loop always advances.
#
# For L characters with overlap < size this yields ceil(L / (size - overlap))
# windows (zero for empty text): 2500 characters at size=1000, overlap=200
# gives windows starting at 0, 800, 1600 and 2400. Consecutive windows share
# their overlapping characters, so text[i * step : (i + 1) * step] taken from
# each window reconstructs the input exactly.
# =============================================================================

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


def chunk_text(text: str, size: int = 1000, overlap: int = 200) -> list[str]:
    """
    Split text into consecutive overlapping windows of `size` characters.

    Args:
        text: The full document text.
        size: Window length in characters (default 1000).
        overlap: Characters shared by consecutive windows (default 200).

    Returns:
        Windows in document order. Empty text returns an empty list; callers
        must handle the zero-chunk case.

    Raises:
        ValueError: If size is not positive or overlap is negative.
    """
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    if overlap < 0:
        raise ValueError(f"chunk overlap must be non-negative, got {overlap}")

    chunks: list[str] = []
    step = size - overlap
    cursor = 0
    length = len(text)

    while cursor < length:
        end = min(cursor + size, length)
        chunks.append(text[cursor:end])
        cursor = cursor + step if step > 0 else end

    logger.debug(
        "Chunked %d characters into %d chunks (size=%d, overlap=%d)",
        length, len(chunks), size, overlap,
    )
    return chunks
