"""Split entry text into overlapping word windows for embedding."""

from __future__ import annotations

import logging

from inkwell.constants import DEFAULT_CHUNK_OVERLAP, DEFAULT_CHUNK_SIZE

LOGGER = logging.getLogger(__name__)


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> list[str]:
    """Split text into windows of ``chunk_size`` words sharing ``overlap`` words.

    Args:
        text: The text to split.
        chunk_size: Maximum words per chunk.
        overlap: Words repeated at the start of each following chunk. Values
            of ``chunk_size`` or more are clamped to ``chunk_size - 1``.

    Returns:
        The chunks in order. Blank text yields no chunks; text that fits in
        one window is returned unchanged as a single chunk.

    """
    if chunk_size < 1:
        msg = f"chunk_size must be positive, got {chunk_size}"
        raise ValueError(msg)
    if not text.strip():
        return []
    if overlap >= chunk_size:
        LOGGER.debug("overlap (%d) >= chunk_size (%d), clamping", overlap, chunk_size)
        overlap = chunk_size - 1
    overlap = max(overlap, 0)

    words = text.split()
    if len(words) <= chunk_size:
        return [text]

    step = chunk_size - overlap
    chunks = []
    start = 0
    while start < len(words):
        end = min(start + chunk_size, len(words))
        chunks.append(" ".join(words[start:end]))
        if end >= len(words):
            break
        start += step

    LOGGER.debug(
        "Chunked %d words into %d chunks (size=%d, overlap=%d)",
        len(words),
        len(chunks),
        chunk_size,
        overlap,
    )
    return chunks
