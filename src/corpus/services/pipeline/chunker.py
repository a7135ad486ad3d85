from __future__ import annotations

from corpus.services.pipeline.types import ChunkRecord

_BREAK_MARKERS = ("\n\n", "\n", ". ", "? ", "! ")


def _snap_end(text: str, *, cursor: int, end: int, chunk_overlap: int) -> int:
    # prefer a paragraph/line/sentence break in the last fifth of the window
    window_floor = end - max(1, (end - cursor) // 5)
    window_floor = max(window_floor, cursor + chunk_overlap + 1)
    for marker in _BREAK_MARKERS:
        position = text.rfind(marker, window_floor, end)
        if position != -1:
            return position + len(marker)
    return end


def _chunk_text(text: str, *, chunk_size: int, chunk_overlap: int) -> list[str]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    if chunk_overlap < 0:
        raise ValueError("chunk_overlap must be >= 0")
    if chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be smaller than chunk_size")

    chunks: list[str] = []
    cursor = 0
    text_length = len(text)

    while cursor < text_length:
        end = min(text_length, cursor + chunk_size)
        if end < text_length:
            end = _snap_end(text, cursor=cursor, end=end, chunk_overlap=chunk_overlap)

        chunk = text[cursor:end].strip()
        if chunk:
            chunks.append(chunk)

        if end >= text_length:
            break
        cursor = end - chunk_overlap

    return chunks


def chunk_document(
    *,
    document_id: str,
    source_path: str,
    text: str,
    fingerprint: str,
    chunk_size: int,
    chunk_overlap: int,
) -> list[ChunkRecord]:
    """Split one refined document into ordered chunk records (no embeddings yet)."""
    return [
        ChunkRecord(
            chunk_id=f"{document_id}-{index:04d}",
            document_id=document_id,
            ordinal=index,
            source_path=source_path,
            text=chunk_text,
            fingerprint=fingerprint,
        )
        for index, chunk_text in enumerate(
            _chunk_text(text, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
        )
    ]
