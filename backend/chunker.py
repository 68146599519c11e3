"""Paragraph-aware, line-ranged chunking for markdown notes and session transcripts."""

import hashlib
from typing import List, Tuple

from db.index_store import ChunkRecord

CHARS_PER_TOKEN = 4
MIN_CHUNK_CHARS = 32


def hash_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _paragraph_ranges(lines: List[str]) -> List[Tuple[int, int]]:
    """Inclusive (first, last) line indexes of each run of non-blank lines."""
    ranges: List[Tuple[int, int]] = []
    start = -1
    for index, line in enumerate(lines):
        if line.strip():
            if start < 0:
                start = index
        elif start >= 0:
            ranges.append((start, index - 1))
            start = -1
    if start >= 0:
        ranges.append((start, len(lines) - 1))
    return ranges


def _make_chunk(lines: List[Tuple[int, str]], line_offset: int) -> ChunkRecord:
    body = "\n".join(text for _, text in lines)
    return ChunkRecord(
        start_line=lines[0][0] + 1 + line_offset,
        end_line=lines[-1][0] + 1 + line_offset,
        text=body,
        hash=hash_text(body),
    )


def chunk_text(content: str, tokens: int = 400, overlap: int = 80, *, line_offset: int = 0) -> List[ChunkRecord]:
    """
    Split `content` into chunks of at most ~`tokens` tokens (4 chars per token).

    Blank lines always end a chunk, so each paragraph becomes at least one
    chunk. Paragraphs over the cap are split on line boundaries, carrying up to
    `overlap` tokens of trailing lines into the next chunk; a single line over
    the cap is hard-split and its pieces share that line number.
    Line numbers are 1-based and shifted by `line_offset`.
    """
    if not content or not content.strip():
        return []

    max_chars = max(MIN_CHUNK_CHARS, tokens * CHARS_PER_TOKEN)
    overlap_chars = max(0, overlap * CHARS_PER_TOKEN)
    lines = content.replace("\r\n", "\n").replace("\r", "\n").split("\n")

    chunks: List[ChunkRecord] = []
    for first, last in _paragraph_ranges(lines):
        current: List[Tuple[int, str]] = []
        current_chars = 0

        def flush() -> None:
            nonlocal current, current_chars
            if not current:
                return
            chunks.append(_make_chunk(current, line_offset))
            if overlap_chars <= 0:
                current, current_chars = [], 0
                return
            carried: List[Tuple[int, str]] = []
            carried_chars = 0
            for entry in reversed(current[1:]):
                size = len(entry[1]) + 1
                if carried_chars + size > overlap_chars:
                    break
                carried.insert(0, entry)
                carried_chars += size
            current, current_chars = carried, carried_chars

        for index in range(first, last + 1):
            line = lines[index]
            if len(line) > max_chars:
                flush()
                current, current_chars = [], 0
                for start in range(0, len(line), max_chars):
                    piece = line[start : start + max_chars]
                    if piece.strip():
                        chunks.append(_make_chunk([(index, piece)], line_offset))
                continue

            size = len(line) + 1
            if current and current_chars + size > max_chars:
                flush()
                while current and current_chars + size > max_chars:
                    dropped = current.pop(0)
                    current_chars -= len(dropped[1]) + 1
            current.append((index, line))
            current_chars += size

        if current:
            chunks.append(_make_chunk(current, line_offset))
    return chunks
