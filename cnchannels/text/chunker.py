"""Greedy text chunker shared by the Feishu and WeCom reply paths."""

from __future__ import annotations


def chunk_text(text: str, limit: int) -> list[str]:
    """Split ``text`` into chunks of at most ``limit`` characters.

    Breaks at the last newline inside the window, else the last space,
    else hard-breaks at ``limit``. Whitespace at the break is consumed,
    and empty chunks are never emitted.
    """
    if not text:
        return []
    if limit <= 0 or len(text) <= limit:
        return [text]

    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        window = remaining[:limit]
        last_newline = window.rfind("\n")
        break_idx = last_newline if last_newline > 0 else window.rfind(" ")
        if break_idx <= 0:
            break_idx = limit

        chunk = remaining[:break_idx].rstrip()
        if chunk:
            chunks.append(chunk)

        broke_on_separator = break_idx < len(remaining) and remaining[break_idx].isspace()
        next_start = min(len(remaining), break_idx + (1 if broke_on_separator else 0))
        remaining = remaining[next_start:].lstrip()

    if remaining:
        chunks.append(remaining)
    return chunks
