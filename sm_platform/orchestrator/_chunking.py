# sm_platform/orchestrator/_chunking.py
# Fixed-size chunking helpers.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import TypeVar

T = TypeVar("T")

BATCH_SIZE = 500


def effective_chunk_size(value: object, *, default: int = BATCH_SIZE, cap: int | None = None) -> int:
    try:
        n = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        n = default
    if n <= 0:
        n = default
    if cap is not None:
        n = min(n, cap)
    return n


def iter_chunks(items: Iterable[T], n: int) -> Iterator[list[T]]:
    if n <= 0:
        raise ValueError("chunk size must be positive")
    buf: list[T] = []
    for it in items:
        buf.append(it)
        if len(buf) >= n:
            yield buf
            buf = []
    if buf:
        yield buf
