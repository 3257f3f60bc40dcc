from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

POLL_INTERVAL_SECONDS = 0.9


def read_new_lines(path: Path | None, offset: int = 0) -> tuple[list[str], int]:
    """Lines appended to ``path`` since ``offset``, and the offset to resume from.

    A file that shrank (rotated or truncated) is read again from the start.
    """
    if path is None:
        return [], offset
    try:
        size = path.stat().st_size
    except OSError:
        return [], offset
    if size < offset:
        offset = 0
    if size == offset:
        return [], offset
    try:
        with path.open("rb") as handle:
            handle.seek(offset)
            data = handle.read(size - offset)
    except OSError:
        return [], offset
    text = data.decode("utf-8", errors="replace")
    lines = [line for line in text.splitlines() if line.strip()]
    return lines, offset + len(data)


def follow(
    get_path: Callable[[], Path | None],
    *,
    interval: float = POLL_INTERVAL_SECONDS,
    stop: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[str]:
    """Yield lines from a log as it grows; the path is re-resolved on every poll."""
    offset = 0
    while stop is None or not stop.is_set():
        lines, offset = read_new_lines(get_path(), offset)
        yield from lines
        sleep(interval)
