"""In-process ring buffer of recent log lines.

:func:`log` echoes a message to stderr and keeps it in a fixed-size buffer
that a user interface can read back.
"""

from __future__ import annotations

import sys
import threading
from collections import deque
from itertools import islice

MAX_LINES = 300

_lines: deque[str] = deque(maxlen=MAX_LINES)
_lock = threading.Lock()


def push(msg: str) -> None:
    """Append a line, dropping the oldest once the buffer is full."""
    with _lock:
        _lines.append(msg)


def recent(n: int) -> list[str]:
    """Return the last ``n`` lines, oldest first."""
    with _lock:
        skip = max(len(_lines) - n, 0)
        return list(islice(_lines, skip, None))


def snapshot_text(n: int) -> str:
    """Return the last ``n`` lines joined with newlines."""
    return "\n".join(recent(n))


def clear() -> None:
    """Empty the buffer."""
    with _lock:
        _lines.clear()


def log(message: str) -> None:
    """Write a message to stderr and to the buffer."""
    print(message, file=sys.stderr)
    push(message)