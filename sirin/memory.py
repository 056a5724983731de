"""Persistent memory: a full-text snippet store and per-peer conversation context.

Snippets are appended to a JSONL index and searched with lightweight term
scoring; conversation turns are appended to one JSONL log per peer.
"""

from __future__ import annotations

import json
import os
import threading
from collections import Counter, deque
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

_CJK_RANGES = (
    (0x4E00, 0x9FFF),  # CJK Unified Ideographs
    (0x3400, 0x4DBF),  # CJK Extension A
    (0xF900, 0xFAFF),  # CJK Compatibility Ideographs
    (0x3040, 0x309F),  # Hiragana
    (0x30A0, 0x30FF),  # Katakana
)

_CODE_NEEDLES = (
    "code", "repo", "project", "architecture", "module", "function", "file", "cargo",
    "rust", "tauri", "src/", ".rs", "cargo.toml", "專案", "項目", "架構", "代碼",
    "程式碼", "模組", "函式", "檔案", "實作", "分析", "telegram", "memory",
)


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat()


def _data_dir(*parts: str) -> Path:
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data is not None:
        return Path(local_app_data, "Sirin", *parts)
    return Path("data", *parts)


def _append_json_line(path: Path, record: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
    with path.open("a", encoding="utf-8", newline="") as handle:
        handle.write(line + "\n")


def _json_objects(path: Path):
    """Yield the JSON objects of a JSONL file, skipping blank or invalid lines."""
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                yield data


# ── Memory store ──────────────────────────────────────────────────────────────


def memory_index_path() -> Path:
    """Location of the memory index file."""
    return _data_dir("memory") / "index.jsonl"


@dataclass(frozen=True)
class _MemoryEntry:
    timestamp: str
    source: str
    text: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["_MemoryEntry"]:
        values = [data.get(key) for key in ("timestamp", "source", "text")]
        if not all(isinstance(value, str) for value in values):
            return None
        return cls(*values)


_cache: Optional[list[_MemoryEntry]] = None
_cache_lock = threading.RLock()


def _load_cache() -> list[_MemoryEntry]:
    global _cache
    with _cache_lock:
        if _cache is None:
            path = memory_index_path()
            entries: list[_MemoryEntry] = []
            if path.exists():
                try:
                    entries = [
                        entry
                        for entry in map(_MemoryEntry.from_dict, _json_objects(path))
                        if entry is not None
                    ]
                except (OSError, UnicodeDecodeError):
                    entries = []
            _cache = entries
        return _cache


def reset_cache() -> None:
    """Forget the in-process copy of the index; the next search reloads it."""
    global _cache
    with _cache_lock:
        _cache = None


def memory_store(text: str, source: str) -> None:
    """Append a text snippet to the memory index; blank text is ignored."""
    if not text.strip():
        return
    entry = _MemoryEntry(timestamp=_now_rfc3339(), source=source, text=text)
    with _cache_lock:
        _append_json_line(memory_index_path(), asdict(entry))
        if _cache is not None:
            _cache.append(entry)


def memory_search(query: str, limit: int = 5) -> list[str]:
    """Return up to ``limit`` stored snippets that best match ``query``."""
    query_terms = tokenize(query)
    if not query_terms:
        return []
    with _cache_lock:
        entries = list(_load_cache())
    scored = [(score_entry(e.text, query_terms), e.text) for e in entries]
    scored = [item for item in scored if item[0] > 0.0]
    scored.sort(key=lambda item: item[0], reverse=True)
    return [text for _, text in scored[: max(limit, 0)]]


def _is_cjk(ch: str) -> bool:
    code = ord(ch)
    return any(low <= code <= high for low, high in _CJK_RANGES)


def tokenize(text: str) -> list[str]:
    """Split text into lowercase words; CJK characters become single tokens."""
    tokens: list[str] = []
    word: list[str] = []

    def flush() -> None:
        if word:
            tokens.append("".join(word).lower())
            word.clear()

    for ch in text:
        if ch.isalnum():
            if _is_cjk(ch):
                flush()
                tokens.append(ch)
            else:
                word.append(ch)
        else:
            flush()
    flush()
    return tokens


def score_entry(text: str, query_terms: list[str]) -> float:
    """Sum of the relative frequencies of the query terms in ``text``."""
    doc_tokens = tokenize(text)
    doc_len = float(max(len(doc_tokens), 1))
    frequencies = Counter(doc_tokens)
    return sum(frequencies[term] / doc_len for term in query_terms)


def looks_like_code_query(text: str) -> bool:
    """Heuristic: does the text ask about code or the project itself?"""
    lower = text.lower()
    return any(needle in lower for needle in _CODE_NEEDLES) or "::" in text


# ── Conversation context ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class ContextEntry:
    timestamp: str
    user_msg: str
    assistant_reply: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContextEntry":
        values = {}
        for key in ("timestamp", "user_msg", "assistant_reply"):
            value = data.get(key)
            if not isinstance(value, str):
                raise ValueError(f"context entry field '{key}' must be a string")
            values[key] = value
        return cls(**values)


def context_log_path(peer_id: Optional[int] = None) -> Path:
    """Location of the context log for a peer, or the shared log for None."""
    filename = "sirin_context.jsonl" if peer_id is None else f"sirin_context_{peer_id}.jsonl"
    return _data_dir("tracking") / filename


def append_context(user_msg: str, assistant_reply: str, peer_id: Optional[int] = None) -> None:
    """Append one user/assistant turn to the peer's context log."""
    entry = ContextEntry(
        timestamp=_now_rfc3339(), user_msg=user_msg, assistant_reply=assistant_reply
    )
    _append_json_line(context_log_path(peer_id), asdict(entry))


def load_recent_context(limit: int, peer_id: Optional[int] = None) -> list[ContextEntry]:
    """Return the last ``limit`` turns recorded for the peer, oldest first."""
    path = context_log_path(peer_id)
    if not path.exists():
        return []
    ring: deque[ContextEntry] = deque(maxlen=max(limit, 0))
    for data in _json_objects(path):
        try:
            ring.append(ContextEntry.from_dict(data))
        except ValueError:
            continue
    return list(ring)