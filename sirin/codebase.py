"""Index of the local project's source files.

The project tree is scanned for text sources, each file is summarised with
its role and top-level symbols, and the summaries are kept in a JSONL index
that can be searched with the same term scoring as the memory store.
"""

from __future__ import annotations

import json
import os
import re
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from sirin.memory import score_entry, tokenize

PathLike = Union[str, "os.PathLike[str]"]

_MAX_FILE_BYTES = 256_000
_INDEX_MAX_AGE_SECS = 600
_ENTRY_EXCERPT_CHARS = 1600
_MAX_SYMBOLS = 12
_SYMBOL_SCAN_LINES = 240
_NO_SYMBOLS = "(no symbols extracted)"

_PROJECT_MARKERS = ("Cargo.toml", "tauri.conf.json")
_SKIPPED_DIRS = frozenset({".git", "target", "node_modules", ".next", "dist", "build"})
_CANDIDATE_EXTENSIONS = frozenset(
    {"rs", "toml", "md", "yaml", "yml", "ts", "tsx", "js", "jsx", "json"}
)

_FILE_KINDS = {
    "rs": "rust-source",
    "toml": "cargo-config",
    "md": "documentation",
    "yaml": "yaml-config",
    "yml": "yaml-config",
    "ts": "frontend-source",
    "tsx": "frontend-source",
    "js": "javascript-source",
    "jsx": "javascript-source",
    "json": "json-config",
}

_RUST_SYMBOL_PREFIXES = (
    "pub async fn ", "async fn ", "pub fn ", "fn ",
    "pub struct ", "struct ", "pub enum ", "enum ",
    "pub trait ", "trait ", "pub mod ", "mod ",
)
_SCRIPT_SYMBOL_PREFIXES = (
    "export async function ", "export function ", "function ",
    "export const ", "const ", "export default function ",
)
_SYMBOL_PREFIXES = {
    "rs": _RUST_SYMBOL_PREFIXES,
    "ts": _SCRIPT_SYMBOL_PREFIXES,
    "tsx": _SCRIPT_SYMBOL_PREFIXES,
    "js": _SCRIPT_SYMBOL_PREFIXES,
    "jsx": _SCRIPT_SYMBOL_PREFIXES,
}

_NOISE_PREFIXES = ("#![", "#[", "use ", "pub use ", "mod ", "pub mod ", "extern crate ")

_ROLE_HINTS = {
    "build.rs": "Cargo 建置腳本，負責編譯期設定或資源處理。",
    "Cargo.toml": "Rust 專案清單，定義套件資訊、依賴與建置設定。",
    "README.md": "專案總覽與快速使用說明。",
    "tauri.conf.json": "桌面應用封裝與執行設定。",
    "src/main.rs": "應用程式入口，負責啟動 UI、agents、Telegram 與背景工作。",
    "src/ui.rs": "egui/eframe 桌面介面，負責聊天、任務板、日誌與 Telegram 授權 UI。",
    "src/llm.rs": "LLM 抽象層，負責連接 Ollama 與 OpenAI 相容後端（如 LM Studio）。",
    "src/memory.rs": "記憶與程式碼索引模組，負責本地檔案檢索、上下文與搜尋。",
    "src/researcher.rs": "調研任務管理與研究報告流程。",
    "src/persona.rs": "Persona 與行為規則設定。",
    "src/skills.rs": "技能與搜尋能力整合層。",
    "src/log_buffer.rs": "執行日誌緩衝與快照工具。",
    "src/followup.rs": "後續追蹤與待辦處理流程。",
    "src/agents/chat_agent.rs": "聊天 agent，負責整合本地檔案與程式碼內容來回答問題。",
    "src/agents/planner_agent.rs": "planner agent，先判斷使用者意圖與可能的步驟。",
    "src/agents/router_agent.rs": "router agent，決定要走 chat、research 或 follow-up 路線。",
    "src/agents/research_agent.rs": "research agent，負責調研、摘要與結果記錄。",
    "src/agents/followup_agent.rs": "follow-up agent，背景處理待辦與後續任務。",
    "docs/ARCHITECTURE.md": "架構設計說明文件。",
    "docs/QUICKSTART.md": "快速上手與執行說明。",
}

_ROLE_PREFIX_HINTS = (
    ("src/adk/", "ADK 執行框架元件，負責 context、tools、runner 與 agent runtime。"),
    ("src/telegram/", "Telegram 整合模組，處理 listener、回覆、語言與驗證。"),
    ("docs/", "專案文件，用來說明架構、路線圖或使用方式。"),
)


@dataclass
class CodebaseEntry:
    """Summary of one project file as stored in the index."""

    path: str
    kind: str
    summary: str
    symbols: list[str] = field(default_factory=list)
    text: str = ""


def _entry_from_dict(data: Any) -> Optional[CodebaseEntry]:
    if not isinstance(data, Mapping):
        return None
    strings = [data.get(key) for key in ("path", "kind", "summary", "text")]
    symbols = data.get("symbols")
    if not all(isinstance(value, str) for value in strings):
        return None
    if not isinstance(symbols, list) or not all(isinstance(s, str) for s in symbols):
        return None
    path, kind, summary, text = strings
    return CodebaseEntry(path=path, kind=kind, summary=summary, symbols=list(symbols), text=text)


def _extension(path: PathLike) -> str:
    return Path(path).suffix[1:]


def _read_text(path: PathLike) -> str:
    with open(path, "r", encoding="utf-8", newline="") as handle:
        return handle.read()


def _trim_start_all(text: str, prefix: str) -> str:
    while text.startswith(prefix):
        text = text[len(prefix):]
    return text


def codebase_index_path() -> Path:
    """Location of the codebase index file."""
    local_app_data = os.environ.get("LOCALAPPDATA")
    base = Path(local_app_data, "Sirin") if local_app_data is not None else Path("data")
    return base / "memory" / "codebase_index.jsonl"


def find_project_root(start: Optional[PathLike] = None) -> Optional[Path]:
    """Walk up from ``start`` (default: cwd) to the first directory with a project marker."""
    current = Path(start if start is not None else os.getcwd()).absolute()
    while True:
        if any((current / marker).exists() for marker in _PROJECT_MARKERS):
            return current
        if current.parent == current:
            return None
        current = current.parent


def code_file_kind(path: PathLike) -> str:
    """Classify a file by its extension."""
    return _FILE_KINDS.get(_extension(path), "text")


def collect_codebase_files(root: PathLike) -> list[Path]:
    """Return every indexable file under ``root``, skipping build and VCS directories."""
    found: list[Path] = []
    with os.scandir(root) as entries:
        for entry in entries:
            path = Path(entry.path)
            if entry.is_dir(follow_symlinks=False):
                if entry.name in _SKIPPED_DIRS:
                    continue
                found.extend(collect_codebase_files(path))
                continue
            if (
                entry.is_file(follow_symlinks=False)
                and entry.stat(follow_symlinks=False).st_size <= _MAX_FILE_BYTES
                and _extension(path) in _CANDIDATE_EXTENSIONS
            ):
                found.append(path)
    return found


def _is_summary_noise(line: str) -> bool:
    trimmed = line.strip()
    return not trimmed or trimmed.startswith(_NOISE_PREFIXES)


def first_meaningful_line(text: str) -> str:
    """First line that is neither blank, an attribute nor an import, without comment markers."""
    for raw in text.splitlines():
        line = raw.strip()
        if _is_summary_noise(line):
            continue
        cleaned = _trim_start_all(_trim_start_all(line, "//!"), "///").lstrip("#").strip()
        if cleaned:
            return cleaned
    return "No summary available"


def _capture_symbol_after_prefix(line: str, prefix: str) -> Optional[str]:
    if not line.startswith(prefix):
        return None
    name = re.split(r"[(<{:\s]", line[len(prefix):], maxsplit=1)[0]
    if not name:
        return None
    return name.strip(",")


def extract_symbols(path: PathLike, text: str) -> list[str]:
    """Names of up to twelve top-level declarations found near the top of a file."""
    prefixes = _SYMBOL_PREFIXES.get(_extension(path), ())
    symbols: list[str] = []
    for line in text.splitlines()[:_SYMBOL_SCAN_LINES]:
        trimmed = line.strip()
        candidate = next(
            (
                symbol
                for symbol in (_capture_symbol_after_prefix(trimmed, p) for p in prefixes)
                if symbol is not None
            ),
            None,
        )
        if candidate is not None and candidate not in symbols:
            symbols.append(candidate)
        if len(symbols) >= _MAX_SYMBOLS:
            break
    return symbols


def _canonical(path: Path) -> Optional[Path]:
    try:
        return path.resolve(strict=True)
    except OSError:
        return None


def _relative_to(path: Path, root: Path) -> Optional[Path]:
    try:
        return path.relative_to(root)
    except ValueError:
        return None


def relative_display(path: PathLike, root: PathLike) -> str:
    """Path of ``path`` relative to ``root`` with forward slashes."""
    path, root = Path(path), Path(root)
    canonical_path, canonical_root = _canonical(path), _canonical(root)
    display_path = None
    if canonical_path is not None and canonical_root is not None:
        display_path = _relative_to(canonical_path, canonical_root)
    if display_path is None:
        display_path = _relative_to(path, root)
    if display_path is None:
        display_path = path
    display = str(display_path).replace("\\", "/")
    return display[len("//?/"):] if display.startswith("//?/") else display


def role_hint_for_path(rel: str) -> Optional[str]:
    """A fixed description for well-known project paths, if there is one."""
    rel = rel.replace("\\", "/")
    hint = _ROLE_HINTS.get(rel)
    if hint is not None:
        return hint
    return next((text for prefix, text in _ROLE_PREFIX_HINTS if rel.startswith(prefix)), None)


def summarize_file_role(path: PathLike, rel: str, text: str) -> str:
    """Role of a file: its known hint, or else its first meaningful line."""
    hint = role_hint_for_path(rel)
    return hint if hint is not None else first_meaningful_line(text)


def build_codebase_entry(root: PathLike, path: PathLike, text: str) -> CodebaseEntry:
    """Summarise one file for the index."""
    rel = relative_display(path, root)
    symbols = extract_symbols(path, text)
    summary = summarize_file_role(path, rel, text)
    kind = code_file_kind(path)
    excerpt = text[:_ENTRY_EXCERPT_CHARS]
    symbol_block = ", ".join(symbols) if symbols else _NO_SYMBOLS
    return CodebaseEntry(
        path=rel,
        kind=kind,
        summary=summary,
        symbols=symbols,
        text=(
            f"File: {rel}\nKind: {kind}\nRole: {summary}\nSymbols: {symbol_block}"
            f"\n\nExcerpt:\n{excerpt}"
        ),
    )


def refresh_codebase_index() -> int:
    """Rebuild the index from the project tree; return the number of files indexed."""
    root = find_project_root()
    if root is None:
        return 0
    files = sorted(collect_codebase_files(root))

    index_path = codebase_index_path()
    index_path.parent.mkdir(parents=True, exist_ok=True)
    indexed = 0
    with index_path.open("w", encoding="utf-8", newline="") as output:
        for file in files:
            try:
                text = _read_text(file)
            except (OSError, UnicodeDecodeError):
                continue
            if not text.strip():
                continue
            entry = build_codebase_entry(root, file, text)
            output.write(json.dumps(asdict(entry), ensure_ascii=False, separators=(",", ":")))
            output.write("\n")
            indexed += 1
    return indexed


def ensure_codebase_index() -> int:
    """Rebuild the index if it is missing or older than ten minutes; else return 0."""
    try:
        age = time.time() - codebase_index_path().stat().st_mtime
        should_refresh = age < 0 or age > _INDEX_MAX_AGE_SECS
    except OSError:
        should_refresh = True
    return refresh_codebase_index() if should_refresh else 0


def project_file_priority(path: str) -> int:
    """Ranking score that puts core project files ahead of peripheral ones."""
    path = path.lower()
    score = 0
    exact = {
        "cargo.toml": 240,
        "readme.md": 220,
        "tauri.conf.json": 200,
        "docs/architecture.md": 190,
        "src/main.rs": 230,
        "src/ui.rs": 225,
        "src/memory.rs": 210,
        "src/llm.rs": 210,
    }
    score += exact.get(path, 0)
    prefixes = (
        ("src/agents/", 180),
        ("src/adk/", 170),
        ("src/telegram/", 160),
        ("src/", 140),
        ("app/", 120),
        ("docs/", 110),
        ("config/", 80),
        ("tests/", 40),
        (".", -160),
    )
    score += sum(points for prefix, points in prefixes if path.startswith(prefix))
    if path.startswith(".claude/") or path.startswith(".github/"):
        score -= 180
    return score


def list_project_files(limit: int = 8) -> list[str]:
    """Relative paths of the most important project files, best first."""
    root = find_project_root()
    if root is None:
        return []
    rel_files = [relative_display(path, root) for path in collect_codebase_files(root)]
    rel_files.sort(key=lambda rel: (-project_file_priority(rel), rel))
    unique: list[str] = []
    for rel in rel_files:
        if not unique or unique[-1] != rel:
            unique.append(rel)
    return unique[: max(limit, 0)]


def _normalize_path_hint(path_hint: str) -> str:
    return path_hint.strip().strip("`\"'").strip(",，。?？:：()").replace("\\", "/")


def _resolve_project_file_path(root: Path, path_hint: str) -> Optional[Path]:
    normalized = _normalize_path_hint(path_hint)
    if not normalized:
        return None

    root_canonical = _canonical(root) or root
    direct = Path(normalized)
    candidate = direct if direct.is_absolute() else root / normalized
    if candidate.is_file():
        canonical = _canonical(candidate) or candidate
        if canonical == root_canonical or root_canonical in canonical.parents:
            return candidate

    try:
        files = collect_codebase_files(root)
    except OSError:
        return None
    wanted = normalized.lower()
    for path in files:
        rel = relative_display(path, root).lower()
        if rel == wanted or rel.endswith(wanted) or path.name.lower() == wanted:
            return path
    return None


def inspect_project_file(path_hint: str, max_chars: int = 2400) -> str:
    """Describe a project file and return an excerpt of it.

    Raises FileNotFoundError when there is no project or the hint matches no file.
    """
    root = find_project_root()
    if root is None:
        raise FileNotFoundError("project root not found")
    path = _resolve_project_file_path(root, path_hint)
    if path is None:
        raise FileNotFoundError(f"could not resolve local project file: {path_hint}")

    text = _read_text(path)
    rel = relative_display(path, root)
    summary = summarize_file_role(path, rel, text)
    excerpt = text[: min(max(max_chars, 400), 4000)]
    return f"File: {rel}\nKind: {code_file_kind(path)}\nRole: {summary}\n\nExcerpt:\n{excerpt}"


def search_codebase(query: str, limit: int = 5) -> list[str]:
    """Return up to ``limit`` file descriptions from the index that best match ``query``."""
    try:
        ensure_codebase_index()
    except (OSError, ValueError):
        pass

    index_path = codebase_index_path()
    if not index_path.exists():
        return []
    query_terms = tokenize(query)
    if not query_terms:
        return []

    scored: list[tuple[float, str]] = []
    with index_path.open("r", encoding="utf-8") as handle:
        for line in handle:
            if not line.strip():
                continue
            try:
                entry = _entry_from_dict(json.loads(line))
            except json.JSONDecodeError:
                continue
            if entry is None:
                continue
            score = score_entry(entry.text, query_terms)
            if score > 0.0:
                symbols = ", ".join(entry.symbols) if entry.symbols else _NO_SYMBOLS
                scored.append(
                    (
                        score,
                        f"File: {entry.path}\nKind: {entry.kind}\n"
                        f"Role: {entry.summary}\nSymbols: {symbols}",
                    )
                )
    scored.sort(key=lambda item: item[0], reverse=True)
    return [text for _, text in scored[: max(limit, 0)]]