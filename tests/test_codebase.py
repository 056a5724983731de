import json
import os
from pathlib import Path

import pytest

from sirin import codebase


MAIN_RS = "#![cfg_attr(not(debug_assertions), windows_subsystem = \"windows\")]\n//! App bootstrap\nmod ui;\nfn main() {}\n"


@pytest.fixture
def project(tmp_path, monkeypatch):
    root = tmp_path / "proj"
    (root / "src").mkdir(parents=True)
    (root / "docs").mkdir()
    (root / "target").mkdir()
    (root / "Cargo.toml").write_text("[package]\nname = \"demo\"\n", encoding="utf-8")
    (root / "README.md").write_text("# Demo project\n", encoding="utf-8")
    (root / "src" / "main.rs").write_text(MAIN_RS, encoding="utf-8")
    (root / "src" / "lib.rs").write_text(
        "//! Parser helpers\npub fn parse_widget() {}\n", encoding="utf-8"
    )
    (root / "docs" / "guide.md").write_text("# Guide\nHow to use it.\n", encoding="utf-8")
    (root / "target" / "ignored.rs").write_text("fn hidden() {}\n", encoding="utf-8")
    (root / "notes.txt").write_text("not indexed\n", encoding="utf-8")
    (root / "big.rs").write_text("a" * 300_000, encoding="utf-8")
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path / "appdata"))
    monkeypatch.chdir(root)
    return root


def test_skips_rust_attributes_when_deriving_summary():
    summary = codebase.first_meaningful_line(
        '#![cfg_attr(not(debug_assertions), windows_subsystem = "windows")]\n//! App bootstrap\nmod ui;'
    )
    assert summary == "App bootstrap"


def test_first_meaningful_line_default():
    assert codebase.first_meaningful_line("\nuse std::fs;\n#[derive(Debug)]\n") == "No summary available"


def test_known_files_use_human_friendly_role_hints():
    assert (
        codebase.summarize_file_role(Path("src/main.rs"), "src/main.rs", "#![cfg_attr(...)]\nfn main() {}")
        == "應用程式入口，負責啟動 UI、agents、Telegram 與背景工作。"
    )


def test_unknown_file_role_falls_back_to_first_line():
    assert codebase.summarize_file_role(Path("x/y.rs"), "x/y.rs", "/// Widget store\nfn a() {}") == "Widget store"


def test_role_hint_prefixes():
    assert codebase.role_hint_for_path("src/adk/tool.rs").startswith("ADK")
    assert codebase.role_hint_for_path("docs\\notes.md") == "專案文件，用來說明架構、路線圖或使用方式。"
    assert codebase.role_hint_for_path("misc/other.rs") is None


def test_prioritizes_core_project_files_over_hidden_command_docs():
    hidden = codebase.project_file_priority(".claude/commands/build-check.md")
    assert codebase.project_file_priority("src/main.rs") > hidden
    assert codebase.project_file_priority("Cargo.toml") > hidden


def test_priority_values():
    assert codebase.project_file_priority("src/main.rs") == 370
    assert codebase.project_file_priority("Cargo.toml") == 240
    assert codebase.project_file_priority(".github/workflows/ci.yml") == -340


def test_extract_rust_symbols_from_source():
    text = "pub struct SirinApp {}\npub async fn run_listener() {}\nfn helper() {}"
    symbols = codebase.extract_symbols(Path("src/main.rs"), text)
    assert symbols == ["SirinApp", "run_listener", "helper"]


def test_extract_script_symbols_and_dedup():
    text = "export function load(a) {}\nconst limit = 3;\nfunction load() {}\nexport default function App() {}"
    assert codebase.extract_symbols("app/page.tsx", text) == ["load", "limit", "App"]


def test_extract_symbols_handles_generics_and_limit():
    assert codebase.extract_symbols("a.rs", "fn generic<T>(x: T) {}") == ["generic"]
    many = "\n".join(f"fn f{i}() {{}}" for i in range(20))
    assert len(codebase.extract_symbols("a.rs", many)) == 12
    assert codebase.extract_symbols("a.md", "fn nope() {}") == []


def test_code_file_kind():
    assert codebase.code_file_kind("a/b.rs") == "rust-source"
    assert codebase.code_file_kind("x.yml") == "yaml-config"
    assert codebase.code_file_kind("x.jsx") == "javascript-source"
    assert codebase.code_file_kind("x.txt") == "text"


def test_collect_skips_ignored_dirs_and_large_files(project):
    rels = sorted(codebase.relative_display(p, project) for p in codebase.collect_codebase_files(project))
    assert rels == ["Cargo.toml", "README.md", "docs/guide.md", "src/lib.rs", "src/main.rs"]


def test_find_project_root_walks_up(project):
    nested = project / "src"
    assert codebase.find_project_root(nested) == project


def test_relative_display(project):
    assert codebase.relative_display(project / "src" / "main.rs", project) == "src/main.rs"


def test_build_codebase_entry(project):
    entry = codebase.build_codebase_entry(project, project / "src" / "lib.rs", "//! Parser helpers\npub fn parse_widget() {}\n")
    assert entry.path == "src/lib.rs"
    assert entry.kind == "rust-source"
    assert entry.summary == "Parser helpers"
    assert entry.symbols == ["parse_widget"]
    assert entry.text.startswith("File: src/lib.rs\nKind: rust-source\nRole: Parser helpers\nSymbols: parse_widget\n\nExcerpt:\n")


def test_can_inspect_local_project_file(project):
    excerpt = codebase.inspect_project_file("src/main.rs", 600)
    assert "File: src/main.rs" in excerpt
    assert "Role: 應用程式入口" in excerpt
    assert "Excerpt:" in excerpt


def test_inspect_resolves_by_name_and_strips_quotes(project):
    assert codebase.inspect_project_file("lib.rs", 600).startswith("File: src/lib.rs\nKind: rust-source")
    assert "File: src/main.rs" in codebase.inspect_project_file("`src\\main.rs`，", 600)


def test_inspect_unknown_file_raises(project):
    with pytest.raises(FileNotFoundError):
        codebase.inspect_project_file("nothing_here.rs", 600)


def test_list_project_files_order(project):
    assert codebase.list_project_files(10) == [
        "src/main.rs", "Cargo.toml", "README.md", "src/lib.rs", "docs/guide.md",
    ]
    assert codebase.list_project_files(2) == ["src/main.rs", "Cargo.toml"]


def test_refresh_and_search(project):
    assert codebase.refresh_codebase_index() == 5
    lines = codebase.codebase_index_path().read_text(encoding="utf-8").splitlines()
    paths = [json.loads(line)["path"] for line in lines]
    assert paths == sorted(paths)
    assert len(paths) == 5

    results = codebase.search_codebase("parse_widget helpers", 3)
    assert results[0].startswith("File: src/lib.rs\nKind: rust-source\nRole: Parser helpers")
    assert codebase.search_codebase("   ", 3) == []


def test_ensure_index_is_skipped_when_fresh(project):
    assert codebase.ensure_codebase_index() == 5
    assert codebase.ensure_codebase_index() == 0
    old = codebase.codebase_index_path()
    stale = os.path.getmtime(old) - 3600
    os.utime(old, (stale, stale))
    assert codebase.ensure_codebase_index() == 5


def test_codebase_index_path_uses_local_app_data(tmp_path, monkeypatch):
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path))
    assert codebase.codebase_index_path() == tmp_path / "Sirin" / "memory" / "codebase_index.jsonl"