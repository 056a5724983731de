import pytest

from sirin import memory
from sirin.adk.context import AgentContext
from sirin.adk.tool import ToolError, ToolRegistry, default_tool_registry
from sirin.persona import (
    Identity,
    Persona,
    ProfessionalTone,
    RoiThresholds,
    TaskEntry,
    TaskTracker,
)


@pytest.fixture
def project(tmp_path, monkeypatch):
    (tmp_path / "Cargo.toml").write_text('[package]\nname = "demo"\n', encoding="utf-8")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path / "appdata"))
    memory.reset_cache()
    yield tmp_path
    memory.reset_cache()


def _ctx(tracker=None):
    return AgentContext("test", default_tool_registry()).with_optional_tracker(tracker)


@pytest.mark.asyncio
async def test_custom_registry_round_trips_values():
    async def echo(value):
        return value

    registry = ToolRegistry().register("echo", echo)
    ctx = AgentContext("test", registry)
    output = await ctx.call_tool("echo", {"hello": "world"})
    assert output["hello"] == "world"


@pytest.mark.asyncio
async def test_sync_handlers_are_accepted():
    registry = ToolRegistry().register("double", lambda value: value * 2)
    assert await registry.call(AgentContext("test", registry), "double", 21) == 42


@pytest.mark.asyncio
async def test_ctx_handler_receives_context():
    async def who(ctx, value):
        return ctx.source

    registry = ToolRegistry().register_ctx("who", who)
    assert await AgentContext("caller", registry).call_tool("who", {}) == "caller"


def test_register_returns_new_registry_with_sorted_names():
    base = ToolRegistry()
    extended = base.register("b", lambda v: v).register("a", lambda v: v)
    assert base.names() == []
    assert extended.names() == ["a", "b"]


@pytest.mark.asyncio
async def test_unknown_tool_raises():
    with pytest.raises(ToolError, match="Tool not registered: nope"):
        await ToolRegistry().call(AgentContext("test", ToolRegistry()), "nope", {})


def test_default_registry_exposes_project_overview():
    names = default_tool_registry().names()
    assert "project_overview" in names
    assert names == sorted(names)


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{}, {"query": "   "}, {"query": 3}, "text"])
async def test_memory_search_requires_query(payload):
    with pytest.raises(ToolError, match="Missing 'query' string"):
        await _ctx().call_tool("memory_search", payload)


@pytest.mark.asyncio
async def test_memory_search_finds_stored_text(project):
    memory.memory_store("tokio async runtime notes", "manual")
    memory.memory_store("weather is nice", "manual")
    output = await _ctx().call_tool("memory_search", {"query": "tokio", "limit": 3})
    assert output == ["tokio async runtime notes"]


@pytest.mark.asyncio
@pytest.mark.parametrize("tool", ["task_recent", "task_record"])
async def test_task_tools_require_tracker(tool):
    with pytest.raises(ToolError, match=f"{tool} requires TaskTracker in AgentContext"):
        await _ctx().call_tool(tool, {"event": "note"})


@pytest.mark.asyncio
async def test_task_record_defaults_correlation_to_request_id(tmp_path):
    tracker = TaskTracker(tmp_path / "task.jsonl")
    ctx = _ctx(tracker)
    output = await ctx.call_tool("task_record", {"event": "note", "status": "DONE"})
    assert output["event"] == "note"
    assert output["status"] == "DONE"
    assert output["correlation_id"] == ctx.request_id
    assert tracker.read_last_n(1)[0].to_dict() == output


@pytest.mark.asyncio
async def test_task_record_keeps_explicit_correlation(tmp_path):
    tracker = TaskTracker(tmp_path / "task.jsonl")
    output = await _ctx(tracker).call_tool(
        "task_record", {"event": "note", "correlation_id": "corr-1"}
    )
    assert output["correlation_id"] == "corr-1"


@pytest.mark.asyncio
async def test_task_record_requires_event(tmp_path):
    tracker = TaskTracker(tmp_path / "task.jsonl")
    with pytest.raises(ToolError, match="Missing 'event' string"):
        await _ctx(tracker).call_tool("task_record", {})


@pytest.mark.asyncio
async def test_task_recent_honours_limit(tmp_path):
    tracker = TaskTracker(tmp_path / "task.jsonl")
    for i in range(3):
        tracker.record(TaskEntry(timestamp=f"ts-{i}", event=f"e{i}", persona="Sirin"))
    ctx = _ctx(tracker)
    limited = await ctx.call_tool("task_recent", {"limit": 2})
    assert [item["event"] for item in limited] == ["e1", "e2"]
    defaulted = await ctx.call_tool("task_recent", {"limit": 0})
    assert len(defaulted) == 3


@pytest.mark.asyncio
async def test_task_lookup_finds_entry(tmp_path):
    tracker = TaskTracker(tmp_path / "task.jsonl")
    entry = TaskEntry(timestamp="ts-1", event="e", persona="Sirin", status="PENDING")
    tracker.record(entry)
    ctx = _ctx(tracker)
    assert await ctx.call_tool("task_lookup", {"timestamp": "ts-1"}) == entry.to_dict()
    assert await ctx.call_tool("task_lookup", {"timestamp": "ts-unknown"}) is None
    with pytest.raises(ToolError, match="Missing 'timestamp' string"):
        await ctx.call_tool("task_lookup", {})


@pytest.mark.asyncio
async def test_behavior_evaluate_escalates_objective_match(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config").mkdir()
    Persona(
        identity=Identity("Sirin", ProfessionalTone.BRIEF),
        objectives=["Monitor Agora", "Maintain VIPs"],
        roi_thresholds=RoiThresholds(5.0, 25.0),
    ).save()
    tracker = TaskTracker(tmp_path / "task.jsonl")
    output = await _ctx(tracker).call_tool(
        "behavior_evaluate",
        {"msg": "Please Monitor Agora flow", "estimated_value": 30.0, "record": True,
         "source": "telegram"},
    )
    assert output["tier"] == "escalate"
    assert output["high_priority"] is True
    assert output["matched_objective"] == "Monitor Agora"
    assert "source='telegram'" in output["reason"]
    recorded = tracker.read_last_n(1)[0]
    assert recorded.status == "PENDING"
    assert recorded.event == "behavior_decision"


@pytest.mark.asyncio
async def test_behavior_evaluate_without_persona_fails(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ToolError):
        await _ctx().call_tool("behavior_evaluate", {"msg": "hi"})


@pytest.mark.asyncio
async def test_local_file_read_reads_project_file(project):
    output = await _ctx().call_tool("local_file_read", {"path": "src/main.rs"})
    assert output["path"] == "src/main.rs"
    assert "File: src/main.rs" in output["content"]
    assert "Role: 應用程式入口" in output["content"]
    assert "Excerpt:" in output["content"]


@pytest.mark.asyncio
async def test_local_file_read_falls_back_to_query(project):
    output = await _ctx().call_tool("local_file_read", {"query": "main.rs"})
    assert "File: src/main.rs" in output["content"]
    with pytest.raises(ToolError, match="Missing 'path' string"):
        await _ctx().call_tool("local_file_read", {})


@pytest.mark.asyncio
async def test_local_file_read_unknown_file(project):
    with pytest.raises(ToolError, match="could not resolve local project file"):
        await _ctx().call_tool("local_file_read", {"path": "nowhere.rs"})


@pytest.mark.asyncio
async def test_project_overview_lists_files(project):
    output = await _ctx().call_tool("project_overview", {})
    assert set(output["files"]) == {"Cargo.toml", "src/main.rs"}
    assert output["summary"].startswith("Sirin")
    limited = await _ctx().call_tool("project_overview", {"limit": 1})
    assert limited["files"] == ["src/main.rs"]


@pytest.mark.asyncio
async def test_codebase_search_finds_main(project):
    output = await _ctx().call_tool("codebase_search", {"query": "main"})
    assert len(output) == 1
    assert output[0].startswith("File: src/main.rs")