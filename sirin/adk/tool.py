"""Tool registry and the default set of tools available to agents."""

from __future__ import annotations

import inspect
from collections.abc import Mapping
from contextlib import contextmanager
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

from sirin import codebase, memory
from sirin.persona import IncomingMessage, Persona, TaskEntry, TaskTracker, evaluate_behavior

if TYPE_CHECKING:
    from sirin.adk.context import AgentContext

Handler = Callable[[Any], Union[Any, Awaitable[Any]]]
CtxHandler = Callable[["AgentContext", Any], Union[Any, Awaitable[Any]]]

_PROJECT_SUMMARY = (
    "Sirin 是一個本地 AI 助手專案，包含桌面 UI、Telegram 整合、ADK 風格 agent 流程、"
    "記憶 / 程式碼索引，以及本地 LLM 支援。"
)


class ToolError(Exception):
    """A tool could not be found or failed to produce a result."""


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ToolRegistry:
    """Immutable mapping of tool names to handlers; registering returns a new registry."""

    def __init__(self, handlers: Optional[Mapping[str, CtxHandler]] = None) -> None:
        self._handlers = MappingProxyType(dict(handlers or {}))

    def register(self, name: str, handler: Handler) -> "ToolRegistry":
        """Add a tool whose handler takes only the input."""

        async def with_ctx(_ctx: "AgentContext", input: Any) -> Any:
            return await _resolve(handler(input))

        return self.register_ctx(name, with_ctx)

    def register_ctx(self, name: str, handler: CtxHandler) -> "ToolRegistry":
        """Add a tool whose handler takes the calling context and the input."""
        handlers = dict(self._handlers)
        handlers[name] = handler
        return ToolRegistry(handlers)

    async def call(self, ctx: "AgentContext", name: str, input: Any) -> Any:
        handler = self._handlers.get(name)
        if handler is None:
            raise ToolError(f"Tool not registered: {name}")
        return await _resolve(handler(ctx, input))

    def names(self) -> list[str]:
        """Registered tool names, sorted."""
        return sorted(self._handlers)


# ── Input helpers ─────────────────────────────────────────────────────────────


def _field(input: Any, key: str) -> Any:
    return input.get(key) if isinstance(input, Mapping) else None


def _optional_string(input: Any, key: str) -> Optional[str]:
    value = _field(input, key)
    if isinstance(value, str):
        value = value.strip()
        if value:
            return value
    return None


def _required_string(input: Any, key: str) -> str:
    value = _optional_string(input, key)
    if value is None:
        raise ToolError(f"Missing '{key}' string")
    return value


def _unsigned(input: Any, key: str) -> Optional[int]:
    value = _field(input, key)
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return None


def _limit(input: Any, default: int) -> int:
    value = _unsigned(input, "limit")
    return value if value else default


def _number(input: Any, key: str) -> Optional[float]:
    value = _field(input, key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def _require_tracker(ctx: "AgentContext", tool: str) -> TaskTracker:
    tracker = ctx.tracker
    if tracker is None:
        raise ToolError(f"{tool} requires TaskTracker in AgentContext")
    return tracker


@contextmanager
def _as_tool_error():
    try:
        yield
    except (OSError, ValueError) as exc:
        raise ToolError(str(exc)) from exc


# ── Default tools ─────────────────────────────────────────────────────────────


async def _memory_search(input: Any) -> list[str]:
    query = _required_string(input, "query")
    limit = _limit(input, 5)
    with _as_tool_error():
        return memory.memory_search(query, limit)


async def _codebase_search(input: Any) -> list[str]:
    query = _required_string(input, "query")
    limit = _limit(input, 5)
    with _as_tool_error():
        return codebase.search_codebase(query, limit)


async def _project_overview(input: Any) -> dict[str, Any]:
    limit = _limit(input, 8)
    with _as_tool_error():
        files = codebase.list_project_files(limit)
    return {"summary": _PROJECT_SUMMARY, "files": files}


async def _local_file_read(input: Any) -> dict[str, Any]:
    path = _optional_string(input, "path") or _optional_string(input, "query")
    if path is None:
        raise ToolError("Missing 'path' string")
    max_chars = _unsigned(input, "max_chars")
    with _as_tool_error():
        content = codebase.inspect_project_file(path, 2400 if max_chars is None else max_chars)
    return {"path": path, "content": content}


async def _task_recent(ctx: "AgentContext", input: Any) -> list[dict[str, Any]]:
    limit = _limit(input, 20)
    tracker = _require_tracker(ctx, "task_recent")
    with _as_tool_error():
        return [entry.to_dict() for entry in tracker.read_last_n(limit)]


async def _task_lookup(ctx: "AgentContext", input: Any) -> Optional[dict[str, Any]]:
    timestamp = _required_string(input, "timestamp")
    tracker = _require_tracker(ctx, "task_lookup")
    with _as_tool_error():
        entry = tracker.find_by_timestamp(timestamp)
    return None if entry is None else entry.to_dict()


async def _task_record(ctx: "AgentContext", input: Any) -> dict[str, Any]:
    event = _required_string(input, "event")
    tracker = _require_tracker(ctx, "task_record")
    entry = TaskEntry.system_event(
        "Sirin",
        event,
        _optional_string(input, "message_preview"),
        _optional_string(input, "status"),
        _optional_string(input, "reason"),
        _optional_string(input, "correlation_id") or ctx.request_id,
    )
    with _as_tool_error():
        tracker.record(entry)
    return entry.to_dict()


async def _behavior_evaluate(ctx: "AgentContext", input: Any) -> dict[str, Any]:
    with _as_tool_error():
        persona = Persona.load()
    msg = _required_string(input, "msg")
    source = _optional_string(input, "source") or ctx.source
    estimated = _number(input, "estimated_value")
    estimated_value = 0.0 if estimated is None else estimated
    should_record = _field(input, "record") is True

    decision = evaluate_behavior(IncomingMessage(source=source, msg=msg), estimated_value, persona)

    if should_record and ctx.tracker is not None:
        entry = TaskEntry.behavior_decision(persona, estimated_value, decision)
        with _as_tool_error():
            ctx.tracker.record(entry)

    return {
        "draft": decision.draft,
        "high_priority": decision.high_priority,
        "matched_objective": decision.matched_objective,
        "tier": decision.tier.value,
        "reason": decision.reason,
    }


def default_tool_registry() -> ToolRegistry:
    """Registry holding the built-in memory, codebase, task and behaviour tools."""
    return (
        ToolRegistry()
        .register("memory_search", _memory_search)
        .register("codebase_search", _codebase_search)
        .register("project_overview", _project_overview)
        .register("local_file_read", _local_file_read)
        .register_ctx("task_recent", _task_recent)
        .register_ctx("task_lookup", _task_lookup)
        .register_ctx("task_record", _task_record)
        .register_ctx("behavior_evaluate", _behavior_evaluate)
    )