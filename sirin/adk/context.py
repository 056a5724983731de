"""Per-request execution context shared by an agent and the tools it calls."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import TYPE_CHECKING, Any, Optional

from sirin import log_buffer
from sirin.persona import TaskEntry, TaskTracker

if TYPE_CHECKING:
    from sirin.adk.tool import ToolRegistry

_TRACE_LIMIT = 32


class AgentContext:
    """Request identity, tool access, metadata and an execution trace."""

    def __init__(self, source: str, tools: "ToolRegistry") -> None:
        self.request_id = f"adk-{time.time_ns() // 1_000_000}"
        self.source = source
        self.tools = tools
        self.metadata: dict[str, str] = {}
        self._tracker: Optional[TaskTracker] = None
        self._lock = threading.Lock()
        self._tool_calls: deque[str] = deque(maxlen=_TRACE_LIMIT)
        self._events: deque[str] = deque(maxlen=_TRACE_LIMIT)

    def with_tracker(self, tracker: TaskTracker) -> "AgentContext":
        """Attach a task tracker; returns this context."""
        self._tracker = tracker
        return self

    def with_optional_tracker(self, tracker: Optional[TaskTracker]) -> "AgentContext":
        """Attach or detach a task tracker; returns this context."""
        self._tracker = tracker
        return self

    def with_metadata(self, key: str, value: str) -> "AgentContext":
        """Set a metadata entry; returns this context."""
        self.metadata[key] = value
        return self

    @property
    def tracker(self) -> Optional[TaskTracker]:
        return self._tracker

    def tool_calls_snapshot(self) -> list[str]:
        """Names of recently called tools, each once, in order of first call."""
        with self._lock:
            return list(dict.fromkeys(self._tool_calls))

    def event_trace_snapshot(self) -> list[str]:
        """The most recent trace notes, oldest first."""
        with self._lock:
            return list(self._events)

    def _push_tool_call(self, name: str) -> None:
        with self._lock:
            self._tool_calls.append(name)

    def _push_event_trace(self, note: str) -> None:
        with self._lock:
            self._events.append(note)

    async def call_tool(self, name: str, input: Any) -> Any:
        """Call a registered tool and trace whether it succeeded."""
        self._push_tool_call(name)
        try:
            result = await self.tools.call(self, name, input)
        except Exception:
            self._push_event_trace(f"tool:{name}:error")
            raise
        self._push_event_trace(f"tool:{name}:ok")
        return result

    def record_system_event(
        self,
        event: str,
        message_preview: Optional[str] = None,
        status: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Log an event, add it to the trace and record it in the task log if attached."""
        if reason is not None:
            log_buffer.log(f"[adk:{self.source}] {event} — {reason}")
        else:
            log_buffer.log(f"[adk:{self.source}] {event}")

        note = ":".join(part for part in ("event", event, status, reason) if part is not None)
        self._push_event_trace(note)

        if self._tracker is not None:
            entry = TaskEntry.system_event(
                "Sirin",
                event,
                message_preview,
                status,
                reason,
                self.request_id,
            )
            try:
                self._tracker.record(entry)
            except OSError:
                pass