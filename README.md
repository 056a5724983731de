# sirin

Building blocks for a local AI assistant: an in-process event bus, a log ring
buffer, persona-driven behaviour rules, an append-only JSONL task log, a
lightweight full-text memory and codebase index, a small agent runtime with a
tool registry, a rule-based follow-up scheduler and an intent planner.

## Task log

Every notable action is recorded as a `TaskEntry` in a JSONL file managed by a
`TaskTracker`:

```python
from sirin.persona import TaskEntry, TaskTracker

tracker = TaskTracker("data/tracking/task.jsonl")
entry = TaskEntry.system_event("Sirin", "user_request", "please research this", "PENDING", None, None)
tracker.record(entry)

recent = tracker.read_last_n(50)
tracker.update_statuses({entry.timestamp: "FOLLOWUP_NEEDED"})
tracker.trim_to_max(2000)
```

## Persona and behaviour rules

A `Persona` is loaded from YAML and decides how an incoming message is handled:

```python
from sirin.persona import Persona, IncomingMessage, evaluate_behavior, determine_action_tier

persona = Persona.load("config/persona.yaml")
decision = evaluate_behavior(IncomingMessage(source="telegram", msg="Monitor Agora"), 30.0, persona)
print(decision.tier, decision.draft, decision.reason)
```

Messages worth less than `min_usd_to_notify` are ignored, those above
`min_usd_to_call_remote_llm` are escalated, and everything in between is
processed locally.

## Memory

```python
from sirin.memory import memory_store, memory_search, append_context, load_recent_context

memory_store("Rust async runtime uses tokio for scheduling", "manual")
print(memory_search("tokio scheduling", 5))

append_context("hello", "hi there", None)
print(load_recent_context(10, None))
```

Search uses term-frequency scoring; CJK characters are tokenized individually.
The `sirin.codebase` module indexes the surrounding project
(`refresh_codebase_index`, `search_codebase`, `list_project_files`,
`inspect_project_file`).

## Agents and tools

```python
import asyncio
from sirin.adk.runner import AgentRuntime
from sirin.adk.tool import ToolRegistry

async def echo(payload):
    return payload

runtime = AgentRuntime(ToolRegistry().register("echo", echo))
ctx = runtime.context("example")
print(asyncio.run(ctx.call_tool("echo", {"hello": "world"})))
```

`default_tool_registry()` provides memory search, codebase search, project
overview, local file reading and task-log tools.

## Events and logging

```python
from sirin import events, log_buffer

sub = events.subscribe()
events.publish(events.FollowupTriggered(source_timestamp="2024-01-01T00:00:00Z"))
print(sub.try_recv())

log_buffer.log("[followup] cycle finished")
print(log_buffer.snapshot_text(20))
```

## Follow-up and planning

`sirin.followup` picks research-like pending tasks to self-assign
(`self_assign_candidates`), enforces cooldowns and retry limits, and marks stale
or high-priority work as `FOLLOWUP_NEEDED` (`mark_followup`). Limits can be tuned
with the environment variables `FOLLOWUP_INTERVAL_SECS`,
`AUTONOMOUS_MAX_CONCURRENT`, `AUTONOMOUS_MAX_PER_CYCLE`,
`AUTONOMOUS_COOLDOWN_SECS`, `AUTONOMOUS_MAX_RETRIES` and `TASK_LOG_MAX_LINES`.

`sirin.planner` classifies a request into an `IntentFamily` and builds a
`WorkflowPlan` with `build_family_plan` and `apply_skill_hints`.

## Data locations

When `LOCALAPPDATA` is set, files live under `%LOCALAPPDATA%/Sirin/`;
otherwise under `data/` in the working directory.