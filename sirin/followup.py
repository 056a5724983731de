"""Rules for the background follow-up worker.

The worker looks at the most recent task-log entries, picks research-like
tasks that it can take on by itself, and marks actionable tasks that need
attention as ``FOLLOWUP_NEEDED``. Its limits can be tuned through
environment variables.
"""

from __future__ import annotations

import os
import re
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Optional

from sirin import events, log_buffer
from sirin.persona import TaskEntry, TaskTracker

TASK_LOOKBACK = 50
"""How many trailing log lines the worker inspects on each run."""

WORKER_INTERVAL_SECS = 20
AUTONOMOUS_MAX_CONCURRENT = 2
AUTONOMOUS_MAX_PER_CYCLE = 2
AUTONOMOUS_COOLDOWN_SECS = 300
AUTONOMOUS_MAX_RETRIES = 2
TASK_LOG_MAX_LINES = 2000
STALE_PENDING_SECS = 3600

_RESEARCH_KEYWORDS = ("調研", "研究", "查資料", "分析", "investigate", "research")
_URL_TRIM_CHARS = ",.!?)\"'"

_UNSIGNED = re.compile(r"\+?[0-9]+")
_SIGNED = re.compile(r"[+-]?[0-9]+")
_RFC3339 = re.compile(
    r"([0-9]{4})-([0-9]{2})-([0-9]{2})[Tt ]([0-9]{2}):([0-9]{2}):([0-9]{2})"
    r"(?:\.([0-9]+))?([Zz]|[+-][0-9]{2}:[0-9]{2})"
)


def _env_positive_int(name: str, default: int, signed: bool = False) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    text = raw.strip()
    pattern = _SIGNED if signed else _UNSIGNED
    if not pattern.fullmatch(text):
        return default
    value = int(text)
    return value if value > 0 else default


def worker_interval_secs() -> int:
    """Seconds between worker runs (``FOLLOWUP_INTERVAL_SECS``)."""
    return _env_positive_int("FOLLOWUP_INTERVAL_SECS", WORKER_INTERVAL_SECS)


def autonomous_max_concurrent() -> int:
    """Maximum research tasks running at once (``AUTONOMOUS_MAX_CONCURRENT``)."""
    return _env_positive_int("AUTONOMOUS_MAX_CONCURRENT", AUTONOMOUS_MAX_CONCURRENT)


def autonomous_max_per_cycle() -> int:
    """Maximum tasks scheduled per cycle (``AUTONOMOUS_MAX_PER_CYCLE``)."""
    return _env_positive_int("AUTONOMOUS_MAX_PER_CYCLE", AUTONOMOUS_MAX_PER_CYCLE)


def autonomous_cooldown_secs() -> int:
    """Seconds before the same source may be scheduled again (``AUTONOMOUS_COOLDOWN_SECS``)."""
    return _env_positive_int("AUTONOMOUS_COOLDOWN_SECS", AUTONOMOUS_COOLDOWN_SECS, signed=True)


def autonomous_max_retries() -> int:
    """Maximum failed attempts for one source task (``AUTONOMOUS_MAX_RETRIES``)."""
    return _env_positive_int("AUTONOMOUS_MAX_RETRIES", AUTONOMOUS_MAX_RETRIES)


def task_log_max_lines() -> int:
    """How many task-log entries to keep when trimming (``TASK_LOG_MAX_LINES``)."""
    return _env_positive_int("TASK_LOG_MAX_LINES", TASK_LOG_MAX_LINES)


def _record_optimization_log(
    tracker: TaskTracker,
    event: str,
    message_preview: Optional[str] = None,
    status: Optional[str] = None,
    reason: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> None:
    entry = TaskEntry.system_event(
        "Sirin", event, message_preview, status, reason, correlation_id
    )
    try:
        tracker.record(entry)
    except OSError:
        pass


def correlation_id_for(entry: TaskEntry) -> Optional[str]:
    """The entry's correlation id, or the id carried in a ``feedback_id=`` reason."""
    if entry.correlation_id is not None:
        return entry.correlation_id
    prefix = "feedback_id="
    if entry.reason is not None and entry.reason.startswith(prefix):
        return entry.reason[len(prefix):]
    return None


def first_url(text: str) -> Optional[str]:
    """The first http(s) URL among the whitespace-separated words of ``text``."""
    token = next(
        (t for t in text.split() if t.startswith("https://") or t.startswith("http://")),
        None,
    )
    return None if token is None else token.strip(_URL_TRIM_CHARS)


def derive_research_plan(entry: TaskEntry) -> Optional[tuple[str, Optional[str]]]:
    """Topic and optional URL if the entry's message asks for research, else None."""
    if entry.message_preview is None:
        return None
    text = entry.message_preview.strip()
    if not text:
        return None
    # Machine-generated metadata lines would make the worker schedule itself.
    if text.startswith("source="):
        return None

    lower = text.lower()
    looks_like_research = any(kw.lower() in lower for kw in _RESEARCH_KEYWORDS)
    url = first_url(text)
    if not looks_like_research and url is None:
        return None

    topic = text.replace("\n", " ").strip()
    return topic, url


def _parse_ts(ts: str) -> Optional[datetime]:
    match = _RFC3339.fullmatch(ts)
    if match is None:
        return None
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    micros = int((fraction or "0")[:6].ljust(6, "0"))
    if offset in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = 1 if offset[0] == "+" else -1
        hours, minutes = int(offset[1:3]), int(offset[4:6])
        try:
            tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
        except ValueError:
            return None
    try:
        parsed = datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), micros, tz
        )
    except ValueError:
        return None
    return parsed.astimezone(timezone.utc)


def _seconds_since(moment: datetime) -> int:
    return int((datetime.now(timezone.utc) - moment).total_seconds())


def is_system_generated_event(entry: TaskEntry) -> bool:
    """Whether the entry was written by the worker itself."""
    return entry.event.startswith("autonomous_")


def has_active_schedule(entries: Sequence[TaskEntry], source_timestamp: str) -> bool:
    """Whether a running autonomous schedule exists for the source task."""
    return any(
        e.event == "autonomous_scheduled"
        and e.reason == source_timestamp
        and e.status == "FOLLOWING"
        for e in entries
    )


def failure_count(entries: Sequence[TaskEntry], source_timestamp: str) -> int:
    """Number of autonomous research runs for the source task that did not finish."""
    return sum(
        1
        for e in entries
        if e.event == "autonomous_completed:research"
        and e.reason == source_timestamp
        and e.status == "FOLLOWUP_NEEDED"
    )


def in_cooldown(entries: Sequence[TaskEntry], source_timestamp: str, cooldown_secs: int) -> bool:
    """Whether the source task was scheduled or completed within the cooldown window."""
    stamps = [
        ts
        for ts in (
            _parse_ts(e.timestamp)
            for e in entries
            if e.event in ("autonomous_scheduled", "autonomous_completed:research")
            and e.reason == source_timestamp
        )
        if ts is not None
    ]
    if not stamps:
        return False
    return _seconds_since(max(stamps)) < cooldown_secs


def candidate_priority(entry: TaskEntry) -> float:
    """Scheduling score: estimated profit plus bonuses for urgency, priority and a URL."""
    score = entry.estimated_profit_usd if entry.estimated_profit_usd is not None else 0.0
    if entry.status == "FOLLOWUP_NEEDED":
        score += 100.0
    if entry.high_priority is True:
        score += 50.0
    if entry.message_preview is not None and first_url(entry.message_preview) is not None:
        score += 20.0
    return score


def self_assign_candidates(entries: Sequence[TaskEntry]) -> list[TaskEntry]:
    """Research-like tasks the worker may take on, highest priority first."""
    cooldown_secs = autonomous_cooldown_secs()
    max_retries = autonomous_max_retries()
    candidates = [
        e
        for e in entries
        if e.status in ("FOLLOWUP_NEEDED", "PENDING")
        and not is_system_generated_event(e)
        and not has_active_schedule(entries, e.timestamp)
        and failure_count(entries, e.timestamp) < max_retries
        and not in_cooldown(entries, e.timestamp, cooldown_secs)
        and derive_research_plan(e) is not None
    ]
    return sorted(candidates, key=candidate_priority, reverse=True)


def is_stale(entry: TaskEntry, max_age_secs: int) -> bool:
    """Whether the entry's timestamp is older than ``max_age_secs``."""
    ts = _parse_ts(entry.timestamp)
    return ts is not None and _seconds_since(ts) > max_age_secs


def should_followup_now(actionable: Sequence[TaskEntry]) -> bool:
    """Whether any task is marked for follow-up, high priority, or a stale pending task."""
    return any(
        e.status == "FOLLOWUP_NEEDED"
        or e.high_priority is True
        or (e.status == "PENDING" and is_stale(e, STALE_PENDING_SECS))
        for e in actionable
    )


def mark_followup(tracker: TaskTracker, entries: Sequence[TaskEntry]) -> Optional[str]:
    """Apply the follow-up rules to ``entries``.

    If any FOLLOWING/PENDING task needs attention, the first of them is marked
    ``FOLLOWUP_NEEDED`` in the tracker and announced on the event bus. Returns
    the timestamp of the marked task, or None when nothing was marked.
    """
    actionable = [e for e in entries if e.status in ("FOLLOWING", "PENDING")]

    if not actionable:
        log_buffer.log("[followup] No FOLLOWING/PENDING tasks found — skipping LLM call")
        _record_optimization_log(
            tracker,
            "optimization_cycle_idle",
            "no actionable FOLLOWING/PENDING tasks",
            "IDLE",
        )
        return None

    log_buffer.log(
        f"[followup] Evaluating {len(actionable)} actionable task(s) with rule-based logic"
    )

    if not should_followup_now(actionable):
        log_buffer.log("[followup] Rules: no immediate follow-up needed this cycle")
        return None

    primary = actionable[0]
    tracker.update_statuses({primary.timestamp: "FOLLOWUP_NEEDED"})
    _record_optimization_log(
        tracker,
        "optimization_followup_marked",
        "marked 1 task FOLLOWUP_NEEDED (rule-based)",
        "FOLLOWUP_NEEDED",
        None,
        correlation_id_for(primary),
    )
    log_buffer.log(f"[followup] Marked task {primary.timestamp} as FOLLOWUP_NEEDED (rule)")
    events.publish(events.FollowupTriggered(source_timestamp=primary.timestamp))
    return primary.timestamp