"""Persona configuration, behaviour rules and the JSONL task tracker."""

from __future__ import annotations

import dataclasses
import json
import os
import threading
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import yaml

DEFAULT_PERSONA_PATH = Path("config") / "persona.yaml"

PathLike = Union[str, "os.PathLike[str]"]


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProfessionalTone(Enum):
    BRIEF = "brief"
    DETAILED = "detailed"
    CASUAL = "casual"


@dataclass
class Identity:
    name: str
    professional_tone: ProfessionalTone


@dataclass
class RoiThresholds:
    min_usd_to_notify: float
    min_usd_to_call_remote_llm: float


@dataclass
class ResponseStyle:
    voice: str = "自然、禮貌、專業"
    ack_prefix: str = "已收到你的訊息。"
    compliance_line: str = "我會按照你的要求處理。"


def _mapping(data: Any, key: str) -> Mapping:
    value = data.get(key)
    if not isinstance(value, Mapping):
        raise ValueError(f"persona field '{key}' must be a mapping")
    return value


def _string(data: Mapping, key: str, default: Optional[str] = None) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ValueError(f"field '{key}' must be a string")
    return value


def _number(data: Mapping, key: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"field '{key}' must be a number")
    return float(value)


@dataclass
class Persona:
    identity: Identity
    objectives: list[str]
    roi_thresholds: RoiThresholds
    response_style: ResponseStyle = field(default_factory=ResponseStyle)
    version: str = "1.0"
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping) -> "Persona":
        """Build a persona from a parsed document; raises ValueError if invalid."""
        if not isinstance(data, Mapping):
            raise ValueError("persona document must be a mapping")
        ident = _mapping(data, "identity")
        identity = Identity(
            name=_string(ident, "name"),
            professional_tone=ProfessionalTone(_string(ident, "professional_tone")),
        )
        objectives = data.get("objectives")
        if not isinstance(objectives, list) or not all(isinstance(o, str) for o in objectives):
            raise ValueError("persona field 'objectives' must be a list of strings")
        roi = _mapping(data, "roi_thresholds")
        thresholds = RoiThresholds(
            min_usd_to_notify=_number(roi, "min_usd_to_notify"),
            min_usd_to_call_remote_llm=_number(roi, "min_usd_to_call_remote_llm"),
        )
        style_data = data.get("response_style")
        if style_data is None:
            style = ResponseStyle()
        elif isinstance(style_data, Mapping):
            defaults = ResponseStyle()
            style = ResponseStyle(
                voice=_string(style_data, "voice", defaults.voice),
                ack_prefix=_string(style_data, "ack_prefix", defaults.ack_prefix),
                compliance_line=_string(style_data, "compliance_line", defaults.compliance_line),
            )
        else:
            raise ValueError("persona field 'response_style' must be a mapping")
        return cls(
            identity=identity,
            objectives=list(objectives),
            roi_thresholds=thresholds,
            response_style=style,
            version=_string(data, "version", "1.0"),
            description=_string(data, "description", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": {
                "name": self.identity.name,
                "professional_tone": self.identity.professional_tone.value,
            },
            "objectives": list(self.objectives),
            "roi_thresholds": dataclasses.asdict(self.roi_thresholds),
            "response_style": dataclasses.asdict(self.response_style),
            "version": self.version,
            "description": self.description,
        }

    @classmethod
    def load(cls, path: PathLike = DEFAULT_PERSONA_PATH) -> "Persona":
        """Read a persona from a YAML file."""
        content = Path(path).read_text(encoding="utf-8")
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as exc:
            raise ValueError(f"invalid persona YAML: {exc}") from exc
        return cls.from_dict(data)

    def save(self, path: PathLike = DEFAULT_PERSONA_PATH) -> None:
        """Write the persona back to a YAML file."""
        text = yaml.safe_dump(self.to_dict(), allow_unicode=True, sort_keys=False)
        Path(path).write_text(text, encoding="utf-8")

    @property
    def name(self) -> str:
        return self.identity.name

    def objective_match(self, text: str) -> Optional[str]:
        """Return the first objective contained in ``text``, case-insensitively."""
        lower = text.lower()
        return next((o for o in self.objectives if o.lower() in lower), None)


@dataclass
class IncomingMessage:
    source: str
    msg: str


class ActionTier(Enum):
    IGNORE = "ignore"
    LOCAL_PROCESS = "local_process"
    ESCALATE = "escalate"


@dataclass
class BehaviorDecision:
    draft: str
    high_priority: bool
    matched_objective: Optional[str]
    tier: ActionTier
    reason: str


def determine_action_tier(estimated_value: float, persona: Persona) -> ActionTier:
    thresholds = persona.roi_thresholds
    if estimated_value < thresholds.min_usd_to_notify:
        return ActionTier.IGNORE
    if estimated_value > thresholds.min_usd_to_call_remote_llm:
        return ActionTier.ESCALATE
    return ActionTier.LOCAL_PROCESS


def _head_bytes(text: str, limit: int) -> str:
    return text.encode("utf-8")[:limit].decode("utf-8", errors="ignore")


def generate_response_draft(msg: str, persona: Persona) -> str:
    high_priority = persona.objective_match(msg) is not None
    tone = persona.identity.professional_tone

    if tone is ProfessionalTone.BRIEF:
        if len(msg.encode("utf-8")) > 64:
            base = f"已收到，重點：{_head_bytes(msg, 64)}..."
        else:
            base = f"已收到：{msg}"
        return base + "（高優先）" if high_priority else base
    if tone is ProfessionalTone.DETAILED:
        priority = "高" if high_priority else "一般"
        return (
            "已收到訊息，將依 Persona 目標進行分析。\n"
            f"優先級：{priority}\n"
            f"內容：{msg}\n"
            "下一步：評估 ROI 後決定 Ignore / LocalProcess / Escalate。"
        )
    if high_priority:
        return f"收到，這題很重要，我先優先看：{msg}"
    return f"OK 收到，我來處理：{msg}"


def evaluate_behavior(
    msg: IncomingMessage, estimated_value: float, persona: Persona
) -> BehaviorDecision:
    """Decide how to handle an incoming message given its estimated value."""
    matched = persona.objective_match(msg.msg)
    draft = generate_response_draft(msg.msg, persona)
    tier = determine_action_tier(estimated_value, persona)
    notify = persona.roi_thresholds.min_usd_to_notify
    remote = persona.roi_thresholds.min_usd_to_call_remote_llm

    if tier is ActionTier.IGNORE:
        threshold_reason = f"estimated_value={estimated_value:.2f} < min_usd_to_notify={notify:.2f}"
    elif tier is ActionTier.LOCAL_PROCESS:
        threshold_reason = f"{notify:.2f} <= estimated_value={estimated_value:.2f} <= {remote:.2f}"
    else:
        threshold_reason = (
            f"estimated_value={estimated_value:.2f} > min_usd_to_call_remote_llm={remote:.2f}"
        )

    objective_reason = (
        f"matched objective='{matched}'" if matched is not None else "no objective matched"
    )
    reason = (
        f"persona='{persona.name}', source='{msg.source}', "
        f"{objective_reason}, {threshold_reason}"
    )
    return BehaviorDecision(
        draft=draft,
        high_priority=matched is not None,
        matched_objective=matched,
        tier=tier,
        reason=reason,
    )


def _optional(data: Mapping, key: str, kind: type) -> Any:
    value = data.get(key)
    if value is None:
        return None
    if kind is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"task entry field '{key}' must be a number")
        return float(value)
    if not isinstance(value, kind):
        raise ValueError(f"task entry field '{key}' must be of type {kind.__name__}")
    return value


@dataclass
class TaskEntry:
    timestamp: str
    event: str
    persona: str
    correlation_id: Optional[str] = None
    message_preview: Optional[str] = None
    trigger_remote_ai: Optional[bool] = None
    estimated_profit_usd: Optional[float] = None
    status: Optional[str] = None
    reason: Optional[str] = None
    action_tier: Optional[ActionTier] = None
    high_priority: Optional[bool] = None

    @classmethod
    def heartbeat(cls, persona_name: str) -> "TaskEntry":
        return cls(timestamp=_now_rfc3339(), event="heartbeat", persona=persona_name)

    @classmethod
    def ai_decision(cls, persona_name: str, message_preview: Optional[str]) -> "TaskEntry":
        return cls(
            timestamp=_now_rfc3339(),
            event="ai_decision",
            persona=persona_name,
            message_preview=message_preview,
        )

    @classmethod
    def behavior_decision(
        cls, persona: Persona, estimated_value: float, decision: BehaviorDecision
    ) -> "TaskEntry":
        status = {
            ActionTier.IGNORE: "DONE",
            ActionTier.LOCAL_PROCESS: "FOLLOWING",
            ActionTier.ESCALATE: "PENDING",
        }[decision.tier]
        return cls(
            timestamp=_now_rfc3339(),
            event="behavior_decision",
            persona=persona.name,
            trigger_remote_ai=decision.tier is ActionTier.ESCALATE,
            estimated_profit_usd=float(estimated_value),
            status=status,
            reason=decision.reason,
            action_tier=decision.tier,
            high_priority=decision.high_priority,
        )

    @classmethod
    def system_event(
        cls,
        persona_name: str,
        event: str,
        message_preview: Optional[str] = None,
        status: Optional[str] = None,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> "TaskEntry":
        return cls(
            timestamp=_now_rfc3339(),
            event=event,
            persona=persona_name,
            correlation_id=correlation_id,
            message_preview=message_preview,
            status=status,
            reason=reason,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a mapping, leaving out unset optional fields."""
        result: dict[str, Any] = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            result[f.name] = value.value if isinstance(value, ActionTier) else value
        return result

    @classmethod
    def from_dict(cls, data: Mapping) -> "TaskEntry":
        """Build an entry from a mapping; raises ValueError if it is malformed."""
        if not isinstance(data, Mapping):
            raise ValueError("task entry must be a mapping")
        required = {}
        for key in ("timestamp", "event", "persona"):
            value = data.get(key)
            if not isinstance(value, str):
                raise ValueError(f"task entry field '{key}' must be a string")
            required[key] = value
        tier = data.get("action_tier")
        return cls(
            **required,
            correlation_id=_optional(data, "correlation_id", str),
            message_preview=_optional(data, "message_preview", str),
            trigger_remote_ai=_optional(data, "trigger_remote_ai", bool),
            estimated_profit_usd=_optional(data, "estimated_profit_usd", float),
            status=_optional(data, "status", str),
            reason=_optional(data, "reason", str),
            action_tier=None if tier is None else ActionTier(tier),
            high_priority=_optional(data, "high_priority", bool),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_json(cls, line: str) -> "TaskEntry":
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid task entry JSON: {exc}") from exc
        return cls.from_dict(data)


def _try_parse(line: str) -> Optional[TaskEntry]:
    try:
        return TaskEntry.from_json(line)
    except ValueError:
        return None


class TaskTracker:
    """Append-only JSONL log of task entries, shared between workers."""

    def __init__(self, path: PathLike) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def _tmp_path(self) -> Path:
        return self._path.with_suffix(".jsonl.tmp")

    def record(self, entry: TaskEntry) -> None:
        """Append one entry to the log, creating directories as needed."""
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8", newline="") as handle:
                handle.write(entry.to_json() + "\n")

    def _read_raw_lines(self) -> list[str]:
        if not self._path.exists():
            return []
        chunks = self._path.read_bytes().split(b"\n")
        if chunks and chunks[-1] == b"":
            chunks.pop()
        return [
            (chunk[:-1] if chunk.endswith(b"\r") else chunk).decode("utf-8", errors="replace")
            for chunk in chunks
        ]

    def _rewrite(self, lines: list[str]) -> None:
        tmp = self._tmp_path()
        with tmp.open("w", encoding="utf-8", newline="") as handle:
            handle.writelines(line + "\n" for line in lines)
        os.replace(tmp, self._path)

    def read_last_n(self, n: int) -> list[TaskEntry]:
        """Return the parseable entries among the last ``n`` non-empty lines."""
        with self._lock:
            raw = self._read_raw_lines()
        ring = deque((line for line in raw if line.strip()), maxlen=max(n, 0))
        return [entry for entry in map(_try_parse, ring) if entry is not None]

    def update_statuses(self, updates: Mapping[str, str]) -> None:
        """Set the status of entries whose timestamp is a key of ``updates``."""
        if not updates:
            return
        with self._lock:
            if not self._path.exists():
                return
            output = []
            for line in self._read_raw_lines():
                entry = _try_parse(line) if line.strip() else None
                if entry is not None and entry.timestamp in updates:
                    entry.status = updates[entry.timestamp]
                    output.append(entry.to_json())
                else:
                    output.append(line)
            self._rewrite(output)

    def find_by_timestamp(self, timestamp: str) -> Optional[TaskEntry]:
        """Return the first entry with the given timestamp, or None."""
        with self._lock:
            raw = self._read_raw_lines()
        for line in raw:
            if not line.strip():
                continue
            entry = _try_parse(line)
            if entry is not None and entry.timestamp == timestamp:
                return entry
        return None

    def trim_to_max(self, max_lines: int) -> int:
        """Keep only the newest ``max_lines`` entries; return how many were removed."""
        with self._lock:
            non_empty = [line for line in self._read_raw_lines() if line.strip()]
            if len(non_empty) <= max_lines:
                return 0
            removed = len(non_empty) - max_lines
            self._rewrite(non_empty[removed:])
            return removed