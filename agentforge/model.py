"""Core domain types: tasks, runs, steps, memory snapshots and stream events.

Every type converts to and from a JSON-ready dictionary using the wire field
names. Optional fields are left out of the dictionary when empty.
"""

from __future__ import annotations

import re
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Mapping

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_FRACTION = re.compile(r"\.(\d+)")


class TaskStatus(str, Enum):
    """Lifecycle state of a task."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


class RunStatus(str, Enum):
    """Lifecycle state of a run attempt."""

    QUEUED = "RUN_QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


class StepType(str, Enum):
    """Kind of work done in a step."""

    LLM_CALL = "llm_call"
    TOOL_CALL = "tool_call"
    OBSERVATION = "observation"
    FINAL = "final"


class StepStatus(str, Enum):
    """Whether a step succeeded or failed."""

    OK = "OK"
    ERROR = "ERROR"


class MessageRole(str, Enum):
    """Role of a message in agent memory."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class StreamEventType(str, Enum):
    """Classification of stream events."""

    TOKEN_CHUNK = "token_chunk"
    STEP_START = "step_start"
    STEP_END = "step_end"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    COMPLETE = "complete"
    ERROR = "error"


def _format_time(value: datetime) -> str:
    """Format a timestamp as RFC 3339 with trailing fractional zeros trimmed."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.replace(tzinfo=None, microsecond=0).isoformat()
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    if (value.utcoffset() or timedelta(0)) == timedelta(0):
        return text + "Z"
    return text + value.isoformat()[-6:]


def _parse_time(text: str) -> datetime:
    """Parse an RFC 3339 timestamp, keeping microsecond precision."""
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m[1][:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp without zone: {text!r}")
    return parsed


# Decoders turn a raw wire value (None when absent) into the field's value.
def _str(value: Any) -> str:
    return value or ""


def _int(value: Any) -> int:
    return int(value or 0)


def _float(value: Any) -> float:
    return float(value or 0.0)


def _time(value: Any) -> datetime:
    return ZERO_TIME if value is None else _parse_time(value)


def _opt_time(value: Any) -> datetime | None:
    return None if value is None else _parse_time(value)


def _opt_int(value: Any) -> int | None:
    return None if value is None else int(value)


def _enum(enum_cls: type[Enum]) -> Callable[[Any], Any]:
    """Decode to the enum member, or keep the raw string if it is unknown."""

    def decode(value: Any) -> Any:
        try:
            return enum_cls(value)
        except ValueError:
            return "" if value is None else str(value)

    return decode


def _nested(cls: Any) -> Callable[[Any], Any]:
    return lambda value: None if value is None else cls.from_dict(value)


def _list_of(cls: Any) -> Callable[[Any], list[Any]]:
    return lambda value: [cls.from_dict(item) for item in value or []]


def _f(decode: Callable[[Any], Any], default: Any = MISSING, *, factory: Any = MISSING,
       omit: bool = False, wire: str | None = None) -> Any:
    """Declare a field with its decoder, omit-empty flag and wire name."""
    return field(
        default=default,
        default_factory=factory,
        metadata={"decode": decode, "omit": omit, "wire": wire},
    )


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _format_time(value)
    if is_dataclass(value) and not isinstance(value, type):
        return value.to_dict()  # type: ignore[attr-defined]
    if isinstance(value, list):
        return [_encode(item) for item in value]
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    return value


def _to_dict(record: Any) -> dict[str, Any]:
    """Encode a record's fields under their wire names, skipping empty ones."""
    out: dict[str, Any] = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if value is None or (f.metadata["omit"] and not value):
            continue
        out[f.metadata["wire"] or f.name] = _encode(value)
    return out


def _from_dict(cls: Any, data: Mapping[str, Any]) -> Any:
    """Build a record of ``cls`` from a wire dictionary."""
    return cls(**{
        f.name: f.metadata["decode"](data.get(f.metadata["wire"] or f.name))
        for f in fields(cls)
    })


@dataclass
class TokenUsage:
    """LLM token consumption."""

    input: int = _f(_int, 0)
    output: int = _f(_int, 0)
    total: int = _f(_int, 0)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TokenUsage:
        return _from_dict(cls, data)


@dataclass
class ArtifactRef:
    """Pointer to a stored object."""

    s3_key: str = _f(_str, "")
    sha256: str = _f(_str, "")
    size: int = _f(_int, 0)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ArtifactRef:
        return _from_dict(cls, data)


@dataclass
class CheckpointRef:
    """References to memory and workspace snapshots."""

    memory: ArtifactRef | None = _f(_nested(ArtifactRef), None)
    workspace: ArtifactRef | None = _f(_nested(ArtifactRef), None)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CheckpointRef:
        return _from_dict(cls, data)


@dataclass(kw_only=True)
class ModelConfig:
    """LLM configuration for a run."""

    model_id: str = _f(_str, "")
    temperature: float = _f(_float, 0.0, omit=True)
    max_tokens: int = _f(_int, 0, omit=True)
    policy_mode: str = _f(_str, "", omit=True)
    cost_cap_usd: float = _f(_float, 0.0, omit=True)
    fallback_model_ids: list[str] = _f(lambda v: list(v or []), factory=list, omit=True)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ModelConfig:
        return _from_dict(cls, data)


@dataclass(kw_only=True)
class Task:
    """A user-submitted agent task."""

    task_id: str = _f(_str, "")
    tenant_id: str = _f(_str, "")
    user_id: str = _f(_str, "")
    status: TaskStatus | str = _f(_enum(TaskStatus), TaskStatus.QUEUED)
    active_run_id: str = _f(_str, "")
    abort_requested: bool = _f(bool, False)
    abort_reason: str = _f(_str, "", omit=True)
    abort_ts: datetime | None = _f(_opt_time, None)
    idempotency_key: str = _f(_str, "", omit=True)
    prompt: str = _f(_str, "")
    model_config: ModelConfig | None = _f(_nested(ModelConfig), None)
    created_at: datetime = _f(_time, ZERO_TIME)
    updated_at: datetime = _f(_time, ZERO_TIME)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Task:
        return _from_dict(cls, data)


@dataclass(kw_only=True)
class Run:
    """A single execution attempt of a task."""

    task_id: str = _f(_str, "")
    run_id: str = _f(_str, "")
    tenant_id: str = _f(_str, "")
    status: RunStatus | str = _f(_enum(RunStatus), RunStatus.QUEUED)
    queued_at: datetime | None = _f(_opt_time, None)
    parent_run_id: str = _f(_str, "", omit=True)
    resume_from_step_index: int | None = _f(_opt_int, None)
    model_config: ModelConfig | None = _f(_nested(ModelConfig), None)
    started_at: datetime | None = _f(_opt_time, None)
    ended_at: datetime | None = _f(_opt_time, None)
    last_step_index: int = _f(_int, 0)
    total_token_usage: TokenUsage | None = _f(_nested(TokenUsage), None)
    total_cost_usd: float = _f(_float, 0.0, omit=True)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Run:
        return _from_dict(cls, data)


@dataclass(kw_only=True)
class Step:
    """A single execution step within a run."""

    run_id: str = _f(_str, "")
    step_index: int = _f(_int, 0)
    type: StepType | str = _f(_enum(StepType))
    status: StepStatus | str = _f(_enum(StepStatus))
    input: str = _f(_str, "", omit=True)
    output: str = _f(_str, "", omit=True)
    ts_start: datetime = _f(_time, ZERO_TIME)
    ts_end: datetime = _f(_time, ZERO_TIME)
    latency_ms: int = _f(_int, 0)
    token_usage: TokenUsage | None = _f(_nested(TokenUsage), None)
    checkpoint_ref: CheckpointRef | None = _f(_nested(CheckpointRef), None)
    error_code: str = _f(_str, "", omit=True)
    error_message: str = _f(_str, "", omit=True)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Step:
        return _from_dict(cls, data)


@dataclass(kw_only=True)
class Connection:
    """A WebSocket connection."""

    connection_id: str = _f(_str, "")
    tenant_id: str = _f(_str, "")
    user_id: str = _f(_str, "")
    task_id: str = _f(_str, "")
    run_id: str = _f(_str, "")
    connected_at: datetime = _f(_time, ZERO_TIME)
    ttl: int = _f(_int, 0)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Connection:
        return _from_dict(cls, data)


@dataclass(kw_only=True)
class SQSMessage:
    """Pointer message sent through the task queue."""

    tenant_id: str = _f(_str, "")
    task_id: str = _f(_str, "")
    run_id: str = _f(_str, "")
    task_type: str = _f(_str, "", omit=True)
    submitted_at: int = _f(_int, 0)
    attempt: int = _f(_int, 0)
    dedupe_key: str = _f(_str, "", omit=True)
    estimated_tokens: int = _f(_int, 0, omit=True)
    estimated_cost: float = _f(_float, 0.0, omit=True, wire="estimated_cost_usd")

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SQSMessage:
        return _from_dict(cls, data)


@dataclass(kw_only=True)
class MemoryToolCall:
    """A tool invocation requested by the assistant."""

    id: str = _f(_str, "", omit=True)
    name: str = _f(_str, "")
    args: str = _f(_str, "")

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MemoryToolCall:
        return _from_dict(cls, data)


@dataclass(kw_only=True)
class MemoryMessage:
    """A single message in the agent's conversation history."""

    role: MessageRole | str = _f(_enum(MessageRole))
    content: str = _f(_str, "", omit=True)
    tool_call_id: str = _f(_str, "", omit=True)
    tool_calls: list[MemoryToolCall] = _f(_list_of(MemoryToolCall), factory=list, omit=True)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MemoryMessage:
        return _from_dict(cls, data)


@dataclass(kw_only=True)
class MemorySnapshot:
    """The agent's working memory at a checkpoint."""

    run_id: str = _f(_str, "")
    step_index: int = _f(_int, 0)
    messages: list[MemoryMessage] = _f(_list_of(MemoryMessage), factory=list)
    scratchpad: str = _f(_str, "", omit=True)
    tool_state: dict[str, Any] = _f(lambda v: dict(v or {}), factory=dict, omit=True)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MemorySnapshot:
        return _from_dict(cls, data)


@dataclass(kw_only=True)
class StreamEvent:
    """Envelope for every event pushed to stream subscribers."""

    task_id: str = _f(_str, "")
    run_id: str = _f(_str, "")
    seq: int = _f(_int, 0)
    ts: int = _f(_int, 0)
    type: StreamEventType | str = _f(_enum(StreamEventType))
    data: Any = _f(lambda v: v, None)

    def to_dict(self) -> dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StreamEvent:
        return _from_dict(cls, data)