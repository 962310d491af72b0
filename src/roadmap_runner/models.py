"""Core data model: tasks, agents and roadmap phases.

Everything here is a plain dataclass with ``to_dict()``/``from_dict()``
helpers so queue snapshots and status payloads stay JSON-friendly.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .constants import DEFAULT_MAX_RETRIES


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskType(str, Enum):
    """The kind of work a task represents."""

    PLAN = "plan"
    IMPLEMENT = "implement"
    TEST = "test"
    REVIEW = "review"
    FIX = "fix"
    SECURITY = "security"
    CUSTOM = "custom"


class TaskPriority(str, Enum):
    """Scheduling priority; higher weight runs first."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def weight(self) -> int:
        return {"critical": 4, "high": 3, "normal": 2, "low": 1}[self.value]


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED})


class QueueStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class AgentStatus(str, Enum):
    """Lifecycle of a single agent process."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPING = "stopping"


class AgentType(str, Enum):
    ORCHESTRATOR = "orchestrator"
    PLANNER = "planner"
    ARCHITECT = "architect"
    IMPLEMENTER = "implementer"
    REVIEWER = "reviewer"
    TESTER = "tester"
    SECURITY = "security"
    DEBUGGER = "debugger"


class ModelProvider(str, Enum):
    """Backing model CLI. ``claude`` is the primary high-reasoning model."""

    CLAUDE = "claude"
    GLM = "glm"


class ThinkingLevel(str, Enum):
    OFF = "off"
    THINK = "think"
    MAX = "max"


class PhaseState(str, Enum):
    """States of the roadmap phase state machine."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    TESTING = "testing"
    PAUSING = "pausing"
    PAUSED = "paused"
    STOPPING = "stopping"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Task-type string -> default agent type.
TASK_TYPE_AGENT_MAP: dict[str, AgentType] = {
    TaskType.PLAN.value: AgentType.PLANNER,
    TaskType.IMPLEMENT.value: AgentType.IMPLEMENTER,
    TaskType.TEST.value: AgentType.TESTER,
    TaskType.REVIEW.value: AgentType.REVIEWER,
    TaskType.FIX.value: AgentType.DEBUGGER,
    TaskType.SECURITY.value: AgentType.SECURITY,
}


def agent_type_for_task_type(task_type: Any) -> AgentType:
    """Map a task type to its default agent type, falling back to implementer."""
    key = task_type.value if isinstance(task_type, Enum) else str(task_type or "")
    return TASK_TYPE_AGENT_MAP.get(key, AgentType.IMPLEMENTER)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _generate_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:8]}"


def _generate_agent_id() -> str:
    return f"agent-{uuid.uuid4().hex[:8]}"


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _coerce_enum(enum_cls: type[Enum], raw: Any, default: Enum) -> Any:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw))
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """Smallest schedulable unit of work, owned by one queue or phase."""

    id: str = field(default_factory=_generate_task_id)
    type: TaskType = TaskType.IMPLEMENT
    title: str = ""
    description: str = ""
    priority: TaskPriority = TaskPriority.NORMAL
    dependencies: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent_type: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    retries: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    created_at: str = field(default_factory=_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    output: Optional[dict[str, Any]] = None
    input: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        d = dict(data)
        agent_type = d.get("assigned_agent_type")
        return cls(
            id=str(d.get("id") or _generate_task_id()),
            type=_coerce_enum(TaskType, d.get("type"), TaskType.IMPLEMENT),
            title=str(d.get("title", "")),
            description=str(d.get("description") or ""),
            priority=_coerce_enum(TaskPriority, d.get("priority"), TaskPriority.NORMAL),
            dependencies=[str(x) for x in d.get("dependencies") or []],
            status=_coerce_enum(TaskStatus, d.get("status"), TaskStatus.PENDING),
            assigned_agent_type=str(agent_type) if agent_type else None,
            assigned_agent_id=d.get("assigned_agent_id"),
            retries=int(d.get("retries", 0)),
            max_retries=int(d.get("max_retries", DEFAULT_MAX_RETRIES)),
            created_at=str(d.get("created_at") or _now_iso()),
            started_at=d.get("started_at"),
            completed_at=d.get("completed_at"),
            error=d.get("error"),
            output=d.get("output"),
            input=d.get("input"),
        )


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    context_percentage: float = 0.0


@dataclass
class Agent:
    """One externally executing worker process handling a single task."""

    type: str
    name: str
    session_id: str
    model: ModelProvider
    id: str = field(default_factory=_generate_agent_id)
    status: AgentStatus = AgentStatus.STARTING
    retries: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    token_usage: Optional[TokenUsage] = None
    progress: Optional[int] = None
    current_action: Optional[str] = None
    error_message: Optional[str] = None
    parent_agent_id: Optional[str] = None
    cli_session_id: Optional[str] = None
    started_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None
    duration: Optional[float] = None  # seconds, set once at the terminal transition

    @property
    def is_terminal(self) -> bool:
        return self.status in (AgentStatus.COMPLETED, AgentStatus.ERROR)

    def finish(self, status: AgentStatus, error_message: Optional[str] = None) -> None:
        """Move the agent into a terminal status, stamping duration once."""
        if self.is_terminal:
            return
        now = datetime.now(timezone.utc)
        started = _parse_iso(self.started_at) or now
        self.status = status
        self.completed_at = now.isoformat()
        self.duration = max(0.0, (now - started).total_seconds())
        if error_message is not None:
            self.error_message = error_message

    def to_dict(self) -> dict[str, Any]:
        return _plain(asdict(self))


# ---------------------------------------------------------------------------
# Roadmap phase
# ---------------------------------------------------------------------------

@dataclass
class RoadmapPhase:
    """A unit of roadmap work with its own state machine."""

    id: int
    name: str
    description: str = ""
    state: PhaseState = PhaseState.PENDING
    tasks: list[Task] = field(default_factory=list)
    dependencies: list[int] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    duration_minutes: Optional[int] = None
    retries: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def pending_tasks(self) -> list[Task]:
        return [t for t in self.tasks if t.status == TaskStatus.PENDING]

    @property
    def completed_task_count(self) -> int:
        return sum(1 for t in self.tasks if t.status == TaskStatus.COMPLETED)

    def to_dict(self) -> dict[str, Any]:
        return _plain(asdict(self))
