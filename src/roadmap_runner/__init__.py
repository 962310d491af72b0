"""Provide the public `roadmap_runner` package exports."""

from __future__ import annotations

from .acceptance import AcceptanceChecker, AcceptanceRule, CriterionResult
from .agents import AgentConfigLoader, AgentRunner, ScriptedSpawner, StaticConfigLoader, SubprocessSpawner
from .cancellation import CancellationToken
from .config import PhaseExecutorConfig, RoadmapExecutorConfig
from .errors import (
    ConfigNotFoundError,
    DependencyUnmetError,
    InvalidTransitionError,
    ProcessSpawnError,
    RoadmapParseError,
    RoadmapRunnerError,
)
from .models import Agent, AgentStatus, PhaseState, RoadmapPhase, Task, TaskPriority, TaskStatus, TaskType
from .notifications import Notifier
from .parallel import AgentDispatcher, DispatchOptions, DispatchResult
from .phase_executor import PhaseExecutionResult, PhaseExecutor
from .roadmap_executor import RoadmapExecutor, RoadmapStatus, TransitionResult
from .sessions import SessionRegistry
from .task_queue import TaskQueue

__all__ = [
    "AcceptanceChecker",
    "AcceptanceRule",
    "Agent",
    "AgentConfigLoader",
    "AgentDispatcher",
    "AgentRunner",
    "AgentStatus",
    "CancellationToken",
    "ConfigNotFoundError",
    "CriterionResult",
    "DependencyUnmetError",
    "DispatchOptions",
    "DispatchResult",
    "InvalidTransitionError",
    "Notifier",
    "PhaseExecutionResult",
    "PhaseExecutor",
    "PhaseExecutorConfig",
    "PhaseState",
    "ProcessSpawnError",
    "RoadmapExecutor",
    "RoadmapExecutorConfig",
    "RoadmapParseError",
    "RoadmapPhase",
    "RoadmapRunnerError",
    "RoadmapStatus",
    "ScriptedSpawner",
    "SessionRegistry",
    "StaticConfigLoader",
    "SubprocessSpawner",
    "Task",
    "TaskPriority",
    "TaskQueue",
    "TaskStatus",
    "TaskType",
    "TransitionResult",
]
