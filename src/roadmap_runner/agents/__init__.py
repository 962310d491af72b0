"""Agent layer: descriptors, process spawning and the agent runner."""

from __future__ import annotations

from .config_loader import AgentCapabilities, AgentConfig, AgentConfigLoader, StaticConfigLoader
from .runner import AgentOutcome, AgentRunner, AgentSpawnRequest, select_model
from .spawner import ScriptedRun, ScriptedSpawner, SpawnOptions, SubprocessSpawner

__all__ = [
    "AgentCapabilities",
    "AgentConfig",
    "AgentConfigLoader",
    "AgentOutcome",
    "AgentRunner",
    "AgentSpawnRequest",
    "ScriptedRun",
    "ScriptedSpawner",
    "SpawnOptions",
    "StaticConfigLoader",
    "SubprocessSpawner",
    "select_model",
]
