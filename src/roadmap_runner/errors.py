"""Exception taxonomy for the roadmap runner."""

from __future__ import annotations

from typing import Optional


class RoadmapRunnerError(Exception):
    """Base class for all roadmap runner errors."""


class ConfigNotFoundError(RoadmapRunnerError):
    """No descriptor exists for the requested agent type."""

    def __init__(self, agent_type: str) -> None:
        self.agent_type = agent_type
        super().__init__(f"Agent configuration not found for type: {agent_type}")


class DependencyUnmetError(RoadmapRunnerError):
    """A phase was executed before one of its dependency phases completed."""

    def __init__(self, phase_id: int, dependency_id: int) -> None:
        self.phase_id = phase_id
        self.dependency_id = dependency_id
        super().__init__(f"Dependency not met: Phase {dependency_id}")


class InvalidTransitionError(RoadmapRunnerError):
    """An illegal phase state transition was requested."""

    def __init__(self, from_state: str, to_state: str, message: Optional[str] = None) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(message or f"Invalid state transition: {from_state} -> {to_state}")


class ProcessSpawnError(RoadmapRunnerError):
    """The backing agent process could not be started."""


class RoadmapParseError(RoadmapRunnerError):
    """The roadmap source could not be read."""
