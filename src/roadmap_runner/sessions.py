"""Registry of roadmap executors keyed by session id.

Each session owns exactly one executor and, through it, one task queue, so
concurrency caps never leak between sessions.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from .agents.config_loader import ConfigLoader
from .agents.runner import AgentRunner
from .roadmap_executor import RoadmapExecutor

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(self, runner: AgentRunner, config_loader: ConfigLoader) -> None:
        self.runner = runner
        self.config_loader = config_loader
        self._executors: dict[str, RoadmapExecutor] = {}

    def create(self, session_id: Optional[str] = None, **kwargs: Any) -> RoadmapExecutor:
        """Create the executor for *session_id*, generating an id when omitted.

        Extra keyword arguments are passed to :class:`RoadmapExecutor`.
        Raises ``ValueError`` if the session already has an executor.
        """
        session_id = session_id or f"session-{uuid.uuid4().hex[:8]}"
        if session_id in self._executors:
            raise ValueError(f"Session already exists: {session_id}")
        executor = RoadmapExecutor(session_id, self.runner, self.config_loader, **kwargs)
        self._executors[session_id] = executor
        logger.info("Created roadmap session %s", session_id)
        return executor

    def get(self, session_id: str) -> Optional[RoadmapExecutor]:
        return self._executors.get(session_id)

    def remove(self, session_id: str) -> bool:
        executor = self._executors.pop(session_id, None)
        if executor is None:
            return False
        executor.task_queue.clear()
        logger.info("Removed roadmap session %s", session_id)
        return True

    def list(self) -> list[str]:
        return sorted(self._executors)

    def clear(self) -> None:
        for session_id in list(self._executors):
            self.remove(session_id)

    def __len__(self) -> int:
        return len(self._executors)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._executors
