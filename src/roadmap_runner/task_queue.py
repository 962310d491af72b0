"""Per-session task queue with priority and dependency resolution.

The queue answers one question: *what can run next?*  It knows nothing about
phases or agents.  Every mutation goes through ``self._lock`` so that the
"check running count, then mark running" step in :meth:`TaskQueue.start_next`
is a single critical section even when dispatch happens from several threads.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .constants import DEFAULT_MAX_PARALLEL, DEFAULT_MAX_RETRIES
from .models import (
    TERMINAL_TASK_STATUSES,
    QueueStatus,
    Task,
    TaskPriority,
    TaskStatus,
    TaskType,
    _coerce_enum,
    _now_iso,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

# Reasons reported by ``get_next`` when no task is handed out.
REASON_MAX_PARALLEL = "max_parallel"
REASON_ALL_COMPLETED = "all_completed"
REASON_ALL_FAILED = "all_failed"
REASON_QUEUE_EMPTY = "queue_empty"
REASON_BLOCKED = "blocked"


@dataclass
class NextTaskResult:
    task: Optional[Task] = None
    reason: Optional[str] = None


@dataclass
class DependencyNode:
    """Recursive view of a task and its transitive dependencies.

    ``task`` is ``None`` for a dangling reference; ``cycle`` marks a
    dependency that closes a loop on the current path.
    """

    task_id: str
    task: Optional[Task] = None
    dependencies: list["DependencyNode"] = field(default_factory=list)
    missing: bool = False
    cycle: bool = False


@dataclass
class QueueStats:
    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)
    by_priority: dict[str, int] = field(default_factory=dict)
    blocked: int = 0
    ready: int = 0
    completion_percentage: int = 0


# ---------------------------------------------------------------------------
# Task queue
# ---------------------------------------------------------------------------

class TaskQueue:
    """Session-scoped collection of tasks with a concurrency cap."""

    def __init__(self, session_id: str, max_parallel: int = DEFAULT_MAX_PARALLEL) -> None:
        self.session_id = session_id
        self._tasks: dict[str, Task] = {}
        self._max_parallel = max(1, int(max_parallel))
        self._status = QueueStatus.IDLE
        self.created_at = _now_iso()
        self.updated_at = self.created_at
        self._lock = threading.RLock()

    # -- Properties ----------------------------------------------------------

    @property
    def max_parallel(self) -> int:
        return self._max_parallel

    @max_parallel.setter
    def max_parallel(self, value: int) -> None:
        with self._lock:
            self._max_parallel = max(1, int(value))
            self._touch()

    @property
    def status(self) -> QueueStatus:
        return self._status

    @status.setter
    def status(self, value: QueueStatus) -> None:
        with self._lock:
            self._status = QueueStatus(value)
            self._touch()

    @property
    def size(self) -> int:
        return len(self._tasks)

    @property
    def tasks(self) -> list[Task]:
        with self._lock:
            return list(self._tasks.values())

    @property
    def pending_tasks(self) -> list[Task]:
        return self._with_status(TaskStatus.PENDING)

    @property
    def running_tasks(self) -> list[Task]:
        return self._with_status(TaskStatus.RUNNING)

    @property
    def completed_tasks(self) -> list[Task]:
        return self._with_status(TaskStatus.COMPLETED)

    @property
    def failed_tasks(self) -> list[Task]:
        return self._with_status(TaskStatus.FAILED)

    def _with_status(self, status: TaskStatus) -> list[Task]:
        with self._lock:
            return [t for t in self._tasks.values() if t.status == status]

    def _touch(self) -> None:
        self.updated_at = _now_iso()

    # -- CRUD ----------------------------------------------------------------

    def add(
        self,
        title: str = "",
        *,
        type: TaskType | str = TaskType.IMPLEMENT,
        description: str = "",
        priority: TaskPriority | str = TaskPriority.NORMAL,
        dependencies: Optional[Iterable[str]] = None,
        assigned_agent_type: Optional[str] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        task_id: Optional[str] = None,
        input: Optional[dict[str, Any]] = None,
    ) -> Task:
        """Create a pending task and add it to the queue."""
        task = Task(
            type=_coerce_enum(TaskType, type, TaskType.IMPLEMENT),
            title=title,
            description=description,
            priority=_coerce_enum(TaskPriority, priority, TaskPriority.NORMAL),
            dependencies=list(dependencies or []),
            assigned_agent_type=assigned_agent_type,
            max_retries=max_retries,
            input=input,
        )
        if task_id:
            task.id = task_id
        return self.add_task(task)

    def add_task(self, task: Task) -> Task:
        """Add an already-built task, resetting it to a fresh pending entry."""
        task.status = TaskStatus.PENDING
        task.retries = 0
        with self._lock:
            self._tasks[task.id] = task
            self._touch()
            missing = [d for d in task.dependencies if d not in self._tasks]
        for dep_id in missing:
            logger.warning("Task %s depends on unknown task %s", task.id, dep_id)
        return task

    def add_many(self, tasks: Iterable[Task]) -> list[Task]:
        added: list[Task] = []
        with self._lock:
            for task in tasks:
                task.status = TaskStatus.PENDING
                task.retries = 0
                self._tasks[task.id] = task
                added.append(task)
            self._touch()
        for task_id, missing in self.validate_dependencies().items():
            for dep_id in missing:
                logger.warning("Task %s depends on unknown task %s", task_id, dep_id)
        return added

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def has(self, task_id: str) -> bool:
        return task_id in self._tasks

    def update(
        self,
        task_id: str,
        *,
        status: Optional[TaskStatus | str] = None,
        assigned_agent_id: Optional[str] = None,
        error: Optional[str] = None,
        output: Optional[dict[str, Any]] = None,
        increment_retry: bool = False,
    ) -> Optional[Task]:
        """Apply changes to a task, stamping start/completion times.

        Returns the updated task, or ``None`` for an unknown id.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            if status is not None:
                new_status = TaskStatus(status)
                if new_status == TaskStatus.RUNNING and task.started_at is None:
                    task.started_at = _now_iso()
                if new_status in TERMINAL_TASK_STATUSES:
                    task.completed_at = _now_iso()
                task.status = new_status
            if assigned_agent_id is not None:
                task.assigned_agent_id = assigned_agent_id
            if error is not None:
                task.error = error
            if output is not None:
                task.output = output
            if increment_retry:
                task.retries += 1
            self._touch()
            return task

    def delete(self, task_id: str) -> bool:
        with self._lock:
            removed = self._tasks.pop(task_id, None) is not None
            if removed:
                self._touch()
            return removed

    def clear(self) -> None:
        with self._lock:
            self._tasks.clear()
            self._status = QueueStatus.IDLE
            self._touch()

    # -- Dependency resolution ----------------------------------------------

    def are_dependencies_satisfied(self, task_id: str) -> bool:
        """True when every dependency exists and is completed.

        Dangling dependency ids are never satisfied.
        """
        task = self._tasks.get(task_id)
        if task is None:
            return False
        for dep_id in task.dependencies:
            dep = self._tasks.get(dep_id)
            if dep is None or dep.status != TaskStatus.COMPLETED:
                return False
        return True

    def get_blocking_tasks(self, task_id: str) -> list[str]:
        """Return ids of dependencies that are missing or not yet completed."""
        task = self._tasks.get(task_id)
        if task is None:
            return []
        blocking: list[str] = []
        for dep_id in task.dependencies:
            dep = self._tasks.get(dep_id)
            if dep is None or dep.status != TaskStatus.COMPLETED:
                blocking.append(dep_id)
        return blocking

    def validate_dependencies(self) -> dict[str, list[str]]:
        """Map task id -> dependency ids that do not exist in this queue."""
        with self._lock:
            problems: dict[str, list[str]] = {}
            for task in self._tasks.values():
                missing = [d for d in task.dependencies if d not in self._tasks]
                if missing:
                    problems[task.id] = missing
            return problems

    def is_executable(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return (
            task is not None
            and task.status == TaskStatus.PENDING
            and self.are_dependencies_satisfied(task_id)
        )

    @staticmethod
    def sort_by_priority(tasks: Iterable[Task]) -> list[Task]:
        """Sort by priority (critical first), then earliest ``created_at``.

        ``sorted`` is stable, so equal keys keep insertion order.
        """
        return sorted(tasks, key=lambda t: (-TaskPriority(t.priority).weight, t.created_at))

    def get_executable_tasks(self) -> list[Task]:
        with self._lock:
            ready = [
                t for t in self._tasks.values()
                if t.status == TaskStatus.PENDING and self.are_dependencies_satisfied(t.id)
            ]
            return self.sort_by_priority(ready)

    def has_circular_dependency(self, task_id: str, visited: Optional[frozenset[str]] = None) -> bool:
        """Depth-first cycle check along a single dependency path.

        ``visited`` is path-local: each recursive call receives its own copy,
        so shared ancestors (diamonds) are not reported as cycles.
        """
        path = visited or frozenset()
        if task_id in path:
            return True
        task = self._tasks.get(task_id)
        if task is None:
            return False
        path = path | {task_id}
        return any(self.has_circular_dependency(dep_id, path) for dep_id in task.dependencies)

    def has_any_circular_dependencies(self) -> bool:
        return any(self.has_circular_dependency(task_id) for task_id in list(self._tasks))

    def get_dependency_tree(self, task_id: str) -> DependencyNode:
        """Build the dependency tree rooted at *task_id*.

        Raises ``KeyError`` if the root task does not exist.
        """
        if task_id not in self._tasks:
            raise KeyError(f"Task not found: {task_id}")
        return self._build_tree(task_id, frozenset())

    def _build_tree(self, task_id: str, path: frozenset[str]) -> DependencyNode:
        task = self._tasks.get(task_id)
        if task is None:
            return DependencyNode(task_id=task_id, missing=True)
        if task_id in path:
            return DependencyNode(task_id=task_id, task=task, cycle=True)
        node = DependencyNode(task_id=task_id, task=task)
        for dep_id in task.dependencies:
            node.dependencies.append(self._build_tree(dep_id, path | {task_id}))
        return node

    # -- Execution -----------------------------------------------------------

    def get_next(self) -> NextTaskResult:
        """Return the next runnable task, or the reason nothing can run."""
        with self._lock:
            if len(self.running_tasks) >= self._max_parallel:
                return NextTaskResult(reason=REASON_MAX_PARALLEL)

            executable = self.get_executable_tasks()
            if executable:
                return NextTaskResult(task=executable[0])

            if self.pending_tasks:
                return NextTaskResult(reason=REASON_BLOCKED)
            if self.completed_tasks:
                return NextTaskResult(reason=REASON_ALL_COMPLETED)
            if self.size > 0 and len(self.failed_tasks) == self.size:
                return NextTaskResult(reason=REASON_ALL_FAILED)
            return NextTaskResult(reason=REASON_QUEUE_EMPTY)

    def start_next(self) -> Optional[Task]:
        """Atomically pick the next task and mark it running."""
        with self._lock:
            result = self.get_next()
            if result.task is None:
                return None
            self.update(result.task.id, status=TaskStatus.RUNNING)
            self._status = QueueStatus.RUNNING
            return result.task

    # -- Statistics ----------------------------------------------------------

    def get_status_counts(self) -> dict[str, int]:
        with self._lock:
            counts = {s.value: 0 for s in TaskStatus}
            for task in self._tasks.values():
                counts[TaskStatus(task.status).value] += 1
            return counts

    def is_complete(self) -> bool:
        """True when nothing is pending or running."""
        counts = self.get_status_counts()
        return counts[TaskStatus.PENDING.value] == 0 and counts[TaskStatus.RUNNING.value] == 0

    def is_empty(self) -> bool:
        return self.size == 0

    def get_queue_stats(self) -> QueueStats:
        with self._lock:
            stats = QueueStats(total=self.size, by_status=self.get_status_counts())
            for task in self._tasks.values():
                type_key = TaskType(task.type).value
                prio_key = TaskPriority(task.priority).value
                stats.by_type[type_key] = stats.by_type.get(type_key, 0) + 1
                stats.by_priority[prio_key] = stats.by_priority.get(prio_key, 0) + 1
                if task.status == TaskStatus.PENDING:
                    if self.are_dependencies_satisfied(task.id):
                        stats.ready += 1
                    else:
                        stats.blocked += 1
            done = stats.by_status[TaskStatus.COMPLETED.value] + stats.by_status[TaskStatus.SKIPPED.value]
            if stats.total:
                stats.completion_percentage = round(done / stats.total * 100)
            return stats

    # -- Snapshot ------------------------------------------------------------

    def to_state(self) -> dict[str, Any]:
        with self._lock:
            return {
                "session_id": self.session_id,
                "tasks": {tid: t.to_dict() for tid, t in self._tasks.items()},
                "max_parallel": self._max_parallel,
                "status": self._status.value,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }

    @classmethod
    def from_state(cls, state: dict[str, Any]) -> "TaskQueue":
        queue = cls(
            session_id=str(state.get("session_id", "")),
            max_parallel=int(state.get("max_parallel", DEFAULT_MAX_PARALLEL)),
        )
        for task_data in (state.get("tasks") or {}).values():
            task = Task.from_dict(task_data)
            queue._tasks[task.id] = task
        try:
            queue._status = QueueStatus(state.get("status", QueueStatus.IDLE.value))
        except ValueError:
            queue._status = QueueStatus.IDLE
        queue.created_at = str(state.get("created_at") or queue.created_at)
        queue.updated_at = str(state.get("updated_at") or queue.updated_at)
        return queue
