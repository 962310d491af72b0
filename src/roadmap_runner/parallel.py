"""Bounded-parallel dispatch of queued tasks to agents.

The dispatcher drains a :class:`TaskQueue` by calling ``start_next()`` until
the queue's concurrency cap is reached, spawning one agent per task, and
refilling as agents finish.  A failing task does not stop its siblings unless
``stop_on_error`` is set.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from loguru import logger
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from .agents.runner import AgentRunner, AgentSpawnRequest
from .cancellation import CancellationToken
from .constants import DEFAULT_MAX_PARALLEL
from .errors import RoadmapRunnerError
from .models import Task, TaskStatus, agent_type_for_task_type
from .task_queue import REASON_BLOCKED, TaskQueue

BLOCKED_ERROR = "Blocked by unsatisfied dependencies"
STOPPED_ERROR = "Execution stopped"


@dataclass
class DispatchOptions:
    session_id: str
    cwd: str = "."
    max_parallel: int = DEFAULT_MAX_PARALLEL
    stop_on_error: bool = False
    timeout: Optional[float] = None
    max_turns: Optional[int] = None
    dangerously_skip_permissions: bool = False


@dataclass
class TaskExecutionResult:
    task_id: str
    success: bool
    agent_id: Optional[str] = None
    agent_type: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0.0
    stopped: bool = False


@dataclass
class DispatchResult:
    results: list[TaskExecutionResult] = field(default_factory=list)
    total_tasks: int = 0
    successful_tasks: int = 0
    failed_tasks: int = 0
    skipped_tasks: int = 0
    all_success: bool = True
    duration: float = 0.0

    @classmethod
    def summarize(
        cls,
        results: list[TaskExecutionResult],
        skipped: int,
        started: float,
    ) -> "DispatchResult":
        succeeded = sum(1 for r in results if r.success)
        failed = len(results) - succeeded
        return cls(
            results=results,
            total_tasks=len(results) + skipped,
            successful_tasks=succeeded,
            failed_tasks=failed,
            skipped_tasks=skipped,
            all_success=failed == 0 and skipped == 0,
            duration=time.monotonic() - started,
        )


@dataclass
class TaskGroup:
    tasks: list[Task]
    is_independent: bool
    dependencies: list[str] = field(default_factory=list)


PromptForTask = Callable[[Task], str]


class ParallelDispatcher(Protocol):
    async def execute_from_queue(
        self,
        queue: TaskQueue,
        prompt_for_task: PromptForTask,
        options: DispatchOptions,
        token: Optional[CancellationToken] = None,
    ) -> DispatchResult:
        ...

    def stop(self) -> None:
        ...


class AgentDispatcher:
    """Default dispatcher that runs each task through an :class:`AgentRunner`."""

    def __init__(self, runner: AgentRunner) -> None:
        self.runner = runner
        self.console = Console()
        self._stopped = False
        self._active: dict[str, str] = {}  # task_id -> agent_id

    @property
    def running_count(self) -> int:
        return len(self._active)

    def stop(self) -> None:
        """Stop dispatching; in-flight agents keep running until stopped by the runner."""
        self._stopped = True

    # -- Single task ---------------------------------------------------------

    async def execute_task(self, task: Task, prompt: str, options: DispatchOptions) -> TaskExecutionResult:
        """Run one task to completion. Failures are returned, never raised."""
        started = time.monotonic()
        agent_type = task.assigned_agent_type or agent_type_for_task_type(task.type).value
        if self._stopped:
            return TaskExecutionResult(task.id, False, agent_type=agent_type, error=STOPPED_ERROR)

        request = AgentSpawnRequest(
            agent_type=agent_type,
            session_id=options.session_id,
            cwd=options.cwd,
            prompt=prompt,
            dangerously_skip_permissions=options.dangerously_skip_permissions,
            max_turns=options.max_turns,
            timeout=options.timeout,
        )
        try:
            agent = await self.runner.spawn(request)
        except RoadmapRunnerError as exc:
            logger.warning("Task {} could not start: {}", task.id, exc)
            return TaskExecutionResult(
                task.id, False, agent_type=agent_type, error=str(exc), duration=time.monotonic() - started
            )

        self._active[task.id] = agent.id
        try:
            outcome = await self.runner.wait(agent.id)
        finally:
            self._active.pop(task.id, None)
        return TaskExecutionResult(
            task_id=task.id,
            success=outcome.success,
            agent_id=agent.id,
            agent_type=agent_type,
            error=outcome.error,
            duration=time.monotonic() - started,
            stopped=outcome.stopped,
        )

    async def _guarded(self, task: Task, prompt: str, options: DispatchOptions) -> TaskExecutionResult:
        try:
            return await self.execute_task(task, prompt, options)
        except Exception as exc:
            logger.exception("Unexpected error executing task {}: {}", task.id, exc)
            return TaskExecutionResult(task.id, False, error=f"Unexpected error: {exc}")

    # -- Batches -------------------------------------------------------------

    async def execute_parallel(
        self,
        pairs: list[tuple[Task, str]],
        options: DispatchOptions,
    ) -> DispatchResult:
        """Run explicit (task, prompt) pairs under a semaphore."""
        started = time.monotonic()
        self._stopped = False
        semaphore = asyncio.Semaphore(max(1, options.max_parallel))

        async def _run(task: Task, prompt: str) -> TaskExecutionResult:
            async with semaphore:
                result = await self._guarded(task, prompt, options)
            if not result.success and options.stop_on_error:
                self.stop()
            return result

        results = await asyncio.gather(*(_run(task, prompt) for task, prompt in pairs))
        return DispatchResult.summarize(list(results), 0, started)

    async def execute_from_queue(
        self,
        queue: TaskQueue,
        prompt_for_task: PromptForTask,
        options: DispatchOptions,
        token: Optional[CancellationToken] = None,
    ) -> DispatchResult:
        """Drain *queue* under its concurrency cap and write results back."""
        started = time.monotonic()
        self._stopped = False
        queue.max_parallel = options.max_parallel
        in_flight: dict[asyncio.Task[TaskExecutionResult], Task] = {}
        results: list[TaskExecutionResult] = []

        def _halted() -> bool:
            return self._stopped or (token is not None and token.cancelled)

        while True:
            while not _halted():
                task = queue.start_next()
                if task is None:
                    break
                logger.debug("Dispatching task {} ({})", task.id, task.title)
                job = asyncio.create_task(self._guarded(task, prompt_for_task(task), options))
                in_flight[job] = task

            if not in_flight:
                break

            done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for job in done:
                task = in_flight.pop(job)
                result = job.result()
                if result.stopped:
                    # Interrupted by a stop request; run it again on resume.
                    queue.update(task.id, status=TaskStatus.PENDING)
                    logger.info("Task {} interrupted, returned to pending", task.id)
                    continue
                results.append(result)
                queue.update(
                    task.id,
                    status=TaskStatus.COMPLETED if result.success else TaskStatus.FAILED,
                    error=result.error,
                    assigned_agent_id=result.agent_id,
                    output={"agent_id": result.agent_id} if result.agent_id else None,
                )
                logger.info("Task {} finished: success={}", task.id, result.success)
                if not result.success and options.stop_on_error:
                    self.stop()

        skipped = 0
        if _halted():
            skipped = len(queue.pending_tasks)
        elif queue.get_next().reason == REASON_BLOCKED:
            for task in queue.pending_tasks:
                queue.update(task.id, status=TaskStatus.SKIPPED, error=BLOCKED_ERROR)
                skipped += 1
            logger.warning("{} task(s) skipped: {}", skipped, BLOCKED_ERROR)

        return DispatchResult.summarize(results, skipped, started)

    # -- Grouping ------------------------------------------------------------

    @staticmethod
    def group_tasks_by_dependency(tasks: list[Task]) -> list[TaskGroup]:
        """Split *tasks* into consecutive groups whose members can run together.

        Tasks whose dependencies never resolve within *tasks* end up in
        single-task trailing groups.
        """
        groups: list[TaskGroup] = []
        processed: set[str] = set()
        current: list[Task] = []

        def fits(task: Task, group: list[Task]) -> bool:
            if task.id in processed:
                return False
            if any(dep not in processed for dep in task.dependencies):
                return False
            return not any(task.id in g.dependencies or g.id in task.dependencies for g in group)

        for task in tasks:
            if task.id in processed:
                continue
            if fits(task, current):
                current.append(task)
                processed.add(task.id)
            elif current:
                groups.append(TaskGroup(tasks=current, is_independent=len(current) > 1))
                current = []
                if fits(task, []):
                    current.append(task)
                    processed.add(task.id)

        if current:
            groups.append(TaskGroup(tasks=current, is_independent=len(current) > 1))

        for task in tasks:
            if task.id not in processed:
                groups.append(TaskGroup(tasks=[task], is_independent=False, dependencies=list(task.dependencies)))
        return groups

    @staticmethod
    def are_tasks_independent(tasks: list[Task]) -> bool:
        ids = {t.id for t in tasks}
        return all(dep not in ids for t in tasks for dep in t.dependencies)

    # -- Rendering -----------------------------------------------------------

    def render_results(self, result: DispatchResult, title: str = "Task Dispatch") -> Table:
        table = Table(title=title, show_header=True)
        table.add_column("Task ID", style="cyan")
        table.add_column("Agent", style="bold")
        table.add_column("Status", style="bold")
        table.add_column("Duration", justify="right")
        table.add_column("Error", style="red")
        for r in result.results:
            status = "[green]✓ Completed[/green]" if r.success else "[red]✗ Failed[/red]"
            table.add_row(
                r.task_id,
                r.agent_type or "",
                status,
                f"{r.duration:.1f}s",
                (r.error or "")[:50],
            )
        return table


def render_dependency_tree(tasks: list[Task]) -> str:
    """Render task dependencies as a rich tree rooted at independent tasks."""
    console = Console(record=True, width=100)
    tree = Tree("[bold]Task Dependency Tree[/bold]")

    def add_dependents(node: Tree, task_id: str, path: frozenset[str]) -> None:
        for dependent in tasks:
            if task_id in dependent.dependencies and dependent.id not in path:
                branch = node.add(f"[cyan]{dependent.id}[/cyan] {dependent.title}")
                add_dependents(branch, dependent.id, path | {dependent.id})

    for root in (t for t in tasks if not t.dependencies):
        branch = tree.add(f"[green]{root.id}[/green] {root.title}")
        add_dependents(branch, root.id, frozenset({root.id}))

    console.print(tree)
    return console.export_text()
