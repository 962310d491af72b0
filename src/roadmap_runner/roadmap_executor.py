"""Top-level roadmap execution.

The roadmap executor owns the phases of one session and a task queue.  The
current phase's pending tasks are copied into the queue and drained by a
parallel dispatcher; when every task succeeds the phase moves through
``testing`` to ``completed`` and, with auto-advance on, the next pending
phase (by ascending id) is executed.  Phase state only changes through
:data:`PHASE_TRANSITIONS`.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .agents.config_loader import ConfigLoader
from .agents.runner import AgentRunner
from .cancellation import CancellationToken
from .config import RoadmapExecutorConfig
from .constants import DEFAULT_MAX_RETRIES, ROADMAP_OUTPUT_LIMIT
from .errors import ConfigNotFoundError, DependencyUnmetError, InvalidTransitionError, RoadmapParseError
from .models import (
    AgentType,
    PhaseState,
    QueueStatus,
    RoadmapPhase,
    Task,
    TaskPriority,
    TaskStatus,
    TaskType,
    _coerce_enum,
    _now_iso,
    agent_type_for_task_type,
)
from .notifications import Notifier, session_room
from .parallel import AgentDispatcher, DispatchOptions, DispatchResult, ParallelDispatcher
from .phase_executor import PhaseExecutionResult
from .prompts import DefaultPromptBuilder, PromptBuilder, PromptContext
from .task_queue import TaskQueue


PHASE_TRANSITIONS: dict[PhaseState, frozenset[PhaseState]] = {
    PhaseState.PENDING: frozenset({PhaseState.STARTING, PhaseState.CANCELLED}),
    PhaseState.STARTING: frozenset({PhaseState.RUNNING, PhaseState.FAILED, PhaseState.CANCELLED}),
    PhaseState.RUNNING: frozenset({PhaseState.TESTING, PhaseState.PAUSING, PhaseState.STOPPING, PhaseState.FAILED}),
    PhaseState.TESTING: frozenset({PhaseState.RUNNING, PhaseState.COMPLETED, PhaseState.FAILED, PhaseState.STOPPING}),
    PhaseState.PAUSING: frozenset({PhaseState.PAUSED, PhaseState.STOPPING}),
    PhaseState.PAUSED: frozenset({PhaseState.STARTING, PhaseState.STOPPING, PhaseState.CANCELLED}),
    PhaseState.STOPPING: frozenset({PhaseState.COMPLETED, PhaseState.FAILED, PhaseState.CANCELLED}),
    PhaseState.COMPLETED: frozenset(),
    # A failed phase may be retried.
    PhaseState.FAILED: frozenset({PhaseState.STARTING, PhaseState.CANCELLED}),
    PhaseState.CANCELLED: frozenset(),
}

_COMPLETION_STATES = frozenset({PhaseState.COMPLETED, PhaseState.FAILED, PhaseState.CANCELLED})
_ACTIVE_STATES = frozenset({PhaseState.STARTING, PhaseState.RUNNING, PhaseState.TESTING})
_DONE_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})


# ---------------------------------------------------------------------------
# Roadmap records
# ---------------------------------------------------------------------------

class TaskRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: str = TaskType.IMPLEMENT.value
    title: str = ""
    details: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    input: Optional[dict[str, Any]] = None


class HeaderRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str = "header"
    current_phase: Optional[int] = Field(default=None, alias="currentPhase")


class PhaseRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str = "phase"
    id: int
    name: str
    description: str = ""
    status: Optional[str] = None
    tasks: list[TaskRecord] = Field(default_factory=list)
    dependencies: list[int] = Field(default_factory=list)
    acceptance_criteria: list[str] = Field(default_factory=list, alias="acceptanceCriteria")
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes")


def _task_from_record(phase_id: int, record: TaskRecord) -> Task:
    task_type = _coerce_enum(TaskType, record.type, TaskType.IMPLEMENT)
    done = (record.status or "").lower() in ("done", "completed")
    return Task(
        id=record.id or f"task-{phase_id}-{uuid.uuid4().hex[:9]}",
        type=task_type,
        title=record.title,
        description=record.details or record.description or "",
        priority=_coerce_enum(TaskPriority, record.priority, TaskPriority.NORMAL),
        dependencies=list(record.dependencies),
        status=TaskStatus.COMPLETED if done else TaskStatus.PENDING,
        assigned_agent_type=agent_type_for_task_type(record.type).value,
        input=record.input,
    )


def _phase_from_record(record: PhaseRecord, max_retries: int) -> RoadmapPhase:
    return RoadmapPhase(
        id=record.id,
        name=record.name,
        description=record.description,
        state=PhaseState.COMPLETED if record.status == "completed" else PhaseState.PENDING,
        tasks=[_task_from_record(record.id, t) for t in record.tasks],
        dependencies=list(record.dependencies),
        acceptance_criteria=list(record.acceptance_criteria),
        duration_minutes=record.duration_minutes,
        max_retries=max_retries,
    )


def parse_roadmap(text: str, max_retries: int = DEFAULT_MAX_RETRIES) -> tuple[list[RoadmapPhase], Optional[int]]:
    """Parse newline-delimited JSON roadmap records.

    Returns the phases in file order and the ``currentPhase`` of the last
    header record, if any.  Lines that are not valid JSON or not a valid
    record are skipped with a warning.
    """
    phases: list[RoadmapPhase] = []
    header_phase: Optional[int] = None
    for number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping roadmap line {}: not valid JSON", number)
            continue
        if not isinstance(entry, dict):
            continue
        try:
            if entry.get("type") == "header":
                header_phase = HeaderRecord.model_validate(entry).current_phase or 1
            elif entry.get("type") == "phase":
                phases.append(_phase_from_record(PhaseRecord.model_validate(entry), max_retries))
        except ValidationError as exc:
            logger.warning("Skipping invalid roadmap line {}: {}", number, exc.errors()[0]["msg"])
    return phases, header_phase


def read_roadmap_file(path: Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise RoadmapParseError(f"Failed to read roadmap {path}: {exc}") from exc


def build_phase_instruction_text(phase: RoadmapPhase) -> str:
    """Markdown brief for a whole phase, used as the base of every task prompt."""
    lines = [f"# Phase {phase.id}: {phase.name}"]
    if phase.description:
        lines += ["", "## Description", phase.description]
    if phase.tasks:
        lines += ["", "## Tasks"]
        for task in phase.tasks:
            icon = "✓" if task.status == TaskStatus.COMPLETED else "○"
            lines.append(f"{icon} **{task.title}** ({task.assigned_agent_type})")
            if task.description:
                lines.append(f"  {task.description}")
    if phase.acceptance_criteria:
        lines += ["", "## Acceptance Criteria"]
        lines += [f"- {c}" for c in phase.acceptance_criteria]
    lines += ["", "Execute the pending tasks to complete this phase."]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class TransitionResult:
    success: bool
    previous_state: Optional[PhaseState] = None
    new_state: Optional[PhaseState] = None
    error: Optional[str] = None


@dataclass
class RoadmapStatus:
    current_phase: Optional[int]
    total_phases: int
    state: str
    progress: int
    active_agents: int
    completed_phases: list[int] = field(default_factory=list)
    failed_phases: list[int] = field(default_factory=list)
    started_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class RoadmapExecutor:
    """Drives the phases of one session from first pending phase to the last."""

    def __init__(
        self,
        session_id: str,
        runner: AgentRunner,
        config_loader: ConfigLoader,
        *,
        project_id: Optional[str] = None,
        cwd: str = ".",
        config: Optional[RoadmapExecutorConfig] = None,
        notifier: Optional[Notifier] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        dispatcher: Optional[ParallelDispatcher] = None,
        queue: Optional[TaskQueue] = None,
        roadmap_path: Optional[Path] = None,
    ) -> None:
        self.session_id = session_id
        self.project_id = project_id
        self.cwd = cwd
        self.config = config or RoadmapExecutorConfig()
        self.roadmap_path = Path(roadmap_path) if roadmap_path else None
        self._runner = runner
        self._config_loader = config_loader
        self._notifier = notifier
        self._prompt_builder = prompt_builder or DefaultPromptBuilder()
        self._dispatcher = dispatcher or AgentDispatcher(runner)
        self._queue = queue or TaskQueue(session_id, self.config.max_parallel_agents)
        self._phases: dict[int, RoadmapPhase] = {}
        self._current_phase_id: int = self.config.start_phase
        self._token = CancellationToken()
        self._drain: Optional[asyncio.Future[DispatchResult]] = None
        self._outputs: deque[str] = deque(maxlen=ROADMAP_OUTPUT_LIMIT)
        self._execution_results: dict[int, PhaseExecutionResult] = {}
        self._roadmap_completed = False
        self.started_at: Optional[str] = None
        self.stopped_at: Optional[str] = None

    # -- Phases --------------------------------------------------------------

    @property
    def phases(self) -> list[RoadmapPhase]:
        return [self._phases[k] for k in sorted(self._phases)]

    @property
    def current_phase_id(self) -> int:
        return self._current_phase_id

    @property
    def current_phase(self) -> Optional[RoadmapPhase]:
        return self._phases.get(self._current_phase_id)

    @property
    def task_queue(self) -> TaskQueue:
        return self._queue

    @property
    def outputs(self) -> list[str]:
        return list(self._outputs)

    @property
    def execution_results(self) -> dict[int, PhaseExecutionResult]:
        return dict(self._execution_results)

    @property
    def is_completed(self) -> bool:
        return self._roadmap_completed

    def set_current_phase(self, phase_id: int) -> None:
        self._current_phase_id = phase_id

    def add_phase(self, phase: RoadmapPhase) -> None:
        phase.retries = 0
        phase.max_retries = self.config.max_retries
        self._phases[phase.id] = phase

    def get_phase(self, phase_id: int) -> Optional[RoadmapPhase]:
        return self._phases.get(phase_id)

    def load_phases(self, text: str) -> list[RoadmapPhase]:
        """Replace the phases with those parsed from *text*.

        The current phase becomes the first phase still pending, falling back
        to the header's phase when none is.
        """
        phases, header_phase = parse_roadmap(text, self.config.max_retries)
        if header_phase is not None:
            self._current_phase_id = header_phase
        self._phases = {p.id: p for p in phases}
        first_pending = next((p for p in self.phases if p.state == PhaseState.PENDING), None)
        if first_pending is not None:
            self._current_phase_id = first_pending.id
        self._roadmap_completed = False
        logger.info("Loaded {} phase(s); current phase {}", len(phases), self._current_phase_id)
        return self.phases

    def load_phases_from_file(self, path: Path) -> list[RoadmapPhase]:
        return self.load_phases(read_roadmap_file(path))

    # -- Transitions ---------------------------------------------------------

    def can_transition_to(self, new_state: PhaseState | str, phase_id: Optional[int] = None) -> bool:
        phase = self._phases.get(self._current_phase_id if phase_id is None else phase_id)
        if phase is None:
            return False
        return PhaseState(new_state) in PHASE_TRANSITIONS[phase.state]

    def update_phase_state(self, phase_id: int, new_state: PhaseState | str) -> TransitionResult:
        """Move a phase along a legal edge. Illegal moves leave the phase untouched."""
        phase = self._phases.get(phase_id)
        if phase is None:
            return TransitionResult(False, error=f"Phase not found: {phase_id}")
        target = PhaseState(new_state)
        previous = phase.state
        if target not in PHASE_TRANSITIONS[previous]:
            return TransitionResult(
                False,
                previous_state=previous,
                new_state=target,
                error=f"Invalid state transition: {previous.value} -> {target.value}",
            )

        phase.state = target
        if target == PhaseState.RUNNING and phase.started_at is None:
            phase.started_at = _now_iso()
        if target in _COMPLETION_STATES:
            phase.completed_at = _now_iso()
        logger.debug("Phase {}: {} -> {}", phase_id, previous.value, target.value)
        self._emit(
            "phase:state_changed",
            phase_id=phase_id,
            previous_state=previous.value,
            new_state=target.value,
        )
        return TransitionResult(True, previous_state=previous, new_state=target)

    def transition_or_raise(self, phase_id: int, new_state: PhaseState | str) -> TransitionResult:
        result = self.update_phase_state(phase_id, new_state)
        if not result.success:
            previous = result.previous_state.value if result.previous_state else "unknown"
            raise InvalidTransitionError(previous, PhaseState(new_state).value, result.error)
        return result

    def _transition(self, phase: RoadmapPhase, new_state: PhaseState) -> bool:
        result = self.update_phase_state(phase.id, new_state)
        if not result.success:
            logger.warning("Phase {}: {}", phase.id, result.error)
        return result.success

    def _enter_running(self, phase: RoadmapPhase) -> bool:
        """Bring a pending, paused or failed phase into ``running``."""
        if phase.state == PhaseState.RUNNING:
            return True
        if phase.state == PhaseState.FAILED:
            self._reset_for_retry(phase)
        if phase.state == PhaseState.STARTING or self._transition(phase, PhaseState.STARTING):
            return self._transition(phase, PhaseState.RUNNING)
        return False

    def _reset_for_retry(self, phase: RoadmapPhase) -> None:
        phase.retries += 1
        phase.error = None
        for task in phase.tasks:
            if task.status in (TaskStatus.FAILED, TaskStatus.SKIPPED):
                task.status = TaskStatus.PENDING
                task.error = None
                self._queue.delete(task.id)
        self._add_output(f"Retrying Phase {phase.id} (attempt {phase.retries})")

    # -- Control -------------------------------------------------------------

    async def start(self) -> RoadmapStatus:
        phase = self.current_phase
        if (phase is not None and phase.state in _ACTIVE_STATES) or self._roadmap_completed:
            return self.get_status()

        if not self._phases and self.roadmap_path is not None:
            self.load_phases_from_file(self.roadmap_path)
            phase = self.current_phase
        if phase is None:
            self._add_output("No phases to execute")
            return self.get_status()

        self.started_at = self.started_at or _now_iso()
        self.stopped_at = None
        self._emit(
            "roadmap:started",
            current_phase=self._current_phase_id,
            total_phases=len(self._phases),
            started_at=self.started_at,
        )
        await self._execute_guarded()
        return self.get_status()

    def pause(self) -> RoadmapStatus:
        phase = self.current_phase
        if phase is None or not self.can_transition_to(PhaseState.PAUSING):
            return self.get_status()

        self._transition(phase, PhaseState.PAUSING)
        self._token.cancel("paused")
        stopped = self._runner.stop_session_agents(self.session_id)
        self._queue.status = QueueStatus.PAUSED
        self._transition(phase, PhaseState.PAUSED)
        self._add_output(f"Paused Phase {phase.id} ({stopped} agent(s) stopped)")
        self._emit("roadmap:paused", current_phase=phase.id)
        return self.get_status()

    async def resume(self) -> RoadmapStatus:
        phase = self.current_phase
        if phase is None or phase.state != PhaseState.PAUSED:
            return self.get_status()

        if self._drain is not None and not self._drain.done():
            # Agents stopped by pause may still be reporting back.
            await asyncio.wait([self._drain])
            self._sync_tasks_from_queue(phase)

        self._transition(phase, PhaseState.STARTING)
        self._queue.status = QueueStatus.RUNNING
        self._transition(phase, PhaseState.RUNNING)
        self._add_output(f"Resuming Phase {phase.id}")
        self._emit("roadmap:resumed", current_phase=phase.id)
        await self._execute_guarded()
        return self.get_status()

    def stop(self) -> RoadmapStatus:
        phase = self.current_phase
        if phase is None:
            return self.get_status()
        if self.can_transition_to(PhaseState.STOPPING):
            self._transition(phase, PhaseState.STOPPING)
        elif not self.can_transition_to(PhaseState.CANCELLED):
            return self.get_status()

        self._token.cancel("stopped")
        self._runner.stop_session_agents(self.session_id)
        self._queue.clear()
        self._transition(phase, PhaseState.CANCELLED)
        self.stopped_at = _now_iso()
        self._add_output(f"Stopped at Phase {phase.id}")
        self._emit("roadmap:stopped", current_phase=phase.id, stopped_at=self.stopped_at)
        return self.get_status()

    # -- Execution -----------------------------------------------------------

    async def _execute_guarded(self) -> Optional[PhaseExecutionResult]:
        try:
            return await self.execute_current_phase()
        except DependencyUnmetError as exc:
            logger.warning("Roadmap halted: {}", exc)
            return None

    async def execute_current_phase(self) -> PhaseExecutionResult:
        """Run the current phase through the dispatcher.

        Raises ``DependencyUnmetError`` after failing the phase when a
        dependency phase has not completed.  Any other error is turned into a
        failed result.
        """
        phase = self.current_phase
        if phase is None:
            return PhaseExecutionResult(phase_id=self._current_phase_id, success=False, error="No current phase found")

        if not self._enter_running(phase):
            return PhaseExecutionResult(
                phase_id=phase.id, success=False, error=f"Cannot execute phase in state {phase.state.value}"
            )

        token = self._token = CancellationToken()
        started = time.monotonic()
        self._add_output(f"Starting Phase {phase.id}: {phase.name}")

        unmet = self._first_unmet_dependency(phase)
        if unmet is not None:
            error = DependencyUnmetError(phase.id, unmet)
            phase.error = str(error)
            self._transition(phase, PhaseState.FAILED)
            self._add_output(f"Phase {phase.id} failed: {error}")
            self._execution_results[phase.id] = PhaseExecutionResult(
                phase_id=phase.id, success=False, tasks_failed=len(phase.tasks), error=str(error)
            )
            self._emit("phase:failed", phase_id=phase.id, error=str(error))
            raise error

        try:
            self._enqueue_pending(phase)
            prompt = self._build_phase_prompt(phase)
            self._drain = asyncio.ensure_future(self._dispatcher.execute_from_queue(
                self._queue,
                lambda task: f"{prompt}\n\n## Current Task\n**Task:** {task.title}\n{task.description or ''}",
                DispatchOptions(
                    session_id=self.session_id,
                    cwd=self.cwd,
                    max_parallel=self.config.max_parallel_agents,
                    stop_on_error=False,
                    timeout=self.config.agent_timeout,
                    max_turns=self.config.max_turns,
                    dangerously_skip_permissions=self.config.dangerously_skip_permissions,
                ),
                token,
            ))
            dispatch = await self._drain
        except Exception as exc:
            logger.exception("Phase {} failed: {}", phase.id, exc)
            phase.error = str(exc)
            self._add_output(f"Phase {phase.id} failed: {exc}")
            result = PhaseExecutionResult(
                phase_id=phase.id,
                success=False,
                tasks_failed=len(phase.tasks),
                duration=time.monotonic() - started,
                error=str(exc),
            )
            self._execution_results[phase.id] = result
            self._transition(phase, PhaseState.FAILED)
            return result

        self._sync_tasks_from_queue(phase)
        result = PhaseExecutionResult(
            phase_id=phase.id,
            success=dispatch.all_success,
            tasks_completed=dispatch.successful_tasks,
            tasks_failed=dispatch.failed_tasks,
            tasks_skipped=dispatch.skipped_tasks,
            duration=time.monotonic() - started,
            error=None if dispatch.all_success else "Some tasks failed",
        )

        if token.cancelled or phase.state != PhaseState.RUNNING:
            # Paused or stopped while tasks were in flight.
            result.success = False
            result.error = f"Phase {phase.state.value}"
            if self._token is token:
                self._execution_results[phase.id] = result
            return result

        unfinished = [t.id for t in phase.tasks if t.status not in _DONE_TASK_STATUSES]
        if dispatch.all_success and unfinished:
            result.success = False
            result.error = f"Unfinished tasks: {', '.join(unfinished)}"

        self._execution_results[phase.id] = result
        if not result.success:
            phase.error = result.error
            self._add_output(
                f"Phase {phase.id} failed: {result.error} "
                f"({dispatch.failed_tasks} failed, {dispatch.skipped_tasks} skipped)"
            )
            self._transition(phase, PhaseState.FAILED)
            self._emit("phase:failed", phase_id=phase.id, error=result.error)
            return result

        self._transition(phase, PhaseState.TESTING)
        await self._run_phase_tests(phase)
        self._transition(phase, PhaseState.COMPLETED)
        self._add_output(f"Phase {phase.id} completed")
        self._emit("phase:completed", phase_id=phase.id, tasks_completed=result.tasks_completed, duration=result.duration)

        if self.config.auto_advance:
            await self._advance_to_next_phase()
        return result

    def _first_unmet_dependency(self, phase: RoadmapPhase) -> Optional[int]:
        for dep_id in phase.dependencies:
            dep = self._phases.get(dep_id)
            if dep is None or dep.state != PhaseState.COMPLETED:
                return dep_id
        return None

    def _enqueue_pending(self, phase: RoadmapPhase) -> None:
        fresh = [
            Task.from_dict(task.to_dict())
            for task in phase.tasks
            if task.status == TaskStatus.PENDING and not self._queue.has(task.id)
        ]
        if fresh:
            for task in fresh:
                task.max_retries = self.config.max_retries
                task.created_at = _now_iso()
            self._queue.add_many(fresh)
        self._queue.status = QueueStatus.RUNNING

    def _sync_tasks_from_queue(self, phase: RoadmapPhase) -> None:
        for task in phase.tasks:
            queued = self._queue.get(task.id)
            if queued is None:
                continue
            task.status = queued.status
            task.assigned_agent_id = queued.assigned_agent_id
            task.started_at = queued.started_at
            task.completed_at = queued.completed_at
            task.error = queued.error
            task.output = queued.output

    def _build_phase_prompt(self, phase: RoadmapPhase) -> str:
        agent_type = AgentType.ORCHESTRATOR.value
        agent_config = self._config_loader.load(agent_type)
        if agent_config is None:
            raise ConfigNotFoundError(agent_type)
        built = self._prompt_builder.build(
            PromptContext(
                agent_config=agent_config,
                session_id=self.session_id,
                project_id=self.project_id,
                phase_id=phase.id,
                user_prompt=build_phase_instruction_text(phase),
            )
        )
        return built.user_prompt

    async def _run_phase_tests(self, phase: RoadmapPhase) -> None:
        # TODO: run the project's test command once one is configurable per phase.
        self._add_output(f"Running tests for Phase {phase.id}...")
        self._add_output(f"Tests completed for Phase {phase.id}")

    async def _advance_to_next_phase(self) -> None:
        previous = self._current_phase_id
        candidates = [p for p in self.phases if p.id > previous and p.state == PhaseState.PENDING]
        if not candidates:
            self._roadmap_completed = True
            self._add_output("All phases completed!")
            self._emit("roadmap:completed", total_phases=len(self._phases))
            return

        nxt = candidates[0]
        self._current_phase_id = nxt.id
        self._add_output(f"Advancing to Phase {nxt.id}: {nxt.name}")
        self._emit("roadmap:phase_advanced", previous_phase=previous, new_phase=nxt.id)
        await self._execute_guarded()

    # -- Status --------------------------------------------------------------

    def _progress(self) -> int:
        total = len(self._phases)
        if total == 0:
            return 0
        if self._roadmap_completed:
            return 100
        progress = round((self._current_phase_id - 1) / total * 100)
        phase = self.current_phase
        if phase is not None and phase.tasks:
            progress += round(phase.completed_task_count / len(phase.tasks) * (100 / total))
        return min(progress, 100)

    def get_status(self) -> RoadmapStatus:
        phase = self.current_phase
        if self._roadmap_completed:
            state = PhaseState.COMPLETED.value
        elif phase is not None:
            state = phase.state.value
        else:
            state = PhaseState.PENDING.value
        return RoadmapStatus(
            current_phase=phase.id if phase else None,
            total_phases=len(self._phases),
            state=state,
            progress=self._progress(),
            active_agents=self._runner.get_running_agent_count(self.session_id),
            completed_phases=[p.id for p in self.phases if p.state == PhaseState.COMPLETED],
            failed_phases=[p.id for p in self.phases if p.state == PhaseState.FAILED],
            started_at=self.started_at,
        )

    def to_state(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "project_id": self.project_id,
            "current_phase_id": self._current_phase_id,
            "completed": self._roadmap_completed,
            "started_at": self.started_at,
            "stopped_at": self.stopped_at,
            "phases": [p.to_dict() for p in self.phases],
            "queue": self._queue.to_state(),
            "outputs": list(self._outputs),
        }

    # -- Output and events ---------------------------------------------------

    def _add_output(self, message: str) -> None:
        self._outputs.append(message)
        logger.info("[roadmap {}] {}", self.session_id, message)
        self._emit("roadmap:output", message=message)

    def _emit(self, event: str, **data: Any) -> None:
        if self._notifier is None:
            return
        payload = {"session_id": self.session_id, "project_id": self.project_id, **data}
        self._notifier.notify(session_room(self.session_id), event, payload)
