"""Sequential execution of a single roadmap phase.

Tasks run one at a time: each pending task is mapped to an agent type,
handed to the agent runner, and awaited before the next one starts.  A
failed task is recorded and execution moves on; the phase succeeds only when
no task failed and every acceptance criterion passed.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from loguru import logger

from .acceptance import AcceptanceChecker, CriterionResult
from .agents.config_loader import ConfigLoader
from .agents.runner import AgentRunner, AgentSpawnRequest
from .cancellation import CancellationToken
from .config import PhaseExecutorConfig
from .errors import ConfigNotFoundError, DependencyUnmetError, RoadmapRunnerError
from .models import PhaseState, RoadmapPhase, Task, TaskStatus, _now_iso, agent_type_for_task_type
from .notifications import Notifier, session_room
from .prompts import DefaultPromptBuilder, PromptBuilder, PromptContext


@dataclass
class AgentTaskResult:
    task_id: str
    success: bool
    agent_type: Optional[str] = None
    agent_id: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0.0
    output: Optional[dict[str, Any]] = None
    stopped: bool = False


@dataclass
class PhaseExecutionResult:
    phase_id: int
    success: bool
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_skipped: int = 0
    duration: float = 0.0
    error: Optional[str] = None
    acceptance_criteria_results: list[CriterionResult] = field(default_factory=list)
    all_acceptance_criteria_passed: bool = False
    agent_results: list[AgentTaskResult] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)


TaskToAgent = Callable[[Task], str]
PhaseLookup = Callable[[int], Optional[RoadmapPhase]]


def default_task_to_agent(task: Task) -> str:
    """Explicit assignment wins, then the task-type table, then implementer."""
    if task.assigned_agent_type:
        return str(task.assigned_agent_type)
    return agent_type_for_task_type(task.type).value


def build_task_instruction(phase: RoadmapPhase, task: Task) -> str:
    lines = [f"# Task: {task.title}"]
    if task.description:
        lines += ["", task.description]
    lines += ["", "## Phase Context", f"This task is part of **Phase {phase.id}: {phase.name}**"]
    if phase.description:
        lines.append(f"Phase description: {phase.description}")
    if phase.acceptance_criteria:
        lines += ["", "## Acceptance Criteria for this Phase"]
        lines += [f"- {c}" for c in phase.acceptance_criteria]
    lines += ["", "Please complete this task following the acceptance criteria."]
    return "\n".join(lines)


class PhaseExecutor:
    """Runs one phase's pending tasks strictly in order."""

    def __init__(
        self,
        session_id: str,
        phase: RoadmapPhase,
        runner: AgentRunner,
        config_loader: ConfigLoader,
        *,
        cwd: str = ".",
        project_id: Optional[str] = None,
        config: Optional[PhaseExecutorConfig] = None,
        notifier: Optional[Notifier] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        acceptance_checker: Optional[AcceptanceChecker] = None,
        task_to_agent: Optional[TaskToAgent] = None,
        phase_lookup: Optional[PhaseLookup] = None,
    ) -> None:
        self.session_id = session_id
        self.project_id = project_id
        self.phase = phase
        self.cwd = cwd
        self.config = config or PhaseExecutorConfig()
        self._runner = runner
        self._config_loader = config_loader
        self._notifier = notifier
        self._prompt_builder = prompt_builder or DefaultPromptBuilder()
        self._checker = acceptance_checker or AcceptanceChecker()
        self._task_to_agent = task_to_agent or default_task_to_agent
        self._phase_lookup = phase_lookup
        self._token = CancellationToken()
        self._executing = False
        self._outputs: list[str] = []
        self._agent_results: list[AgentTaskResult] = []

    # -- Properties ----------------------------------------------------------

    @property
    def is_executing(self) -> bool:
        return self._executing

    @property
    def stopped(self) -> bool:
        return self._token.cancelled

    @property
    def outputs(self) -> list[str]:
        return list(self._outputs)

    @property
    def agent_results(self) -> list[AgentTaskResult]:
        return list(self._agent_results)

    def get_agent_for_task(self, task: Task) -> str:
        return self._task_to_agent(task)

    # -- Execution -----------------------------------------------------------

    async def execute(self) -> PhaseExecutionResult:
        if self._executing:
            raise RuntimeError("Phase executor is already executing")

        self._executing = True
        self._token = CancellationToken()
        self._outputs = []
        self._agent_results = []
        started = time.monotonic()
        phase = self.phase

        self._add_output(f"Starting Phase {phase.id}: {phase.name}")
        self._emit("phase:started", phase_name=phase.name, task_count=len(phase.tasks))

        try:
            self._check_dependencies()
            results, skipped = await self._execute_tasks()
            self._agent_results = results

            self._add_output("Checking acceptance criteria...")
            criteria = self._checker.evaluate(phase, results)
            all_passed = self._checker.all_passed(criteria)
            if all_passed:
                self._add_output(f"All acceptance criteria passed for Phase {phase.id}")
            else:
                failed_criteria = [c for c in criteria if not c.passed]
                self._add_output(f"{len(failed_criteria)} acceptance criteria failed:")
                for item in failed_criteria:
                    self._add_output(f"  - {item.criterion}")
                    if item.reason:
                        self._add_output(f"    Reason: {item.reason}")

            finished = [r for r in results if not r.stopped]
            completed = sum(1 for r in finished if r.success)
            failed = len(finished) - completed
            result = PhaseExecutionResult(
                phase_id=phase.id,
                success=all_passed and failed == 0 and not self._token.cancelled,
                tasks_completed=completed,
                tasks_failed=failed,
                tasks_skipped=skipped,
                duration=time.monotonic() - started,
                acceptance_criteria_results=criteria,
                all_acceptance_criteria_passed=all_passed,
                agent_results=results,
                outputs=list(self._outputs),
            )
            if result.success:
                self._emit("phase:completed", **self._summary(result))
            else:
                self._emit("phase:failed", **self._summary(result))
            return result
        except Exception as exc:
            logger.exception("Phase {} failed: {}", phase.id, exc)
            self._add_output(f"Phase {phase.id} failed: {exc}")
            result = PhaseExecutionResult(
                phase_id=phase.id,
                success=False,
                tasks_failed=len(phase.tasks),
                duration=time.monotonic() - started,
                error=str(exc),
                agent_results=list(self._agent_results),
                outputs=list(self._outputs),
            )
            self._emit("phase:failed", **self._summary(result))
            return result
        finally:
            self._executing = False

    def stop(self) -> None:
        """Skip the remaining tasks and stop this session's running agents."""
        if not self._executing:
            return
        self._token.cancel("phase stopped")
        self._add_output(f"Stopping Phase {self.phase.id}...")
        self._runner.stop_session_agents(self.session_id)
        self._emit("phase:stopped")

    def _check_dependencies(self) -> None:
        if not self.phase.dependencies or self._phase_lookup is None:
            return
        self._add_output("Checking phase dependencies...")
        for dep_id in self.phase.dependencies:
            dep = self._phase_lookup(dep_id)
            if dep is None or dep.state != PhaseState.COMPLETED:
                raise DependencyUnmetError(self.phase.id, dep_id)
            self._add_output(f"  - Dependency Phase {dep_id}: ✓")

    async def _execute_tasks(self) -> tuple[list[AgentTaskResult], int]:
        results: list[AgentTaskResult] = []
        pending = self.phase.pending_tasks
        if not pending:
            self._add_output("No pending tasks to execute")
            return results, 0

        self._add_output(f"Executing {len(pending)} task(s)...")
        for index, task in enumerate(pending):
            if self._token.cancelled:
                skipped = pending[index:]
                for remaining in skipped:
                    self._add_output(f"Execution stopped, skipping task: {remaining.title}")
                    remaining.status = TaskStatus.SKIPPED
                return results, len(skipped)

            task.status = TaskStatus.RUNNING
            task.started_at = task.started_at or _now_iso()
            result = await self._execute_single_task(task)
            results.append(result)
            if result.stopped:
                # Interrupted mid-run; its work is not done.
                task.status = TaskStatus.SKIPPED
                task.assigned_agent_id = result.agent_id
                self._add_output(f"Task interrupted: {task.title}")
                skipped = pending[index + 1:]
                for remaining in skipped:
                    self._add_output(f"Execution stopped, skipping task: {remaining.title}")
                    remaining.status = TaskStatus.SKIPPED
                return results, len(skipped) + 1

            task.status = TaskStatus.COMPLETED if result.success else TaskStatus.FAILED
            task.completed_at = _now_iso()
            task.assigned_agent_id = result.agent_id
            if result.error:
                task.error = result.error
                self._add_output(f"Task failed: {task.title}")
            self._emit(
                "phase:task_progress",
                task_id=task.id,
                success=result.success,
                error=result.error,
                completed=len(results),
                total=len(pending),
            )
        return results, 0

    async def _execute_single_task(self, task: Task) -> AgentTaskResult:
        started = time.monotonic()
        agent_type = self.get_agent_for_task(task)
        self._add_output(f"Executing task: {task.title} ({agent_type})")
        try:
            prompt = self._build_task_prompt(task, agent_type)
            agent = await self._runner.spawn(
                AgentSpawnRequest(
                    agent_type=agent_type,
                    session_id=self.session_id,
                    cwd=self.cwd,
                    prompt=prompt,
                    model_override=self.config.model_override,
                    thinking_level_override=self.config.thinking_level_override,
                    dangerously_skip_permissions=self.config.dangerously_skip_permissions,
                    max_turns=self.config.max_turns,
                    timeout=self.config.agent_timeout,
                )
            )
        except RoadmapRunnerError as exc:
            self._add_output(f"Task failed: {task.title} - {exc}")
            return AgentTaskResult(task.id, False, agent_type=agent_type, error=str(exc),
                                   duration=time.monotonic() - started)

        self._add_output(f"Agent spawned: {agent.name} ({agent.model.value})")
        self._emit("phase:agent_spawned", agent_id=agent.id, agent_type=agent_type, task_id=task.id)

        outcome = await self._runner.wait(agent.id)
        duration = time.monotonic() - started
        if outcome.success:
            self._add_output(f"Task completed: {task.title} ({duration:.1f}s)")
        else:
            self._add_output(f"Task failed: {task.title} - {outcome.error}")
        return AgentTaskResult(
            task_id=task.id,
            success=outcome.success,
            agent_type=agent_type,
            agent_id=agent.id,
            error=outcome.error,
            duration=duration,
            stopped=outcome.stopped,
            output={"agent_id": agent.id, "token_usage": asdict(agent.token_usage) if agent.token_usage else None},
        )

    def _build_task_prompt(self, task: Task, agent_type: str) -> str:
        agent_config = self._config_loader.load(agent_type)
        if agent_config is None:
            raise ConfigNotFoundError(agent_type)
        built = self._prompt_builder.build(
            PromptContext(
                agent_config=agent_config,
                session_id=self.session_id,
                project_id=self.project_id,
                phase_id=self.phase.id,
                user_prompt=build_task_instruction(self.phase, task),
            )
        )
        return built.user_prompt

    # -- Output and events ---------------------------------------------------

    def _add_output(self, message: str) -> None:
        self._outputs.append(message)
        logger.info("[phase {}] {}", self.phase.id, message)
        self._emit("phase:output", message=message)

    @staticmethod
    def _summary(result: PhaseExecutionResult) -> dict[str, Any]:
        return {
            "success": result.success,
            "tasks_completed": result.tasks_completed,
            "tasks_failed": result.tasks_failed,
            "tasks_skipped": result.tasks_skipped,
            "duration": result.duration,
            "error": result.error,
        }

    def _emit(self, event: str, **data: Any) -> None:
        if self._notifier is None:
            return
        payload = {"session_id": self.session_id, "project_id": self.project_id, "phase_id": self.phase.id, **data}
        self._notifier.notify(session_room(self.session_id), event, payload)
