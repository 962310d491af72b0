"""Heuristic acceptance-criteria checks for a finished phase.

Criteria are free text, so the checks are keyword driven: every rule whose
predicate matches the lower-cased criterion runs, and the criterion passes
only if none of them reports a failure.  The rule list is a plain sequence
and can be replaced wholesale with a stricter engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence

from .models import RoadmapPhase, TaskType


class TaskRunResult(Protocol):
    """The parts of a task result the rules look at."""

    task_id: str
    success: bool


@dataclass
class CriterionResult:
    criterion: str
    passed: bool
    reason: Optional[str] = None
    failed_rules: list[str] = field(default_factory=list)


Check = Callable[[RoadmapPhase, Sequence[TaskRunResult]], Optional[str]]


@dataclass(frozen=True)
class AcceptanceRule:
    name: str
    matches: Callable[[str], bool]
    check: Check


def _contains_any(*needles: str) -> Callable[[str], bool]:
    return lambda text: any(n in text for n in needles)


def _any_failed(reason: str) -> Check:
    def check(phase: RoadmapPhase, results: Sequence[TaskRunResult]) -> Optional[str]:
        return reason if any(not r.success for r in results) else None
    return check


def _type_was_run(task_type: TaskType, keyword: str, reason: str) -> Check:
    """Fail when the phase has a task of *task_type* but no result covers one."""

    def check(phase: RoadmapPhase, results: Sequence[TaskRunResult]) -> Optional[str]:
        if not any(t.type == task_type for t in phase.tasks):
            return None
        by_id = {t.id: t for t in phase.tasks}
        for result in results:
            task = by_id.get(result.task_id)
            if task is not None and (task.type == task_type or keyword in task.title.lower()):
                return None
        return reason

    return check


DEFAULT_RULES: tuple[AcceptanceRule, ...] = (
    AcceptanceRule("all_tasks", _contains_any("all task", "complete"), _any_failed("Not all tasks completed successfully")),
    AcceptanceRule("tests_run", _contains_any("test"), _type_was_run(TaskType.TEST, "test", "Tests were not run")),
    AcceptanceRule(
        "review_done",
        _contains_any("review"),
        _type_was_run(TaskType.REVIEW, "review", "Code review was not completed"),
    ),
    AcceptanceRule(
        "security_done",
        _contains_any("secur"),
        _type_was_run(TaskType.SECURITY, "secur", "Security review was not completed"),
    ),
    AcceptanceRule("no_errors", _contains_any("no error", "without error"), _any_failed("Some tasks had errors")),
)


class AcceptanceChecker:
    """Evaluates phase criteria with an ordered list of :class:`AcceptanceRule`."""

    def __init__(self, rules: Optional[Sequence[AcceptanceRule]] = None) -> None:
        self.rules: list[AcceptanceRule] = list(DEFAULT_RULES if rules is None else rules)

    def evaluate(self, phase: RoadmapPhase, results: Sequence[TaskRunResult]) -> list[CriterionResult]:
        """One result per criterion. No criteria means nothing to fail."""
        evaluated: list[CriterionResult] = []
        for criterion in phase.acceptance_criteria:
            lowered = criterion.lower()
            reasons: list[str] = []
            failed: list[str] = []
            for rule in self.rules:
                if not rule.matches(lowered):
                    continue
                reason = rule.check(phase, results)
                if reason is not None:
                    failed.append(rule.name)
                    reasons.append(reason)
            evaluated.append(
                CriterionResult(
                    criterion=criterion,
                    passed=not failed,
                    # The last failing rule is the most specific one.
                    reason=reasons[-1] if reasons else None,
                    failed_rules=failed,
                )
            )
        return evaluated

    @staticmethod
    def all_passed(results: Sequence[CriterionResult]) -> bool:
        return all(r.passed for r in results)
