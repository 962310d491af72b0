"""Tests for heuristic acceptance-criteria checks."""

from __future__ import annotations

from dataclasses import dataclass

from roadmap_runner.acceptance import AcceptanceChecker, AcceptanceRule
from roadmap_runner.models import RoadmapPhase, Task, TaskType


@dataclass
class _Result:
    task_id: str
    success: bool


def _phase(criteria: list[str], tasks: list[Task] | None = None) -> RoadmapPhase:
    return RoadmapPhase(id=1, name="Core", tasks=tasks or [], acceptance_criteria=criteria)


class TestAcceptanceChecker:
    def setup_method(self):
        self.checker = AcceptanceChecker()

    def test_no_criteria_passes_trivially(self):
        results = self.checker.evaluate(_phase([]), [_Result("t1", False)])
        assert results == []
        assert self.checker.all_passed(results)

    def test_no_errors_criterion_fails_on_any_failure(self):
        phase = _phase(["No errors"], [Task(id="t1", title="a"), Task(id="t2", title="b")])
        results = self.checker.evaluate(phase, [_Result("t1", True), _Result("t2", False)])
        assert len(results) == 1
        assert not results[0].passed
        assert results[0].reason == "Some tasks had errors"
        assert results[0].failed_rules == ["no_errors"]

    def test_all_tasks_criterion(self):
        phase = _phase(["All tasks complete"])
        failed = self.checker.evaluate(phase, [_Result("t1", False)])
        assert failed[0].reason == "Not all tasks completed successfully"
        assert self.checker.evaluate(phase, [_Result("t1", True)])[0].passed

    def test_tests_must_have_run(self):
        tasks = [Task(id="impl", title="Build"), Task(id="qa", title="QA", type=TaskType.TEST)]
        phase = _phase(["Tests pass"], tasks)
        missing = self.checker.evaluate(phase, [_Result("impl", True)])
        assert missing[0].reason == "Tests were not run"
        ran = self.checker.evaluate(phase, [_Result("impl", True), _Result("qa", True)])
        assert ran[0].passed

    def test_test_criterion_without_test_tasks_passes(self):
        phase = _phase(["Tests pass"], [Task(id="impl", title="Build")])
        assert self.checker.evaluate(phase, [_Result("impl", True)])[0].passed

    def test_review_matched_by_title(self):
        tasks = [Task(id="r", title="Peer review", type=TaskType.REVIEW), Task(id="x", title="Code review pass")]
        phase = _phase(["Code reviewed"], tasks)
        assert self.checker.evaluate(phase, [_Result("x", True)])[0].passed
        missing = self.checker.evaluate(phase, [])
        assert missing[0].reason == "Code review was not completed"

    def test_security_review(self):
        phase = _phase(["Security audit done"], [Task(id="s", title="Audit", type=TaskType.SECURITY)])
        result = self.checker.evaluate(phase, [])
        assert result[0].reason == "Security review was not completed"

    def test_criterion_failing_several_ways_is_reported_once(self):
        phase = _phase(["All tasks complete without errors"])
        results = self.checker.evaluate(phase, [_Result("t1", False)])
        assert len(results) == 1
        assert results[0].failed_rules == ["all_tasks", "no_errors"]
        assert results[0].reason == "Some tasks had errors"

    def test_rules_are_replaceable(self):
        strict = AcceptanceRule("always", lambda text: True, lambda phase, results: "nope")
        checker = AcceptanceChecker([strict])
        results = checker.evaluate(_phase(["anything"]), [])
        assert results[0].reason == "nope"
        assert not checker.all_passed(results)
