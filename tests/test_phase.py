import asyncio
from typing import Any

import pytest

from conductor.context import RunContext
from conductor.coordinator import Coordinator
from conductor.errors import InvalidTransitionError, PhaseError
from conductor.events import EventEmitter, EventLog
from conductor.executors import ExecutorRegistry
from conductor.findings import Finding, Severity
from conductor.gates import Gate, GateStatus, default_predicates
from conductor.phase import Phase, PhaseRuntime, PhaseStatus
from conductor.tasks import JoinResult, TaskRecord, TaskSpec, TaskStatus
from conductor.workflow import WorkflowRun


class Reviewer:
    """Returns whatever findings are currently configured for each task id."""

    def __init__(self) -> None:
        self.findings: dict[str, list[Finding]] = {}
        self.calls: list[str] = []

    async def __call__(self, payload: Any, context: RunContext) -> dict[str, Any]:
        _ = context
        self.calls.append(str(payload))
        return {"findings": [item.to_dict() for item in self.findings.get(str(payload), [])]}


def _runtime(
    reviewer: Reviewer, log: EventLog, checkpoints: list[int] | None = None
) -> PhaseRuntime:
    registry = ExecutorRegistry()
    registry.register_function("review", reviewer)

    async def broken(payload: Any, context: RunContext) -> None:
        _ = payload, context
        raise RuntimeError("worker crashed")

    registry.register_function("broken", broken)
    events = EventEmitter(log)
    return PhaseRuntime(
        coordinator=Coordinator(registry, events=events),
        predicates=default_predicates(),
        events=events,
        checkpoint=(lambda: checkpoints.append(1)) if checkpoints is not None else None,
    )


def _advance(phase: Phase, runtime: PhaseRuntime) -> PhaseStatus:
    run = WorkflowRun.create([phase], run_id="run-phase")
    return asyncio.run(phase.advance(RunContext(), runtime, run))


def test_phase_without_gate_completes_with_aggregated_findings() -> None:
    reviewer = Reviewer()
    reviewer.findings = {
        "a": [Finding("style", Severity.MINOR, 0.3, "x.py")],
        "b": [Finding("security", Severity.MAJOR, 0.9, "y.py")],
    }
    log = EventLog()
    phase = Phase(
        name="review",
        tasks=[TaskSpec("a", "review", "a"), TaskSpec("b", "review", "b")],
        confidence_threshold=0.5,
    )

    status = _advance(phase, _runtime(reviewer, log))

    assert status == PhaseStatus.COMPLETED
    assert [finding.severity for finding in phase.aggregate()] == [Severity.MAJOR]
    assert log.names()[0] == "phase_started"
    assert log.names()[-1] == "phase_completed"
    assert phase.started_at is not None and phase.ended_at is not None


def test_partial_failure_is_tolerated_unless_all_required() -> None:
    tasks = [TaskSpec("a", "review", "a"), TaskSpec("c", "broken")]

    lenient = Phase(name="lenient", tasks=list(tasks))
    assert _advance(lenient, _runtime(Reviewer(), EventLog())) == PhaseStatus.COMPLETED

    strict = Phase(name="strict", tasks=list(tasks), require_all_succeeded=True)
    assert _advance(strict, _runtime(Reviewer(), EventLog())) == PhaseStatus.FAILED
    assert strict.error is not None
    assert strict.error.kind == "task_failure"
    assert "c" in strict.error.reason


def test_phase_fails_when_every_task_fails() -> None:
    phase = Phase(name="broken", tasks=[TaskSpec("c", "broken")])

    assert _advance(phase, _runtime(Reviewer(), EventLog())) == PhaseStatus.FAILED
    with pytest.raises(PhaseError, match="task_failure"):
        phase.raise_for_status()


def test_manual_gate_holds_phase_until_resolved() -> None:
    log = EventLog()
    runtime = _runtime(Reviewer(), log)
    phase = Phase(name="review", tasks=[TaskSpec("a", "review", "a")], gate=Gate.manual("ok"))
    run = WorkflowRun.create([phase], run_id="run-manual")

    assert asyncio.run(phase.advance(RunContext(), runtime, run)) == PhaseStatus.AWAITING_GATE
    assert "gate_blocked" in log.names()

    phase.gate.open("ship it")  # type: ignore[union-attr]
    assert asyncio.run(phase.advance(RunContext(), runtime, run)) == PhaseStatus.COMPLETED


def test_rework_reruns_tasks_until_automatic_gate_opens() -> None:
    reviewer = Reviewer()
    reviewer.findings = {"a": [Finding("security", Severity.CRITICAL, 0.9, "db.py")]}
    log = EventLog()
    runtime = _runtime(reviewer, log)
    phase = Phase(
        name="review",
        tasks=[TaskSpec("a", "review", "a")],
        gate=Gate.automatic("quality", "no-critical-findings"),
    )
    run = WorkflowRun.create([phase], run_id="run-rework")

    assert asyncio.run(phase.advance(RunContext(), runtime, run)) == PhaseStatus.AWAITING_GATE
    assert phase.gate.status == GateStatus.BLOCKED  # type: ignore[union-attr]

    reviewer.findings = {"a": [Finding("security", Severity.MINOR, 0.9, "db.py")]}
    phase.rework()
    assert phase.status == PhaseStatus.RUNNING
    assert asyncio.run(phase.advance(RunContext(), runtime, run)) == PhaseStatus.COMPLETED
    assert phase.rework_count == 1
    assert reviewer.calls == ["a", "a"]
    assert log.of_type("gate_resolved")[0]["status"] == "open"


def test_rework_requires_blocked_gate() -> None:
    phase = Phase(name="review")

    with pytest.raises(InvalidTransitionError):
        phase.rework()


def test_restart_preserves_succeeded_tasks_and_checkpoints_each_finish() -> None:
    reviewer = Reviewer()
    done = TaskRecord.pending(TaskSpec("a", "review", "a"))
    done.mark_running()
    done.mark_succeeded({"findings": []}, [])
    phase = Phase(
        name="review",
        tasks=[TaskSpec("a", "review", "a"), TaskSpec("b", "review", "b")],
        status=PhaseStatus.RUNNING,
        join=JoinResult(tasks=(done,)),
    )
    checkpoints: list[int] = []

    status = _advance(phase, _runtime(reviewer, EventLog(), checkpoints))

    assert status == PhaseStatus.COMPLETED
    assert reviewer.calls == ["b"]
    join = phase.join
    assert join is not None
    assert [record.task_id for record in join.tasks] == ["a", "b"]
    assert all(record.status == TaskStatus.SUCCEEDED for record in join.tasks)
    assert len(checkpoints) >= 3


def test_phase_dict_roundtrip() -> None:
    phase = Phase(
        name="review",
        tasks=[TaskSpec("a", "review", {"path": "src"}, max_retries=2)],
        concurrency=2,
        gate=Gate.manual("ok"),
        confidence_threshold=0.4,
    )
    _advance(phase, _runtime(Reviewer(), EventLog()))

    restored = Phase.from_dict(phase.to_dict())

    assert restored.to_dict() == phase.to_dict()
    assert restored.status == PhaseStatus.AWAITING_GATE
