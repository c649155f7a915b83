from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from conductor.aggregation import AggregatedResult, aggregate
from conductor.context import RunContext
from conductor.coordinator import Coordinator
from conductor.errors import InvalidTransitionError, PhaseError
from conductor.events import EventEmitter
from conductor.gates import Gate, GatePredicate, GateStatus
from conductor.tasks import JoinResult, TaskRecord, TaskSpec, utcnow_iso

if TYPE_CHECKING:
    from conductor.workflow import WorkflowRun


class PhaseStatus(StrEnum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    AWAITING_GATE = "awaiting_gate"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {PhaseStatus.COMPLETED, PhaseStatus.FAILED}


@dataclass(slots=True)
class PhaseRuntime:
    coordinator: Coordinator
    predicates: Mapping[str, GatePredicate] = field(default_factory=dict)
    events: EventEmitter = field(default_factory=EventEmitter)
    default_concurrency: int = 4
    checkpoint: Callable[[], None] | None = None


@dataclass(slots=True)
class Phase:
    name: str
    tasks: list[TaskSpec] = field(default_factory=list)
    concurrency: int | None = None
    gate: Gate | None = None
    abort_on_first_failure: bool = False
    require_all_succeeded: bool = False
    confidence_threshold: float = 0.0
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    join: JoinResult | None = None
    error: PhaseError | None = None
    rework_count: int = 0
    started_at: str | None = None
    ended_at: str | None = None

    def aggregate(self) -> AggregatedResult:
        finding_sets = self.join.finding_sets if self.join is not None else []
        return aggregate(finding_sets, self.confidence_threshold)

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error

    async def advance(
        self,
        context: RunContext,
        runtime: PhaseRuntime,
        run: WorkflowRun,
    ) -> PhaseStatus:
        if self.status.terminal:
            return self.status
        if self.status in {PhaseStatus.NOT_STARTED, PhaseStatus.RUNNING}:
            await self._dispatch(context, runtime)
        if self.status == PhaseStatus.AWAITING_GATE:
            self._poll_gate(runtime, run)
        return self.status

    def rework(self, tasks: Sequence[TaskSpec] | None = None) -> None:
        """Re-dispatch a phase whose gate is still blocked, optionally with corrected tasks."""
        if self.status != PhaseStatus.AWAITING_GATE or self.gate is None or self.gate.resolved:
            raise InvalidTransitionError(
                f"Phase '{self.name}' can be reworked only while its gate is blocked."
            )
        if tasks is not None:
            self.tasks = list(tasks)
        self.join = None
        self.rework_count += 1
        self.status = PhaseStatus.RUNNING

    async def _dispatch(self, context: RunContext, runtime: PhaseRuntime) -> None:
        preserved: dict[str, TaskRecord] = {}
        if self.status == PhaseStatus.RUNNING and self.join is not None:
            preserved = {record.task_id: record for record in self.join.tasks if record.succeeded}
        resumed = bool(preserved)

        self.status = PhaseStatus.RUNNING
        if self.started_at is None:
            self.started_at = utcnow_iso()
        runtime.events.emit(
            "phase_started",
            phase=self.name,
            tasks=len(self.tasks),
            resumed=resumed,
            rework=self.rework_count,
        )
        self._checkpoint(runtime)

        finished: dict[str, TaskRecord] = dict(preserved)

        def _ordered() -> tuple[TaskRecord, ...]:
            return tuple(finished[spec.id] for spec in self.tasks if spec.id in finished)

        def _on_finished(record: TaskRecord) -> None:
            finished[record.task_id] = record
            self.join = JoinResult(tasks=_ordered())
            self._checkpoint(runtime)

        pending_specs = [spec for spec in self.tasks if spec.id not in preserved]
        concurrency = self.concurrency or runtime.default_concurrency
        join = await runtime.coordinator.run(
            pending_specs,
            max(1, int(concurrency)),
            context=context,
            abort_on_first_failure=self.abort_on_first_failure,
            on_finished=_on_finished,
        )
        finished.update({record.task_id: record for record in join.tasks})
        self.join = JoinResult(
            tasks=_ordered(),
            cancelled=join.cancelled,
            aborted=join.aborted,
            reason=join.reason,
        )

        failure = self._join_failure(self.join)
        if failure is not None:
            self._fail(runtime, *failure)
            return
        if self.gate is not None and self.gate.status == GateStatus.BLOCKED:
            self.status = PhaseStatus.AWAITING_GATE
            runtime.events.emit(
                "gate_blocked",
                phase=self.name,
                gate=self.gate.name,
                kind=self.gate.kind.value,
            )
            self._checkpoint(runtime)
            return
        if self.gate is not None and self.gate.status == GateStatus.REJECTED:
            self._fail(runtime, "gate_rejected", self.gate.reason or "")
            return
        self._complete(runtime)

    def _join_failure(self, join: JoinResult) -> tuple[str, str] | None:
        if join.cancelled:
            return ("cancelled", join.reason or "cancelled")
        if join.aborted:
            return ("task_failure", join.reason or "aborted after task failure")
        failed = join.failed
        if join.tasks and not join.succeeded:
            return ("task_failure", f"all {len(join.tasks)} tasks failed")
        if self.require_all_succeeded and failed:
            names = ", ".join(record.task_id for record in failed)
            return ("task_failure", f"tasks failed: {names}")
        return None

    def _poll_gate(self, runtime: PhaseRuntime, run: WorkflowRun) -> None:
        gate = self.gate
        if gate is None:
            self._complete(runtime)
            return
        was_blocked = not gate.resolved
        status = gate.evaluate(run, runtime.predicates)
        if was_blocked and gate.resolved:
            runtime.events.emit(
                "gate_resolved",
                phase=self.name,
                gate=gate.name,
                status=status.value,
                reason=gate.reason,
            )
        if status == GateStatus.OPEN:
            self._complete(runtime)
        elif status == GateStatus.REJECTED:
            self._fail(runtime, "gate_rejected", gate.reason or "")

    def _complete(self, runtime: PhaseRuntime) -> None:
        self.status = PhaseStatus.COMPLETED
        self.ended_at = utcnow_iso()
        result = self.aggregate()
        runtime.events.emit(
            "phase_completed",
            phase=self.name,
            findings=len(result),
            counts=dict(result.counts),
        )
        self._checkpoint(runtime)

    def _fail(self, runtime: PhaseRuntime, kind: str, reason: str) -> None:
        self.status = PhaseStatus.FAILED
        self.ended_at = utcnow_iso()
        self.error = PhaseError(self.name, kind, reason)
        runtime.events.emit("phase_failed", phase=self.name, kind=kind, reason=reason)
        self._checkpoint(runtime)

    @staticmethod
    def _checkpoint(runtime: PhaseRuntime) -> None:
        if runtime.checkpoint is not None:
            runtime.checkpoint()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tasks": [spec.to_dict() for spec in self.tasks],
            "concurrency": self.concurrency,
            "gate": self.gate.to_dict() if self.gate is not None else None,
            "abort_on_first_failure": self.abort_on_first_failure,
            "require_all_succeeded": self.require_all_succeeded,
            "confidence_threshold": self.confidence_threshold,
            "status": self.status.value,
            "join": self.join.to_dict() if self.join is not None else None,
            "error": self.error.to_dict() if self.error is not None else None,
            "rework_count": self.rework_count,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Phase:
        gate = data.get("gate")
        join = data.get("join")
        error = data.get("error")
        concurrency = data.get("concurrency")
        return cls(
            name=str(data["name"]),
            tasks=[TaskSpec.from_dict(item) for item in data.get("tasks", [])],
            concurrency=int(concurrency) if concurrency is not None else None,
            gate=Gate.from_dict(gate) if isinstance(gate, Mapping) else None,
            abort_on_first_failure=bool(data.get("abort_on_first_failure", False)),
            require_all_succeeded=bool(data.get("require_all_succeeded", False)),
            confidence_threshold=float(data.get("confidence_threshold", 0.0)),
            status=PhaseStatus(data.get("status", PhaseStatus.NOT_STARTED)),
            join=JoinResult.from_dict(join) if isinstance(join, Mapping) else None,
            error=PhaseError.from_dict(error) if isinstance(error, Mapping) else None,
            rework_count=int(data.get("rework_count", 0)),
            started_at=data.get("started_at"),
            ended_at=data.get("ended_at"),
        )
