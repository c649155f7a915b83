from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from conductor.config import ConductorConfig
from conductor.context import RunContext
from conductor.coordinator import Coordinator, ErrorClassifier
from conductor.errors import ConductorError, GateError, WorkflowError
from conductor.events import EventEmitter, EventHook
from conductor.executors.registry import ExecutorRegistry
from conductor.gates import Gate, GatePredicate, default_predicates
from conductor.logger import get_logger
from conductor.phase import Phase, PhaseRuntime, PhaseStatus
from conductor.state.store import RunStore
from conductor.tasks import TaskSpec
from conductor.workflow import WorkflowRun, WorkflowStatus, dumps_run, loads_run

logger = get_logger(__name__)


class WorkflowEngine:
    """Drives workflow runs phase by phase, persisting progress between transitions."""

    def __init__(
        self,
        registry: ExecutorRegistry,
        *,
        predicates: Mapping[str, GatePredicate] | None = None,
        store: RunStore | None = None,
        event_hook: EventHook | None = None,
        classifier: ErrorClassifier | None = None,
        config: ConductorConfig | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or ConductorConfig.default()
        self.predicates: dict[str, GatePredicate] = default_predicates()
        self.predicates.update(predicates or {})
        self.store = store
        self.classifier = classifier
        self.events = EventEmitter(event_hook)
        self._active: dict[str, RunContext] = {}

    def phase(
        self,
        name: str,
        tasks: Iterable[TaskSpec] = (),
        *,
        gate: Gate | None = None,
        **overrides: Any,
    ) -> Phase:
        """Build a phase that carries the configured engine defaults."""
        values: dict[str, Any] = {
            "concurrency": self.config.engine.default_concurrency,
            "abort_on_first_failure": self.config.engine.abort_on_first_failure,
            "require_all_succeeded": self.config.engine.require_all_succeeded,
            "confidence_threshold": self.config.engine.confidence_threshold,
        }
        values.update(overrides)
        return Phase(name=name, tasks=list(tasks), gate=gate, **values)

    def create_run(self, phases: Sequence[Phase], *, run_id: str | None = None) -> WorkflowRun:
        run = WorkflowRun.create(phases, run_id=run_id)
        run.record("run_created", phases=[phase.name for phase in phases])
        self._persist(run)
        return run

    def is_active(self, run: WorkflowRun) -> bool:
        return run.run_id in self._active

    async def run(self, run: WorkflowRun, *, context: RunContext | None = None) -> WorkflowStatus:
        if run.status.terminal:
            return run.status
        if run.run_id in self._active:
            raise ConductorError(f"Run {run.run_id} is already being advanced.")

        root = context or RunContext()
        self._active[run.run_id] = root
        events = self.events.bind(run_id=run.run_id)
        runtime = PhaseRuntime(
            coordinator=Coordinator(self.registry, classifier=self.classifier, events=events),
            predicates=self.predicates,
            events=events,
            default_concurrency=max(1, int(self.config.engine.default_concurrency)),
            checkpoint=lambda: self._persist(run),
        )

        resumed = any(entry.get("event") == "run_started" for entry in run.history)
        run.status = WorkflowStatus.RUNNING
        run.record("run_started", phase_index=run.current_index, resumed=resumed)
        events.emit("run_started", phase_index=run.current_index, resumed=resumed)
        self._persist(run)

        try:
            while True:
                if root.cancelled:
                    self._mark_cancelled(run, root.reason or "cancelled", events)
                    break

                phase = run.current_phase
                if phase is None:
                    self._mark_completed(run, events)
                    break

                status = await phase.advance(root, runtime, run)
                if root.cancelled:
                    self._mark_cancelled(run, root.reason or "cancelled", events)
                    break

                if status == PhaseStatus.COMPLETED:
                    run.record("phase_completed", phase=phase.name)
                    if run.current_index + 1 >= len(run.phases):
                        self._mark_completed(run, events)
                        break
                    run.move_to(run.current_index + 1)
                    self._persist(run)
                    continue

                if status == PhaseStatus.FAILED:
                    self._mark_failed(run, phase, events)
                    break

                if status == PhaseStatus.AWAITING_GATE:
                    gate = phase.gate
                    run.status = WorkflowStatus.SUSPENDED
                    run.record(
                        "run_suspended",
                        phase=phase.name,
                        gate=gate.name if gate else None,
                    )
                    events.emit(
                        "run_suspended",
                        phase=phase.name,
                        gate=gate.name if gate else None,
                    )
                    self._persist(run)
                    break

                raise ConductorError(
                    f"Phase '{phase.name}' returned unexpected status {status.value}."
                )
        finally:
            self._active.pop(run.run_id, None)
        return run.status

    def suspend(self, run: WorkflowRun) -> str:
        if run.run_id in self._active:
            raise ConductorError(
                f"Run {run.run_id} is advancing; cancel it or wait for a gate before suspending."
            )
        if not run.status.terminal and run.status != WorkflowStatus.SUSPENDED:
            run.status = WorkflowStatus.SUSPENDED
            phase = run.current_phase
            run.record("run_suspended", phase=phase.name if phase else None)
            self.events.emit(
                "run_suspended",
                run_id=run.run_id,
                phase=phase.name if phase else None,
            )
        self._persist(run)
        return dumps_run(run)

    def resume(self, source: str | bytes | WorkflowRun) -> WorkflowRun:
        """Rebuild a run from a serialized document, a stored run id, or a run object."""
        if isinstance(source, WorkflowRun):
            run = source
        elif isinstance(source, bytes) or source.lstrip().startswith("{"):
            run = loads_run(source)
        else:
            if self.store is None:
                raise ConductorError("No run store configured; pass a serialized run instead.")
            run = self.store.load(source)

        if run.status == WorkflowStatus.SUSPENDED:
            run.status = WorkflowStatus.RUNNING
            run.record("run_resumed", phase_index=run.current_index)
            self.events.emit("run_resumed", run_id=run.run_id, phase_index=run.current_index)
        return run

    def cancel(self, run: WorkflowRun, reason: str = "cancelled by caller") -> None:
        context = self._active.get(run.run_id)
        if context is not None:
            context.cancel(reason)
            return
        if run.status.terminal:
            return
        self._mark_cancelled(run, reason, self.events.bind(run_id=run.run_id))

    def open_gate(
        self, run: WorkflowRun, reason: str = "approved", *, phase: str | None = None
    ) -> Gate:
        gate, target = self._gate_for(run, phase)
        gate.open(reason)
        self._gate_resolved(run, target, gate)
        return gate

    def reject_gate(self, run: WorkflowRun, reason: str, *, phase: str | None = None) -> Gate:
        gate, target = self._gate_for(run, phase)
        gate.reject(reason)
        self._gate_resolved(run, target, gate)
        return gate

    def rework_phase(self, run: WorkflowRun, tasks: Sequence[TaskSpec] | None = None) -> Phase:
        if run.status.terminal:
            raise ConductorError(f"Run {run.run_id} is {run.status.value}; start a new run.")
        phase = run.current_phase
        if phase is None:
            raise ConductorError(f"Run {run.run_id} has no current phase to rework.")
        phase.rework(tasks)
        run.record("phase_rework", phase=phase.name, rework=phase.rework_count)
        self.events.emit("phase_rework", run_id=run.run_id, phase=phase.name)
        self._persist(run)
        return phase

    def _gate_for(self, run: WorkflowRun, phase_name: str | None) -> tuple[Gate, Phase]:
        if run.status.terminal:
            raise GateError(f"Run {run.run_id} is {run.status.value}; its gates are closed.")
        if phase_name is None:
            target = run.current_phase
            if target is None:
                raise GateError(f"Run {run.run_id} has no current phase.")
        else:
            try:
                target = run.phase(phase_name)
            except KeyError as exc:
                raise GateError(f"Run {run.run_id} has no phase '{phase_name}'.") from exc
        if target.gate is None:
            raise GateError(f"Phase '{target.name}' has no gate.")
        return target.gate, target

    def _gate_resolved(self, run: WorkflowRun, phase: Phase, gate: Gate) -> None:
        run.record(
            "gate_resolved",
            phase=phase.name,
            gate=gate.name,
            status=gate.status.value,
            reason=gate.reason,
        )
        self.events.emit(
            "gate_resolved",
            run_id=run.run_id,
            phase=phase.name,
            gate=gate.name,
            status=gate.status.value,
            reason=gate.reason,
        )
        self._persist(run)

    def _mark_completed(self, run: WorkflowRun, events: EventEmitter) -> None:
        run.status = WorkflowStatus.COMPLETED
        run.record("run_completed")
        events.emit("run_completed", phases=len(run.phases))
        logger.info("Run %s completed", run.run_id)
        self._persist(run)

    def _mark_failed(self, run: WorkflowRun, phase: Phase, events: EventEmitter) -> None:
        error = phase.error
        kind = error.kind if error is not None else "task_failure"
        reason = error.reason if error is not None else "phase failed"
        run.status = WorkflowStatus.FAILED
        run.error = WorkflowError(run.run_id, kind, reason, phase=phase.name)
        run.record("run_failed", phase=phase.name, kind=kind, reason=reason)
        events.emit("run_failed", phase=phase.name, kind=kind, reason=reason)
        logger.warning("Run %s failed in phase %s (%s): %s", run.run_id, phase.name, kind, reason)
        self._persist(run)

    def _mark_cancelled(self, run: WorkflowRun, reason: str, events: EventEmitter) -> None:
        phase = run.current_phase
        run.status = WorkflowStatus.CANCELLED
        run.error = WorkflowError(
            run.run_id,
            "cancelled",
            reason,
            phase=phase.name if phase else None,
        )
        run.record("run_cancelled", reason=reason)
        events.emit("run_cancelled", reason=reason)
        logger.info("Run %s cancelled: %s", run.run_id, reason)
        self._persist(run)

    def _persist(self, run: WorkflowRun) -> None:
        run.touch()
        if self.store is not None:
            self.store.save(run)
