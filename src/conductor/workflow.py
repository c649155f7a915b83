from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from conductor.aggregation import AggregatedResult
from conductor.errors import InvalidTransitionError, StateError, WorkflowError
from conductor.phase import Phase, PhaseStatus
from conductor.tasks import utcnow_iso

SCHEMA_VERSION = 1


class WorkflowStatus(StrEnum):
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class WorkflowRun:
    run_id: str
    phases: list[Phase] = field(default_factory=list)
    current_index: int = 0
    status: WorkflowStatus = WorkflowStatus.RUNNING
    error: WorkflowError | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    history: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def create(cls, phases: Sequence[Phase], *, run_id: str | None = None) -> WorkflowRun:
        names = [phase.name for phase in phases]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate phase names: {', '.join(duplicates)}")
        return cls(run_id=run_id or new_run_id(), phases=list(phases))

    @property
    def current_phase(self) -> Phase | None:
        if 0 <= self.current_index < len(self.phases):
            return self.phases[self.current_index]
        return None

    def phase(self, name: str) -> Phase:
        for phase in self.phases:
            if phase.name == name:
                return phase
        raise KeyError(name)

    @property
    def completed_phases(self) -> list[Phase]:
        return [phase for phase in self.phases if phase.status == PhaseStatus.COMPLETED]

    def findings(self) -> dict[str, AggregatedResult]:
        """Aggregated findings of every phase that has dispatched work so far."""
        return {phase.name: phase.aggregate() for phase in self.phases if phase.join is not None}

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    def record(self, event: str, **fields: Any) -> None:
        entry: dict[str, Any] = {"event": event, "at": utcnow_iso()}
        entry.update(fields)
        self.history.append(entry)
        self.touch()

    def move_to(self, index: int) -> None:
        if index < self.current_index:
            raise InvalidTransitionError(
                f"Run {self.run_id} cannot move back from phase {self.current_index} to {index}."
            )
        current = self.current_phase
        if index > self.current_index and (
            current is None or current.status != PhaseStatus.COMPLETED
        ):
            raise InvalidTransitionError(
                f"Run {self.run_id} cannot leave phase {self.current_index} before it completes."
            )
        self.current_index = index
        self.touch()

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "run_id": self.run_id,
            "phases": [phase.to_dict() for phase in self.phases],
            "current_index": self.current_index,
            "status": self.status.value,
            "error": self.error.to_dict() if self.error is not None else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkflowRun:
        schema_version = int(data.get("schema_version", SCHEMA_VERSION))
        if schema_version > SCHEMA_VERSION:
            raise StateError(
                f"Workflow run schema {schema_version} is newer than supported {SCHEMA_VERSION}."
            )
        error = data.get("error")
        return cls(
            run_id=str(data["run_id"]),
            phases=[Phase.from_dict(item) for item in data.get("phases", [])],
            current_index=int(data.get("current_index", 0)),
            status=WorkflowStatus(data.get("status", WorkflowStatus.RUNNING)),
            error=WorkflowError.from_dict(error) if isinstance(error, Mapping) else None,
            created_at=str(data.get("created_at") or utcnow_iso()),
            updated_at=str(data.get("updated_at") or utcnow_iso()),
            history=[dict(item) for item in data.get("history", []) if isinstance(item, Mapping)],
        )


def dumps_run(run: WorkflowRun) -> str:
    return json.dumps(run.to_dict(), ensure_ascii=False, separators=(",", ":"))


def loads_run(document: str | bytes) -> WorkflowRun:
    try:
        payload = json.loads(document)
    except json.JSONDecodeError as exc:
        raise StateError(f"Workflow run document is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateError("Workflow run document must be a JSON object.")
    return WorkflowRun.from_dict(payload)
