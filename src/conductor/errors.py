from __future__ import annotations

from enum import StrEnum
from typing import Any


class TaskErrorKind(StrEnum):
    RETRYABLE = "retryable"
    FATAL = "fatal"
    CANCELLED = "cancelled"


class ConductorError(RuntimeError):
    """Base error for orchestration failures."""


class TaskExecutionError(ConductorError):
    """Raised by executors when a task attempt fails."""

    def __init__(
        self,
        message: str,
        *,
        executor: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.executor = executor
        self.exit_code = exit_code
        self.retriable = retriable


class UnknownExecutorError(TaskExecutionError):
    """Raised when a task names an executor type that was never registered."""

    def __init__(self, executor: str) -> None:
        super().__init__(
            f"No executor registered for type '{executor}'.",
            executor=executor,
            retriable=False,
        )


class OperationCancelled(ConductorError):
    """Raised when a run context is cancelled while an operation is in flight."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class InvalidTransitionError(ConductorError):
    """Raised when a status transition would break monotonicity."""


class GateError(ConductorError):
    """Raised on invalid gate operations."""


class StateError(ConductorError):
    """Raised when run persistence fails."""


class PhaseError(ConductorError):
    """Failure scoped to one phase: task failures past policy, a rejected gate, or cancellation."""

    def __init__(self, phase: str, kind: str, reason: str) -> None:
        super().__init__(f"Phase '{phase}' failed ({kind}): {reason}")
        self.phase = phase
        self.kind = kind
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, "kind": self.kind, "reason": self.reason}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseError:
        return cls(str(data["phase"]), str(data["kind"]), str(data.get("reason", "")))


class WorkflowError(ConductorError):
    """Failure scoped to a whole workflow run."""

    def __init__(
        self,
        run_id: str,
        kind: str,
        reason: str,
        *,
        phase: str | None = None,
    ) -> None:
        location = f" in phase '{phase}'" if phase else ""
        super().__init__(f"Workflow run {run_id} {kind}{location}: {reason}")
        self.run_id = run_id
        self.kind = kind
        self.reason = reason
        self.phase = phase

    @property
    def cancelled(self) -> bool:
        return self.kind == "cancelled"

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "kind": self.kind,
            "reason": self.reason,
            "phase": self.phase,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowError:
        phase = data.get("phase")
        return cls(
            str(data["run_id"]),
            str(data["kind"]),
            str(data.get("reason", "")),
            phase=str(phase) if phase is not None else None,
        )
