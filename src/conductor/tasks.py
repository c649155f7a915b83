from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from conductor.errors import InvalidTransitionError, TaskErrorKind
from conductor.findings import Finding


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.TIMED_OUT, TaskStatus.CANCELLED}
)

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: _TERMINAL_STATUSES,
}


@dataclass(slots=True)
class TaskSpec:
    id: str
    executor: str
    payload: Any = None
    max_retries: int = 0
    backoff_seconds: float = 0.0
    timeout_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "executor": self.executor,
            "payload": _jsonable(self.payload),
            "max_retries": self.max_retries,
            "backoff_seconds": self.backoff_seconds,
            "timeout_seconds": self.timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TaskSpec:
        timeout = data.get("timeout_seconds")
        return cls(
            id=str(data["id"]),
            executor=str(data["executor"]),
            payload=data.get("payload"),
            max_retries=int(data.get("max_retries", 0)),
            backoff_seconds=float(data.get("backoff_seconds", 0.0)),
            timeout_seconds=float(timeout) if timeout is not None else None,
        )


@dataclass(slots=True)
class TaskRecord:
    task_id: str
    executor: str
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    result: Any = None
    findings: tuple[Finding, ...] = ()
    error: str | None = None
    error_kind: TaskErrorKind | None = None
    started_at: str | None = None
    ended_at: str | None = None
    elapsed_seconds: float = 0.0
    _started_monotonic: float | None = field(default=None, repr=False, compare=False)

    @classmethod
    def pending(cls, spec: TaskSpec) -> TaskRecord:
        return cls(task_id=spec.id, executor=spec.executor)

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.SUCCEEDED

    def _transition(self, status: TaskStatus) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise InvalidTransitionError(
                f"Task '{self.task_id}' cannot move from {self.status} to {status}."
            )
        self.status = status

    def _finish(self, status: TaskStatus) -> None:
        self._transition(status)
        self.ended_at = utcnow_iso()
        if self._started_monotonic is not None:
            self.elapsed_seconds = round(time.monotonic() - self._started_monotonic, 6)

    def mark_running(self) -> None:
        self._transition(TaskStatus.RUNNING)
        self.started_at = utcnow_iso()
        self._started_monotonic = time.monotonic()

    def mark_succeeded(self, result: Any, findings: list[Finding] | tuple[Finding, ...]) -> None:
        self._finish(TaskStatus.SUCCEEDED)
        self.result = result
        self.findings = tuple(findings)

    def mark_failed(
        self,
        error: str,
        kind: TaskErrorKind,
        *,
        timed_out: bool = False,
    ) -> None:
        self._finish(TaskStatus.TIMED_OUT if timed_out else TaskStatus.FAILED)
        self.error = error
        self.error_kind = kind

    def mark_cancelled(self, reason: str) -> None:
        self._finish(TaskStatus.CANCELLED)
        self.error = reason
        self.error_kind = TaskErrorKind.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "executor": self.executor,
            "status": self.status.value,
            "attempts": self.attempts,
            "result": _jsonable(self.result),
            "findings": [finding.to_dict() for finding in self.findings],
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "elapsed_seconds": self.elapsed_seconds,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TaskRecord:
        error_kind = data.get("error_kind")
        return cls(
            task_id=str(data["task_id"]),
            executor=str(data["executor"]),
            status=TaskStatus(data.get("status", TaskStatus.PENDING)),
            attempts=int(data.get("attempts", 0)),
            result=data.get("result"),
            findings=tuple(Finding.from_dict(item) for item in data.get("findings", [])),
            error=data.get("error"),
            error_kind=TaskErrorKind(error_kind) if error_kind else None,
            started_at=data.get("started_at"),
            ended_at=data.get("ended_at"),
            elapsed_seconds=float(data.get("elapsed_seconds", 0.0)),
        )


@dataclass(slots=True)
class JoinResult:
    tasks: tuple[TaskRecord, ...] = ()
    cancelled: bool = False
    aborted: bool = False
    reason: str | None = None

    @property
    def all_succeeded(self) -> bool:
        return not self.cancelled and all(record.succeeded for record in self.tasks)

    @property
    def succeeded(self) -> list[TaskRecord]:
        return [record for record in self.tasks if record.succeeded]

    @property
    def failed(self) -> list[TaskRecord]:
        return [
            record
            for record in self.tasks
            if record.status in {TaskStatus.FAILED, TaskStatus.TIMED_OUT}
        ]

    @property
    def finding_sets(self) -> list[tuple[Finding, ...]]:
        return [record.findings for record in self.succeeded]

    def get(self, task_id: str) -> TaskRecord | None:
        for record in self.tasks:
            if record.task_id == task_id:
                return record
        return None

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self.tasks:
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [record.to_dict() for record in self.tasks],
            "cancelled": self.cancelled,
            "aborted": self.aborted,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> JoinResult:
        return cls(
            tasks=tuple(TaskRecord.from_dict(item) for item in data.get("tasks", [])),
            cancelled=bool(data.get("cancelled", False)),
            aborted=bool(data.get("aborted", False)),
            reason=data.get("reason"),
        )


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Finding):
        return value.to_dict()
    if is_dataclass(value) and not isinstance(value, type):
        return _jsonable(asdict(value))
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    if hasattr(value, "to_dict"):
        return _jsonable(value.to_dict())
    return str(value)
