from __future__ import annotations

import subprocess
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from conductor.errors import GateError
from conductor.executors.command import split_command
from conductor.findings import Severity
from conductor.logger import get_logger
from conductor.tasks import utcnow_iso

if TYPE_CHECKING:
    from conductor.workflow import WorkflowRun

GatePredicate = Callable[["WorkflowRun"], bool]

logger = get_logger(__name__)


class GateKind(StrEnum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class GateStatus(StrEnum):
    BLOCKED = "blocked"
    OPEN = "open"
    REJECTED = "rejected"


@dataclass(slots=True)
class Gate:
    name: str
    kind: GateKind = GateKind.MANUAL
    predicate: str | None = None
    status: GateStatus = GateStatus.BLOCKED
    reason: str | None = None
    resolved_at: str | None = None
    evaluations: int = 0

    def __post_init__(self) -> None:
        if self.kind == GateKind.AUTOMATIC and not self.predicate:
            raise GateError(f"Automatic gate '{self.name}' needs a predicate name.")

    @classmethod
    def manual(cls, name: str) -> Gate:
        return cls(name=name, kind=GateKind.MANUAL)

    @classmethod
    def automatic(cls, name: str, predicate: str) -> Gate:
        return cls(name=name, kind=GateKind.AUTOMATIC, predicate=predicate)

    @property
    def resolved(self) -> bool:
        return self.status != GateStatus.BLOCKED

    def _resolve(self, status: GateStatus, reason: str) -> None:
        if self.resolved:
            raise GateError(
                f"Gate '{self.name}' is already {self.status.value}; it resolves only once."
            )
        self.status = status
        self.reason = reason
        self.resolved_at = utcnow_iso()
        logger.info("Gate %s %s: %s", self.name, status.value, reason)

    def open(self, reason: str = "approved") -> None:
        if self.kind != GateKind.MANUAL:
            raise GateError(
                f"Gate '{self.name}' is automatic; it opens only when its predicate holds."
            )
        self._resolve(GateStatus.OPEN, reason)

    def reject(self, reason: str) -> None:
        self._resolve(GateStatus.REJECTED, reason)

    def evaluate(
        self,
        run: WorkflowRun,
        predicates: Mapping[str, GatePredicate] | None = None,
    ) -> GateStatus:
        if self.resolved or self.kind == GateKind.MANUAL:
            return self.status
        registry = predicates or {}
        predicate = registry.get(self.predicate or "")
        if predicate is None:
            raise GateError(f"Gate '{self.name}' uses unknown predicate '{self.predicate}'.")
        self.evaluations += 1
        if predicate(run):
            self._resolve(GateStatus.OPEN, f"predicate '{self.predicate}' satisfied")
        return self.status

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "predicate": self.predicate,
            "status": self.status.value,
            "reason": self.reason,
            "resolved_at": self.resolved_at,
            "evaluations": self.evaluations,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Gate:
        return cls(
            name=str(data["name"]),
            kind=GateKind(data.get("kind", GateKind.MANUAL)),
            predicate=data.get("predicate"),
            status=GateStatus(data.get("status", GateStatus.BLOCKED)),
            reason=data.get("reason"),
            resolved_at=data.get("resolved_at"),
            evaluations=int(data.get("evaluations", 0)),
        )


def no_findings_at_or_above(severity: Severity) -> GatePredicate:
    def _predicate(run: WorkflowRun) -> bool:
        phase = run.current_phase
        if phase is None:
            return True
        return phase.aggregate().count_at_least(severity) == 0

    return _predicate


def all_tasks_succeeded() -> GatePredicate:
    def _predicate(run: WorkflowRun) -> bool:
        phase = run.current_phase
        return phase is not None and phase.join is not None and phase.join.all_succeeded

    return _predicate


def command_succeeds(command: str, cwd: str | Path | None = None) -> GatePredicate:
    """Predicate that passes when a quality command (lint, format, test suite) exits 0."""

    def _predicate(run: WorkflowRun) -> bool:
        invocation, used_shell = split_command(command)
        try:
            proc = subprocess.run(
                invocation,
                cwd=cwd,
                shell=used_shell,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            logger.warning(
                "Quality command %r could not start for run %s: %s", command, run.run_id, exc
            )
            return False
        if proc.returncode != 0:
            logger.info(
                "Quality command %r failed for run %s (exit %s): %s",
                command,
                run.run_id,
                proc.returncode,
                proc.stderr.strip()[-400:],
            )
        return proc.returncode == 0

    return _predicate


def default_predicates() -> dict[str, GatePredicate]:
    return {
        "no-critical-findings": no_findings_at_or_above(Severity.CRITICAL),
        "no-major-findings": no_findings_at_or_above(Severity.MAJOR),
        "all-tasks-succeeded": all_tasks_succeeded(),
    }
