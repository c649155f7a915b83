from conductor.aggregation import AggregatedResult, aggregate, filter_by_confidence
from conductor.context import RunContext
from conductor.coordinator import Coordinator
from conductor.engine import WorkflowEngine
from conductor.errors import (
    ConductorError,
    GateError,
    InvalidTransitionError,
    OperationCancelled,
    PhaseError,
    StateError,
    TaskExecutionError,
    UnknownExecutorError,
    WorkflowError,
)
from conductor.executors import (
    CommandExecutor,
    ExecutorRegistry,
    FunctionExecutor,
    TaskExecutor,
)
from conductor.findings import Finding, Severity
from conductor.gates import Gate, GateKind, GateStatus
from conductor.phase import Phase, PhaseStatus
from conductor.tasks import JoinResult, TaskRecord, TaskSpec, TaskStatus
from conductor.workflow import WorkflowRun, WorkflowStatus

__version__ = "0.1.0"

__all__ = [
    "AggregatedResult",
    "CommandExecutor",
    "ConductorError",
    "Coordinator",
    "ExecutorRegistry",
    "Finding",
    "FunctionExecutor",
    "Gate",
    "GateError",
    "GateKind",
    "GateStatus",
    "InvalidTransitionError",
    "JoinResult",
    "OperationCancelled",
    "Phase",
    "PhaseError",
    "PhaseStatus",
    "RunContext",
    "Severity",
    "StateError",
    "TaskExecutionError",
    "TaskExecutor",
    "TaskRecord",
    "TaskSpec",
    "TaskStatus",
    "UnknownExecutorError",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowRun",
    "WorkflowStatus",
    "__version__",
]
