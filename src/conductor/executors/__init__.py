from conductor.executors.base import ExecutorFunction, FunctionExecutor, TaskExecutor
from conductor.executors.command import CommandExecutor, CommandResult
from conductor.executors.registry import ExecutorRegistry

__all__ = [
    "CommandExecutor",
    "CommandResult",
    "ExecutorFunction",
    "ExecutorRegistry",
    "FunctionExecutor",
    "TaskExecutor",
]
