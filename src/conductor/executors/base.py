from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from conductor.context import RunContext


class TaskExecutor(ABC):
    name: str = "executor"

    @abstractmethod
    async def execute(self, payload: Any, context: RunContext) -> Any:
        """Run one task attempt and return its result.

        Implementations must return promptly with an error once ``context`` is
        cancelled; they never report cancellation as success.
        """


ExecutorFunction = Callable[[Any, RunContext], Awaitable[Any]]


class FunctionExecutor(TaskExecutor):
    """Adapts a plain coroutine function to the executor contract."""

    def __init__(self, func: ExecutorFunction, *, name: str | None = None) -> None:
        self.func = func
        self.name = name or getattr(func, "__name__", "function")

    async def execute(self, payload: Any, context: RunContext) -> Any:
        return await self.func(payload, context)
