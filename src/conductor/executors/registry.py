from __future__ import annotations

from collections.abc import Iterator

from conductor.errors import UnknownExecutorError
from conductor.executors.base import ExecutorFunction, FunctionExecutor, TaskExecutor


class ExecutorRegistry:
    def __init__(self, executors: dict[str, TaskExecutor] | None = None) -> None:
        self._executors: dict[str, TaskExecutor] = {}
        for type_id, executor in (executors or {}).items():
            self.register(type_id, executor)

    def register(self, type_id: str, executor: TaskExecutor, *, replace: bool = False) -> None:
        normalized = type_id.strip()
        if not normalized:
            raise ValueError("Executor type id must be a non-empty string.")
        if normalized in self._executors and not replace:
            raise ValueError(f"Executor type '{normalized}' is already registered.")
        self._executors[normalized] = executor

    def register_function(
        self, type_id: str, func: ExecutorFunction, *, replace: bool = False
    ) -> FunctionExecutor:
        executor = FunctionExecutor(func, name=type_id)
        self.register(type_id, executor, replace=replace)
        return executor

    def get(self, type_id: str) -> TaskExecutor:
        executor = self._executors.get(type_id)
        if executor is None:
            raise UnknownExecutorError(type_id)
        return executor

    def __contains__(self, type_id: object) -> bool:
        return type_id in self._executors

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._executors))

    def __len__(self) -> int:
        return len(self._executors)
