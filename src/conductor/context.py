from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

from conductor.errors import OperationCancelled

T = TypeVar("T")


class RunContext:
    """Cancellable scope shared by a workflow run, its phases, and their tasks.

    Cancelling a context cancels every child derived from it. An optional
    ``timeout_seconds`` becomes a deadline the first time the context is awaited
    inside a running event loop.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        parent: RunContext | None = None,
    ) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._children: list[RunContext] = []
        self._timeout_seconds = timeout_seconds
        self._deadline_handle: asyncio.TimerHandle | None = None
        self.parent = parent
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason or "cancelled")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def child(self, *, timeout_seconds: float | None = None) -> RunContext:
        return RunContext(timeout_seconds=timeout_seconds, parent=self)

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None
        for child in list(self._children):
            child.cancel(reason)

    def detach(self) -> None:
        """Drop this context from its parent so the parent stops tracking it."""
        if self.parent is not None and self in self.parent._children:
            self.parent._children.remove(self)
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self._reason or "cancelled")

    def _arm_deadline(self) -> None:
        if self.parent is not None:
            self.parent._arm_deadline()
        if self._timeout_seconds is None or self._deadline_handle is not None or self.cancelled:
            return
        loop = asyncio.get_running_loop()
        self._deadline_handle = loop.call_later(
            max(0.0, float(self._timeout_seconds)), self.cancel, "deadline exceeded"
        )
        self._timeout_seconds = None

    async def wait(self) -> str:
        self._arm_deadline()
        await self._event.wait()
        return self._reason or "cancelled"

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds``; return False early if the context is cancelled."""
        self._arm_deadline()
        if self.cancelled:
            return False
        if seconds <= 0:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return True
        return False

    async def run(self, awaitable: Awaitable[T], *, timeout: float | None = None) -> T:
        """Await ``awaitable`` unless the context is cancelled or ``timeout`` elapses first.

        On cancellation or timeout the inner task is cancelled and awaited before
        ``OperationCancelled`` or ``TimeoutError`` is raised.
        """
        self._arm_deadline()
        task: asyncio.Future[T] = asyncio.ensure_future(awaitable)
        if self.cancelled:
            await _drain(task)
            raise OperationCancelled(self._reason or "cancelled")

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await _drain(task)
            raise
        finally:
            waiter.cancel()

        if task in done:
            if task.cancelled():
                raise OperationCancelled("operation cancelled")
            return task.result()

        await _drain(task)
        if self.cancelled:
            raise OperationCancelled(self._reason or "cancelled")
        raise TimeoutError(f"Operation timed out after {timeout:.1f}s")


async def _drain(task: asyncio.Future[Any]) -> None:
    if not task.done():
        task.cancel()
    await asyncio.gather(task, return_exceptions=True)
