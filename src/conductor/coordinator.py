from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable, Sequence

from conductor.context import RunContext
from conductor.errors import OperationCancelled, TaskErrorKind, UnknownExecutorError
from conductor.events import EventEmitter, EventHook
from conductor.executors.registry import ExecutorRegistry
from conductor.findings import findings_from_result
from conductor.logger import get_logger
from conductor.tasks import JoinResult, TaskRecord, TaskSpec, TaskStatus

ErrorClassifier = Callable[[BaseException], TaskErrorKind]
RecordCallback = Callable[[TaskRecord], None]

logger = get_logger(__name__)


def default_error_classifier(exc: BaseException) -> TaskErrorKind:
    if isinstance(exc, (asyncio.CancelledError, OperationCancelled)):
        return TaskErrorKind.CANCELLED
    retriable = getattr(exc, "retriable", None)
    if isinstance(retriable, bool):
        return TaskErrorKind.RETRYABLE if retriable else TaskErrorKind.FATAL
    return TaskErrorKind.RETRYABLE


class Coordinator:
    """Fans tasks out to registered executors with bounded concurrency and joins them all."""

    def __init__(
        self,
        registry: ExecutorRegistry,
        *,
        classifier: ErrorClassifier | None = None,
        event_hook: EventHook | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        self.registry = registry
        self.classifier = classifier or default_error_classifier
        self.events = events or EventEmitter(event_hook)

    async def run(
        self,
        tasks: Sequence[TaskSpec],
        concurrency: int,
        *,
        context: RunContext | None = None,
        abort_on_first_failure: bool = False,
        on_finished: RecordCallback | None = None,
    ) -> JoinResult:
        specs = list(tasks)
        if concurrency < 1:
            raise ValueError(f"Concurrency must be at least 1, got {concurrency}.")
        seen: set[str] = set()
        for spec in specs:
            if spec.id in seen:
                raise ValueError(f"Duplicate task id: {spec.id}")
            seen.add(spec.id)

        root = context or RunContext()
        scope = root.child()
        records = {spec.id: TaskRecord.pending(spec) for spec in specs}
        queue: deque[TaskSpec] = deque(specs)
        aborted_by: list[str] = []

        async def _worker() -> None:
            while queue and not scope.cancelled:
                spec = queue.popleft()
                record = records[spec.id]
                await self._run_task(spec, record, scope)
                if on_finished is not None:
                    on_finished(record)
                if (
                    abort_on_first_failure
                    and record.status in {TaskStatus.FAILED, TaskStatus.TIMED_OUT}
                    and not scope.cancelled
                ):
                    aborted_by.append(spec.id)
                    scope.cancel(f"aborted after failure of task '{spec.id}'")

        workers = [asyncio.create_task(_worker()) for _ in range(min(concurrency, len(specs)))]
        try:
            await asyncio.gather(*workers)
        except BaseException as exc:
            if isinstance(exc, asyncio.CancelledError):
                scope.cancel("coordinator cancelled")
            else:
                scope.cancel(f"coordinator stopped: {exc}")
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        finally:
            scope.detach()

        reason = scope.reason
        for spec in specs:
            record = records[spec.id]
            if record.status == TaskStatus.PENDING:
                record.mark_cancelled(reason or "cancelled before start")
                self._emit_finished(record)
                if on_finished is not None:
                    on_finished(record)

        join = JoinResult(
            tasks=tuple(records[spec.id] for spec in specs),
            cancelled=root.cancelled,
            aborted=bool(aborted_by),
            reason=root.reason if root.cancelled else reason,
        )
        logger.debug("Join complete: %s", join.status_counts())
        return join

    async def _run_task(self, spec: TaskSpec, record: TaskRecord, scope: RunContext) -> None:
        record.mark_running()
        self.events.emit("task_started", task_id=spec.id, executor=spec.executor)

        try:
            executor = self.registry.get(spec.executor)
        except UnknownExecutorError as exc:
            record.mark_failed(str(exc), TaskErrorKind.FATAL)
            self._emit_finished(record)
            return

        max_attempts = max(0, int(spec.max_retries)) + 1
        last_error = ""
        last_kind = TaskErrorKind.RETRYABLE
        timed_out = False
        for attempt in range(max_attempts):
            if attempt > 0:
                delay = max(0.0, float(spec.backoff_seconds)) * (2 ** (attempt - 1))
                self.events.emit(
                    "task_retry",
                    task_id=spec.id,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=last_error,
                )
                if not await scope.sleep(delay):
                    break
            if scope.cancelled:
                break

            record.attempts = attempt + 1
            try:
                result = await scope.run(
                    executor.execute(spec.payload, scope),
                    timeout=spec.timeout_seconds,
                )
            except OperationCancelled as exc:
                last_error = exc.reason
                last_kind = TaskErrorKind.CANCELLED
                break
            except TimeoutError as exc:
                last_error = str(exc) or f"timed out after {spec.timeout_seconds}s"
                last_kind = self.classifier(exc)
                timed_out = True
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                last_kind = self.classifier(exc)
                timed_out = False
            else:
                try:
                    findings = findings_from_result(result)
                except (ValueError, TypeError, KeyError) as exc:
                    logger.warning("Task %s returned malformed findings: %s", spec.id, exc)
                    last_error = f"invalid findings: {exc}"
                    last_kind = TaskErrorKind.FATAL
                    timed_out = False
                    break
                record.mark_succeeded(result, findings)
                self._emit_finished(record)
                return

            if last_kind == TaskErrorKind.CANCELLED:
                break
            if last_kind == TaskErrorKind.FATAL:
                break

        if scope.cancelled or last_kind == TaskErrorKind.CANCELLED:
            record.mark_cancelled(scope.reason or last_error or "cancelled")
        else:
            record.mark_failed(last_error, last_kind, timed_out=timed_out)
        self._emit_finished(record)

    def _emit_finished(self, record: TaskRecord) -> None:
        self.events.emit(
            "task_finished",
            task_id=record.task_id,
            executor=record.executor,
            status=record.status.value,
            attempts=record.attempts,
            error=record.error,
        )
