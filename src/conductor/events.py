from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

from conductor.logger import get_logger
from conductor.tasks import utcnow_iso

EventHook = Callable[[dict[str, Any]], None]

logger = get_logger(__name__)


class EventEmitter:
    """Stamps lifecycle events and forwards them to an optional caller-supplied hook."""

    def __init__(self, hook: EventHook | None = None, **defaults: Any) -> None:
        self.hook = hook
        self.defaults = defaults

    def bind(self, **defaults: Any) -> EventEmitter:
        merged = dict(self.defaults)
        merged.update(defaults)
        return EventEmitter(self.hook, **merged)

    def emit(self, event: str, **fields: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {"event": event}
        payload.update(self.defaults)
        payload.update(fields)
        payload["at"] = utcnow_iso()
        logger.debug("%s %s", event, {k: v for k, v in payload.items() if k not in {"event", "at"}})
        if self.hook is not None:
            self.hook(payload)
        return payload


class EventLog:
    """Bounded in-memory event sink; usable directly as an event hook."""

    def __init__(self, limit: int = 500) -> None:
        self.limit = max(1, limit)
        self._events: list[dict[str, Any]] = []

    def __call__(self, event: dict[str, Any]) -> None:
        self._events.append(dict(event))
        if len(self._events) > self.limit:
            self._events = self._events[-self.limit :]

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(list(self._events))

    def __len__(self) -> int:
        return len(self._events)

    def names(self) -> list[str]:
        return [str(event.get("event")) for event in self._events]

    def of_type(self, name: str) -> list[dict[str, Any]]:
        return [event for event in self._events if event.get("event") == name]
