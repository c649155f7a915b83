from __future__ import annotations

import json
import os
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from conductor.errors import StateError
from conductor.tasks import utcnow_iso
from conductor.workflow import WorkflowRun

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class RunStore(ABC):
    @abstractmethod
    def save(self, run: WorkflowRun, *, expected_revision: int | None = None) -> int:
        """Persist ``run`` and return its new revision."""

    @abstractmethod
    def load(self, run_id: str) -> WorkflowRun:
        """Load a persisted run or raise ``StateError``."""

    @abstractmethod
    def list_runs(self) -> list[dict[str, Any]]:
        """Summaries of persisted runs, oldest first."""

    @abstractmethod
    def delete(self, run_id: str) -> None:
        """Remove a persisted run."""


class FileRunStore(RunStore):
    """One JSON envelope per run under ``directory``, guarded by a lock file."""

    SCHEMA_VERSION = 1

    def __init__(self, directory: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.directory = directory.resolve()
        self.directory.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.directory / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    def _run_file(self, run_id: str) -> Path:
        if not RUN_ID_PATTERN.match(run_id):
            raise StateError(f"Invalid run id: {run_id!r}")
        return self.directory / f"{run_id}.json"

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateError("Timed out waiting for run store lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, run_id: str) -> Any:
        path = self._run_file(run_id)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateError(f"Run file for {run_id} is corrupt: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any] | None:
        if raw_payload is None:
            return None
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data"),
            }
        # Bare run documents written before envelopes existed.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": raw_payload,
        }

    def get_envelope(self, run_id: str) -> dict[str, Any] | None:
        return self._normalize_envelope(self._read_raw(run_id))

    def revision(self, run_id: str) -> int:
        envelope = self.get_envelope(run_id)
        return int(envelope["revision"]) if envelope else 0

    def save(self, run: WorkflowRun, *, expected_revision: int | None = None) -> int:
        path = self._run_file(run.run_id)
        with self._state_lock():
            current = self.get_envelope(run.run_id)
            current_revision = int(current["revision"]) if current else 0
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent update detected for run '{run.run_id}'.")
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": utcnow_iso(),
                "data": run.to_dict(),
            }
            serialized = json.dumps(envelope, ensure_ascii=False, separators=(",", ":"))
            temp_path = path.with_suffix(".json.tmp")
            temp_path.write_text(serialized, encoding="utf-8")
            os.replace(temp_path, path)
        return current_revision + 1

    def load(self, run_id: str) -> WorkflowRun:
        envelope = self.get_envelope(run_id)
        if envelope is None:
            raise StateError(f"Run not found: {run_id}")
        data = envelope.get("data")
        if not isinstance(data, dict):
            raise StateError(f"Run file for {run_id} has no run document.")
        return WorkflowRun.from_dict(data)

    def list_runs(self) -> list[dict[str, Any]]:
        summaries: list[dict[str, Any]] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                envelope = self._normalize_envelope(
                    json.loads(path.read_text(encoding="utf-8"))
                )
            except json.JSONDecodeError:
                continue
            data = envelope.get("data") if envelope else None
            if not isinstance(data, dict):
                continue
            phases = data.get("phases", [])
            index = int(data.get("current_index", 0))
            current = phases[index]["name"] if 0 <= index < len(phases) else None
            summaries.append(
                {
                    "run_id": data.get("run_id", path.stem),
                    "status": data.get("status"),
                    "current_phase": current,
                    "created_at": data.get("created_at"),
                    "updated_at": data.get("updated_at"),
                    "revision": envelope["revision"] if envelope else 0,
                }
            )
        summaries.sort(key=lambda item: str(item.get("created_at") or ""))
        return summaries

    def delete(self, run_id: str) -> None:
        path = self._run_file(run_id)
        with self._state_lock():
            try:
                path.unlink()
            except FileNotFoundError as exc:
                raise StateError(f"Run not found: {run_id}") from exc

    def update(self, run_id: str, updater: Callable[[WorkflowRun], None]) -> WorkflowRun:
        """Load, mutate via ``updater(run)``, and save with optimistic concurrency."""
        last_error: StateError | None = None
        for _ in range(4):
            revision = self.revision(run_id)
            run = self.load(run_id)
            updater(run)
            try:
                self.save(run, expected_revision=revision)
                return run
            except StateError as exc:
                last_error = exc
                if "Concurrent update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "Run update failed.")
