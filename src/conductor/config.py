from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.tasks import TaskSpec


@dataclass(slots=True)
class EngineConfig:
    default_concurrency: int = 4
    abort_on_first_failure: bool = False
    require_all_succeeded: bool = False
    confidence_threshold: float = 0.0


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    # 0 disables the per-attempt timeout.
    timeout_seconds: float = 0.0


@dataclass(slots=True)
class StateConfig:
    directory: str = ".conductor/runs"


@dataclass(slots=True)
class LoggingConfig:
    verbose: bool = False
    log_file: str = ""


@dataclass(slots=True)
class ConductorConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            engine=EngineConfig(**data.get("engine", {})),
            retry=RetryConfig(**data.get("retry", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "engine": {
                "default_concurrency": self.engine.default_concurrency,
                "abort_on_first_failure": self.engine.abort_on_first_failure,
                "require_all_succeeded": self.engine.require_all_succeeded,
                "confidence_threshold": self.engine.confidence_threshold,
            },
            "retry": {
                "max_retries": self.retry.max_retries,
                "backoff_seconds": self.retry.backoff_seconds,
                "timeout_seconds": self.retry.timeout_seconds,
            },
            "state": {
                "directory": self.state.directory,
            },
            "logging": {
                "verbose": self.logging.verbose,
                "log_file": self.logging.log_file,
            },
        }

    def task(self, task_id: str, executor: str, payload: Any = None, **overrides: Any) -> TaskSpec:
        """Build a task spec carrying the configured retry defaults."""
        timeout = float(self.retry.timeout_seconds)
        values: dict[str, Any] = {
            "max_retries": max(0, int(self.retry.max_retries)),
            "backoff_seconds": max(0.0, float(self.retry.backoff_seconds)),
            "timeout_seconds": timeout if timeout > 0 else None,
        }
        values.update(overrides)
        return TaskSpec(id=task_id, executor=executor, payload=payload, **values)

    def state_directory(self, root: Path) -> Path:
        directory = Path(self.state.directory).expanduser()
        if not directory.is_absolute():
            directory = root / directory
        return directory.resolve()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["engine", "retry", "state", "logging"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
