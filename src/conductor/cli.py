from __future__ import annotations

import asyncio
import importlib
import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from conductor.config import ConductorConfig, load_config, save_config
from conductor.engine import WorkflowEngine
from conductor.errors import ConductorError
from conductor.executors.registry import ExecutorRegistry
from conductor.gates import GatePredicate
from conductor.logger import setup_logger
from conductor.state import FileRunStore
from conductor.workflow import WorkflowRun

DEFAULT_CONFIG = "conductor.toml"


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: ConductorConfig
    store: FileRunStore
    engine: WorkflowEngine


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _load_workflow(reference: str) -> tuple[ExecutorRegistry, Mapping[str, GatePredicate]]:
    """Import ``module:factory``; the factory returns a registry, optionally with predicates."""
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise click.ClickException(f"Workflow must look like 'module:factory', got '{reference}'.")
    try:
        factory = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as exc:
        raise click.ClickException(f"Cannot load workflow '{reference}': {exc}") from exc

    produced = factory()
    if isinstance(produced, ExecutorRegistry):
        return produced, {}
    if (
        isinstance(produced, tuple)
        and len(produced) == 2
        and isinstance(produced[0], ExecutorRegistry)
        and isinstance(produced[1], Mapping)
    ):
        return produced[0], produced[1]
    raise click.ClickException(
        f"Workflow factory '{reference}' must return an ExecutorRegistry "
        "or a (registry, predicates) tuple."
    )


def _load_runtime(root: Path, config_path: Path, workflow: str | None = None) -> Runtime:
    config = load_config(config_path)
    setup_logger(verbose=config.logging.verbose, log_file=config.logging.log_file or None)
    store = FileRunStore(config.state_directory(root))
    registry: ExecutorRegistry = ExecutorRegistry()
    predicates: Mapping[str, GatePredicate] = {}
    if workflow:
        registry, predicates = _load_workflow(workflow)
    engine = WorkflowEngine(registry, predicates=predicates, store=store, config=config)
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        store=store,
        engine=engine,
    )


def _runtime(config_value: str, workflow: str | None = None) -> Runtime:
    root = Path.cwd().resolve()
    return _load_runtime(root, _resolve_config_path(root, config_value), workflow)


def _load_run(runtime: Runtime, run_id: str) -> WorkflowRun:
    try:
        return runtime.store.load(run_id)
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc


def _status_payload(run: WorkflowRun) -> dict[str, Any]:
    current = run.current_phase
    return {
        "run_id": run.run_id,
        "status": run.status.value,
        "current_phase": current.name if current else None,
        "phases": [
            {
                "name": phase.name,
                "status": phase.status.value,
                "gate": phase.gate.to_dict() if phase.gate else None,
                "tasks": phase.join.status_counts() if phase.join else {},
                "findings": phase.aggregate().to_dict() if phase.join else None,
                "error": phase.error.to_dict() if phase.error else None,
            }
            for phase in run.phases
        ],
        "error": run.error.to_dict() if run.error else None,
        "updated_at": run.updated_at,
    }


def _echo_outcome(run: WorkflowRun) -> None:
    click.echo(f"Run {run.run_id}: {run.status.value}")
    if run.error is not None:
        click.echo(f"Reason ({run.error.kind}): {run.error.reason}")


@click.group()
def cli() -> None:
    """Conductor CLI."""


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    state_directory = config.state_directory(root)
    state_directory.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized conductor in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Runs: {state_directory}")


@cli.command("list")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def list_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    runs = runtime.store.list_runs()
    if not runs:
        click.echo("No runs recorded.")
        return
    for item in runs:
        phase = item.get("current_phase") or "-"
        click.echo(f"{item['run_id']} {str(item.get('status')):<9} {phase}")


@cli.command("status")
@click.argument("run_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(run_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    run = _load_run(runtime, run_id)
    click.echo(json.dumps(_status_payload(run), ensure_ascii=False, indent=2))


@cli.command("approve")
@click.argument("run_id")
@click.option("--reason", default="approved", show_default=True)
@click.option("--phase", "phase_name", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def approve_command(run_id: str, reason: str, phase_name: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    run = _load_run(runtime, run_id)
    try:
        gate = runtime.engine.open_gate(run, reason, phase=phase_name)
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Opened gate '{gate.name}' on {run.run_id}.")
    click.echo(f"Continue with: conductor resume {run.run_id} --workflow module:factory")


@cli.command("reject")
@click.argument("run_id")
@click.option("--reason", required=True)
@click.option("--phase", "phase_name", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def reject_command(run_id: str, reason: str, phase_name: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    run = _load_run(runtime, run_id)
    try:
        gate = runtime.engine.reject_gate(run, reason, phase=phase_name)
        # A rejected gate needs no executors; advancing fails the phase and the run.
        asyncio.run(runtime.engine.run(runtime.engine.resume(run)))
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Rejected gate '{gate.name}'.")
    _echo_outcome(run)


@cli.command("cancel")
@click.argument("run_id")
@click.option("--reason", default="cancelled by operator", show_default=True)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def cancel_command(run_id: str, reason: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    run = _load_run(runtime, run_id)
    runtime.engine.cancel(run, reason)
    _echo_outcome(run)


@cli.command("resume")
@click.argument("run_id")
@click.option("--workflow", required=True, help="Executor factory as module:callable.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def resume_command(run_id: str, workflow: str, config_value: str) -> None:
    runtime = _runtime(config_value, workflow)
    try:
        run = runtime.engine.resume(run_id)
        asyncio.run(runtime.engine.run(run))
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_outcome(run)
