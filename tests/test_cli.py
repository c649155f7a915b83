import asyncio
import json
from pathlib import Path

from click.testing import CliRunner

from conductor.cli import cli
from conductor.config import load_config
from conductor.engine import WorkflowEngine
from conductor.executors import ExecutorRegistry
from conductor.gates import Gate
from conductor.phase import Phase
from conductor.state import FileRunStore
from conductor.tasks import TaskSpec
from conductor.workflow import WorkflowStatus

WORKFLOW_MODULE = '''
from conductor.executors import ExecutorRegistry


async def review(payload, context):
    return {"findings": []}


def build():
    registry = ExecutorRegistry()
    registry.register_function("review", review)
    return registry


def not_a_registry():
    return "nope"
'''


def _registry() -> ExecutorRegistry:
    registry = ExecutorRegistry()

    async def review(payload: object, context: object) -> dict[str, list[object]]:
        _ = payload, context
        return {"findings": []}

    registry.register_function("review", review)
    return registry


def _suspended_run(repo: Path, run_id: str) -> FileRunStore:
    store = FileRunStore(repo / ".conductor" / "runs")
    engine = WorkflowEngine(_registry(), store=store)
    run = engine.create_run(
        [
            Phase(name="implement", tasks=[TaskSpec("i", "review", "i")], gate=Gate.manual("ok")),
            Phase(name="ship", tasks=[TaskSpec("s", "review", "s")]),
        ],
        run_id=run_id,
    )
    assert asyncio.run(engine.run(run)) == WorkflowStatus.SUSPENDED
    return store


def _prepare(tmp_path: Path, monkeypatch, run_id: str) -> tuple[CliRunner, FileRunStore]:
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "cli_workflow.py").write_text(WORKFLOW_MODULE, encoding="utf-8")
    monkeypatch.chdir(repo)
    monkeypatch.syspath_prepend(str(repo))

    runner = CliRunner()
    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert (repo / "conductor.toml").exists()
    return runner, _suspended_run(repo, run_id)


def test_cli_approve_and_resume_lifecycle(tmp_path: Path, monkeypatch) -> None:
    runner, store = _prepare(tmp_path, monkeypatch, "run-cli")

    list_result = runner.invoke(cli, ["list"])
    assert list_result.exit_code == 0
    assert "run-cli" in list_result.output
    assert "suspended" in list_result.output

    status_result = runner.invoke(cli, ["status", "run-cli"])
    assert status_result.exit_code == 0
    payload = json.loads(status_result.output)
    assert payload["current_phase"] == "implement"
    assert payload["phases"][0]["status"] == "awaiting_gate"
    assert payload["phases"][0]["gate"]["status"] == "blocked"

    approve_result = runner.invoke(cli, ["approve", "run-cli", "--reason", "looks good"])
    assert approve_result.exit_code == 0
    assert "Opened gate 'ok'" in approve_result.output

    resume_result = runner.invoke(
        cli, ["resume", "run-cli", "--workflow", "cli_workflow:build"]
    )
    assert resume_result.exit_code == 0, resume_result.output
    assert "completed" in resume_result.output
    assert store.load("run-cli").status == WorkflowStatus.COMPLETED


def test_cli_reject_fails_run_with_reason(tmp_path: Path, monkeypatch) -> None:
    runner, store = _prepare(tmp_path, monkeypatch, "run-reject")

    result = runner.invoke(cli, ["reject", "run-reject", "--reason", "needs rework"])

    assert result.exit_code == 0, result.output
    assert "failed" in result.output
    assert "needs rework" in result.output
    run = store.load("run-reject")
    assert run.status == WorkflowStatus.FAILED
    assert run.error is not None and run.error.reason == "needs rework"

    again = runner.invoke(cli, ["approve", "run-reject"])
    assert again.exit_code != 0


def test_cli_cancel_marks_run_cancelled(tmp_path: Path, monkeypatch) -> None:
    runner, store = _prepare(tmp_path, monkeypatch, "run-cancel")

    result = runner.invoke(cli, ["cancel", "run-cancel", "--reason", "superseded"])

    assert result.exit_code == 0
    assert "cancelled" in result.output
    run = store.load("run-cancel")
    assert run.status == WorkflowStatus.CANCELLED
    assert run.error is not None and run.error.reason == "superseded"


def test_cli_reports_errors(tmp_path: Path, monkeypatch) -> None:
    runner, _ = _prepare(tmp_path, monkeypatch, "run-errors")

    missing = runner.invoke(cli, ["status", "run-missing"])
    assert missing.exit_code != 0
    assert "Run not found" in missing.output

    bad_reference = runner.invoke(cli, ["resume", "run-errors", "--workflow", "no_colon"])
    assert bad_reference.exit_code != 0
    assert "module:factory" in bad_reference.output

    bad_factory = runner.invoke(
        cli, ["resume", "run-errors", "--workflow", "cli_workflow:not_a_registry"]
    )
    assert bad_factory.exit_code != 0
    assert "ExecutorRegistry" in bad_factory.output


def test_cli_init_keeps_existing_config(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "conductor.toml").write_text(
        "[engine]\ndefault_concurrency = 9\n", encoding="utf-8"
    )

    result = CliRunner().invoke(cli, ["init"])

    assert result.exit_code == 0
    assert load_config(tmp_path / "conductor.toml").engine.default_concurrency == 9
    assert (tmp_path / ".conductor" / "runs").is_dir()
