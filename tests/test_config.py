import tomllib
from pathlib import Path

from conductor import __version__
from conductor.config import ConductorConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config = ConductorConfig.default()
    config.engine.default_concurrency = 6
    config.engine.abort_on_first_failure = True
    config.engine.confidence_threshold = 0.7
    config.retry.max_retries = 3
    config.retry.backoff_seconds = 1.5
    config.retry.timeout_seconds = 30.0
    config.state.directory = "state/runs"
    config.logging.verbose = True
    config.logging.log_file = "logs/conductor.log"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.engine.default_concurrency == 6
    assert loaded.engine.abort_on_first_failure is True
    assert loaded.engine.require_all_succeeded is False
    assert loaded.engine.confidence_threshold == 0.7
    assert loaded.retry.max_retries == 3
    assert loaded.retry.backoff_seconds == 1.5
    assert loaded.retry.timeout_seconds == 30.0
    assert loaded.state.directory == "state/runs"
    assert loaded.logging.verbose is True
    assert loaded.logging.log_file == "logs/conductor.log"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.to_dict() == ConductorConfig.default().to_dict()


def test_toml_dump_contains_all_sections() -> None:
    rendered = dumps_toml(ConductorConfig.default())

    for section in ("[engine]", "[retry]", "[state]", "[logging]"):
        assert section in rendered
    assert "backoff_seconds = 0.5" in rendered
    assert "timeout_seconds = 0.0" in rendered
    assert "confidence_threshold = 0.0" in rendered
    assert tomllib.loads(rendered)["engine"]["default_concurrency"] == 4


def test_task_applies_retry_defaults_and_overrides(tmp_path: Path) -> None:
    config = ConductorConfig.default()
    config.retry.timeout_seconds = 12.0

    spec = config.task("lint", "command", "ruff check .")
    custom = config.task("tests", "command", max_retries=0, timeout_seconds=None)

    assert spec.max_retries == 1
    assert spec.backoff_seconds == 0.5
    assert spec.timeout_seconds == 12.0
    assert custom.max_retries == 0
    assert custom.timeout_seconds is None
    assert ConductorConfig.default().task("x", "command").timeout_seconds is None
    assert config.state_directory(tmp_path) == (tmp_path / ".conductor" / "runs").resolve()

def test_small_floats_survive_save(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config = ConductorConfig.default()
    config.engine.confidence_threshold = 0.0005
    config.retry.backoff_seconds = 0.0001

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.engine.confidence_threshold == 0.0005
    assert loaded.retry.backoff_seconds == 0.0001



def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
