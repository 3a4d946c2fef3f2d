"""Tests for configuration loading."""

import pytest

import stepflow.persistence as persistence
from stepflow.config import StepflowConfig, load_config
from stepflow.db import WorkflowDB
from stepflow.persistence import InMemoryWorkflowRepository, get_repository


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "STEPFLOW_CONFIG",
        "STEPFLOW_DATABASE_URL",
        "DATABASE_URL",
        "STEPFLOW_TEMPLATES_DIR",
    ):
        monkeypatch.delenv(name, raising=False)


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "stepflow.yaml"
    config_path.write_text(
        """
templates_dir: /srv/workflows
max_stories: 5
reaper:
  max_age_minutes: 30
  interval_seconds: 10
retries:
  story_max_retries: 4
"""
    )
    monkeypatch.setenv("STEPFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.templates_dir == "/srv/workflows"
    assert config.max_stories == 5
    assert config.reaper.max_age_minutes == 30
    assert config.reaper.interval_seconds == 10
    assert config.retries.story_max_retries == 4
    assert config.retries.step_max_retries == 3


def test_defaults_without_file(tmp_path):
    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.database_url is None
    assert config.reaper.max_age_minutes == 15
    assert config.max_stories == 20


def test_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "stepflow.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\n")
    monkeypatch.setenv("STEPFLOW_DATABASE_URL", "sqlite:///from-env.db")
    monkeypatch.setenv("STEPFLOW_TEMPLATES_DIR", "custom")

    config = load_config(str(config_path))
    assert config.database_url == "sqlite:///from-env.db"
    assert config.templates_dir == "custom"


def test_get_repository_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "stepflow.yaml"
    config_path.write_text(f"database_url: sqlite:///{tmp_path / 'wf.db'}\n")
    monkeypatch.setenv("STEPFLOW_CONFIG", str(config_path))

    repo = get_repository()
    assert isinstance(repo, WorkflowDB)
    assert repo.database_url.startswith("sqlite+aiosqlite:///")
    assert get_repository() is repo


def test_get_repository_defaults_to_memory(tmp_path, monkeypatch):
    monkeypatch.setenv("STEPFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    assert isinstance(get_repository(), InMemoryWorkflowRepository)


def test_get_repository_rejects_unknown_backend():
    with pytest.raises(ValueError, match="Unsupported database backend"):
        get_repository("mysql://localhost/db")


def test_get_repository_reuses_instance_for_same_backend(tmp_path):
    memory = InMemoryWorkflowRepository()
    persistence._repository_instance = memory
    assert get_repository(config=StepflowConfig()) is memory

    url = f"sqlite:///{tmp_path / 'wf.db'}"
    db = get_repository(config=StepflowConfig(database_url=url))
    assert isinstance(db, WorkflowDB)
    assert get_repository(config=StepflowConfig(database_url=url)) is db
    assert get_repository(config=StepflowConfig()) is not db
