"""Tests for configuration loading."""

from growthflow.config import GrowthflowConfig, load_config


def test_defaults_without_file():
    config = load_config()
    assert config.database_url is None
    assert config.scheduler.poll_interval_seconds == 60
    assert config.retry.max_retries == 3
    assert config.retry.base_backoff_ms == 30_000
    assert config.retry.max_backoff_ms == 300_000
    assert config.goto.default_max_iterations == 1000
    assert config.monitoring.max_alerts == 100


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
database_url: sqlite:///tmp/gf.db
log_level: DEBUG
scheduler:
  poll_interval_seconds: 5
retry:
  max_retries: 5
  base_backoff_ms: 1000
timeouts:
  batch_ms: 1234
actions:
  client: mypkg.client:factory
"""
    )
    monkeypatch.setenv("GROWTHFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.database_url == "sqlite:///tmp/gf.db"
    assert config.log_level == "DEBUG"
    assert config.scheduler.poll_interval_seconds == 5
    assert config.scheduler.poll_batch_size == 100
    assert config.retry.max_retries == 5
    assert config.retry.base_backoff_ms == 1000
    assert config.timeouts.batch_ms == 1234
    assert config.timeouts.content_ms == 120_000
    assert config.actions.client == "mypkg.client:factory"


def test_explicit_path_and_env_overrides(tmp_path, monkeypatch):
    config_path = tmp_path / "other.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\n")
    monkeypatch.setenv("GROWTHFLOW_DATABASE_URL", "postgresql://db/gf")
    monkeypatch.setenv("GROWTHFLOW_LOG_LEVEL", "WARNING")

    config = load_config(str(config_path))
    assert config.database_url == "postgresql://db/gf"
    assert config.log_level == "WARNING"


def test_empty_file_gives_defaults(tmp_path):
    config_path = tmp_path / "empty.yaml"
    config_path.write_text("")
    assert load_config(str(config_path)) == GrowthflowConfig()
