"""Tests for configuration loading."""

from stepwise.config import load_config
from stepwise.events import InMemoryEventSink, get_event_sink
from stepwise.events.redis import RedisEventSink
from stepwise.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
    reset_repository,
)


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("STEPWISE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("STEPWISE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("STEPWISE_EVENTS", raising=False)

    config = load_config()
    assert config.database_url is None
    assert config.events.backend == "inmemory"
    assert config.retry.max_retries == 3
    assert config.retry.retry_delay_seconds == 5
    assert config.scheduler.poll_interval == 1.0


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
events:
  backend: redis
  redis:
    host: testhost
    port: 1234
scheduler:
  poll_interval: 0.5
retry:
  max_retries: 7
log_level: debug
"""
    )
    monkeypatch.setenv("STEPWISE_CONFIG", str(config_path))
    monkeypatch.delenv("STEPWISE_EVENTS", raising=False)

    config = load_config()
    assert config.events.backend == "redis"
    assert config.events.redis.host == "testhost"
    assert config.events.redis.port == 1234
    assert config.scheduler.poll_interval == 0.5
    assert config.retry.max_retries == 7


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("STEPWISE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("DATABASE_URL", "sqlite://fallback.db")
    monkeypatch.setenv("STEPWISE_DATABASE_URL", "sqlite://preferred.db")
    monkeypatch.setenv("STEPWISE_EVENTS", "REDIS")
    monkeypatch.setenv("STEPWISE_LOG_LEVEL", "warning")

    config = load_config()
    assert config.database_url == "sqlite://preferred.db"
    assert config.events.backend == "redis"
    assert config.log_level == "WARNING"


def test_get_event_sink_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
events:
  backend: redis
  redis:
    host: confighost
    port: 6380
    channel_prefix: wf
"""
    )
    monkeypatch.setenv("STEPWISE_CONFIG", str(config_path))
    monkeypatch.delenv("STEPWISE_EVENTS", raising=False)

    sink = get_event_sink()
    assert isinstance(sink, RedisEventSink)
    assert sink.host == "confighost"
    assert sink.port == 6380
    assert sink.channel_for("execution.started") == "wf:execution.started"
    assert isinstance(get_event_sink("inmemory"), InMemoryEventSink)


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setenv("STEPWISE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("STEPWISE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    reset_repository()
    try:
        assert isinstance(get_repository(), InMemoryWorkflowRepository)
        assert get_repository() is get_repository()

        sqlite_repo = get_repository(f"sqlite://{tmp_path / 'wf.db'}")
        assert isinstance(sqlite_repo, SQLiteWorkflowRepository)
        sqlite_repo.close()
    finally:
        reset_repository()
