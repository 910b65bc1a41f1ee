"""Tests for configuration loading."""

from freightwatch.config import load_config
from freightwatch.contracts import StepName
from freightwatch.persistence import (
    InMemoryHistoryRepository,
    SQLiteHistoryRepository,
    get_repository,
)
from freightwatch.transports import InMemoryTransport, get_transport
from freightwatch.transports.redis import RedisTransport


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("FREIGHTWATCH_CONFIG", str(tmp_path / "missing.yaml"))
    for var in (
        "FREIGHTWATCH_DATABASE_URL",
        "DATABASE_URL",
        "FREIGHTWATCH_TRANSPORT",
        "DELAY_THRESHOLD_MINUTES",
    ):
        monkeypatch.delenv(var, raising=False)

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.transport.task_queue == "freight-delay-notifications"
    assert config.delay_threshold_minutes == 30
    assert config.worker.max_concurrent_steps == 10
    assert config.worker.max_concurrent_decisions == 10
    assert config.dispatch_grace_seconds == 30.0
    assert config.from_email == "noreply@freightnotifications.com"
    policy = config.retry.policy_for(StepName.FETCH_TRAFFIC)
    assert (policy.initial_interval, policy.maximum_interval) == (1, 10)
    assert (policy.backoff_coefficient, policy.maximum_attempts) == (2, 3)


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  namespace: freight-test
  redis:
    host: testhost
    port: 1234
retry:
  steps:
    send_primary:
      initial_interval: 0.5
      maximum_interval: 2
      backoff_coefficient: 3
      maximum_attempts: 5
worker:
  max_concurrent_steps: 4
delay_threshold_minutes: 20
"""
    )
    monkeypatch.setenv("FREIGHTWATCH_CONFIG", str(config_path))
    monkeypatch.delenv("FREIGHTWATCH_TRANSPORT", raising=False)

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.namespace == "freight-test"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.worker.max_concurrent_steps == 4
    assert config.delay_threshold_minutes == 20
    assert config.retry.policy_for(StepName.SEND_PRIMARY).maximum_attempts == 5
    assert config.retry.policy_for(StepName.FETCH_TRAFFIC).maximum_attempts == 3


def test_env_overrides_take_precedence(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("delay_threshold_minutes: 20\n")
    monkeypatch.setenv("FREIGHTWATCH_CONFIG", str(config_path))
    monkeypatch.setenv("DELAY_THRESHOLD_MINUTES", "45")
    monkeypatch.setenv("CUSTOMER_CONTACT", "ops@example.com")
    monkeypatch.setenv("FREIGHTWATCH_NAMESPACE", "staging")

    config = load_config()
    assert config.delay_threshold_minutes == 45
    assert config.customer_contact == "ops@example.com"
    assert config.transport.namespace == "staging"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("FREIGHTWATCH_CONFIG", str(config_path))
    monkeypatch.delenv("FREIGHTWATCH_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380

    assert isinstance(get_transport(backend="inmemory"), InMemoryTransport)


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setenv("FREIGHTWATCH_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("FREIGHTWATCH_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert isinstance(get_repository(), InMemoryHistoryRepository)
    sqlite_repo = get_repository(f"sqlite://{tmp_path / 'history.db'}")
    assert isinstance(sqlite_repo, SQLiteHistoryRepository)
    sqlite_repo.close()
