import pytest

from taskmill.core.Scheduler.config import SchedulerConfig, get_config, reset_config, set_config


pytestmark = pytest.mark.unit


def test_defaults():
    config = SchedulerConfig()
    assert config.database_url == "memory://"
    assert config.is_memory
    assert config.peer == "local"
    assert config.tick_interval == 1.0
    assert config.concurrency_for("anything") == 10
    # Metrics were switched off by the suite fixture
    assert config.metrics_enabled is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SCHEDULER_DATABASE_URL", "sqlite:///var/lib/scheduler.db")
    monkeypatch.setenv("SCHEDULER_NODE", "worker-7")
    monkeypatch.setenv("SCHEDULER_TICK_INTERVAL", "0.5")
    monkeypatch.setenv("SCHEDULER_PEER", " Store ")
    monkeypatch.setenv("SCHEDULER_QUEUE_CONCURRENCY", "emails=2, reports=1,bogus,bad=x")

    config = SchedulerConfig()
    assert config.is_sqlite
    assert config.node == "worker-7"
    assert config.tick_interval == 0.5
    assert config.peer == "store"
    assert config.queue_concurrency == {"emails": 2, "reports": 1}
    assert config.concurrency_for("emails") == 2
    assert config.concurrency_for("default") == 10


@pytest.mark.parametrize("overrides,message", [
    ({"tick_interval": 0}, "tick_interval"),
    ({"rescue_after": 10, "heartbeat_interval": 30}, "rescue_after"),
    ({"peer": "zookeeper"}, "peer must be one of"),
    ({"peer": "postgres"}, "postgres_dsn is required"),
    ({"queue_concurrency": {"emails": 0}}, "queue_concurrency"),
    ({"leader_ttl": -1}, "leader_ttl"),
])
def test_validation_errors(overrides, message):
    with pytest.raises(ValueError, match="Configuration validation failed") as err:
        SchedulerConfig(**overrides)
    assert message in str(err.value)


def test_to_dict_masks_dsn_password():
    config = SchedulerConfig(peer="postgres", postgres_dsn="postgresql://sched:s3cret@db:5432/app")
    data = config.to_dict()
    assert data["postgres_dsn"] == "postgresql://sched:****@db:5432/app"
    assert "s3cret" not in str(data)


def test_global_config_singleton(monkeypatch):
    monkeypatch.setenv("SCHEDULER_NODE", "first")
    assert get_config().node == "first"
    monkeypatch.setenv("SCHEDULER_NODE", "second")
    assert get_config().node == "first"

    reset_config()
    assert get_config().node == "second"

    custom = SchedulerConfig(node="custom")
    set_config(custom)
    assert get_config() is custom
