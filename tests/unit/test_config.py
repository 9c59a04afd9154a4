"""Tests for configuration loading."""

import pytest

from leadflow.config import load_config
from leadflow.persistence import (
    InMemoryRunRepository,
    PostgresRunRepository,
    SQLiteRunRepository,
    get_repository,
    repository_from_url,
)
from leadflow.transports import InMemoryTransport, get_transport
from leadflow.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
scheduler:
  batch_size: 25
timezone: Europe/Lisbon
vapi:
  phone_number_id: pn-1
"""
    )
    monkeypatch.setenv("LEADFLOW_CONFIG", str(config_path))
    monkeypatch.setenv("VAPI_API_KEY", "from-env")

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.scheduler.batch_size == 25
    assert config.scheduler.max_batch_size == 100
    assert config.timezone == "Europe/Lisbon"
    assert config.vapi.phone_number_id == "pn-1"
    assert config.vapi.api_key == "from-env"


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("LEADFLOW_CONFIG", str(tmp_path / "absent.yaml"))

    config = load_config()

    assert config.transport.backend == "inmemory"
    assert config.timezone == "Europe/Madrid"
    assert config.database_url is None


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
    monkeypatch.setenv("LEADFLOW_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380
    assert isinstance(get_transport("inmemory"), InMemoryTransport)
    with pytest.raises(ValueError):
        get_transport("kafka")


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setenv("LEADFLOW_CONFIG", str(tmp_path / "absent.yaml"))

    assert isinstance(get_repository(), InMemoryRunRepository)
    assert get_repository() is get_repository()

    monkeypatch.setenv("LEADFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'runs.db'}")
    assert isinstance(get_repository(config=load_config()), SQLiteRunRepository)

    with pytest.raises(ValueError):
        get_repository("mysql://localhost/leads")


def test_repository_from_url_schemes(tmp_path):
    assert isinstance(repository_from_url("memory://"), InMemoryRunRepository)
    sqlite_repo = repository_from_url(f"sqlite://{tmp_path / 'leads.db'}")
    assert isinstance(sqlite_repo, SQLiteRunRepository)
    assert sqlite_repo.db_path == str(tmp_path / "leads.db")
    assert isinstance(repository_from_url("postgresql://u:p@db/leads"), PostgresRunRepository)

    with pytest.raises(ValueError):
        repository_from_url("runs.db")
