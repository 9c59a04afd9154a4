import pytest

import leadflow.persistence as persistence
from fixtures.fakes import FixedClock

ENV_OVERRIDES = (
    "LEADFLOW_DATABASE_URL",
    "DATABASE_URL",
    "LEADFLOW_TRANSPORT",
    "LEADFLOW_REDIS_URL",
    "LEADFLOW_TEMPLATES_PATH",
    "LEADFLOW_DIRECTORY_PATH",
)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture(autouse=True)
def _reset_repository_singleton(monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
