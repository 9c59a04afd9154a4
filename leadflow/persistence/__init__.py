"""Persistence layer for leadflow runs."""

from __future__ import annotations

from typing import Optional

from ..config import LeadflowConfig, load_config
from .inmemory import InMemoryRunRepository
from .models import WorkflowRun
from .postgres import PostgresRunRepository
from .repository import RunRepository
from .sqlite import SQLiteRunRepository

_repository_instance: RunRepository | None = None


def repository_from_url(database_url: str) -> RunRepository:
    """Open the backend named by the URL scheme.

    ``sqlite://runs.db`` and ``sqlite:///var/lib/leadflow/runs.db`` open a
    SQLite file, ``postgres://`` and ``postgresql://`` a PostgreSQL database
    and ``memory://`` a process-local store.
    """
    scheme, sep, location = database_url.partition("://")
    if not sep:
        raise ValueError(f"Database URL needs a scheme: {database_url}")
    if scheme == "memory":
        return InMemoryRunRepository()
    if scheme == "sqlite":
        return SQLiteRunRepository(location or ":memory:")
    if scheme in ("postgres", "postgresql"):
        return PostgresRunRepository(database_url)
    raise ValueError(f"Unsupported database backend: {scheme}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[LeadflowConfig] = None
) -> RunRepository:
    """Return the process-wide run repository.

    An explicit ``database_url`` or ``config`` always opens a new repository
    and replaces the shared one. Otherwise the first call loads the
    configuration (``LEADFLOW_DATABASE_URL``/``DATABASE_URL`` override the
    file) and later calls reuse the result. Without a database URL runs live
    in memory.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    url = database_url or (config or load_config()).database_url
    _repository_instance = repository_from_url(url) if url else InMemoryRunRepository()
    return _repository_instance


__all__ = [
    "WorkflowRun",
    "RunRepository",
    "InMemoryRunRepository",
    "SQLiteRunRepository",
    "PostgresRunRepository",
    "get_repository",
    "repository_from_url",
]
