"""In-memory implementation of the run repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict

from ..contracts import ACTIVE_STATUSES, RunStatus
from ..errors import DuplicateActiveRun
from ..utils.timeutil import utcnow
from .models import WorkflowRun
from .repository import RunRepository


class InMemoryRunRepository(RunRepository):
    """Store runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Callers always receive copies, so a
    run only changes through ``claim_run``/``save_run``.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, WorkflowRun] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def _active_for(self, workflow_id: str, contact_id: str) -> WorkflowRun | None:
        for run in self._runs.values():
            if (
                run.workflow_id == workflow_id
                and run.contact_id == contact_id
                and run.status in ACTIVE_STATUSES
            ):
                return run
        return None

    def _matches(
        self, run_id: str, expected_status: RunStatus, expected_revision: int
    ) -> WorkflowRun | None:
        stored = self._runs.get(run_id)
        if stored is None:
            return None
        if stored.status != expected_status or stored.revision != expected_revision:
            return None
        return stored

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        async with self._lock:
            if run.status in ACTIVE_STATUSES and self._active_for(
                run.workflow_id, run.contact_id
            ):
                raise DuplicateActiveRun(run.workflow_id, run.contact_id)
            self._runs[run.id] = run.model_copy(deep=True)
            return run.model_copy(deep=True)

    async def get_or_create_active_run(
        self, run: WorkflowRun
    ) -> tuple[WorkflowRun, bool]:
        async with self._lock:
            existing = self._active_for(run.workflow_id, run.contact_id)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._runs[run.id] = run.model_copy(deep=True)
            return run.model_copy(deep=True), True

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self,
        status: RunStatus | None = None,
        contact_id: str | None = None,
        limit: int | None = None,
    ) -> list[WorkflowRun]:
        runs = [
            r
            for r in self._runs.values()
            if (status is None or r.status == status)
            and (contact_id is None or r.contact_id == contact_id)
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        if limit is not None:
            runs = runs[:limit]
        return [r.model_copy(deep=True) for r in runs]

    async def list_due_runs(self, now: datetime, limit: int) -> list[WorkflowRun]:
        due = [
            r
            for r in self._runs.values()
            if (r.status == RunStatus.PENDING and (r.next_run_at is None or r.next_run_at <= now))
            or (
                r.status == RunStatus.WAITING
                and r.next_run_at is not None
                and r.next_run_at <= now
            )
        ]
        due.sort(key=lambda r: (r.next_run_at or r.created_at, r.created_at))
        return [r.model_copy(deep=True) for r in due[:limit]]

    async def list_waiting_runs(self, contact_id: str) -> list[WorkflowRun]:
        runs = [
            r
            for r in self._runs.values()
            if r.contact_id == contact_id and r.status == RunStatus.WAITING
        ]
        runs.sort(key=lambda r: r.updated_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs]

    async def find_waiting_run_by_correlation(
        self, correlation_id: str
    ) -> WorkflowRun | None:
        for run in self._runs.values():
            if run.correlation_id == correlation_id and run.status == RunStatus.WAITING:
                return run.model_copy(deep=True)
        return None

    async def claim_run(
        self,
        run_id: str,
        expected_status: RunStatus,
        expected_revision: int,
        lease_until: datetime,
    ) -> WorkflowRun | None:
        async with self._lock:
            stored = self._matches(run_id, expected_status, expected_revision)
            if stored is None:
                return None
            stored.revision += 1
            stored.next_run_at = lease_until
            stored.updated_at = utcnow()
            return stored.model_copy(deep=True)

    async def save_run(
        self, run: WorkflowRun, expected_status: RunStatus, expected_revision: int
    ) -> bool:
        async with self._lock:
            if self._matches(run.id, expected_status, expected_revision) is None:
                return False
            run.revision = expected_revision + 1
            run.updated_at = utcnow()
            self._runs[run.id] = run.model_copy(deep=True)
            return True
