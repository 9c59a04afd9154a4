"""Repository abstraction for workflow run persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..contracts import RunStatus
from .models import WorkflowRun


class RunRepository(Protocol):
    """Protocol for run persistence backends.

    Every mutation of an existing run is conditional on the run still having
    the ``status`` and ``revision`` the caller observed. A mutation that loses
    that race returns ``None``/``False`` instead of raising.
    """

    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        """Insert a new run; raise ``DuplicateActiveRun`` if one is active."""

    async def get_or_create_active_run(
        self, run: WorkflowRun
    ) -> tuple[WorkflowRun, bool]:
        """Return the active run for the run's contact/workflow, or insert ``run``."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def list_runs(
        self,
        status: RunStatus | None = None,
        contact_id: str | None = None,
        limit: int | None = None,
    ) -> list[WorkflowRun]:
        """Return persisted runs, newest first."""

    async def list_due_runs(self, now: datetime, limit: int) -> list[WorkflowRun]:
        """Runs eligible for a sweep, oldest ``next_run_at`` first.

        Includes ``pending`` runs with no or a past ``next_run_at`` and
        ``waiting`` runs whose deadline has passed.
        """

    async def list_waiting_runs(self, contact_id: str) -> list[WorkflowRun]:
        """Waiting runs of a contact, most recently updated first."""

    async def find_waiting_run_by_correlation(
        self, correlation_id: str
    ) -> WorkflowRun | None:
        """Return the run currently waiting on ``correlation_id``."""

    async def claim_run(
        self,
        run_id: str,
        expected_status: RunStatus,
        expected_revision: int,
        lease_until: datetime,
    ) -> WorkflowRun | None:
        """Bump the revision and lease ``next_run_at``; ``None`` if lost."""

    async def save_run(
        self, run: WorkflowRun, expected_status: RunStatus, expected_revision: int
    ) -> bool:
        """Write ``run`` if it is still in the expected state."""
