"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg

from ..contracts import RunStatus
from ..errors import DuplicateActiveRun, StorageError
from ..utils.timeutil import utcnow
from .models import WorkflowRun
from .repository import RunRepository

_COLUMNS = (
    "id, workflow_id, contact_id, status, current_node_id, context, next_run_at, "
    "correlation_id, revision, created_at, updated_at, completed_at"
)


def _affected(command_tag: str) -> int:
    # asyncpg returns tags such as "UPDATE 1".
    try:
        return int(command_tag.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresRunRepository(RunRepository):
    """Persist runs using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as exc:
            raise StorageError(f"Cannot connect to run store: {exc}") from exc
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_node_id TEXT NOT NULL,
                context JSONB NOT NULL DEFAULT '{}'::jsonb,
                next_run_at TIMESTAMPTZ,
                correlation_id TEXT,
                revision INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS workflow_runs_one_active
            ON workflow_runs (workflow_id, contact_id)
            WHERE status IN ('pending', 'waiting')
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS workflow_runs_due ON workflow_runs (status, next_run_at)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS workflow_runs_correlation ON workflow_runs (correlation_id)"
        )

    @staticmethod
    def _to_run(row: asyncpg.Record) -> WorkflowRun:
        context = row["context"]
        if isinstance(context, str):
            context = json.loads(context)
        return WorkflowRun(
            id=row["id"],
            workflow_id=row["workflow_id"],
            contact_id=row["contact_id"],
            status=RunStatus(row["status"]),
            current_node_id=row["current_node_id"],
            context=context or {},
            next_run_at=row["next_run_at"],
            correlation_id=row["correlation_id"],
            revision=row["revision"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        except asyncpg.PostgresError as exc:
            raise StorageError(str(exc)) from exc
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        rows = await self._fetch(query, *params)
        return rows[0] if rows else None

    async def _execute(self, query: str, *params: Any) -> int:
        conn = await self._connect()
        try:
            return _affected(await conn.execute(query, *params))
        except asyncpg.UniqueViolationError:
            raise
        except asyncpg.PostgresError as exc:
            raise StorageError(str(exc)) from exc
        finally:
            await conn.close()

    async def _insert(self, run: WorkflowRun) -> None:
        await self._execute(
            f"""
            INSERT INTO workflow_runs ({_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10, $11, $12)
            """,
            run.id,
            run.workflow_id,
            run.contact_id,
            run.status.value,
            run.current_node_id,
            json.dumps(run.context, default=str),
            run.next_run_at,
            run.correlation_id,
            run.revision,
            run.created_at,
            run.updated_at,
            run.completed_at,
        )

    async def _find_active(self, workflow_id: str, contact_id: str) -> WorkflowRun | None:
        row = await self._fetchrow(
            f"SELECT {_COLUMNS} FROM workflow_runs WHERE workflow_id = $1 AND contact_id = $2 "
            "AND status IN ('pending', 'waiting')",
            workflow_id,
            contact_id,
        )
        return self._to_run(row) if row else None

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        try:
            await self._insert(run)
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateActiveRun(run.workflow_id, run.contact_id) from exc
        return run

    async def get_or_create_active_run(
        self, run: WorkflowRun
    ) -> tuple[WorkflowRun, bool]:
        existing = await self._find_active(run.workflow_id, run.contact_id)
        if existing is not None:
            return existing, False
        try:
            await self._insert(run)
        except asyncpg.UniqueViolationError:
            existing = await self._find_active(run.workflow_id, run.contact_id)
            if existing is None:
                raise StorageError(
                    f"Could not create or find active run for {run.workflow_id}/{run.contact_id}"
                )
            return existing, False
        return run, True

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self._fetchrow(
            f"SELECT {_COLUMNS} FROM workflow_runs WHERE id = $1", run_id
        )
        return self._to_run(row) if row else None

    async def list_runs(
        self,
        status: RunStatus | None = None,
        contact_id: str | None = None,
        limit: int | None = None,
    ) -> list[WorkflowRun]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            params.append(status.value)
            clauses.append(f"status = ${len(params)}")
        if contact_id is not None:
            params.append(contact_id)
            clauses.append(f"contact_id = ${len(params)}")
        query = f"SELECT {_COLUMNS} FROM workflow_runs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        rows = await self._fetch(query, *params)
        return [self._to_run(r) for r in rows]

    async def list_due_runs(self, now: datetime, limit: int) -> list[WorkflowRun]:
        rows = await self._fetch(
            f"""
            SELECT {_COLUMNS} FROM workflow_runs
            WHERE (status = 'pending' AND (next_run_at IS NULL OR next_run_at <= $1))
               OR (status = 'waiting' AND next_run_at IS NOT NULL AND next_run_at <= $1)
            ORDER BY COALESCE(next_run_at, created_at), created_at
            LIMIT $2
            """,
            now,
            limit,
        )
        return [self._to_run(r) for r in rows]

    async def list_waiting_runs(self, contact_id: str) -> list[WorkflowRun]:
        rows = await self._fetch(
            f"SELECT {_COLUMNS} FROM workflow_runs WHERE contact_id = $1 AND status = 'waiting' "
            "ORDER BY updated_at DESC",
            contact_id,
        )
        return [self._to_run(r) for r in rows]

    async def find_waiting_run_by_correlation(
        self, correlation_id: str
    ) -> WorkflowRun | None:
        row = await self._fetchrow(
            f"SELECT {_COLUMNS} FROM workflow_runs WHERE correlation_id = $1 AND status = 'waiting' "
            "ORDER BY updated_at DESC LIMIT 1",
            correlation_id,
        )
        return self._to_run(row) if row else None

    async def claim_run(
        self,
        run_id: str,
        expected_status: RunStatus,
        expected_revision: int,
        lease_until: datetime,
    ) -> WorkflowRun | None:
        row = await self._fetchrow(
            f"""
            UPDATE workflow_runs
            SET revision = revision + 1, next_run_at = $1, updated_at = $2
            WHERE id = $3 AND status = $4 AND revision = $5
            RETURNING {_COLUMNS}
            """,
            lease_until,
            utcnow(),
            run_id,
            expected_status.value,
            expected_revision,
        )
        return self._to_run(row) if row else None

    async def save_run(
        self, run: WorkflowRun, expected_status: RunStatus, expected_revision: int
    ) -> bool:
        now = utcnow()
        updated = await self._execute(
            """
            UPDATE workflow_runs
            SET status = $1, current_node_id = $2, context = $3::jsonb, next_run_at = $4,
                correlation_id = $5, completed_at = $6, updated_at = $7,
                revision = revision + 1
            WHERE id = $8 AND status = $9 AND revision = $10
            """,
            run.status.value,
            run.current_node_id,
            json.dumps(run.context, default=str),
            run.next_run_at,
            run.correlation_id,
            run.completed_at,
            now,
            run.id,
            expected_status.value,
            expected_revision,
        )
        if updated == 0:
            return False
        run.revision = expected_revision + 1
        run.updated_at = now
        return True
