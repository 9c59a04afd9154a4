"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from ..contracts import RunStatus
from ..errors import DuplicateActiveRun, StorageError
from ..utils.timeutil import from_db, to_db, utcnow
from .models import WorkflowRun
from .repository import RunRepository

_COLUMNS = (
    "id, workflow_id, contact_id, status, current_node_id, context, next_run_at, "
    "correlation_id, revision, created_at, updated_at, completed_at"
)


class SQLiteRunRepository(RunRepository):
    """Persist runs using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_node_id TEXT NOT NULL,
                context TEXT NOT NULL,
                next_run_at TEXT,
                correlation_id TEXT,
                revision INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS workflow_runs_one_active
            ON workflow_runs (workflow_id, contact_id)
            WHERE status IN ('pending', 'waiting')
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS workflow_runs_due ON workflow_runs (status, next_run_at)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS workflow_runs_correlation ON workflow_runs (correlation_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                self._conn.commit()
                return cur.rowcount
            except sqlite3.IntegrityError:
                self._conn.rollback()
                raise
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StorageError(str(exc)) from exc

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchone()
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    @staticmethod
    def _to_run(row: sqlite3.Row) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            workflow_id=row["workflow_id"],
            contact_id=row["contact_id"],
            status=RunStatus(row["status"]),
            current_node_id=row["current_node_id"],
            context=json.loads(row["context"]) if row["context"] else {},
            next_run_at=from_db(row["next_run_at"]),
            correlation_id=row["correlation_id"],
            revision=row["revision"],
            created_at=from_db(row["created_at"]),
            updated_at=from_db(row["updated_at"]),
            completed_at=from_db(row["completed_at"]),
        )

    async def _insert(self, run: WorkflowRun) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflow_runs ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            run.id,
            run.workflow_id,
            run.contact_id,
            run.status.value,
            run.current_node_id,
            json.dumps(run.context, default=str),
            to_db(run.next_run_at),
            run.correlation_id,
            run.revision,
            to_db(run.created_at),
            to_db(run.updated_at),
            to_db(run.completed_at),
        )

    async def _find_active(self, workflow_id: str, contact_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_COLUMNS} FROM workflow_runs WHERE workflow_id = ? AND contact_id = ? "
            "AND status IN ('pending', 'waiting')",
            workflow_id,
            contact_id,
        )
        return self._to_run(row) if row else None

    # ------------------------------------------------------------------
    # Repository API
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        try:
            await self._insert(run)
        except sqlite3.IntegrityError as exc:
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
        except sqlite3.IntegrityError:
            # Lost the race against a concurrent creator.
            existing = await self._find_active(run.workflow_id, run.contact_id)
            if existing is None:
                raise StorageError(
                    f"Could not create or find active run for {run.workflow_id}/{run.contact_id}"
                )
            return existing, False
        return run, True

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_COLUMNS} FROM workflow_runs WHERE id = ?",
            run_id,
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
            clauses.append("status = ?")
            params.append(status.value)
        if contact_id is not None:
            clauses.append("contact_id = ?")
            params.append(contact_id)
        query = f"SELECT {_COLUMNS} FROM workflow_runs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._to_run(r) for r in rows]

    async def list_due_runs(self, now: datetime, limit: int) -> list[WorkflowRun]:
        now_db = to_db(now)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_COLUMNS} FROM workflow_runs
            WHERE (status = 'pending' AND (next_run_at IS NULL OR next_run_at <= ?))
               OR (status = 'waiting' AND next_run_at IS NOT NULL AND next_run_at <= ?)
            ORDER BY COALESCE(next_run_at, created_at), created_at
            LIMIT ?
            """,
            now_db,
            now_db,
            limit,
        )
        return [self._to_run(r) for r in rows]

    async def list_waiting_runs(self, contact_id: str) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_COLUMNS} FROM workflow_runs WHERE contact_id = ? AND status = 'waiting' "
            "ORDER BY updated_at DESC",
            contact_id,
        )
        return [self._to_run(r) for r in rows]

    async def find_waiting_run_by_correlation(
        self, correlation_id: str
    ) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_COLUMNS} FROM workflow_runs WHERE correlation_id = ? AND status = 'waiting' "
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
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_runs
            SET revision = revision + 1, next_run_at = ?, updated_at = ?
            WHERE id = ? AND status = ? AND revision = ?
            """,
            to_db(lease_until),
            to_db(utcnow()),
            run_id,
            expected_status.value,
            expected_revision,
        )
        if updated == 0:
            return None
        return await self.get_run(run_id)

    async def save_run(
        self, run: WorkflowRun, expected_status: RunStatus, expected_revision: int
    ) -> bool:
        now = utcnow()
        try:
            updated = await asyncio.to_thread(
                self._execute,
                """
                UPDATE workflow_runs
                SET status = ?, current_node_id = ?, context = ?, next_run_at = ?,
                    correlation_id = ?, completed_at = ?, updated_at = ?,
                    revision = revision + 1
                WHERE id = ? AND status = ? AND revision = ?
                """,
                run.status.value,
                run.current_node_id,
                json.dumps(run.context, default=str),
                to_db(run.next_run_at),
                run.correlation_id,
                to_db(run.completed_at),
                to_db(now),
                run.id,
                expected_status.value,
                expected_revision,
            )
        except sqlite3.IntegrityError as exc:
            raise StorageError(str(exc)) from exc
        if updated == 0:
            return False
        run.revision = expected_revision + 1
        run.updated_at = now
        return True
