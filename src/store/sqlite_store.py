# src/store/sqlite_store.py — v1
"""SQLite-backed pipeline store (STORE_BACKEND=sqlite).

Uses stdlib sqlite3. The phase table is mirrored into ``phase_steps`` and
guarded by triggers, so a row whose phase and step disagree is rejected by
the database regardless of which code path wrote it. Attempt rows are
protected against UPDATE by a trigger as well.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from stagegate.core import phases
from stagegate.core.errors import ErrorCode, PhaseInvariantError, StepError
from stagegate.core.models import (
    Artifact,
    AttemptRecord,
    JudgeResultRecord,
    Notification,
    Pipeline,
    PipelineEvent,
    RetryTask,
    RetryTaskStatus,
    SpaceOutput,
)
from stagegate.store.base_store import BasePipelineStore

logger = logging.getLogger(__name__)

_PHASE_GUARD_MESSAGE = "phase_step_mismatch"

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS phase_steps (
    phase TEXT PRIMARY KEY,
    step INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS pipelines (
    id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    phase TEXT NOT NULL,
    current_step INTEGER NOT NULL,
    version INTEGER NOT NULL,
    reset_counter INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_pipelines_owner ON pipelines(owner);

CREATE TRIGGER IF NOT EXISTS pipelines_phase_guard_insert
BEFORE INSERT ON pipelines
WHEN NOT EXISTS (
    SELECT 1 FROM phase_steps WHERE phase = NEW.phase AND step = NEW.current_step
)
BEGIN
    SELECT RAISE(ABORT, '{_PHASE_GUARD_MESSAGE}');
END;

CREATE TRIGGER IF NOT EXISTS pipelines_phase_guard_update
BEFORE UPDATE ON pipelines
WHEN NOT EXISTS (
    SELECT 1 FROM phase_steps WHERE phase = NEW.phase AND step = NEW.current_step
)
BEGIN
    SELECT RAISE(ABORT, '{_PHASE_GUARD_MESSAGE}');
END;

CREATE TABLE IF NOT EXISTS attempts (
    pipeline_id TEXT NOT NULL,
    step INTEGER NOT NULL,
    attempt_index INTEGER NOT NULL,
    candidate_index INTEGER NOT NULL,
    artifact_id TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (pipeline_id, step, attempt_index, candidate_index)
);

CREATE TRIGGER IF NOT EXISTS attempts_immutable
BEFORE UPDATE ON attempts
BEGIN
    SELECT RAISE(ABORT, 'attempt records are immutable');
END;

CREATE TABLE IF NOT EXISTS judge_results (
    id TEXT PRIMARY KEY,
    pipeline_id TEXT NOT NULL,
    step INTEGER NOT NULL,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_judge_results_pipeline ON judge_results(pipeline_id, step);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    pipeline_id TEXT NOT NULL,
    step INTEGER NOT NULL,
    type TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_pipeline ON events(pipeline_id, step);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    pipeline_id TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT PRIMARY KEY,
    pipeline_id TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS space_outputs (
    id TEXT PRIMARY KEY,
    pipeline_id TEXT NOT NULL,
    step INTEGER NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS retry_tasks (
    id TEXT PRIMARY KEY,
    pipeline_id TEXT NOT NULL,
    step INTEGER NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_retry_tasks_status ON retry_tasks(status);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqlitePipelineStore(BasePipelineStore):
    """SQLite-backed pipeline store."""

    def __init__(self, db_path: Path | str) -> None:
        if str(db_path) == ":memory:":
            target = ":memory:"
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            target = str(path)
        self._conn = sqlite3.connect(target)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.executemany(
            "INSERT OR REPLACE INTO phase_steps (phase, step) VALUES (?, ?)",
            [(token, pos.step) for token, pos in phases.PHASE_TABLE.items()],
        )
        self._conn.commit()

    # --- Internals ---

    def _write(self, sql: str, params: tuple) -> sqlite3.Cursor:
        """Execute one write statement and commit, mapping sqlite errors."""
        try:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
            return cursor
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            if _PHASE_GUARD_MESSAGE in str(e):
                raise PhaseInvariantError(
                    "?", -1, "store rejected inconsistent phase/step pair"
                ) from e
            raise StepError(
                ErrorCode.PERSISTENCE_WRITE_ERROR, f"integrity error: {e}"
            ) from e
        except sqlite3.Error as e:
            self._conn.rollback()
            raise StepError(
                ErrorCode.PERSISTENCE_WRITE_ERROR, f"store write failed: {e}"
            ) from e

    def _delete_from(self, table: str, pipeline_id: str, from_step: int) -> int:
        cursor = self._write(
            f"DELETE FROM {table} WHERE pipeline_id = ? AND step >= ?",
            (pipeline_id, from_step),
        )
        return cursor.rowcount

    def _select_data(self, sql: str, params: tuple) -> list[str]:
        return [row[0] for row in self._conn.execute(sql, params).fetchall()]

    # --- Aggregate ---

    async def create(self, pipeline: Pipeline) -> Pipeline:
        phases.ensure_consistent(pipeline.phase, pipeline.current_step)
        stored = pipeline.model_copy(update={"version": 1})
        self._write(
            """INSERT INTO pipelines
               (id, owner, phase, current_step, version, reset_counter, data)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                stored.id,
                stored.owner,
                stored.phase,
                stored.current_step,
                stored.version,
                stored.reset_counter,
                stored.model_dump_json(),
            ),
        )
        logger.info("Created pipeline %s for %s", stored.id, stored.owner)
        return stored

    async def load(self, pipeline_id: str) -> Pipeline | None:
        row = self._conn.execute(
            "SELECT data, version FROM pipelines WHERE id = ?", (pipeline_id,)
        ).fetchone()
        if row is None:
            return None
        pipeline = Pipeline.model_validate_json(row[0])
        pipeline.version = row[1]
        return pipeline

    async def compare_and_swap(
        self, pipeline_id: str, expected_version: int, new_state: Pipeline
    ) -> bool:
        phases.ensure_consistent(new_state.phase, new_state.current_step)
        new_version = expected_version + 1
        payload = new_state.model_copy(
            update={"version": new_version, "updated_at": datetime.now(timezone.utc)}
        )
        cursor = self._write(
            """UPDATE pipelines
               SET phase = ?, current_step = ?, version = ?, reset_counter = ?,
                   data = ?, updated_at = ?
               WHERE id = ? AND version = ?""",
            (
                payload.phase,
                payload.current_step,
                new_version,
                payload.reset_counter,
                payload.model_dump_json(),
                _now(),
                pipeline_id,
                expected_version,
            ),
        )
        if cursor.rowcount != 1:
            return False
        new_state.version = new_version
        new_state.updated_at = payload.updated_at
        return True

    async def list_pipelines(self, owner: str | None = None) -> list[Pipeline]:
        if owner is None:
            rows = self._conn.execute(
                "SELECT data, version FROM pipelines ORDER BY created_at"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT data, version FROM pipelines WHERE owner = ? ORDER BY created_at",
                (owner,),
            ).fetchall()
        result: list[Pipeline] = []
        for data, version in rows:
            pipeline = Pipeline.model_validate_json(data)
            pipeline.version = version
            result.append(pipeline)
        return result

    # --- Attempts ---

    async def record_attempt(self, record: AttemptRecord) -> None:
        self._write(
            """INSERT INTO attempts
               (pipeline_id, step, attempt_index, candidate_index, artifact_id, data, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                record.pipeline_id,
                record.step,
                record.attempt_index,
                record.candidate_index,
                record.artifact_id,
                record.model_dump_json(),
                record.created_at.isoformat(),
            ),
        )

    async def list_attempts(
        self, pipeline_id: str, step: int | None = None
    ) -> list[AttemptRecord]:
        sql = "SELECT data FROM attempts WHERE pipeline_id = ?"
        params: tuple = (pipeline_id,)
        if step is not None:
            sql += " AND step = ?"
            params += (step,)
        sql += " ORDER BY step, attempt_index, candidate_index"
        return [AttemptRecord.model_validate_json(d) for d in self._select_data(sql, params)]

    async def next_attempt_index(self, pipeline_id: str, step: int) -> int:
        row = self._conn.execute(
            "SELECT COALESCE(MAX(attempt_index), 0) FROM attempts WHERE pipeline_id = ? AND step = ?",
            (pipeline_id, step),
        ).fetchone()
        return int(row[0]) + 1

    async def delete_attempts_from(self, pipeline_id: str, from_step: int) -> int:
        return self._delete_from("attempts", pipeline_id, from_step)

    # --- Judge results ---

    async def record_judge_result(self, record: JudgeResultRecord) -> None:
        self._write(
            "INSERT INTO judge_results (id, pipeline_id, step, data, created_at) VALUES (?, ?, ?, ?, ?)",
            (
                record.id,
                record.pipeline_id,
                record.step,
                record.model_dump_json(),
                record.created_at.isoformat(),
            ),
        )

    async def list_judge_results(
        self, pipeline_id: str, step: int | None = None
    ) -> list[JudgeResultRecord]:
        sql = "SELECT data FROM judge_results WHERE pipeline_id = ?"
        params: tuple = (pipeline_id,)
        if step is not None:
            sql += " AND step = ?"
            params += (step,)
        sql += " ORDER BY created_at, rowid"
        return [
            JudgeResultRecord.model_validate_json(d) for d in self._select_data(sql, params)
        ]

    async def delete_judge_results_from(self, pipeline_id: str, from_step: int) -> int:
        return self._delete_from("judge_results", pipeline_id, from_step)

    # --- Events ---

    async def record_event(self, event: PipelineEvent) -> None:
        self._write(
            "INSERT INTO events (id, pipeline_id, step, type, data, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (
                event.id,
                event.pipeline_id,
                event.step,
                event.type,
                event.model_dump_json(),
                event.created_at.isoformat(),
            ),
        )

    async def list_events(
        self, pipeline_id: str, step: int | None = None
    ) -> list[PipelineEvent]:
        sql = "SELECT data FROM events WHERE pipeline_id = ?"
        params: tuple = (pipeline_id,)
        if step is not None:
            sql += " AND step = ?"
            params += (step,)
        sql += " ORDER BY created_at, rowid"
        return [PipelineEvent.model_validate_json(d) for d in self._select_data(sql, params)]

    async def delete_events_from(self, pipeline_id: str, from_step: int) -> int:
        return self._delete_from("events", pipeline_id, from_step)

    # --- Notifications ---

    async def record_notification(self, notification: Notification) -> None:
        self._write(
            "INSERT INTO notifications (id, owner, pipeline_id, data, created_at) VALUES (?, ?, ?, ?, ?)",
            (
                notification.id,
                notification.owner,
                notification.pipeline_id,
                notification.model_dump_json(),
                notification.created_at.isoformat(),
            ),
        )

    async def list_notifications(
        self, owner: str | None = None, pipeline_id: str | None = None
    ) -> list[Notification]:
        clauses: list[str] = []
        params: tuple = ()
        if owner is not None:
            clauses.append("owner = ?")
            params += (owner,)
        if pipeline_id is not None:
            clauses.append("pipeline_id = ?")
            params += (pipeline_id,)
        sql = "SELECT data FROM notifications"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, rowid"
        return [Notification.model_validate_json(d) for d in self._select_data(sql, params)]

    # --- Artifacts ---

    async def register_artifact(self, artifact: Artifact) -> None:
        self._write(
            "INSERT INTO artifacts (id, pipeline_id, data) VALUES (?, ?, ?)",
            (artifact.id, artifact.pipeline_id, artifact.model_dump_json()),
        )

    async def get_artifact(self, artifact_id: str) -> Artifact | None:
        row = self._conn.execute(
            "SELECT data FROM artifacts WHERE id = ?", (artifact_id,)
        ).fetchone()
        return Artifact.model_validate_json(row[0]) if row else None

    async def delete_artifact(self, artifact_id: str) -> None:
        self._write("DELETE FROM artifacts WHERE id = ?", (artifact_id,))

    # --- Space outputs ---

    async def record_space_output(self, output: SpaceOutput) -> None:
        self._write(
            "INSERT INTO space_outputs (id, pipeline_id, step, data) VALUES (?, ?, ?, ?)",
            (output.id, output.pipeline_id, output.step, output.model_dump_json()),
        )

    async def list_space_outputs(
        self, pipeline_id: str, step: int | None = None
    ) -> list[SpaceOutput]:
        sql = "SELECT data FROM space_outputs WHERE pipeline_id = ?"
        params: tuple = (pipeline_id,)
        if step is not None:
            sql += " AND step = ?"
            params += (step,)
        sql += " ORDER BY step, rowid"
        return [SpaceOutput.model_validate_json(d) for d in self._select_data(sql, params)]

    async def delete_space_outputs_from(self, pipeline_id: str, from_step: int) -> int:
        return self._delete_from("space_outputs", pipeline_id, from_step)

    # --- Retry tasks ---

    async def enqueue_retry_task(self, task: RetryTask) -> None:
        self._write(
            "INSERT INTO retry_tasks (id, pipeline_id, step, status, data, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (
                task.id,
                task.pipeline_id,
                task.step,
                task.status,
                task.model_dump_json(),
                task.created_at.isoformat(),
            ),
        )

    def _set_task_status(
        self, task_id: str, status: RetryTaskStatus, note: str, only_if: str | None
    ) -> RetryTask | None:
        row = self._conn.execute(
            "SELECT data FROM retry_tasks WHERE id = ?", (task_id,)
        ).fetchone()
        if row is None:
            return None
        task = RetryTask.model_validate_json(row[0])
        task.status = status
        task.note = note or task.note
        task.updated_at = datetime.now(timezone.utc)
        sql = "UPDATE retry_tasks SET status = ?, data = ? WHERE id = ?"
        params: tuple = (status, task.model_dump_json(), task_id)
        if only_if is not None:
            sql += " AND status = ?"
            params += (only_if,)
        cursor = self._write(sql, params)
        return task if cursor.rowcount == 1 else None

    async def claim_retry_task(self, task_id: str) -> RetryTask | None:
        return self._set_task_status(task_id, "running", "", only_if="pending")

    async def finish_retry_task(
        self, task_id: str, status: RetryTaskStatus, note: str = ""
    ) -> None:
        self._set_task_status(task_id, status, note, only_if=None)

    async def list_retry_tasks(
        self,
        status: RetryTaskStatus | None = None,
        pipeline_id: str | None = None,
    ) -> list[RetryTask]:
        clauses: list[str] = []
        params: tuple = ()
        if status is not None:
            clauses.append("status = ?")
            params += (status,)
        if pipeline_id is not None:
            clauses.append("pipeline_id = ?")
            params += (pipeline_id,)
        sql = "SELECT data FROM retry_tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, rowid"
        return [RetryTask.model_validate_json(d) for d in self._select_data(sql, params)]

    async def discard_retry_tasks(self, pipeline_id: str, from_step: int) -> int:
        pending = [
            t
            for t in await self.list_retry_tasks(status="pending", pipeline_id=pipeline_id)
            if t.step >= from_step
        ]
        for task in pending:
            self._set_task_status(task.id, "discarded", "rolled back", only_if="pending")
        return len(pending)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

