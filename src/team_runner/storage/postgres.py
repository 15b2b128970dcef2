"""PostgreSQL-backed status store with automatic table migration."""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from team_runner.errors import StoreUnavailableError, WorkItemNotFoundError
from team_runner.storage.models import (
    AgentRecord,
    AuditLogEntry,
    PipelineStep,
    RunnerRecord,
    StepExecutionRecord,
    StepOutcome,
    TaskRecord,
    TeamRecord,
    TeamRunRecord,
    WorkItemKind,
    WorkItemRef,
    WorkStatus,
)

_TABLES = {
    WorkItemKind.TASK: ("tasks", "task_id"),
    WorkItemKind.TEAM_RUN: ("team_runs", "run_id"),
}

# Model field -> column, for fields whose column name differs.
_JSON_COLUMNS = {
    "metadata": "metadata_json",
    "steps": "steps_json",
    "step_summary": "step_summary_json",
}

_UPDATABLE = {
    WorkItemKind.TASK: {
        "result",
        "error",
        "metadata",
        "cancel_requested",
        "fault_count",
        "claimed_by_runner",
        "claim_id",
        "started_at",
        "finished_at",
    },
    WorkItemKind.TEAM_RUN: {
        "generation",
        "current_step_idx",
        "output",
        "error_message",
        "tokens_total",
        "step_summary",
        "cancel_requested",
        "fault_count",
        "claimed_by_runner",
        "claim_id",
        "started_at",
        "finished_at",
    },
}


class PostgresStatusStore:
    """Persist work items, step executions and audit entries in PostgreSQL.

    Every operation opens its own connection, so concurrent runner threads
    never share a connection. Status transitions are single ``UPDATE ...
    WHERE status = ANY(...)`` statements; the row count decides who won.
    """

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("TEAM_RUNNER_DATABASE_URL is required")
        self.database_url = database_url
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agents (
                    agent_id UUID PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    model TEXT NOT NULL,
                    system_prompt TEXT NOT NULL DEFAULT '',
                    temperature DOUBLE PRECISION NOT NULL DEFAULT 0.7,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id UUID PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    assigned_agent_id TEXT,
                    priority TEXT NOT NULL DEFAULT 'medium',
                    status TEXT NOT NULL,
                    created_by TEXT NOT NULL,
                    result TEXT,
                    error TEXT,
                    metadata_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
                    fault_count INTEGER NOT NULL DEFAULT 0,
                    claimed_by_runner TEXT,
                    claim_id TEXT,
                    started_at TIMESTAMPTZ,
                    finished_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_status
                ON tasks(status, updated_at)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS teams (
                    team_id UUID PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    mode TEXT NOT NULL DEFAULT 'pipeline',
                    steps_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    created_by TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS team_runs (
                    run_id UUID PRIMARY KEY,
                    team_id UUID NOT NULL REFERENCES teams(team_id) ON DELETE CASCADE,
                    workspace_id TEXT NOT NULL,
                    input_task TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_by TEXT NOT NULL,
                    steps_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    generation INTEGER NOT NULL DEFAULT 1,
                    current_step_idx INTEGER,
                    output TEXT,
                    error_message TEXT,
                    tokens_total INTEGER NOT NULL DEFAULT 0,
                    step_summary_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
                    fault_count INTEGER NOT NULL DEFAULT 0,
                    claimed_by_runner TEXT,
                    claim_id TEXT,
                    started_at TIMESTAMPTZ,
                    finished_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_team_runs_status
                ON team_runs(status, updated_at)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS step_executions (
                    execution_id BIGSERIAL PRIMARY KEY,
                    run_id UUID NOT NULL REFERENCES team_runs(run_id) ON DELETE CASCADE,
                    generation INTEGER NOT NULL,
                    step_index INTEGER NOT NULL,
                    step_name TEXT NOT NULL,
                    agent_id TEXT NOT NULL,
                    attempt INTEGER NOT NULL CHECK (attempt >= 1),
                    outcome TEXT NOT NULL,
                    output TEXT,
                    error TEXT,
                    usage_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    started_at TIMESTAMPTZ NOT NULL,
                    finished_at TIMESTAMPTZ,
                    UNIQUE (run_id, generation, step_index, attempt)
                )
                """)
            # At most one in-flight attempt per step.
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_step_executions_running
                ON step_executions(run_id, generation, step_index)
                WHERE outcome = 'running'
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    entry_id BIGSERIAL PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    details_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_log_workspace
                ON audit_log(workspace_id, created_at DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_runners (
                    runner_id UUID PRIMARY KEY,
                    instance_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    max_concurrency INTEGER NOT NULL,
                    last_heartbeat TIMESTAMPTZ NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.commit()

    def conditional_update_status(
        self,
        item: WorkItemRef,
        expected: WorkStatus | tuple[WorkStatus, ...],
        new: WorkStatus,
        *,
        expected_claim: str | None = None,
        **changes: Any,
    ) -> bool:
        allowed = expected if isinstance(expected, tuple) else (expected,)
        table, key = _TABLES[item.kind]
        assignments, params = self._assignments(item.kind, changes)
        assignments = ["status = %s", *assignments, "updated_at = %s"]
        params = [new.value, *params, datetime.now(tz=UTC)]
        where = f"WHERE {key}::text = %s AND status = ANY(%s)"
        where_params: list[Any] = [item.item_id, [status.value for status in allowed]]
        if expected_claim is not None:
            where += " AND claim_id = %s"
            where_params.append(expected_claim)
        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {', '.join(assignments)} {where}",  # noqa: S608
                (*params, *where_params),
            )
            conn.commit()
        return cursor.rowcount == 1

    def update_fields(self, item: WorkItemRef, **changes: Any) -> bool:
        table, key = _TABLES[item.kind]
        assignments, params = self._assignments(item.kind, changes)
        assignments.append("updated_at = %s")
        params.append(datetime.now(tz=UTC))
        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {', '.join(assignments)} "  # noqa: S608
                f"WHERE {key}::text = %s",
                (*params, item.item_id),
            )
            conn.commit()
        return cursor.rowcount == 1

    def read_status(self, item: WorkItemRef) -> WorkStatus | None:
        table, key = _TABLES[item.kind]
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT status FROM {table} WHERE {key}::text = %s",  # noqa: S608
                (item.item_id,),
            ).fetchone()
        if row is None:
            return None
        return WorkStatus(row["status"])

    def is_cancel_requested(self, item: WorkItemRef) -> bool:
        table, key = _TABLES[item.kind]
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT status, cancel_requested FROM {table} "  # noqa: S608
                f"WHERE {key}::text = %s",
                (item.item_id,),
            ).fetchone()
        if row is None:
            return False
        return bool(row["cancel_requested"]) or row["status"] == WorkStatus.CANCELLED.value

    def list_ready_items(
        self, kind: WorkItemKind, ready_status: WorkStatus, limit: int = 50
    ) -> list[str]:
        if kind is WorkItemKind.TASK:
            query = """
                SELECT task_id::text AS item_id
                FROM tasks
                WHERE status = %s
                ORDER BY CASE priority
                    WHEN 'urgent' THEN 0
                    WHEN 'high' THEN 1
                    WHEN 'medium' THEN 2
                    ELSE 3
                END, updated_at
                LIMIT %s
                """
        else:
            query = """
                SELECT run_id::text AS item_id
                FROM team_runs
                WHERE status = %s
                ORDER BY updated_at
                LIMIT %s
                """
        with self._connection() as conn:
            rows = conn.execute(query, (ready_status.value, limit)).fetchall()
        return [str(row["item_id"]) for row in rows]

    def list_stale_items(
        self, kind: WorkItemKind, status: WorkStatus, updated_before: datetime
    ) -> list[str]:
        table, key = _TABLES[kind]
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {key}::text AS item_id FROM {table} "  # noqa: S608
                "WHERE status = %s AND updated_at < %s",
                (status.value, updated_before),
            ).fetchall()
        return [str(row["item_id"]) for row in rows]

    def create_agent(
        self,
        *,
        workspace_id: str,
        name: str,
        provider: str = "openai",
        model: str = "gpt-4o-mini",
        system_prompt: str = "",
        temperature: float = 0.7,
    ) -> AgentRecord:
        agent_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO agents (
                    agent_id, workspace_id, name, provider, model,
                    system_prompt, temperature, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (agent_id, workspace_id, name, provider, model, system_prompt, temperature, now),
            )
            conn.commit()
        created = self.get_agent(str(agent_id))
        if created is None:
            raise RuntimeError("Failed to load created agent")
        return created

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM agents WHERE agent_id::text = %s",
                (agent_id,),
            ).fetchone()
        if row is None:
            return None
        return AgentRecord(
            agent_id=str(row["agent_id"]),
            workspace_id=row["workspace_id"],
            name=row["name"],
            provider=row["provider"],
            model=row["model"],
            system_prompt=row["system_prompt"],
            temperature=float(row["temperature"]),
            created_at=self._parse_datetime(row["created_at"]),
        )

    def create_task(
        self,
        *,
        workspace_id: str,
        title: str,
        description: str,
        assigned_agent_id: str | None,
        created_by: str,
        priority: str = "medium",
        status: WorkStatus = WorkStatus.PENDING,
    ) -> TaskRecord:
        task_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO tasks (
                    task_id, workspace_id, title, description, assigned_agent_id,
                    priority, status, created_by, created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    task_id,
                    workspace_id,
                    title,
                    description,
                    assigned_agent_id,
                    priority,
                    status.value,
                    created_by,
                    now,
                    now,
                ),
            )
            conn.commit()
        created = self.get_task(str(task_id))
        if created is None:
            raise RuntimeError("Failed to load created task")
        return created

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id::text = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def create_team(
        self,
        *,
        workspace_id: str,
        name: str,
        steps: list[PipelineStep],
        created_by: str,
    ) -> TeamRecord:
        team_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO teams (
                    team_id, workspace_id, name, mode, steps_json,
                    created_by, created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    team_id,
                    workspace_id,
                    name,
                    "pipeline",
                    self._json_wrapper(self._jsonable(steps)),
                    created_by,
                    now,
                    now,
                ),
            )
            conn.commit()
        created = self.get_team(str(team_id))
        if created is None:
            raise RuntimeError("Failed to load created team")
        return created

    def get_team(self, team_id: str) -> TeamRecord | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM teams WHERE team_id::text = %s",
                (team_id,),
            ).fetchone()
        if row is None:
            return None
        return TeamRecord(
            team_id=str(row["team_id"]),
            workspace_id=row["workspace_id"],
            name=row["name"],
            mode=row["mode"],
            steps=self._parse_steps(row["steps_json"]),
            created_by=row["created_by"],
            created_at=self._parse_datetime(row["created_at"]),
            updated_at=self._parse_datetime(row["updated_at"]),
        )

    def update_team_steps(self, team_id: str, steps: list[PipelineStep]) -> TeamRecord:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE teams
                SET steps_json = %s,
                    updated_at = %s
                WHERE team_id::text = %s
                """,
                (self._json_wrapper(self._jsonable(steps)), datetime.now(tz=UTC), team_id),
            )
            conn.commit()
        if cursor.rowcount != 1:
            raise WorkItemNotFoundError("team", team_id)
        refreshed = self.get_team(team_id)
        if refreshed is None:
            raise WorkItemNotFoundError("team", team_id)
        return refreshed

    def create_team_run(
        self,
        *,
        team: TeamRecord,
        input_task: str,
        created_by: str,
    ) -> TeamRunRecord:
        run_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO team_runs (
                    run_id, team_id, workspace_id, input_task, status,
                    created_by, steps_json, created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    run_id,
                    team.team_id,
                    team.workspace_id,
                    input_task,
                    WorkStatus.PENDING.value,
                    created_by,
                    self._json_wrapper(self._jsonable(team.steps)),
                    now,
                    now,
                ),
            )
            conn.commit()
        created = self.get_team_run(str(run_id))
        if created is None:
            raise RuntimeError("Failed to load created team run")
        return created

    def get_team_run(self, run_id: str) -> TeamRunRecord | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM team_runs WHERE run_id::text = %s",
                (run_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_team_run(row)

    def insert_step_execution(
        self,
        *,
        run_id: str,
        generation: int,
        step_index: int,
        step_name: str,
        agent_id: str,
        attempt: int,
    ) -> StepExecutionRecord:
        with self._connection() as conn:
            row = conn.execute(
                """
                INSERT INTO step_executions (
                    run_id, generation, step_index, step_name, agent_id,
                    attempt, outcome, started_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    run_id,
                    generation,
                    step_index,
                    step_name,
                    agent_id,
                    attempt,
                    StepOutcome.RUNNING.value,
                    datetime.now(tz=UTC),
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist step execution")
        return self._row_to_step_execution(row)

    def complete_step_execution(
        self,
        execution_id: int,
        *,
        outcome: StepOutcome,
        output: str | None = None,
        error: str | None = None,
        usage: dict[str, Any] | None = None,
    ) -> StepExecutionRecord:
        with self._connection() as conn:
            row = conn.execute(
                """
                UPDATE step_executions
                SET outcome = %s,
                    output = %s,
                    error = %s,
                    usage_json = %s,
                    finished_at = %s
                WHERE execution_id = %s
                RETURNING *
                """,
                (
                    outcome.value,
                    output,
                    error,
                    self._json_wrapper(usage or {}),
                    datetime.now(tz=UTC),
                    execution_id,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise WorkItemNotFoundError("step_execution", str(execution_id))
        return self._row_to_step_execution(row)

    def list_step_executions(
        self, run_id: str, generation: int | None = None
    ) -> list[StepExecutionRecord]:
        query = "SELECT * FROM step_executions WHERE run_id::text = %s"
        params: list[Any] = [run_id]
        if generation is not None:
            query += " AND generation = %s"
            params.append(generation)
        query += " ORDER BY generation, step_index, attempt"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_step_execution(row) for row in rows]

    def append_audit(
        self,
        *,
        workspace_id: str,
        actor_id: str,
        action: str,
        details: dict[str, Any],
    ) -> AuditLogEntry:
        with self._connection() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_log (workspace_id, actor_id, action, details_json, created_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    workspace_id,
                    actor_id,
                    action,
                    self._json_wrapper(self._jsonable(details)),
                    datetime.now(tz=UTC),
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist audit entry")
        return self._row_to_audit(row)

    def list_audit(self, workspace_id: str, limit: int = 100) -> list[AuditLogEntry]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM (
                    SELECT *
                    FROM audit_log
                    WHERE workspace_id = %s
                    ORDER BY entry_id DESC
                    LIMIT %s
                ) AS recent
                ORDER BY entry_id
                """,
                (workspace_id, limit),
            ).fetchall()
        return [self._row_to_audit(row) for row in rows]

    def register_runner(self, *, instance_name: str, max_concurrency: int) -> RunnerRecord:
        runner_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._connection() as conn:
            row = conn.execute(
                """
                INSERT INTO task_runners (
                    runner_id, instance_name, status, max_concurrency, last_heartbeat, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (runner_id, instance_name, "active", max_concurrency, now, now),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to register runner")
        return RunnerRecord(
            runner_id=str(row["runner_id"]),
            instance_name=row["instance_name"],
            status=row["status"],
            max_concurrency=int(row["max_concurrency"]),
            last_heartbeat=self._parse_datetime(row["last_heartbeat"]),
            created_at=self._parse_datetime(row["created_at"]),
        )

    def heartbeat_runner(self, runner_id: str) -> None:
        with self._connection() as conn:
            conn.execute(
                "UPDATE task_runners SET last_heartbeat = %s WHERE runner_id::text = %s",
                (datetime.now(tz=UTC), runner_id),
            )
            conn.commit()

    def deregister_runner(self, runner_id: str) -> None:
        with self._connection() as conn:
            conn.execute(
                "DELETE FROM task_runners WHERE runner_id::text = %s",
                (runner_id,),
            )
            conn.commit()

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        try:
            with self._psycopg.connect(self.database_url, row_factory=self._dict_row) as conn:
                yield conn
        except self._psycopg.OperationalError as exc:
            raise StoreUnavailableError(f"PostgreSQL unavailable: {exc}") from exc

    def _assignments(
        self, kind: WorkItemKind, changes: dict[str, Any]
    ) -> tuple[list[str], list[Any]]:
        unknown = set(changes) - _UPDATABLE[kind]
        if unknown:
            raise ValueError(f"Unsupported {kind.value} fields: {sorted(unknown)}")
        assignments: list[str] = []
        params: list[Any] = []
        for field_name, value in changes.items():
            column = _JSON_COLUMNS.get(field_name)
            if column is not None:
                assignments.append(f"{column} = %s")
                params.append(self._json_wrapper(self._jsonable(value)))
                continue
            assignments.append(f"{field_name} = %s")
            params.append(value.value if isinstance(value, Enum) else value)
        return assignments, params

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _jsonable(value: Any) -> Any:
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json")
        if isinstance(value, list):
            return [PostgresStatusStore._jsonable(item) for item in value]
        if isinstance(value, dict):
            return {key: PostgresStatusStore._jsonable(item) for key, item in value.items()}
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    @staticmethod
    def _parse_json(raw: Any, default: Any) -> Any:
        if raw is None:
            return default
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _parse_optional_datetime(cls, raw: Any) -> datetime | None:
        return None if raw is None else cls._parse_datetime(raw)

    @classmethod
    def _parse_steps(cls, raw: Any) -> list[PipelineStep]:
        parsed = cls._parse_json(raw, [])
        if not isinstance(parsed, list):
            return []
        return [PipelineStep.model_validate(item) for item in parsed if isinstance(item, dict)]

    @classmethod
    def _row_to_task(cls, row: Any) -> TaskRecord:
        metadata = cls._parse_json(row["metadata_json"], {})
        return TaskRecord(
            task_id=str(row["task_id"]),
            workspace_id=row["workspace_id"],
            title=row["title"],
            description=row["description"],
            assigned_agent_id=row["assigned_agent_id"],
            priority=row["priority"],
            status=WorkStatus(row["status"]),
            created_by=row["created_by"],
            result=row["result"],
            error=row["error"],
            metadata=metadata if isinstance(metadata, dict) else {},
            cancel_requested=bool(row["cancel_requested"]),
            fault_count=int(row["fault_count"]),
            claimed_by_runner=row["claimed_by_runner"],
            claim_id=row["claim_id"],
            started_at=cls._parse_optional_datetime(row["started_at"]),
            finished_at=cls._parse_optional_datetime(row["finished_at"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_team_run(cls, row: Any) -> TeamRunRecord:
        summary = cls._parse_json(row["step_summary_json"], [])
        return TeamRunRecord(
            run_id=str(row["run_id"]),
            team_id=str(row["team_id"]),
            workspace_id=row["workspace_id"],
            input_task=row["input_task"],
            status=WorkStatus(row["status"]),
            created_by=row["created_by"],
            steps=cls._parse_steps(row["steps_json"]),
            generation=int(row["generation"]),
            current_step_idx=row["current_step_idx"],
            output=row["output"],
            error_message=row["error_message"],
            tokens_total=int(row["tokens_total"]),
            step_summary=summary if isinstance(summary, list) else [],
            cancel_requested=bool(row["cancel_requested"]),
            fault_count=int(row["fault_count"]),
            claimed_by_runner=row["claimed_by_runner"],
            claim_id=row["claim_id"],
            started_at=cls._parse_optional_datetime(row["started_at"]),
            finished_at=cls._parse_optional_datetime(row["finished_at"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_step_execution(cls, row: Any) -> StepExecutionRecord:
        usage = cls._parse_json(row["usage_json"], {})
        return StepExecutionRecord(
            execution_id=int(row["execution_id"]),
            run_id=str(row["run_id"]),
            generation=int(row["generation"]),
            step_index=int(row["step_index"]),
            step_name=row["step_name"],
            agent_id=row["agent_id"],
            attempt=int(row["attempt"]),
            outcome=StepOutcome(row["outcome"]),
            output=row["output"],
            error=row["error"],
            usage=usage if isinstance(usage, dict) else {},
            started_at=cls._parse_datetime(row["started_at"]),
            finished_at=cls._parse_optional_datetime(row["finished_at"]),
        )

    @classmethod
    def _row_to_audit(cls, row: Any) -> AuditLogEntry:
        details = cls._parse_json(row["details_json"], {})
        return AuditLogEntry(
            entry_id=int(row["entry_id"]),
            workspace_id=row["workspace_id"],
            actor_id=row["actor_id"],
            action=row["action"],
            details=details if isinstance(details, dict) else {},
            created_at=cls._parse_datetime(row["created_at"]),
        )
