from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from training_worker.jobs.lease_reaper import LEASE_EXPIRED_ERROR
from training_worker.jobs.retry import resolve_failure_status


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


@dataclass(slots=True)
class MetricSample:
    session_id: str | None
    model_version: str | None
    metric_name: str
    metric_value: float
    game_count: int


JSON_COLUMNS = ("payload", "result", "info", "model_data", "game_data")

JOB_FIELDS = """
  type,
  payload,
  priority,
  status,
  attempts,
  max_attempts,
  session_id,
  model_version,
  worker_id,
  error,
  result,
  lease_expires_at,
  created_at,
  started_at,
  completed_at,
  updated_at
"""

WORKER_FIELDS = "worker_id, status, started_at, stopped_at, last_heartbeat, info"

SCHEMA_SQL = """
create table if not exists training_jobs (
  id uuid primary key default gen_random_uuid(),
  type text not null,
  payload jsonb not null default '{}'::jsonb,
  priority integer not null default 0,
  status text not null default 'queued'
    check (status in ('queued', 'processing', 'completed', 'failed')),
  attempts integer not null default 0,
  max_attempts integer not null default 3,
  session_id text,
  model_version text,
  worker_id text,
  error text,
  result jsonb,
  lease_expires_at timestamptz,
  created_at timestamptz not null default clock_timestamp(),
  started_at timestamptz,
  completed_at timestamptz,
  updated_at timestamptz not null default clock_timestamp()
);

create index if not exists training_jobs_claim_idx
  on training_jobs (priority desc, created_at asc)
  where status = 'queued';

create index if not exists training_jobs_lease_idx
  on training_jobs (lease_expires_at)
  where status = 'processing';

create table if not exists training_workers (
  worker_id text primary key,
  status text not null check (status in ('running', 'idle', 'stopped')),
  started_at timestamptz not null default now(),
  stopped_at timestamptz,
  last_heartbeat timestamptz not null default now(),
  info jsonb not null default '{}'::jsonb
);

create table if not exists performance_metrics (
  id bigserial primary key,
  session_id text,
  model_version text,
  metric_name text not null,
  metric_value double precision not null,
  game_count integer not null default 0,
  timestamp timestamptz not null default clock_timestamp()
);

create index if not exists performance_metrics_series_idx
  on performance_metrics (session_id, metric_name, timestamp);

create table if not exists training_sessions (
  id text primary key default gen_random_uuid()::text,
  name text,
  status text not null default 'running',
  games_completed integer not null default 0,
  win_rate double precision,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create table if not exists models (
  version text primary key,
  name text not null,
  description text,
  architecture text,
  status text not null default 'training',
  win_rate_vs_previous double precision,
  policy_accuracy double precision,
  value_accuracy double precision,
  model_data jsonb not null default '{}'::jsonb,
  created_at timestamptz not null default now()
);

create table if not exists games (
  id bigserial primary key,
  session_id text,
  game_type text not null,
  status text not null,
  player1_type text,
  player2_type text,
  winner text,
  turn_count integer,
  duration_seconds integer,
  game_data jsonb not null default '{}'::jsonb,
  created_at timestamptz not null default now()
);
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def enqueue_job(
        self,
        *,
        job_type: str,
        payload: dict[str, Any],
        priority: int = 0,
        session_id: str | None = None,
        model_version: str | None = None,
        max_attempts: int | None = None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into training_jobs (type, payload, priority, status, session_id, model_version, max_attempts)
            values ($1, $2::jsonb, $3, 'queued', $4, $5, $6)
            returning id::text as id, {JOB_FIELDS}
            """,
            job_type,
            json.dumps(payload),
            priority,
            session_id,
            model_version,
            max(1, max_attempts or self.job_max_attempts),
        )
        return self._row_to_dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select id::text as id, {JOB_FIELDS} from training_jobs where id = $1::uuid",
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._row_to_dict(row)

    async def claim_job(self, worker_id: str, lease_seconds: int) -> dict[str, Any] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    with picked as (
                      select id
                      from training_jobs
                      where status = 'queued'
                      order by priority desc, created_at asc
                      limit 1
                      for update skip locked
                    )
                    update training_jobs j
                    set
                      status = 'processing',
                      started_at = now(),
                      worker_id = $1,
                      attempts = j.attempts + 1,
                      lease_expires_at = now() + ($2::int * interval '1 second'),
                      updated_at = now()
                    from picked
                    where j.id = picked.id
                    returning j.id::text as id, {JOB_FIELDS}
                    """,
                    worker_id,
                    lease_seconds,
                )
        if not row:
            return None
        return self._row_to_dict(row)

    async def complete_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        result: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update training_jobs
                    set
                      status = 'completed',
                      completed_at = now(),
                      error = null,
                      result = $3::jsonb,
                      lease_expires_at = null,
                      updated_at = now()
                    where id = $1::uuid and status = 'processing' and worker_id = $2
                    returning id::text as id, {JOB_FIELDS}
                    """,
                    job_id,
                    worker_id,
                    json.dumps(result) if result is not None else None,
                )
                if not row:
                    await self._raise_not_held(conn, job_id)
        return self._row_to_dict(row)

    async def fail_job(self, job_id: str, *, worker_id: str, error: str) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                held = await conn.fetchrow(
                    """
                    select status, worker_id, attempts, max_attempts
                    from training_jobs
                    where id = $1::uuid
                    for update
                    """,
                    job_id,
                )
                if not held:
                    raise RepositoryNotFoundError("job not found")
                if held["status"] != "processing" or held["worker_id"] != worker_id:
                    raise RepositoryConflictError("job is not held by this worker")

                resolved_status = resolve_failure_status(
                    attempts=int(held["attempts"]),
                    max_attempts=int(held["max_attempts"]),
                )
                row = await conn.fetchrow(
                    f"""
                    update training_jobs
                    set
                      status = $2,
                      error = $3,
                      worker_id = null,
                      started_at = null,
                      lease_expires_at = null,
                      updated_at = now()
                    where id = $1::uuid
                    returning id::text as id, {JOB_FIELDS}
                    """,
                    job_id,
                    resolved_status,
                    error,
                )
        return self._row_to_dict(row)

    async def requeue_expired_jobs(self, limit: int) -> dict[str, int]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id, attempts, max_attempts
                      from training_jobs
                      where status = 'processing'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update training_jobs j
                    set
                      status = case when e.attempts >= e.max_attempts then 'failed' else 'queued' end,
                      error = $2,
                      worker_id = null,
                      started_at = null,
                      lease_expires_at = null,
                      updated_at = now()
                    from expired e
                    where j.id = e.id
                    returning j.status
                    """,
                    bounded_limit,
                    LEASE_EXPIRED_ERROR,
                )
        failed = sum(1 for row in rows if row["status"] == "failed")
        return {"requeued": len(rows) - failed, "failed": failed}

    async def queue_counts(self) -> dict[str, int]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) filter (where status = 'queued')::int as queued,
              count(*) filter (where status = 'processing')::int as processing,
              count(*) filter (where status = 'failed')::int as failed,
              count(*) filter (where status = 'completed')::int as completed
            from training_jobs
            """
        )
        return dict(row)

    async def upsert_worker(self, worker_id: str, *, status: str, info: dict[str, Any]) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into training_workers (worker_id, status, info)
            values ($1, $2, $3::jsonb)
            on conflict (worker_id)
            do update set
              status = excluded.status,
              info = excluded.info,
              started_at = now(),
              stopped_at = null,
              last_heartbeat = now()
            returning {WORKER_FIELDS}
            """,
            worker_id,
            status,
            json.dumps(info),
        )
        return self._row_to_dict(row)

    async def heartbeat(self, worker_id: str, *, status: str) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update training_workers
            set last_heartbeat = now(), status = $2
            where worker_id = $1 and status <> 'stopped'
            """,
            worker_id,
            status,
        )
        return result != "UPDATE 0"

    async def mark_worker_stopped(self, worker_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update training_workers
            set status = 'stopped', stopped_at = now()
            where worker_id = $1
            """,
            worker_id,
        )

    async def get_worker(self, worker_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {WORKER_FIELDS} from training_workers where worker_id = $1",
            worker_id,
        )
        return self._row_to_dict(row) if row else None

    async def list_active_workers(self, freshness_seconds: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {WORKER_FIELDS}
            from training_workers
            where last_heartbeat > now() - ($1::int * interval '1 second')
              and status <> 'stopped'
            order by last_heartbeat desc
            """,
            freshness_seconds,
        )
        return [self._row_to_dict(row) for row in rows]

    async def append_metrics(self, samples: list[MetricSample]) -> list[dict[str, Any]]:
        if not samples:
            return []
        pool = await self._get_pool()
        inserted: list[dict[str, Any]] = []
        async with pool.acquire() as conn:
            async with conn.transaction():
                for sample in samples:
                    row = await conn.fetchrow(
                        """
                        insert into performance_metrics (session_id, model_version, metric_name, metric_value, game_count)
                        values ($1, $2, $3, $4, $5)
                        returning id, session_id, model_version, metric_name, metric_value, game_count, timestamp
                        """,
                        sample.session_id,
                        sample.model_version,
                        sample.metric_name,
                        sample.metric_value,
                        sample.game_count,
                    )
                    inserted.append(dict(row))
        return inserted

    async def list_metrics(
        self,
        *,
        session_id: str | None = None,
        model_version: str | None = None,
        metric_name: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, session_id, model_version, metric_name, metric_value, game_count, timestamp
            from performance_metrics
            where ($1::text is null or session_id = $1)
              and ($2::text is null or model_version = $2)
              and ($3::text is null or metric_name = $3)
            order by timestamp desc, id desc
            limit $4
            """,
            session_id,
            model_version,
            metric_name,
            max(1, min(limit, 1000)),
        )
        return [dict(row) for row in rows]

    async def create_session(self, *, name: str | None = None) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into training_sessions (name)
            values ($1)
            returning id, name, status, games_completed, win_rate, created_at, updated_at
            """,
            name,
        )
        return dict(row)

    async def get_session(self, session_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id, name, status, games_completed, win_rate, created_at, updated_at
            from training_sessions
            where id = $1
            """,
            session_id,
        )
        if not row:
            raise RepositoryNotFoundError("session not found")
        return dict(row)

    async def record_session_progress(self, session_id: str, *, games_delta: int, win_rate: float) -> int | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            update training_sessions
            set
              games_completed = coalesce(games_completed, 0) + $2,
              win_rate = $3,
              updated_at = now()
            where id = $1
            returning games_completed
            """,
            session_id,
            games_delta,
            win_rate,
        )

    async def ensure_model(self, model_version: str) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            insert into models (version, name, description, architecture, status)
            values ($1, $2, 'Auto-created by background worker', 'alphazero', 'training')
            on conflict (version) do nothing
            """,
            model_version,
            f"Model {model_version}",
        )
        return result == "INSERT 0 1"

    async def get_model(self, model_version: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              version,
              name,
              description,
              architecture,
              status,
              win_rate_vs_previous,
              policy_accuracy,
              value_accuracy,
              model_data,
              created_at
            from models
            where version = $1
            """,
            model_version,
        )
        if not row:
            raise RepositoryNotFoundError("model not found")
        return self._row_to_dict(row)

    async def update_model_evaluation(
        self,
        model_version: str,
        *,
        win_rate_vs_previous: float,
        policy_accuracy: float,
        value_accuracy: float,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update models
            set win_rate_vs_previous = $2, policy_accuracy = $3, value_accuracy = $4
            where version = $1
            """,
            model_version,
            win_rate_vs_previous,
            policy_accuracy,
            value_accuracy,
        )

    async def merge_model_data(self, model_version: str, data: dict[str, Any]) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update models
            set model_data = coalesce(model_data, '{}'::jsonb) || $2::jsonb
            where version = $1
            """,
            model_version,
            json.dumps(data),
        )

    async def record_games(self, session_key: str, games: list[dict[str, Any]]) -> int:
        if not games:
            return 0
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    insert into games (
                      session_id,
                      game_type,
                      status,
                      player1_type,
                      player2_type,
                      winner,
                      turn_count,
                      duration_seconds,
                      game_data
                    )
                    values ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
                    """,
                    [
                        (
                            session_key,
                            game["game_type"],
                            game["status"],
                            game.get("player1_type"),
                            game.get("player2_type"),
                            game.get("winner"),
                            game.get("turn_count"),
                            game.get("duration_seconds"),
                            json.dumps(game.get("game_data") or {}),
                        )
                        for game in games
                    ],
                )
        return len(games)

    async def _raise_not_held(self, conn: asyncpg.Connection, job_id: str) -> None:
        exists = await conn.fetchval("select 1 from training_jobs where id = $1::uuid", job_id)
        if not exists:
            raise RepositoryNotFoundError("job not found")
        raise RepositoryConflictError("job is not held by this worker")

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("TW_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        data = dict(row)
        for column in JSON_COLUMNS:
            if column not in data:
                continue
            value = data[column]
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except json.JSONDecodeError:
                    value = {}
            if value is None and column != "result":
                value = {}
            data[column] = value
        return data
