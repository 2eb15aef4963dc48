from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from driftwatch.core.config import get_settings
from driftwatch.services.models import (
    REASON_TYPES,
    RECORD_TYPES,
    STATUS_TYPES,
    ContentMonitor,
    EventType,
    Record,
    RecordKind,
    kind_of,
    parse_enum,
    parse_optional_enum,
)
from driftwatch.services.store import (
    DuplicateKeyError,
    InMemoryRecordStore,
    RecordQuery,
    RecordStore,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    validate_query,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
create table if not exists content_monitors (
  id text primary key,
  code text not null,
  content_type text not null,
  name text not null,
  guid text not null unique,
  status text not null default 'NEW',
  active boolean not null default true,
  alerts boolean not null default true,
  snapshot text not null default '',
  url text not null default '',
  interval_minutes integer not null default 60,
  executed_at timestamptz,
  success_at timestamptz,
  execution_time integer not null default -1,
  error_message text not null default '',
  retry integer not null default 0,
  change_id text,
  event_type text,
  event_id text,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);
create index if not exists content_monitors_sweep_idx on content_monitors (active, executed_at nulls first);
create index if not exists content_monitors_code_idx on content_monitors (code);

create table if not exists content_changes (
  id text primary key,
  code text not null,
  monitor_id text not null references content_monitors (id),
  snapshot_before text not null default '',
  snapshot_after text not null default '',
  difference integer not null default 0,
  execution_time integer not null default -1,
  session_id bigint not null default 0,
  created_by text not null default '',
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);
create index if not exists content_changes_monitor_idx on content_changes (monitor_id, created_at);
create index if not exists content_changes_session_idx on content_changes (session_id);

create table if not exists content_reviews (
  id text primary key,
  code text not null,
  monitor_id text not null references content_monitors (id),
  reason text not null,
  status text not null default 'NEW',
  notes text not null default '',
  substantive boolean not null default false,
  attributes jsonb not null default '{}'::jsonb,
  session_id bigint not null default 0,
  created_by text not null default '',
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);
create index if not exists content_reviews_open_idx on content_reviews (code, reason, status);
create index if not exists content_reviews_session_idx on content_reviews (session_id);
create index if not exists content_reviews_created_idx on content_reviews (created_at);

create table if not exists content_alerts (
  id text primary key,
  code text not null,
  monitor_id text not null references content_monitors (id),
  reason text not null,
  status text not null default 'NEW',
  attributes jsonb not null default '{}'::jsonb,
  start_at timestamptz,
  session_id bigint not null default 0,
  created_by text not null default '',
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);
create index if not exists content_alerts_open_idx on content_alerts (code, reason, status);
create index if not exists content_alerts_session_idx on content_alerts (session_id);
create index if not exists content_alerts_created_idx on content_alerts (created_at);

create table if not exists content_failures (
  id text primary key,
  code text not null,
  monitor_id text not null references content_monitors (id),
  reason text not null,
  status text not null default 'NEW',
  notes text not null default '',
  attributes jsonb not null default '{}'::jsonb,
  reviewed_at timestamptz,
  session_id bigint not null default 0,
  created_by text not null default '',
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);
create index if not exists content_failures_open_idx on content_failures (code, reason, status);
create index if not exists content_failures_session_idx on content_failures (session_id);
create index if not exists content_failures_created_idx on content_failures (created_at);

create table if not exists content_session_counter (
  id smallint primary key check (id = 1),
  last_session bigint not null
);
"""

# largest session id tagged on any workflow record
_MAX_SESSION_SQL = """
select coalesce(max(session_id), 0)
from (
  select max(session_id) as session_id from content_changes
  union all select max(session_id) from content_reviews
  union all select max(session_id) from content_alerts
  union all select max(session_id) from content_failures
) sessions
"""


@dataclass(slots=True, frozen=True)
class TableSpec:
    table: str
    # (dataclass field, column) pairs written on insert/update
    columns: tuple[tuple[str, str], ...]

    def column_names(self) -> set[str]:
        return {column for _, column in self.columns}


_AUDIT_COLUMNS = ("created_at", "updated_at")

_TABLES: dict[RecordKind, TableSpec] = {
    RecordKind.MONITOR: TableSpec(
        table="content_monitors",
        columns=(
            ("id", "id"),
            ("code", "code"),
            ("content_type", "content_type"),
            ("name", "name"),
            ("guid", "guid"),
            ("status", "status"),
            ("active", "active"),
            ("alerts", "alerts"),
            ("snapshot", "snapshot"),
            ("url", "url"),
            ("interval", "interval_minutes"),
            ("executed_at", "executed_at"),
            ("success_at", "success_at"),
            ("execution_time", "execution_time"),
            ("error_message", "error_message"),
            ("retry", "retry"),
            ("change_id", "change_id"),
            ("event_type", "event_type"),
            ("event_id", "event_id"),
        ),
    ),
    RecordKind.CHANGE: TableSpec(
        table="content_changes",
        columns=(
            ("id", "id"),
            ("code", "code"),
            ("monitor_id", "monitor_id"),
            ("snapshot_before", "snapshot_before"),
            ("snapshot_after", "snapshot_after"),
            ("difference", "difference"),
            ("execution_time", "execution_time"),
            ("session_id", "session_id"),
            ("created_by", "created_by"),
        ),
    ),
    RecordKind.REVIEW: TableSpec(
        table="content_reviews",
        columns=(
            ("id", "id"),
            ("code", "code"),
            ("monitor_id", "monitor_id"),
            ("reason", "reason"),
            ("status", "status"),
            ("notes", "notes"),
            ("substantive", "substantive"),
            ("attributes", "attributes"),
            ("session_id", "session_id"),
            ("created_by", "created_by"),
        ),
    ),
    RecordKind.ALERT: TableSpec(
        table="content_alerts",
        columns=(
            ("id", "id"),
            ("code", "code"),
            ("monitor_id", "monitor_id"),
            ("reason", "reason"),
            ("status", "status"),
            ("attributes", "attributes"),
            ("start_at", "start_at"),
            ("session_id", "session_id"),
            ("created_by", "created_by"),
        ),
    ),
    RecordKind.FAILURE: TableSpec(
        table="content_failures",
        columns=(
            ("id", "id"),
            ("code", "code"),
            ("monitor_id", "monitor_id"),
            ("reason", "reason"),
            ("status", "status"),
            ("notes", "notes"),
            ("attributes", "attributes"),
            ("reviewed_at", "reviewed_at"),
            ("session_id", "session_id"),
            ("created_by", "created_by"),
        ),
    ),
}


@asynccontextmanager
async def _translate_errors(action: str) -> AsyncIterator[None]:
    try:
        yield
    except RepositoryError:
        raise
    except pg_exc.UniqueViolationError as exc:
        raise DuplicateKeyError(f"{action}: duplicate key") from exc
    except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
        raise RepositoryValidationError(f"{action}: {exc}") from exc
    except (OSError, asyncpg.InterfaceError, pg_exc.PostgresConnectionError) as exc:
        raise RepositoryUnavailableError(f"{action}: database unavailable") from exc
    except asyncpg.PostgresError as exc:
        raise RepositoryError(f"{action}: {exc}") from exc


class _PostgresOperations:
    """Record mapping shared by the pooled store and a transaction-bound connection."""

    async def _executor(self) -> Any:
        raise NotImplementedError

    async def get_by_id(self, kind: RecordKind, record_id: str) -> Record | None:
        spec = _TABLES[kind]
        executor = await self._executor()
        async with _translate_errors(f"get {kind.value}"):
            row = await executor.fetchrow(
                f"select {_select_list(spec)} from {spec.table} where id = $1",
                record_id,
            )
        return self._row_to_record(kind, row) if row is not None else None

    async def add(self, record: Record) -> Record:
        kind = kind_of(record)
        spec = _TABLES[kind]
        values = [_encode_value(record, field_name) for field_name, _ in spec.columns]
        columns = ", ".join(column for _, column in spec.columns)
        placeholders = ", ".join(f"${index}" for index in range(1, len(values) + 1))
        executor = await self._executor()
        async with _translate_errors(f"add {kind.value}"):
            # on conflict keeps the surrounding transaction usable after a duplicate
            row = await executor.fetchrow(
                f"""
                insert into {spec.table} ({columns}, created_at, updated_at)
                values ({placeholders}, now(), now())
                on conflict do nothing
                returning {_select_list(spec)}
                """,
                *values,
            )
        if row is None:
            raise DuplicateKeyError(f"{kind.value} already exists: {record.id}")
        return self._row_to_record(kind, row)

    async def update(self, record: Record) -> Record:
        kind = kind_of(record)
        spec = _TABLES[kind]
        assignments: list[str] = []
        params: list[Any] = [record.id]
        for field_name, column in spec.columns:
            if field_name == "id":
                continue
            params.append(_encode_value(record, field_name))
            assignments.append(f"{column} = ${len(params)}")
        executor = await self._executor()
        async with _translate_errors(f"update {kind.value}"):
            row = await executor.fetchrow(
                f"""
                update {spec.table}
                set {", ".join(assignments)}, updated_at = now()
                where id = $1
                returning {_select_list(spec)}
                """,
                *params,
            )
        if row is None:
            raise RepositoryNotFoundError(f"{kind.value} not found: {record.id}")
        return self._row_to_record(kind, row)

    async def list(self, kind: RecordKind, query: RecordQuery | None = None) -> list[Record]:
        query = query or RecordQuery()
        spec = _TABLES[kind]
        where_sql, params = _build_where(kind, query)

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if query.order_by == "executed_at" and kind is RecordKind.MONITOR:
            order_by_sql = "executed_at asc nulls first, created_at asc, id asc"
        else:
            order_by_sql = "created_at asc, id asc"
        paging_sql = ""
        if query.limit is not None:
            paging_sql += f" limit {bind(query.limit)}"
        if query.offset:
            paging_sql += f" offset {bind(query.offset)}"

        executor = await self._executor()
        async with _translate_errors(f"list {kind.value}"):
            rows = await executor.fetch(
                f"""
                select {_select_list(spec)}
                from {spec.table}
                where {where_sql}
                order by {order_by_sql}{paging_sql}
                """,
                *params,
            )
        return [self._row_to_record(kind, row) for row in rows]

    async def count(self, kind: RecordKind, query: RecordQuery | None = None) -> int:
        spec = _TABLES[kind]
        where_sql, params = _build_where(kind, query or RecordQuery())
        executor = await self._executor()
        async with _translate_errors(f"count {kind.value}"):
            value = await executor.fetchval(f"select count(*) from {spec.table} where {where_sql}", *params)
        return int(value or 0)

    async def max_session_id(self) -> int:
        executor = await self._executor()
        async with _translate_errors("max session id"):
            value = await executor.fetchval(_MAX_SESSION_SQL)
        return int(value or 0)

    async def allocate_session_id(self, *, floor: int = 0) -> int:
        executor = await self._executor()
        async with _translate_errors("allocate session id"):
            # the counter row lock orders concurrent allocations from every process
            value = await executor.fetchval(
                f"""
                insert into content_session_counter as counter (id, last_session)
                values (1, greatest($1, ({_MAX_SESSION_SQL})) + 1)
                on conflict (id) do update
                set last_session = greatest(counter.last_session, $1, ({_MAX_SESSION_SQL})) + 1
                returning last_session
                """,
                floor,
            )
        return int(value)

    async def lock_code(self, code: str) -> None:
        executor = await self._executor()
        async with _translate_errors("lock code"):
            # released when the surrounding transaction ends
            await executor.execute("select pg_advisory_xact_lock(hashtext($1))", code)

    @staticmethod
    def _row_to_record(kind: RecordKind, row: asyncpg.Record) -> Record:
        spec = _TABLES[kind]
        values: dict[str, Any] = {}
        for field_name, column in spec.columns:
            if field_name == "guid":
                continue
            values[field_name] = row[column]
        for column in _AUDIT_COLUMNS:
            values[column] = row[column]

        # stored text must map onto the closed enums; anything else fails loudly
        if kind in STATUS_TYPES:
            values["status"] = parse_enum(STATUS_TYPES[kind], values["status"])
        if kind in REASON_TYPES:
            values["reason"] = parse_enum(REASON_TYPES[kind], values["reason"])
        if kind is RecordKind.MONITOR:
            values["event_type"] = parse_optional_enum(EventType, values["event_type"])
        if "attributes" in values:
            values["attributes"] = _coerce_attributes(values["attributes"])
        return RECORD_TYPES[kind](**values)


class _PostgresTransaction(_PostgresOperations):
    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def _executor(self) -> asyncpg.Connection:
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_PostgresTransaction]:
        yield self

    async def close(self) -> None:
        return None


class PostgresRecordStore(_PostgresOperations):
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        *,
        auto_create_schema: bool = False,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.auto_create_schema = auto_create_schema
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with _translate_errors("ensure schema"):
            await pool.execute(SCHEMA_SQL)
        logger.info("database schema ensured tables=%s", len(_TABLES))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_PostgresTransaction]:
        pool = await self._get_pool()
        async with _translate_errors("transaction"):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    yield _PostgresTransaction(conn)

    async def _executor(self) -> asyncpg.Pool:
        return await self._get_pool()

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("DW_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

        self._pool = pool
        if self.auto_create_schema:
            await self.ensure_schema()
        return pool


def _select_list(spec: TableSpec) -> str:
    return ", ".join([*(column for _, column in spec.columns), *_AUDIT_COLUMNS])


def _build_where(kind: RecordKind, query: RecordQuery) -> tuple[str, list[Any]]:
    validate_query(kind, query)
    conditions: list[str] = []
    params: list[Any] = []

    def bind(value: Any) -> str:
        params.append(value)
        return f"${len(params)}"

    status = query.status_text()
    if status is not None:
        conditions.append(f"status = {bind(status)}")
    if query.code is not None:
        conditions.append(f"code = {bind(query.code)}")
    if query.monitor_id is not None:
        column = "id" if kind is RecordKind.MONITOR else "monitor_id"
        conditions.append(f"{column} = {bind(query.monitor_id)}")
    reason = query.reason_text()
    if reason is not None:
        conditions.append(f"reason = {bind(reason)}")
    if query.session_id is not None:
        conditions.append(f"session_id = {bind(query.session_id)}")
    if query.active is not None:
        conditions.append(f"active = {bind(query.active)}")
    if query.created_since is not None:
        conditions.append(f"created_at >= {bind(query.created_since)}")
    if query.visible_since is not None:
        if kind is RecordKind.CHANGE:
            conditions.append(f"created_at >= {bind(query.visible_since)}")
        else:
            conditions.append(f"(status = 'NEW' or created_at >= {bind(query.visible_since)})")

    return (" and ".join(conditions) if conditions else "true"), params


def _encode_value(record: Record, field_name: str) -> Any:
    if field_name == "guid":
        return record.guid if isinstance(record, ContentMonitor) else None
    value = getattr(record, field_name)
    if field_name == "attributes":
        return json.dumps(value if isinstance(value, dict) else {}, default=str)
    if isinstance(value, Enum):
        return value.value
    return value


def _coerce_attributes(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    return value if isinstance(value, dict) else {}


@lru_cache
def get_repository() -> RecordStore:
    settings = get_settings()
    if not settings.database_url:
        logger.warning("DW_DATABASE_URL not set; using the in-memory record store")
        return InMemoryRecordStore()
    return PostgresRecordStore(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        auto_create_schema=settings.database_auto_create_schema,
    )
