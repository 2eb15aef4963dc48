from __future__ import annotations

import copy
import threading
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Protocol

from driftwatch.services.models import (
    ContentMonitor,
    Record,
    RecordKind,
    kind_of,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the record store is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested record does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class DuplicateKeyError(RepositoryConflictError):
    """Raised when a record with the same identity already exists."""


class RepositoryValidationError(RepositoryError):
    """Raised when a query or payload fails validation before persistence."""


OrderBy = Literal["created_at", "executed_at"]


@dataclass(slots=True)
class RecordQuery:
    status: str | Enum | None = None
    code: str | None = None
    monitor_id: str | None = None
    reason: str | Enum | None = None
    session_id: int | None = None
    active: bool | None = None
    created_since: datetime | None = None
    visible_since: datetime | None = None
    order_by: OrderBy = "created_at"
    limit: int | None = None
    offset: int = 0

    def status_text(self) -> str | None:
        return _enum_text(self.status)

    def reason_text(self) -> str | None:
        return _enum_text(self.reason)


class RecordStore(Protocol):
    async def get_by_id(self, kind: RecordKind, record_id: str) -> Record | None: ...

    async def add(self, record: Record) -> Record: ...

    async def update(self, record: Record) -> Record: ...

    async def list(self, kind: RecordKind, query: RecordQuery | None = None) -> list[Record]: ...

    async def count(self, kind: RecordKind, query: RecordQuery | None = None) -> int: ...

    async def max_session_id(self) -> int: ...

    async def allocate_session_id(self, *, floor: int = 0) -> int: ...

    async def lock_code(self, code: str) -> None: ...

    def transaction(self) -> AbstractAsyncContextManager[RecordStore]: ...

    async def close(self) -> None: ...


_UNSUPPORTED_PREDICATES: dict[RecordKind, tuple[str, ...]] = {
    RecordKind.MONITOR: ("reason", "session_id"),
    RecordKind.CHANGE: ("status", "reason", "active"),
    RecordKind.REVIEW: ("active",),
    RecordKind.ALERT: ("active",),
    RecordKind.FAILURE: ("active",),
}


def validate_query(kind: RecordKind, query: RecordQuery) -> None:
    for name in _UNSUPPORTED_PREDICATES[kind]:
        if getattr(query, name) is not None:
            raise RepositoryValidationError(f"{kind.value} records cannot be filtered by {name}")
    if query.limit is not None and query.limit < 0:
        raise RepositoryValidationError("limit must be >= 0")
    if query.offset < 0:
        raise RepositoryValidationError("offset must be >= 0")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRecordStore:
    """Process-local record store used when no database is configured and in tests."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._tables: dict[RecordKind, dict[str, Record]] = {kind: {} for kind in RecordKind}
        self._clock = clock or utcnow
        self._session_lock = threading.Lock()
        self._last_session = 0

    async def get_by_id(self, kind: RecordKind, record_id: str) -> Record | None:
        return self._get(kind, record_id)

    async def add(self, record: Record) -> Record:
        stored, _ = self._add(record)
        return stored

    async def update(self, record: Record) -> Record:
        stored, _ = self._update(record)
        return stored

    async def list(self, kind: RecordKind, query: RecordQuery | None = None) -> list[Record]:
        return self._list(kind, query or RecordQuery())

    async def count(self, kind: RecordKind, query: RecordQuery | None = None) -> int:
        return len(self._list(kind, replace(query or RecordQuery(), limit=None, offset=0)))

    async def max_session_id(self) -> int:
        return self._max_session_id()

    async def allocate_session_id(self, *, floor: int = 0) -> int:
        with self._session_lock:
            self._last_session = max(self._last_session, floor, self._max_session_id()) + 1
            return self._last_session

    async def lock_code(self, code: str) -> None:
        # a process-local store has no other writers to exclude
        return None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_InMemoryTransaction]:
        tx = _InMemoryTransaction(self)
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise

    async def close(self) -> None:
        return None

    def _max_session_id(self) -> int:
        session_ids = [
            getattr(record, "session_id", 0)
            for kind in (RecordKind.CHANGE, RecordKind.REVIEW, RecordKind.ALERT, RecordKind.FAILURE)
            for record in self._tables[kind].values()
        ]
        return max(session_ids, default=0)

    def _get(self, kind: RecordKind, record_id: str) -> Record | None:
        record = self._tables[kind].get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def _add(self, record: Record) -> tuple[Record, Callable[[], None]]:
        kind = kind_of(record)
        table = self._tables[kind]
        if record.id in table:
            raise DuplicateKeyError(f"{kind.value} already exists: {record.id}")
        if isinstance(record, ContentMonitor):
            guid = record.guid
            if any(existing.guid == guid for existing in table.values()):
                raise DuplicateKeyError(f"monitor already exists: {guid}")

        now = self._clock()
        stored = copy.deepcopy(record)
        stored.created_at = now
        stored.updated_at = now
        table[stored.id] = stored

        def undo() -> None:
            table.pop(stored.id, None)

        return copy.deepcopy(stored), undo

    def _update(self, record: Record) -> tuple[Record, Callable[[], None]]:
        kind = kind_of(record)
        table = self._tables[kind]
        previous = table.get(record.id)
        if previous is None:
            raise RepositoryNotFoundError(f"{kind.value} not found: {record.id}")

        stored = copy.deepcopy(record)
        stored.created_at = previous.created_at
        stored.updated_at = self._clock()
        table[stored.id] = stored

        def undo() -> None:
            table[previous.id] = previous

        return copy.deepcopy(stored), undo

    def _list(self, kind: RecordKind, query: RecordQuery) -> list[Record]:
        validate_query(kind, query)
        rows = [record for record in self._tables[kind].values() if _matches(record, query)]
        if query.order_by == "executed_at":
            rows.sort(key=_executed_sort_key)
        else:
            rows.sort(key=lambda row: (row.created_at or datetime.min.replace(tzinfo=timezone.utc), row.id))
        rows = rows[query.offset :]
        if query.limit is not None:
            rows = rows[: query.limit]
        return [copy.deepcopy(row) for row in rows]


class _InMemoryTransaction:
    def __init__(self, store: InMemoryRecordStore) -> None:
        self._store = store
        self._undo: list[Callable[[], None]] = []

    async def get_by_id(self, kind: RecordKind, record_id: str) -> Record | None:
        return self._store._get(kind, record_id)

    async def add(self, record: Record) -> Record:
        stored, undo = self._store._add(record)
        self._undo.append(undo)
        return stored

    async def update(self, record: Record) -> Record:
        stored, undo = self._store._update(record)
        self._undo.append(undo)
        return stored

    async def list(self, kind: RecordKind, query: RecordQuery | None = None) -> list[Record]:
        return await self._store.list(kind, query)

    async def count(self, kind: RecordKind, query: RecordQuery | None = None) -> int:
        return await self._store.count(kind, query)

    async def max_session_id(self) -> int:
        return await self._store.max_session_id()

    async def allocate_session_id(self, *, floor: int = 0) -> int:
        return await self._store.allocate_session_id(floor=floor)

    async def lock_code(self, code: str) -> None:
        await self._store.lock_code(code)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_InMemoryTransaction]:
        yield self

    async def close(self) -> None:
        return None

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()


def _matches(record: Record, query: RecordQuery) -> bool:
    status = query.status_text()
    if status is not None and _enum_text(getattr(record, "status", None)) != status:
        return False
    if query.code is not None and record.code != query.code:
        return False
    if query.monitor_id is not None:
        monitor_id = record.id if isinstance(record, ContentMonitor) else getattr(record, "monitor_id", None)
        if monitor_id != query.monitor_id:
            return False
    reason = query.reason_text()
    if reason is not None and _enum_text(getattr(record, "reason", None)) != reason:
        return False
    if query.session_id is not None and getattr(record, "session_id", None) != query.session_id:
        return False
    if query.active is not None and getattr(record, "active", None) != query.active:
        return False
    created_at = record.created_at
    if query.created_since is not None and (created_at is None or created_at < query.created_since):
        return False
    if query.visible_since is not None:
        is_new = _enum_text(getattr(record, "status", None)) == "NEW"
        recent = created_at is not None and created_at >= query.visible_since
        if not (is_new or recent):
            return False
    return True


def _executed_sort_key(record: Record) -> tuple[int, datetime, str]:
    executed_at = getattr(record, "executed_at", None)
    if executed_at is None:
        return (0, record.created_at or datetime.min.replace(tzinfo=timezone.utc), record.id)
    return (1, executed_at, record.id)


def _enum_text(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)
