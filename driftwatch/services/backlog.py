from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

from driftwatch.core.config import get_settings
from driftwatch.services.models import STATUS_TYPES, Record, RecordKind, parse_enum
from driftwatch.services.repository import get_repository
from driftwatch.services.store import RecordQuery, RecordStore, RepositoryValidationError, utcnow

BACKLOG_KINDS = (RecordKind.REVIEW, RecordKind.ALERT, RecordKind.FAILURE, RecordKind.CHANGE)
MAX_PAGE_SIZE = 500


@dataclass(slots=True)
class BacklogFilter:
    code: str | None = None
    monitor_id: str | None = None
    status: str | None = None
    session_id: int | None = None
    limit: int = 100
    offset: int = 0


@dataclass(slots=True)
class BacklogPage:
    kind: RecordKind
    items: list[Record]
    total: int
    visible_since: datetime
    limit: int
    offset: int


class BacklogQueryEngine:
    """Serves operator backlog views.

    Reviews, alerts and failures are visible while ``NEW`` regardless of age, and
    otherwise only while they were created inside the retention window. Changes carry
    no status and are visible inside their own, shorter window.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        retention_days: int = 30,
        change_retention_days: int = 7,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.retention = timedelta(days=max(0, retention_days))
        self.change_retention = timedelta(days=max(0, change_retention_days))
        self._clock = clock or utcnow

    async def list_open(self, kind: RecordKind, backlog_filter: BacklogFilter | None = None) -> list[Record]:
        """Return every visible record matching the filter; paging fields are ignored."""
        query, _ = self._build_query(kind, backlog_filter or BacklogFilter(), paged=False)
        return await self.store.list(kind, query)

    async def page(self, kind: RecordKind, backlog_filter: BacklogFilter | None = None) -> BacklogPage:
        backlog_filter = backlog_filter or BacklogFilter()
        query, visible_since = self._build_query(kind, backlog_filter)
        items = await self.store.list(kind, query)
        total = await self.store.count(kind, query)
        return BacklogPage(
            kind=kind,
            items=items,
            total=total,
            visible_since=visible_since,
            limit=query.limit or 0,
            offset=query.offset,
        )

    def _build_query(
        self,
        kind: RecordKind,
        backlog_filter: BacklogFilter,
        *,
        paged: bool = True,
    ) -> tuple[RecordQuery, datetime]:
        if kind not in BACKLOG_KINDS:
            raise RepositoryValidationError(f"unsupported backlog kind: {kind.value}")
        if paged:
            if backlog_filter.limit < 1 or backlog_filter.limit > MAX_PAGE_SIZE:
                raise RepositoryValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
            if backlog_filter.offset < 0:
                raise RepositoryValidationError("offset must be >= 0")

        now = self._clock()
        query = RecordQuery(
            code=_normalize_text(backlog_filter.code),
            monitor_id=_normalize_text(backlog_filter.monitor_id),
            session_id=backlog_filter.session_id,
            order_by="created_at",
            limit=backlog_filter.limit if paged else None,
            offset=backlog_filter.offset if paged else 0,
        )
        if kind is RecordKind.CHANGE:
            if backlog_filter.status is not None:
                raise RepositoryValidationError("changes do not carry a status")
            query.created_since = now - self.change_retention
            return query, query.created_since

        if backlog_filter.status is not None:
            # raises UnknownStatusError for text outside the closed enum
            query.status = parse_enum(STATUS_TYPES[kind], backlog_filter.status)
        query.visible_since = now - self.retention
        return query, query.visible_since


def _normalize_text(value: Any) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


@lru_cache
def get_backlog_engine() -> BacklogQueryEngine:
    settings = get_settings()
    return BacklogQueryEngine(
        get_repository(),
        retention_days=settings.backlog_retention_days,
        change_retention_days=settings.change_retention_days,
    )
