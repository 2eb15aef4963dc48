from __future__ import annotations

import difflib

from driftwatch.services.models import ContentMonitor, RecordKind
from driftwatch.services.store import RecordQuery, RecordStore, RepositoryNotFoundError


class SnapshotStore:
    def __init__(self, store: RecordStore) -> None:
        self.store = store

    async def load(self, monitor_id: str) -> ContentMonitor:
        monitor = await self.store.get_by_id(RecordKind.MONITOR, monitor_id)
        if not isinstance(monitor, ContentMonitor):
            raise RepositoryNotFoundError(f"monitor not found: {monitor_id}")
        return monitor

    async def save(self, monitor: ContentMonitor) -> ContentMonitor:
        return await self.store.update(monitor)  # type: ignore[return-value]

    async def list_active(self, *, limit: int | None = None) -> list[ContentMonitor]:
        rows = await self.store.list(
            RecordKind.MONITOR,
            RecordQuery(active=True, order_by="executed_at", limit=limit),
        )
        return [row for row in rows if isinstance(row, ContentMonitor)]


def has_drift(current: str, latest: str) -> bool:
    return current != latest


def difference_percent(before: str, after: str) -> int:
    if before == after:
        return 0
    if not before or not after:
        return 100
    matcher = difflib.SequenceMatcher(None, before.splitlines(), after.splitlines(), autojunk=False)
    return max(1, min(100, round((1.0 - matcher.ratio()) * 100)))
