from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from driftwatch.services.models import ContentMonitor
from driftwatch.services.snapshots import SnapshotStore, difference_percent, has_drift
from driftwatch.services.store import InMemoryRecordStore, RepositoryNotFoundError


def test_difference_percent_bounds() -> None:
    assert difference_percent("a\nb", "a\nb") == 0
    assert difference_percent("", "a") == 100
    assert difference_percent("a", "") == 100
    assert difference_percent("a\nb", "x\ny") == 100


def test_difference_percent_scales_with_changed_lines() -> None:
    before = "line a\nline b\nline c\nline d"
    assert difference_percent(before, "line a\nline b\nline c\nline e") == 25
    assert 1 <= difference_percent("x" * 10, "x" * 10 + " ") <= 100


def test_has_drift_is_an_exact_comparison() -> None:
    assert not has_drift("S0", "S0")
    assert has_drift("S0", "S0 ")


def test_snapshot_store_loads_saves_and_lists_active_monitors() -> None:
    async def run() -> None:
        store = InMemoryRecordStore()
        snapshots = SnapshotStore(store)
        executed = ContentMonitor(
            id="m-1",
            code="ACME",
            content_type="listing",
            name="jobs",
            executed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        await store.add(executed)
        await store.add(ContentMonitor(id="m-2", code="ACME", content_type="listing", name="fresh"))
        await store.add(ContentMonitor(id="m-3", code="ACME", content_type="listing", name="off", active=False))

        active = await snapshots.list_active()
        assert [monitor.id for monitor in active] == ["m-2", "m-1"]

        monitor = await snapshots.load("m-1")
        monitor.snapshot = "S0"
        saved = await snapshots.save(monitor)
        assert saved.snapshot == "S0"
        assert (await snapshots.load("m-1")).snapshot == "S0"

        with pytest.raises(RepositoryNotFoundError):
            await snapshots.load("missing")

    asyncio.run(run())
