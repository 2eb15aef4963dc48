from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from driftwatch.services.backlog import BacklogFilter, BacklogQueryEngine
from driftwatch.services.fetcher import FetchResult
from driftwatch.services.models import (
    ContentMonitor,
    ContentReview,
    MonitorStatus,
    RecordKind,
    ReviewReason,
    ReviewStatus,
)
from driftwatch.services.repository import PostgresRecordStore
from driftwatch.services.sessions import SessionCorrelator
from driftwatch.services.store import DuplicateKeyError, RecordQuery
from driftwatch.services.workflow import WorkflowRouter

T = TypeVar("T")

S0 = "line a\nline b\nline c\nline d"
S1 = "line a\nline b\nline c\nline e"


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("DW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require DW_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_prepare_tables(database_url))


class SequenceFetcher:
    def __init__(self, snapshots: list[str]) -> None:
        self.snapshots = snapshots

    async def fetch_snapshot(self, monitor: ContentMonitor) -> FetchResult:
        snapshot = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
        return FetchResult(snapshot=snapshot, execution_time=5)


class NullNotifier:
    async def notify(self, alert, monitor) -> str | None:
        return None


def _store(database_url: str) -> PostgresRecordStore:
    return PostgresRecordStore(database_url, 1, 2, auto_create_schema=True)


def _monitor(monitor_id: str = "m-1", name: str = "jobs") -> ContentMonitor:
    return ContentMonitor(id=monitor_id, code="ACME", content_type="listing", name=name, url="https://acme.example")


def test_records_round_trip_through_postgres(database_url: str) -> None:
    async def run() -> None:
        store = _store(database_url)
        try:
            stored = await store.add(_monitor())
            assert stored.created_at is not None
            assert stored.status is MonitorStatus.NEW

            with pytest.raises(DuplicateKeyError):
                await store.add(_monitor())
            with pytest.raises(DuplicateKeyError):
                await store.add(_monitor(monitor_id="m-2"))

            stored.snapshot = S0
            stored.status = MonitorStatus.PENDING
            updated = await store.update(stored)
            assert updated.snapshot == S0

            review = await store.add(
                ContentReview(
                    id="r-1",
                    code="ACME",
                    monitor_id="m-1",
                    reason=ReviewReason.CHANGE,
                    attributes={"difference": 25, "guid": stored.guid},
                    session_id=7,
                )
            )
            assert review.attributes == {"difference": 25, "guid": "listing-ACME-jobs"}
            assert review.status is ReviewStatus.NEW
            assert await store.max_session_id() == 7
            assert await store.count(RecordKind.REVIEW, RecordQuery(status="NEW", code="ACME")) == 1
        finally:
            await store.close()

    _run(run())


def test_backlog_hides_old_terminal_records(database_url: str) -> None:
    async def run() -> None:
        store = _store(database_url)
        try:
            await store.add(_monitor())
            for review_id, status in (("r-old-new", ReviewStatus.NEW), ("r-old-done", ReviewStatus.REJECTED)):
                await store.add(
                    ContentReview(
                        id=review_id,
                        code="ACME",
                        monitor_id="m-1",
                        reason=ReviewReason.CHANGE,
                        status=status,
                        session_id=1,
                    )
                )
            await _execute(database_url, "update content_reviews set created_at = now() - interval '60 days'")

            engine = BacklogQueryEngine(store, retention_days=30)
            visible = await engine.list_open(RecordKind.REVIEW, BacklogFilter(code="ACME"))
            assert [review.id for review in visible] == ["r-old-new"]
        finally:
            await store.close()

    _run(run())


def test_sweep_persists_change_and_review(database_url: str) -> None:
    async def run() -> None:
        store = _store(database_url)
        try:
            await store.add(_monitor())
            router = WorkflowRouter(
                store=store,
                fetcher=SequenceFetcher([S0, S1]),
                notifier=NullNotifier(),
                correlator=SessionCorrelator(),
            )

            first = await router.run_sweep()
            second = await router.run_sweep()

            assert second.session == first.session + 1
            assert second.changes_found == 1
            assert second.reviews_opened == 1
            monitor = await store.get_by_id(RecordKind.MONITOR, "m-1")
            assert monitor.status is MonitorStatus.CHANGE
            assert monitor.snapshot == S1
            reviews = await store.list(RecordKind.REVIEW, RecordQuery(session_id=second.session))
            assert len(reviews) == 1
            assert reviews[0].attributes["change_id"] == monitor.change_id
        finally:
            await store.close()

    _run(run())


def test_separate_stores_never_issue_the_same_session(database_url: str) -> None:
    async def run() -> None:
        api_store = _store(database_url)
        worker_store = _store(database_url)
        try:
            await api_store.add(_monitor())
            await api_store.add(
                ContentReview(id="r-1", code="ACME", monitor_id="m-1", reason=ReviewReason.CHANGE, session_id=41)
            )
            api, worker = SessionCorrelator(), SessionCorrelator()
            await api.initialize(api_store)
            await worker.initialize(worker_store)

            issued = await asyncio.gather(
                *(api.allocate(api_store) for _ in range(5)),
                *(worker.allocate(worker_store) for _ in range(5)),
            )

            assert sorted(issued) == list(range(42, 52))
        finally:
            await api_store.close()
            await worker_store.close()

    _run(run())


def test_code_lock_orders_transactions_across_connections(database_url: str) -> None:
    async def run() -> list[str]:
        first_store = _store(database_url)
        second_store = _store(database_url)
        events: list[str] = []
        first_locked = asyncio.Event()
        try:

            async def first() -> None:
                async with first_store.transaction() as tx:
                    await tx.lock_code("ACME")
                    first_locked.set()
                    await asyncio.sleep(0.2)
                    events.append("a-done")

            async def second() -> None:
                await first_locked.wait()
                async with second_store.transaction() as tx:
                    await tx.lock_code("ACME")
                    events.append("b-locked")

            await asyncio.gather(first(), second())
        finally:
            await first_store.close()
            await second_store.close()
        return events

    assert _run(run()) == ["a-done", "b-locked"]


async def _prepare_tables(database_url: str) -> None:
    store = _store(database_url)
    try:
        await store.ensure_schema()
    finally:
        await store.close()
    await _execute(
        database_url,
        """
        truncate table
          content_failures,
          content_alerts,
          content_reviews,
          content_changes,
          content_monitors,
          content_session_counter
        restart identity cascade
        """,
    )


async def _execute(database_url: str, sql: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(sql)
    finally:
        await conn.close()


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)
