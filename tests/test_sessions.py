from __future__ import annotations

import asyncio
import threading

from driftwatch.services.models import ContentMonitor, ContentReview, ReviewReason
from driftwatch.services.sessions import SessionCorrelator
from driftwatch.services.store import InMemoryRecordStore


def test_next_session_strictly_increases() -> None:
    correlator = SessionCorrelator()
    issued = [correlator.next_session() for _ in range(5)]
    assert issued == [1, 2, 3, 4, 5]
    assert correlator.last_session == 5


def test_concurrent_callers_never_receive_duplicate_ids() -> None:
    correlator = SessionCorrelator()
    issued: list[int] = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(200):
            value = correlator.next_session()
            with lock:
                issued.append(value)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(issued) == 1600
    assert len(set(issued)) == 1600
    assert max(issued) == 1600


def test_seed_never_moves_backwards() -> None:
    correlator = SessionCorrelator(seed=10)
    assert correlator.seed(3) == 10
    assert correlator.next_session() == 11
    assert correlator.seed(40) == 40
    assert correlator.next_session() == 41
    assert correlator.initialized


def test_initialize_seeds_from_largest_stored_session() -> None:
    async def run() -> int:
        store = InMemoryRecordStore()
        await store.add(ContentMonitor(id="m-1", code="ACME", content_type="listing", name="jobs"))
        await store.add(
            ContentReview(id="r-1", code="ACME", monitor_id="m-1", reason=ReviewReason.CHANGE, session_id=7)
        )
        correlator = SessionCorrelator()
        assert not correlator.initialized
        await correlator.initialize(store)
        return correlator.next_session()

    assert asyncio.run(run()) == 8


def test_correlators_sharing_a_store_draw_from_one_sequence() -> None:
    async def run() -> list[int]:
        store = InMemoryRecordStore()
        await store.add(ContentMonitor(id="m-1", code="ACME", content_type="listing", name="jobs"))
        await store.add(
            ContentReview(id="r-1", code="ACME", monitor_id="m-1", reason=ReviewReason.CHANGE, session_id=3)
        )
        api, worker = SessionCorrelator(), SessionCorrelator()
        await api.initialize(store)
        await worker.initialize(store)
        return [
            await api.allocate(store),
            await worker.allocate(store),
            await api.allocate(store),
            await worker.allocate(store),
        ]

    assert asyncio.run(run()) == [4, 5, 6, 7]


def test_allocate_respects_a_local_floor_ahead_of_the_store() -> None:
    async def run() -> tuple[int, int]:
        correlator = SessionCorrelator(seed=20)
        issued = await correlator.allocate(InMemoryRecordStore())
        return issued, correlator.last_session

    assert asyncio.run(run()) == (21, 21)
