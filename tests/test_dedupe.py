from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from driftwatch.services.dedupe import Deduplicator, admit, open_records_query, target_of
from driftwatch.services.models import (
    AlertReason,
    AlertStatus,
    ContentAlert,
    ContentFailure,
    ContentMonitor,
    FailureReason,
    ReviewReason,
)
from driftwatch.services.store import InMemoryRecordStore

NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _alert(
    alert_id: str,
    *,
    entity_id: str = "listing-ACME-jobs",
    reason: AlertReason = AlertReason.CHANGE,
    status: AlertStatus = AlertStatus.NEW,
    monitor_id: str = "m-1",
    created_at: datetime | None = None,
) -> ContentAlert:
    return ContentAlert(
        id=alert_id,
        code="ACME",
        monitor_id=monitor_id,
        reason=reason,
        status=status,
        attributes={"guid": "listing-ACME-jobs", "content_type": "listing", "entity_id": entity_id},
        created_at=created_at,
    )


def test_open_record_for_same_target_suppresses_candidate() -> None:
    existing = _alert("a-1", created_at=NOW)
    admission = admit(_alert("a-2"), [existing])

    assert admission.decision == "suppress"
    assert not admission.admitted
    assert admission.existing_id == "a-1"
    assert admission.metadata["reason"] == "open_record_for_target"


def test_oldest_open_record_is_reported_as_the_existing_one() -> None:
    newer = _alert("a-new", created_at=NOW + timedelta(hours=1))
    older = _alert("a-old", created_at=NOW)
    admission = admit(_alert("a-3"), [newer, older])

    assert admission.existing_id == "a-old"


def test_resolved_or_different_targets_do_not_suppress() -> None:
    candidate = _alert("a-9")
    others = [
        _alert("a-resolved", status=AlertStatus.RESOLVED),
        _alert("a-acked", status=AlertStatus.ACKNOWLEDGED),
        _alert("a-entity", entity_id="article-2"),
        _alert("a-reason", reason=AlertReason.THRESHOLD),
        _alert("a-monitor", monitor_id="m-2"),
    ]
    admission = admit(candidate, others)

    assert admission.decision == "admit"
    assert admission.existing_id is None
    assert admission.metadata["reason"] == "no_open_record_for_target"


def test_candidate_never_suppresses_itself() -> None:
    candidate = _alert("a-1")
    assert admit(candidate, [candidate]).admitted


def test_records_of_another_type_never_match() -> None:
    failure = ContentFailure(
        id="f-1",
        code="ACME",
        monitor_id="m-1",
        reason=FailureReason.FETCH,
        attributes={"content_type": "listing", "entity_id": "listing-ACME-jobs"},
    )
    assert admit(_alert("a-1"), [failure]).admitted  # type: ignore[list-item]


def test_target_and_query_cover_code_reason_and_monitor() -> None:
    candidate = _alert("a-1", reason=AlertReason.THRESHOLD)
    target = target_of(candidate)
    query = open_records_query(candidate)

    assert target.entity_id == "listing-ACME-jobs"
    assert target.content_type == "listing"
    assert target.reason == "THRESHOLD"
    assert query.status_text() == "NEW"
    assert query.code == "ACME"
    assert query.reason_text() == "THRESHOLD"
    assert query.monitor_id == "m-1"
    assert ReviewReason.CHANGE.value == "CHANGE"


def test_check_reads_open_records_from_the_store() -> None:
    async def run() -> tuple[bool, bool]:
        store = InMemoryRecordStore()
        await store.add(ContentMonitor(id="m-1", code="ACME", content_type="listing", name="jobs"))
        deduplicator = Deduplicator()

        first = await deduplicator.check(store, _alert("a-1"))
        await store.add(_alert("a-1"))
        second = await deduplicator.check(store, _alert("a-2"))
        return first.admitted, second.admitted

    assert asyncio.run(run()) == (True, False)


def test_lock_for_serialises_one_organisation_and_is_released() -> None:
    async def run() -> tuple[list[str], int]:
        deduplicator = Deduplicator()
        events: list[str] = []

        async def admit_under_lock(name: str, code: str) -> None:
            async with deduplicator.lock_for(code):
                events.append(f"{name}:start")
                await asyncio.sleep(0)
                events.append(f"{name}:end")

        await asyncio.gather(
            admit_under_lock("a", "ACME"),
            admit_under_lock("b", "ACME"),
            admit_under_lock("c", "OTHER"),
        )
        return events, len(deduplicator.locks)

    events, remaining = asyncio.run(run())

    assert events.index("a:end") < events.index("b:start")
    assert events.index("c:start") < events.index("a:end")
    assert remaining == 0
