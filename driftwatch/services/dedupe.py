from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any, Literal

from driftwatch.services.locks import KeyedLocks
from driftwatch.services.models import WorkflowRecord, kind_of
from driftwatch.services.store import RecordQuery, RecordStore

AdmissionDecision = Literal["admit", "suppress"]

OPEN_STATUS = "NEW"


@dataclass(slots=True, frozen=True)
class DedupeTarget:
    monitor_id: str
    code: str
    content_type: str | None
    entity_id: str | None
    reason: str


@dataclass(slots=True)
class Admission:
    decision: AdmissionDecision
    target: DedupeTarget
    existing_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def admitted(self) -> bool:
        return self.decision == "admit"


def target_of(record: WorkflowRecord) -> DedupeTarget:
    attributes = record.attributes if isinstance(record.attributes, dict) else {}
    return DedupeTarget(
        monitor_id=record.monitor_id,
        code=record.code,
        content_type=_coerce_text(attributes.get("content_type")),
        entity_id=_coerce_text(attributes.get("entity_id")),
        reason=str(record.reason.value),
    )


def admit(candidate: WorkflowRecord, open_records: list[WorkflowRecord]) -> Admission:
    """Suppress the candidate when an open record already stands for the same target and reason."""
    target = target_of(candidate)
    ranked = sorted(
        (row for row in open_records if row.is_open and row.id != candidate.id),
        key=lambda row: (row.created_at is None, row.created_at, row.id),
    )
    for row in ranked:
        if type(row) is not type(candidate):
            continue
        if target_of(row) == target:
            return Admission(
                decision="suppress",
                target=target,
                existing_id=row.id,
                metadata={"reason": "open_record_for_target", "open_candidates": len(ranked)},
            )

    return Admission(
        decision="admit",
        target=target,
        metadata={"reason": "no_open_record_for_target", "open_candidates": len(ranked)},
    )


def open_records_query(candidate: WorkflowRecord) -> RecordQuery:
    return RecordQuery(
        status=OPEN_STATUS,
        code=candidate.code,
        reason=candidate.reason,
        monitor_id=candidate.monitor_id,
    )


class Deduplicator:
    """Admission gate for reviews, alerts and failures.

    Callers hold ``lock_for(code)`` across ``check`` and the insert that follows so two
    tasks in this process cannot both observe "no open record" for the same organisation.
    Other processes are kept out by ``RecordStore.lock_code`` inside the same transaction.
    """

    def __init__(self) -> None:
        self.locks = KeyedLocks()

    def lock_for(self, code: str) -> AbstractAsyncContextManager[None]:
        return self.locks.hold(code)

    async def check(self, store: RecordStore, candidate: WorkflowRecord) -> Admission:
        rows = await store.list(kind_of(candidate), open_records_query(candidate))
        open_rows = [row for row in rows if isinstance(row, type(candidate))]
        return admit(candidate, open_rows)


def _coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)
