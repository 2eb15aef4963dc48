from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any

from opentelemetry import trace

from driftwatch.core.config import Settings, get_settings
from driftwatch.core.telemetry import current_session
from driftwatch.services.dedupe import Deduplicator
from driftwatch.services.fetcher import ContentFetcher, FetchError, HttpContentFetcher
from driftwatch.services.locks import KeyedLocks
from driftwatch.services.models import (
    AlertStatus,
    ContentAlert,
    ContentFailure,
    ContentMonitor,
    ContentReview,
    FailureReason,
    FailureStatus,
    Record,
    RecordKind,
    ReviewStatus,
    WorkflowRecord,
)
from driftwatch.services.notifier import Notifier, build_notifier
from driftwatch.services.repository import get_repository
from driftwatch.services.sessions import SessionCorrelator, get_session_correlator
from driftwatch.services.snapshots import SnapshotStore
from driftwatch.services.state_machine import MonitorStateMachine, Transition
from driftwatch.services.store import (
    DuplicateKeyError,
    RecordStore,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    utcnow,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_REVIEW_TRANSITIONS: dict[ReviewStatus, set[ReviewStatus]] = {
    ReviewStatus.NEW: {ReviewStatus.IN_PROGRESS, ReviewStatus.CONFIRMED, ReviewStatus.REJECTED},
    ReviewStatus.IN_PROGRESS: {ReviewStatus.NEW, ReviewStatus.CONFIRMED, ReviewStatus.REJECTED},
    ReviewStatus.CONFIRMED: set(),
    ReviewStatus.REJECTED: set(),
}
_ALERT_TRANSITIONS: dict[AlertStatus, set[AlertStatus]] = {
    AlertStatus.NEW: {AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED},
    AlertStatus.ACKNOWLEDGED: {AlertStatus.RESOLVED},
    AlertStatus.RESOLVED: set(),
}
_FAILURE_TRANSITIONS: dict[FailureStatus, set[FailureStatus]] = {
    FailureStatus.NEW: {FailureStatus.ACKNOWLEDGED, FailureStatus.RESOLVED},
    FailureStatus.ACKNOWLEDGED: {FailureStatus.RESOLVED},
    FailureStatus.RESOLVED: set(),
}


@dataclass(slots=True)
class SweepReport:
    session: int
    monitors_processed: int = 0
    changes_found: int = 0
    alerts_raised: int = 0
    reviews_opened: int = 0
    failures_recorded: int = 0
    suppressed: int = 0
    persistence_errors: int = 0
    unexpected_errors: int = 0
    notification_errors: int = 0
    monitors_skipped: int = 0
    aborted: bool = False
    cancelled: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CommitResult:
    transition: Transition
    admitted: list[WorkflowRecord] = field(default_factory=list)
    suppressed: list[WorkflowRecord] = field(default_factory=list)


class WorkflowRouter:
    def __init__(
        self,
        store: RecordStore,
        fetcher: ContentFetcher,
        notifier: Notifier,
        correlator: SessionCorrelator,
        *,
        deduplicator: Deduplicator | None = None,
        state_machine: MonitorStateMachine | None = None,
        concurrency: int = 4,
        actor: str = "sweep",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.notifier = notifier
        self.correlator = correlator
        self.deduplicator = deduplicator or Deduplicator()
        self.state_machine = state_machine or MonitorStateMachine()
        self.concurrency = max(1, concurrency)
        self.actor = actor
        self._clock = clock or utcnow
        self._monitor_locks = KeyedLocks()

    async def run_sweep(self, *, cancel_event: asyncio.Event | None = None) -> SweepReport:
        try:
            session = await self._next_session()
        except RepositoryError as exc:
            logger.error("sweep aborted before session allocation error=%s", exc)
            return SweepReport(session=self.correlator.last_session, aborted=True)

        report = SweepReport(session=session, started_at=self._clock())
        session_token = current_session.set(session)
        try:
            with tracer.start_as_current_span("sweep.run") as span:
                span.set_attribute("sweep.session", session)
                try:
                    await self._sweep(session, report, cancel_event)
                except Exception:  # pragma: no cover - orchestration robustness
                    report.aborted = True
                    logger.exception("sweep orchestration failed session=%s", session)
                report.finished_at = self._clock()
                span.set_attribute("sweep.monitors_processed", report.monitors_processed)
                span.set_attribute("sweep.aborted", report.aborted)
        finally:
            current_session.reset(session_token)

        logger.info(
            "sweep finished session=%s processed=%s changes=%s reviews=%s alerts=%s failures=%s "
            "suppressed=%s persistence_errors=%s skipped=%s aborted=%s cancelled=%s",
            session,
            report.monitors_processed,
            report.changes_found,
            report.reviews_opened,
            report.alerts_raised,
            report.failures_recorded,
            report.suppressed,
            report.persistence_errors,
            report.monitors_skipped,
            report.aborted,
            report.cancelled,
        )
        return report

    async def _sweep(self, session: int, report: SweepReport, cancel_event: asyncio.Event | None) -> None:
        try:
            monitors = await SnapshotStore(self.store).list_active()
        except RepositoryError as exc:
            report.aborted = True
            logger.error("sweep aborted listing monitors session=%s error=%s", session, exc)
            return

        logger.info("sweep started session=%s monitors=%s concurrency=%s", session, len(monitors), self.concurrency)
        abort = asyncio.Event()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(monitor: ContentMonitor) -> None:
            async with semaphore:
                if abort.is_set() or (cancel_event is not None and cancel_event.is_set()):
                    report.monitors_skipped += 1
                    if cancel_event is not None and cancel_event.is_set():
                        report.cancelled = True
                    return
                try:
                    await self._process_monitor(monitor, session, report)
                except RepositoryUnavailableError as exc:
                    abort.set()
                    report.aborted = True
                    logger.error(
                        "sweep aborted store unavailable session=%s monitor_id=%s error=%s",
                        session,
                        monitor.id,
                        exc,
                    )
                except Exception:
                    report.unexpected_errors += 1
                    logger.exception("monitor processing failed session=%s monitor_id=%s", session, monitor.id)

        await asyncio.gather(*(run_one(monitor) for monitor in monitors))

    async def _process_monitor(self, monitor: ContentMonitor, session: int, report: SweepReport) -> None:
        async with self._monitor_lock(monitor.id):
            with tracer.start_as_current_span("sweep.monitor") as span:
                span.set_attribute("monitor.id", monitor.id)
                span.set_attribute("monitor.code", monitor.code)
                fetch_error: FetchError | None = None
                snapshot = ""
                execution_time = -1
                entity_id: str | None = None
                try:
                    fetched = await self.fetcher.fetch_snapshot(monitor)
                    snapshot = fetched.snapshot
                    execution_time = fetched.execution_time
                    entity_id = fetched.entity_id
                except FetchError as exc:
                    fetch_error = exc
                    logger.warning(
                        "fetch failed session=%s monitor_id=%s guid=%s reason=%s error=%s",
                        session,
                        monitor.id,
                        monitor.guid,
                        exc.reason.value,
                        exc,
                    )
                except Exception as exc:
                    fetch_error = FetchError(f"unexpected fetch error: {exc}", reason=FailureReason.UNDEFINED)
                    logger.exception(
                        "fetcher raised unexpectedly session=%s monitor_id=%s guid=%s",
                        session,
                        monitor.id,
                        monitor.guid,
                    )

                def decide(current: ContentMonitor) -> Transition:
                    now = self._clock()
                    if fetch_error is not None:
                        return self.state_machine.on_failure(
                            current,
                            str(fetch_error),
                            reason=fetch_error.reason,
                            session_id=session,
                            now=now,
                            actor=self.actor,
                        )
                    return self.state_machine.on_success(
                        current,
                        snapshot,
                        session_id=session,
                        now=now,
                        execution_time=execution_time,
                        actor=self.actor,
                        entity_id=entity_id,
                    )

                try:
                    result = await self._commit(monitor.id, monitor.code, decide)
                except RepositoryUnavailableError:
                    raise
                except RepositoryError as exc:
                    report.persistence_errors += 1
                    logger.warning(
                        "monitor result discarded session=%s monitor_id=%s error=%s",
                        session,
                        monitor.id,
                        exc,
                    )
                    return

                if result is None:
                    report.monitors_skipped += 1
                    logger.info("monitor deactivated mid-sweep session=%s monitor_id=%s", session, monitor.id)
                    return

                transition = result.transition
                span.set_attribute("monitor.from_status", transition.from_status.value)
                span.set_attribute("monitor.to_status", transition.to_status.value)
                report.monitors_processed += 1
                if transition.change is not None:
                    report.changes_found += 1
                if fetch_error is not None:
                    report.failures_recorded += 1
                report.suppressed += len(result.suppressed)
                for record in result.admitted:
                    if isinstance(record, ContentReview):
                        report.reviews_opened += 1
                    elif isinstance(record, ContentAlert):
                        report.alerts_raised += 1

                if transition.changed or result.admitted:
                    logger.info(
                        "monitor transition session=%s monitor_id=%s from=%s to=%s outcome=%s admitted=%s suppressed=%s",
                        session,
                        monitor.id,
                        transition.from_status.value,
                        transition.to_status.value,
                        transition.outcome,
                        len(result.admitted),
                        len(result.suppressed),
                    )

                await self._notify_admitted(result, report)

    async def _commit(
        self,
        monitor_id: str,
        code: str,
        decide: Callable[[ContentMonitor], Transition],
    ) -> CommitResult | None:
        async with self.deduplicator.lock_for(code):
            async with self.store.transaction() as tx:
                await tx.lock_code(code)
                current = await SnapshotStore(tx).load(monitor_id)
                if not current.active:
                    return None
                transition = decide(current)
                return await self._apply(tx, transition)

    async def _apply(self, tx: RecordStore, transition: Transition) -> CommitResult:
        result = CommitResult(transition=transition)
        if transition.change is not None:
            await self._add_idempotent(tx, transition.change)

        for candidate in transition.candidates:
            admission = await self.deduplicator.check(tx, candidate)
            if admission.admitted:
                await self._add_idempotent(tx, candidate)
                result.admitted.append(candidate)
                continue

            result.suppressed.append(candidate)
            if admission.existing_id is not None:
                transition.repoint_event(candidate.id, admission.existing_id)
                if isinstance(candidate, ContentFailure):
                    await self._record_repeat_failure(tx, admission.existing_id, candidate)

        transition.monitor = await SnapshotStore(tx).save(transition.monitor)
        return result

    async def _add_idempotent(self, tx: RecordStore, record: Record) -> None:
        try:
            await tx.add(record)
        except DuplicateKeyError:
            # a retried sweep may recreate a record that already landed
            logger.info("record already exists id=%s type=%s", record.id, type(record).__name__)

    async def _record_repeat_failure(self, tx: RecordStore, existing_id: str, candidate: ContentFailure) -> None:
        existing = await tx.get_by_id(RecordKind.FAILURE, existing_id)
        if not isinstance(existing, ContentFailure):
            return
        occurrences = existing.attributes.get("occurrences")
        existing.attributes["occurrences"] = (occurrences if isinstance(occurrences, int) else 1) + 1
        existing.attributes["last_error"] = candidate.notes
        existing.attributes["last_session_id"] = candidate.session_id
        await tx.update(existing)

    async def _notify_admitted(self, result: CommitResult, report: SweepReport | None = None) -> None:
        monitor = result.transition.monitor
        for record in result.admitted:
            if not isinstance(record, ContentAlert):
                continue
            if not monitor.alerts:
                logger.info("alert notification skipped alerts disabled alert_id=%s monitor_id=%s", record.id, monitor.id)
                continue
            try:
                delivery_id = await self.notifier.notify(record, monitor)
            except Exception as exc:
                # the stored alert is the record of truth; delivery is best effort
                if report is not None:
                    report.notification_errors += 1
                logger.warning(
                    "alert notification failed session=%s alert_id=%s error=%s",
                    record.session_id,
                    record.id,
                    exc,
                )
                continue
            logger.info(
                "alert notification sent session=%s alert_id=%s delivery_id=%s",
                record.session_id,
                record.id,
                delivery_id,
            )

    async def resolve_review(
        self,
        review_id: str,
        *,
        status: ReviewStatus | None,
        actor: str,
        notes: str | None = None,
        substantive: bool | None = None,
    ) -> ContentReview:
        review = await self._get_record(RecordKind.REVIEW, review_id, ContentReview)
        session = await self._next_session()
        async with self._monitor_lock(review.monitor_id):
            async with self.deduplicator.lock_for(review.code):
                async with self.store.transaction() as tx:
                    await tx.lock_code(review.code)
                    review = await self._get_record(RecordKind.REVIEW, review_id, ContentReview, store=tx)
                    from_status = review.status
                    if status is not None and status is not from_status:
                        _validate_record_transition(_REVIEW_TRANSITIONS, from_status, status, label="review")
                        review.status = status
                    if notes is not None:
                        review.notes = notes
                    if substantive is not None:
                        review.substantive = substantive
                    review.attributes["resolved_by"] = actor
                    review = await tx.update(review)  # type: ignore[assignment]

                    result: CommitResult | None = None
                    if review.status is not from_status and review.status in {ReviewStatus.CONFIRMED, ReviewStatus.REJECTED}:
                        monitor = await SnapshotStore(tx).load(review.monitor_id)
                        transition = self.state_machine.on_review_resolved(
                            monitor,
                            review,
                            session_id=session,
                            now=self._clock(),
                            actor=actor,
                        )
                        result = await self._apply(tx, transition)

        if result is not None:
            logger.info(
                "review resolved session=%s review_id=%s status=%s monitor_id=%s from=%s to=%s",
                session,
                review.id,
                review.status.value,
                review.monitor_id,
                result.transition.from_status.value,
                result.transition.to_status.value,
            )
            await self._notify_admitted(result)
        return review

    async def resolve_alert(
        self,
        alert_id: str,
        *,
        status: AlertStatus | None,
        actor: str,
        notes: str | None = None,
    ) -> ContentAlert:
        alert = await self._get_record(RecordKind.ALERT, alert_id, ContentAlert)
        async with self._monitor_lock(alert.monitor_id):
            async with self.store.transaction() as tx:
                alert = await self._get_record(RecordKind.ALERT, alert_id, ContentAlert, store=tx)
                from_status = alert.status
                if status is not None and status is not from_status:
                    _validate_record_transition(_ALERT_TRANSITIONS, from_status, status, label="alert")
                    alert.status = status
                if notes is not None:
                    alert.attributes["notes"] = notes
                alert.attributes["resolved_by"] = actor
                alert = await tx.update(alert)  # type: ignore[assignment]
                if alert.status is not from_status and alert.status is AlertStatus.RESOLVED:
                    monitor = await SnapshotStore(tx).load(alert.monitor_id)
                    transition = self.state_machine.on_alert_resolved(monitor, alert)
                    await SnapshotStore(tx).save(transition.monitor)
                    logger.info(
                        "alert resolved alert_id=%s monitor_id=%s from=%s to=%s",
                        alert.id,
                        alert.monitor_id,
                        transition.from_status.value,
                        transition.to_status.value,
                    )
        return alert

    async def resolve_failure(
        self,
        failure_id: str,
        *,
        status: FailureStatus | None,
        actor: str,
        notes: str | None = None,
    ) -> ContentFailure:
        failure = await self._get_record(RecordKind.FAILURE, failure_id, ContentFailure)
        async with self._monitor_lock(failure.monitor_id):
            async with self.store.transaction() as tx:
                failure = await self._get_record(RecordKind.FAILURE, failure_id, ContentFailure, store=tx)
                from_status = failure.status
                if status is not None and status is not from_status:
                    _validate_record_transition(_FAILURE_TRANSITIONS, from_status, status, label="failure")
                    failure.status = status
                    failure.reviewed_at = self._clock()
                if notes is not None:
                    failure.notes = notes
                failure.attributes["resolved_by"] = actor
                failure = await tx.update(failure)  # type: ignore[assignment]
                if failure.status is not from_status and failure.status is FailureStatus.RESOLVED:
                    monitor = await SnapshotStore(tx).load(failure.monitor_id)
                    transition = self.state_machine.on_failure_resolved(monitor, failure)
                    await SnapshotStore(tx).save(transition.monitor)
                    logger.info(
                        "failure resolved failure_id=%s monitor_id=%s from=%s to=%s",
                        failure.id,
                        failure.monitor_id,
                        transition.from_status.value,
                        transition.to_status.value,
                    )
        return failure

    async def restart_monitor(self, monitor_id: str, *, actor: str) -> ContentMonitor:
        async with self._monitor_lock(monitor_id):
            async with self.store.transaction() as tx:
                monitor = await SnapshotStore(tx).load(monitor_id)
                transition = self.state_machine.restart(monitor)
                saved = await SnapshotStore(tx).save(transition.monitor)
        logger.info(
            "monitor restarted monitor_id=%s actor=%s from=%s",
            monitor_id,
            actor,
            transition.from_status.value,
        )
        return saved

    async def update_monitor(
        self,
        monitor_id: str,
        *,
        actor: str,
        active: bool | None = None,
        alerts: bool | None = None,
        url: str | None = None,
        interval: int | None = None,
    ) -> ContentMonitor:
        # settings only; status stays owned by the state machine
        async with self._monitor_lock(monitor_id):
            async with self.store.transaction() as tx:
                monitor = await SnapshotStore(tx).load(monitor_id)
                if active is not None:
                    monitor.active = active
                if alerts is not None:
                    monitor.alerts = alerts
                if url is not None:
                    monitor.url = url.strip()
                if interval is not None:
                    monitor.interval = max(1, interval)
                saved = await SnapshotStore(tx).save(monitor)
        logger.info(
            "monitor updated monitor_id=%s actor=%s active=%s alerts=%s",
            monitor_id,
            actor,
            saved.active,
            saved.alerts,
        )
        return saved

    async def _next_session(self) -> int:
        # the store issues ids so the API and the worker never share one
        return await self.correlator.allocate(self.store)

    async def _get_record(self, kind: RecordKind, record_id: str, record_type: type, *, store: RecordStore | None = None):
        record = await (store or self.store).get_by_id(kind, record_id)
        if not isinstance(record, record_type):
            raise RepositoryNotFoundError(f"{kind.value} not found")
        return record

    def _monitor_lock(self, monitor_id: str) -> AbstractAsyncContextManager[None]:
        return self._monitor_locks.hold(monitor_id)


def _validate_record_transition(allowed_transitions: dict, from_status: Any, to_status: Any, *, label: str) -> None:
    allowed = allowed_transitions.get(from_status)
    if not allowed or to_status not in allowed:
        raise RepositoryConflictError(f"invalid {label} status transition: {from_status.value} -> {to_status.value}")


def build_workflow_router(
    settings: Settings,
    store: RecordStore,
    *,
    correlator: SessionCorrelator | None = None,
    fetcher: ContentFetcher | None = None,
    notifier: Notifier | None = None,
) -> WorkflowRouter:
    return WorkflowRouter(
        store=store,
        fetcher=fetcher
        or HttpContentFetcher(timeout_seconds=settings.fetch_timeout_seconds, max_bytes=settings.fetch_max_bytes),
        notifier=notifier or build_notifier(settings.notify_webhook_url, timeout_seconds=settings.notify_timeout_seconds),
        correlator=correlator or get_session_correlator(),
        state_machine=MonitorStateMachine(alert_difference_threshold=settings.alert_difference_threshold),
        concurrency=settings.sweep_concurrency,
    )


@lru_cache
def get_workflow_router() -> WorkflowRouter:
    return build_workflow_router(get_settings(), get_repository())
