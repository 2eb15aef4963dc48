from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime

from driftwatch.services.models import (
    AlertReason,
    AlertStatus,
    ContentAlert,
    ContentChange,
    ContentFailure,
    ContentMonitor,
    ContentReview,
    EventType,
    FailureReason,
    FailureStatus,
    MonitorStatus,
    ReviewReason,
    ReviewStatus,
    WorkflowRecord,
    new_record_id,
    target_attributes,
)
from driftwatch.services.snapshots import difference_percent, has_drift
from driftwatch.services.store import RepositoryConflictError

_ALLOWED_TRANSITIONS: dict[MonitorStatus, set[MonitorStatus]] = {
    MonitorStatus.NEW: {
        MonitorStatus.PENDING,
        MonitorStatus.CHANGE,
        MonitorStatus.ALERT,
        MonitorStatus.FAILURE,
        MonitorStatus.COMPLETED,
    },
    MonitorStatus.PENDING: {MonitorStatus.CHANGE, MonitorStatus.ALERT, MonitorStatus.FAILURE, MonitorStatus.COMPLETED},
    MonitorStatus.CHANGE: {MonitorStatus.ALERT, MonitorStatus.FAILURE, MonitorStatus.COMPLETED},
    MonitorStatus.ALERT: {MonitorStatus.CHANGE, MonitorStatus.FAILURE, MonitorStatus.COMPLETED},
    MonitorStatus.FAILURE: {MonitorStatus.CHANGE, MonitorStatus.ALERT, MonitorStatus.COMPLETED},
    MonitorStatus.COMPLETED: {MonitorStatus.PENDING, MonitorStatus.CHANGE, MonitorStatus.ALERT, MonitorStatus.FAILURE},
}

_REARMED_STATUSES = {MonitorStatus.NEW, MonitorStatus.PENDING, MonitorStatus.COMPLETED}


class InvalidTransitionError(RepositoryConflictError):
    """Raised when a monitor status change is not in the transition table."""


@dataclass(slots=True)
class Transition:
    monitor: ContentMonitor
    from_status: MonitorStatus
    to_status: MonitorStatus
    outcome: str
    change: ContentChange | None = None
    reviews: list[ContentReview] = field(default_factory=list)
    alerts: list[ContentAlert] = field(default_factory=list)
    failures: list[ContentFailure] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.from_status is not self.to_status

    @property
    def candidates(self) -> list[WorkflowRecord]:
        return [*self.reviews, *self.alerts, *self.failures]

    def repoint_event(self, candidate_id: str, existing_id: str) -> None:
        # a suppressed candidate is never stored; the monitor links the record that stands for it
        if self.monitor.event_id == candidate_id:
            self.monitor.event_id = existing_id


class MonitorStateMachine:
    def __init__(self, *, alert_difference_threshold: int = 50) -> None:
        self.alert_difference_threshold = max(1, alert_difference_threshold)

    def on_success(
        self,
        monitor: ContentMonitor,
        latest_snapshot: str,
        *,
        session_id: int,
        now: datetime,
        execution_time: int = -1,
        actor: str = "sweep",
        entity_id: str | None = None,
    ) -> Transition:
        updated = copy.deepcopy(monitor)
        updated.executed_at = now
        updated.success_at = now
        updated.execution_time = execution_time
        updated.error_message = ""
        updated.retry = 0

        if updated.status is MonitorStatus.NEW and not updated.snapshot:
            updated.snapshot = latest_snapshot
            return self._finish(monitor, updated, MonitorStatus.PENDING, outcome="baseline_captured")

        if not has_drift(updated.snapshot, latest_snapshot):
            if updated.status in _REARMED_STATUSES:
                updated.clear_event()
                return self._finish(monitor, updated, MonitorStatus.PENDING, outcome="unchanged")
            if updated.status is MonitorStatus.FAILURE:
                updated.clear_event()
                return self._finish(monitor, updated, MonitorStatus.COMPLETED, outcome="recovered")
            return self._finish(monitor, updated, updated.status, outcome="awaiting_resolution")

        difference = difference_percent(updated.snapshot, latest_snapshot)
        change = ContentChange(
            id=new_record_id(),
            code=updated.code,
            monitor_id=updated.id,
            snapshot_before=updated.snapshot,
            snapshot_after=latest_snapshot,
            difference=difference,
            execution_time=execution_time,
            session_id=session_id,
            created_by=actor,
        )
        updated.snapshot = latest_snapshot
        updated.change_id = change.id
        attributes = {
            **target_attributes(updated, entity_id=entity_id),
            "change_id": change.id,
            "difference": difference,
        }

        if updated.alerts and difference >= self.alert_difference_threshold:
            alert = ContentAlert(
                id=new_record_id(),
                code=updated.code,
                monitor_id=updated.id,
                reason=AlertReason.THRESHOLD,
                attributes={**attributes, "threshold": self.alert_difference_threshold},
                start_at=now,
                session_id=session_id,
                created_by=actor,
            )
            updated.set_event(EventType.ALERT, alert.id)
            transition = self._finish(monitor, updated, MonitorStatus.ALERT, outcome="threshold_exceeded")
            transition.change = change
            transition.alerts.append(alert)
            return transition

        review = ContentReview(
            id=new_record_id(),
            code=updated.code,
            monitor_id=updated.id,
            reason=ReviewReason.CHANGE,
            attributes=attributes,
            session_id=session_id,
            created_by=actor,
        )
        updated.set_event(EventType.CHANGE, change.id)
        transition = self._finish(monitor, updated, MonitorStatus.CHANGE, outcome="drift_detected")
        transition.change = change
        transition.reviews.append(review)
        return transition

    def on_failure(
        self,
        monitor: ContentMonitor,
        error_message: str,
        *,
        reason: FailureReason,
        session_id: int,
        now: datetime,
        actor: str = "sweep",
    ) -> Transition:
        updated = copy.deepcopy(monitor)
        # the snapshot is the comparison baseline and is never touched by a failed run
        updated.executed_at = now
        updated.error_message = error_message
        updated.retry += 1

        failure = ContentFailure(
            id=new_record_id(),
            code=updated.code,
            monitor_id=updated.id,
            reason=reason,
            notes=error_message,
            attributes={
                **target_attributes(updated),
                "error_message": error_message,
                "retry": updated.retry,
                "occurrences": 1,
            },
            session_id=session_id,
            created_by=actor,
        )
        updated.set_event(EventType.FAILURE, failure.id)
        transition = self._finish(monitor, updated, MonitorStatus.FAILURE, outcome="execution_failed")
        transition.failures.append(failure)
        return transition

    def on_review_resolved(
        self,
        monitor: ContentMonitor,
        review: ContentReview,
        *,
        session_id: int,
        now: datetime,
        actor: str,
    ) -> Transition:
        updated = copy.deepcopy(monitor)
        if review.status is ReviewStatus.CONFIRMED and review.substantive:
            alert = ContentAlert(
                id=new_record_id(),
                code=updated.code,
                monitor_id=updated.id,
                reason=AlertReason.CHANGE,
                attributes={
                    **target_attributes(updated, entity_id=_text_attribute(review, "entity_id")),
                    "review_id": review.id,
                    "change_id": _text_attribute(review, "change_id"),
                    "difference": review.attributes.get("difference"),
                },
                start_at=updated.updated_at or now,
                session_id=session_id,
                created_by=actor,
            )
            updated.set_event(EventType.ALERT, alert.id)
            transition = self._finish(monitor, updated, MonitorStatus.ALERT, outcome="review_confirmed")
            transition.alerts.append(alert)
            return transition

        if review.status in {ReviewStatus.CONFIRMED, ReviewStatus.REJECTED} and updated.status is MonitorStatus.CHANGE:
            updated.clear_event()
            return self._finish(monitor, updated, MonitorStatus.COMPLETED, outcome="change_accepted")

        return self._finish(monitor, updated, updated.status, outcome="no_transition")

    def on_alert_resolved(self, monitor: ContentMonitor, alert: ContentAlert) -> Transition:
        return self._resolve_event(monitor, alert.id, alert.status is AlertStatus.RESOLVED, MonitorStatus.ALERT)

    def on_failure_resolved(self, monitor: ContentMonitor, failure: ContentFailure) -> Transition:
        return self._resolve_event(monitor, failure.id, failure.status is FailureStatus.RESOLVED, MonitorStatus.FAILURE)

    def restart(self, monitor: ContentMonitor) -> Transition:
        updated = copy.deepcopy(monitor)
        updated.executed_at = None
        updated.error_message = ""
        updated.retry = 0
        updated.clear_event()
        return self._finish(monitor, updated, MonitorStatus.COMPLETED, outcome="restarted")

    def _resolve_event(
        self,
        monitor: ContentMonitor,
        record_id: str,
        resolved: bool,
        expected: MonitorStatus,
    ) -> Transition:
        updated = copy.deepcopy(monitor)
        linked = updated.event_id is None or updated.event_id == record_id
        if resolved and linked and updated.status is expected:
            updated.clear_event()
            return self._finish(monitor, updated, MonitorStatus.COMPLETED, outcome="resolved")
        return self._finish(monitor, updated, updated.status, outcome="no_transition")

    def _finish(
        self,
        original: ContentMonitor,
        updated: ContentMonitor,
        to_status: MonitorStatus,
        *,
        outcome: str,
    ) -> Transition:
        from_status = original.status
        self._validate_transition(from_status=from_status, to_status=to_status)
        updated.status = to_status
        return Transition(monitor=updated, from_status=from_status, to_status=to_status, outcome=outcome)

    @staticmethod
    def _validate_transition(*, from_status: MonitorStatus, to_status: MonitorStatus) -> None:
        if to_status is from_status:
            return
        allowed = _ALLOWED_TRANSITIONS.get(from_status)
        if not allowed or to_status not in allowed:
            raise InvalidTransitionError(f"invalid monitor transition: {from_status.value} -> {to_status.value}")


def _text_attribute(record: WorkflowRecord, key: str) -> str | None:
    value = record.attributes.get(key) if isinstance(record.attributes, dict) else None
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
