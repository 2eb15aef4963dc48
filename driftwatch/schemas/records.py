from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from driftwatch.services.models import (
    AlertReason,
    AlertStatus,
    FailureReason,
    FailureStatus,
    ReviewReason,
    ReviewStatus,
)

BacklogKind = Literal["reviews", "alerts", "failures", "changes"]
ReviewStatusValue = Literal["NEW", "IN_PROGRESS", "CONFIRMED", "REJECTED"]
AlertStatusValue = Literal["ACKNOWLEDGED", "RESOLVED"]
FailureStatusValue = Literal["ACKNOWLEDGED", "RESOLVED"]


class ChangeOut(BaseModel):
    kind: Literal["change"] = "change"
    id: str
    code: str
    monitor_id: str
    snapshot_before: str
    snapshot_after: str
    difference: int
    execution_time: int = -1
    session_id: int
    created_by: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ReviewOut(BaseModel):
    kind: Literal["review"] = "review"
    id: str
    code: str
    monitor_id: str
    reason: ReviewReason
    status: ReviewStatus
    notes: str = ""
    substantive: bool = False
    attributes: dict[str, Any] = Field(default_factory=dict)
    session_id: int
    created_by: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AlertOut(BaseModel):
    kind: Literal["alert"] = "alert"
    id: str
    code: str
    monitor_id: str
    reason: AlertReason
    status: AlertStatus
    attributes: dict[str, Any] = Field(default_factory=dict)
    start_at: datetime | None = None
    session_id: int
    created_by: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


class FailureOut(BaseModel):
    kind: Literal["failure"] = "failure"
    id: str
    code: str
    monitor_id: str
    reason: FailureReason
    status: FailureStatus
    notes: str = ""
    attributes: dict[str, Any] = Field(default_factory=dict)
    reviewed_at: datetime | None = None
    session_id: int
    created_by: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


BacklogItemOut = Annotated[ReviewOut | AlertOut | FailureOut | ChangeOut, Field(discriminator="kind")]


class BacklogPageOut(BaseModel):
    kind: BacklogKind
    total: int
    limit: int
    offset: int
    visible_since: datetime
    items: list[BacklogItemOut] = Field(default_factory=list)


class ReviewPatchRequest(BaseModel):
    status: ReviewStatusValue | None = None
    notes: str | None = Field(default=None, max_length=4000)
    substantive: bool | None = None


class AlertPatchRequest(BaseModel):
    status: AlertStatusValue | None = None
    notes: str | None = Field(default=None, max_length=4000)


class FailurePatchRequest(BaseModel):
    status: FailureStatusValue | None = None
    notes: str | None = Field(default=None, max_length=4000)
