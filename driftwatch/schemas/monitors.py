from datetime import datetime

from pydantic import BaseModel, Field

from driftwatch.services.models import EventType, MonitorStatus


class MonitorOut(BaseModel):
    id: str
    guid: str
    code: str
    content_type: str
    name: str
    status: MonitorStatus
    active: bool
    alerts: bool
    url: str = ""
    interval: int
    executed_at: datetime | None = None
    success_at: datetime | None = None
    execution_time: int = -1
    error_message: str = ""
    retry: int = 0
    change_id: str | None = None
    event_type: EventType | None = None
    event_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class MonitorCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    content_type: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    url: str = Field(default="", max_length=2048)
    interval: int = Field(default=60, ge=1)
    active: bool = True
    alerts: bool = True


class MonitorPatchRequest(BaseModel):
    active: bool | None = None
    alerts: bool | None = None
    url: str | None = Field(default=None, max_length=2048)
    interval: int | None = Field(default=None, ge=1)
