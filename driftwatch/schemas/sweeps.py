from datetime import datetime

from pydantic import BaseModel


class SweepReportOut(BaseModel):
    session: int
    monitors_processed: int
    changes_found: int
    alerts_raised: int
    reviews_opened: int
    failures_recorded: int
    suppressed: int
    persistence_errors: int
    unexpected_errors: int
    notification_errors: int
    monitors_skipped: int
    aborted: bool
    cancelled: bool
    started_at: datetime | None = None
    finished_at: datetime | None = None
