from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import DispatchStatus, ReportFrequency


class ReportSettingIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_enabled: Optional[bool] = None
    frequency: Optional[ReportFrequency] = None


class ReportSettingOut(BaseModel):
    user_id: int
    is_enabled: bool
    frequency: ReportFrequency
    last_dispatched_at: Optional[datetime]
    next_due_at: datetime


class ReportPreviewQuery(BaseModel):
    user_id: int = Field(..., gt=0)
    start: datetime
    end: datetime
    frequency: ReportFrequency = ReportFrequency.monthly

    @model_validator(mode="after")
    def _check_range(self) -> "ReportPreviewQuery":
        if self.start >= self.end:
            raise ValueError("Start must be before end")
        return self


class ReportRunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    window_start: datetime
    window_end: datetime
    frequency: ReportFrequency
    status: DispatchStatus
    attempts: int
    fingerprint: Optional[str]
    detail: Optional[str]
    created_at: datetime


class SchedulerStatusOut(BaseModel):
    enabled: bool
    running: bool
    state: str
    in_flight: list[int]
    last_tick: Optional[dict[str, object]] = None
