# schemas/timesheet_schema.py
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime, date


class TimesheetRead(BaseModel):
    id: int
    organization_id: int
    user_id: int
    week_start: date
    week_end: date
    status: str
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[int] = None
    rejection_reason: Optional[str] = None
    total_minutes: int = 0
    billable_minutes: int = 0
    non_billable_minutes: int = 0

    model_config = ConfigDict(from_attributes=True)


class TimesheetSubmit(BaseModel):
    week_start: date


class TimesheetReview(BaseModel):
    """Approve or reject a submitted timesheet"""
    approve: bool
    reason: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def reason_required_on_reject(self):
        if not self.approve and not self.reason:
            raise ValueError("A reason is required when rejecting a timesheet")
        return self


class TimeEntryCreate(BaseModel):
    project_id: int
    task_id: Optional[int] = None
    work_date: date
    minutes: int = Field(..., gt=0, le=24 * 60)
    description: Optional[str] = Field(default=None, max_length=1000)
    billable: bool = True


class TimeEntryRead(BaseModel):
    id: int
    user_id: int
    project_id: int
    task_id: Optional[int] = None
    work_date: date
    minutes: int
    description: Optional[str] = None
    billable: bool
    invoice_id: Optional[int] = None
    billed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
