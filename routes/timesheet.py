# routes/timesheet.py
from typing import List, Optional
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel import Session

from core.database import get_session
from core.security import get_current_user, get_current_admin
from models.models import TimesheetStatus, User
from schemas.timesheet_schema import (
    TimeEntryCreate,
    TimeEntryRead,
    TimesheetRead,
    TimesheetReview,
    TimesheetSubmit,
)
from services import timesheet_service
from services.exceptions import InvalidStatusTransition, ResourceNotFound

router = APIRouter(prefix="/timesheet", tags=["timesheet"])


@router.get("/week", response_model=TimesheetRead)
def get_week(
    week_start: Optional[date] = Query(None, description="Any date in the week; defaults to this week"),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Get (or open) the caller's timesheet for a week, with totals recalculated"""
    return timesheet_service.get_or_create_timesheet(
        session, current_user.organization_id, current_user.id, week_start or date.today()
    )


@router.get("", response_model=List[TimesheetRead])
def list_timesheets(
    status_filter: Optional[TimesheetStatus] = Query(None, alias="status"),
    user_id: Optional[int] = Query(None),
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    return timesheet_service.list_timesheets(
        session,
        current_user.organization_id,
        status=status_filter.value if status_filter else None,
        user_id=user_id,
    )


@router.post("/entries", response_model=TimeEntryRead, status_code=status.HTTP_201_CREATED)
def log_time(
    request: TimeEntryCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    try:
        return timesheet_service.log_time_entry(
            session,
            current_user.organization_id,
            current_user.id,
            request.project_id,
            request.work_date,
            request.minutes,
            task_id=request.task_id,
            description=request.description,
            billable=request.billable,
        )
    except ResourceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/submit", response_model=TimesheetRead)
def submit(
    request: TimesheetSubmit,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    try:
        return timesheet_service.submit_timesheet(
            session, current_user.organization_id, current_user.id, request.week_start
        )
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{timesheet_id}/review", response_model=TimesheetRead)
def review(
    timesheet_id: int,
    request: TimesheetReview,
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    try:
        return timesheet_service.review_timesheet(
            session,
            current_user.organization_id,
            timesheet_id,
            current_user.id,
            request.approve,
            request.reason,
        )
    except ResourceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
