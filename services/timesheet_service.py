# services/timesheet_service.py — weekly timesheets (approval gate for billing)
import logging
from datetime import date, timedelta
from typing import List, Optional, Tuple

from sqlmodel import Session, select

from models.models import (
    Project,
    Task,
    Timesheet,
    TimesheetStatus,
    TimeEntry,
    User,
    utc_now,
)
from services.exceptions import InvalidStatusTransition, ResourceNotFound
from services.tenant import tenant_get, tenant_select

logger = logging.getLogger(__name__)


def get_week_dates(target_date: date) -> Tuple[date, date]:
    """Get week start (Monday) and end (Sunday) for a given date"""
    week_start = target_date - timedelta(days=target_date.weekday())
    return week_start, week_start + timedelta(days=6)


def _week_entries(session: Session, tenant_id: int, user_id: int, week_start: date) -> List[TimeEntry]:
    week_end = week_start + timedelta(days=6)
    statement = tenant_select(TimeEntry, tenant_id).where(
        TimeEntry.user_id == user_id,
        TimeEntry.work_date >= week_start,
        TimeEntry.work_date <= week_end,
    )
    return list(session.exec(statement).all())


def recalculate_totals(session: Session, timesheet: Timesheet) -> Timesheet:
    entries = _week_entries(session, timesheet.organization_id, timesheet.user_id, timesheet.week_start)
    total = sum(e.minutes for e in entries)
    billable = sum(e.minutes for e in entries if e.billable)
    timesheet.total_minutes = total
    timesheet.billable_minutes = billable
    timesheet.non_billable_minutes = total - billable
    timesheet.updated_at = utc_now()
    session.add(timesheet)
    return timesheet


def find_timesheet(session: Session, tenant_id: int, user_id: int, week_start: date) -> Optional[Timesheet]:
    week_start, _ = get_week_dates(week_start)
    statement = tenant_select(Timesheet, tenant_id).where(
        Timesheet.user_id == user_id,
        Timesheet.week_start == week_start,
    )
    return session.exec(statement).first()


def get_or_create_timesheet(session: Session, tenant_id: int, user_id: int, week_start: date) -> Timesheet:
    """Return the user's timesheet for the week containing *week_start*, totals refreshed."""
    week_start, _ = get_week_dates(week_start)
    timesheet = find_timesheet(session, tenant_id, user_id, week_start)
    if not timesheet:
        timesheet = Timesheet(organization_id=tenant_id, user_id=user_id, week_start=week_start)
        logger.info("Created timesheet for user %s, week %s", user_id, week_start)
    recalculate_totals(session, timesheet)
    session.commit()
    session.refresh(timesheet)
    return timesheet


def submit_timesheet(session: Session, tenant_id: int, user_id: int, week_start: date) -> Timesheet:
    timesheet = get_or_create_timesheet(session, tenant_id, user_id, week_start)
    if timesheet.status not in (TimesheetStatus.DRAFT.value, TimesheetStatus.REJECTED.value):
        raise InvalidStatusTransition("Timesheet already submitted or approved")

    timesheet.status = TimesheetStatus.SUBMITTED.value
    timesheet.submitted_at = utc_now()
    timesheet.rejection_reason = None
    session.add(timesheet)
    session.commit()
    session.refresh(timesheet)
    logger.info("📨 Timesheet %s submitted by user %s", timesheet.id, user_id)
    return timesheet


def review_timesheet(
    session: Session,
    tenant_id: int,
    timesheet_id: int,
    reviewer_id: int,
    approve: bool,
    reason: Optional[str] = None,
) -> Timesheet:
    timesheet = tenant_get(session, Timesheet, timesheet_id, tenant_id)
    if not timesheet:
        raise ResourceNotFound("Timesheet not found in your organization")
    if timesheet.status != TimesheetStatus.SUBMITTED.value:
        raise InvalidStatusTransition("Only submitted timesheets can be reviewed")

    now = utc_now()
    timesheet.status = TimesheetStatus.APPROVED.value if approve else TimesheetStatus.REJECTED.value
    timesheet.reviewed_at = now
    timesheet.reviewed_by = reviewer_id
    timesheet.rejection_reason = None if approve else reason
    timesheet.updated_at = now
    session.add(timesheet)
    session.commit()
    session.refresh(timesheet)
    logger.info("Timesheet %s %s by user %s", timesheet.id, timesheet.status.lower(), reviewer_id)
    return timesheet


def list_timesheets(
    session: Session,
    tenant_id: int,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
) -> List[Timesheet]:
    statement = tenant_select(Timesheet, tenant_id)
    if status:
        statement = statement.where(Timesheet.status == status)
    if user_id:
        statement = statement.where(Timesheet.user_id == user_id)
    return list(session.exec(statement.order_by(Timesheet.week_start.desc())).all())


def log_time_entry(
    session: Session,
    tenant_id: int,
    user_id: int,
    project_id: int,
    work_date: date,
    minutes: int,
    *,
    task_id: Optional[int] = None,
    description: Optional[str] = None,
    billable: bool = True,
) -> TimeEntry:
    """Record a manual time entry. Weeks already submitted or approved are closed."""
    if minutes <= 0:
        raise ValueError("minutes must be positive")
    if not tenant_get(session, User, user_id, tenant_id):
        raise ResourceNotFound("User not found in your organization")
    if not tenant_get(session, Project, project_id, tenant_id):
        raise ResourceNotFound("Project not found in your organization")
    if task_id is not None:
        task = session.get(Task, task_id)
        if not task or task.organization_id != tenant_id or task.project_id != project_id:
            raise ResourceNotFound("Task not found in this project")

    timesheet = find_timesheet(session, tenant_id, user_id, work_date)
    if timesheet and timesheet.status in (TimesheetStatus.SUBMITTED.value, TimesheetStatus.APPROVED.value):
        raise InvalidStatusTransition(f"Timesheet for week {timesheet.week_start} is {timesheet.status.lower()}")

    entry = TimeEntry(
        organization_id=tenant_id,
        user_id=user_id,
        project_id=project_id,
        task_id=task_id,
        work_date=work_date,
        minutes=minutes,
        description=description,
        billable=billable,
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return entry
