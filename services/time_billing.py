# ================================================================
# services/time_billing.py — unbilled time -> DRAFT invoice
# ================================================================
"""Turn approved, unbilled time entries into invoices.

``select_unbilled`` is a plain read. ``commit_invoice`` creates the
invoice and claims the entries with a compare-and-set update
(``invoice_id IS NULL`` at write time), so two overlapping commits can
never bill the same entry: whichever update lands second simply matches
fewer rows, and the entries it missed come back as ``ConflictingEntry``.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import update
from sqlmodel import Session, select

from core.config import settings
from models.models import (
    Client,
    Invoice,
    InvoiceItem,
    InvoiceItemType,
    InvoiceStatus,
    Project,
    Task,
    Timesheet,
    TimesheetStatus,
    TimeEntry,
    User,
    utc_now,
)
from services.exceptions import (
    ConflictingEntry,
    EmptySelection,
    MissingHourlyRate,
    ResourceNotFound,
)
from services.invoice_service import (
    apply_totals,
    calculate_totals,
    generate_invoice_number,
    line_amount,
    money,
    with_invoice_number,
)
from services.tenant import tenant_get, tenant_select
from services.timesheet_service import get_week_dates

logger = logging.getLogger(__name__)

MINUTES_PER_HOUR = 60
NO_TASK_DESCRIPTION = "General Services (No Task)"


class GroupBy(str, Enum):
    USER = "USER"
    TASK = "TASK"


@dataclass
class LineItemDraft:
    description: str
    minutes: int
    hours: Decimal
    unit_price: Decimal
    amount: Decimal
    entry_ids: List[int]
    user_id: Optional[int] = None
    task_id: Optional[int] = None


@dataclass
class InvoiceMetadata:
    client_id: int
    project_id: Optional[int] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    tax_rate: Optional[Decimal] = None
    notes: Optional[str] = None
    created_by: Optional[int] = None
    billing_period_start: Optional[date] = None
    billing_period_end: Optional[date] = None
    group_by: GroupBy = GroupBy.USER
    include_descriptions: bool = False


@dataclass
class CommitResult:
    invoice: Invoice
    billed_entry_ids: List[int]
    conflicts: List[ConflictingEntry] = field(default_factory=list)


LineBuilder = Callable[[Session, List[TimeEntry], InvoiceMetadata], List[LineItemDraft]]


# ------------------------------------------------------------
# SELECTION
# ------------------------------------------------------------
def _approved_weeks(session: Session, tenant_id: int, from_date: date, to_date: date) -> set:
    first_week, _ = get_week_dates(from_date)
    statement = select(Timesheet.user_id, Timesheet.week_start).where(
        Timesheet.organization_id == tenant_id,
        Timesheet.status == TimesheetStatus.APPROVED.value,
        Timesheet.deleted_at.is_(None),
        Timesheet.week_start >= first_week,
        Timesheet.week_start <= to_date,
    )
    return {(user_id, week_start) for user_id, week_start in session.exec(statement).all()}


def select_unbilled(
    session: Session,
    tenant_id: int,
    project_ids: Sequence[int],
    from_date: date,
    to_date: date,
    billable_only: bool = True,
) -> List[TimeEntry]:
    """Unbilled entries in range whose week is APPROVED, ordered by (work_date, user_id)."""
    if from_date > to_date:
        raise ValueError("From date must be before or equal to to date")
    if not project_ids:
        return []

    statement = tenant_select(TimeEntry, tenant_id).where(
        TimeEntry.project_id.in_(list(project_ids)),
        TimeEntry.work_date >= from_date,
        TimeEntry.work_date <= to_date,
        TimeEntry.invoice_id.is_(None),
    )
    if billable_only:
        statement = statement.where(TimeEntry.billable == True)  # noqa: E712
    statement = statement.order_by(TimeEntry.work_date, TimeEntry.user_id, TimeEntry.id)

    approved = _approved_weeks(session, tenant_id, from_date, to_date)
    return [
        entry for entry in session.exec(statement).all()
        if (entry.user_id, get_week_dates(entry.work_date)[0]) in approved
    ]


# ------------------------------------------------------------
# LINE ITEMS
# ------------------------------------------------------------
def minutes_to_hours(minutes: int) -> Decimal:
    return money(Decimal(minutes) / Decimal(MINUTES_PER_HOUR))


def _notes(entries: List[TimeEntry]) -> Optional[str]:
    seen = []
    for entry in entries:
        text = (entry.description or "").strip()
        if text and text not in seen:
            seen.append(text)
    return "; ".join(seen) or None


def _with_notes(description: str, entries: List[TimeEntry], include: bool) -> str:
    notes = _notes(entries) if include else None
    if notes:
        description = f"{description}: {notes}"
    return description[:500]


def _user_rates(session: Session, entries: List[TimeEntry]) -> Dict[int, User]:
    return {user_id: session.get(User, user_id) for user_id in {e.user_id for e in entries}}


def build_line_items(session: Session, entries: List[TimeEntry], metadata: InvoiceMetadata) -> List[LineItemDraft]:
    """Group entries per user (user rate) or per task (blended rate)."""
    users = _user_rates(session, entries)

    def rate_of(user_id: int) -> Decimal:
        user = users.get(user_id)
        return user.hourly_rate if user and user.hourly_rate is not None else Decimal("0")

    items = []
    if metadata.group_by == GroupBy.USER:
        groups = OrderedDict()
        for entry in entries:
            groups.setdefault(entry.user_id, []).append(entry)
        for user_id, group in groups.items():
            minutes = sum(e.minutes for e in group)
            hours = minutes_to_hours(minutes)
            rate = money(rate_of(user_id))
            name = users[user_id].full_name if users.get(user_id) else f"User #{user_id}"
            items.append(LineItemDraft(
                description=_with_notes(f"Services - {name}", group, metadata.include_descriptions),
                minutes=minutes,
                hours=hours,
                unit_price=rate,
                amount=line_amount(hours, rate),
                entry_ids=[e.id for e in group],
                user_id=user_id,
            ))
        items.sort(key=lambda item: item.description)
        return items

    groups = OrderedDict()
    for entry in entries:
        groups.setdefault(entry.task_id, []).append(entry)
    for task_id, group in groups.items():
        minutes = sum(e.minutes for e in group)
        hours = minutes_to_hours(minutes)
        exact = sum(
            (Decimal(e.minutes) / Decimal(MINUTES_PER_HOUR) * rate_of(e.user_id) for e in group),
            Decimal("0"),
        )
        blended = money(exact / hours) if hours > 0 else Decimal("0.00")
        if task_id is None:
            description = NO_TASK_DESCRIPTION
        else:
            task = session.get(Task, task_id)
            description = f"Task: {task.title if task else f'Task #{task_id}'}"
        items.append(LineItemDraft(
            description=_with_notes(description, group, metadata.include_descriptions),
            minutes=minutes,
            hours=hours,
            unit_price=blended,
            amount=line_amount(hours, blended),
            entry_ids=[e.id for e in group],
            task_id=task_id,
        ))
    return items


# ------------------------------------------------------------
# COMMIT
# ------------------------------------------------------------
def _loser_reason(session: Session, tenant_id: int, entry_id: int) -> str:
    entry = session.get(TimeEntry, entry_id, populate_existing=True)
    if entry is None or entry.organization_id != tenant_id or entry.deleted_at is not None:
        return "not found"
    return "already billed"


def commit_invoice(
    session: Session,
    tenant_id: int,
    entries: Sequence[TimeEntry],
    metadata: InvoiceMetadata,
    *,
    number_factory: Callable[[], str] = generate_invoice_number,
    line_builder: LineBuilder = build_line_items,
) -> CommitResult:
    """Create a DRAFT invoice over *entries* and claim them for it.

    Entries already claimed by another invoice are left out and reported
    in ``CommitResult.conflicts``. Raises EmptySelection when nothing is
    left to bill.
    """
    entry_ids = [entry.id for entry in entries]
    if not entry_ids:
        raise EmptySelection("No unbilled time entries found")

    issue_date = metadata.issue_date or date.today()
    due_date = metadata.due_date or issue_date + timedelta(days=settings.INVOICE_DUE_DAYS)
    tax_rate = money(metadata.tax_rate if metadata.tax_rate is not None else settings.DEFAULT_TAX_RATE)

    def unit(number: str) -> CommitResult:
        invoice = Invoice(
            organization_id=tenant_id,
            client_id=metadata.client_id,
            project_id=metadata.project_id,
            invoice_number=number,
            issue_date=issue_date,
            due_date=due_date,
            status=InvoiceStatus.DRAFT.value,
            tax_rate=tax_rate,
            currency=settings.DEFAULT_CURRENCY,
            notes=metadata.notes,
            created_by=metadata.created_by,
            billing_period_start=metadata.billing_period_start,
            billing_period_end=metadata.billing_period_end,
        )
        session.add(invoice)
        session.flush()

        claim = (
            update(TimeEntry)
            .where(
                TimeEntry.id.in_(entry_ids),
                TimeEntry.organization_id == tenant_id,
                TimeEntry.invoice_id.is_(None),
                TimeEntry.deleted_at.is_(None),
            )
            .values(invoice_id=invoice.id, billed_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        claimed = session.exec(claim).rowcount

        winners = list(session.exec(
            select(TimeEntry)
            .where(TimeEntry.invoice_id == invoice.id)
            .order_by(TimeEntry.work_date, TimeEntry.user_id, TimeEntry.id)
            .execution_options(populate_existing=True)
        ).all())
        won = {entry.id for entry in winners}
        conflicts = [
            ConflictingEntry(entry_id, _loser_reason(session, tenant_id, entry_id))
            for entry_id in entry_ids if entry_id not in won
        ]
        for conflict in conflicts:
            logger.warning("Time entry %s skipped for invoice %s: %s", conflict.time_entry_id, number, conflict.reason)

        if not winners:
            session.rollback()
            raise EmptySelection("All selected time entries were already billed", conflicts)

        items = []
        for draft in line_builder(session, winners, metadata):
            item = InvoiceItem(
                organization_id=tenant_id,
                invoice_id=invoice.id,
                description=draft.description,
                quantity=draft.hours,
                unit_price=draft.unit_price,
                amount=draft.amount,
                item_type=InvoiceItemType.TIME.value,
                user_id=draft.user_id,
                task_id=draft.task_id,
                minutes=draft.minutes,
                source_time_entry_ids=draft.entry_ids,
            )
            session.add(item)
            items.append(item)
        apply_totals(invoice, items)
        session.add(invoice)
        session.commit()
        session.refresh(invoice)

        logger.info(
            "🧾 Invoice %s created for org %s: %d entries billed, %d conflicts, total %s",
            invoice.invoice_number, tenant_id, claimed, len(conflicts), invoice.total,
        )
        return CommitResult(invoice=invoice, billed_entry_ids=sorted(won), conflicts=conflicts)

    return with_invoice_number(session, unit, number_factory)


# ------------------------------------------------------------
# PREVIEW / GENERATE
# ------------------------------------------------------------
@dataclass
class GenerationRequest:
    client_id: int
    from_date: date
    to_date: date
    project_id: Optional[int] = None
    billable_only: bool = True
    group_by: GroupBy = GroupBy.USER
    include_descriptions: bool = False
    tax_rate: Optional[Decimal] = None
    notes: Optional[str] = None


@dataclass
class MissingRateUser:
    user_id: int
    name: str
    email: str
    message: str = "Hourly rate not configured"


@dataclass
class InvoicePreview:
    client_id: int
    client_name: str
    from_date: date
    to_date: date
    project_id: Optional[int] = None
    project_name: Optional[str] = None
    total_minutes: int = 0
    total_hours: Decimal = Decimal("0.00")
    subtotal: Decimal = Decimal("0.00")
    tax_rate: Decimal = Decimal("0.00")
    tax_amount: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")
    line_items: List[LineItemDraft] = field(default_factory=list)
    missing_rate_users: List[MissingRateUser] = field(default_factory=list)
    entry_ids: List[int] = field(default_factory=list)
    can_generate: bool = False
    message: str = ""

    @property
    def entries_count(self) -> int:
        return len(self.entry_ids)


def project_ids_for_client(session: Session, tenant_id: int, client_id: int, project_id: Optional[int] = None) -> List[int]:
    if project_id is not None:
        project = tenant_get(session, Project, project_id, tenant_id)
        if not project:
            raise ResourceNotFound("Project not found")
        if project.client_id != client_id:
            raise ValueError("Project does not belong to specified client")
        return [project.id]
    statement = tenant_select(Project, tenant_id).where(Project.client_id == client_id)
    return [project.id for project in session.exec(statement).all()]


def _metadata_for(request: GenerationRequest, created_by: Optional[int]) -> InvoiceMetadata:
    return InvoiceMetadata(
        client_id=request.client_id,
        project_id=request.project_id,
        tax_rate=request.tax_rate,
        notes=request.notes,
        created_by=created_by,
        billing_period_start=request.from_date,
        billing_period_end=request.to_date,
        group_by=request.group_by,
        include_descriptions=request.include_descriptions,
    )


def preview_from_time(session: Session, tenant_id: int, request: GenerationRequest) -> InvoicePreview:
    """What generate_from_time would bill right now. Writes nothing."""
    client = tenant_get(session, Client, request.client_id, tenant_id)
    if not client:
        raise ResourceNotFound("Client not found")
    if request.from_date > request.to_date:
        raise ValueError("From date must be before or equal to to date")

    tax_rate = money(request.tax_rate if request.tax_rate is not None else settings.DEFAULT_TAX_RATE)
    preview = InvoicePreview(
        client_id=client.id,
        client_name=client.name,
        from_date=request.from_date,
        to_date=request.to_date,
        project_id=request.project_id,
        tax_rate=tax_rate,
    )

    project_ids = project_ids_for_client(session, tenant_id, request.client_id, request.project_id)
    if request.project_id is not None:
        preview.project_name = session.get(Project, request.project_id).title
    if not project_ids:
        preview.message = "No projects found for this client"
        return preview

    entries = select_unbilled(
        session, tenant_id, project_ids, request.from_date, request.to_date, request.billable_only
    )
    if not entries:
        preview.message = "No unbilled time entries found for the specified period"
        return preview

    users = _user_rates(session, entries)
    preview.missing_rate_users = [
        MissingRateUser(user_id=user.id, name=user.full_name, email=user.email)
        for user in sorted(users.values(), key=lambda u: u.id)
        if user.hourly_rate is None or user.hourly_rate == 0
    ]
    preview.line_items = build_line_items(session, entries, _metadata_for(request, None))
    preview.subtotal, preview.tax_amount, preview.total = calculate_totals(
        (item.amount for item in preview.line_items), tax_rate
    )
    preview.total_minutes = sum(e.minutes for e in entries)
    preview.total_hours = minutes_to_hours(preview.total_minutes)
    preview.entry_ids = [e.id for e in entries]
    preview.can_generate = not preview.missing_rate_users
    preview.message = (
        "Ready to generate invoice"
        if preview.can_generate
        else f"Cannot generate: {len(preview.missing_rate_users)} user(s) missing hourly rate"
    )
    return preview


def generate_from_time(
    session: Session,
    tenant_id: int,
    request: GenerationRequest,
    created_by: Optional[int] = None,
    *,
    number_factory: Callable[[], str] = generate_invoice_number,
) -> CommitResult:
    """Select and commit in one call."""
    preview = preview_from_time(session, tenant_id, request)
    if preview.missing_rate_users:
        raise MissingHourlyRate([u.user_id for u in preview.missing_rate_users])
    if not preview.entry_ids:
        raise EmptySelection(preview.message or "No unbilled time entries found")

    project_ids = project_ids_for_client(session, tenant_id, request.client_id, request.project_id)
    entries = select_unbilled(
        session, tenant_id, project_ids, request.from_date, request.to_date, request.billable_only
    )
    return commit_invoice(
        session,
        tenant_id,
        entries,
        _metadata_for(request, created_by),
        number_factory=number_factory,
    )
