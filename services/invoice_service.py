# ================================================================
# services/invoice_service.py — invoice ledger
# ================================================================
"""Invoices and their line items.

An invoice is editable only while it is DRAFT. After that, only its
status moves, along ``ALLOWED_TRANSITIONS``. Amounts always satisfy
``subtotal == sum(item.amount)`` and ``total == subtotal + tax_amount``.
"""
import logging
import random
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from core.config import settings
from models.models import (
    Client,
    Invoice,
    InvoiceItem,
    InvoiceItemType,
    InvoiceStatus,
    Project,
    utc_now,
)
from services.exceptions import (
    ImmutableInvoiceError,
    InvalidStatusTransition,
    InvoiceNumberCollision,
    ResourceNotFound,
)
from services.tenant import tenant_get, tenant_select

logger = logging.getLogger(__name__)

T = TypeVar("T")

TWO_PLACES = Decimal("0.01")

ALLOWED_TRANSITIONS = {
    InvoiceStatus.DRAFT.value: {InvoiceStatus.SENT.value, InvoiceStatus.CANCELLED.value},
    InvoiceStatus.SENT.value: {
        InvoiceStatus.PAID.value,
        InvoiceStatus.OVERDUE.value,
        InvoiceStatus.CANCELLED.value,
    },
    InvoiceStatus.OVERDUE.value: {InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value},
    InvoiceStatus.PAID.value: {InvoiceStatus.CANCELLED.value},
    InvoiceStatus.CANCELLED.value: set(),
}

DEFAULT_SORT = "issue_date_desc"
SORT_ORDERS = {
    "issue_date_asc": Invoice.issue_date.asc(),
    "issue_date_desc": Invoice.issue_date.desc(),
    "due_date_asc": Invoice.due_date.asc(),
    "due_date_desc": Invoice.due_date.desc(),
    "total_asc": Invoice.total.asc(),
    "total_desc": Invoice.total.desc(),
}


# ------------------------------------------------------------
# MONEY + NUMBERING
# ------------------------------------------------------------
def money(value) -> Decimal:
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def line_amount(quantity: Decimal, unit_price: Decimal) -> Decimal:
    return money(Decimal(quantity) * Decimal(unit_price))


def calculate_totals(amounts: Iterable[Decimal], tax_rate: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """Return (subtotal, tax_amount, total) for item amounts and a percent tax rate."""
    subtotal = money(sum((Decimal(a) for a in amounts), Decimal("0")))
    tax_amount = money(subtotal * Decimal(tax_rate) / Decimal("100"))
    return subtotal, tax_amount, subtotal + tax_amount


def generate_invoice_number(issue_date: Optional[date] = None) -> str:
    """INV-YYYYMMDD-NNNNNN; uniqueness is left to the per-tenant constraint."""
    issue_date = issue_date or date.today()
    return f"INV-{issue_date:%Y%m%d}-{random.randint(100000, 999999)}"


def is_number_collision(error: IntegrityError) -> bool:
    message = str(error.orig).lower()
    return "invoice_number" in message or "uq_invoice_org_number" in message


def with_invoice_number(
    session: Session,
    unit: Callable[[str], T],
    number_factory: Callable[[], str] = generate_invoice_number,
) -> T:
    """Run ``unit(number)`` until it commits without an invoice number collision.

    *unit* must do all of its work, including the commit, so that a
    collision rolls the whole attempt back before the next number is tried.
    """
    attempts = settings.INVOICE_NUMBER_MAX_ATTEMPTS
    for attempt in range(1, attempts + 1):
        number = number_factory()
        try:
            return unit(number)
        except IntegrityError as e:
            session.rollback()
            if not is_number_collision(e):
                raise
            logger.warning("Invoice number %s already taken (attempt %d/%d)", number, attempt, attempts)
    raise InvoiceNumberCollision(f"Could not allocate a unique invoice number after {attempts} attempts")


# ------------------------------------------------------------
# QUERIES
# ------------------------------------------------------------
def get_invoice(session: Session, tenant_id: int, invoice_id: int) -> Invoice:
    invoice = tenant_get(session, Invoice, invoice_id, tenant_id)
    if not invoice:
        raise ResourceNotFound("Invoice not found")
    return invoice


def get_invoice_by_number(session: Session, tenant_id: int, invoice_number: str) -> Invoice:
    statement = tenant_select(Invoice, tenant_id).where(Invoice.invoice_number == invoice_number)
    invoice = session.exec(statement).first()
    if not invoice:
        raise ResourceNotFound(f"Invoice {invoice_number} not found")
    return invoice


def list_invoices(
    session: Session,
    tenant_id: int,
    status: Optional[str] = None,
    client_id: Optional[int] = None,
    project_id: Optional[int] = None,
    from_issue_date: Optional[date] = None,
    to_issue_date: Optional[date] = None,
    overdue_only: bool = False,
    sort_by: Optional[str] = None,
) -> List[Invoice]:
    """Live invoices of a tenant. Unknown *sort_by* values fall back to newest first."""
    statement = tenant_select(Invoice, tenant_id)
    if status:
        statement = statement.where(Invoice.status == status)
    if client_id:
        statement = statement.where(Invoice.client_id == client_id)
    if project_id:
        statement = statement.where(Invoice.project_id == project_id)
    if from_issue_date:
        statement = statement.where(Invoice.issue_date >= from_issue_date)
    if to_issue_date:
        statement = statement.where(Invoice.issue_date <= to_issue_date)
    if overdue_only:
        # SENT and past due; OVERDUE rows were already marked by hand
        statement = statement.where(
            Invoice.status == InvoiceStatus.SENT.value,
            Invoice.due_date < date.today(),
        )
    order = SORT_ORDERS.get((sort_by or "").lower(), SORT_ORDERS[DEFAULT_SORT])
    return list(session.exec(statement.order_by(order, Invoice.id.desc())).all())


def invoice_items(session: Session, invoice: Invoice) -> List[InvoiceItem]:
    statement = select(InvoiceItem).where(InvoiceItem.invoice_id == invoice.id).order_by(InvoiceItem.id)
    return list(session.exec(statement).all())


# ------------------------------------------------------------
# MANUAL INVOICES
# ------------------------------------------------------------
@dataclass
class ManualItem:
    description: str
    quantity: Decimal
    unit_price: Decimal


def _validate_items(items: List[ManualItem]) -> None:
    if not items:
        raise ValueError("Invoice must have at least one item")
    for item in items:
        if Decimal(item.quantity) <= 0:
            raise ValueError("Item quantity must be positive")
        if Decimal(item.unit_price) < 0:
            raise ValueError("Item unit price cannot be negative")


def _add_manual_items(session: Session, invoice: Invoice, items: List[ManualItem]) -> List[InvoiceItem]:
    rows = []
    for item in items:
        row = InvoiceItem(
            organization_id=invoice.organization_id,
            invoice_id=invoice.id,
            description=item.description,
            quantity=money(item.quantity),
            unit_price=money(item.unit_price),
            amount=line_amount(money(item.quantity), money(item.unit_price)),
            item_type=InvoiceItemType.MANUAL.value,
        )
        session.add(row)
        rows.append(row)
    return rows


def apply_totals(invoice: Invoice, items: List[InvoiceItem]) -> Invoice:
    invoice.subtotal, invoice.tax_amount, invoice.total = calculate_totals(
        (item.amount for item in items), invoice.tax_rate
    )
    return invoice


def create_manual_invoice(
    session: Session,
    tenant_id: int,
    client_id: int,
    items: List[ManualItem],
    *,
    project_id: Optional[int] = None,
    issue_date: Optional[date] = None,
    due_date: Optional[date] = None,
    tax_rate: Optional[Decimal] = None,
    notes: Optional[str] = None,
    created_by: Optional[int] = None,
    number_factory: Callable[[], str] = generate_invoice_number,
) -> Invoice:
    _validate_items(items)
    if not tenant_get(session, Client, client_id, tenant_id):
        raise ResourceNotFound("Client not found")
    if project_id is not None and not tenant_get(session, Project, project_id, tenant_id):
        raise ResourceNotFound("Project not found")

    issue_date = issue_date or date.today()
    due_date = due_date or issue_date + timedelta(days=settings.INVOICE_DUE_DAYS)
    if due_date < issue_date:
        raise ValueError("Due date cannot be before issue date")

    def unit(number: str) -> Invoice:
        invoice = Invoice(
            organization_id=tenant_id,
            client_id=client_id,
            project_id=project_id,
            invoice_number=number,
            issue_date=issue_date,
            due_date=due_date,
            status=InvoiceStatus.DRAFT.value,
            tax_rate=money(tax_rate if tax_rate is not None else settings.DEFAULT_TAX_RATE),
            currency=settings.DEFAULT_CURRENCY,
            notes=notes,
            created_by=created_by,
        )
        session.add(invoice)
        session.flush()
        apply_totals(invoice, _add_manual_items(session, invoice, items))
        session.commit()
        session.refresh(invoice)
        return invoice

    invoice = with_invoice_number(session, unit, number_factory)
    logger.info("🧾 Created invoice %s for org %s (total %s)", invoice.invoice_number, tenant_id, invoice.total)
    return invoice


def replace_draft_items(
    session: Session,
    tenant_id: int,
    invoice_id: int,
    items: List[ManualItem],
    tax_rate: Optional[Decimal] = None,
) -> Invoice:
    """Swap the manual line items of a DRAFT invoice and recompute its amounts.

    TIME items stay: their entries are claimed by this invoice for good.
    """
    invoice = get_invoice(session, tenant_id, invoice_id)
    if not invoice.is_draft:
        raise ImmutableInvoiceError(f"Invoice {invoice.invoice_number} is {invoice.status} and can no longer be edited")
    _validate_items(items)

    # row stays write-locked until commit
    _guarded_write(session, invoice, Invoice.status == InvoiceStatus.DRAFT.value, ImmutableInvoiceError(
        f"Invoice {invoice.invoice_number} left DRAFT and can no longer be edited"
    ))

    kept = []
    for item in invoice_items(session, invoice):
        if item.item_type == InvoiceItemType.MANUAL.value:
            session.delete(item)
        else:
            kept.append(item)
    if tax_rate is not None:
        invoice.tax_rate = money(tax_rate)
    apply_totals(invoice, kept + _add_manual_items(session, invoice, items))
    invoice.updated_at = utc_now()
    session.add(invoice)
    session.commit()
    session.refresh(invoice)
    return invoice


def delete_invoice(session: Session, tenant_id: int, invoice_id: int) -> Invoice:
    """Tombstone an invoice. PAID invoices stay; billed time stays claimed."""
    invoice = get_invoice(session, tenant_id, invoice_id)
    if invoice.status == InvoiceStatus.PAID.value:
        raise ImmutableInvoiceError("Cannot delete paid invoices")

    now = utc_now()
    _guarded_write(
        session,
        invoice,
        Invoice.status != InvoiceStatus.PAID.value,
        ImmutableInvoiceError("Cannot delete paid invoices"),
        deleted_at=now,
    )
    session.commit()
    session.refresh(invoice)
    logger.info("🗑️ Deleted invoice %s for org %s", invoice.invoice_number, tenant_id)
    return invoice


# ------------------------------------------------------------
# STATUS
# ------------------------------------------------------------
def _guarded_write(session: Session, invoice: Invoice, condition, error: Exception, **values) -> None:
    """UPDATE the invoice row only while *condition* still holds at write time."""
    statement = (
        update(Invoice)
        .where(Invoice.id == invoice.id, Invoice.deleted_at.is_(None), condition)
        .values(updated_at=utc_now(), **values)
        .execution_options(synchronize_session=False)
    )
    if session.exec(statement).rowcount != 1:
        session.rollback()
        raise error


def update_status(session: Session, tenant_id: int, invoice_id: int, new_status: str) -> Invoice:
    if new_status not in ALLOWED_TRANSITIONS:
        raise ValueError(f"Unknown invoice status: {new_status}")

    invoice = get_invoice(session, tenant_id, invoice_id)
    if invoice.status == new_status:
        return invoice
    if new_status not in ALLOWED_TRANSITIONS[invoice.status]:
        raise InvalidStatusTransition(f"Invalid status transition from {invoice.status} to {new_status}")

    now = utc_now()
    previous = invoice.status
    stamps = {"status": new_status}
    if new_status == InvoiceStatus.SENT.value:
        stamps["sent_at"] = now
    elif new_status == InvoiceStatus.PAID.value:
        stamps["paid_at"] = now
    elif new_status == InvoiceStatus.CANCELLED.value:
        # billed time stays attached to the cancelled invoice
        stamps["cancelled_at"] = now

    _guarded_write(session, invoice, Invoice.status == previous, InvalidStatusTransition(
        f"Invoice {invoice.invoice_number} changed status concurrently; expected {previous}"
    ), **stamps)
    session.commit()
    session.refresh(invoice)
    logger.info("Invoice %s: %s -> %s", invoice.invoice_number, previous, new_status)
    return invoice
