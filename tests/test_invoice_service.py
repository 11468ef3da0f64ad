"""Invoice ledger: manual invoices, draft edits, status lifecycle and numbering."""

import re
from datetime import date
from decimal import Decimal

import pytest
from sqlmodel import Session

from models.models import Client
from services import invoice_service
from services.exceptions import (
    ImmutableInvoiceError,
    InvalidStatusTransition,
    ResourceNotFound,
)
from services.invoice_service import ManualItem


def items(*rows):
    return [ManualItem(desc, Decimal(qty), Decimal(price)) for desc, qty, price in rows]


@pytest.fixture
def draft(session, org, client_project):
    client, _ = client_project
    return invoice_service.create_manual_invoice(
        session,
        org.id,
        client.id,
        items(("Consulting", "2", "150.00"), ("Hosting", "1", "49.99")),
        issue_date=date(2024, 2, 1),
        tax_rate=Decimal("18"),
        number_factory=lambda: "INV-20240201-000001",
    )


def test_money_rounds_half_up():
    assert invoice_service.money(Decimal("2.005")) == Decimal("2.01")
    assert invoice_service.money("1.004") == Decimal("1.00")
    assert invoice_service.line_amount(Decimal("1.50"), Decimal("33.33")) == Decimal("50.00")


def test_calculate_totals():
    subtotal, tax, total = invoice_service.calculate_totals([Decimal("100.00"), Decimal("0.10")], Decimal("18"))
    assert (subtotal, tax, total) == (Decimal("100.10"), Decimal("18.02"), Decimal("118.12"))


def test_generated_number_format():
    number = invoice_service.generate_invoice_number(date(2024, 3, 9))
    assert re.fullmatch(r"INV-20240309-\d{6}", number)


def test_manual_invoice_totals(session, draft):
    assert draft.status == "DRAFT"
    assert draft.subtotal == Decimal("349.99")
    assert draft.tax_amount == Decimal("63.00")
    assert draft.total == Decimal("412.99")
    assert draft.due_date == date(2024, 2, 16)

    rows = invoice_service.invoice_items(session, draft)
    assert [r.item_type for r in rows] == ["MANUAL", "MANUAL"]
    assert sum(r.amount for r in rows) == draft.subtotal


def test_manual_invoice_validation(session, org, other_org, client_project):
    client, _ = client_project
    with pytest.raises(ValueError):
        invoice_service.create_manual_invoice(session, org.id, client.id, [])
    with pytest.raises(ValueError):
        invoice_service.create_manual_invoice(session, org.id, client.id, items(("Bad", "0", "10")))
    with pytest.raises(ValueError):
        invoice_service.create_manual_invoice(
            session, org.id, client.id, items(("Late", "1", "10")),
            issue_date=date(2024, 2, 1), due_date=date(2024, 1, 1),
        )
    with pytest.raises(ResourceNotFound):
        invoice_service.create_manual_invoice(session, other_org.id, client.id, items(("X", "1", "1")))


def test_replace_items_on_draft(session, org, draft):
    updated = invoice_service.replace_draft_items(
        session, org.id, draft.id, items(("Fixed fee", "1", "1000")), tax_rate=Decimal("0")
    )

    assert updated.subtotal == Decimal("1000.00")
    assert updated.tax_amount == Decimal("0.00")
    assert updated.total == Decimal("1000.00")
    assert [r.description for r in invoice_service.invoice_items(session, updated)] == ["Fixed fee"]


def test_non_draft_invoice_is_immutable(session, org, draft):
    invoice_service.update_status(session, org.id, draft.id, "SENT")

    with pytest.raises(ImmutableInvoiceError):
        invoice_service.replace_draft_items(session, org.id, draft.id, items(("Sneaky", "1", "1")))

    session.refresh(draft)
    assert draft.total == Decimal("412.99")


def test_status_lifecycle_stamps_timestamps(session, org, draft):
    sent = invoice_service.update_status(session, org.id, draft.id, "SENT")
    assert sent.sent_at is not None

    overdue = invoice_service.update_status(session, org.id, draft.id, "OVERDUE")
    assert overdue.status == "OVERDUE"

    paid = invoice_service.update_status(session, org.id, draft.id, "PAID")
    assert paid.paid_at is not None

    cancelled = invoice_service.update_status(session, org.id, draft.id, "CANCELLED")
    assert cancelled.cancelled_at is not None


@pytest.mark.parametrize("path, bad", [
    ([], "PAID"),
    ([], "OVERDUE"),
    (["CANCELLED"], "DRAFT"),
    (["CANCELLED"], "SENT"),
    (["SENT", "PAID"], "OVERDUE"),
])
def test_invalid_transitions(session, org, draft, path, bad):
    for step in path:
        invoice_service.update_status(session, org.id, draft.id, step)

    with pytest.raises(InvalidStatusTransition):
        invoice_service.update_status(session, org.id, draft.id, bad)


def test_same_status_is_a_noop(session, org, draft):
    assert invoice_service.update_status(session, org.id, draft.id, "DRAFT").status == "DRAFT"


def test_unknown_status_is_rejected(session, org, draft):
    with pytest.raises(ValueError):
        invoice_service.update_status(session, org.id, draft.id, "ARCHIVED")


def test_lookup_is_tenant_scoped(session, org, other_org, draft):
    assert invoice_service.get_invoice_by_number(session, org.id, "INV-20240201-000001").id == draft.id
    with pytest.raises(ResourceNotFound):
        invoice_service.get_invoice_by_number(session, other_org.id, "INV-20240201-000001")
    with pytest.raises(ResourceNotFound):
        invoice_service.get_invoice(session, other_org.id, draft.id)


def test_same_number_allowed_in_another_tenant(session, org, other_org, draft):
    foreign_client = Client(organization_id=other_org.id, name="Initech")
    session.add(foreign_client)
    session.commit()
    session.refresh(foreign_client)

    invoice = invoice_service.create_manual_invoice(
        session, other_org.id, foreign_client.id, items(("Audit", "1", "10")),
        number_factory=lambda: "INV-20240201-000001",
    )
    assert invoice.invoice_number == draft.invoice_number
    assert invoice.organization_id != draft.organization_id


def test_list_invoices_filters(session, org, client_project, draft):
    client, _ = client_project
    second = invoice_service.create_manual_invoice(session, org.id, client.id, items(("Extra", "1", "5")))
    invoice_service.update_status(session, org.id, second.id, "SENT")

    assert [i.id for i in invoice_service.list_invoices(session, org.id, status="DRAFT")] == [draft.id]
    assert len(invoice_service.list_invoices(session, org.id, client_id=client.id)) == 2
    assert invoice_service.list_invoices(session, org.id, project_id=client_project[1].id) == []


def test_list_invoices_by_issue_date_overdue_and_sort(session, org, client_project, draft):
    client, project = client_project
    later = invoice_service.create_manual_invoice(
        session, org.id, client.id, items(("Retainer", "1", "5")),
        project_id=project.id, issue_date=date.today(),
    )
    invoice_service.update_status(session, org.id, draft.id, "SENT")
    invoice_service.update_status(session, org.id, later.id, "SENT")

    def ids(**filters):
        return [i.id for i in invoice_service.list_invoices(session, org.id, **filters)]

    assert ids(project_id=project.id) == [later.id]
    assert ids(from_issue_date=date(2024, 1, 1), to_issue_date=date(2024, 2, 29)) == [draft.id]
    assert ids(overdue_only=True) == [draft.id]
    assert ids() == [later.id, draft.id]
    assert ids(sort_by="issue_date_asc") == [draft.id, later.id]
    assert ids(sort_by="total_desc") == [draft.id, later.id]
    assert ids(sort_by="due_date_desc") == [later.id, draft.id]
    assert ids(sort_by="nonsense") == [later.id, draft.id]


def test_delete_hides_invoice(session, org, draft):
    invoice_service.delete_invoice(session, org.id, draft.id)

    with pytest.raises(ResourceNotFound):
        invoice_service.get_invoice(session, org.id, draft.id)
    with pytest.raises(ResourceNotFound):
        invoice_service.get_invoice_by_number(session, org.id, draft.invoice_number)
    assert invoice_service.list_invoices(session, org.id) == []
    with pytest.raises(ResourceNotFound):
        invoice_service.update_status(session, org.id, draft.id, "SENT")


def test_paid_invoice_cannot_be_deleted(session, org, draft):
    invoice_service.update_status(session, org.id, draft.id, "SENT")
    invoice_service.update_status(session, org.id, draft.id, "PAID")

    with pytest.raises(ImmutableInvoiceError):
        invoice_service.delete_invoice(session, org.id, draft.id)

    session.refresh(draft)
    assert draft.deleted_at is None


# ------------------------------------------------------------
# Writes racing a status change from another session
# ------------------------------------------------------------
def send_elsewhere(engine, org_id, invoice_id, new_status="SENT"):
    with Session(engine) as other:
        invoice_service.update_status(other, org_id, invoice_id, new_status)


def test_edit_after_concurrent_send_is_rejected(engine, session, org, draft):
    assert draft.status == "DRAFT"
    send_elsewhere(engine, org.id, draft.id)

    # this session still holds the DRAFT copy it loaded before the send
    with pytest.raises(ImmutableInvoiceError):
        invoice_service.replace_draft_items(session, org.id, draft.id, items(("Late change", "1", "500")))

    session.refresh(draft)
    assert draft.status == "SENT"
    assert draft.subtotal == Decimal("349.99")
    assert [r.description for r in invoice_service.invoice_items(session, draft)] == ["Consulting", "Hosting"]


def test_status_change_after_concurrent_cancel_is_rejected(engine, session, org, draft):
    assert draft.status == "DRAFT"
    send_elsewhere(engine, org.id, draft.id, "CANCELLED")

    with pytest.raises(InvalidStatusTransition):
        invoice_service.update_status(session, org.id, draft.id, "SENT")

    session.refresh(draft)
    assert draft.status == "CANCELLED"
    assert draft.sent_at is None
