# routes/invoices.py
from datetime import date
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel import Session

from core.database import get_session
from core.security import get_current_admin
from models.models import InvoiceStatus, User
from schemas.invoice_schema import (
    ConflictRead,
    GenerateRequest,
    GenerateResponse,
    GenerationPreviewRequest,
    GenerationPreviewResponse,
    InvoiceCreate,
    InvoiceItemsReplace,
    InvoiceRead,
    InvoiceStatusUpdate,
)
from services import invoice_service, time_billing
from services.exceptions import (
    EmptySelection,
    ImmutableInvoiceError,
    InvalidStatusTransition,
    InvoiceNumberCollision,
    MissingHourlyRate,
    ResourceNotFound,
)
from services.invoice_service import ManualItem

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["Invoices"])


def _manual_items(items) -> List[ManualItem]:
    return [ManualItem(i.description, i.quantity, i.unit_price) for i in items]


def _generation_request(request: GenerationPreviewRequest) -> time_billing.GenerationRequest:
    return time_billing.GenerationRequest(
        client_id=request.client_id,
        project_id=request.project_id,
        from_date=request.from_date,
        to_date=request.to_date,
        billable_only=request.billable_only,
        group_by=request.group_by,
        include_descriptions=request.include_descriptions,
        tax_rate=request.tax_rate,
        notes=getattr(request, "notes", None),
    )


# =========================================
# Manual invoices
# =========================================
@router.post("", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice(
    request: InvoiceCreate,
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    try:
        return invoice_service.create_manual_invoice(
            session,
            current_user.organization_id,
            request.client_id,
            _manual_items(request.items),
            project_id=request.project_id,
            issue_date=request.issue_date,
            due_date=request.due_date,
            tax_rate=request.tax_rate,
            notes=request.notes,
            created_by=current_user.id,
        )
    except ResourceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InvoiceNumberCollision as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("", response_model=List[InvoiceRead])
def list_invoices(
    status_filter: Optional[InvoiceStatus] = Query(None, alias="status"),
    client_id: Optional[int] = Query(None),
    project_id: Optional[int] = Query(None),
    from_issue_date: Optional[date] = Query(None),
    to_issue_date: Optional[date] = Query(None),
    overdue_only: bool = Query(False),
    sort_by: Optional[str] = Query(None, description="issue_date|due_date|total with _asc or _desc"),
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    return invoice_service.list_invoices(
        session,
        current_user.organization_id,
        status=status_filter.value if status_filter else None,
        client_id=client_id,
        project_id=project_id,
        from_issue_date=from_issue_date,
        to_issue_date=to_issue_date,
        overdue_only=overdue_only,
        sort_by=sort_by,
    )


@router.get("/number/{invoice_number}", response_model=InvoiceRead)
def get_invoice_by_number(
    invoice_number: str,
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    try:
        return invoice_service.get_invoice_by_number(session, current_user.organization_id, invoice_number)
    except ResourceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{invoice_id}", response_model=InvoiceRead)
def get_invoice(
    invoice_id: int,
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    try:
        return invoice_service.get_invoice(session, current_user.organization_id, invoice_id)
    except ResourceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("/{invoice_id}/items", response_model=InvoiceRead)
def replace_items(
    invoice_id: int,
    request: InvoiceItemsReplace,
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    try:
        return invoice_service.replace_draft_items(
            session,
            current_user.organization_id,
            invoice_id,
            _manual_items(request.items),
            tax_rate=request.tax_rate,
        )
    except ResourceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ImmutableInvoiceError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{invoice_id}/status", response_model=InvoiceRead)
def update_status(
    invoice_id: int,
    request: InvoiceStatusUpdate,
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    try:
        return invoice_service.update_status(session, current_user.organization_id, invoice_id, request.status.value)
    except ResourceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice(
    invoice_id: int,
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    try:
        invoice_service.delete_invoice(session, current_user.organization_id, invoice_id)
    except ResourceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ImmutableInvoiceError as e:
        raise HTTPException(status_code=409, detail=str(e))


# =========================================
# Generation from approved time
# =========================================
@router.post("/generate/preview", response_model=GenerationPreviewResponse)
def preview_generation(
    request: GenerationPreviewRequest,
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    try:
        preview = time_billing.preview_from_time(session, current_user.organization_id, _generation_request(request))
    except ResourceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return GenerationPreviewResponse.model_validate(preview)


@router.post("/generate", response_model=GenerateResponse, status_code=status.HTTP_201_CREATED)
def generate_invoice(
    request: GenerateRequest,
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    if not request.confirmed:
        raise HTTPException(status_code=400, detail="Invoice generation must be confirmed")

    try:
        result = time_billing.generate_from_time(
            session,
            current_user.organization_id,
            _generation_request(request),
            created_by=current_user.id,
        )
    except ResourceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MissingHourlyRate as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "user_ids": e.user_ids})
    except EmptySelection as e:
        raise HTTPException(
            status_code=409 if e.conflicts else 422,
            detail={
                "message": str(e),
                "conflicts": [ConflictRead.model_validate(c).model_dump() for c in e.conflicts],
            },
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InvoiceNumberCollision as e:
        raise HTTPException(status_code=503, detail=str(e))

    invoice = result.invoice
    return GenerateResponse(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        total=invoice.total,
        billed_entries_count=len(result.billed_entry_ids),
        conflicts=[ConflictRead.model_validate(c) for c in result.conflicts],
        message="Invoice generated successfully in DRAFT status",
    )
