# invoice_schema.py
from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal

from models.models import InvoiceStatus
from services.time_billing import GroupBy


# ---------------------------
# Line items
# ---------------------------
class InvoiceItemCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)


class InvoiceItemRead(BaseModel):
    id: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    item_type: str
    user_id: Optional[int] = None
    task_id: Optional[int] = None
    minutes: Optional[int] = None
    source_time_entry_ids: Optional[List[int]] = None

    model_config = ConfigDict(from_attributes=True)


# ---------------------------
# Invoice
# ---------------------------
class InvoiceCreate(BaseModel):
    client_id: int
    project_id: Optional[int] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    tax_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = None
    items: List[InvoiceItemCreate] = Field(..., min_length=1)


class InvoiceItemsReplace(BaseModel):
    items: List[InvoiceItemCreate] = Field(..., min_length=1)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)


class InvoiceStatusUpdate(BaseModel):
    status: InvoiceStatus


class InvoiceRead(BaseModel):
    id: int
    organization_id: int
    client_id: int
    project_id: Optional[int] = None
    invoice_number: str
    issue_date: date
    due_date: date
    status: str
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    currency: str
    notes: Optional[str] = None
    billing_period_start: Optional[date] = None
    billing_period_end: Optional[date] = None
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    items: List[InvoiceItemRead] = []

    model_config = ConfigDict(from_attributes=True)


# ---------------------------
# Generation from time
# ---------------------------
class GenerationPreviewRequest(BaseModel):
    client_id: int
    project_id: Optional[int] = None
    from_date: date
    to_date: date
    billable_only: bool = True
    group_by: GroupBy = GroupBy.USER
    include_descriptions: bool = False
    tax_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)

    @model_validator(mode="after")
    def check_range(self):
        if self.from_date > self.to_date:
            raise ValueError("From date must be before or equal to to date")
        return self


class GenerateRequest(GenerationPreviewRequest):
    notes: Optional[str] = None
    confirmed: bool = False


class PreviewLineItem(BaseModel):
    description: str
    minutes: int
    hours: Decimal
    unit_price: Decimal
    amount: Decimal
    user_id: Optional[int] = None
    task_id: Optional[int] = None
    entry_ids: List[int] = []

    model_config = ConfigDict(from_attributes=True)


class MissingRateUserRead(BaseModel):
    user_id: int
    name: str
    email: str
    message: str

    model_config = ConfigDict(from_attributes=True)


class GenerationPreviewResponse(BaseModel):
    client_id: int
    client_name: str
    project_id: Optional[int] = None
    project_name: Optional[str] = None
    from_date: date
    to_date: date
    total_minutes: int
    total_hours: Decimal
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    line_items: List[PreviewLineItem] = []
    missing_rate_users: List[MissingRateUserRead] = []
    entries_count: int
    can_generate: bool
    message: str

    model_config = ConfigDict(from_attributes=True)


class ConflictRead(BaseModel):
    time_entry_id: int
    reason: str

    model_config = ConfigDict(from_attributes=True)


class GenerateResponse(BaseModel):
    invoice_id: int
    invoice_number: str
    total: Decimal
    billed_entries_count: int
    conflicts: List[ConflictRead] = []
    message: str
