from .billing_schema import PlanRead, SubscriptionRead, CheckoutRequest, CheckoutResponse, WebhookResponse, BillingEventRead
from .invoice_schema import (
    InvoiceItemCreate, InvoiceItemRead,
    InvoiceCreate, InvoiceItemsReplace, InvoiceStatusUpdate, InvoiceRead,
    GenerationPreviewRequest, GenerateRequest,
    PreviewLineItem, MissingRateUserRead, GenerationPreviewResponse,
    ConflictRead, GenerateResponse
)
from .timesheet_schema import TimesheetRead, TimesheetSubmit, TimesheetReview, TimeEntryCreate, TimeEntryRead

__all__ = [
    # Billing
    "PlanRead", "SubscriptionRead", "CheckoutRequest", "CheckoutResponse", "WebhookResponse", "BillingEventRead",

    # Invoices
    "InvoiceItemCreate", "InvoiceItemRead",
    "InvoiceCreate", "InvoiceItemsReplace", "InvoiceStatusUpdate", "InvoiceRead",
    "GenerationPreviewRequest", "GenerateRequest",
    "PreviewLineItem", "MissingRateUserRead", "GenerationPreviewResponse",
    "ConflictRead", "GenerateResponse",

    # Timesheet
    "TimesheetRead", "TimesheetSubmit", "TimesheetReview", "TimeEntryCreate", "TimeEntryRead",
]
