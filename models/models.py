# models/models.py
from typing import Optional, List, Dict, Any
from datetime import datetime, date, timedelta, timezone
from decimal import Decimal
from enum import Enum

from pydantic import EmailStr
from sqlalchemy import Column, Index, JSON, UniqueConstraint, text
from sqlmodel import SQLModel, Field, Relationship


def utc_now() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================
# ENUMS
# ============================================================
class UserRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MEMBER = "member"


class SubscriptionStatus(str, Enum):
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"


class BillingCycle(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class TimesheetStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class InvoiceItemType(str, Enum):
    TIME = "TIME"
    MANUAL = "MANUAL"


# ============================================================
# ORGANIZATION (tenant)
# ============================================================
class Organization(SQLModel, table=True):
    __tablename__ = "organization"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    slug: Optional[str] = Field(default=None, max_length=50, index=True)
    created_at: datetime = Field(default_factory=utc_now)

    users: List["User"] = Relationship(back_populates="organization")


# ============================================================
# USER
# ============================================================
class User(SQLModel, table=True):
    __tablename__ = "user"
    __table_args__ = (UniqueConstraint("organization_id", "email", name="uq_org_email"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organization.id", index=True)
    full_name: str = Field(max_length=100)
    email: EmailStr = Field(index=True, max_length=100, nullable=False)
    role: str = Field(default=UserRole.MEMBER.value, max_length=20, index=True)
    is_active: bool = Field(default=True)

    # Billing rate used when time is turned into invoice lines
    hourly_rate: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=2)

    created_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None

    organization: Optional["Organization"] = Relationship(back_populates="users")


# ============================================================
# CLIENT / PROJECT / TASK (CRUD owned elsewhere, read here)
# ============================================================
class Client(SQLModel, table=True):
    __tablename__ = "client"

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organization.id", index=True)
    name: str = Field(max_length=200)
    email: Optional[str] = Field(default=None, max_length=100)
    created_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None


class Project(SQLModel, table=True):
    __tablename__ = "project"

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organization.id", index=True)
    client_id: Optional[int] = Field(default=None, foreign_key="client.id", index=True)
    title: str = Field(max_length=100)
    created_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None


class Task(SQLModel, table=True):
    __tablename__ = "task"

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organization.id", index=True)
    project_id: int = Field(foreign_key="project.id", index=True)
    title: str = Field(max_length=200)
    created_at: datetime = Field(default_factory=utc_now)


# ============================================================
# PLAN CATALOG
# ============================================================
class Plan(SQLModel, table=True):
    __tablename__ = "plan"

    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(max_length=50, unique=True, index=True, nullable=False)
    name: str = Field(max_length=100)
    price_monthly: Decimal = Field(default=Decimal("0.00"), max_digits=10, decimal_places=2)
    price_yearly: Decimal = Field(default=Decimal("0.00"), max_digits=10, decimal_places=2)
    currency: str = Field(default="USD", max_length=10)
    max_users: int = Field(default=5)
    max_projects: int = Field(default=5)
    feature_flags: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    trial_days: int = Field(default=0)

    # Provider-side recurring prices; unset for free plans
    provider_price_id_monthly: Optional[str] = Field(default=None, max_length=255)
    provider_price_id_yearly: Optional[str] = Field(default=None, max_length=255)

    is_active: bool = Field(default=True)
    sort_order: int = Field(default=0)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None


# ============================================================
# SUBSCRIPTION (one live row per tenant)
# ============================================================
class Subscription(SQLModel, table=True):
    __tablename__ = "subscription"
    __table_args__ = (
        Index(
            "uq_live_subscription_per_org",
            "organization_id",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organization.id", nullable=False, index=True)
    plan_code: str = Field(max_length=50)
    status: str = Field(default=SubscriptionStatus.TRIALING.value, max_length=20)
    billing_cycle: str = Field(default=BillingCycle.MONTHLY.value, max_length=20)

    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = Field(default=False)

    provider_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)
    provider_subscription_id: Optional[str] = Field(default=None, max_length=255, index=True)
    provider_plan_id: Optional[str] = Field(default=None, max_length=255)
    provider_payment_id: Optional[str] = Field(default=None, max_length=255)
    provider_order_id: Optional[str] = Field(default=None, max_length=255)

    last_event_id: Optional[str] = Field(default=None, max_length=255)
    last_event_received_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None


# ============================================================
# BILLING EVENT LEDGER (append-only)
# ============================================================
class BillingEvent(SQLModel, table=True):
    __tablename__ = "billing_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(default="stripe", max_length=20)
    provider_event_id: str = Field(unique=True, index=True, max_length=255, nullable=False)
    event_type: str = Field(max_length=100, index=True)

    organization_id: Optional[int] = Field(default=None, foreign_key="organization.id", index=True)
    subscription_id: Optional[int] = Field(default=None, foreign_key="subscription.id", index=True)
    provider_subscription_id: Optional[str] = Field(default=None, max_length=255, index=True)

    received_at: datetime = Field(default_factory=utc_now, index=True)
    processed_at: Optional[datetime] = Field(default=None, index=True)
    outcome: Optional[str] = Field(default=None, max_length=100)
    processing_error: Optional[str] = None

    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    @property
    def is_pending(self) -> bool:
        return self.processed_at is None


# ============================================================
# TIMESHEET (weekly approval gate)
# ============================================================
class Timesheet(SQLModel, table=True):
    __tablename__ = "timesheet"
    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", "week_start", name="uq_timesheet_per_week"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organization.id", nullable=False, index=True)
    user_id: int = Field(foreign_key="user.id", nullable=False, index=True)
    week_start: date = Field(index=True, nullable=False)  # Monday

    status: str = Field(default=TimesheetStatus.DRAFT.value, max_length=20)
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[int] = Field(default=None, foreign_key="user.id")
    rejection_reason: Optional[str] = Field(default=None, max_length=500)

    total_minutes: int = Field(default=0)
    billable_minutes: int = Field(default=0)
    non_billable_minutes: int = Field(default=0)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None

    @property
    def week_end(self) -> date:
        return self.week_start + timedelta(days=6)


# ============================================================
# TIME ENTRY
# ============================================================
class TimeEntry(SQLModel, table=True):
    __tablename__ = "time_entry"

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organization.id", nullable=False, index=True)
    user_id: int = Field(foreign_key="user.id", nullable=False, index=True)
    project_id: int = Field(foreign_key="project.id", nullable=False, index=True)
    task_id: Optional[int] = Field(default=None, foreign_key="task.id", index=True)

    work_date: date = Field(index=True, nullable=False)
    minutes: int = Field(default=0, ge=0)
    description: Optional[str] = Field(default=None, max_length=1000)
    billable: bool = Field(default=True)

    # Set together, once, by invoice generation; never cleared
    invoice_id: Optional[int] = Field(default=None, foreign_key="invoice.id", index=True)
    billed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None


# ============================================================
# INVOICE
# ============================================================
class Invoice(SQLModel, table=True):
    __tablename__ = "invoice"
    __table_args__ = (
        UniqueConstraint("organization_id", "invoice_number", name="uq_invoice_org_number"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organization.id", nullable=False, index=True)
    client_id: int = Field(foreign_key="client.id", nullable=False, index=True)
    project_id: Optional[int] = Field(default=None, foreign_key="project.id", index=True)

    invoice_number: str = Field(index=True, max_length=100)
    issue_date: date
    due_date: date
    status: str = Field(default=InvoiceStatus.DRAFT.value, max_length=20)

    subtotal: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    tax_rate: Decimal = Field(default=Decimal("0.00"), max_digits=5, decimal_places=2)
    tax_amount: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    total: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", max_length=10)

    notes: Optional[str] = None
    created_by: Optional[int] = Field(default=None, foreign_key="user.id")
    billing_period_start: Optional[date] = None
    billing_period_end: Optional[date] = None

    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    items: List["InvoiceItem"] = Relationship(back_populates="invoice")

    @property
    def is_draft(self) -> bool:
        return self.status == InvoiceStatus.DRAFT.value


class InvoiceItem(SQLModel, table=True):
    __tablename__ = "invoice_item"

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organization.id", nullable=False, index=True)
    invoice_id: int = Field(foreign_key="invoice.id", nullable=False, index=True)

    description: str = Field(max_length=500)
    quantity: Decimal = Field(max_digits=10, decimal_places=2)
    unit_price: Decimal = Field(max_digits=10, decimal_places=2)
    amount: Decimal = Field(max_digits=12, decimal_places=2)

    item_type: str = Field(default=InvoiceItemType.MANUAL.value, max_length=20)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id")
    task_id: Optional[int] = Field(default=None, foreign_key="task.id")
    minutes: Optional[int] = None
    source_time_entry_ids: Optional[List[int]] = Field(default=None, sa_column=Column(JSON))

    invoice: Optional["Invoice"] = Relationship(back_populates="items")


# ============================================================
# EXPORTS
# ============================================================
__all__ = [
    "utc_now",
    "Organization",
    "User",
    "Client",
    "Project",
    "Task",
    "Plan",
    "Subscription",
    "BillingEvent",
    "Timesheet",
    "TimeEntry",
    "Invoice",
    "InvoiceItem",
    "UserRole",
    "SubscriptionStatus",
    "BillingCycle",
    "TimesheetStatus",
    "InvoiceStatus",
    "InvoiceItemType",
]
