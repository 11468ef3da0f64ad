# billing_schema.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime
from decimal import Decimal

from models.models import BillingCycle


# ---------------------------
# Plan
# ---------------------------
class PlanRead(BaseModel):
    id: int
    code: str
    name: str
    price_monthly: Decimal
    price_yearly: Decimal
    currency: str
    max_users: int
    max_projects: int
    feature_flags: Dict[str, Any] = {}
    trial_days: int
    sort_order: int

    model_config = ConfigDict(from_attributes=True)


# ---------------------------
# Subscription
# ---------------------------
class SubscriptionRead(BaseModel):
    id: int
    organization_id: int
    plan_code: str
    status: str
    billing_cycle: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    last_event_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CheckoutRequest(BaseModel):
    plan_code: str = Field(..., min_length=1, max_length=50)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


class CheckoutResponse(BaseModel):
    subscription_id: int
    plan_code: str
    billing_cycle: str
    status: str
    amount: Decimal
    currency: str
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# ---------------------------
# Webhook
# ---------------------------
class WebhookResponse(BaseModel):
    status: str
    event_id: str
    event_type: Optional[str] = None
    outcome: Optional[str] = None
    detail: Optional[str] = None


class BillingEventRead(BaseModel):
    id: int
    provider: str
    provider_event_id: str
    event_type: str
    organization_id: Optional[int] = None
    subscription_id: Optional[int] = None
    received_at: datetime
    processed_at: Optional[datetime] = None
    outcome: Optional[str] = None
    processing_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
