# core/payment_utils.py — webhook signature check + provider event normalisation
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union
import logging

import stripe

from core.config import settings
from services.exceptions import InvalidSignature

logger = logging.getLogger(__name__)

# Canonical event vocabulary understood by the subscription state machine
SUBSCRIPTION_ACTIVATED = "subscription.activated"
SUBSCRIPTION_CHARGED = "subscription.charged"
SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment_failed"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"

CANONICAL_EVENT_TYPES = {
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_CHARGED,
    SUBSCRIPTION_PAYMENT_FAILED,
    SUBSCRIPTION_CANCELLED,
}

STRIPE_EVENT_MAP = {
    "invoice.paid": SUBSCRIPTION_CHARGED,
    "invoice.payment_succeeded": SUBSCRIPTION_CHARGED,
    "invoice.payment_failed": SUBSCRIPTION_PAYMENT_FAILED,
    "customer.subscription.deleted": SUBSCRIPTION_CANCELLED,
}


@dataclass
class EventRefs:
    """Keys pulled out of an otherwise opaque provider payload."""

    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    tenant_hint: Optional[int] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    payment_id: Optional[str] = None


def verify_webhook_signature(
    payload: Union[bytes, str],
    sig_header: Optional[str],
    secret: Optional[str] = None,
    tolerance: Optional[int] = None,
) -> None:
    """Check a Stripe-style ``t=...,v1=...`` signature header. Raises InvalidSignature."""
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        logger.error("❌ STRIPE_WEBHOOK_SECRET not configured")
        raise InvalidSignature("Webhook secret not configured")
    if not sig_header:
        raise InvalidSignature("Missing signature header")

    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    if tolerance is None:
        tolerance = settings.STRIPE_WEBHOOK_TOLERANCE

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature rejected: %s", e)
        raise InvalidSignature(str(e)) from e


def _data_object(event: Dict[str, Any]) -> Dict[str, Any]:
    return (event.get("data") or {}).get("object") or {}


def normalize_event_type(raw_type: str, data_object: Optional[Dict[str, Any]] = None) -> str:
    """Map a provider event name onto the canonical vocabulary.

    Unknown names are returned unchanged; the state machine ignores them.
    """
    if raw_type in CANONICAL_EVENT_TYPES:
        return raw_type
    if raw_type in STRIPE_EVENT_MAP:
        return STRIPE_EVENT_MAP[raw_type]
    if raw_type in ("customer.subscription.created", "customer.subscription.updated"):
        status = (data_object or {}).get("status")
        if status == "active":
            return SUBSCRIPTION_ACTIVATED
        if status == "canceled":
            return SUBSCRIPTION_CANCELLED
    return raw_type


def _epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _tenant_hint(metadata: Dict[str, Any]) -> Optional[int]:
    raw = metadata.get("tenant_id") or metadata.get("organization_id")
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed tenant hint %r", raw)
        return None


def extract_event_refs(event: Dict[str, Any]) -> EventRefs:
    obj = _data_object(event)
    metadata = obj.get("metadata") or {}

    if obj.get("object") == "subscription":
        subscription_id = obj.get("id")
        period_start = _epoch(obj.get("current_period_start") or obj.get("current_start"))
        period_end = _epoch(obj.get("current_period_end") or obj.get("current_end"))
    else:
        subscription_id = obj.get("subscription")
        period_start = _epoch(obj.get("period_start"))
        period_end = _epoch(obj.get("period_end"))

    payment_id = obj.get("payment_intent") or obj.get("charge")
    if isinstance(payment_id, dict):
        payment_id = payment_id.get("id")

    return EventRefs(
        provider_subscription_id=subscription_id,
        provider_customer_id=obj.get("customer"),
        tenant_hint=_tenant_hint(metadata),
        period_start=period_start,
        period_end=period_end,
        payment_id=payment_id,
    )
