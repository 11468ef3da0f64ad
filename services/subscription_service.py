# ================================================================
# services/subscription_service.py — subscription lifecycle
# ================================================================
"""Per-tenant subscription record and the transitions that move it.

A subscription changes only through:

* ``start_checkout`` - creates the row (TRIALING or ACTIVE),
* ``request_cancel`` - flags cancel-at-period-end,
* ``apply_event`` - a de-duplicated provider event from the billing ledger.

``plan_transition`` holds the transition table and is free of I/O;
``apply_event`` resolves and locks the row, then writes what the table
returns.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from core.payment_utils import (
    CANONICAL_EVENT_TYPES,
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_CHARGED,
    SUBSCRIPTION_PAYMENT_FAILED,
    EventRefs,
    extract_event_refs,
    normalize_event_type,
    verify_webhook_signature,
)
from models.models import (
    BillingCycle,
    BillingEvent,
    Organization,
    Subscription,
    SubscriptionStatus,
    utc_now,
)
from services import billing_ledger, payment_service
from services.exceptions import (
    BillingError,
    ResolutionError,
    ResourceNotFound,
    SubscriptionAlreadyExists,
    SubscriptionNotFound,
)
from services.plan_catalog import get_plan, plan_price
from services.tenant import tenant_select

logger = logging.getLogger(__name__)

BILLING_CYCLE_DAYS = {
    BillingCycle.MONTHLY.value: 30,
    BillingCycle.YEARLY.value: 365,
}

# apply_event outcomes, stored on the ledger row
OUTCOME_APPLIED = "applied"
OUTCOME_ALREADY_APPLIED = "skipped:already_applied"
OUTCOME_STALE = "skipped:stale"
OUTCOME_PRECONDITION = "skipped:precondition"
OUTCOME_UNHANDLED = "ignored:unhandled_type"


def cycle_length(cycle: str) -> timedelta:
    if cycle not in BILLING_CYCLE_DAYS:
        raise ValueError(f"Unknown billing cycle: {cycle}")
    return timedelta(days=BILLING_CYCLE_DAYS[cycle])


# ------------------------------------------------------------
# QUERIES
# ------------------------------------------------------------
def find_live_subscription(session: Session, tenant_id: int) -> Optional[Subscription]:
    return session.exec(tenant_select(Subscription, tenant_id)).first()


def get_subscription(session: Session, tenant_id: int) -> Subscription:
    subscription = find_live_subscription(session, tenant_id)
    if not subscription:
        raise SubscriptionNotFound(f"No active subscription for organization {tenant_id}")
    return subscription


# ------------------------------------------------------------
# CHECKOUT / CANCEL
# ------------------------------------------------------------
@dataclass
class CheckoutResult:
    subscription_id: int
    plan_code: str
    billing_cycle: str
    status: str
    amount: Decimal
    currency: str
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None


def start_checkout(
    session: Session,
    tenant_id: int,
    plan_code: str,
    cycle: str = BillingCycle.MONTHLY.value,
    email: Optional[str] = None,
) -> CheckoutResult:
    """Create the tenant's subscription and, for paid plans, the provider-side records."""
    org = session.get(Organization, tenant_id)
    if not org:
        raise ResourceNotFound(f"Organization {tenant_id} not found")

    length = cycle_length(cycle)
    plan = get_plan(session, plan_code)
    if find_live_subscription(session, tenant_id):
        raise SubscriptionAlreadyExists("Organization already has a subscription")

    now = utc_now()
    if plan.trial_days > 0:
        status = SubscriptionStatus.TRIALING.value
        period_end = now + timedelta(days=plan.trial_days)
    else:
        status = SubscriptionStatus.ACTIVE.value
        period_end = now + length

    subscription = Subscription(
        organization_id=tenant_id,
        plan_code=plan.code,
        status=status,
        billing_cycle=cycle,
        current_period_start=now,
        current_period_end=period_end,
    )
    session.add(subscription)
    try:
        # the partial unique index rejects a concurrent checkout here
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise SubscriptionAlreadyExists("Organization already has a subscription") from e

    # provider calls run with no write transaction open
    amount = plan_price(plan, cycle)
    if amount > 0:
        try:
            customer_id = payment_service.create_customer(org, email)
            provider_sub = payment_service.create_subscription(customer_id, plan, cycle, tenant_id)
        except BillingError:
            subscription_id = subscription.id
            session.rollback()
            session.delete(subscription)
            session.commit()
            logger.warning("⚠️ Checkout for org %s failed at the provider; subscription %s removed", tenant_id, subscription_id)
            raise
        subscription.provider_customer_id = customer_id
        subscription.provider_subscription_id = provider_sub.subscription_id
        subscription.provider_plan_id = provider_sub.plan_id
        subscription.updated_at = utc_now()
        session.add(subscription)
        session.commit()

    session.refresh(subscription)
    logger.info(
        "✅ Subscription %s created for org %s: %s/%s (%s)",
        subscription.id, tenant_id, plan.code, cycle, status,
    )
    return CheckoutResult(
        subscription_id=subscription.id,
        plan_code=plan.code,
        billing_cycle=cycle,
        status=status,
        amount=amount,
        currency=plan.currency,
        provider_customer_id=subscription.provider_customer_id,
        provider_subscription_id=subscription.provider_subscription_id,
    )


def request_cancel(session: Session, tenant_id: int) -> Subscription:
    """Ask for cancellation at the end of the current period.

    Provider-backed subscriptions keep their status until the provider's
    cancellation event arrives. A subscription with no provider record
    (free plans) has nobody to send that event and is cancelled here.
    """
    subscription = get_subscription(session, tenant_id)
    if subscription.cancel_at_period_end:
        return subscription

    if subscription.provider_subscription_id:
        payment_service.cancel_at_period_end(subscription.provider_subscription_id)
        subscription.cancel_at_period_end = True
        logger.info("🛑 Org %s subscription will cancel at period end", tenant_id)
    else:
        now = utc_now()
        subscription.cancel_at_period_end = True
        subscription.status = SubscriptionStatus.CANCELED.value
        subscription.deleted_at = now
        logger.info("🛑 Org %s subscription cancelled (no provider record)", tenant_id)

    subscription.updated_at = utc_now()
    session.add(subscription)
    session.commit()
    session.refresh(subscription)
    return subscription


# ------------------------------------------------------------
# STATE MACHINE
# ------------------------------------------------------------
@dataclass(frozen=True)
class SubscriptionSnapshot:
    status: str
    billing_cycle: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionSnapshot":
        return cls(
            status=subscription.status,
            billing_cycle=subscription.billing_cycle,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
        )


def plan_transition(
    snapshot: SubscriptionSnapshot,
    event_type: str,
    refs: EventRefs,
    received_at: datetime,
) -> Optional[Dict[str, Any]]:
    """Return the field changes *event_type* causes, or None when it changes nothing."""
    status = snapshot.status

    if event_type == SUBSCRIPTION_ACTIVATED:
        if status not in (SubscriptionStatus.TRIALING.value, SubscriptionStatus.PAST_DUE.value):
            return None
        start = refs.period_start or received_at
        end = refs.period_end or start + cycle_length(snapshot.billing_cycle)
        return {
            "status": SubscriptionStatus.ACTIVE.value,
            "current_period_start": start,
            "current_period_end": end,
        }

    if event_type == SUBSCRIPTION_CHARGED:
        if status not in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value):
            return None
        base = snapshot.current_period_end or received_at
        changes = {
            "status": SubscriptionStatus.ACTIVE.value,
            "current_period_end": base + cycle_length(snapshot.billing_cycle),
        }
        if refs.payment_id:
            changes["provider_payment_id"] = refs.payment_id
        return changes

    if event_type == SUBSCRIPTION_PAYMENT_FAILED:
        if status != SubscriptionStatus.ACTIVE.value:
            return None
        return {"status": SubscriptionStatus.PAST_DUE.value}

    if event_type == SUBSCRIPTION_CANCELLED:
        if status == SubscriptionStatus.CANCELED.value:
            return None
        return {"status": SubscriptionStatus.CANCELED.value, "deleted_at": received_at}

    return None


def _resolve_subscription(session: Session, event: BillingEvent, refs: EventRefs) -> Subscription:
    """Find and lock the subscription an event refers to. Raises ResolutionError."""
    subscription_ref = refs.provider_subscription_id or event.provider_subscription_id
    subscription = None

    if subscription_ref:
        # deleted rows included so a repeated cancellation still resolves
        statement = (
            select(Subscription)
            .where(Subscription.provider_subscription_id == subscription_ref)
            .order_by(Subscription.deleted_at.is_(None).desc(), Subscription.id.desc())
            .with_for_update()
        )
        subscription = session.exec(statement).first()
    elif event.subscription_id:
        subscription = session.get(Subscription, event.subscription_id, with_for_update=True)
    elif event.organization_id is not None:
        subscription = session.exec(tenant_select(Subscription, event.organization_id).with_for_update()).first()

    if subscription is None:
        raise ResolutionError(
            f"Event {event.provider_event_id} does not resolve to a subscription "
            f"(ref={subscription_ref}, tenant={event.organization_id})",
            event.provider_event_id,
        )
    if event.organization_id is not None and event.organization_id != subscription.organization_id:
        raise ResolutionError(
            f"Event {event.provider_event_id} tenant {event.organization_id} does not own "
            f"subscription {subscription.id}",
            event.provider_event_id,
        )
    return subscription


def apply_event(session: Session, event: BillingEvent) -> Tuple[str, Optional[Subscription]]:
    """Apply one ledgered event. Does not commit; the caller commits with mark_processed."""
    if event.event_type not in CANONICAL_EVENT_TYPES:
        logger.info("Ignoring unhandled billing event %s (%s)", event.provider_event_id, event.event_type)
        return OUTCOME_UNHANDLED, None

    refs = extract_event_refs(event.payload)
    subscription = _resolve_subscription(session, event, refs)

    if subscription.last_event_id == event.provider_event_id:
        logger.info("Event %s already applied to subscription %s", event.provider_event_id, subscription.id)
        return OUTCOME_ALREADY_APPLIED, subscription
    if subscription.last_event_received_at and event.received_at < subscription.last_event_received_at:
        logger.warning(
            "Skipping stale event %s for subscription %s (received %s, last applied %s)",
            event.provider_event_id, subscription.id, event.received_at, subscription.last_event_received_at,
        )
        return OUTCOME_STALE, subscription

    changes = plan_transition(SubscriptionSnapshot.from_model(subscription), event.event_type, refs, event.received_at)
    if changes is None:
        logger.info(
            "Event %s (%s) not applicable to subscription %s in status %s",
            event.provider_event_id, event.event_type, subscription.id, subscription.status,
        )
        return OUTCOME_PRECONDITION, subscription

    previous = subscription.status
    for field, value in changes.items():
        setattr(subscription, field, value)
    if refs.provider_customer_id and not subscription.provider_customer_id:
        subscription.provider_customer_id = refs.provider_customer_id
    subscription.last_event_id = event.provider_event_id
    subscription.last_event_received_at = event.received_at
    subscription.updated_at = utc_now()
    session.add(subscription)

    logger.info(
        "🔄 Subscription %s: %s -> %s on %s (%s)",
        subscription.id, previous, subscription.status, event.event_type, event.provider_event_id,
    )
    return OUTCOME_APPLIED, subscription


# ------------------------------------------------------------
# WEBHOOK PIPELINE
# ------------------------------------------------------------
class WebhookStatus(str, Enum):
    DUPLICATE = "duplicate"
    PROCESSED = "processed"
    PENDING = "pending"


@dataclass
class WebhookOutcome:
    status: WebhookStatus
    provider_event_id: str
    event_type: Optional[str] = None
    outcome: Optional[str] = None
    detail: Optional[str] = None


def process_event(session: Session, event: BillingEvent) -> WebhookOutcome:
    """Apply a ledgered event and mark it processed in the same transaction."""
    event_id = event.id
    provider_event_id = event.provider_event_id
    event_type = event.event_type
    try:
        outcome, subscription = apply_event(session, event)
        billing_ledger.mark_processed(session, event, outcome, subscription)
        session.commit()
    except ResolutionError as e:
        session.rollback()
        logger.warning("⚠️ Billing event %s left pending: %s", provider_event_id, e)
        billing_ledger.record_failure(session, event_id, str(e))
        return WebhookOutcome(WebhookStatus.PENDING, provider_event_id, event_type, detail=str(e))
    except Exception as e:
        session.rollback()
        logger.exception("❌ Failed to apply billing event %s", provider_event_id)
        billing_ledger.record_failure(session, event_id, f"{type(e).__name__}: {e}")
        raise

    return WebhookOutcome(WebhookStatus.PROCESSED, provider_event_id, event_type, outcome=outcome)


def handle_webhook(session: Session, payload: Union[bytes, str], signature: Optional[str]) -> WebhookOutcome:
    """Verify, ledger and apply one provider delivery.

    Raises InvalidSignature before anything is stored, and ValueError for a
    body that is not a provider event.
    """
    verify_webhook_signature(payload, signature)

    try:
        body = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError("Invalid JSON payload") from e
    if not isinstance(body, dict) or not body.get("id") or not body.get("type"):
        raise ValueError("Payload is missing event id or type")

    data_object = (body.get("data") or {}).get("object") or {}
    event_type = normalize_event_type(body["type"], data_object)
    refs = extract_event_refs(body)

    result = billing_ledger.ingest(
        session,
        body["id"],
        event_type,
        refs.tenant_hint,
        body,
        provider_subscription_id=refs.provider_subscription_id,
    )
    if not result.accepted:
        return WebhookOutcome(WebhookStatus.DUPLICATE, body["id"], event_type)

    return process_event(session, result.event)


def reprocess_pending(session: Session, limit: int = 100) -> List[WebhookOutcome]:
    """Retry pending ledger rows, oldest first. One failing event does not stop the sweep."""
    outcomes = []
    for event in billing_ledger.pending_events(session, limit=limit):
        provider_event_id = event.provider_event_id
        try:
            outcomes.append(process_event(session, event))
        except Exception as e:
            outcomes.append(
                WebhookOutcome(WebhookStatus.PENDING, provider_event_id, detail=f"{type(e).__name__}: {e}")
            )
    processed = sum(1 for o in outcomes if o.status == WebhookStatus.PROCESSED)
    logger.info("Reconciliation sweep: %d processed, %d still pending", processed, len(outcomes) - processed)
    return outcomes
