# ================================================================
# services/payment_service.py — Stripe adapter (customers + subscriptions)
# ================================================================
import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from core.config import settings
from models.models import BillingCycle, Organization, Plan
from services.exceptions import ProviderError

logger = logging.getLogger(__name__)

# ------------------------
# STRIPE CONFIG
# ------------------------
stripe.api_key = settings.STRIPE_SECRET_KEY


@dataclass
class ProviderSubscription:
    subscription_id: str
    status: Optional[str] = None
    plan_id: Optional[str] = None


def _require_api_key() -> None:
    if not stripe.api_key:
        raise ProviderError("STRIPE_SECRET_KEY is not configured")


def provider_price_id(plan: Plan, cycle: str) -> Optional[str]:
    if cycle == BillingCycle.YEARLY.value:
        return plan.provider_price_id_yearly
    return plan.provider_price_id_monthly


def create_customer(org: Organization, email: str) -> str:
    """Create the Stripe customer that owns the tenant's subscription."""
    _require_api_key()
    try:
        customer = stripe.Customer.create(
            email=email,
            name=org.name,
            metadata={"tenant_id": str(org.id)},
        )
    except stripe.StripeError as e:
        logger.error("❌ Stripe customer creation failed for org %s: %s", org.id, e)
        raise ProviderError(f"Customer creation failed: {e}") from e

    logger.info("💳 Created Stripe customer %s for org %s", customer.id, org.id)
    return customer.id


def create_subscription(customer_id: str, plan: Plan, cycle: str, tenant_id: int) -> ProviderSubscription:
    """Start a recurring Stripe subscription.

    The tenant id travels in the subscription metadata so that later
    webhook events can be matched back to the right organization.
    """
    _require_api_key()
    price_id = provider_price_id(plan, cycle)
    if not price_id:
        raise ProviderError(f"Plan {plan.code} has no provider price for {cycle} billing")

    params = {
        "customer": customer_id,
        "items": [{"price": price_id, "quantity": 1}],
        "metadata": {"tenant_id": str(tenant_id), "plan_code": plan.code},
        "payment_behavior": "default_incomplete",
    }
    if plan.trial_days:
        params["trial_period_days"] = plan.trial_days

    try:
        subscription = stripe.Subscription.create(**params)
    except stripe.StripeError as e:
        logger.error("❌ Stripe subscription creation failed for org %s: %s", tenant_id, e)
        raise ProviderError(f"Subscription creation failed: {e}") from e

    logger.info("✅ Stripe subscription %s created (%s, %s)", subscription.id, plan.code, cycle)
    return ProviderSubscription(subscription_id=subscription.id, status=subscription.status, plan_id=price_id)


def cancel_at_period_end(provider_subscription_id: str) -> None:
    """Stop renewal; Stripe sends customer.subscription.deleted when the period ends."""
    _require_api_key()
    try:
        stripe.Subscription.modify(provider_subscription_id, cancel_at_period_end=True)
    except stripe.StripeError as e:
        logger.error("❌ Stripe cancellation failed for %s: %s", provider_subscription_id, e)
        raise ProviderError(f"Cancellation failed: {e}") from e

    logger.info("🛑 Stripe subscription %s set to cancel at period end", provider_subscription_id)
