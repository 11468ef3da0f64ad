# routes/billing.py
from typing import List
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlmodel import Session

from core.database import get_session
from core.security import get_current_admin, get_current_user
from models.models import User
from schemas.billing_schema import (
    BillingEventRead,
    CheckoutRequest,
    CheckoutResponse,
    PlanRead,
    SubscriptionRead,
    WebhookResponse,
)
from services import billing_ledger, plan_catalog, subscription_service
from services.exceptions import (
    InvalidSignature,
    PlanNotFound,
    ProviderError,
    ResourceNotFound,
    SubscriptionAlreadyExists,
    SubscriptionNotFound,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


# -------------------------
# Plans
# -------------------------
@router.get("/plans", response_model=List[PlanRead])
def list_plans(session: Session = Depends(get_session)):
    """Public plan catalog, cheapest first."""
    return plan_catalog.list_plans(session)


# -------------------------
# Subscription
# -------------------------
@router.get("/subscription", response_model=SubscriptionRead)
def get_subscription(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    try:
        return subscription_service.get_subscription(session, current_user.organization_id)
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def checkout(
    request: CheckoutRequest,
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    """Start a subscription for the caller's organization."""
    try:
        result = subscription_service.start_checkout(
            session,
            current_user.organization_id,
            request.plan_code,
            request.billing_cycle.value,
            email=current_user.email,
        )
    except (PlanNotFound, ResourceNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SubscriptionAlreadyExists as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))

    logger.info("🎯 Checkout for org %s by user %s: %s", current_user.organization_id, current_user.id, result.plan_code)
    return CheckoutResponse.model_validate(result)


@router.post("/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    try:
        return subscription_service.request_cancel(session, current_user.organization_id)
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/events", response_model=List[BillingEventRead])
def list_billing_events(
    current_user: User = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    """Provider events recorded for the caller's organization, oldest first."""
    return billing_ledger.events_for_tenant(session, current_user.organization_id)


# -------------------------
# Provider webhook
# -------------------------
@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(request: Request, session: Session = Depends(get_session)):
    """
    Stripe webhook endpoint.

    Signature failures and malformed bodies are rejected with 400. Duplicate
    deliveries and events that cannot be matched to a subscription are
    acknowledged with 200 so the provider stops retrying; the latter stay
    pending in the ledger for the reconciliation sweep.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        # handle_webhook blocks on commits and row locks; keep it off the event loop
        outcome = await run_in_threadpool(subscription_service.handle_webhook, session, payload, sig_header)
    except InvalidSignature as e:
        raise HTTPException(status_code=400, detail=f"Invalid signature: {e}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {e}")
    except Exception:
        logger.exception("❌ Webhook processing failed")
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return WebhookResponse(
        status=outcome.status.value,
        event_id=outcome.provider_event_id,
        event_type=outcome.event_type,
        outcome=outcome.outcome,
        detail=outcome.detail,
    )
