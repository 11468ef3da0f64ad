"""Subscription lifecycle: checkout, cancel and the event-driven state machine."""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlmodel import Session, select

from core.payment_utils import (
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_CHARGED,
    SUBSCRIPTION_PAYMENT_FAILED,
    EventRefs,
)
from models.models import Subscription, SubscriptionStatus
from services import billing_ledger, subscription_service
from services.exceptions import (
    InvalidSignature,
    PlanNotFound,
    ProviderError,
    ResolutionError,
    SubscriptionAlreadyExists,
    SubscriptionNotFound,
)
from services.payment_service import ProviderSubscription
from services.subscription_service import (
    OUTCOME_ALREADY_APPLIED,
    OUTCOME_APPLIED,
    OUTCOME_PRECONDITION,
    OUTCOME_STALE,
    OUTCOME_UNHANDLED,
    SubscriptionSnapshot,
    WebhookStatus,
    plan_transition,
)

RECEIVED = datetime(2024, 1, 15, 9, 30)
PERIOD_START = datetime(2024, 1, 1)
PERIOD_END = datetime(2024, 1, 31)


def snapshot(status, cycle="MONTHLY", end=PERIOD_END):
    return SubscriptionSnapshot(status=status, billing_cycle=cycle, current_period_start=PERIOD_START, current_period_end=end)


def invoice_object(subscription_id="sub_test_123", **fields):
    obj = {
        "object": "invoice",
        "id": "in_123",
        "subscription": subscription_id,
        "customer": "cus_123",
        "payment_intent": "pi_123",
    }
    obj.update(fields)
    return obj


# ------------------------------------------------------------
# plan_transition
# ------------------------------------------------------------
class TestPlanTransition:
    def test_activated_moves_trialing_to_active_with_provider_period(self):
        refs = EventRefs(period_start=datetime(2024, 2, 1), period_end=datetime(2024, 3, 1))
        changes = plan_transition(snapshot("TRIALING"), SUBSCRIPTION_ACTIVATED, refs, RECEIVED)
        assert changes == {
            "status": "ACTIVE",
            "current_period_start": datetime(2024, 2, 1),
            "current_period_end": datetime(2024, 3, 1),
        }

    def test_activated_without_period_uses_received_at_plus_cycle(self):
        changes = plan_transition(snapshot("PAST_DUE", cycle="YEARLY"), SUBSCRIPTION_ACTIVATED, EventRefs(), RECEIVED)
        assert changes["current_period_start"] == RECEIVED
        assert changes["current_period_end"] == RECEIVED + timedelta(days=365)

    def test_activated_on_active_is_a_noop(self):
        assert plan_transition(snapshot("ACTIVE"), SUBSCRIPTION_ACTIVATED, EventRefs(), RECEIVED) is None

    def test_charged_extends_period_by_one_cycle(self):
        changes = plan_transition(snapshot("ACTIVE"), SUBSCRIPTION_CHARGED, EventRefs(payment_id="pi_1"), RECEIVED)
        assert changes == {
            "status": "ACTIVE",
            "current_period_end": PERIOD_END + timedelta(days=30),
            "provider_payment_id": "pi_1",
        }

    def test_charged_recovers_past_due(self):
        changes = plan_transition(snapshot("PAST_DUE"), SUBSCRIPTION_CHARGED, EventRefs(), RECEIVED)
        assert changes["status"] == "ACTIVE"
        assert "provider_payment_id" not in changes

    def test_charged_without_period_end_counts_from_received_at(self):
        changes = plan_transition(snapshot("ACTIVE", end=None), SUBSCRIPTION_CHARGED, EventRefs(), RECEIVED)
        assert changes["current_period_end"] == RECEIVED + timedelta(days=30)

    @pytest.mark.parametrize("status", ["TRIALING", "CANCELED"])
    def test_charged_ignored_outside_active_or_past_due(self, status):
        assert plan_transition(snapshot(status), SUBSCRIPTION_CHARGED, EventRefs(), RECEIVED) is None

    def test_payment_failed_moves_active_to_past_due(self):
        changes = plan_transition(snapshot("ACTIVE"), SUBSCRIPTION_PAYMENT_FAILED, EventRefs(), RECEIVED)
        assert changes == {"status": "PAST_DUE"}

    @pytest.mark.parametrize("status", ["TRIALING", "PAST_DUE", "CANCELED"])
    def test_payment_failed_only_applies_to_active(self, status):
        assert plan_transition(snapshot(status), SUBSCRIPTION_PAYMENT_FAILED, EventRefs(), RECEIVED) is None

    @pytest.mark.parametrize("status", ["TRIALING", "ACTIVE", "PAST_DUE"])
    def test_cancelled_is_terminal(self, status):
        changes = plan_transition(snapshot(status), SUBSCRIPTION_CANCELLED, EventRefs(), RECEIVED)
        assert changes == {"status": "CANCELED", "deleted_at": RECEIVED}

    def test_cancelled_on_cancelled_is_a_noop(self):
        assert plan_transition(snapshot("CANCELED"), SUBSCRIPTION_CANCELLED, EventRefs(), RECEIVED) is None

    def test_unknown_event_changes_nothing(self):
        assert plan_transition(snapshot("ACTIVE"), "customer.updated", EventRefs(), RECEIVED) is None


# ------------------------------------------------------------
# apply_event / webhook pipeline
# ------------------------------------------------------------
def test_charged_webhook_advances_period_once(session, org, make_subscription, signed_event):
    sub = make_subscription(org, current_period_start=PERIOD_START, current_period_end=PERIOD_END)
    payload, signature = signed_event("evt_paid_1", "invoice.paid", invoice_object())

    first = subscription_service.handle_webhook(session, payload, signature)
    second = subscription_service.handle_webhook(session, payload, signature)

    assert first.status == WebhookStatus.PROCESSED
    assert first.event_type == SUBSCRIPTION_CHARGED
    assert first.outcome == OUTCOME_APPLIED
    assert second.status == WebhookStatus.DUPLICATE

    session.refresh(sub)
    assert sub.status == "ACTIVE"
    assert sub.current_period_end == PERIOD_END + timedelta(days=30)
    assert sub.provider_payment_id == "pi_123"
    assert sub.last_event_id == "evt_paid_1"

    event = billing_ledger.get_event(session, "evt_paid_1")
    assert event.outcome == OUTCOME_APPLIED
    assert event.subscription_id == sub.id
    assert event.organization_id == org.id


def test_duplicate_with_different_body_bytes_is_still_duplicate(session, org, make_subscription, signed_event):
    make_subscription(org, current_period_end=PERIOD_END)
    payload, signature = signed_event("evt_paid_2", "invoice.paid", invoice_object())
    subscription_service.handle_webhook(session, payload, signature)

    reformatted, resigned = signed_event("evt_paid_2", "invoice.paid", invoice_object(payment_intent="pi_other"))
    outcome = subscription_service.handle_webhook(session, reformatted, resigned)

    assert outcome.status == WebhookStatus.DUPLICATE
    assert billing_ledger.get_event(session, "evt_paid_2").payload["data"]["object"]["payment_intent"] == "pi_123"


def test_activation_from_trial(session, org, make_subscription, signed_event):
    sub = make_subscription(org, status=SubscriptionStatus.TRIALING.value)
    payload, signature = signed_event(
        "evt_sub_active",
        "customer.subscription.updated",
        {
            "object": "subscription",
            "id": "sub_test_123",
            "status": "active",
            "customer": "cus_999",
            "current_period_start": 1704067200,
            "current_period_end": 1706745600,
            "metadata": {"tenant_id": str(org.id)},
        },
    )

    outcome = subscription_service.handle_webhook(session, payload, signature)

    assert outcome.event_type == SUBSCRIPTION_ACTIVATED
    session.refresh(sub)
    assert sub.status == "ACTIVE"
    assert sub.current_period_start == datetime(2024, 1, 1)
    assert sub.current_period_end == datetime(2024, 2, 1)
    assert sub.provider_customer_id == "cus_999"


def test_payment_failure_then_cancellation(session, org, make_subscription, signed_event):
    sub = make_subscription(org)

    payload, signature = signed_event("evt_fail", "invoice.payment_failed", invoice_object())
    subscription_service.handle_webhook(session, payload, signature)
    session.refresh(sub)
    assert sub.status == "PAST_DUE"

    payload, signature = signed_event(
        "evt_deleted", "customer.subscription.deleted", {"object": "subscription", "id": "sub_test_123", "status": "canceled"}
    )
    outcome = subscription_service.handle_webhook(session, payload, signature)
    session.refresh(sub)
    assert outcome.outcome == OUTCOME_APPLIED
    assert sub.status == "CANCELED"
    assert sub.deleted_at is not None
    assert subscription_service.find_live_subscription(session, org.id) is None


def test_second_cancellation_resolves_deleted_row_and_is_noop(session, org, make_subscription, signed_event):
    sub = make_subscription(org, status=SubscriptionStatus.CANCELED.value, deleted_at=PERIOD_END)
    payload, signature = signed_event(
        "evt_deleted_again", "customer.subscription.deleted", {"object": "subscription", "id": "sub_test_123"}
    )

    outcome = subscription_service.handle_webhook(session, payload, signature)

    assert outcome.status == WebhookStatus.PROCESSED
    assert outcome.outcome == OUTCOME_PRECONDITION
    session.refresh(sub)
    assert sub.deleted_at == PERIOD_END


def test_precondition_failure_is_processed_without_change(session, org, make_subscription, signed_event):
    sub = make_subscription(org, status=SubscriptionStatus.TRIALING.value, current_period_end=PERIOD_END)
    payload, signature = signed_event("evt_early_charge", "invoice.paid", invoice_object())

    outcome = subscription_service.handle_webhook(session, payload, signature)

    assert outcome.outcome == OUTCOME_PRECONDITION
    assert not billing_ledger.get_event(session, "evt_early_charge").is_pending
    session.refresh(sub)
    assert sub.status == "TRIALING"
    assert sub.current_period_end == PERIOD_END
    assert sub.last_event_id is None


def test_unhandled_event_type_is_recorded_and_ignored(session, org, signed_event):
    payload, signature = signed_event("evt_misc", "customer.updated", {"object": "customer", "id": "cus_1"})

    outcome = subscription_service.handle_webhook(session, payload, signature)

    assert outcome.status == WebhookStatus.PROCESSED
    assert outcome.outcome == OUTCOME_UNHANDLED
    assert billing_ledger.get_event(session, "evt_misc").event_type == "customer.updated"


def test_event_already_applied_is_skipped(session, org, make_subscription):
    sub = make_subscription(org, last_event_id="evt_seen", current_period_end=PERIOD_END)
    event = billing_ledger.ingest(
        session, "evt_seen", SUBSCRIPTION_CHARGED, org.id,
        {"data": {"object": invoice_object()}}, provider_subscription_id="sub_test_123",
    ).event

    outcome, resolved = subscription_service.apply_event(session, event)

    assert outcome == OUTCOME_ALREADY_APPLIED
    assert resolved.id == sub.id
    assert resolved.current_period_end == PERIOD_END


def test_stale_event_is_skipped(session, org, make_subscription):
    make_subscription(
        org,
        last_event_id="evt_newer",
        last_event_received_at=datetime(2024, 1, 20),
        current_period_end=PERIOD_END,
    )
    event = billing_ledger.ingest(
        session, "evt_older", SUBSCRIPTION_PAYMENT_FAILED, org.id,
        {"data": {"object": invoice_object()}}, received_at=datetime(2024, 1, 10),
    ).event

    outcome = subscription_service.process_event(session, event)

    assert outcome.outcome == OUTCOME_STALE
    sub = subscription_service.get_subscription(session, org.id)
    assert sub.status == "ACTIVE"
    assert sub.last_event_id == "evt_newer"


def test_events_apply_in_received_order(session, org, make_subscription):
    sub = make_subscription(org, current_period_end=PERIOD_END)
    body = {"data": {"object": invoice_object()}}
    first = billing_ledger.ingest(session, "evt_a", SUBSCRIPTION_PAYMENT_FAILED, org.id, body, received_at=datetime(2024, 1, 10)).event
    second = billing_ledger.ingest(session, "evt_b", SUBSCRIPTION_CHARGED, org.id, body, received_at=datetime(2024, 1, 11)).event

    subscription_service.process_event(session, first)
    subscription_service.process_event(session, second)

    session.refresh(sub)
    assert sub.status == "ACTIVE"
    assert sub.last_event_id == "evt_b"
    assert sub.last_event_received_at == datetime(2024, 1, 11)


def test_unknown_subscription_leaves_event_pending(session, org, signed_event):
    payload, signature = signed_event("evt_orphan", "invoice.paid", invoice_object(subscription_id="sub_missing"))

    outcome = subscription_service.handle_webhook(session, payload, signature)

    assert outcome.status == WebhookStatus.PENDING
    event = billing_ledger.get_event(session, "evt_orphan")
    assert event.is_pending
    assert "does not resolve" in event.processing_error


def test_tenant_mismatch_is_a_resolution_error(session, org, other_org, make_subscription):
    make_subscription(org)
    event = billing_ledger.ingest(
        session, "evt_cross_tenant", SUBSCRIPTION_CHARGED, other_org.id,
        {"data": {"object": invoice_object()}},
    ).event

    with pytest.raises(ResolutionError):
        subscription_service.apply_event(session, event)


def test_reprocess_pending_applies_once_subscription_exists(session, org, make_subscription, signed_event):
    payload, signature = signed_event("evt_later", "invoice.payment_failed", invoice_object(subscription_id="sub_late"))
    assert subscription_service.handle_webhook(session, payload, signature).status == WebhookStatus.PENDING

    sub = make_subscription(org, provider_subscription_id="sub_late")
    outcomes = subscription_service.reprocess_pending(session)

    assert [(o.provider_event_id, o.status, o.outcome) for o in outcomes] == [
        ("evt_later", WebhookStatus.PROCESSED, OUTCOME_APPLIED)
    ]
    session.refresh(sub)
    assert sub.status == "PAST_DUE"
    assert billing_ledger.pending_events(session) == []


def test_bad_signature_stores_nothing(session, org, signed_event):
    payload, _ = signed_event("evt_forged", "invoice.paid", invoice_object())
    _, wrong = signed_event("evt_forged", "invoice.paid", invoice_object(), secret="whsec_wrong")

    with pytest.raises(InvalidSignature):
        subscription_service.handle_webhook(session, payload, wrong)
    with pytest.raises(InvalidSignature):
        subscription_service.handle_webhook(session, payload, None)
    assert billing_ledger.get_event(session, "evt_forged") is None


# ------------------------------------------------------------
# checkout / cancel
# ------------------------------------------------------------
@pytest.fixture
def fake_provider():
    with patch("services.subscription_service.payment_service") as provider:
        provider.create_customer.return_value = "cus_new"
        provider.create_subscription.return_value = ProviderSubscription("sub_new", "incomplete", "price_pro_monthly")
        yield provider


def test_checkout_paid_plan_with_trial(session, org, plans, fake_provider):
    result = subscription_service.start_checkout(session, org.id, "PRO", "MONTHLY", email="owner@tenant-a.test")

    assert result.status == "TRIALING"
    assert result.amount == Decimal("29.00")
    assert result.provider_customer_id == "cus_new"
    assert result.provider_subscription_id == "sub_new"
    fake_provider.create_customer.assert_called_once()
    fake_provider.create_subscription.assert_called_once()

    sub = subscription_service.get_subscription(session, org.id)
    assert sub.current_period_end - sub.current_period_start == timedelta(days=plans["PRO"].trial_days)


def test_checkout_without_trial_starts_active(session, org, plans, fake_provider):
    result = subscription_service.start_checkout(session, org.id, "TEAM", "YEARLY")

    assert result.status == "ACTIVE"
    assert result.amount == Decimal("990.00")
    sub = subscription_service.get_subscription(session, org.id)
    assert sub.current_period_end - sub.current_period_start == timedelta(days=365)


def test_checkout_free_plan_skips_provider(session, org, plans, fake_provider):
    result = subscription_service.start_checkout(session, org.id, "STARTER")

    assert result.provider_subscription_id is None
    fake_provider.create_customer.assert_not_called()


def test_second_checkout_is_rejected(session, org, plans, fake_provider):
    subscription_service.start_checkout(session, org.id, "STARTER")
    with pytest.raises(SubscriptionAlreadyExists):
        subscription_service.start_checkout(session, org.id, "PRO")


def test_checkout_unknown_plan(session, org, plans):
    with pytest.raises(PlanNotFound):
        subscription_service.start_checkout(session, org.id, "ENTERPRISE")


def test_provider_failure_rolls_back_checkout(session, org, plans, fake_provider):
    fake_provider.create_subscription.side_effect = ProviderError("card declined")

    with pytest.raises(ProviderError):
        subscription_service.start_checkout(session, org.id, "PRO")
    assert session.exec(select(Subscription)).all() == []


def test_cancel_provider_backed_waits_for_event(session, org, make_subscription, fake_provider):
    make_subscription(org)

    sub = subscription_service.request_cancel(session, org.id)

    fake_provider.cancel_at_period_end.assert_called_once_with("sub_test_123")
    assert sub.cancel_at_period_end
    assert sub.status == "ACTIVE"
    assert sub.deleted_at is None


def test_cancel_without_provider_record_is_immediate(session, org, make_subscription, fake_provider):
    make_subscription(org, provider_subscription_id=None, plan_code="STARTER")

    sub = subscription_service.request_cancel(session, org.id)

    fake_provider.cancel_at_period_end.assert_not_called()
    assert sub.status == "CANCELED"
    assert sub.deleted_at is not None
    with pytest.raises(SubscriptionNotFound):
        subscription_service.get_subscription(session, org.id)


def test_checkout_commits_before_calling_the_provider(engine, session, org, plans, fake_provider):
    seen_by_others = []

    def create_customer(*args):
        with Session(engine) as other:
            seen_by_others.append(len(other.exec(select(Subscription)).all()))
        return "cus_new"

    fake_provider.create_customer.side_effect = create_customer

    subscription_service.start_checkout(session, org.id, "PRO")

    assert seen_by_others == [1]
