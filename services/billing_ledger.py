"""Billing event ledger.

Append-only store of inbound provider events keyed by the provider event
id. The unique constraint on ``provider_event_id`` is the only guard
against at-least-once webhook delivery: the first insert wins, every
later delivery of the same id is reported as ``DUPLICATE`` and does
nothing else. A row with ``processed_at IS NULL`` is pending and may be
re-applied by the reconciliation sweep.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from models.models import BillingEvent, Organization, Subscription, utc_now

logger = logging.getLogger(__name__)


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


@dataclass
class IngestResult:
    status: IngestStatus
    event: BillingEvent

    @property
    def accepted(self) -> bool:
        return self.status == IngestStatus.ACCEPTED


def get_event(session: Session, provider_event_id: str) -> Optional[BillingEvent]:
    statement = select(BillingEvent).where(BillingEvent.provider_event_id == provider_event_id)
    return session.exec(statement).first()


def ingest(
    session: Session,
    provider_event_id: str,
    event_type: str,
    tenant_hint: Optional[int],
    payload: Dict[str, Any],
    *,
    provider: str = "stripe",
    provider_subscription_id: Optional[str] = None,
    received_at: Optional[datetime] = None,
) -> IngestResult:
    """Record a provider event once. Commits on acceptance."""
    if not provider_event_id:
        raise ValueError("provider_event_id is required")

    existing = get_event(session, provider_event_id)
    if existing:
        logger.info("Billing event %s already recorded, ignoring duplicate", provider_event_id)
        return IngestResult(IngestStatus.DUPLICATE, existing)

    if tenant_hint is not None and session.get(Organization, tenant_hint) is None:
        logger.warning("Event %s carries unknown tenant hint %s", provider_event_id, tenant_hint)
        tenant_hint = None

    event = BillingEvent(
        provider=provider,
        provider_event_id=provider_event_id,
        event_type=event_type,
        organization_id=tenant_hint,
        provider_subscription_id=provider_subscription_id,
        received_at=received_at or utc_now(),
        payload=payload,
    )
    session.add(event)
    try:
        session.commit()
    except IntegrityError:
        # A concurrent delivery of the same id won the insert
        session.rollback()
        existing = get_event(session, provider_event_id)
        if existing is None:
            raise
        logger.info("Billing event %s inserted concurrently, treating as duplicate", provider_event_id)
        return IngestResult(IngestStatus.DUPLICATE, existing)

    session.refresh(event)
    logger.info("Recorded billing event %s (%s)", provider_event_id, event_type)
    return IngestResult(IngestStatus.ACCEPTED, event)


def mark_processed(
    session: Session,
    event: BillingEvent,
    outcome: str,
    subscription: Optional[Subscription] = None,
) -> BillingEvent:
    """Stamp the event as handled. The caller commits together with the transition."""
    event.processed_at = utc_now()
    event.outcome = outcome
    event.processing_error = None
    if subscription is not None:
        event.subscription_id = subscription.id
        event.organization_id = subscription.organization_id
    session.add(event)
    return event


def record_failure(session: Session, event_id: int, error: str) -> None:
    """Keep the event pending and note why. Runs in its own transaction."""
    event = session.get(BillingEvent, event_id)
    if event is None:
        return
    event.processing_error = error[:1000]
    session.add(event)
    session.commit()


def pending_events(session: Session, limit: int = 100) -> List[BillingEvent]:
    statement = (
        select(BillingEvent)
        .where(BillingEvent.processed_at.is_(None))
        .order_by(BillingEvent.received_at, BillingEvent.id)
        .limit(limit)
    )
    return list(session.exec(statement).all())


def events_for_tenant(session: Session, tenant_id: int) -> List[BillingEvent]:
    statement = (
        select(BillingEvent)
        .where(BillingEvent.organization_id == tenant_id)
        .order_by(BillingEvent.received_at)
    )
    return list(session.exec(statement).all())
