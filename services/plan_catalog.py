# services/plan_catalog.py — read-only plan registry + plan limit guard
import logging
from decimal import Decimal
from typing import Dict, List

from sqlmodel import Session, func, select

from core.config import settings
from models.models import (
    BillingCycle,
    Plan,
    Project,
    Subscription,
    SubscriptionStatus,
    User,
)
from services.exceptions import PlanNotFound, SubscriptionLimitExceeded, SubscriptionRequired
from services.tenant import tenant_select

logger = logging.getLogger(__name__)

USABLE_STATUSES = {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}


def default_plans() -> List[Dict]:
    return [
        {
            "code": "STARTER",
            "name": "Starter",
            "price_monthly": Decimal("0.00"),
            "price_yearly": Decimal("0.00"),
            "max_users": 3,
            "max_projects": 3,
            "feature_flags": {"invoicing": False, "reports": False},
            "trial_days": settings.DEFAULT_TRIAL_DAYS,
            "sort_order": 0,
        },
        {
            "code": "PRO",
            "name": "Pro",
            "price_monthly": Decimal("29.00"),
            "price_yearly": Decimal("290.00"),
            "max_users": 10,
            "max_projects": 25,
            "feature_flags": {"invoicing": True, "reports": True},
            "trial_days": settings.DEFAULT_TRIAL_DAYS,
            "provider_price_id_monthly": settings.STRIPE_PRO_MONTHLY_PRICE_ID,
            "provider_price_id_yearly": settings.STRIPE_PRO_YEARLY_PRICE_ID,
            "sort_order": 1,
        },
        {
            "code": "TEAM",
            "name": "Team",
            "price_monthly": Decimal("99.00"),
            "price_yearly": Decimal("990.00"),
            "max_users": 9999,
            "max_projects": 9999,
            "feature_flags": {"invoicing": True, "reports": True, "api_access": True},
            "trial_days": 0,
            "provider_price_id_monthly": settings.STRIPE_TEAM_MONTHLY_PRICE_ID,
            "provider_price_id_yearly": settings.STRIPE_TEAM_YEARLY_PRICE_ID,
            "sort_order": 2,
        },
    ]


def seed_default_plans(session: Session) -> List[Plan]:
    """Insert any missing default plans. Existing rows are left untouched."""
    created = []
    for data in default_plans():
        existing = session.exec(select(Plan).where(Plan.code == data["code"])).first()
        if existing:
            continue
        plan = Plan(**data)
        session.add(plan)
        created.append(plan)
    session.commit()
    for plan in created:
        session.refresh(plan)
    if created:
        logger.info("✅ Seeded %d pricing plans", len(created))
    return created


def list_plans(session: Session) -> List[Plan]:
    statement = (
        select(Plan)
        .where(Plan.is_active == True, Plan.deleted_at.is_(None))  # noqa: E712
        .order_by(Plan.sort_order)
    )
    return list(session.exec(statement).all())


def get_plan(session: Session, code: str, *, active_only: bool = True) -> Plan:
    plan = session.exec(select(Plan).where(Plan.code == code, Plan.deleted_at.is_(None))).first()
    if not plan or (active_only and not plan.is_active):
        raise PlanNotFound(f"Plan not found: {code}")
    return plan


def plan_price(plan: Plan, cycle: str) -> Decimal:
    if cycle == BillingCycle.YEARLY.value:
        return plan.price_yearly
    return plan.price_monthly


# ------------------------------------------------------------
# LIMIT ENFORCEMENT
# ------------------------------------------------------------
def count_active_users(session: Session, tenant_id: int) -> int:
    statement = select(func.count(User.id)).where(
        User.organization_id == tenant_id,
        User.is_active == True,  # noqa: E712
        User.deleted_at.is_(None),
    )
    return session.exec(statement).one()


def count_active_projects(session: Session, tenant_id: int) -> int:
    statement = select(func.count(Project.id)).where(
        Project.organization_id == tenant_id,
        Project.deleted_at.is_(None),
    )
    return session.exec(statement).one()


def enforce_limit(session: Session, tenant_id: int, resource: str) -> None:
    """Raise unless the tenant may create one more *resource* ("users" or "projects")."""
    subscription = session.exec(tenant_select(Subscription, tenant_id)).first()
    if not subscription:
        raise SubscriptionRequired("No subscription found. Please subscribe to a plan.")
    if subscription.status not in USABLE_STATUSES:
        raise SubscriptionRequired(
            f"Subscription is not active. Current status: {subscription.status}. "
            "Please update your payment method."
        )

    plan = get_plan(session, subscription.plan_code, active_only=False)
    if resource == "users":
        current, ceiling = count_active_users(session, tenant_id), plan.max_users
    elif resource == "projects":
        current, ceiling = count_active_projects(session, tenant_id), plan.max_projects
    else:
        raise ValueError(f"Unknown limited resource: {resource}")

    if current >= ceiling:
        raise SubscriptionLimitExceeded(
            f"{resource.capitalize()} limit reached. Current plan allows {ceiling} {resource}. Upgrade required."
        )
