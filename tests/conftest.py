"""Pytest configuration and fixtures for the billing backend."""

import hashlib
import hmac
import json
import os
import time
from decimal import Decimal

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from core.config import settings
from core.database import build_engine, create_db_and_tables, get_session
from core.security import create_token_for_user
from main import app
from models.models import (
    Client,
    Organization,
    Project,
    Subscription,
    SubscriptionStatus,
    Task,
    Timesheet,
    TimesheetStatus,
    TimeEntry,
    User,
    UserRole,
)
from services.plan_catalog import list_plans, seed_default_plans
from services.timesheet_service import get_week_dates


@pytest.fixture(scope="function")
def engine(tmp_path):
    """File-backed SQLite so separate sessions (and threads) see committed data."""
    engine = build_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    create_db_and_tables(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def plans(session):
    seed_default_plans(session)
    return {plan.code: plan for plan in list_plans(session)}


@pytest.fixture
def org(session):
    org = Organization(name="Tenant A", slug="tenant-a")
    session.add(org)
    session.commit()
    session.refresh(org)
    return org


@pytest.fixture
def other_org(session):
    org = Organization(name="Tenant B", slug="tenant-b")
    session.add(org)
    session.commit()
    session.refresh(org)
    return org


@pytest.fixture
def admin(session, org):
    user = User(
        organization_id=org.id,
        full_name="Alice Admin",
        email="alice@tenant-a.test",
        role=UserRole.ADMIN.value,
        hourly_rate=Decimal("100.00"),
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def member(session, org):
    user = User(
        organization_id=org.id,
        full_name="Bob Member",
        email="bob@tenant-a.test",
        role=UserRole.MEMBER.value,
        hourly_rate=Decimal("50.00"),
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def client_project(session, org):
    client = Client(organization_id=org.id, name="Acme Corp")
    session.add(client)
    session.commit()
    session.refresh(client)
    project = Project(organization_id=org.id, client_id=client.id, title="Website")
    session.add(project)
    session.commit()
    session.refresh(project)
    return client, project


@pytest.fixture
def task(session, org, client_project):
    _, project = client_project
    task = Task(organization_id=org.id, project_id=project.id, title="Design")
    session.add(task)
    session.commit()
    session.refresh(task)
    return task


@pytest.fixture
def make_entry(session):
    def _make(user, project, work_date, minutes=60, **fields):
        entry = TimeEntry(
            organization_id=user.organization_id,
            user_id=user.id,
            project_id=project.id,
            work_date=work_date,
            minutes=minutes,
            **fields,
        )
        session.add(entry)
        session.commit()
        session.refresh(entry)
        return entry
    return _make


@pytest.fixture
def set_week_status(session):
    """Put a user's week directly into a timesheet status."""
    def _set(user, any_day, status=TimesheetStatus.APPROVED.value, **fields):
        week_start, _ = get_week_dates(any_day)
        sheet = Timesheet(
            organization_id=user.organization_id,
            user_id=user.id,
            week_start=week_start,
            status=status,
            **fields,
        )
        session.add(sheet)
        session.commit()
        session.refresh(sheet)
        return sheet
    return _set


@pytest.fixture
def make_subscription(session):
    def _make(org, status=SubscriptionStatus.ACTIVE.value, provider_subscription_id="sub_test_123", **fields):
        sub = Subscription(
            organization_id=org.id,
            plan_code=fields.pop("plan_code", "PRO"),
            status=status,
            provider_subscription_id=provider_subscription_id,
            **fields,
        )
        session.add(sub)
        session.commit()
        session.refresh(sub)
        return sub
    return _make


# ------------------------------------------------------------
# HTTP
# ------------------------------------------------------------
@pytest.fixture
def api(engine):
    def override_get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_token_for_user(user)}"}
    return _headers


# ------------------------------------------------------------
# Stripe webhooks
# ------------------------------------------------------------
def stripe_signature(payload: bytes, secret: str = None, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs deliveries."""
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_id: str, event_type: str, data_object: dict) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }).encode("utf-8")


@pytest.fixture
def signed_event():
    """Return (payload, signature) for a Stripe-shaped event."""
    def _signed(event_id, event_type, data_object, secret=None):
        payload = stripe_event(event_id, event_type, data_object)
        return payload, stripe_signature(payload, secret=secret)
    return _signed


@pytest.fixture
def sign_payload():
    return stripe_signature
