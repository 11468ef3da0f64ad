# scripts/seed.py

import os
import sys
import argparse
import logging
from datetime import date, timedelta
from decimal import Decimal

from dotenv import load_dotenv
from sqlmodel import Session, select

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import engine, create_db_and_tables
from core.security import create_token_for_user
from models.models import Client, Organization, Project, Task, TimeEntry, User, UserRole
from services.plan_catalog import seed_default_plans

# ✅ Load environment variables
load_dotenv()
logger = logging.getLogger("seed")


def _get_or_create_user(session: Session, org: Organization, email: str, **fields) -> User:
    user = session.exec(
        select(User).where(User.organization_id == org.id, User.email == email)
    ).first()
    if not user:
        user = User(organization_id=org.id, email=email, **fields)
        session.add(user)
        session.commit()
        session.refresh(user)
        logger.info("✅ Added user %s", email)
    return user


def seed_dev_data(with_time: bool = False):
    """Seed development database with plans, a demo organization and users."""
    logger.info("🌱 Seeding development data...")
    create_db_and_tables()

    with Session(engine) as session:
        seed_default_plans(session)

        # -----------------------------
        # 🏢 Demo Organization
        # -----------------------------
        org = session.exec(
            select(Organization).where(Organization.name == "Demo Organization")
        ).first()
        if not org:
            org = Organization(name="Demo Organization", slug="demo")
            session.add(org)
            session.commit()
            session.refresh(org)
            logger.info("✅ Created Demo Organization")

        admin = _get_or_create_user(
            session, org, "admin@demo.com",
            full_name="Admin User", role=UserRole.ADMIN.value, hourly_rate=Decimal("120.00"),
        )
        members = [
            _get_or_create_user(
                session, org, email,
                full_name=email.split("@")[0].capitalize(), role=UserRole.MEMBER.value, hourly_rate=Decimal("80.00"),
            )
            for email in ["member1@demo.com", "member2@demo.com"]
        ]

        # -----------------------------
        # 📁 Client + Project
        # -----------------------------
        client = session.exec(select(Client).where(Client.organization_id == org.id)).first()
        if not client:
            client = Client(organization_id=org.id, name="Acme Corp", email="billing@acme.test")
            session.add(client)
            session.commit()
            session.refresh(client)
            project = Project(organization_id=org.id, client_id=client.id, title="Website Redesign")
            session.add(project)
            session.commit()
            session.refresh(project)
            session.add(Task(organization_id=org.id, project_id=project.id, title="Discovery"))
            session.commit()
            logger.info("✅ Created client Acme Corp with one project")

        if with_time:
            project = session.exec(select(Project).where(Project.client_id == client.id)).first()
            monday = date.today() - timedelta(days=date.today().weekday() + 7)
            for user in [admin, *members]:
                for offset in range(5):
                    session.add(TimeEntry(
                        organization_id=org.id,
                        user_id=user.id,
                        project_id=project.id,
                        work_date=monday + timedelta(days=offset),
                        minutes=240,
                        description="Sample work",
                    ))
            session.commit()
            logger.info("✅ Added last week's sample time entries")

        logger.info("🔑 Admin token: %s", create_token_for_user(admin))
        logger.info("🌱 Development data seeding complete.")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    parser = argparse.ArgumentParser(description="Seed the billing database.")
    parser.add_argument(
        "--with-time",
        action="store_true",
        help="Also add sample time entries for last week",
    )
    args = parser.parse_args()
    seed_dev_data(with_time=args.with_time)
