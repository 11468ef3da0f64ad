# scripts/reconcile_billing_events.py
"""Retry billing events that were ledgered but never applied.

Run from cron or by hand:

    python scripts/reconcile_billing_events.py --limit 200
"""
import os
import sys
import argparse
import logging

from sqlmodel import Session

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import engine
from services.subscription_service import WebhookStatus, reprocess_pending

logger = logging.getLogger("reconcile")


def run(limit: int) -> int:
    """Return the number of events still pending after the sweep."""
    with Session(engine) as session:
        outcomes = reprocess_pending(session, limit=limit)

    for outcome in outcomes:
        if outcome.status == WebhookStatus.PENDING:
            logger.warning("⏳ %s still pending: %s", outcome.provider_event_id, outcome.detail)
        else:
            logger.info("✅ %s -> %s", outcome.provider_event_id, outcome.outcome)
    return sum(1 for o in outcomes if o.status == WebhookStatus.PENDING)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    parser = argparse.ArgumentParser(description="Re-apply pending billing events.")
    parser.add_argument("--limit", type=int, default=100, help="Maximum events to process")
    args = parser.parse_args()
    sys.exit(1 if run(args.limit) else 0)
