"""Billing error taxonomy.

Services raise these; routes turn them into HTTP responses. ``Duplicate``
ingestion is not an error and lives in ``services.billing_ledger``.
"""
from dataclasses import dataclass
from typing import List, Optional


class BillingError(Exception):
    """Base class for billing domain failures."""


class ResourceNotFound(BillingError):
    """A tenant-scoped row does not exist or belongs to another tenant."""


class ResolutionError(BillingError):
    """A provider event does not resolve to a known tenant/subscription."""

    def __init__(self, message: str, provider_event_id: Optional[str] = None):
        super().__init__(message)
        self.provider_event_id = provider_event_id


class InvalidSignature(BillingError):
    """Webhook signature verification failed; the event never reaches the ledger."""


@dataclass(frozen=True)
class ConflictingEntry:
    """A time entry that another invoice claimed first."""

    time_entry_id: int
    reason: str = "already billed"


class EmptySelection(BillingError):
    """No eligible time entries, so no invoice was created."""

    def __init__(self, message: str = "No unbilled time entries found", conflicts: Optional[List[ConflictingEntry]] = None):
        super().__init__(message)
        self.conflicts = list(conflicts or [])


class ImmutableInvoiceError(BillingError):
    """Amounts or line items of a non-draft invoice cannot change."""


class InvalidStatusTransition(BillingError):
    pass


class InvoiceNumberCollision(BillingError):
    """Invoice number generation kept colliding after all retries."""


class PlanNotFound(BillingError):
    pass


class SubscriptionAlreadyExists(BillingError):
    pass


class SubscriptionNotFound(BillingError):
    pass


class SubscriptionRequired(BillingError):
    """The tenant has no subscription in a usable state."""


class SubscriptionLimitExceeded(BillingError):
    pass


class MissingHourlyRate(BillingError):
    def __init__(self, user_ids: List[int]):
        super().__init__(f"{len(user_ids)} user(s) missing hourly rate")
        self.user_ids = user_ids


class ProviderError(BillingError):
    """The payment provider rejected or failed a request."""
