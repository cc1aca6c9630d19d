"""
Gateway-level value objects.

Adapters translate provider payloads into these; the orchestrator never sees a
raw third-party response.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class RenewalRecord:
    external_subscription_id: str
    next_charge_at: Optional[datetime]
    external_customer_id: str = ""
    price_id: Optional[str] = None
    status: str = "active"


@dataclass
class ExternalSubscription:
    external_subscription_id: str
    status: str
    price_ids: list[str] = field(default_factory=list)
    next_charge_at: Optional[datetime] = None
    external_customer_id: str = ""


@dataclass
class LineItem:
    variant_id: str
    quantity: int = 1


@dataclass
class Signer:
    first_name: str
    last_name: str
    email: str


@dataclass
class Recipient:
    """Who a notification goes to: a patient or a care team."""

    kind: str          # "patient" | "team"
    id: str
    email: str
    name: str = ""


# Notification event types
PRESCRIPTION_ACTIVATED = "prescription_activated"
SUBSCRIPTION_CANCELLED = "subscription_cancelled"
REFILL_ALERT = "subscription_refill_alert"
CLINICIAN_LETTER = "clinician_letter"
