"""
Normalised inbound events: the only shapes the workflows accept.

Every adapter's transform() returns one of these. raw_payload keeps the
provider body for troubleshooting and never drives business logic.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

# SubscriptionEvent.kind
SUBSCRIPTION_CREATED = "subscription_created"
SUBSCRIPTION_CHANGED = "subscription_changed"
SUBSCRIPTION_CANCELLED = "subscription_cancelled"


@dataclass
class SubscriptionEvent:
    kind: str
    external_subscription_id: str
    billing_provider: str
    status: str = "active"                          # active | paused | cancelled
    external_customer_id: str = ""
    customer_email: str = ""
    price_id: Optional[str] = None
    next_charge_at: Optional[datetime] = None
    questionnaire_submission_id: Optional[str] = None
    source: str = ""
    raw_payload: Any = field(default=None, repr=False)


@dataclass
class PaymentEvent:
    """A recurring charge went through; one per external invoice."""

    external_subscription_id: str
    invoice_id: str
    source: str = ""
    raw_payload: Any = field(default=None, repr=False)


@dataclass
class SignatureEvent:
    signature_request_id: str
    document_id: Optional[str] = None
    signed_at: Optional[datetime] = None
    source: str = ""
    raw_payload: Any = field(default=None, repr=False)


@dataclass
class IgnoredEvent:
    """Delivered but not something the lifecycle acts on (acknowledged, not processed)."""

    event_type: str
    source: str = ""
    raw_payload: Any = field(default=None, repr=False)
