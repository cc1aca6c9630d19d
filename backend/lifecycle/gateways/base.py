"""
Capability interfaces for every external collaborator.

The orchestrator is written once against these; each provider gets an adapter
in billing.py / commerce.py / signature.py / notifications.py and one line in
factory.py.

Return-value contract shared by all adapters:
  - a non-success response from the provider → False / None
  - transport failure or timeout (outcome unknown) → GatewayError
Callers retry in both cases; neither is ever read as success.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .types import ExternalSubscription, LineItem, Recipient, RenewalRecord, Signer


class BaseBillingGateway(ABC):

    # Registry key, stored on Subscription.billing_provider
    provider: str = ""

    @abstractmethod
    def cancel(self, external_subscription_id: str, reason: str) -> bool:
        """Cancel immediately. True only when the provider confirmed it."""

    @abstractmethod
    def update_plan(self, external_subscription_id: str, new_price_id: str) -> bool:
        """Switch the recurring price from the next renewal on."""

    @abstractmethod
    def get_upcoming_renewals(self, days_ahead: int) -> list[RenewalRecord]:
        """Active subscriptions whose next charge falls within `days_ahead` days."""

    @abstractmethod
    def get_subscription(self, external_subscription_id: str) -> Optional[ExternalSubscription]:
        """Current provider-side state, or None if it could not be fetched."""


class BaseCommerceGateway(ABC):

    @abstractmethod
    def create_order(self, line_item: LineItem, customer_ref: str, metadata: dict) -> Optional[str]:
        """Create a paid order; returns the order id or None."""

    @abstractmethod
    def attach_metadata(self, order_id: str, payload: dict) -> bool:
        """Attach a structured payload (e.g. the label) to an order. Re-sending is idempotent."""

    @abstractmethod
    def attach_document(self, order_id: str, file_bytes: bytes, label: str) -> bool:
        """Attach a file (e.g. the signed prescription) to an order."""


class BaseSignatureGateway(ABC):

    @abstractmethod
    def create_request(self, document_bytes: bytes, signer: Signer, name: str = "") -> Optional[str]:
        """Open a signature request; returns its id or None."""

    @abstractmethod
    def fetch_signed_document(self, request_id: str, document_id: str) -> Optional[bytes]:
        """Signed file bytes once the request is complete, else None."""


class BaseNotificationDispatcher(ABC):

    @abstractmethod
    def notify(self, recipient: Recipient, event_type: str, payload: dict) -> None:
        """
        Fire-and-forget. Delivery failures are the dispatcher's concern and are
        logged here, never raised to the workflow.
        """
