"""
BaseEventAdapter — abstract base for every inbound webhook source.

A new source only needs to:
1. subclass BaseEventAdapter
2. implement parse() and transform()
3. register one line in factory.py's registry

No workflow code changes.
"""

import json
from abc import ABC, abstractmethod
from typing import Any

from ..exceptions import ValidationError
from .types import IgnoredEvent, PaymentEvent, SignatureEvent, SubscriptionEvent


class BaseEventAdapter(ABC):
    """
    Three-step pipeline: parse → transform → validate

    Subclasses implement parse() and transform(); validate() checks the ids
    every normalised event needs, and subclasses may extend it.
    """

    # Registry key in factory.py
    source: str = ""

    def __init__(self, raw_body: bytes | str, content_type: str = "", headers: dict | None = None):
        self._raw_body = raw_body
        self._content_type = content_type
        self._headers = {k.lower(): v for k, v in (headers or {}).items()}

    # ── must implement ─────────────────────────────────────────────────────

    @abstractmethod
    def parse(self) -> Any:
        """Raw body → intermediate structure; stored on self._parsed."""

    @abstractmethod
    def transform(self):
        """self._parsed → one of the events in events/types.py (raw_payload kept)."""

    # ── shared behaviour ───────────────────────────────────────────────────

    def _load_json(self) -> dict:
        try:
            data = json.loads(self._raw_body) if isinstance(self._raw_body, (bytes, str)) else self._raw_body
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError(
                message=f"Malformed {self.source} webhook body: {exc}",
                code="WEBHOOK_PAYLOAD_INVALID",
            )
        if not isinstance(data, dict):
            raise ValidationError(
                message=f"{self.source} webhook body must be a JSON object.",
                code="WEBHOOK_PAYLOAD_INVALID",
            )
        return data

    def validate(self, event) -> None:
        errors = []

        if isinstance(event, SubscriptionEvent):
            if not event.external_subscription_id:
                errors.append({"field": "subscription.id", "message": "Subscription id is required."})
            if event.status not in ("active", "paused", "cancelled"):
                errors.append({"field": "subscription.status", "message": f"Unknown status {event.status!r}."})
        elif isinstance(event, PaymentEvent):
            if not event.external_subscription_id:
                errors.append({"field": "subscription.id", "message": "Subscription id is required."})
            if not event.invoice_id:
                errors.append({"field": "invoice.id", "message": "Invoice id is required."})
        elif isinstance(event, SignatureEvent):
            if not event.signature_request_id:
                errors.append({"field": "signature_request.id", "message": "Signature request id is required."})

        if errors:
            raise ValidationError(
                message="Webhook validation failed.",
                code="WEBHOOK_PAYLOAD_INVALID",
                detail={"source": self.source, "errors": errors},
            )

    # ── public entry point ─────────────────────────────────────────────────

    def process(self):
        """parse → transform → validate; returns the validated event."""
        self.parse()
        event = self.transform()
        if not isinstance(event, IgnoredEvent):
            self.validate(event)
        return event
