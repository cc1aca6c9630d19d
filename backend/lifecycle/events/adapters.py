"""
Concrete webhook adapters.

To add a source: add a class here, then register it in factory.py.

Registered sources:
  item_price — ItemPriceEventAdapter (Chargebee-style: {"event_type", "content": {...}})
  plan       — PlanEventAdapter      (Recharge-style: topic in X-Recharge-Topic header)
  yousign    — YousignEventAdapter   (signature provider: {"event_name", "data": {...}})
"""

from typing import Any, Optional

from ..gateways.http import from_iso, from_timestamp
from .base import BaseEventAdapter
from .types import (
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_CHANGED,
    SUBSCRIPTION_CREATED,
    IgnoredEvent,
    PaymentEvent,
    SignatureEvent,
    SubscriptionEvent,
)


def _status(raw: Optional[str]) -> str:
    """Provider status → active | paused | cancelled (unknown values pass through to validate())."""
    value = (raw or "active").strip().lower()
    if value in ("active", "in_trial", "non_renewing", "future"):
        return "active"
    if value in ("paused", "expired"):
        return "paused"
    if value in ("cancelled", "canceled"):
        return "cancelled"
    return value


# ── ItemPriceEventAdapter ──────────────────────────────────────────────────
#
# {
#   "id": "ev_16BHbhF4s42tO2lK",
#   "event_type": "subscription_created",
#   "content": {
#     "subscription": {
#       "id": "AzZlGJTQ4bXk5", "customer_id": "cust_1", "status": "active",
#       "next_billing_at": 1767225600,
#       "subscription_items": [{"item_price_id": "sema-2-5mg-monthly"}],
#       "cf_questionnaire_submission_id": "8d5c..."
#     },
#     "customer": {"id": "cust_1", "email": "jane@example.com"},
#     "invoice":  {"id": "inv_42", "recurring": true}
#   }
# }

class ItemPriceEventAdapter(BaseEventAdapter):
    source = "item_price"

    SUBSCRIPTION_EVENTS = {
        "subscription_created": SUBSCRIPTION_CREATED,
        "subscription_changed": SUBSCRIPTION_CHANGED,
        "subscription_renewed": SUBSCRIPTION_CHANGED,
        "subscription_paused": SUBSCRIPTION_CHANGED,
        "subscription_resumed": SUBSCRIPTION_CHANGED,
        "subscription_cancelled": SUBSCRIPTION_CANCELLED,
    }

    def parse(self) -> Any:
        self._parsed = self._load_json()
        return self._parsed

    def transform(self):
        raw = self._parsed
        event_type = raw.get("event_type") or ""
        content = raw.get("content") or {}
        subscription = content.get("subscription") or {}

        if event_type in self.SUBSCRIPTION_EVENTS:
            items = subscription.get("subscription_items") or []
            customer = content.get("customer") or {}
            kind = self.SUBSCRIPTION_EVENTS[event_type]
            return SubscriptionEvent(
                source=self.source,
                raw_payload=raw,
                kind=kind,
                external_subscription_id=str(subscription.get("id") or ""),
                billing_provider=self.source,
                status="cancelled" if kind == SUBSCRIPTION_CANCELLED else _status(subscription.get("status")),
                external_customer_id=str(subscription.get("customer_id") or customer.get("id") or ""),
                customer_email=(customer.get("email") or "").strip(),
                price_id=items[0].get("item_price_id") if items else None,
                next_charge_at=from_timestamp(subscription.get("next_billing_at")),
                questionnaire_submission_id=subscription.get("cf_questionnaire_submission_id") or None,
            )

        if event_type == "invoice_generated":
            invoice = content.get("invoice") or {}
            # Only renewals count; the first invoice is paid at checkout
            if not invoice.get("recurring") or _status(subscription.get("status")) != "active":
                return IgnoredEvent(event_type=event_type, source=self.source, raw_payload=raw)
            return PaymentEvent(
                source=self.source,
                raw_payload=raw,
                external_subscription_id=str(subscription.get("id") or invoice.get("subscription_id") or ""),
                invoice_id=str(invoice.get("id") or ""),
            )

        return IgnoredEvent(event_type=event_type, source=self.source, raw_payload=raw)


# ── PlanEventAdapter ───────────────────────────────────────────────────────
#
# Topic header: X-Recharge-Topic: subscription/created
# {
#   "subscription": {
#     "id": 2751, "customer_id": 991, "email": "jane@example.com",
#     "status": "ACTIVE", "plan_id": 77,
#     "next_charge_scheduled_at": "2026-01-01T00:00:00",
#     "properties": [{"name": "questionnaire_submission_id", "value": "8d5c..."}]
#   }
# }
#
# X-Recharge-Topic: charge/paid
# {"charge": {"id": 5501, "type": "RECURRING", "line_items": [{"subscription_id": 2751}]}}

class PlanEventAdapter(BaseEventAdapter):
    source = "plan"

    SUBSCRIPTION_TOPICS = {
        "subscription/created": SUBSCRIPTION_CREATED,
        "subscription/updated": SUBSCRIPTION_CHANGED,
        "subscription/activated": SUBSCRIPTION_CHANGED,
        "subscription/paused": SUBSCRIPTION_CHANGED,
        "subscription/cancelled": SUBSCRIPTION_CANCELLED,
    }

    def parse(self) -> Any:
        self._parsed = self._load_json()
        return self._parsed

    def _topic(self) -> str:
        return (self._headers.get("x-recharge-topic") or self._parsed.get("topic") or "").strip().lower()

    def transform(self):
        raw = self._parsed
        topic = self._topic()

        if topic in self.SUBSCRIPTION_TOPICS:
            subscription = raw.get("subscription") or {}
            kind = self.SUBSCRIPTION_TOPICS[topic]
            properties = {
                p.get("name"): p.get("value")
                for p in subscription.get("properties") or []
                if isinstance(p, dict)
            }
            plan_id = subscription.get("plan_id")
            return SubscriptionEvent(
                source=self.source,
                raw_payload=raw,
                kind=kind,
                external_subscription_id=str(subscription.get("id") or ""),
                billing_provider=self.source,
                status="cancelled" if kind == SUBSCRIPTION_CANCELLED else _status(subscription.get("status")),
                external_customer_id=str(subscription.get("customer_id") or ""),
                customer_email=(subscription.get("email") or "").strip(),
                price_id=str(plan_id) if plan_id else None,
                next_charge_at=from_iso(subscription.get("next_charge_scheduled_at")),
                questionnaire_submission_id=properties.get("questionnaire_submission_id") or None,
            )

        if topic == "charge/paid":
            charge = raw.get("charge") or {}
            if (charge.get("type") or "").upper() != "RECURRING":
                return IgnoredEvent(event_type=topic, source=self.source, raw_payload=raw)
            line_items = charge.get("line_items") or [{}]
            return PaymentEvent(
                source=self.source,
                raw_payload=raw,
                external_subscription_id=str(line_items[0].get("subscription_id") or ""),
                invoice_id=str(charge.get("id") or ""),
            )

        return IgnoredEvent(event_type=topic, source=self.source, raw_payload=raw)


# ── YousignEventAdapter ────────────────────────────────────────────────────
#
# {
#   "event_name": "signature_request.done",
#   "event_time": "1767225600",
#   "data": {"signature_request": {"id": "b4a1...", "documents": [{"id": "d2c9..."}]}}
# }

class YousignEventAdapter(BaseEventAdapter):
    source = "yousign"

    def parse(self) -> Any:
        self._parsed = self._load_json()
        return self._parsed

    def transform(self):
        raw = self._parsed
        event_name = raw.get("event_name") or ""
        if event_name != "signature_request.done":
            return IgnoredEvent(event_type=event_name, source=self.source, raw_payload=raw)

        request = (raw.get("data") or {}).get("signature_request") or {}
        documents = request.get("documents") or []
        return SignatureEvent(
            source=self.source,
            raw_payload=raw,
            signature_request_id=str(request.get("id") or ""),
            document_id=documents[0].get("id") if documents else None,
            signed_at=from_timestamp(raw.get("event_time")),
        )
