"""
Billing adapters.

To add a billing provider: add a class here, then register it in factory.py.

Registered providers:
  item_price — ItemPriceBillingGateway  (Chargebee-style: subscription items priced by item_price_id)
  plan       — PlanBillingGateway       (Recharge-style: subscription bound to a plan / variant)
"""

import logging
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.utils import timezone

from .base import BaseBillingGateway
from .http import build_client, from_iso, from_timestamp, log_failure, send, to_timestamp
from .types import ExternalSubscription, RenewalRecord
from ..exceptions import GatewayError

logger = logging.getLogger(__name__)


# ── ItemPriceBillingGateway ────────────────────────────────────────────────
#
# REST v2, HTTP basic auth with the API key as username, form-encoded writes.
# Settings: CHARGEBEE_SITE, CHARGEBEE_API_KEY

class ItemPriceBillingGateway(BaseBillingGateway):

    provider = "item_price"
    PAGE_SIZE = 100

    def __init__(self, site: Optional[str] = None, api_key: Optional[str] = None, transport=None):
        site = site or settings.CHARGEBEE_SITE
        api_key = api_key or settings.CHARGEBEE_API_KEY
        if not site or not api_key:
            raise ValueError("CHARGEBEE_SITE and CHARGEBEE_API_KEY must be set")
        self._client = build_client(
            f"https://{site}.chargebee.com/api/v2",
            transport=transport,
            auth=(api_key, ""),
        )

    def cancel(self, external_subscription_id: str, reason: str) -> bool:
        response = send(
            self._client, "POST", f"/subscriptions/{external_subscription_id}/cancel_for_items",
            self.provider,
            data={"cancel_option": "immediately", "cancel_reason_code": reason},
        )
        if response.is_success:
            logger.info("[Gateway][%s] cancelled subscription %s (%s)",
                        self.provider, external_subscription_id, reason)
            return True
        log_failure(self.provider, "cancel", response, subscription_id=external_subscription_id)
        return False

    def update_plan(self, external_subscription_id: str, new_price_id: str) -> bool:
        response = send(
            self._client, "POST", f"/subscriptions/{external_subscription_id}/update_for_items",
            self.provider,
            data={
                "subscription_items[item_price_id][0]": new_price_id,
                "subscription_items[quantity][0]": 1,
                "replace_items_list": "true",
                "prorate": "false",
                "invoice_immediately": "false",
            },
        )
        if response.is_success:
            return True
        log_failure(self.provider, "update_plan", response,
                    subscription_id=external_subscription_id, price_id=new_price_id)
        return False

    def get_upcoming_renewals(self, days_ahead: int) -> list[RenewalRecord]:
        now = timezone.now()
        params = {
            "status[is]": "active",
            "next_billing_at[after]": to_timestamp(now),
            "next_billing_at[before]": to_timestamp(now + timedelta(days=days_ahead)),
            "limit": self.PAGE_SIZE,
        }
        renewals = []
        offset = None
        while True:
            page_params = dict(params, offset=offset) if offset else params
            response = send(self._client, "GET", "/subscriptions", self.provider, params=page_params)
            if not response.is_success:
                log_failure(self.provider, "get_upcoming_renewals", response)
                raise GatewayError(
                    message="Could not list upcoming renewals",
                    code="GATEWAY_LIST_FAILED",
                    detail={"provider": self.provider, "status": response.status_code},
                )
            data = response.json()
            for entry in data.get("list", []):
                record = self._renewal_record(entry.get("subscription") or {})
                if record is not None:
                    renewals.append(record)
            offset = data.get("next_offset")
            if not offset:
                return renewals

    def get_subscription(self, external_subscription_id: str) -> Optional[ExternalSubscription]:
        response = send(self._client, "GET", f"/subscriptions/{external_subscription_id}", self.provider)
        if not response.is_success:
            log_failure(self.provider, "get_subscription", response, subscription_id=external_subscription_id)
            return None
        raw = response.json().get("subscription") or {}
        return ExternalSubscription(
            external_subscription_id=raw.get("id", external_subscription_id),
            status=raw.get("status", ""),
            price_ids=[item.get("item_price_id") for item in raw.get("subscription_items") or []
                       if item.get("item_price_id")],
            next_charge_at=from_timestamp(raw.get("next_billing_at")),
            external_customer_id=raw.get("customer_id", ""),
        )

    def _renewal_record(self, raw: dict) -> Optional[RenewalRecord]:
        if not raw.get("id"):
            logger.warning("[Gateway][%s] renewal entry without subscription id skipped", self.provider)
            return None
        items = raw.get("subscription_items") or []
        return RenewalRecord(
            external_subscription_id=raw["id"],
            next_charge_at=from_timestamp(raw.get("next_billing_at")),
            external_customer_id=raw.get("customer_id", ""),
            price_id=items[0].get("item_price_id") if items else None,
            status=raw.get("status", "active"),
        )


# ── PlanBillingGateway ─────────────────────────────────────────────────────
#
# JSON REST API, token header auth, cursor pagination.
# Settings: RECHARGE_API_URL, RECHARGE_API_TOKEN

class PlanBillingGateway(BaseBillingGateway):

    provider = "plan"
    PAGE_SIZE = 250

    def __init__(self, api_token: Optional[str] = None, base_url: Optional[str] = None, transport=None):
        api_token = api_token or settings.RECHARGE_API_TOKEN
        if not api_token:
            raise ValueError("RECHARGE_API_TOKEN must be set")
        self._client = build_client(
            base_url or settings.RECHARGE_API_URL,
            transport=transport,
            headers={
                "X-Recharge-Access-Token": api_token,
                "X-Recharge-Version": "2021-11",
                "Accept": "application/json",
            },
        )

    def cancel(self, external_subscription_id: str, reason: str) -> bool:
        response = send(
            self._client, "POST", f"/subscriptions/{external_subscription_id}/cancel", self.provider,
            json={"cancellation_reason": reason},
        )
        if response.is_success:
            logger.info("[Gateway][%s] cancelled subscription %s (%s)",
                        self.provider, external_subscription_id, reason)
            return True
        log_failure(self.provider, "cancel", response, subscription_id=external_subscription_id)
        return False

    def update_plan(self, external_subscription_id: str, new_price_id: str) -> bool:
        response = send(
            self._client, "PUT", f"/subscriptions/{external_subscription_id}", self.provider,
            json={"plan_id": new_price_id},
        )
        if response.is_success:
            return True
        log_failure(self.provider, "update_plan", response,
                    subscription_id=external_subscription_id, plan_id=new_price_id)
        return False

    def get_upcoming_renewals(self, days_ahead: int) -> list[RenewalRecord]:
        now = timezone.now()
        horizon = now + timedelta(days=days_ahead)
        renewals = []
        cursor = None
        while True:
            params = {"cursor": cursor} if cursor else {"status": "active", "limit": self.PAGE_SIZE}
            response = send(self._client, "GET", "/subscriptions", self.provider, params=params)
            if not response.is_success:
                log_failure(self.provider, "get_upcoming_renewals", response)
                raise GatewayError(
                    message="Could not list upcoming renewals",
                    code="GATEWAY_LIST_FAILED",
                    detail={"provider": self.provider, "status": response.status_code},
                )
            data = response.json()
            for raw in data.get("subscriptions", []):
                record = self._renewal_record(raw)
                # This listing has no charge-date filter, so the window is applied here
                if record and record.next_charge_at and now <= record.next_charge_at <= horizon:
                    renewals.append(record)
            cursor = data.get("next_cursor")
            if not cursor:
                return renewals

    def get_subscription(self, external_subscription_id: str) -> Optional[ExternalSubscription]:
        response = send(self._client, "GET", f"/subscriptions/{external_subscription_id}", self.provider)
        if not response.is_success:
            log_failure(self.provider, "get_subscription", response, subscription_id=external_subscription_id)
            return None
        raw = response.json().get("subscription") or {}
        plan_id = raw.get("plan_id")
        return ExternalSubscription(
            external_subscription_id=str(raw.get("id", external_subscription_id)),
            status=(raw.get("status") or "").lower(),
            price_ids=[str(plan_id)] if plan_id else [],
            next_charge_at=from_iso(raw.get("next_charge_scheduled_at")),
            external_customer_id=str(raw.get("customer_id") or ""),
        )

    def _renewal_record(self, raw: dict) -> Optional[RenewalRecord]:
        if not raw.get("id"):
            return None
        plan_id = raw.get("plan_id")
        return RenewalRecord(
            external_subscription_id=str(raw["id"]),
            next_charge_at=from_iso(raw.get("next_charge_scheduled_at")),
            external_customer_id=str(raw.get("customer_id") or ""),
            price_id=str(plan_id) if plan_id else None,
            status=(raw.get("status") or "active").lower(),
        )
