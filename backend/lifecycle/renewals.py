"""
Renewal validator: is a subscription's upcoming charge clinically backed?

Two independent axes:
  validity     VALID / INVALID_WAIT / INVALID_CANCEL_NOW   (exactly one)
  refill alert NEEDS_REFILL_ALERT present or not

classify() never raises for expected input and never touches the database.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from django.conf import settings
from django.utils import timezone


class RenewalDecision(str, enum.Enum):
    VALID = 'valid'
    INVALID_WAIT = 'invalid_wait'
    INVALID_CANCEL_NOW = 'invalid_cancel_now'
    NEEDS_REFILL_ALERT = 'needs_refill_alert'


@dataclass(frozen=True)
class RenewalClassification:
    validity: RenewalDecision
    refill_alert: bool
    reason: Optional[str] = None

    @property
    def decisions(self) -> frozenset:
        members = {self.validity}
        if self.refill_alert:
            members.add(RenewalDecision.NEEDS_REFILL_ALERT)
        return frozenset(members)

    @property
    def is_valid(self) -> bool:
        return self.validity is RenewalDecision.VALID


def cancellation_window() -> timedelta:
    return timedelta(hours=getattr(settings, 'RENEWAL_CANCELLATION_WINDOW_HOURS', 48))


def refill_alert_window() -> timedelta:
    return timedelta(days=getattr(settings, 'REFILL_ALERT_WINDOW_DAYS', 7))


def invalid_reason(prescription, now: datetime) -> Optional[str]:
    """Why a prescription cannot back a renewal, or None when it can."""
    if prescription.status != 'active':
        return f"Prescription is not active (status: {prescription.status})"
    if prescription.end_date is not None and prescription.end_date < timezone.localdate(now):
        return "Prescription has expired"
    if prescription.refills <= 0:
        return "No refills remaining"
    return None


def is_imminent(next_charge_at: Optional[datetime], now: datetime, window: Optional[timedelta] = None) -> bool:
    # No charge date: nothing to measure, so defer.
    if next_charge_at is None:
        return False
    return next_charge_at < now + (window or cancellation_window())


def needs_refill_alert(prescription, next_charge_at: Optional[datetime], now: datetime,
                       window: Optional[timedelta] = None) -> bool:
    if prescription is None or next_charge_at is None:
        return False
    return (
        prescription.status == 'active'
        and prescription.refills <= 0
        and now <= next_charge_at <= now + (window or refill_alert_window())
    )


def classify(prescription, subscription, now: datetime,
             cancel_window: Optional[timedelta] = None,
             alert_window: Optional[timedelta] = None) -> RenewalClassification:
    """
    Classify one subscription's upcoming renewal.

    Args:
        prescription: linked Prescription or None
        subscription: Subscription (only next_charge_scheduled_at is read)
        now:          evaluation instant (timezone-aware)
    """
    next_charge_at = subscription.next_charge_scheduled_at

    if prescription is None:
        return RenewalClassification(
            validity=RenewalDecision.INVALID_CANCEL_NOW,
            refill_alert=False,
            reason="No associated prescription",
        )

    alert = needs_refill_alert(prescription, next_charge_at, now, alert_window)
    reason = invalid_reason(prescription, now)

    if reason is None:
        return RenewalClassification(validity=RenewalDecision.VALID, refill_alert=alert)

    if is_imminent(next_charge_at, now, cancel_window):
        validity = RenewalDecision.INVALID_CANCEL_NOW
    else:
        validity = RenewalDecision.INVALID_WAIT
    return RenewalClassification(validity=validity, refill_alert=alert, reason=reason)
