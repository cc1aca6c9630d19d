"""
Renewal sweep: find subscriptions about to charge and act on each verdict.

Two sources of candidates, decided identically:
  local    subscriptions mirrored in our database
  gateway  the biller's upcoming-renewals listing, matched to local rows by
           external id (its charge date wins for the evaluation)

One failing subscription never stops the batch; it is logged, counted in
`errors`, and left active for the next run.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from django.conf import settings
from django.core.cache import cache
from django.db import transaction

from .clock import get_clock
from .documents import team_recipient
from .exceptions import BaseAppException, GatewayError
from .gateways import get_billing_gateway, get_notification_dispatcher
from .gateways.types import REFILL_ALERT
from .models import ClinicalPlan, Prescription, Subscription
from .renewals import RenewalDecision, classify, refill_alert_window
from .workflow import notify_cancellation

logger = logging.getLogger(__name__)

SOURCE_LOCAL = 'local'
SOURCE_GATEWAY = 'gateway'


@dataclass
class SweepResult:
    validated: int = 0
    cancelled: int = 0
    alerted: int = 0
    waiting: int = 0
    errors: int = 0
    not_found: int = 0

    def as_dict(self) -> dict:
        return {
            'validated': self.validated,
            'cancelled': self.cancelled,
            'alerted': self.alerted,
            'waiting': self.waiting,
            'errors': self.errors,
            'not_found': self.not_found,
        }


def in_window(next_charge_at: Optional[datetime], now: datetime, window_days: int) -> bool:
    if next_charge_at is None:
        return False
    return now <= next_charge_at <= now + timedelta(days=window_days)


def _local_candidates(now: datetime, window_days: int) -> list[Subscription]:
    return list(
        Subscription.objects.select_related('prescription', 'patient', 'patient__team')
        .filter(
            status='active',
            next_charge_scheduled_at__gte=now,
            next_charge_scheduled_at__lte=now + timedelta(days=window_days),
        )
        .exclude(external_subscription_id='')
        .order_by('next_charge_scheduled_at')
    )


def _gateway_candidates(billing, now: datetime, window_days: int, result: SweepResult) -> list[Subscription]:
    records = billing.get_upcoming_renewals(window_days)
    by_external_id = {
        s.external_subscription_id: s
        for s in Subscription.objects.select_related('prescription', 'patient', 'patient__team')
        .filter(external_subscription_id__in=[r.external_subscription_id for r in records])
    }

    candidates = []
    for record in records:
        subscription = by_external_id.get(record.external_subscription_id)
        if subscription is None:
            logger.warning("[Sweep] renewal %s has no local subscription", record.external_subscription_id)
            result.not_found += 1
            continue
        # Evaluate against the biller's charge date without persisting it
        subscription.next_charge_scheduled_at = record.next_charge_at
        if subscription.status == 'active' and in_window(record.next_charge_at, now, window_days):
            candidates.append(subscription)
    return candidates


def run_renewal_sweep(window_days: Optional[int] = None, source: str = SOURCE_LOCAL,
                      clock=None, billing=None, notifier=None) -> SweepResult:
    """
    Validate every renewal due within `window_days` and act on the verdict.

    Raises:
        GatewayError: gateway mode only, when the renewal listing itself fails
        ValueError:   unknown source
    """
    if window_days is None:
        window_days = settings.RENEWAL_SWEEP_DAYS
    if source not in (SOURCE_LOCAL, SOURCE_GATEWAY):
        raise ValueError(f"Unknown sweep source: {source!r}")

    now = (clock or get_clock()).now()
    notifier = notifier or get_notification_dispatcher()
    result = SweepResult()

    logger.info("[Sweep] start source=%s window_days=%d now=%s", source, window_days, now.isoformat())

    if source == SOURCE_GATEWAY:
        candidates = _gateway_candidates(billing or get_billing_gateway(), now, window_days, result)
    else:
        candidates = _local_candidates(now, window_days)

    for subscription in candidates:
        try:
            _process(subscription, now, result, billing, notifier)
        except BaseAppException as exc:
            result.errors += 1
            logger.error("[Sweep] subscription %s failed: %s", subscription.external_subscription_id, exc.message)
        except Exception:
            result.errors += 1
            logger.exception("[Sweep] subscription %s failed unexpectedly", subscription.external_subscription_id)

    logger.info("[Sweep] done %s", result.as_dict())
    return result


def _process(subscription, now: datetime, result: SweepResult, billing, notifier) -> None:
    prescription = subscription.prescription if subscription.prescription_id else None
    verdict = classify(prescription, subscription, now)

    if verdict.validity is RenewalDecision.INVALID_CANCEL_NOW:
        if cancel_subscription(subscription, verdict.reason, billing=billing, notifier=notifier):
            result.cancelled += 1
        else:
            result.errors += 1
    elif verdict.validity is RenewalDecision.INVALID_WAIT:
        logger.info("[Sweep] subscription %s invalid, not yet imminent: %s",
                    subscription.external_subscription_id, verdict.reason)
        result.waiting += 1
    else:
        result.validated += 1

    if verdict.refill_alert and send_refill_alert(subscription, prescription, now, notifier=notifier):
        result.alerted += 1


def cancel_subscription(subscription, reason: str, billing=None, notifier=None) -> bool:
    """
    Cancel at the biller, then mirror it locally.

    Local state is only touched after the biller confirms. Returns False (and
    leaves everything as it was) when the biller refuses or cannot be reached.
    """
    billing = billing or get_billing_gateway(subscription.billing_provider or None)
    external_id = subscription.external_subscription_id
    try:
        confirmed = billing.cancel(external_id, reason)
    except GatewayError as exc:
        logger.error("[Sweep] cancel %s not confirmed: %s", external_id, exc.message)
        return False
    if not confirmed:
        logger.error("[Sweep] cancel %s refused by biller, left active", external_id)
        return False

    with transaction.atomic():
        locked = Subscription.objects.select_for_update().get(pk=subscription.pk)
        locked.status = 'cancelled'
        locked.save(update_fields=['status', 'updated_at'])

        if locked.prescription_id:
            prescription = Prescription.objects.select_for_update().get(pk=locked.prescription_id)
            if not prescription.is_terminal:
                prescription.status = 'cancelled'
                prescription.save(update_fields=['status', 'updated_at'])
            if prescription.clinical_plan_id:
                plan = ClinicalPlan.objects.select_for_update().get(pk=prescription.clinical_plan_id)
                if plan.status != 'completed':
                    plan.status = 'completed'
                    plan.save(update_fields=['status', 'updated_at'])

    subscription.status = 'cancelled'
    logger.info("[Sweep] subscription %s cancelled: %s", external_id, reason)
    try:
        notify_cancellation(subscription, reason, notifier=notifier)
    except Exception:
        logger.exception("[Sweep] cancellation notice for %s not sent", external_id)
    return True


def _alert_cache_key(subscription) -> str:
    charge_at = subscription.next_charge_scheduled_at
    return f"refill-alert:{subscription.external_subscription_id}:{charge_at.isoformat() if charge_at else ''}"


def send_refill_alert(subscription, prescription, now: datetime, notifier=None) -> bool:
    """Tell the patient's care team the course is out of refills. Returns False when suppressed."""
    dedupe = getattr(settings, 'REFILL_ALERT_DEDUPE', True)
    key = _alert_cache_key(subscription)
    if dedupe and cache.get(key):
        logger.info("[Sweep] refill alert for %s already sent", subscription.external_subscription_id)
        return False

    recipient = team_recipient(subscription.patient.team)
    if recipient is None:
        logger.warning("[Sweep] patient %s has no care team; refill alert for %s skipped",
                       subscription.patient_id, subscription.external_subscription_id)
        return False

    (notifier or get_notification_dispatcher()).notify(recipient, REFILL_ALERT, {
        'patient_name': subscription.patient.full_name,
        'medication_name': prescription.medication_name,
        'subscription_id': subscription.external_subscription_id,
        'next_charge_at': subscription.next_charge_scheduled_at,
        'prescription_id': str(prescription.id),
    })

    if dedupe:
        cache.set(key, now.isoformat(), timeout=int(refill_alert_window().total_seconds()))
    logger.info("[Sweep] refill alert sent for %s", subscription.external_subscription_id)
    return True
