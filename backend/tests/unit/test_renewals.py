"""
Unit tests for the renewal validator. classify() never touches the database,
so plain namespaces stand in for the models.
"""
import itertools
import pytest
from datetime import timedelta
from types import SimpleNamespace

from lifecycle.renewals import RenewalDecision, classify, is_imminent, needs_refill_alert
from tests.conftest import NOW


TODAY = NOW.date()
VALIDITY = {RenewalDecision.VALID, RenewalDecision.INVALID_WAIT, RenewalDecision.INVALID_CANCEL_NOW}


def rx(status='active', end_date=TODAY + timedelta(days=30), refills=2):
    return SimpleNamespace(status=status, end_date=end_date, refills=refills)


def sub(next_charge_at):
    return SimpleNamespace(next_charge_scheduled_at=next_charge_at)


class TestScenarios:

    def test_expired_but_not_imminent_waits(self):
        result = classify(rx(end_date=TODAY - timedelta(days=1), refills=3), sub(NOW + timedelta(days=10)), NOW)
        assert result.validity is RenewalDecision.INVALID_WAIT
        assert result.refill_alert is False
        assert result.reason == 'Prescription has expired'

    def test_no_refills_and_imminent_cancels_now(self):
        result = classify(rx(refills=0), sub(NOW + timedelta(days=1)), NOW)
        assert result.validity is RenewalDecision.INVALID_CANCEL_NOW
        assert result.reason == 'No refills remaining'
        # Also inside the alert window, and the alert axis is independent
        assert result.refill_alert is True
        assert result.decisions == {RenewalDecision.INVALID_CANCEL_NOW, RenewalDecision.NEEDS_REFILL_ALERT}

    @pytest.mark.parametrize('next_charge', [None, NOW - timedelta(days=3), NOW, NOW + timedelta(days=90)])
    def test_missing_prescription_always_cancels_now(self, next_charge):
        result = classify(None, sub(next_charge), NOW)
        assert result.validity is RenewalDecision.INVALID_CANCEL_NOW
        assert result.refill_alert is False
        assert result.reason == 'No associated prescription'


class TestValidity:

    def test_valid(self):
        result = classify(rx(), sub(NOW + timedelta(days=1)), NOW)
        assert result.is_valid
        assert result.reason is None
        assert result.decisions == {RenewalDecision.VALID}

    @pytest.mark.parametrize('status', ['pending_signature', 'completed', 'cancelled', 'replaced'])
    def test_non_active_status_is_invalid(self, status):
        result = classify(rx(status=status), sub(NOW + timedelta(hours=1)), NOW)
        assert result.validity is RenewalDecision.INVALID_CANCEL_NOW
        assert status in result.reason

    def test_end_date_today_is_still_valid(self):
        result = classify(rx(end_date=TODAY), sub(NOW + timedelta(hours=1)), NOW)
        assert result.is_valid

    def test_no_end_date_is_valid(self):
        assert classify(rx(end_date=None), sub(NOW + timedelta(hours=1)), NOW).is_valid

    def test_negative_refills_invalid(self):
        result = classify(rx(refills=-1), sub(NOW + timedelta(days=5)), NOW)
        assert result.validity is RenewalDecision.INVALID_WAIT

    def test_null_charge_date_is_never_imminent(self):
        result = classify(rx(refills=0), sub(None), NOW)
        assert result.validity is RenewalDecision.INVALID_WAIT
        assert result.refill_alert is False


class TestWindows:

    def test_imminent_boundary_is_exclusive(self):
        assert is_imminent(NOW + timedelta(hours=47, minutes=59), NOW) is True
        assert is_imminent(NOW + timedelta(hours=48), NOW) is False

    def test_past_charge_date_is_imminent(self):
        assert is_imminent(NOW - timedelta(hours=1), NOW) is True

    def test_custom_cancel_window(self):
        result = classify(rx(refills=0), sub(NOW + timedelta(hours=60)), NOW, cancel_window=timedelta(hours=72))
        assert result.validity is RenewalDecision.INVALID_CANCEL_NOW

    def test_alert_window_is_inclusive(self):
        prescription = rx(refills=0)
        assert needs_refill_alert(prescription, NOW, NOW) is True
        assert needs_refill_alert(prescription, NOW + timedelta(days=7), NOW) is True
        assert needs_refill_alert(prescription, NOW + timedelta(days=7, seconds=1), NOW) is False
        assert needs_refill_alert(prescription, NOW - timedelta(seconds=1), NOW) is False

    def test_alert_requires_active_and_no_refills(self):
        assert needs_refill_alert(rx(refills=1), NOW + timedelta(days=2), NOW) is False
        assert needs_refill_alert(rx(status='cancelled', refills=0), NOW + timedelta(days=2), NOW) is False

    def test_alert_with_valid_renewal_outside_cancel_window(self):
        result = classify(rx(refills=0), sub(NOW + timedelta(days=5)), NOW)
        assert result.validity is RenewalDecision.INVALID_WAIT
        assert result.refill_alert is True


class TestClassificationTotality:
    """Every input combination yields exactly one validity member plus a boolean alert."""

    STATUSES = ['pending_signature', 'active', 'completed', 'cancelled', 'replaced']
    END_DATES = [None, TODAY - timedelta(days=1), TODAY, TODAY + timedelta(days=1)]
    REFILLS = [-1, 0, 1, 5]
    CHARGES = [None, NOW - timedelta(days=1), NOW, NOW + timedelta(hours=47),
               NOW + timedelta(hours=48), NOW + timedelta(days=7), NOW + timedelta(days=30)]

    def test_exactly_one_validity(self):
        for status, end_date, refills, charge in itertools.product(
                self.STATUSES, self.END_DATES, self.REFILLS, self.CHARGES):
            result = classify(rx(status, end_date, refills), sub(charge), NOW)
            assert result.validity in VALIDITY
            assert isinstance(result.refill_alert, bool)
            assert len(result.decisions & VALIDITY) == 1
            assert result.is_valid == (result.reason is None)
