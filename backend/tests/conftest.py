"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
"""
import pytest
from datetime import date, datetime, timezone as dt_timezone
from unittest.mock import MagicMock
from django.core.cache import cache
from django.test import Client

import factory
from lifecycle.clock import FixedClock
from lifecycle.dosing import resolve_doses
from lifecycle.gateways.base import (
    BaseBillingGateway,
    BaseCommerceGateway,
    BaseNotificationDispatcher,
    BaseSignatureGateway,
)
from lifecycle.models import (
    ClinicalPlan,
    Patient,
    Prescription,
    ProcessedRecurringOrder,
    Provider,
    QuestionnaireSubmission,
    Subscription,
    Team,
)


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=dt_timezone.utc)

# Three-step titration: 2.5mg → 5mg → 7.5mg, two refills after the first fill
THREE_STEP_SCHEDULE = [
    {'refill_number': 0, 'dose': '2.5mg', 'billing_price_id': 'price-2-5', 'product_variant_id': 'variant-2-5'},
    {'refill_number': 1, 'dose': '5mg', 'billing_price_id': 'price-5', 'product_variant_id': 'variant-5'},
    {'refill_number': 2, 'dose': '7.5mg', 'billing_price_id': 'price-7-5', 'product_variant_id': 'variant-7-5'},
]


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class TeamFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Team

    name = 'North Clinic'
    email = factory.Sequence(lambda n: f'team{n}@clinic.test')


class PatientFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Patient

    first_name = 'Jane'
    last_name = 'Doe'
    email = factory.Sequence(lambda n: f'patient{n}@example.test')
    address = '1 High Street, Leeds'
    dob = date(1988, 5, 4)
    team = factory.SubFactory(TeamFactory)
    external_customer_id = factory.Sequence(lambda n: f'cust_{n}')


class ProviderFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Provider

    name = 'Dr Alan Smith'
    registration_number = factory.Sequence(lambda n: f'GMC{7000000 + n}')
    email = factory.Sequence(lambda n: f'prescriber{n}@clinic.test')


class QuestionnaireSubmissionFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = QuestionnaireSubmission

    patient = factory.SubFactory(PatientFactory)


class ClinicalPlanFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ClinicalPlan

    patient = factory.SubFactory(PatientFactory)
    provider = factory.SubFactory(ProviderFactory)
    questionnaire_submission = factory.SubFactory(
        QuestionnaireSubmissionFactory, patient=factory.SelfAttribute('..patient'),
    )
    status = 'active'


class PrescriptionFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Prescription

    patient = factory.SubFactory(PatientFactory)
    prescriber = factory.SubFactory(ProviderFactory)
    clinical_plan = factory.SubFactory(
        ClinicalPlanFactory,
        patient=factory.SelfAttribute('..patient'),
        provider=factory.SelfAttribute('..prescriber'),
    )
    medication_name = 'Semaglutide'
    directions = 'Inject once weekly'
    dose_schedule = factory.LazyFunction(lambda: [dict(step) for step in THREE_STEP_SCHEDULE])
    refills = 2
    status = 'active'
    start_date = date(2026, 1, 1)
    end_date = date(2026, 12, 31)
    signature_request_id = factory.Sequence(lambda n: f'sig-req-{n}')
    signature_document_id = factory.Sequence(lambda n: f'sig-doc-{n}')
    signed_at = NOW
    activation_state = 'activated'


class SubscriptionFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Subscription

    external_subscription_id = factory.Sequence(lambda n: f'sub_{n}')
    external_customer_id = factory.SelfAttribute('patient.external_customer_id')
    external_price_id = 'price-2-5'
    billing_provider = 'item_price'
    prescription = factory.SubFactory(PrescriptionFactory)
    patient = factory.SelfAttribute('prescription.patient')
    questionnaire_submission = factory.SelfAttribute('prescription.clinical_plan.questionnaire_submission')
    status = 'active'
    next_charge_scheduled_at = NOW


class ProcessedRecurringOrderFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ProcessedRecurringOrder

    prescription = factory.SubFactory(PrescriptionFactory)
    external_invoice_id = factory.Sequence(lambda n: f'inv_{n}')
    dose_index = factory.LazyAttribute(lambda o: resolve_doses(o.prescription).current_index)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def clear_cache():
    """Refill-alert de-duplication lives in the cache; start every test empty."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def api_client():
    """Django test client for integration tests."""
    return Client()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def billing():
    gateway = MagicMock(spec=BaseBillingGateway)
    gateway.cancel.return_value = True
    gateway.update_plan.return_value = True
    gateway.get_upcoming_renewals.return_value = []
    return gateway


@pytest.fixture
def commerce():
    gateway = MagicMock(spec=BaseCommerceGateway)
    gateway.create_order.return_value = 'gid://shopify/Order/1001'
    gateway.attach_metadata.return_value = True
    gateway.attach_document.return_value = True
    return gateway


@pytest.fixture
def signature():
    gateway = MagicMock(spec=BaseSignatureGateway)
    gateway.create_request.return_value = 'sig-req-new'
    gateway.fetch_signed_document.return_value = b'%PDF-1.4 signed'
    return gateway


@pytest.fixture
def notifier():
    return MagicMock(spec=BaseNotificationDispatcher)
