"""
Integration tests: real HTTP requests through Django's URL conf and views.

  HTTP Request → urls.py → View → adapter / workflow → ORM → DB → Response

Each test checks status_code plus the unified body (errors carry `type`,
successes do not). Celery tasks are patched at lifecycle.tasks.
"""
import json
import uuid
import pytest
from unittest.mock import patch

from lifecycle.models import Prescription, ProcessedRecurringOrder, Subscription
from tests.conftest import PrescriptionFactory, ProviderFactory, QuestionnaireSubmissionFactory, SubscriptionFactory


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def post_json(api_client, url, payload, **kwargs):
    response = api_client.post(url, data=json.dumps(payload), content_type='application/json', **kwargs)
    return response.status_code, json.loads(response.content)


def get_json(api_client, url):
    response = api_client.get(url)
    return response.status_code, json.loads(response.content)


# ===================================================================
# Webhooks
# ===================================================================

@pytest.mark.django_db
class TestSignatureWebhook:

    @patch('lifecycle.tasks.activate_signed_prescription')
    def test_signature_done_activates(self, mock_task, api_client, django_capture_on_commit_callbacks):
        prescription = PrescriptionFactory(status='pending_signature', signed_at=None)
        payload = {
            'event_name': 'signature_request.done',
            'event_time': '1772452800',
            'data': {'signature_request': {
                'id': prescription.signature_request_id, 'documents': [{'id': 'doc-signed'}],
            }},
        }

        with django_capture_on_commit_callbacks(execute=True):
            status, body = post_json(api_client, '/api/webhooks/yousign/', payload)

        assert status == 200
        assert 'type' not in body
        assert body['handled'] == 'document_signed'
        assert body['source'] == 'yousign'
        prescription.refresh_from_db()
        assert prescription.status == 'active'
        assert prescription.signature_document_id == 'doc-signed'
        mock_task.delay.assert_called_once_with(str(prescription.id))

    def test_unknown_signature_request_is_409(self, api_client):
        payload = {'event_name': 'signature_request.done', 'data': {'signature_request': {'id': 'sig-nobody'}}}

        status, body = post_json(api_client, '/api/webhooks/yousign/', payload)

        assert status == 409
        assert body['type'] == 'data_integrity'
        assert body['code'] == 'PRESCRIPTION_NOT_FOUND'

    def test_other_event_is_acknowledged(self, api_client):
        status, body = post_json(api_client, '/api/webhooks/yousign/', {'event_name': 'signer.done', 'data': {}})

        assert status == 200
        assert body['processed'] is False


@pytest.mark.django_db
class TestBillingWebhooks:

    def test_subscription_created(self, api_client):
        submission = QuestionnaireSubmissionFactory()
        payload = {
            'event_type': 'subscription_created',
            'content': {
                'subscription': {
                    'id': 'sub_checkout', 'customer_id': 'cust_x', 'status': 'active',
                    'subscription_items': [{'item_price_id': 'price-2-5'}],
                    'cf_questionnaire_submission_id': str(submission.id),
                },
                'customer': {'id': 'cust_x', 'email': submission.patient.email},
            },
        }

        status, body = post_json(api_client, '/api/webhooks/item_price/', payload)

        assert status == 200
        assert body == {
            'handled': 'subscription_created', 'processed': True,
            'source': 'item_price', 'message': 'Webhook processed',
        }
        subscription = Subscription.objects.get(external_subscription_id='sub_checkout')
        assert subscription.questionnaire_submission == submission
        assert subscription.prescription is None

    @patch('lifecycle.tasks.update_subscription_dose')
    @patch('lifecycle.tasks.create_renewal_order')
    def test_recurring_charge_is_applied_once(self, mock_order, mock_dose, api_client,
                                              django_capture_on_commit_callbacks):
        subscription = SubscriptionFactory(external_subscription_id='2751')
        payload = {'charge': {'id': 5501, 'type': 'RECURRING', 'line_items': [{'subscription_id': 2751}]}}

        with django_capture_on_commit_callbacks(execute=True):
            first_status, first = post_json(api_client, '/api/webhooks/plan/', payload,
                                            HTTP_X_RECHARGE_TOPIC='charge/paid')
            second_status, second = post_json(api_client, '/api/webhooks/plan/', payload,
                                              HTTP_X_RECHARGE_TOPIC='charge/paid')

        assert (first_status, second_status) == (200, 200)
        assert first['processed'] is True
        assert second['processed'] is False
        assert ProcessedRecurringOrder.objects.filter(external_invoice_id='5501').count() == 1
        assert Prescription.objects.get(pk=subscription.prescription_id).refills == 1
        mock_order.delay.assert_called_once_with(str(subscription.prescription_id), '5501')

    def test_unknown_source_is_404(self, api_client):
        status, body = post_json(api_client, '/api/webhooks/stripe/', {})

        assert status == 404
        assert body['type'] == 'validation_error'
        assert body['code'] == 'UNKNOWN_SOURCE'

    def test_malformed_body_is_400(self, api_client):
        response = api_client.post('/api/webhooks/item_price/', data='not json', content_type='text/plain')

        assert response.status_code == 400
        assert json.loads(response.content)['code'] == 'WEBHOOK_PAYLOAD_INVALID'


# ===================================================================
# Dose lookup
# ===================================================================

@pytest.mark.django_db
class TestDoseEndpoint:

    def test_current_and_next(self, api_client):
        prescription = PrescriptionFactory(refills=1)

        status, body = get_json(api_client, f'/api/prescriptions/{prescription.id}/dose/')

        assert status == 200
        assert body['refills'] == 1
        assert body['current']['dose'] == '5mg'
        assert body['current']['index'] == 1
        assert body['next']['dose'] == '7.5mg'
        assert body['next']['billing_price_id'] == 'price-7-5'

    def test_last_step_has_no_next(self, api_client):
        prescription = PrescriptionFactory(refills=0)

        _, body = get_json(api_client, f'/api/prescriptions/{prescription.id}/dose/')

        assert body['current']['dose'] == '7.5mg'
        assert body['next'] is None

    def test_not_found(self, api_client):
        status, body = get_json(api_client, f'/api/prescriptions/{uuid.uuid4()}/dose/')

        assert status == 404
        assert body['code'] == 'PRESCRIPTION_NOT_FOUND'


# ===================================================================
# Replacement
# ===================================================================

@pytest.mark.django_db
class TestReplaceEndpoint:

    @patch('lifecycle.tasks.request_signature')
    def test_replace(self, mock_task, api_client, django_capture_on_commit_callbacks):
        subscription = SubscriptionFactory()
        original = subscription.prescription
        prescriber = ProviderFactory()
        payload = {
            'prescriber_id': str(prescriber.id),
            'dose_schedule': [{'refill_number': 0, 'dose': '10mg', 'billing_price_id': 'price-10'}],
            'refills': 0,
        }

        with django_capture_on_commit_callbacks(execute=True):
            status, body = post_json(api_client, f'/api/prescriptions/{original.id}/replace/', payload)

        assert status == 201
        assert 'type' not in body
        assert body['status'] == 'pending_signature'
        assert body['replaces_prescription_id'] == str(original.id)
        replacement = Prescription.objects.get(pk=body['prescription_id'])
        assert replacement.prescriber == prescriber
        assert Subscription.objects.get(pk=subscription.pk).prescription_id == replacement.id
        mock_task.delay.assert_called_once_with(str(replacement.id))

    @patch('lifecycle.tasks.request_signature')
    def test_second_replace_of_same_original_is_blocked(self, mock_task, api_client):
        original = PrescriptionFactory()

        post_json(api_client, f'/api/prescriptions/{original.id}/replace/', {})
        status, body = post_json(api_client, f'/api/prescriptions/{original.id}/replace/', {})

        assert status == 409
        assert body['type'] == 'block'
        assert body['code'] == 'PRESCRIPTION_NOT_REPLACEABLE'

    def test_unknown_prescriber(self, api_client):
        original = PrescriptionFactory()

        status, body = post_json(api_client, f'/api/prescriptions/{original.id}/replace/',
                                 {'prescriber_id': str(uuid.uuid4())})

        assert status == 400
        assert body['type'] == 'validation_error'
        assert 'prescriber_id' in body['detail']

    def test_end_before_start(self, api_client):
        original = PrescriptionFactory()

        status, body = post_json(api_client, f'/api/prescriptions/{original.id}/replace/',
                                 {'start_date': '2026-06-01', 'end_date': '2026-05-01'})

        assert status == 400
        assert 'end_date' in body['detail']

    def test_empty_schedule(self, api_client):
        original = PrescriptionFactory()

        status, body = post_json(api_client, f'/api/prescriptions/{original.id}/replace/', {'dose_schedule': []})

        assert status == 400
        assert Prescription.objects.get(pk=original.pk).status == 'active'

    def test_unknown_prescription(self, api_client):
        status, body = post_json(api_client, f'/api/prescriptions/{uuid.uuid4()}/replace/', {})

        assert status == 404
        assert body['code'] == 'PRESCRIPTION_NOT_FOUND'
