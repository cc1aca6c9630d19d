"""
Unit tests for the webhook adapters (events/).

Covers:
1. the factory registry: known sources, unknown source → 404 ValidationError
2. ItemPriceEventAdapter: subscription events, recurring invoices, ignored types
3. PlanEventAdapter: topic from header or body, charge/paid
4. YousignEventAdapter: signature_request.done
5. malformed bodies and missing ids → WEBHOOK_PAYLOAD_INVALID
"""
import json
import pytest
from datetime import datetime, timezone as dt_timezone

from lifecycle.events import get_adapter
from lifecycle.events.adapters import ItemPriceEventAdapter, PlanEventAdapter, YousignEventAdapter
from lifecycle.events.types import (
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_CHANGED,
    SUBSCRIPTION_CREATED,
    IgnoredEvent,
    PaymentEvent,
    SignatureEvent,
    SubscriptionEvent,
)
from lifecycle.exceptions import ValidationError


JAN_1 = datetime(2026, 1, 1, tzinfo=dt_timezone.utc)


def body(data):
    return json.dumps(data).encode()


def item_price_subscription(event_type='subscription_created', **overrides):
    subscription = {
        'id': 'AzZlGJTQ4bXk5',
        'customer_id': 'cust_1',
        'status': 'active',
        'next_billing_at': int(JAN_1.timestamp()),
        'subscription_items': [{'item_price_id': 'sema-2-5mg-monthly'}],
        'cf_questionnaire_submission_id': '8d5c0a4e-6d0f-4a53-8f4e-3c1f1f1d2b11',
    }
    subscription.update(overrides)
    return {
        'id': 'ev_1',
        'event_type': event_type,
        'content': {
            'subscription': subscription,
            'customer': {'id': 'cust_1', 'email': ' jane@example.com '},
        },
    }


# ===================================================================
# Factory
# ===================================================================

class TestFactory:

    @pytest.mark.parametrize('source, cls', [
        ('item_price', ItemPriceEventAdapter),
        ('plan', PlanEventAdapter),
        ('yousign', YousignEventAdapter),
    ])
    def test_known_sources(self, source, cls):
        assert isinstance(get_adapter(source, b'{}'), cls)

    def test_unknown_source(self):
        with pytest.raises(ValidationError) as exc_info:
            get_adapter('stripe', b'{}')
        assert exc_info.value.code == 'UNKNOWN_SOURCE'
        assert exc_info.value.http_status == 404
        assert 'yousign' in exc_info.value.detail['known_sources']


# ===================================================================
# ItemPriceEventAdapter
# ===================================================================

class TestItemPriceAdapter:

    def test_subscription_created(self):
        event = get_adapter('item_price', body(item_price_subscription())).process()

        assert isinstance(event, SubscriptionEvent)
        assert event.kind == SUBSCRIPTION_CREATED
        assert event.external_subscription_id == 'AzZlGJTQ4bXk5'
        assert event.billing_provider == 'item_price'
        assert event.external_customer_id == 'cust_1'
        assert event.customer_email == 'jane@example.com'
        assert event.price_id == 'sema-2-5mg-monthly'
        assert event.next_charge_at == JAN_1
        assert event.questionnaire_submission_id == '8d5c0a4e-6d0f-4a53-8f4e-3c1f1f1d2b11'
        assert event.raw_payload['id'] == 'ev_1'

    @pytest.mark.parametrize('event_type, status, expected', [
        ('subscription_changed', 'active', 'active'),
        ('subscription_renewed', 'in_trial', 'active'),
        ('subscription_paused', 'paused', 'paused'),
        ('subscription_changed', 'non_renewing', 'active'),
    ])
    def test_change_events(self, event_type, status, expected):
        event = get_adapter('item_price', body(item_price_subscription(event_type, status=status))).process()
        assert event.kind == SUBSCRIPTION_CHANGED
        assert event.status == expected

    def test_cancelled_event_is_always_cancelled(self):
        event = get_adapter('item_price', body(item_price_subscription('subscription_cancelled'))).process()
        assert event.kind == SUBSCRIPTION_CANCELLED
        assert event.status == 'cancelled'

    def test_recurring_invoice_is_a_payment(self):
        raw = item_price_subscription('invoice_generated')
        raw['content']['invoice'] = {'id': 'inv_42', 'recurring': True}

        event = get_adapter('item_price', body(raw)).process()

        assert event == PaymentEvent(
            external_subscription_id='AzZlGJTQ4bXk5', invoice_id='inv_42', source='item_price', raw_payload=raw,
        )

    def test_first_invoice_is_ignored(self):
        raw = item_price_subscription('invoice_generated')
        raw['content']['invoice'] = {'id': 'inv_1', 'recurring': False}

        event = get_adapter('item_price', body(raw)).process()

        assert isinstance(event, IgnoredEvent)
        assert event.event_type == 'invoice_generated'

    def test_invoice_for_cancelled_subscription_is_ignored(self):
        raw = item_price_subscription('invoice_generated', status='cancelled')
        raw['content']['invoice'] = {'id': 'inv_42', 'recurring': True}

        assert isinstance(get_adapter('item_price', body(raw)).process(), IgnoredEvent)

    def test_other_event_types_are_ignored(self):
        event = get_adapter('item_price', body({'event_type': 'customer_changed', 'content': {}})).process()
        assert isinstance(event, IgnoredEvent)

    def test_missing_subscription_id(self):
        raw = item_price_subscription()
        raw['content']['subscription'].pop('id')

        with pytest.raises(ValidationError) as exc_info:
            get_adapter('item_price', body(raw)).process()
        assert exc_info.value.code == 'WEBHOOK_PAYLOAD_INVALID'
        assert exc_info.value.detail['errors'][0]['field'] == 'subscription.id'

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            get_adapter('item_price', body(item_price_subscription('subscription_changed', status='frozen'))).process()


# ===================================================================
# PlanEventAdapter
# ===================================================================

class TestPlanAdapter:

    SUBSCRIPTION = {
        'subscription': {
            'id': 2751,
            'customer_id': 991,
            'email': 'jane@example.com',
            'status': 'ACTIVE',
            'plan_id': 77,
            'next_charge_scheduled_at': '2026-01-01T00:00:00',
            'properties': [
                {'name': 'questionnaire_submission_id', 'value': 'q-1'},
                {'name': 'utm_source', 'value': 'newsletter'},
            ],
        },
    }

    def test_topic_from_header(self):
        adapter = get_adapter('plan', body(self.SUBSCRIPTION), headers={'X-Recharge-Topic': 'subscription/created'})
        event = adapter.process()

        assert event.kind == SUBSCRIPTION_CREATED
        assert event.external_subscription_id == '2751'
        assert event.external_customer_id == '991'
        assert event.status == 'active'
        assert event.price_id == '77'
        assert event.next_charge_at == JAN_1
        assert event.questionnaire_submission_id == 'q-1'
        assert event.billing_provider == 'plan'

    def test_topic_from_body(self):
        raw = dict(self.SUBSCRIPTION, topic='subscription/cancelled')
        event = get_adapter('plan', body(raw)).process()
        assert event.kind == SUBSCRIPTION_CANCELLED
        assert event.status == 'cancelled'

    def test_recurring_charge(self):
        raw = {'charge': {'id': 5501, 'type': 'RECURRING', 'line_items': [{'subscription_id': 2751}]}}
        event = get_adapter('plan', body(raw), headers={'x-recharge-topic': 'charge/paid'}).process()
        assert isinstance(event, PaymentEvent)
        assert event.external_subscription_id == '2751'
        assert event.invoice_id == '5501'

    def test_checkout_charge_is_ignored(self):
        raw = {'charge': {'id': 5500, 'type': 'CHECKOUT', 'line_items': [{'subscription_id': 2751}]}}
        event = get_adapter('plan', body(raw), headers={'x-recharge-topic': 'charge/paid'}).process()
        assert isinstance(event, IgnoredEvent)

    def test_charge_without_line_items(self):
        raw = {'charge': {'id': 5501, 'type': 'RECURRING'}}
        with pytest.raises(ValidationError):
            get_adapter('plan', body(raw), headers={'x-recharge-topic': 'charge/paid'}).process()

    def test_unknown_topic_is_ignored(self):
        event = get_adapter('plan', body({}), headers={'x-recharge-topic': 'order/created'}).process()
        assert isinstance(event, IgnoredEvent)
        assert event.event_type == 'order/created'


# ===================================================================
# YousignEventAdapter
# ===================================================================

class TestYousignAdapter:

    def test_signature_done(self):
        raw = {
            'event_name': 'signature_request.done',
            'event_time': str(int(JAN_1.timestamp())),
            'data': {'signature_request': {'id': 'b4a1', 'documents': [{'id': 'd2c9'}]}},
        }
        event = get_adapter('yousign', body(raw)).process()

        assert isinstance(event, SignatureEvent)
        assert event.signature_request_id == 'b4a1'
        assert event.document_id == 'd2c9'
        assert event.signed_at == JAN_1

    def test_other_events_are_ignored(self):
        event = get_adapter('yousign', body({'event_name': 'signer.link_opened', 'data': {}})).process()
        assert isinstance(event, IgnoredEvent)

    def test_missing_request_id(self):
        with pytest.raises(ValidationError):
            get_adapter('yousign', body({'event_name': 'signature_request.done', 'data': {}})).process()


# ===================================================================
# Malformed bodies
# ===================================================================

class TestMalformedBody:

    @pytest.mark.parametrize('source', ['item_price', 'plan', 'yousign'])
    def test_not_json(self, source):
        with pytest.raises(ValidationError) as exc_info:
            get_adapter(source, b'event_type=subscription_created').process()
        assert exc_info.value.code == 'WEBHOOK_PAYLOAD_INVALID'

    def test_json_array(self):
        with pytest.raises(ValidationError):
            get_adapter('yousign', b'[1, 2]').process()
