"""
Lifecycle orchestration: signature completion, recurring renewal, replacement,
and externally-sourced subscription events.

Each public function here is one step. Steps that talk to an external system
run inside Celery tasks (tasks.py) and are safe to run again: they check what
is already recorded before acting, and they only write local state after the
gateway confirms. Follow-up steps are enqueued with transaction.on_commit so
nothing is dispatched for a rolled-back change.

Raises:
    DataIntegrityError: a linkage the step relies on is missing (never retried)
    GatewayError:       an external call failed or its outcome is unknown (retried)
    BlockError:         a business rule refuses the request
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from django.db import transaction

from .clock import get_clock
from .documents import (
    build_label_payload,
    current_dose_label,
    patient_recipient,
    render_clinician_letter,
    render_prescription_document,
)
from .dosing import needs_billing_update, parse_schedule, resolve_doses, step_at
from .events.types import (
    SUBSCRIPTION_CANCELLED as SUBSCRIPTION_CANCELLED_EVENT,
    SUBSCRIPTION_CHANGED,
    SUBSCRIPTION_CREATED,
    PaymentEvent,
    SignatureEvent,
    SubscriptionEvent,
)
from .exceptions import BlockError, DataIntegrityError, GatewayError, ValidationError
from .gateways import (
    get_billing_gateway,
    get_commerce_gateway,
    get_notification_dispatcher,
    get_signature_gateway,
)
from .gateways.types import CLINICIAN_LETTER, PRESCRIPTION_ACTIVATED, SUBSCRIPTION_CANCELLED, LineItem, Signer
from .models import (
    Patient,
    Prescription,
    ProcessedRecurringOrder,
    QuestionnaireSubmission,
    Subscription,
)

logger = logging.getLogger(__name__)

SIGNED_DOCUMENT_LABEL = "signed_prescription"


# ── lookups ────────────────────────────────────────────────────────────────

def get_prescription(prescription_id) -> Prescription:
    """Prescription by id. Raises BlockError (404) when it does not exist."""
    try:
        return Prescription.objects.select_related('patient', 'prescriber', 'clinical_plan').get(id=prescription_id)
    except Prescription.DoesNotExist:
        raise BlockError(
            message='Prescription not found',
            code='PRESCRIPTION_NOT_FOUND',
            detail={'prescription_id': str(prescription_id)},
            http_status=404,
        )


def _load_prescription(prescription_id) -> Prescription:
    # Inside a step a vanished prescription is a broken linkage, not a client error
    try:
        return get_prescription(prescription_id)
    except BlockError as exc:
        raise DataIntegrityError(message=exc.message, code=exc.code, detail=exc.detail)


def subscription_for(prescription) -> Optional[Subscription]:
    """The subscription currently linked to `prescription`, or None."""
    return Subscription.objects.filter(prescription=prescription).first()


def _require_subscription(prescription) -> Subscription:
    subscription = subscription_for(prescription)
    if subscription is None:
        raise DataIntegrityError(
            message=f"Prescription {prescription.id} has no linked subscription",
            code='SUBSCRIPTION_NOT_LINKED',
            detail={'prescription_id': str(prescription.id)},
        )
    return subscription


def resolve_subscription_for_linking(prescription) -> Optional[Subscription]:
    """clinical plan → questionnaire submission → subscription"""
    plan = prescription.clinical_plan
    if plan is None or plan.questionnaire_submission_id is None:
        return None
    return Subscription.objects.filter(questionnaire_submission_id=plan.questionnaire_submission_id).first()


# ── signature completion ───────────────────────────────────────────────────

def handle_document_signed(signature_request_id: str, document_id: Optional[str] = None,
                           signed_at: Optional[datetime] = None) -> Prescription:
    """
    Entry point for "the prescriber signed".

    Marks the prescription active and enqueues the activation step. A second
    delivery for an already-signed prescription is a no-op.
    """
    from .tasks import activate_signed_prescription

    with transaction.atomic():
        prescription = (
            Prescription.objects.select_for_update()
            .filter(signature_request_id=signature_request_id)
            .first()
        )
        if prescription is None:
            raise DataIntegrityError(
                message=f"No prescription for signature request {signature_request_id}",
                code='PRESCRIPTION_NOT_FOUND',
                detail={'signature_request_id': signature_request_id},
            )

        if prescription.status == 'active' and prescription.signed_at is not None:
            logger.info("[Signature] prescription %s already signed, skipping", prescription.id)
            return prescription

        if prescription.status != 'pending_signature':
            logger.warning("[Signature] prescription %s is %s, ignoring signature event",
                           prescription.id, prescription.status)
            return prescription

        prescription.status = 'active'
        prescription.signed_at = signed_at or get_clock().now()
        if document_id:
            prescription.signature_document_id = document_id
        prescription.activation_state = 'signed_processing'
        prescription.error_message = None
        prescription.save(update_fields=[
            'status', 'signed_at', 'signature_document_id', 'activation_state', 'error_message', 'updated_at',
        ])

        prescription_id = str(prescription.id)
        transaction.on_commit(lambda: activate_signed_prescription.delay(prescription_id))

    logger.info("[Signature] prescription %s signed, activation queued", prescription.id)
    return prescription


def link_subscription(prescription) -> Subscription:
    """Link the questionnaire's subscription to `prescription`, exactly once."""
    candidate = resolve_subscription_for_linking(prescription)
    if candidate is None:
        raise DataIntegrityError(
            message=f"No subscription found for prescription {prescription.id}",
            code='SUBSCRIPTION_NOT_FOUND',
            detail={
                'prescription_id': str(prescription.id),
                'clinical_plan_id': str(prescription.clinical_plan_id) if prescription.clinical_plan_id else None,
            },
        )

    with transaction.atomic():
        subscription = Subscription.objects.select_for_update().get(pk=candidate.pk)
        if subscription.prescription_id is None:
            subscription.prescription = prescription
            subscription.save(update_fields=['prescription', 'updated_at'])
            logger.info("[Link] subscription %s linked to prescription %s",
                        subscription.external_subscription_id, prescription.id)
        elif subscription.prescription_id != prescription.id:
            raise DataIntegrityError(
                message=(
                    f"Subscription {subscription.external_subscription_id} is already linked "
                    f"to another prescription"
                ),
                code='SUBSCRIPTION_ALREADY_LINKED',
                detail={
                    'subscription_id': subscription.external_subscription_id,
                    'linked_prescription_id': str(subscription.prescription_id),
                    'prescription_id': str(prescription.id),
                },
            )
    return subscription


def activate_signed_prescription(prescription_id) -> None:
    """Link (initial flow), then fan out the letter, notification and order/dose steps."""
    from .tasks import create_initial_order, send_clinician_letter, update_subscription_dose

    prescription = _load_prescription(prescription_id)
    if prescription.status != 'active':
        logger.warning("[Activation] prescription %s is %s, nothing to activate",
                       prescription.id, prescription.status)
        return

    if prescription.is_replacement:
        _require_subscription(prescription)
    else:
        link_subscription(prescription)

    get_notification_dispatcher().notify(
        patient_recipient(prescription.patient),
        PRESCRIPTION_ACTIVATED,
        {
            'patient_name': prescription.patient.full_name,
            'medication_name': prescription.medication_name,
            'dose': current_dose_label(prescription),
            'is_replacement': prescription.is_replacement,
        },
    )

    # Nothing is enqueued until the notification has gone out
    pid = str(prescription.id)
    transaction.on_commit(lambda: send_clinician_letter.delay(pid))
    if prescription.is_replacement:
        transaction.on_commit(lambda: update_subscription_dose.delay(pid, 0))
        set_activation_state(prescription.id, 'activated')
    else:
        transaction.on_commit(lambda: create_initial_order.delay(pid))


def set_activation_state(prescription_id, state: str, error_message: Optional[str] = None) -> None:
    fields = {'activation_state': state, 'updated_at': get_clock().now()}
    if error_message is not None:
        fields['error_message'] = error_message
    Prescription.objects.filter(id=prescription_id).update(**fields)


# ── orders ─────────────────────────────────────────────────────────────────

def _dispatch_order_follow_ups(prescription, order_id: str) -> None:
    from .tasks import attach_order_label, attach_signed_document

    pid = str(prescription.id)
    transaction.on_commit(lambda: attach_order_label.delay(pid, order_id))
    if prescription.signature_request_id and prescription.signature_document_id:
        transaction.on_commit(lambda: attach_signed_document.delay(pid, order_id))
    else:
        logger.warning("[Order] prescription %s has no signed document to attach to %s",
                       prescription.id, order_id)


def schedule_dose_progression(prescription, subscription) -> Optional[int]:
    """Enqueue the next step's billing change when it bills differently. Returns its index."""
    from .tasks import update_subscription_dose

    resolution = resolve_doses(prescription)
    if resolution.next is None:
        logger.info("[Dose] prescription %s has no further dose step", prescription.id)
        return None
    if not needs_billing_update(resolution.next, subscription.external_price_id):
        logger.info("[Dose] prescription %s next step bills the same price, no update", prescription.id)
        return None

    pid, index = str(prescription.id), resolution.next_index
    transaction.on_commit(lambda: update_subscription_dose.delay(pid, index))
    return index


def create_initial_order(prescription_id, commerce=None) -> str:
    """
    First order for a newly signed prescription, using dose step 0.

    Guarded by Subscription.original_order_id: a recorded order is returned as-is.
    """
    prescription = _load_prescription(prescription_id)
    subscription = _require_subscription(prescription)
    if subscription.original_order_id:
        logger.info("[Order] subscription %s already has order %s, skipping",
                    subscription.external_subscription_id, subscription.original_order_id)
        return subscription.original_order_id

    first_step = step_at(parse_schedule(prescription.dose_schedule), 0)
    if first_step is None or not first_step.product_variant_id:
        raise DataIntegrityError(
            message=f"Prescription {prescription.id} has no orderable first dose",
            code='DOSE_STEP_MISSING',
            detail={'prescription_id': str(prescription.id), 'dose_index': 0},
        )

    commerce = commerce or get_commerce_gateway()
    order_id = commerce.create_order(
        LineItem(variant_id=first_step.product_variant_id),
        prescription.patient.email,
        {
            'note': f"Initial order for prescription {prescription.id}",
            'prescription': {'prescription_id': str(prescription.id), 'dose': first_step.dose},
            'subscription': {'external_subscription_id': subscription.external_subscription_id},
        },
    )
    if not order_id:
        raise GatewayError(
            message=f"Order creation failed for prescription {prescription.id}",
            code='ORDER_CREATE_FAILED',
            detail={'prescription_id': str(prescription.id)},
        )

    with transaction.atomic():
        subscription = Subscription.objects.select_for_update().get(pk=subscription.pk)
        if subscription.original_order_id:
            logger.warning("[Order] subscription %s got order %s concurrently; %s left unrecorded",
                           subscription.external_subscription_id, subscription.original_order_id, order_id)
            return subscription.original_order_id
        subscription.original_order_id = order_id
        subscription.latest_order_id = order_id
        subscription.save(update_fields=['original_order_id', 'latest_order_id', 'updated_at'])
        set_activation_state(prescription.id, 'activated')

        _dispatch_order_follow_ups(prescription, order_id)
        schedule_dose_progression(prescription, subscription)

    logger.info("[Order] initial order %s created for prescription %s", order_id, prescription.id)
    return order_id


def attach_order_label(prescription_id, order_id: str, commerce=None) -> None:
    prescription = _load_prescription(prescription_id)
    commerce = commerce or get_commerce_gateway()
    if not commerce.attach_metadata(order_id, build_label_payload(prescription)):
        raise GatewayError(
            message=f"Could not attach label to order {order_id}",
            code='LABEL_ATTACH_FAILED',
            detail={'prescription_id': str(prescription.id), 'order_id': order_id},
        )
    logger.info("[Order] label attached to %s", order_id)


def attach_signed_document(prescription_id, order_id: str, signature=None, commerce=None) -> None:
    prescription = _load_prescription(prescription_id)
    if not prescription.signature_request_id or not prescription.signature_document_id:
        raise DataIntegrityError(
            message=f"Prescription {prescription.id} has no signed document",
            code='SIGNED_DOCUMENT_MISSING',
            detail={'prescription_id': str(prescription.id)},
        )

    signature = signature or get_signature_gateway()
    content = signature.fetch_signed_document(prescription.signature_request_id, prescription.signature_document_id)
    if content is None:
        raise GatewayError(
            message=f"Could not download signed document for prescription {prescription.id}",
            code='SIGNED_DOCUMENT_FETCH_FAILED',
            detail={'signature_request_id': prescription.signature_request_id},
        )

    commerce = commerce or get_commerce_gateway()
    if not commerce.attach_document(order_id, content, SIGNED_DOCUMENT_LABEL):
        raise GatewayError(
            message=f"Could not attach signed document to order {order_id}",
            code='DOCUMENT_ATTACH_FAILED',
            detail={'prescription_id': str(prescription.id), 'order_id': order_id},
        )
    logger.info("[Order] signed document attached to %s", order_id)


# ── dose progression ───────────────────────────────────────────────────────

def update_subscription_dose(prescription_id, dose_index: int, billing=None) -> bool:
    """
    Move the subscription onto the price of dose step `dose_index`.

    The local price id is written only after the biller reports the new price.
    Returns False when the subscription is cancelled and nothing was sent.
    """
    prescription = _load_prescription(prescription_id)
    subscription = _require_subscription(prescription)

    step = step_at(parse_schedule(prescription.dose_schedule), dose_index)
    if step is None or not step.billing_price_id:
        raise DataIntegrityError(
            message=f"Prescription {prescription.id} has no billable dose step {dose_index}",
            code='DOSE_STEP_MISSING',
            detail={'prescription_id': str(prescription.id), 'dose_index': dose_index},
        )

    if subscription.status == 'cancelled':
        logger.info("[Dose] subscription %s is cancelled, skipping dose update",
                    subscription.external_subscription_id)
        return False
    if subscription.external_price_id == step.billing_price_id:
        logger.info("[Dose] subscription %s already on %s", subscription.external_subscription_id, step.billing_price_id)
        return True

    billing = billing or get_billing_gateway(subscription.billing_provider or None)
    external_id = subscription.external_subscription_id
    if not billing.update_plan(external_id, step.billing_price_id):
        raise GatewayError(
            message=f"Plan update failed for subscription {external_id}",
            code='PLAN_UPDATE_FAILED',
            detail={'subscription_id': external_id, 'price_id': step.billing_price_id},
        )

    remote = billing.get_subscription(external_id)
    if remote is None or step.billing_price_id not in remote.price_ids:
        raise GatewayError(
            message=f"Plan update for subscription {external_id} not confirmed",
            code='PLAN_UPDATE_UNCONFIRMED',
            detail={
                'subscription_id': external_id,
                'expected_price_id': step.billing_price_id,
                'reported_price_ids': remote.price_ids if remote else None,
            },
        )

    with transaction.atomic():
        locked = Subscription.objects.select_for_update().get(pk=subscription.pk)
        locked.external_price_id = step.billing_price_id
        locked.save(update_fields=['external_price_id', 'updated_at'])

    logger.info("[Dose] subscription %s moved to dose %s (%s)", external_id, step.dose, step.billing_price_id)
    return True


# ── clinician letter ───────────────────────────────────────────────────────

def send_clinician_letter(prescription_id, notifier=None) -> None:
    prescription = _load_prescription(prescription_id)
    letter = render_clinician_letter(prescription)
    notifier = notifier or get_notification_dispatcher()
    notifier.notify(
        patient_recipient(prescription.patient),
        CLINICIAN_LETTER,
        {
            'patient_name': prescription.patient.full_name,
            'medication_name': prescription.medication_name,
            'letter': letter,
            'attachment': {
                'filename': f"clinician-letter-{prescription.id}.txt",
                'content': letter,
                'mimetype': 'text/plain',
            },
        },
    )
    logger.info("[Letter] clinician letter sent for prescription %s", prescription.id)


# ── recurring renewal ──────────────────────────────────────────────────────

def handle_recurring_payment(external_subscription_id: str, invoice_id: str) -> Optional[ProcessedRecurringOrder]:
    """
    Apply one recurring payment to the linked prescription.

    Returns the ledger row, or None when the payment was a no-op (unknown
    subscription, nothing linked, or this invoice was already processed).
    """
    from .tasks import create_renewal_order

    subscription = Subscription.objects.filter(external_subscription_id=external_subscription_id).first()
    if subscription is None or subscription.prescription_id is None:
        logger.warning("[Renewal] payment %s for unknown or unlinked subscription %s ignored",
                       invoice_id, external_subscription_id)
        return None

    with transaction.atomic():
        prescription = Prescription.objects.select_for_update().get(pk=subscription.prescription_id)
        processed = ProcessedRecurringOrder.objects.filter(prescription=prescription)
        if processed.filter(external_invoice_id=invoice_id).exists():
            logger.info("[Renewal] invoice %s already processed for prescription %s", invoice_id, prescription.id)
            return None

        first_cycle_of_replacement = prescription.is_replacement and not processed.exists()
        if first_cycle_of_replacement:
            logger.info("[Renewal] first cycle of replacement %s, refills unchanged", prescription.id)
        elif prescription.refills > 0:
            prescription.refills -= 1
            prescription.save(update_fields=['refills', 'updated_at'])

        record = ProcessedRecurringOrder.objects.create(
            prescription=prescription,
            external_invoice_id=invoice_id,
            dose_index=resolve_doses(prescription).current_index,
            refills_decremented=not first_cycle_of_replacement,
        )

        pid = str(prescription.id)
        transaction.on_commit(lambda: create_renewal_order.delay(pid, invoice_id))
        schedule_dose_progression(prescription, subscription)

    logger.info("[Renewal] invoice %s applied to prescription %s (refills now %d)",
                invoice_id, prescription.id, prescription.refills)
    return record


def create_renewal_order(prescription_id, invoice_id: str, commerce=None) -> str:
    """Order for a processed recurring payment, at the dose recorded with its invoice."""
    prescription = _load_prescription(prescription_id)
    record = ProcessedRecurringOrder.objects.filter(prescription=prescription, external_invoice_id=invoice_id).first()
    if record is None:
        raise DataIntegrityError(
            message=f"Invoice {invoice_id} was never recorded for prescription {prescription.id}",
            code='RENEWAL_NOT_RECORDED',
            detail={'prescription_id': str(prescription.id), 'invoice_id': invoice_id},
        )
    if record.order_id:
        logger.info("[Renewal] invoice %s already has order %s", invoice_id, record.order_id)
        return record.order_id

    subscription = _require_subscription(prescription)
    current = step_at(parse_schedule(prescription.dose_schedule), record.dose_index)
    if current is None or not current.product_variant_id:
        raise DataIntegrityError(
            message=f"Prescription {prescription.id} has no orderable dose for invoice {invoice_id}",
            code='DOSE_STEP_MISSING',
            detail={'prescription_id': str(prescription.id), 'invoice_id': invoice_id, 'dose_index': record.dose_index},
        )

    commerce = commerce or get_commerce_gateway()
    order_id = commerce.create_order(
        LineItem(variant_id=current.product_variant_id),
        prescription.patient.email,
        {
            'note': f"Renewal order for prescription {prescription.id}",
            'prescription': {'prescription_id': str(prescription.id), 'dose': current.dose},
            'renewal': {'invoice_id': invoice_id},
        },
    )
    if not order_id:
        raise GatewayError(
            message=f"Renewal order creation failed for prescription {prescription.id}",
            code='ORDER_CREATE_FAILED',
            detail={'prescription_id': str(prescription.id), 'invoice_id': invoice_id},
        )

    with transaction.atomic():
        record = ProcessedRecurringOrder.objects.select_for_update().get(pk=record.pk)
        if record.order_id:
            return record.order_id
        record.order_id = order_id
        record.save(update_fields=['order_id'])
        Subscription.objects.filter(pk=subscription.pk).update(latest_order_id=order_id)
        _dispatch_order_follow_ups(prescription, order_id)

    logger.info("[Renewal] order %s created for invoice %s", order_id, invoice_id)
    return order_id


# ── replacement ────────────────────────────────────────────────────────────

def create_replacement_prescription(original_id, *, prescriber=None, dose_schedule=None, refills=None,
                                    medication_name=None, directions=None,
                                    start_date=None, end_date=None) -> Prescription:
    """
    Supersede an active prescription with a new one awaiting signature.

    The new prescription takes over the subscription link; its signature
    request is created after commit.
    """
    from .tasks import request_signature

    if dose_schedule is not None and not parse_schedule(dose_schedule):
        raise ValidationError(
            message="A replacement needs at least one dose step.",
            code='DOSE_SCHEDULE_INVALID',
        )

    with transaction.atomic():
        try:
            original = Prescription.objects.select_for_update().get(id=original_id)
        except Prescription.DoesNotExist:
            raise BlockError(
                message='Prescription not found',
                code='PRESCRIPTION_NOT_FOUND',
                detail={'prescription_id': str(original_id)},
                http_status=404,
            )

        if original.status != 'active':
            raise BlockError(
                message=f"Only an active prescription can be replaced (status: {original.status})",
                code='PRESCRIPTION_NOT_REPLACEABLE',
                detail={'prescription_id': str(original.id), 'status': original.status},
            )
        if original.replaced_by_prescription_id:
            successor = Prescription.objects.get(pk=original.replaced_by_prescription_id)
            if not successor.is_terminal:
                raise BlockError(
                    message=f"Prescription {original.id} already has a pending replacement",
                    code='REPLACEMENT_EXISTS',
                    detail={'prescription_id': str(original.id), 'replacement_id': str(successor.id)},
                )

        replacement = Prescription.objects.create(
            patient_id=original.patient_id,
            prescriber=prescriber or original.prescriber,
            clinical_plan_id=original.clinical_plan_id,
            medication_name=medication_name or original.medication_name,
            directions=original.directions if directions is None else directions,
            dose_schedule=original.dose_schedule if dose_schedule is None else dose_schedule,
            refills=original.refills if refills is None else refills,
            start_date=start_date or original.start_date,
            end_date=end_date or original.end_date,
            status='pending_signature',
            replaces_prescription=original,
        )

        original.replaced_by_prescription = replacement
        original.status = 'replaced'
        original.save(update_fields=['replaced_by_prescription', 'status', 'updated_at'])

        subscription = Subscription.objects.select_for_update().filter(prescription=original).first()
        if subscription is not None:
            subscription.prescription = replacement
            subscription.save(update_fields=['prescription', 'updated_at'])

        rid = str(replacement.id)
        transaction.on_commit(lambda: request_signature.delay(rid))

    logger.info("[Replace] prescription %s replaced by %s", original.id, replacement.id)
    return replacement


def request_signature(prescription_id, signature=None) -> str:
    """Create the signature request for a pending prescription; once only."""
    prescription = _load_prescription(prescription_id)
    if prescription.signature_request_id:
        return prescription.signature_request_id
    if prescription.status != 'pending_signature':
        raise DataIntegrityError(
            message=f"Prescription {prescription.id} is {prescription.status}, not awaiting signature",
            code='PRESCRIPTION_NOT_SIGNABLE',
            detail={'prescription_id': str(prescription.id), 'status': prescription.status},
        )

    prescriber = prescription.prescriber
    first_name, _, last_name = prescriber.name.partition(' ')
    signature = signature or get_signature_gateway()
    request_id = signature.create_request(
        render_prescription_document(prescription),
        Signer(first_name=first_name, last_name=last_name or first_name, email=prescriber.email),
        name=f"prescription-{prescription.id}",
    )
    if not request_id:
        raise GatewayError(
            message=f"Signature request failed for prescription {prescription.id}",
            code='SIGNATURE_REQUEST_FAILED',
            detail={'prescription_id': str(prescription.id)},
        )

    Prescription.objects.filter(pk=prescription.pk, signature_request_id__isnull=True).update(
        signature_request_id=request_id,
    )
    logger.info("[Signature] request %s created for prescription %s", request_id, prescription.id)
    return request_id


def resend_stale_signature_requests(older_than_days: int, clock=None) -> dict:
    """
    Re-issue signature requests for prescriptions still unsigned after `older_than_days`.

    Each one has its request id cleared under a row lock and a fresh request
    enqueued after commit. A failure on one prescription is logged and counted;
    the rest are still processed.

    Returns:
        {'resent': int, 'errors': int}
    """
    from .tasks import request_signature as request_signature_task

    cutoff = (clock or get_clock()).now() - timedelta(days=older_than_days)
    stale_ids = list(
        Prescription.objects.filter(status='pending_signature', signed_at__isnull=True, created_at__lte=cutoff)
        .order_by('created_at')
        .values_list('id', flat=True)
    )
    logger.info("[Signature] %d unsigned prescription(s) created before %s", len(stale_ids), cutoff.isoformat())

    resent = errors = 0
    for prescription_id in stale_ids:
        try:
            with transaction.atomic():
                prescription = Prescription.objects.select_for_update().get(pk=prescription_id)
                if prescription.status != 'pending_signature' or prescription.signed_at is not None:
                    continue
                previous = prescription.signature_request_id
                prescription.signature_request_id = None
                prescription.save(update_fields=['signature_request_id', 'updated_at'])
                pid = str(prescription.id)
                transaction.on_commit(lambda pid=pid: request_signature_task.delay(pid))
        except Exception:
            errors += 1
            logger.exception("[Signature] resend failed for prescription %s", prescription_id)
            continue
        resent += 1
        logger.info("[Signature] prescription %s: request %s cleared, new request queued", prescription_id, previous)

    return {'resent': resent, 'errors': errors}


# ── externally-sourced subscription events ─────────────────────────────────

def _patient_for_event(event: SubscriptionEvent, submission) -> Patient:
    if submission is not None:
        return submission.patient
    patient = None
    if event.external_customer_id:
        patient = Patient.objects.filter(external_customer_id=event.external_customer_id).first()
    if patient is None and event.customer_email:
        patient = Patient.objects.filter(email__iexact=event.customer_email).first()
    if patient is None:
        raise DataIntegrityError(
            message=f"No patient for subscription {event.external_subscription_id}",
            code='PATIENT_NOT_FOUND',
            detail={
                'subscription_id': event.external_subscription_id,
                'customer_id': event.external_customer_id,
            },
        )
    return patient


def _questionnaire_submission(submission_id) -> Optional[QuestionnaireSubmission]:
    try:
        submission_uuid = uuid.UUID(str(submission_id))
    except ValueError:
        return None
    return QuestionnaireSubmission.objects.filter(id=submission_uuid).first()


def apply_subscription_created(event: SubscriptionEvent) -> Subscription:
    """Upsert the local mirror of an external subscription."""
    submission = None
    if event.questionnaire_submission_id:
        submission = _questionnaire_submission(event.questionnaire_submission_id)
        if submission is None:
            logger.warning("[Events] subscription %s references unknown questionnaire %s",
                           event.external_subscription_id, event.questionnaire_submission_id)

    with transaction.atomic():
        subscription = (
            Subscription.objects.select_for_update()
            .filter(external_subscription_id=event.external_subscription_id)
            .first()
        )
        if subscription is None:
            subscription = Subscription(external_subscription_id=event.external_subscription_id)
            subscription.patient = _patient_for_event(event, submission)
            created = True
        else:
            created = False

        subscription.billing_provider = event.billing_provider
        subscription.status = event.status
        subscription.external_customer_id = event.external_customer_id or subscription.external_customer_id
        subscription.external_price_id = event.price_id or subscription.external_price_id
        subscription.next_charge_scheduled_at = event.next_charge_at or subscription.next_charge_scheduled_at
        if submission is not None and subscription.questionnaire_submission_id is None:
            subscription.questionnaire_submission = submission
        subscription.save()

    logger.info("[Events] subscription %s %s", event.external_subscription_id, "created" if created else "updated")
    return subscription


def apply_subscription_changed(event: SubscriptionEvent) -> Optional[Subscription]:
    if event.status == 'cancelled':
        return apply_subscription_cancelled(event)

    with transaction.atomic():
        subscription = (
            Subscription.objects.select_for_update()
            .filter(external_subscription_id=event.external_subscription_id)
            .first()
        )
        if subscription is None:
            logger.warning("[Events] change for unknown subscription %s ignored", event.external_subscription_id)
            return None
        if subscription.status == 'cancelled':
            logger.info("[Events] subscription %s is cancelled, change ignored", event.external_subscription_id)
            return subscription

        subscription.status = event.status
        if event.next_charge_at is not None:
            subscription.next_charge_scheduled_at = event.next_charge_at
        if event.price_id:
            subscription.external_price_id = event.price_id
        subscription.save(update_fields=['status', 'next_charge_scheduled_at', 'external_price_id', 'updated_at'])

    logger.info("[Events] subscription %s updated (status=%s)", event.external_subscription_id, event.status)
    return subscription


def _cancelled_prescription_status(prescription) -> str:
    """Exhausted refills with nowhere left to go is a completed course."""
    if prescription.refills <= 0 and resolve_doses(prescription).next is None:
        return 'completed'
    return 'cancelled'


def apply_subscription_cancelled(event: SubscriptionEvent) -> Optional[Subscription]:
    """The biller cancelled the subscription; mirror it and close the prescription."""
    with transaction.atomic():
        subscription = (
            Subscription.objects.select_for_update()
            .filter(external_subscription_id=event.external_subscription_id)
            .first()
        )
        if subscription is None:
            logger.warning("[Events] cancellation for unknown subscription %s ignored",
                           event.external_subscription_id)
            return None
        if subscription.status == 'cancelled':
            logger.info("[Events] subscription %s already cancelled", event.external_subscription_id)
            return subscription

        subscription.status = 'cancelled'
        subscription.save(update_fields=['status', 'updated_at'])

        if subscription.prescription_id:
            prescription = Prescription.objects.select_for_update().get(pk=subscription.prescription_id)
            if not prescription.is_terminal:
                prescription.status = _cancelled_prescription_status(prescription)
                prescription.save(update_fields=['status', 'updated_at'])
                logger.info("[Events] prescription %s marked %s", prescription.id, prescription.status)

    logger.info("[Events] subscription %s cancelled by biller", event.external_subscription_id)
    return subscription


def notify_cancellation(subscription, reason: str, notifier=None) -> None:
    notifier = notifier or get_notification_dispatcher()
    prescription = subscription.prescription if subscription.prescription_id else None
    notifier.notify(
        patient_recipient(subscription.patient),
        SUBSCRIPTION_CANCELLED,
        {
            'patient_name': subscription.patient.full_name,
            'medication_name': prescription.medication_name if prescription else '',
            'reason': reason,
        },
    )


# ── inbound event routing ──────────────────────────────────────────────────

def handle_event(event) -> dict:
    """Route one normalised webhook event; returns a short outcome for the response body."""
    if isinstance(event, SignatureEvent):
        prescription = handle_document_signed(event.signature_request_id, event.document_id, event.signed_at)
        return {'handled': 'document_signed', 'prescription_id': str(prescription.id)}

    if isinstance(event, PaymentEvent):
        record = handle_recurring_payment(event.external_subscription_id, event.invoice_id)
        return {'handled': 'recurring_payment', 'processed': record is not None}

    if isinstance(event, SubscriptionEvent):
        handler = {
            SUBSCRIPTION_CREATED: apply_subscription_created,
            SUBSCRIPTION_CHANGED: apply_subscription_changed,
            SUBSCRIPTION_CANCELLED_EVENT: apply_subscription_cancelled,
        }[event.kind]
        subscription = handler(event)
        return {'handled': event.kind, 'processed': subscription is not None}

    logger.info("[Events] %s event %r acknowledged, not processed", event.source, getattr(event, 'event_type', ''))
    return {'handled': None, 'processed': False}
