import logging

from celery import shared_task
from django.conf import settings

from . import workflow
from .exceptions import DataIntegrityError, ValidationError
from .models import Prescription, StepFailure

logger = logging.getLogger(__name__)

STEP_TASK_OPTIONS = dict(
    bind=True,
    max_retries=getattr(settings, 'STEP_MAX_RETRIES', 5),
    acks_late=True,            # ack after the step finishes
    reject_on_worker_lost=True,
)

# Steps whose failure leaves the prescription's activation stuck
ACTIVATION_STEPS = ('activate_signed_prescription', 'create_initial_order')


def retry_countdown(retries: int) -> int:
    """Tiered backoff: 60s → 300s → 600s → 1800s, then stays at the last tier."""
    tiers = getattr(settings, 'STEP_RETRY_BACKOFF', [60, 300, 600, 1800])
    return tiers[min(retries, len(tiers) - 1)]


def record_step_failure(step, kind, prescription_id, attempts, exc, context=None):
    message = getattr(exc, 'message', None) or str(exc)
    prescription = Prescription.objects.filter(id=prescription_id).first() if prescription_id else None
    StepFailure.objects.create(
        step=step,
        kind=kind,
        prescription=prescription,
        attempts=attempts,
        error_message=message,
        context=dict(context or {}, code=getattr(exc, 'code', None), detail=getattr(exc, 'detail', None)),
    )
    if prescription is not None and step in ACTIVATION_STEPS:
        prefix = 'data integrity' if kind == 'data_integrity' else f'failed after {attempts} attempts'
        workflow.set_activation_state(prescription.id, 'failed', error_message=f"[{step} {prefix}] {message}")


def run_step(task, step, prescription_id, func, *args, **context):
    """
    Run one workflow step with the shared retry policy.

    - DataIntegrityError / ValidationError: recorded, never retried
    - anything else: retried with tiered backoff; recorded once retries run out
    """
    attempt = task.request.retries + 1
    logger.info("[Celery][%s] prescription_id=%s (attempt %d/%d)",
                step, prescription_id, attempt, task.max_retries + 1)
    try:
        return func(prescription_id, *args)
    except (DataIntegrityError, ValidationError) as exc:
        logger.error("[Celery][%s] prescription_id=%s data integrity failure: %s",
                     step, prescription_id, exc.message)
        record_step_failure(step, 'data_integrity', prescription_id, attempt, exc, context)
    except Exception as exc:
        logger.warning("[Celery][%s] prescription_id=%s failed (attempt %d): %s",
                       step, prescription_id, attempt, exc)
        if task.request.retries < task.max_retries:
            countdown = retry_countdown(task.request.retries)
            logger.info("[Celery][%s] retrying in %ds", step, countdown)
            raise task.retry(exc=exc, countdown=countdown)
        logger.error("[Celery][%s] prescription_id=%s gave up after %d attempts",
                     step, prescription_id, attempt)
        record_step_failure(step, 'retries_exhausted', prescription_id, attempt, exc, context)
    return None


@shared_task(**STEP_TASK_OPTIONS)
def activate_signed_prescription(self, prescription_id: str):
    return run_step(self, 'activate_signed_prescription', prescription_id, workflow.activate_signed_prescription)


@shared_task(**STEP_TASK_OPTIONS)
def create_initial_order(self, prescription_id: str):
    return run_step(self, 'create_initial_order', prescription_id, workflow.create_initial_order)


@shared_task(**STEP_TASK_OPTIONS)
def attach_order_label(self, prescription_id: str, order_id: str):
    return run_step(self, 'attach_order_label', prescription_id, workflow.attach_order_label,
                    order_id, order_id=order_id)


@shared_task(**STEP_TASK_OPTIONS)
def attach_signed_document(self, prescription_id: str, order_id: str):
    return run_step(self, 'attach_signed_document', prescription_id, workflow.attach_signed_document,
                    order_id, order_id=order_id)


@shared_task(**STEP_TASK_OPTIONS)
def update_subscription_dose(self, prescription_id: str, dose_index: int):
    return run_step(self, 'update_subscription_dose', prescription_id, workflow.update_subscription_dose,
                    dose_index, dose_index=dose_index)


@shared_task(**STEP_TASK_OPTIONS)
def send_clinician_letter(self, prescription_id: str):
    return run_step(self, 'send_clinician_letter', prescription_id, workflow.send_clinician_letter)


@shared_task(**STEP_TASK_OPTIONS)
def create_renewal_order(self, prescription_id: str, invoice_id: str):
    return run_step(self, 'create_renewal_order', prescription_id, workflow.create_renewal_order,
                    invoice_id, invoice_id=invoice_id)


@shared_task(**STEP_TASK_OPTIONS)
def request_signature(self, prescription_id: str):
    return run_step(self, 'request_signature', prescription_id, workflow.request_signature)


@shared_task
def run_renewal_sweep(window_days=None, source=None):
    """Periodic entry point (see CELERY_BEAT_SCHEDULE)."""
    from .sweep import run_renewal_sweep as sweep

    result = sweep(window_days=window_days, source=source or settings.RENEWAL_SWEEP_SOURCE)
    return result.as_dict()


@shared_task
def resend_signature_requests(older_than_days=None):
    """Periodic entry point (see CELERY_BEAT_SCHEDULE)."""
    if older_than_days is None:
        older_than_days = settings.SIGNATURE_RESEND_DAYS
    return workflow.resend_stale_signature_requests(older_than_days)
