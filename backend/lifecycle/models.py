import uuid
from django.db import models


class Team(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    email = models.EmailField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'teams'


class Patient(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    email = models.EmailField()
    address = models.TextField(blank=True, default='')
    dob = models.DateField(blank=True, null=True)
    team = models.ForeignKey(Team, on_delete=models.SET_NULL, null=True, blank=True, related_name='patients')
    external_customer_id = models.CharField(max_length=100, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'patients'

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class Provider(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    registration_number = models.CharField(max_length=50, unique=True)
    email = models.EmailField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'providers'


class QuestionnaireSubmission(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    patient = models.ForeignKey(Patient, on_delete=models.CASCADE, related_name='questionnaire_submissions')
    submitted_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'questionnaire_submissions'


class ClinicalPlan(models.Model):
    STATUS_CHOICES = [
        ('active', 'Active'),
        ('completed', 'Completed'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    patient = models.ForeignKey(Patient, on_delete=models.CASCADE, related_name='clinical_plans')
    provider = models.ForeignKey(Provider, on_delete=models.PROTECT, related_name='clinical_plans')
    questionnaire_submission = models.ForeignKey(
        QuestionnaireSubmission, on_delete=models.SET_NULL, null=True, blank=True, related_name='clinical_plans',
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='active')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'clinical_plans'


class Prescription(models.Model):
    STATUS_CHOICES = [
        ('pending_signature', 'Pending signature'),
        ('active', 'Active'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
        ('replaced', 'Replaced'),
    ]
    TERMINAL_STATUSES = ('completed', 'cancelled', 'replaced')

    # Signature-completion workflow
    ACTIVATION_CHOICES = [
        ('awaiting_signature', 'Awaiting signature'),
        ('signed_processing', 'Signed, processing'),
        ('activated', 'Activated'),
        ('failed', 'Failed'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name='prescriptions')
    prescriber = models.ForeignKey(Provider, on_delete=models.PROTECT, related_name='prescriptions')
    clinical_plan = models.ForeignKey(
        ClinicalPlan, on_delete=models.PROTECT, null=True, blank=True, related_name='prescriptions',
    )
    medication_name = models.CharField(max_length=200)
    directions = models.TextField(blank=True, default='')
    # [{"refill_number": 0, "dose": "2.5mg", "billing_price_id": "...", "product_variant_id": "..."}, ...]
    dose_schedule = models.JSONField(default=list, blank=True)
    refills = models.IntegerField(default=0)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending_signature')
    start_date = models.DateField(blank=True, null=True)
    end_date = models.DateField(blank=True, null=True)
    signature_request_id = models.CharField(max_length=100, blank=True, null=True, unique=True)
    signature_document_id = models.CharField(max_length=100, blank=True, null=True)
    signed_at = models.DateTimeField(blank=True, null=True)
    activation_state = models.CharField(max_length=20, choices=ACTIVATION_CHOICES, default='awaiting_signature')
    error_message = models.TextField(blank=True, null=True)
    replaces_prescription = models.ForeignKey(
        'self', on_delete=models.PROTECT, null=True, blank=True, related_name='+',
    )
    replaced_by_prescription = models.ForeignKey(
        'self', on_delete=models.PROTECT, null=True, blank=True, related_name='+',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'prescriptions'

    @property
    def is_replacement(self):
        return self.replaces_prescription_id is not None

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES


class Subscription(models.Model):
    STATUS_CHOICES = [
        ('active', 'Active'),
        ('paused', 'Paused'),
        ('cancelled', 'Cancelled'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    external_subscription_id = models.CharField(max_length=100, unique=True)
    external_customer_id = models.CharField(max_length=100, blank=True, default='')
    external_price_id = models.CharField(max_length=100, blank=True, default='')
    billing_provider = models.CharField(max_length=20, blank=True, default='')
    prescription = models.OneToOneField(
        Prescription, on_delete=models.PROTECT, null=True, blank=True, related_name='subscription',
    )
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name='subscriptions')
    questionnaire_submission = models.OneToOneField(
        QuestionnaireSubmission, on_delete=models.SET_NULL, null=True, blank=True, related_name='subscription',
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='active')
    next_charge_scheduled_at = models.DateTimeField(blank=True, null=True)
    original_order_id = models.CharField(max_length=100, blank=True, null=True)
    latest_order_id = models.CharField(max_length=100, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'subscriptions'


class ProcessedRecurringOrder(models.Model):
    """One row per externally-identified recurring payment already applied to a prescription."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    prescription = models.ForeignKey(Prescription, on_delete=models.PROTECT, related_name='processed_orders')
    external_invoice_id = models.CharField(max_length=100)
    order_id = models.CharField(max_length=100, blank=True, null=True)
    # Dose step in effect when the invoice was applied; the renewal order ships this step
    dose_index = models.PositiveIntegerField(blank=True, null=True)
    refills_decremented = models.BooleanField(default=True)
    processed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'processed_recurring_orders'
        constraints = [
            models.UniqueConstraint(
                fields=['prescription', 'external_invoice_id'], name='uniq_processed_invoice_per_prescription',
            ),
        ]


class StepFailure(models.Model):
    """A workflow step that needs an operator: retries exhausted or a linkage is missing."""

    KIND_CHOICES = [
        ('retries_exhausted', 'Retries exhausted'),
        ('data_integrity', 'Data integrity'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    step = models.CharField(max_length=100)
    kind = models.CharField(max_length=30, choices=KIND_CHOICES)
    prescription = models.ForeignKey(
        Prescription, on_delete=models.SET_NULL, null=True, blank=True, related_name='step_failures',
    )
    attempts = models.PositiveIntegerField(default=1)
    error_message = models.TextField()
    context = models.JSONField(default=dict, blank=True)
    resolved = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'step_failures'
