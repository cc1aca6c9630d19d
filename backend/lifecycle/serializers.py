"""
Response serializers: ORM objects → JSON-able dicts, plus the one request
serializer for replacement creation.

Webhook bodies are parsed by the events/ adapters, not here.
"""

from rest_framework import serializers

from .dosing import resolve_doses
from .models import Provider


def serialize_dose_step(index, step):
    if step is None:
        return None
    return dict(step.to_dict(), index=index)


def serialize_dose_resolution(prescription):
    """Current and next dose for GET /api/prescriptions/<id>/dose/."""
    resolution = resolve_doses(prescription)
    return {
        'prescription_id': str(prescription.id),
        'status': prescription.status,
        'refills': prescription.refills,
        'current': serialize_dose_step(resolution.current_index, resolution.current),
        'next': serialize_dose_step(resolution.next_index, resolution.next),
    }


def serialize_prescription(prescription):
    return {
        'prescription_id': str(prescription.id),
        'status': prescription.status,
        'activation_state': prescription.activation_state,
        'medication_name': prescription.medication_name,
        'refills': prescription.refills,
        'replaces_prescription_id': (
            str(prescription.replaces_prescription_id) if prescription.replaces_prescription_id else None
        ),
        'created_at': prescription.created_at.isoformat(),
    }


def serialize_event_outcome(source, outcome):
    return dict(outcome, source=source, message='Webhook processed')


class ReplacementRequestSerializer(serializers.Serializer):
    prescriber_id = serializers.UUIDField(required=False)
    medication_name = serializers.CharField(required=False, max_length=200)
    directions = serializers.CharField(required=False, allow_blank=True)
    dose_schedule = serializers.ListField(child=serializers.DictField(), required=False, allow_empty=False)
    refills = serializers.IntegerField(required=False, min_value=0)
    start_date = serializers.DateField(required=False)
    end_date = serializers.DateField(required=False)

    def validate_prescriber_id(self, value):
        prescriber = Provider.objects.filter(id=value).first()
        if prescriber is None:
            raise serializers.ValidationError('Unknown prescriber.')
        return prescriber

    def validate(self, attrs):
        start, end = attrs.get('start_date'), attrs.get('end_date')
        if start and end and end < start:
            raise serializers.ValidationError({'end_date': 'end_date must not be before start_date.'})
        return attrs
