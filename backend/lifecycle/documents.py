"""
Payloads that travel with an order or a notification.

- label payload     → order metafields (what the pharmacy prints)
- clinician letter  → sent to the patient to pass on to their GP
- prescription body → document sent out for signature
"""

from django.conf import settings
from django.template.loader import render_to_string
from django.utils import timezone

from .dosing import parse_schedule, resolve
from .gateways.types import Recipient


def patient_recipient(patient) -> Recipient:
    return Recipient(kind="patient", id=str(patient.id), email=patient.email, name=patient.full_name)


def team_recipient(team) -> Recipient | None:
    if team is None:
        return None
    return Recipient(kind="team", id=str(team.id), email=team.email, name=team.name)


def current_dose_label(prescription) -> str:
    """Dose in effect now; falls back to the first step when refills sit outside the schedule."""
    schedule = parse_schedule(prescription.dose_schedule)
    resolution = resolve(schedule, prescription.refills)
    if resolution.current is not None:
        return resolution.current.dose
    return schedule[0].dose if schedule else ""


def build_label_payload(prescription) -> dict:
    patient = prescription.patient
    prescriber = prescription.prescriber

    payload = {
        "prescription_label_json": {
            "prescription_id": str(prescription.id),
            "patient": {
                "name": patient.full_name,
                "address": patient.address,
            },
            "medication": {
                "name": prescription.medication_name,
                "dose": current_dose_label(prescription),
            },
            "directions": prescription.directions,
            "refill_information": "NO REFILLS",
            "prescriber": {
                "name": prescriber.name,
                "registration_number": prescriber.registration_number,
            },
        },
    }

    plan = prescription.clinical_plan
    if plan is not None and plan.questionnaire_submission_id:
        base = settings.FRONTEND_URL.rstrip("/")
        payload["questionnaire_submission_url"] = (
            f"{base}/provider/patients/{patient.id}/questionnaires/{plan.questionnaire_submission_id}"
        )
    return payload


def render_clinician_letter(prescription) -> str:
    schedule = parse_schedule(prescription.dose_schedule)
    patient = prescription.patient
    return render_to_string("lifecycle/clinician_letter.txt", {
        "issued_on": timezone.localdate(),
        "patient_name": patient.full_name,
        "patient_dob": patient.dob,
        "patient_address": patient.address,
        "medication_name": prescription.medication_name,
        "starting_dose": schedule[0].dose if schedule else "",
        "later_doses": [step.dose for step in schedule[1:]],
        "directions": prescription.directions,
        "start_date": prescription.start_date,
        "end_date": prescription.end_date,
        "prescriber_name": prescription.prescriber.name,
        "prescriber_registration": prescription.prescriber.registration_number,
    }).strip()


def render_prescription_document(prescription) -> bytes:
    # The signature provider receives the rendered body; layout is its concern
    return render_clinician_letter(prescription).encode("utf-8")
