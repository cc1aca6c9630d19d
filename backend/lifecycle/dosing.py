"""
Dose schedule calculator.

A prescription's dose_schedule is an ordered list of steps. Each step becomes
current once `refill_number` refills have been used:

    max_refill = max(step.refill_number)
    used       = max_refill - refills_remaining
    current    = step with refill_number == used
    next       = step with refill_number == used + 1

Everything here is pure and deterministic: the same (schedule, refills) always
gives the same answer, so a retried step re-evaluates to the same dose. Lookups
that find nothing return None instead of raising.
"""

from dataclasses import dataclass
from typing import Any, Optional

from .exceptions import ValidationError


@dataclass(frozen=True)
class DoseStep:
    refill_number: int
    dose: str
    billing_price_id: Optional[str] = None     # external price / plan id
    product_variant_id: Optional[str] = None   # commerce product variant

    @classmethod
    def from_dict(cls, raw: dict) -> "DoseStep":
        return cls(
            refill_number=raw["refill_number"],
            dose=str(raw.get("dose") or ""),
            billing_price_id=raw.get("billing_price_id") or None,
            product_variant_id=raw.get("product_variant_id") or None,
        )

    def to_dict(self) -> dict:
        return {
            "refill_number": self.refill_number,
            "dose": self.dose,
            "billing_price_id": self.billing_price_id,
            "product_variant_id": self.product_variant_id,
        }


@dataclass(frozen=True)
class DoseResolution:
    current_index: Optional[int]
    current: Optional[DoseStep]
    next_index: Optional[int]
    next: Optional[DoseStep]


def parse_schedule(raw: Any) -> list[DoseStep]:
    """
    Turn stored JSON into DoseSteps.

    Raises ValidationError when an entry is malformed or the refill numbers are
    not strictly ascending (index 0 must be the initial dose).
    """
    if not raw:
        return []
    if not isinstance(raw, list):
        raise ValidationError(
            message="Dose schedule must be a list of steps.",
            code="DOSE_SCHEDULE_INVALID",
        )

    errors = []
    steps = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            errors.append({"field": f"dose_schedule[{i}]", "message": "Step must be an object."})
            continue
        refill_number = entry.get("refill_number")
        if isinstance(refill_number, bool) or not isinstance(refill_number, int) or refill_number < 0:
            errors.append({
                "field": f"dose_schedule[{i}].refill_number",
                "message": "refill_number must be a non-negative integer.",
            })
            continue
        if not entry.get("dose"):
            errors.append({"field": f"dose_schedule[{i}].dose", "message": "dose is required."})
            continue
        steps.append(DoseStep.from_dict(entry))

    for prev, step in zip(steps, steps[1:]):
        if step.refill_number <= prev.refill_number:
            errors.append({
                "field": "dose_schedule",
                "message": "Steps must be ordered by strictly ascending refill_number.",
            })
            break

    if errors:
        raise ValidationError(
            message="Dose schedule is invalid.",
            code="DOSE_SCHEDULE_INVALID",
            detail={"errors": errors},
        )
    return steps


def max_refill(schedule: list[DoseStep]) -> Optional[int]:
    if not schedule:
        return None
    return max(step.refill_number for step in schedule)


def refills_used(schedule: list[DoseStep], refills_remaining: int) -> Optional[int]:
    top = max_refill(schedule)
    if top is None:
        return None
    return top - max(refills_remaining or 0, 0)


def _index_for_refill_number(schedule: list[DoseStep], refill_number: int) -> Optional[int]:
    for index, step in enumerate(schedule):
        if step.refill_number == refill_number:
            return index
    return None


def current_step_index(schedule: list[DoseStep], refills_remaining: int) -> Optional[int]:
    """Index of the dose in effect now (what a label printed today shows)."""
    used = refills_used(schedule, refills_remaining)
    if used is None:
        return None
    return _index_for_refill_number(schedule, used)


def next_step_index(schedule: list[DoseStep], refills_remaining: int) -> Optional[int]:
    """Index of the dose the following cycle moves to, or None when there is no progression."""
    if len(schedule) <= 1:
        return None
    used = refills_used(schedule, refills_remaining)
    return _index_for_refill_number(schedule, used + 1)


def step_at(schedule: list[DoseStep], index: Optional[int]) -> Optional[DoseStep]:
    if index is None or index < 0 or index >= len(schedule):
        return None
    return schedule[index]


def resolve(schedule: list[DoseStep], refills_remaining: int) -> DoseResolution:
    current_index = current_step_index(schedule, refills_remaining)
    next_index = next_step_index(schedule, refills_remaining)
    return DoseResolution(
        current_index=current_index,
        current=step_at(schedule, current_index),
        next_index=next_index,
        next=step_at(schedule, next_index),
    )


def resolve_doses(prescription) -> DoseResolution:
    return resolve(parse_schedule(prescription.dose_schedule), prescription.refills)


def needs_billing_update(step: Optional[DoseStep], current_price_id: Optional[str]) -> bool:
    """
    True when moving to `step` changes what the subscription is billed.

    Same price id means no billing change even if the dose label differs.
    """
    if step is None or not step.billing_price_id:
        return False
    return step.billing_price_id != (current_price_id or None)
