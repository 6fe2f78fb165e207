"""
Patient status transition policy.

A closed lookup table: any (from, to) pair not listed is invalid. The table
has no state and performs no I/O, so it is safe to call from anywhere.
"""

from __future__ import annotations

from typing import NamedTuple

from patient_lifecycle.models.types import PatientStatus

NEW = PatientStatus.NEW
ACTIVE = PatientStatus.ACTIVE
ON_HOLD = PatientStatus.ON_HOLD
DISCHARGED = PatientStatus.DISCHARGED
INACTIVE = PatientStatus.INACTIVE


class TransitionRule(NamedTuple):
    requires_reason: bool
    description: str


class PolicyDecision(NamedTuple):
    allowed: bool
    reason_required: bool


TRANSITION_RULES: dict[tuple[PatientStatus, PatientStatus], TransitionRule] = {
    (NEW, ACTIVE): TransitionRule(False, "Patient becomes active after initial assessment"),
    (NEW, INACTIVE): TransitionRule(True, "Patient marked inactive before becoming active"),
    (ACTIVE, ON_HOLD): TransitionRule(True, "Patient treatment temporarily suspended"),
    (ACTIVE, DISCHARGED): TransitionRule(True, "Patient treatment completed"),
    (ACTIVE, INACTIVE): TransitionRule(True, "Patient no longer receiving treatment"),
    (ON_HOLD, ACTIVE): TransitionRule(False, "Patient treatment resumed"),
    (ON_HOLD, DISCHARGED): TransitionRule(True, "Patient discharged while on hold"),
    (ON_HOLD, INACTIVE): TransitionRule(True, "Patient marked inactive from hold status"),
    (DISCHARGED, ACTIVE): TransitionRule(True, "Patient readmitted for treatment"),
    (DISCHARGED, INACTIVE): TransitionRule(False, "Discharged patient marked inactive"),
    (INACTIVE, ACTIVE): TransitionRule(True, "Inactive patient reactivated"),
}


def _coerce(status: PatientStatus | str) -> PatientStatus:
    # PatientStatus("bogus") raises ValueError, the policy's only failure mode.
    return status if isinstance(status, PatientStatus) else PatientStatus(status)


def validate(from_status: PatientStatus | str, to_status: PatientStatus | str) -> PolicyDecision:
    rule = TRANSITION_RULES.get((_coerce(from_status), _coerce(to_status)))
    if rule is None:
        return PolicyDecision(allowed=False, reason_required=False)
    return PolicyDecision(allowed=True, reason_required=rule.requires_reason)


def requires_reason(from_status: PatientStatus | str, to_status: PatientStatus | str) -> bool:
    return validate(from_status, to_status).reason_required


def allowed_transitions(from_status: PatientStatus | str) -> list[PatientStatus]:
    """Targets reachable from ``from_status``, in declaration order."""
    source = _coerce(from_status)
    return [to for (frm, to) in TRANSITION_RULES if frm is source]


def describe(from_status: PatientStatus | str, to_status: PatientStatus | str) -> str | None:
    rule = TRANSITION_RULES.get((_coerce(from_status), _coerce(to_status)))
    return rule.description if rule else None
