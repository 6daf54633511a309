"""
Encounter workflow: appointment and examination status changes.

Every function takes records and returns new records; nothing here performs
I/O. The caller persists what comes back. Appointment and examination are
kept in step by explicit side effects: the primary change always stands and
the change to the linked record is best effort (see EncounterUpdate).
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from errors import EncounterError, IllegalTransitionError, InvariantViolationError
from fields import FieldCatalog, flatten, unflatten
from interpreter import Interpreter
from reconcile import reconcile, stringify
from schemas import (
    Appointment,
    AppointmentStatus,
    Examination,
    ExaminationStatus,
    ICD10Code,
    InvariantViolation,
    Record,
    SOAPNote,
    check_invariants,
    utcnow,
)

logger = logging.getLogger(__name__)

APPOINTMENT_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset({AppointmentStatus.CHECKED_IN, AppointmentStatus.CANCELLED}),
    AppointmentStatus.CHECKED_IN: frozenset({AppointmentStatus.IN_PROGRESS, AppointmentStatus.CANCELLED}),
    AppointmentStatus.IN_PROGRESS: frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}

EXAMINATION_TRANSITIONS: Dict[ExaminationStatus, FrozenSet[ExaminationStatus]] = {
    ExaminationStatus.IN_PROGRESS: frozenset({ExaminationStatus.COMPLETED}),
    ExaminationStatus.COMPLETED: frozenset(),
}

TERMINAL_APPOINTMENT_STATUSES = frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED})


class EncounterUpdate(BaseModel):
    """Result of a change that touches both sides of an encounter.

    `side_effect_error` is set when the primary record changed but the linked
    one could not follow. The linked record is then returned as it was and
    the update can be retried later without harm.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    examination: Examination
    appointment: Optional[Appointment] = None
    side_effect_error: Optional[EncounterError] = None


class FreeTextUpdate(BaseModel):
    record: Record
    changed_labels: List[str] = Field(default_factory=list)

    @property
    def found_nothing(self) -> bool:
        return not self.changed_labels


def _require_valid(record: Record) -> None:
    violations = check_invariants(record)
    if violations:
        raise InvariantViolationError(violations)


def allowed_transitions(status: AppointmentStatus) -> FrozenSet[AppointmentStatus]:
    return APPOINTMENT_TRANSITIONS[AppointmentStatus(status)]


def transition_appointment(
    appointment: Appointment, target: AppointmentStatus, now: Optional[datetime] = None
) -> Appointment:
    """Move an appointment to `target`.

    Re-applying the current status returns the appointment unchanged.
    """
    _require_valid(appointment)
    target = AppointmentStatus(target)
    current = appointment.status
    if current == target:
        return appointment
    if target not in APPOINTMENT_TRANSITIONS[current]:
        logger.warning("Rejected appointment %s transition %s -> %s", appointment.id, current.value, target.value)
        raise IllegalTransitionError("appointment", current.value, target.value)
    logger.info("Appointment %s: %s -> %s", appointment.id, current.value, target.value)
    return appointment.model_copy(update={"status": target, "updated_at": now or utcnow()})


def transition_examination(
    examination: Examination, target: ExaminationStatus, now: Optional[datetime] = None
) -> Examination:
    _require_valid(examination)
    target = ExaminationStatus(target)
    current = examination.status
    if current == target:
        return examination
    if target not in EXAMINATION_TRANSITIONS[current]:
        logger.warning("Rejected examination %s transition %s -> %s", examination.id, current.value, target.value)
        raise IllegalTransitionError("examination", current.value, target.value)
    logger.info("Examination %s: %s -> %s", examination.id, current.value, target.value)
    return examination.model_copy(update={"status": target, "updated_at": now or utcnow()})


def check_in(appointment: Appointment, now: Optional[datetime] = None) -> Appointment:
    return transition_appointment(appointment, AppointmentStatus.CHECKED_IN, now)


def cancel_appointment(appointment: Appointment, now: Optional[datetime] = None) -> Appointment:
    """Cancel an appointment. Any examination already recorded is left alone."""
    return transition_appointment(appointment, AppointmentStatus.CANCELLED, now)


def begin_examination(
    appointment: Appointment, doctor_id: Optional[str] = None, now: Optional[datetime] = None
) -> Tuple[Appointment, Examination]:
    """Start documenting a checked-in visit.

    The appointment moves to in-progress first; the returned examination is an
    unsaved draft linked to it, with the appointment notes as chief complaint.
    """
    doctor = doctor_id or appointment.doctor_id
    if not doctor:
        raise InvariantViolationError([
            InvariantViolation(("doctorId",), "An examination needs a doctor; the appointment has none assigned")
        ])

    updated = transition_appointment(appointment, AppointmentStatus.IN_PROGRESS, now)
    draft = Examination(
        patient_id=appointment.patient_id,
        doctor_id=doctor,
        appointment_id=appointment.id,
        date=appointment.date,
        chief_complaint=appointment.notes or "",
        status=ExaminationStatus.IN_PROGRESS,
    )
    return updated, draft


def _follow_completed_examination(appointment: Appointment, now: Optional[datetime]) -> Appointment:
    if appointment.status == AppointmentStatus.COMPLETED:
        return appointment
    if appointment.status == AppointmentStatus.CANCELLED:
        raise IllegalTransitionError(
            "appointment",
            appointment.status.value,
            AppointmentStatus.COMPLETED.value,
            reason=f"Appointment {appointment.id} was cancelled and cannot be completed",
        )
    logger.info("Appointment %s: %s -> completed (examination completed)", appointment.id, appointment.status.value)
    return appointment.model_copy(update={"status": AppointmentStatus.COMPLETED, "updated_at": now or utcnow()})


def complete_examination(
    examination: Examination,
    linked_appointment: Optional[Appointment] = None,
    now: Optional[datetime] = None,
) -> EncounterUpdate:
    """Mark an examination completed and bring its appointment along.

    The linked appointment is completed from any non-terminal status, so a
    visit documented without check-in (still scheduled) is closed directly
    rather than walked through checked-in and in-progress. If it was
    cancelled, the examination is still completed and the refusal is
    reported in `side_effect_error`.
    """
    if (
        linked_appointment is not None
        and examination.appointment_id
        and linked_appointment.id
        and examination.appointment_id != linked_appointment.id
    ):
        raise InvariantViolationError([
            InvariantViolation(
                ("appointmentId",),
                f"Examination is linked to appointment {examination.appointment_id}, not {linked_appointment.id}",
            )
        ])

    now = now or utcnow()
    completed = transition_examination(examination, ExaminationStatus.COMPLETED, now)
    update = EncounterUpdate(examination=completed, appointment=linked_appointment)
    if linked_appointment is None:
        return update

    try:
        update.appointment = _follow_completed_examination(linked_appointment, now)
    except IllegalTransitionError as e:
        logger.warning("Examination %s completed but appointment not updated: %s", examination.id, e)
        update.side_effect_error = e
    return update


def sync_appointment_status(
    examination: Examination, appointment: Appointment, now: Optional[datetime] = None
) -> Appointment:
    """Repair an appointment left behind by a failed side effect.

    Returns the appointment unchanged when the two already agree or when the
    appointment is in a terminal status.
    """
    status = appointment.status
    if status in TERMINAL_APPOINTMENT_STATUSES:
        return appointment
    if examination.status == ExaminationStatus.COMPLETED:
        return _follow_completed_examination(appointment, now)
    if status == AppointmentStatus.CHECKED_IN:
        return transition_appointment(appointment, AppointmentStatus.IN_PROGRESS, now)
    return appointment


def apply_free_text_update(
    record: Record,
    template: FieldCatalog,
    raw_text: str,
    interpret: Interpreter,
    context_hint: Optional[str] = None,
    now: Optional[datetime] = None,
) -> FreeTextUpdate:
    """Fill or correct record fields from a free-text description.

    flatten -> interpret -> reconcile -> unflatten. When nothing is accepted
    the record comes back unchanged with no changed labels.
    """
    if not raw_text or not raw_text.strip():
        return FreeTextUpdate(record=record)

    original = flatten(record, template)
    candidate = interpret(raw_text, [d.model_copy() for d in original], context_hint)
    result = reconcile(original, candidate)
    if not result.has_changes:
        logger.info("No relevant information found in free text for %s %s", type(record).__name__, getattr(record, "id", None))
        return FreeTextUpdate(record=record)

    updated = unflatten(result.accepted, record)
    _require_valid(updated)
    updated = updated.model_copy(update={"updated_at": now or utcnow()})
    logger.info("Updated %s %s fields: %s", type(record).__name__, getattr(record, "id", None), ", ".join(result.changed_labels))
    return FreeTextUpdate(record=updated, changed_labels=result.changed_labels)


# SOAP note drafting

def _na(value) -> str:
    text = stringify(value)
    return text or "N/A"


def _reaction(eye) -> str:
    return eye.reaction.value if eye.reaction else "N/A"


def _objective_text(exam: Examination) -> str:
    lines = []
    v = exam.vision
    if any((v.right_eye.uncorrected, v.right_eye.corrected, v.right_eye.pinhole,
            v.left_eye.uncorrected, v.left_eye.corrected, v.left_eye.pinhole)):
        for side, eye in (("OD", v.right_eye), ("OS", v.left_eye)):
            lines.append(f"VA {side} {_na(eye.uncorrected)} SC, {_na(eye.corrected)} cc, {_na(eye.pinhole)} ph.")

    iop = exam.intraocular_pressure
    if iop.right_eye is not None or iop.left_eye is not None:
        lines.append(f"IOP: {_na(iop.right_eye)} mmHg OD, {_na(iop.left_eye)} mmHg OS.")

    r = exam.refraction
    od, os_ = r.right_eye, r.left_eye
    if any(x is not None for eye in (od, os_) for x in (eye.sphere, eye.cylinder, eye.axis, eye.add)):
        lines.append(
            f"Refraction: OD {_na(od.sphere)} {_na(od.cylinder)} x {_na(od.axis)}, "
            f"OS {_na(os_.sphere)} {_na(os_.cylinder)} x {_na(os_.axis)}, Add +{_na(od.add)} OU."
        )

    p = exam.pupils
    if any(x is not None for eye in (p.right_eye, p.left_eye) for x in (eye.size, eye.reaction, eye.rapd)):
        rapd = "RAPD present." if (p.right_eye.rapd or p.left_eye.rapd) else "No RAPD."
        lines.append(
            f"Pupils {_na(p.right_eye.size)}/{_na(p.left_eye.size)} mm, "
            f"{_reaction(p.right_eye)}/{_reaction(p.left_eye)} to light. {rapd}"
        )

    if exam.anterior_segment:
        lines.append(f"Anterior segment: {exam.anterior_segment}")
    if exam.posterior_segment:
        lines.append(f"Posterior segment: {exam.posterior_segment}")
    return "\n".join(lines)


def parse_icd10(diagnosis: List[str]) -> List[ICD10Code]:
    codes = []
    for entry in diagnosis:
        code, _, description = entry.partition(" - ")
        codes.append(ICD10Code(code=code.strip(), description=description.strip()))
    return codes


def draft_soap_note(examination: Examination, now: Optional[datetime] = None) -> SOAPNote:
    """Pre-populate a SOAP note from an examination."""
    if not examination.id:
        raise InvariantViolationError([
            InvariantViolation(("examinationId",), "Examination must be saved before a SOAP note is drafted")
        ])
    now = now or utcnow()
    return SOAPNote(
        examination_id=examination.id,
        patient_id=examination.patient_id,
        doctor_id=examination.doctor_id,
        subjective=f"Patient presents with {examination.chief_complaint}" if examination.chief_complaint else "",
        objective=_objective_text(examination),
        assessment="\n".join(examination.diagnosis),
        plan=examination.plan or "",
        icd10_codes=parse_icd10(examination.diagnosis),
        mips_compliant=False,
        mips_categories=[],
        return_to_clinic=examination.follow_up,
        created_at=now,
        updated_at=now,
    )
