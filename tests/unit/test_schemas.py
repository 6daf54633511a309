from __future__ import annotations

from schemas import (
    Appointment,
    EyePupil,
    EyeRefraction,
    Examination,
    PupilTest,
    Refraction,
    SOAPNote,
    check_invariants,
    dump,
    validate_record,
)


def _appointment_payload(**overrides) -> dict:
    payload = {
        "patientId": "PT-100",
        "date": "2025-06-02",
        "startTime": "09:00:00",
        "endTime": "09:30:00",
        "type": "new-patient",
    }
    payload.update(overrides)
    return payload


def test_valid_record_is_returned_unchanged(appointment) -> None:
    assert validate_record(Appointment, appointment) is appointment


def test_end_before_start_names_both_time_fields() -> None:
    result = validate_record(Appointment, _appointment_payload(startTime="09:00:00", endTime="08:30:00"))
    assert isinstance(result, list)
    assert len(result) == 1
    assert result[0].fields == ("startTime", "endTime")


def test_equal_start_and_end_rejected() -> None:
    result = validate_record(Appointment, _appointment_payload(endTime="09:00:00"))
    assert isinstance(result, list)


def test_unknown_status_reported_as_violation() -> None:
    result = validate_record(Appointment, _appointment_payload(status="no-show"))
    assert isinstance(result, list)
    assert result[0].fields == ("status",)


def test_snake_case_payload_accepted() -> None:
    result = validate_record(Appointment, {
        "patient_id": "PT-100",
        "date": "2025-06-02",
        "start_time": "10:00",
        "end_time": "10:15",
    })
    assert isinstance(result, Appointment)
    assert result.status.value == "scheduled"


def test_refraction_axis_out_of_range(examination) -> None:
    exam = examination.model_copy(update={
        "refraction": Refraction(right_eye=EyeRefraction(sphere=-1.25, cylinder=-0.5, axis=181)),
    })
    violations = check_invariants(exam)
    assert [v.fields for v in violations] == [("refraction.rightEye.axis",)]


def test_refraction_axis_bounds_inclusive(examination) -> None:
    exam = examination.model_copy(update={
        "refraction": Refraction(right_eye=EyeRefraction(axis=0), left_eye=EyeRefraction(axis=180)),
    })
    assert check_invariants(exam) == []


def test_negative_pupil_size_rejected(examination) -> None:
    exam = examination.model_copy(update={"pupils": PupilTest(left_eye=EyePupil(size=-2))})
    assert check_invariants(exam)[0].fields == ("pupils.leftEye.size",)


def test_pupil_reaction_must_be_known() -> None:
    result = validate_record(Examination, {
        "patientId": "PT-100",
        "doctorId": "doc-1",
        "date": "2025-06-02",
        "pupils": {"rightEye": {"reaction": "dilated"}},
    })
    assert isinstance(result, list)
    assert any("reaction" in f for v in result for f in v.fields)


def test_unknown_mips_category() -> None:
    note = SOAPNote(
        examination_id="ex-1",
        patient_id="PT-100",
        doctor_id="doc-1",
        mips_categories=["Quality Measures", "Vibes"],
    )
    violations = check_invariants(note)
    assert violations[0].fields == ("mipsCategories",)
    assert "Vibes" in violations[0].message


def test_dump_uses_wire_names(examination) -> None:
    exam = examination.model_copy(update={"pupils": PupilTest(right_eye=EyePupil(rapd=True))})
    data = dump(exam)
    assert data["vision"]["rightEye"]["uncorrected"] == "20/40"
    assert data["intraocularPressure"]["rightEye"] == 18.0
    assert data["pupils"]["rightEye"]["RAPD"] is True
    assert data["status"] == "in-progress"
