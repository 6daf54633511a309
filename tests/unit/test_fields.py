from __future__ import annotations

import pytest

from errors import FieldValueError, UnknownFieldPathError
from fields import (
    EXAMINATION_FIELDS,
    FieldDescriptor,
    FieldPath,
    FieldType,
    PathKind,
    flatten,
    is_empty,
    unflatten,
)
from schemas import (
    Examination,
    EyeVision,
    IntraocularPressure,
    Vision,
)


def _by_id(catalog):
    return {d.id: d for d in catalog}


def _with_values(template, **values):
    return [d.model_copy(update={"value": values.get(d.id)}) for d in template]


@pytest.fixture
def full_examination(examination) -> Examination:
    return examination.model_copy(update={
        "chief_complaint": "Floaters OS",
        "vision": Vision(
            right_eye=EyeVision(uncorrected="20/40", corrected="20/20", pinhole="20/25"),
            left_eye=EyeVision(uncorrected="20/30", corrected="20/20"),
        ),
        "intraocular_pressure": IntraocularPressure(right_eye=18.0, left_eye=16.5),
        "anterior_segment": "Quiet, deep and clear",
        "posterior_segment": "PVD OS, no breaks",
        "diagnosis": ["H43.812 - Vitreous degeneration of left eye", "H52.13 - Myopia"],
        "plan": "RD precautions reviewed",
        "follow_up": "6 weeks",
    })


@pytest.mark.parametrize("value", [None, "", "   ", [], {}, {"rightEye": {"uncorrected": " "}}, EyeVision()])
def test_empty_values(value) -> None:
    assert is_empty(value)


@pytest.mark.parametrize("value", [0, 0.0, False, "20/20", ["H52.13"], {"rightEye": 18}])
def test_non_empty_values(value) -> None:
    assert not is_empty(value)


def test_flatten_reads_current_values(examination) -> None:
    catalog = _by_id(flatten(examination, EXAMINATION_FIELDS))
    assert len(catalog) == len(EXAMINATION_FIELDS)
    assert catalog["visionRightUncorrected"].value == "20/40"
    assert catalog["iopRight"].value == 18.0
    assert catalog["plan"].value == "Monitor"
    assert catalog["chiefComplaint"].value == ""
    assert catalog["visionLeftUncorrected"].value is None
    assert catalog["iopLeft"].value is None
    assert catalog["diagnosis"].value is None


def test_flatten_keeps_template_order_and_labels(examination) -> None:
    catalog = flatten(examination, EXAMINATION_FIELDS)
    assert [d.id for d in catalog] == [d.id for d in EXAMINATION_FIELDS]
    assert [d.label for d in catalog] == [d.label for d in EXAMINATION_FIELDS]


def test_flatten_joins_diagnosis(full_examination) -> None:
    catalog = _by_id(flatten(full_examination, EXAMINATION_FIELDS))
    assert catalog["diagnosis"].value == "H43.812 - Vitreous degeneration of left eye, H52.13 - Myopia"


def test_read_through_missing_intermediate_objects() -> None:
    path = FieldPath.parse("vision.rightEye.uncorrected", Examination)
    assert path.read({}) is None
    assert path.read({"vision": None}) is None
    assert path.read({"vision": {"leftEye": {}}}) is None


def test_unflatten_writes_non_empty_values_only(examination) -> None:
    catalog = _with_values(
        EXAMINATION_FIELDS,
        chiefComplaint="blurry vision",
        visionLeftUncorrected="20/20",
        plan="",
        followUp=None,
    )
    updated = unflatten(catalog, examination)
    assert updated.chief_complaint == "blurry vision"
    assert updated.vision.left_eye.uncorrected == "20/20"
    assert updated.vision.right_eye.uncorrected == "20/40"
    assert updated.plan == "Monitor"
    assert updated.intraocular_pressure.right_eye == 18.0
    assert examination.vision.left_eye.uncorrected is None


def test_unflatten_never_clears_existing_data(examination) -> None:
    exam = examination.model_copy(update={"chief_complaint": "Itchy eyes"})
    catalog = _with_values(EXAMINATION_FIELDS, chiefComplaint="   ", visionRightUncorrected="")
    updated = unflatten(catalog, exam)
    assert updated == exam


def test_unflatten_creates_missing_intermediate_objects(examination) -> None:
    data = examination.model_dump(by_alias=True)
    data["vision"] = None
    path = FieldPath.parse("vision.leftEye.pinhole", Examination)
    path.write(data, "20/25")
    assert data["vision"] == {"leftEye": {"pinhole": "20/25"}}
    assert Examination.model_validate(data).vision.left_eye.pinhole == "20/25"


def test_diagnosis_splits_comma_separated_text(examination) -> None:
    catalog = _with_values(EXAMINATION_FIELDS, diagnosis="H52.13 - Myopia,  , H25.11 - Cataract ")
    updated = unflatten(catalog, examination)
    assert updated.diagnosis == ["H52.13 - Myopia", "H25.11 - Cataract"]


def test_iop_writes_eye_scalar(examination) -> None:
    catalog = [FieldDescriptor(
        id="iopLeft", path="intraocularPressure.leftEye.", type=FieldType.NUMBER, label="IOP Left Eye", value="21",
    )]
    updated = unflatten(catalog, examination)
    assert updated.intraocular_pressure.left_eye == 21.0
    assert updated.intraocular_pressure.right_eye == 18.0


@pytest.mark.parametrize("path", ["intraocularPressure.rightEye", "intraocularPressure.rightEye."])
def test_iop_paths_are_eye_scalars(path) -> None:
    parsed = FieldPath.parse(path, Examination)
    assert parsed.kind == PathKind.EYE_SCALAR
    assert parsed.segments == ("intraocularPressure", "rightEye")


def test_path_kinds() -> None:
    assert FieldPath.parse("diagnosis", Examination).kind == PathKind.DIAGNOSIS_LIST
    assert FieldPath.parse("vision.leftEye.corrected", Examination).kind == PathKind.GENERIC


def test_snake_case_segments_normalised() -> None:
    parsed = FieldPath.parse("vision.right_eye.uncorrected", Examination)
    assert parsed.segments == ("vision", "rightEye", "uncorrected")
    assert FieldPath.parse("pupils.leftEye.RAPD", Examination).segments[-1] == "RAPD"


@pytest.mark.parametrize("path", [
    "vision.middleEye.uncorrected",
    "vision.rightEye",
    "chiefComplaint.text",
    "vision.rightEye.uncorrected.",
    "vision..uncorrected",
    "bloodType",
])
def test_unknown_paths_rejected(path) -> None:
    with pytest.raises(UnknownFieldPathError):
        FieldPath.parse(path, Examination)


def test_unflatten_rejects_value_of_wrong_type(examination) -> None:
    catalog = _with_values(EXAMINATION_FIELDS, iopRight="high")
    with pytest.raises(FieldValueError) as exc:
        unflatten(catalog, examination)
    assert exc.value.label == "IOP Right Eye"
    assert examination.intraocular_pressure.right_eye == 18.0


def test_round_trip_reproduces_addressed_values(full_examination) -> None:
    catalog = flatten(full_examination, EXAMINATION_FIELDS)
    assert unflatten(catalog, full_examination) == full_examination


def test_round_trip_onto_blank_record(full_examination) -> None:
    blank = Examination(
        patient_id=full_examination.patient_id,
        doctor_id=full_examination.doctor_id,
        date=full_examination.date,
        created_at=full_examination.created_at,
        updated_at=full_examination.updated_at,
    )
    rebuilt = unflatten(flatten(full_examination, EXAMINATION_FIELDS), blank)
    assert flatten(rebuilt, EXAMINATION_FIELDS) == flatten(full_examination, EXAMINATION_FIELDS)


def test_unflatten_is_idempotent(examination) -> None:
    catalog = _with_values(EXAMINATION_FIELDS, chiefComplaint="blurry vision", iopLeft=15, diagnosis="H52.13 - Myopia")
    once = unflatten(catalog, examination)
    assert unflatten(catalog, once) == once


def test_number_for_text_field_written_as_text(examination) -> None:
    catalog = _with_values(EXAMINATION_FIELDS, followUp=6, anteriorSegment=2.5, plan=3.0, iopLeft=15)
    updated = unflatten(catalog, examination)
    assert updated.follow_up == "6"
    assert updated.anterior_segment == "2.5"
    assert updated.plan == "3"
    assert updated.intraocular_pressure.left_eye == 15.0


def test_text_leaf_detection() -> None:
    assert FieldPath.parse("followUp", Examination).text_leaf
    assert FieldPath.parse("vision.leftEye.pinhole", Examination).text_leaf
    assert not FieldPath.parse("intraocularPressure.rightEye", Examination).text_leaf
    assert not FieldPath.parse("refraction.rightEye.axis", Examination).text_leaf
