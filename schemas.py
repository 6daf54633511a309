"""
Database Schemas

Encounter domain models: Appointment, Examination and SOAP Note.
Each Pydantic model corresponds to a MongoDB collection (see database.COLLECTIONS).
Attributes are snake_case in Python and camelCase on the wire, which is also
the spelling used by field catalog paths (e.g. "vision.rightEye.uncorrected").
"""

from dataclasses import dataclass
from datetime import date as Date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AppointmentType(str, Enum):
    NEW_PATIENT = "new-patient"
    FOLLOW_UP = "follow-up"
    EMERGENCY = "emergency"
    OTHER = "other"


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CHECKED_IN = "checked-in"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ExaminationStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class PupilReaction(str, Enum):
    NORMAL = "normal"
    SLUGGISH = "sluggish"
    FIXED = "fixed"


MIPS_CATEGORIES = (
    "Quality Measures",
    "Promoting Interoperability",
    "Improvement Activities",
    "Cost",
)


class Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


# Per-eye measurements

class EyeVision(Record):
    uncorrected: Optional[str] = None
    corrected: Optional[str] = None
    pinhole: Optional[str] = None


class EyeRefraction(Record):
    sphere: Optional[float] = None
    cylinder: Optional[float] = None
    axis: Optional[float] = Field(None, description="Cylinder axis in degrees, 0-180")
    add: Optional[float] = None
    pd: Optional[float] = Field(None, description="Pupillary distance (mm)")


class EyePupil(Record):
    size: Optional[float] = Field(None, description="Pupil size (mm)")
    reaction: Optional[PupilReaction] = None
    rapd: Optional[bool] = Field(None, alias="RAPD")


class Vision(Record):
    right_eye: EyeVision = Field(default_factory=EyeVision)
    left_eye: EyeVision = Field(default_factory=EyeVision)


class IntraocularPressure(Record):
    right_eye: Optional[float] = Field(None, description="mmHg")
    left_eye: Optional[float] = Field(None, description="mmHg")


class Refraction(Record):
    right_eye: EyeRefraction = Field(default_factory=EyeRefraction)
    left_eye: EyeRefraction = Field(default_factory=EyeRefraction)


class PupilTest(Record):
    right_eye: EyePupil = Field(default_factory=EyePupil)
    left_eye: EyePupil = Field(default_factory=EyePupil)


# Core domain schemas

class Appointment(Record):
    id: Optional[str] = None
    patient_id: str
    doctor_id: Optional[str] = None
    date: Date
    start_time: time
    end_time: time
    type: AppointmentType = AppointmentType.OTHER
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Examination(Record):
    id: Optional[str] = None
    patient_id: str
    doctor_id: str
    appointment_id: Optional[str] = Field(None, description="Appointment this visit was begun from")
    date: Date
    chief_complaint: str = ""
    vision: Vision = Field(default_factory=Vision)
    intraocular_pressure: IntraocularPressure = Field(default_factory=IntraocularPressure)
    refraction: Refraction = Field(default_factory=Refraction)
    pupils: PupilTest = Field(default_factory=PupilTest)
    anterior_segment: Optional[str] = None
    posterior_segment: Optional[str] = None
    diagnosis: List[str] = Field(default_factory=list, description='Each entry optionally "CODE - description"')
    plan: Optional[str] = None
    follow_up: Optional[str] = None
    status: ExaminationStatus = ExaminationStatus.IN_PROGRESS
    pre_test_data: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ICD10Code(Record):
    code: str
    description: str = ""


class SOAPNote(Record):
    id: Optional[str] = None
    examination_id: str
    patient_id: str
    doctor_id: str
    subjective: str = ""
    objective: str = ""
    assessment: str = ""
    plan: str = ""
    icd10_codes: List[ICD10Code] = Field(default_factory=list)
    mips_compliant: bool = False
    mips_categories: List[str] = Field(default_factory=list)
    return_to_clinic: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# Invariants

@dataclass(frozen=True)
class InvariantViolation:
    fields: Tuple[str, ...]
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"fields": list(self.fields), "message": self.message}


def _eye_checks(pair: BaseModel, prefix: str, attr: str, lo: float, hi: Optional[float]) -> List[InvariantViolation]:
    out = []
    for eye, alias in (("right_eye", "rightEye"), ("left_eye", "leftEye")):
        side = getattr(pair, eye)
        value = side if attr == "" else getattr(side, attr)
        if value is None:
            continue
        path = f"{prefix}.{alias}" + (f".{attr}" if attr else "")
        if value < lo or (hi is not None and value > hi):
            bound = f"between {lo:g} and {hi:g}" if hi is not None else f"at least {lo:g}"
            out.append(InvariantViolation((path,), f"{path} must be {bound}, got {value:g}"))
    return out


def check_invariants(record: Record) -> List[InvariantViolation]:
    """Cross-field rules the type system does not express."""
    violations: List[InvariantViolation] = []
    if isinstance(record, Appointment):
        if not record.start_time < record.end_time:
            violations.append(InvariantViolation(
                ("startTime", "endTime"),
                f"startTime ({record.start_time.isoformat()}) must be before endTime ({record.end_time.isoformat()})",
            ))
    elif isinstance(record, Examination):
        violations += _eye_checks(record.refraction, "refraction", "axis", 0, 180)
        violations += _eye_checks(record.pupils, "pupils", "size", 0, None)
        violations += _eye_checks(record.intraocular_pressure, "intraocularPressure", "", 0, None)
    elif isinstance(record, SOAPNote):
        unknown = [c for c in record.mips_categories if c not in MIPS_CATEGORIES]
        if unknown:
            violations.append(InvariantViolation(
                ("mipsCategories",), f"Unknown MIPS categories: {', '.join(unknown)}"
            ))
    return violations


def validate_record(
    model: Type[Record], candidate: Union[Record, Dict[str, Any]]
) -> Union[Record, List[InvariantViolation]]:
    """Return the record itself when valid, otherwise the list of violations.

    Accepts either a model instance or a raw mapping (camelCase or snake_case
    keys). Type and enum errors reported by Pydantic are folded into the same
    violation list as the cross-field invariants.
    """
    if isinstance(candidate, model):
        record = candidate
    else:
        try:
            record = model.model_validate(candidate)
        except ValidationError as e:
            return [
                InvariantViolation((".".join(str(p) for p in err["loc"]),), err["msg"])
                for err in e.errors()
            ]
    violations = check_invariants(record)
    return violations or record


def dump(record: Record) -> Dict[str, Any]:
    """Wire form of a record: camelCase keys, JSON-compatible values."""
    return record.model_dump(mode="json", by_alias=True)
