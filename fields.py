"""
Field catalogs: flat, addressable views of nested clinical records.

A catalog is the interchange format with the free-text interpretation step.
Each descriptor points at one leaf of a record by a dotted camelCase path.
`flatten` reads the current values out of a record, `unflatten` writes
non-empty values back into a copy of it.
"""

import logging
import math
import typing
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import FieldValueError, UnknownFieldPathError
from schemas import Examination, Record

logger = logging.getLogger(__name__)

EYES = ("rightEye", "leftEye")


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    TEXTAREA = "textarea"
    SELECT = "select"


class FieldOption(BaseModel):
    label: str
    value: Any


class FieldDescriptor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    path: str = Field(..., description="Dotted path into the record, e.g. vision.rightEye.uncorrected")
    type: FieldType = FieldType.TEXT
    label: str
    value: Any = None
    options: Optional[List[FieldOption]] = None


FieldCatalog = List[FieldDescriptor]


def is_empty(value: Any) -> bool:
    """None, blank strings, empty lists and objects made only of empty leaves."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    if isinstance(value, BaseModel):
        value = value.model_dump()
    if isinstance(value, dict):
        return all(is_empty(v) for v in value.values())
    return False


def number_text(value: float) -> str:
    """Render a number the way it reads: 18.0 as "18", 17.5 as "17.5"."""
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    return repr(value)


class PathKind(str, Enum):
    GENERIC = "generic"
    # comma-separated string <-> ordered list of strings
    DIAGNOSIS_LIST = "diagnosis_list"
    # intraocularPressure.<eye> is a number, not a sub-object
    EYE_SCALAR = "eye_scalar"


def _unwrap(annotation):
    """Strip Optional[...] and return the remaining annotation."""
    if typing.get_origin(annotation) is typing.Union:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _lookup(model: Type[Record], segment: str):
    for name, info in model.model_fields.items():
        if segment in (info.alias, name):
            return info.alias or name, info
    return None, None


@dataclass(frozen=True)
class FieldPath:
    raw: str
    segments: Tuple[str, ...]
    kind: PathKind
    # leaf is a str field; numbers written there are rendered as text
    text_leaf: bool = False

    @classmethod
    def parse(cls, path: str, model: Type[Record]) -> "FieldPath":
        """Resolve a dotted path against the declared fields of `model`.

        Segments are normalised to their wire (camelCase) spelling. A path
        that leaves the known record shapes raises UnknownFieldPathError.
        """
        parts = path.strip().split(".")
        trailing_empty = len(parts) > 1 and parts[-1] == ""
        if trailing_empty:
            parts = parts[:-1]
        if any(p == "" for p in parts):
            raise UnknownFieldPathError(path, model.__name__)

        segments = []
        current: Optional[Type[Record]] = model
        for part in parts:
            if current is None:
                raise UnknownFieldPathError(path, model.__name__)
            alias, info = _lookup(current, part)
            if info is None:
                raise UnknownFieldPathError(path, model.__name__)
            segments.append(alias)
            leaf = _unwrap(info.annotation)
            if isinstance(leaf, type) and issubclass(leaf, Record):
                current = leaf
            else:
                current = None

        if current is not None:
            # paths must end on a leaf value, not on a nested object
            raise UnknownFieldPathError(path, model.__name__)

        segments = tuple(segments)
        if len(segments) == 2 and segments[0] == "intraocularPressure" and segments[1] in EYES:
            kind = PathKind.EYE_SCALAR
        elif trailing_empty:
            raise UnknownFieldPathError(path, model.__name__)
        elif segments == ("diagnosis",):
            kind = PathKind.DIAGNOSIS_LIST
        else:
            kind = PathKind.GENERIC
        return cls(raw=path, segments=segments, kind=kind, text_leaf=leaf is str)

    def read(self, data: Dict[str, Any]) -> Any:
        node: Any = data
        for seg in self.segments:
            if not isinstance(node, dict):
                return None
            node = node.get(seg)
            if node is None:
                return None
        if self.kind == PathKind.DIAGNOSIS_LIST:
            return ", ".join(node) if node else None
        return node

    def write(self, data: Dict[str, Any], value: Any) -> None:
        node = data
        for seg in self.segments[:-1]:
            child = node.get(seg)
            if not isinstance(child, dict):
                child = {}
                node[seg] = child
            node = child
        last = self.segments[-1]
        if self.kind == PathKind.DIAGNOSIS_LIST:
            items = value.split(",") if isinstance(value, str) else list(value)
            node[last] = [str(d).strip() for d in items if str(d).strip()]
        elif self.kind == PathKind.EYE_SCALAR and isinstance(value, str):
            node[last] = value.strip()
        elif self.text_leaf and isinstance(value, (int, float)) and not isinstance(value, bool):
            node[last] = number_text(value)
        else:
            node[last] = value


def flatten(record: Record, template: FieldCatalog) -> FieldCatalog:
    """Catalog of `template` descriptors with values read from `record`."""
    data = record.model_dump(mode="json", by_alias=True)
    model = type(record)
    return [
        d.model_copy(update={"value": FieldPath.parse(d.path, model).read(data)})
        for d in template
    ]


def unflatten(catalog: FieldCatalog, base: Record) -> Record:
    """Copy of `base` with every non-empty catalog value written at its path.

    Empty values are skipped, so existing data is never cleared. Raises
    FieldValueError if a value does not fit the record; `base` is not touched.
    """
    model = type(base)
    data = base.model_dump(by_alias=True)
    written = []
    for d in catalog:
        if is_empty(d.value):
            continue
        path = FieldPath.parse(d.path, model)
        path.write(data, d.value)
        written.append((path, d))

    try:
        return model.model_validate(data)
    except ValidationError as e:
        err = e.errors()[0]
        loc = tuple(str(p) for p in err["loc"])
        for path, d in written:
            if loc[:len(path.segments)] == path.segments:
                raise FieldValueError(d.label, d.value, err["msg"]) from e
        raise FieldValueError(".".join(loc), err.get("input"), err["msg"]) from e


def _field(id: str, path: str, label: str, type: FieldType = FieldType.TEXT) -> FieldDescriptor:
    return FieldDescriptor(id=id, path=path, type=type, label=label)


EXAMINATION_FIELDS: FieldCatalog = [
    _field("chiefComplaint", "chiefComplaint", "Chief Complaint"),
    _field("visionRightUncorrected", "vision.rightEye.uncorrected", "Vision Right Eye Uncorrected"),
    _field("visionRightCorrected", "vision.rightEye.corrected", "Vision Right Eye Corrected"),
    _field("visionRightPinhole", "vision.rightEye.pinhole", "Vision Right Eye Pinhole"),
    _field("visionLeftUncorrected", "vision.leftEye.uncorrected", "Vision Left Eye Uncorrected"),
    _field("visionLeftCorrected", "vision.leftEye.corrected", "Vision Left Eye Corrected"),
    _field("visionLeftPinhole", "vision.leftEye.pinhole", "Vision Left Eye Pinhole"),
    _field("iopRight", "intraocularPressure.rightEye", "IOP Right Eye", FieldType.NUMBER),
    _field("iopLeft", "intraocularPressure.leftEye", "IOP Left Eye", FieldType.NUMBER),
    _field("anteriorSegment", "anteriorSegment", "Anterior Segment", FieldType.TEXTAREA),
    _field("posteriorSegment", "posteriorSegment", "Posterior Segment", FieldType.TEXTAREA),
    _field("diagnosis", "diagnosis", "Diagnosis"),
    _field("plan", "plan", "Plan", FieldType.TEXTAREA),
    _field("followUp", "followUp", "Follow Up"),
]

EXAMINATION_CONTEXT_HINT = "This is for an eye examination record in an ophthalmology EHR system"

# resolve once at import so a bad template fails loudly
for _d in EXAMINATION_FIELDS:
    FieldPath.parse(_d.path, Examination)
