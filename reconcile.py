"""
Decide which interpreted field values are safe to fold into a record.

Values are compared by their rendered text, not by type, so "18" from the
interpreter matches 18.0 already stored. An empty candidate never counts as
a change, so the merge can fill or correct fields but never clear them.
"""

import json
import logging
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from errors import CatalogMismatchError
from fields import FieldCatalog, FieldDescriptor, FieldType, is_empty, number_text

logger = logging.getLogger(__name__)


class ReconcileResult(BaseModel):
    accepted: List[FieldDescriptor] = Field(default_factory=list)
    changed_labels: List[str] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.accepted)


def stringify(value: Any, field_type: Optional[FieldType] = None) -> str:
    """Trimmed text form of a field value used for change detection.

    Numbers render without a trailing ".0" and, for number fields, numeric
    strings are rendered the same way, so 5, 5.0 and "5.0" all read "5".
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return number_text(value)
    if isinstance(value, str):
        text = value.strip()
        if field_type == FieldType.NUMBER and text:
            try:
                return number_text(float(text))
            except ValueError:
                return text
        return text
    if isinstance(value, (list, tuple)):
        return ", ".join(stringify(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value).strip()


def _check_shape(original: FieldCatalog, candidate: FieldCatalog) -> None:
    if len(original) != len(candidate):
        raise CatalogMismatchError(
            f"Candidate catalog has {len(candidate)} fields, expected {len(original)}"
        )
    for i, (old, new) in enumerate(zip(original, candidate)):
        if old.id != new.id:
            raise CatalogMismatchError(
                f"Field {i} is '{new.id}' in candidate catalog, expected '{old.id}'"
            )


def reconcile(original: FieldCatalog, candidate: FieldCatalog) -> ReconcileResult:
    _check_shape(original, candidate)

    result = ReconcileResult()
    for old, new in zip(original, candidate):
        if is_empty(new.value):
            continue
        old_text = stringify(old.value, old.type)
        new_text = stringify(new.value, old.type)
        if new_text and old_text != new_text:
            result.accepted.append(new)
            result.changed_labels.append(old.label)

    logger.debug("Reconciled %d fields, %d changed", len(original), len(result.accepted))
    return result
