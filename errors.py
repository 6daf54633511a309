"""
Error kinds raised by the encounter workflow.

Validation and transition errors mean the operation did not apply.
Interpretation and persistence errors are retryable by the caller.
"""

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from schemas import InvariantViolation


class EncounterError(Exception):
    """Base class for every error raised by the encounter core."""


class InvariantViolationError(EncounterError):
    def __init__(self, violations: List["InvariantViolation"]):
        self.violations = violations
        fields = ", ".join(sorted({f for v in violations for f in v.fields}))
        super().__init__(f"Invalid record ({fields})")


class IllegalTransitionError(EncounterError):
    """A status change that the state machine does not allow.

    The record that was passed in is left untouched; `current` and `target`
    name the rejected move.
    """

    def __init__(self, entity: str, current: str, target: str, reason: Optional[str] = None):
        self.entity = entity
        self.current = current
        self.target = target
        self.reason = reason or f"Cannot move {entity} from '{current}' to '{target}'"
        super().__init__(self.reason)


class CatalogMismatchError(EncounterError):
    """Candidate catalog does not line up with the original one."""


class UnknownFieldPathError(EncounterError):
    def __init__(self, path: str, model_name: str):
        self.path = path
        self.model_name = model_name
        super().__init__(f"Unknown field path '{path}' for {model_name}")


class FieldValueError(EncounterError):
    def __init__(self, label: str, value, detail: str = ""):
        self.label = label
        self.value = value
        super().__init__(f"Invalid value for {label}: {value!r}" + (f" ({detail})" if detail else ""))


class InterpretationError(EncounterError):
    """The free-text interpretation backend failed. Safe to retry."""


class PersistenceError(EncounterError):
    """The record store is unavailable or rejected a write. Safe to retry."""


class NotFoundError(PersistenceError):
    def __init__(self, collection: str, record_id: str):
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection} '{record_id}' not found")
