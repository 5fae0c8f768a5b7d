"""Exception hierarchy for CMMCalc.

Request-level problems (``ValidationError`` and lookups) are raised to the
caller. Per work-item problems (rule resolution, formula evaluation, unit
conversion) are caught by the orchestrator and recorded in the run's error
log under the ``ItemErrorType`` each exception maps to.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum

from cmmcalc.models import ItemErrorType


class CMMError(Exception):
    """Base exception for all engine errors."""


class ValidationError(CMMError):
    """A calculation request failed validation; no run was created."""


class UnknownCategory(ValidationError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Unknown category code: {code}")
        self.code = code


class ScopeMismatch(ValidationError):
    """A category code exists but sits under a different parent."""


class UnknownMaterial(ValidationError):
    def __init__(self, code: str, reason: str = "not found") -> None:
        super().__init__(f"Material {code} {reason}")
        self.code = code


class UnknownRuleSet(ValidationError):
    def __init__(self, version: str) -> None:
        super().__init__(f"Rule set {version} not found")
        self.version = version


class ItemFailure(CMMError):
    """An error confined to a single work item.

    ``error_type`` is the classification recorded in the run's error log.
    """

    def __init__(self, message: str, error_type: ItemErrorType) -> None:
        super().__init__(message)
        self.error_type = error_type


class ResolutionFailure(str, Enum):
    NO_MATCH = "NO_MATCH"
    AMBIGUOUS = "AMBIGUOUS"


class RuleResolutionError(ItemFailure):
    def __init__(
        self,
        kind: ResolutionFailure,
        message: str,
        candidates: Sequence[str] = (),
    ) -> None:
        super().__init__(message, ItemErrorType(kind.value))
        self.kind = kind
        self.candidates = list(candidates)


class FormulaFailure(str, Enum):
    UNKNOWN_VARIABLE = "UNKNOWN_VARIABLE"
    DIVISION_BY_ZERO = "DIVISION_BY_ZERO"
    SYNTAX_ERROR = "SYNTAX_ERROR"
    INVALID_RESULT = "INVALID_RESULT"


class FormulaEvaluationError(ItemFailure):
    def __init__(self, kind: FormulaFailure, message: str, formula: str | None = None) -> None:
        super().__init__(
            message if formula is None else f"{message} in '{formula}'", ItemErrorType(kind.value)
        )
        self.kind = kind
        self.formula = formula


class IncompatibleUnits(ItemFailure):
    def __init__(self, from_unit: str, to_unit: str, material_code: str | None = None) -> None:
        target = f" for material {material_code}" if material_code else ""
        super().__init__(
            f"No conversion from {from_unit} to {to_unit}{target}", ItemErrorType.INCOMPATIBLE_UNITS
        )
        self.from_unit = from_unit
        self.to_unit = to_unit
        self.material_code = material_code


class PersistenceError(CMMError):
    """Database write failed after retries."""


class ConcurrencyConflict(CMMError):
    """A compare-and-swap on run status lost to another writer."""


class InvalidTransition(CMMError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal run status transition {current} -> {target}")
        self.current = current
        self.target = target


class RuleSetImmutableError(CMMError):
    def __init__(self, version: str) -> None:
        super().__init__(f"Rule set {version} is no longer editable")
        self.version = version


class ProfileNotFoundError(CMMError):
    """No building profile matches the requested building."""


class RunNotFoundError(CMMError):
    def __init__(self, run_id: object) -> None:
        super().__init__(f"Calculation run {run_id} not found")
        self.run_id = run_id
