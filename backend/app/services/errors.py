"""Error taxonomy for the assessment costing core."""
from typing import Any, Dict, Iterable, Optional


class CostingError(Exception):
    """Base class for every error raised by the costing core."""

    code = "costing_error"
    fatal = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(CostingError):
    """Malformed or missing line-item input. Fix the input and retry."""

    code = "validation_error"


class LineItemNotFound(ValidationError):
    code = "line_item_not_found"

    def __init__(self, line_id: str, owner: str = "ledger") -> None:
        super().__init__(f"Line item {line_id} not found in {owner}", line_id=line_id, owner=owner)


class AssessmentNotFound(ValidationError):
    code = "assessment_not_found"

    def __init__(self, assessment_id: str) -> None:
        super().__init__(f"Assessment {assessment_id} not found", assessment_id=assessment_id)


class StageViolation(CostingError):
    """Operation attempted outside its legal stage set."""

    code = "stage_violation"

    def __init__(
        self,
        operation: str,
        current_stage: str,
        required_stages: Iterable[str],
        message: Optional[str] = None,
    ) -> None:
        required = sorted(required_stages)
        super().__init__(
            message or f"{operation} is not allowed in stage '{current_stage}' "
            f"(requires one of: {', '.join(required)})",
            operation=operation,
            current_stage=current_stage,
            required_stages=required,
        )
        self.operation = operation
        self.current_stage = current_stage
        self.required_stages = required


class ConcurrentModification(CostingError):
    """Optimistic-concurrency conflict. Reload and retry the whole operation."""

    code = "concurrent_modification"


class TransitionVerificationError(ConcurrentModification):
    """Read-back after a transition did not match what was written."""

    code = "transition_verification_failed"
    fatal = True


class ReconciliationInvariantViolation(CostingError):
    """Internal assertion failure. The result must never be persisted."""

    code = "reconciliation_invariant_violation"
    fatal = True


class PersistenceError(CostingError):
    """Storage layer failure, propagated as-is."""

    code = "persistence_error"
