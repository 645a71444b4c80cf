"""
Stage gate — the assessment lifecycle state machine.

    request_submitted → request_reviewed → inspection_scheduled →
    appointment_scheduled → assessment_in_progress → estimate_review →
    estimate_sent → estimate_finalized → frc_in_progress → archived

``cancelled`` is reachable from every non-terminal stage. Each operation of the
costing core declares its legal stages in OPERATION_STAGES; operations that move
the assessment also declare their target in OPERATION_TARGETS.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

from app import config
from app.models.assessment import AssessmentStage, AuditEvent
from app.services.errors import StageViolation

logger = logging.getLogger("costing-stage-gate")

S = AssessmentStage

STAGE_SEQUENCE = tuple(AssessmentStage(s) for s in config.STAGE_ORDER)
TERMINAL_STAGES: FrozenSet[AssessmentStage] = frozenset({S.ARCHIVED, S.CANCELLED})
NON_TERMINAL_STAGES: FrozenSet[AssessmentStage] = frozenset(STAGE_SEQUENCE) - TERMINAL_STAGES

_LAST_MANUAL = AssessmentStage(config.LAST_MANUAL_STAGE)


def _stages_before(stage: AssessmentStage, inclusive: bool = False) -> FrozenSet[AssessmentStage]:
    idx = STAGE_SEQUENCE.index(stage)
    return frozenset(STAGE_SEQUENCE[: idx + 1 if inclusive else idx])


# Estimate lines stay editable until the estimate is finalised
ESTIMATE_EDIT_STAGES = _stages_before(S.ESTIMATE_FINALIZED)
ADDITIONALS_STAGES = frozenset({S.ESTIMATE_FINALIZED, S.FRC_IN_PROGRESS})

OPERATION_STAGES: Dict[str, FrozenSet[AssessmentStage]] = {
    # Estimate ledger
    "estimate.add_line": ESTIMATE_EDIT_STAGES,
    "estimate.update_line": ESTIMATE_EDIT_STAGES,
    "estimate.delete_line": ESTIMATE_EDIT_STAGES,
    "estimate.set_rates": ESTIMATE_EDIT_STAGES,
    "estimate.set_betterment": ESTIMATE_EDIT_STAGES,
    "estimate.finalize": frozenset({S.ESTIMATE_REVIEW, S.ESTIMATE_SENT}),
    # Additionals overlay
    "additionals.open": ADDITIONALS_STAGES,
    "additionals.add_line": ADDITIONALS_STAGES,
    "additionals.remove_line": ADDITIONALS_STAGES,
    "additionals.approve": ADDITIONALS_STAGES,
    "additionals.decline": ADDITIONALS_STAGES,
    "additionals.reinstate": ADDITIONALS_STAGES,
    "additionals.reverse": ADDITIONALS_STAGES,
    "additionals.delete_pending": ADDITIONALS_STAGES,
    "additionals.set_betterment": ADDITIONALS_STAGES,
    # FRC
    "frc.start": frozenset({S.ESTIMATE_FINALIZED}),
    "frc.update_line": frozenset({S.FRC_IN_PROGRESS}),
    "frc.merge_additionals": frozenset({S.FRC_IN_PROGRESS}),
    "frc.complete": frozenset({S.FRC_IN_PROGRESS}),
    "frc.reopen": frozenset({S.ARCHIVED}),
    # Lifecycle
    "assessment.advance": _stages_before(_LAST_MANUAL),
    "assessment.cancel": NON_TERMINAL_STAGES,
}

OPERATION_TARGETS: Dict[str, AssessmentStage] = {
    "estimate.finalize": S.ESTIMATE_FINALIZED,
    "frc.start": S.FRC_IN_PROGRESS,
    "frc.complete": S.ARCHIVED,
    "frc.reopen": S.FRC_IN_PROGRESS,
    "assessment.cancel": S.CANCELLED,
}


@dataclass(frozen=True)
class StageTransition:
    assessment_id: str
    operation: str
    from_stage: AssessmentStage
    to_stage: AssessmentStage

    def audit_event(self, changed_by: Optional[str] = None, **metadata: Any) -> AuditEvent:
        return AuditEvent(
            entity_type="assessment",
            entity_id=self.assessment_id,
            action="stage_transition",
            changed_by=changed_by,
            metadata={
                **metadata,
                "from_stage": self.from_stage.value,
                "to_stage": self.to_stage.value,
                "operation": self.operation,
            },
        )


def legal_stages(operation: str) -> FrozenSet[AssessmentStage]:
    try:
        return OPERATION_STAGES[operation]
    except KeyError:
        raise KeyError(f"Unknown operation {operation!r}") from None


def is_allowed(operation: str, stage: AssessmentStage) -> bool:
    return AssessmentStage(stage) in legal_stages(operation)


def require(operation: str, stage: AssessmentStage) -> None:
    """Raise StageViolation unless ``operation`` is legal in ``stage``."""
    stage = AssessmentStage(stage)
    allowed = legal_stages(operation)
    if stage not in allowed:
        logger.info(
            "stage gate rejected operation",
            extra={"operation": operation, "from_stage": stage.value},
        )
        raise StageViolation(operation, stage.value, (s.value for s in allowed))


def next_stage(stage: AssessmentStage) -> AssessmentStage:
    stage = AssessmentStage(stage)
    if stage in TERMINAL_STAGES:
        raise StageViolation(
            "assessment.advance", stage.value, (s.value for s in NON_TERMINAL_STAGES),
            message=f"Stage '{stage.value}' is terminal",
        )
    return STAGE_SEQUENCE[STAGE_SEQUENCE.index(stage) + 1]


def plan_transition(
    assessment_id: str,
    operation: str,
    current: AssessmentStage,
    to_stage: Optional[AssessmentStage] = None,
) -> StageTransition:
    """
    Validate a transition and return it without applying anything.

    ``assessment.advance`` moves strictly to the next stage; when ``to_stage`` is
    given it must equal that next stage. Every other transitioning operation goes
    to its fixed target.
    """
    current = AssessmentStage(current)
    require(operation, current)
    if operation == "assessment.advance":
        target = next_stage(current)
        if to_stage is not None and AssessmentStage(to_stage) != target:
            raise StageViolation(
                operation, current.value, [current.value],
                message=f"Cannot advance from '{current.value}' to '{AssessmentStage(to_stage).value}'; "
                        f"next stage is '{target.value}'",
            )
    else:
        try:
            target = OPERATION_TARGETS[operation]
        except KeyError:
            raise KeyError(f"Operation {operation!r} does not transition the stage") from None
    return StageTransition(assessment_id, operation, current, target)
