"""
AssessmentWorkflow — every mutating operation of the costing core.

Each operation follows the same shape:
  1. load the assessment and check the stage gate
  2. load the document(s) and apply the change in memory
  3. re-compose and verify the reconciled set when money could be affected
  4. persist: document saves are guarded by the stage read in step 1 and by
     the version each document was loaded at;
     transitions go through ``cas_stage`` and are read back before success
  5. emit audit events (never allowed to fail the operation)

Nothing is retried internally. A ConcurrentModification goes back to the
caller, who reloads and runs the whole operation again.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional, Union

from app.models.assessment import (
    Assessment,
    AssessmentStage,
    AssessmentStatus,
    AuditEvent,
    RateSnapshot,
    SignOff,
    utcnow,
)
from app.models.line_items import Betterment, FRCDecision, LineSource, build_model
from app.services import stage_gate
from app.services.additionals_overlay import AdditionalsOverlay
from app.services.assessment_store import AssessmentStore
from app.services.audit import AuditSink, LoggingAuditSink, emit_safely
from app.services.errors import (
    TransitionVerificationError,
    ValidationError,
)
from app.services.estimate_ledger import EstimateLedger
from app.services.frc_engine import FRCSnapshot
from app.services.rate_source import DefaultRateSource, RateSource
from app.services.reconciliation import ReconciledLineSet, reconcile

logger = logging.getLogger("costing-workflow")


def _stage(value: Union[str, AssessmentStage]) -> AssessmentStage:
    try:
        return AssessmentStage(value)
    except ValueError:
        raise ValidationError(f"Unknown stage {value!r}") from None


class AssessmentWorkflow:
    def __init__(
        self,
        store: AssessmentStore,
        rate_source: Optional[RateSource] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Callable = utcnow,
    ) -> None:
        self.store = store
        self.rate_source = rate_source or DefaultRateSource()
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.clock = clock

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _gate(self, assessment_id: str, operation: str) -> Assessment:
        assessment = await self.store.load_assessment(assessment_id)
        stage_gate.require(operation, assessment.stage)
        return assessment

    async def _audit(
        self,
        assessment_id: str,
        entity_type: str,
        action: str,
        changed_by: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        await emit_safely(self.audit_sink, AuditEvent(
            entity_type=entity_type,
            entity_id=assessment_id,
            action=action,
            changed_by=changed_by,
            metadata=metadata,
        ))

    async def _transition(
        self,
        assessment: Assessment,
        operation: str,
        to_stage: Optional[AssessmentStage] = None,
        extra_fields: Optional[Dict[str, Any]] = None,
        ledger: Optional[EstimateLedger] = None,
        overlay: Optional[AdditionalsOverlay] = None,
        snapshot: Optional[FRCSnapshot] = None,
        changed_by: Optional[str] = None,
        **audit_metadata: Any,
    ) -> Assessment:
        """CAS the stage with everything that must change alongside it, then read it back."""
        plan = stage_gate.plan_transition(assessment.id, operation, assessment.stage, to_stage)
        start = time.monotonic()
        await self.store.cas_stage(
            assessment.id,
            plan.from_stage,
            plan.to_stage,
            extra_fields=extra_fields,
            ledger=ledger,
            overlay=overlay,
            snapshot=snapshot,
        )
        written = await self._verify(plan, extra_fields or {}, ledger, snapshot)
        logger.info(
            f"{operation}: {plan.from_stage.value} -> {plan.to_stage.value}",
            extra={
                "assessment_id": assessment.id,
                "operation": operation,
                "from_stage": plan.from_stage.value,
                "to_stage": plan.to_stage.value,
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
            },
        )
        await emit_safely(self.audit_sink, plan.audit_event(changed_by, **audit_metadata))
        return written

    async def _verify(
        self,
        plan: stage_gate.StageTransition,
        extra_fields: Dict[str, Any],
        ledger: Optional[EstimateLedger],
        snapshot: Optional[FRCSnapshot],
    ) -> Assessment:
        """Read-back after CAS. Any mismatch means the transition cannot be reported."""
        mismatches = []
        reread = await self.store.load_assessment(plan.assessment_id)
        if reread.stage != plan.to_stage:
            mismatches.append(f"stage is '{reread.stage.value}'")
        for name, expected in extra_fields.items():
            if getattr(reread, name) != expected:
                mismatches.append(f"{name} did not persist")
        if ledger is not None:
            stored = await self.store.load_ledger(plan.assessment_id)
            if stored.finalized_at != ledger.finalized_at or stored.rates != ledger.rates:
                mismatches.append("estimate did not persist")
        if snapshot is not None:
            stored = await self.store.load_snapshot(plan.assessment_id)
            if (
                stored is None
                or stored.status != snapshot.status
                or stored.line_items_version != snapshot.line_items_version
                or stored.completed_at != snapshot.completed_at
                or stored.sign_off != snapshot.sign_off
                or len(stored.lines) != len(snapshot.lines)
            ):
                mismatches.append("FRC snapshot did not persist")
        if mismatches:
            logger.error(
                f"{plan.operation} verification failed: {'; '.join(mismatches)}",
                extra={
                    "assessment_id": plan.assessment_id,
                    "operation": plan.operation,
                    "from_stage": plan.from_stage.value,
                    "to_stage": plan.to_stage.value,
                },
            )
            raise TransitionVerificationError(
                f"{plan.operation} on assessment {plan.assessment_id} could not be verified",
                operation=plan.operation,
                mismatches=mismatches,
            )
        return reread

    # ------------------------------------------------------------------
    # Assessment lifecycle
    # ------------------------------------------------------------------

    async def create_assessment(
        self,
        assessment_id: Optional[str] = None,
        assessment_number: str = "",
        changed_by: Optional[str] = None,
    ) -> Assessment:
        assessment = Assessment(
            id=assessment_id or str(uuid.uuid4()),
            assessment_number=assessment_number,
            updated_at=self.clock(),
        )
        await self.store.save_assessment(assessment)
        rates = await self.rate_source.current_rates()
        ledger = EstimateLedger(assessment_id=assessment.id, rates=rates)
        await self.store.save_ledger(ledger, expected_stage=assessment.stage)
        await self._audit(assessment.id, "assessment", "created", changed_by, stage=assessment.stage.value)
        return assessment

    async def get_assessment(self, assessment_id: str) -> Assessment:
        return await self.store.load_assessment(assessment_id)

    async def advance(
        self,
        assessment_id: str,
        to_stage: Optional[Union[str, AssessmentStage]] = None,
        changed_by: Optional[str] = None,
    ) -> Assessment:
        """Move one step along the early, UI-driven part of the lifecycle."""
        assessment = await self.store.load_assessment(assessment_id)
        return await self._transition(
            assessment,
            "assessment.advance",
            to_stage=_stage(to_stage) if to_stage is not None else None,
            changed_by=changed_by,
        )

    async def cancel(self, assessment_id: str, reason: str = "", changed_by: Optional[str] = None) -> Assessment:
        assessment = await self.store.load_assessment(assessment_id)
        return await self._transition(
            assessment,
            "assessment.cancel",
            extra_fields={"status": AssessmentStatus.CANCELLED, "cancelled_at": self.clock()},
            changed_by=changed_by,
            reason=reason or None,
        )

    # ------------------------------------------------------------------
    # Estimate ledger
    # ------------------------------------------------------------------

    async def _edit_ledger(self, assessment_id: str, operation: str, edit: Callable[[EstimateLedger], Any]):
        assessment = await self._gate(assessment_id, operation)
        ledger = await self.store.load_ledger(assessment_id)
        ledger.apply_global_rates(await self.rate_source.current_rates())
        result = edit(ledger)
        await self.store.save_ledger(ledger, expected_stage=assessment.stage)
        return result

    async def load_ledger(self, assessment_id: str) -> EstimateLedger:
        ledger = await self.store.load_ledger(assessment_id)
        ledger.apply_global_rates(await self.rate_source.current_rates())
        return ledger

    async def add_estimate_line(self, assessment_id: str, data: Any):
        return await self._edit_ledger(assessment_id, "estimate.add_line", lambda ledger: ledger.add_line(data))

    async def update_estimate_line(self, assessment_id: str, line_id: str, changes: Dict[str, Any]):
        return await self._edit_ledger(
            assessment_id, "estimate.update_line", lambda ledger: ledger.update_line(line_id, changes)
        )

    async def delete_estimate_line(self, assessment_id: str, line_id: str) -> None:
        await self._edit_ledger(assessment_id, "estimate.delete_line", lambda ledger: ledger.delete_line(line_id))

    async def set_estimate_rates(
        self, assessment_id: str, rates: Union[RateSnapshot, Dict[str, Any]]
    ) -> RateSnapshot:
        return await self._edit_ledger(assessment_id, "estimate.set_rates", lambda ledger: ledger.set_rates(rates))

    async def finalize_estimate(self, assessment_id: str, changed_by: Optional[str] = None) -> EstimateLedger:
        """
        Freeze the current rates onto the estimate and move to estimate_finalized,
        as one conditional write.
        """
        assessment = await self._gate(assessment_id, "estimate.finalize")
        ledger = await self.store.load_ledger(assessment_id)
        now = self.clock()
        rates = ledger.finalize(await self.rate_source.current_rates(), now)
        reconcile(ledger)
        await self._transition(
            assessment,
            "estimate.finalize",
            extra_fields={"estimate_finalized_at": now, "finalized_rates": rates},
            ledger=ledger,
            changed_by=changed_by,
            line_count=len(ledger.lines),
        )
        return ledger

    # ------------------------------------------------------------------
    # Additionals
    # ------------------------------------------------------------------

    async def open_additionals(self, assessment_id: str) -> AdditionalsOverlay:
        assessment = await self._gate(assessment_id, "additionals.open")
        overlay = await self.store.load_overlay(assessment_id)
        if overlay is not None:
            return overlay
        overlay = AdditionalsOverlay.open_for(await self.store.load_ledger(assessment_id))
        await self.store.save_overlay(overlay, expected_stage=assessment.stage)
        await self._audit(assessment_id, "additionals", "opened")
        return overlay

    async def load_overlay(self, assessment_id: str) -> Optional[AdditionalsOverlay]:
        return await self.store.load_overlay(assessment_id)

    async def _edit_overlay(
        self,
        assessment_id: str,
        operation: str,
        edit: Callable[[AdditionalsOverlay, EstimateLedger], Any],
        audit_action: Optional[str] = None,
        changed_by: Optional[str] = None,
    ):
        assessment = await self._gate(assessment_id, operation)
        ledger = await self.store.load_ledger(assessment_id)
        overlay = await self.store.load_overlay(assessment_id) or AdditionalsOverlay.open_for(ledger)
        result = edit(overlay, ledger)
        # never persist an overlay whose composition breaks the money rules
        reconcile(ledger, overlay)
        await self.store.save_overlay(overlay, expected_stage=assessment.stage)
        if audit_action:
            item_id = getattr(result, "id", None)
            await self._audit(
                assessment_id, "additional", audit_action, changed_by, item_id=item_id, operation=operation,
            )
        return result

    async def add_additional(self, assessment_id: str, data: Any, changed_by: Optional[str] = None):
        return await self._edit_overlay(
            assessment_id, "additionals.add_line",
            lambda overlay, ledger: overlay.add_line(data),
            "added", changed_by,
        )

    async def remove_estimate_line(
        self, assessment_id: str, line_id: str, item_id: Optional[str] = None, changed_by: Optional[str] = None
    ):
        return await self._edit_overlay(
            assessment_id, "additionals.remove_line",
            lambda overlay, ledger: overlay.remove_base_line(ledger, line_id, item_id),
            "removal_requested", changed_by,
        )

    async def approve_additional(self, assessment_id: str, item_id: str, changed_by: Optional[str] = None):
        return await self._edit_overlay(
            assessment_id, "additionals.approve",
            lambda overlay, ledger: overlay.approve(item_id, ledger),
            "approved", changed_by,
        )

    async def decline_additional(
        self, assessment_id: str, item_id: str, reason: str, changed_by: Optional[str] = None
    ):
        return await self._edit_overlay(
            assessment_id, "additionals.decline",
            lambda overlay, ledger: overlay.decline(item_id, reason),
            "declined", changed_by,
        )

    async def reinstate_additional(self, assessment_id: str, item_id: str, changed_by: Optional[str] = None):
        return await self._edit_overlay(
            assessment_id, "additionals.reinstate",
            lambda overlay, ledger: overlay.reinstate(item_id, ledger),
            "reinstated", changed_by,
        )

    async def reverse_additional(
        self,
        assessment_id: str,
        target_id: str,
        reason: str = "",
        item_id: Optional[str] = None,
        changed_by: Optional[str] = None,
    ):
        return await self._edit_overlay(
            assessment_id, "additionals.reverse",
            lambda overlay, ledger: overlay.reverse(target_id, reason, item_id),
            "reversal_requested", changed_by,
        )

    async def delete_pending_additional(
        self, assessment_id: str, item_id: str, changed_by: Optional[str] = None
    ) -> None:
        await self._edit_overlay(
            assessment_id, "additionals.delete_pending",
            lambda overlay, ledger: overlay.delete_pending(item_id),
        )
        await self._audit(assessment_id, "additional", "deleted", changed_by, item_id=item_id)

    async def apply_betterment(
        self,
        assessment_id: str,
        line_id: str,
        betterment: Optional[Union[Betterment, Dict[str, Any]]],
        source: Union[str, LineSource] = LineSource.ESTIMATE,
    ):
        """Set (or clear, with None) the betterment of an estimate or additional line."""
        if isinstance(betterment, dict):
            betterment = build_model(Betterment, **betterment)
        if LineSource(source) == LineSource.ESTIMATE:
            return await self._edit_ledger(
                assessment_id, "estimate.set_betterment",
                lambda ledger: ledger.set_betterment(line_id, betterment),
            )
        return await self._edit_overlay(
            assessment_id, "additionals.set_betterment",
            lambda overlay, ledger: overlay.set_betterment(line_id, betterment),
        )

    async def reconciled_lines(self, assessment_id: str) -> ReconciledLineSet:
        """The single composed view used for display, totals and FRC start."""
        return reconcile(await self.load_ledger(assessment_id), await self.store.load_overlay(assessment_id))

    # ------------------------------------------------------------------
    # FRC
    # ------------------------------------------------------------------

    async def start_frc(self, assessment_id: str, changed_by: Optional[str] = None) -> FRCSnapshot:
        """Snapshot the reconciled set and move to frc_in_progress, as one conditional write."""
        assessment = await self._gate(assessment_id, "frc.start")
        reconciled = await self.reconciled_lines(assessment_id)
        snapshot = FRCSnapshot.start_from(reconciled, self.clock())
        await self._transition(
            assessment,
            "frc.start",
            snapshot=snapshot,
            changed_by=changed_by,
            line_count=len(snapshot.lines),
        )
        return snapshot

    async def load_snapshot(self, assessment_id: str) -> FRCSnapshot:
        snapshot = await self.store.load_snapshot(assessment_id)
        if snapshot is None:
            raise ValidationError(f"FRC has not been started for assessment {assessment_id}")
        return snapshot

    async def update_frc_line(
        self,
        assessment_id: str,
        key: str,
        actual_total: Any = None,
        decision: Optional[Union[str, FRCDecision]] = None,
        note: Optional[str] = None,
        actual_components: Optional[Dict[str, Any]] = None,
    ):
        assessment = await self._gate(assessment_id, "frc.update_line")
        snapshot = await self.load_snapshot(assessment_id)
        if decision is not None:
            try:
                decision = FRCDecision(decision)
            except ValueError:
                raise ValidationError(f"Unknown FRC decision {decision!r}") from None
        line = snapshot.update_line(key, actual_total, decision, note, actual_components)
        await self.store.save_snapshot(snapshot, expected_stage=assessment.stage)
        return line

    async def merge_additionals(self, assessment_id: str, changed_by: Optional[str] = None) -> FRCSnapshot:
        assessment = await self._gate(assessment_id, "frc.merge_additionals")
        snapshot = await self.load_snapshot(assessment_id)
        reconciled = await self.reconciled_lines(assessment_id)
        if snapshot.merge_additionals(reconciled, self.clock()):
            await self.store.save_snapshot(snapshot, expected_stage=assessment.stage)
            await self._audit(
                assessment_id, "frc", "additionals_merged", changed_by,
                line_items_version=snapshot.line_items_version,
            )
        return snapshot

    async def frc_needs_sync(self, assessment_id: str) -> bool:
        snapshot = await self.load_snapshot(assessment_id)
        return snapshot.needs_sync(await self.reconciled_lines(assessment_id))

    async def frc_breakdown(self, assessment_id: str) -> Dict[str, Any]:
        return (await self.load_snapshot(assessment_id)).breakdown()

    async def complete_frc(
        self,
        assessment_id: str,
        name: str,
        role: str,
        email: Optional[str] = None,
        notes: Optional[str] = None,
        changed_by: Optional[str] = None,
    ) -> FRCSnapshot:
        """Sign off the FRC and archive the assessment, as one conditional write."""
        assessment = await self._gate(assessment_id, "frc.complete")
        snapshot = await self.load_snapshot(assessment_id)
        now = self.clock()
        sign_off = build_model(SignOff, name=name, role=role, email=email, notes=notes, signed_off_at=now)
        snapshot.complete(sign_off)
        await self._transition(
            assessment,
            "frc.complete",
            extra_fields={"status": AssessmentStatus.COMPLETED, "completed_at": now},
            snapshot=snapshot,
            changed_by=changed_by or sign_off.name,
            signed_off_by=sign_off.name,
            signed_off_role=sign_off.role,
        )
        return snapshot

    async def reopen_frc(
        self, assessment_id: str, reason: str = "", changed_by: Optional[str] = None
    ) -> FRCSnapshot:
        """Administrative inverse of complete_frc."""
        assessment = await self._gate(assessment_id, "frc.reopen")
        snapshot = await self.load_snapshot(assessment_id)
        previous = snapshot.sign_off
        snapshot.reopen()
        await self._transition(
            assessment,
            "frc.reopen",
            extra_fields={"status": AssessmentStatus.ACTIVE, "completed_at": None},
            snapshot=snapshot,
            changed_by=changed_by,
            reason=reason or None,
            previous_sign_off=previous.model_dump(mode="json") if previous else None,
        )
        return snapshot
