"""
Assessment costing API routes

POST   /api/assessments                                   — create assessment
GET    /api/assessments/{id}                              — assessment record
POST   /api/assessments/{id}/advance                      — next lifecycle stage
POST   /api/assessments/{id}/cancel                       — cancel
GET    /api/assessments/{id}/estimate                     — priced estimate + totals
POST   /api/assessments/{id}/estimate/lines               — add line
PATCH  /api/assessments/{id}/estimate/lines/{line_id}     — update line
DELETE /api/assessments/{id}/estimate/lines/{line_id}     — delete line
PUT    /api/assessments/{id}/estimate/rates               — per-assessment rate overrides
PUT    /api/assessments/{id}/betterment/{line_id}         — set / clear betterment
POST   /api/assessments/{id}/estimate/finalize            — freeze rates, estimate_finalized
POST   /api/assessments/{id}/additionals                  — open additionals
GET    /api/assessments/{id}/additionals                  — overlay + approved totals
POST   /api/assessments/{id}/additionals/lines            — add additional line
POST   /api/assessments/{id}/additionals/removals         — remove an estimate line
POST   /api/assessments/{id}/additionals/{item_id}/approve|decline|reinstate|reverse
DELETE /api/assessments/{id}/additionals/{item_id}        — delete pending item
GET    /api/assessments/{id}/reconciled                   — reconciled line set
POST   /api/assessments/{id}/frc/start                    — snapshot, frc_in_progress
GET    /api/assessments/{id}/frc                          — FRC snapshot
POST   /api/assessments/{id}/frc/merge                    — merge new additionals
PATCH  /api/assessments/{id}/frc/lines/{key}              — actual cost / decision
POST   /api/assessments/{id}/frc/complete                 — sign-off, archived
POST   /api/assessments/{id}/frc/reopen                   — administrative reopen
GET    /api/assessments/{id}/frc/breakdown                — quoted vs actual
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, TypeAdapter

from app.api.deps import get_workflow
from app.models.line_items import LineSource
from app.services.assessment_workflow import AssessmentWorkflow
from app.services.estimate_ledger import EstimateLedger

router = APIRouter(prefix="/api/assessments", tags=["Assessment Costing"])
logger = logging.getLogger("costing-api.assessments")

_PLAIN = TypeAdapter(Any)


def _plain(value: Any) -> Any:
    """Models, enums and Decimals as JSON data (money stays a fixed-point string)."""
    return _PLAIN.dump_python(value, mode="json")


# ── Request Models ───────────────────────────────────────────────────────────

class CreateAssessmentRequest(BaseModel):
    assessment_id: Optional[str] = None
    assessment_number: str = ""
    changed_by: Optional[str] = None


class AdvanceRequest(BaseModel):
    to_stage: Optional[str] = None
    changed_by: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: str = ""
    changed_by: Optional[str] = None


class DeclineRequest(BaseModel):
    reason: str
    changed_by: Optional[str] = None


class ReverseRequest(BaseModel):
    reason: str = ""
    item_id: Optional[str] = None
    changed_by: Optional[str] = None


class RemovalRequest(BaseModel):
    line_id: str
    item_id: Optional[str] = None
    changed_by: Optional[str] = None


class BettermentRequest(BaseModel):
    source: LineSource = LineSource.ESTIMATE
    betterment: Optional[Dict[str, Decimal]] = None


class FRCLineUpdateRequest(BaseModel):
    actual_total: Optional[Decimal] = None
    actual_components: Optional[Dict[str, Decimal]] = None
    decision: Optional[str] = None
    note: Optional[str] = None


class SignOffRequest(BaseModel):
    name: str
    role: str
    email: Optional[str] = None
    notes: Optional[str] = None


# ── Helpers ──────────────────────────────────────────────────────────────────

def _ledger_payload(ledger: EstimateLedger) -> Dict[str, Any]:
    return _plain({
        "assessment_id": ledger.assessment_id,
        "finalized_at": ledger.finalized_at,
        "rates": ledger.rates,
        "lines": [{"line": line, "cost": cost} for line, cost in ledger.priced_lines()],
        "totals": ledger.totals(),
    })


# ── Assessments ──────────────────────────────────────────────────────────────

@router.post("", status_code=201)
async def create_assessment(req: CreateAssessmentRequest, wf: AssessmentWorkflow = Depends(get_workflow)):
    assessment = await wf.create_assessment(req.assessment_id, req.assessment_number, req.changed_by)
    return _plain(assessment)


@router.get("/{assessment_id}")
async def get_assessment(assessment_id: str, wf: AssessmentWorkflow = Depends(get_workflow)):
    return _plain(await wf.get_assessment(assessment_id))


@router.post("/{assessment_id}/advance")
async def advance_assessment(
    assessment_id: str, req: AdvanceRequest, wf: AssessmentWorkflow = Depends(get_workflow),
):
    return _plain(await wf.advance(assessment_id, req.to_stage, req.changed_by))


@router.post("/{assessment_id}/cancel")
async def cancel_assessment(
    assessment_id: str, req: ReasonRequest, wf: AssessmentWorkflow = Depends(get_workflow),
):
    return _plain(await wf.cancel(assessment_id, req.reason, req.changed_by))


# ── Estimate ─────────────────────────────────────────────────────────────────

@router.get("/{assessment_id}/estimate")
async def get_estimate(assessment_id: str, wf: AssessmentWorkflow = Depends(get_workflow)):
    return _ledger_payload(await wf.load_ledger(assessment_id))


@router.post("/{assessment_id}/estimate/lines", status_code=201)
async def add_estimate_line(
    assessment_id: str,
    payload: Dict[str, Any] = Body(...),
    wf: AssessmentWorkflow = Depends(get_workflow),
):
    return _plain(await wf.add_estimate_line(assessment_id, payload))


@router.patch("/{assessment_id}/estimate/lines/{line_id}")
async def update_estimate_line(
    assessment_id: str,
    line_id: str,
    changes: Dict[str, Any] = Body(...),
    wf: AssessmentWorkflow = Depends(get_workflow),
):
    return _plain(await wf.update_estimate_line(assessment_id, line_id, changes))


@router.delete("/{assessment_id}/estimate/lines/{line_id}", status_code=204)
async def delete_estimate_line(assessment_id: str, line_id: str, wf: AssessmentWorkflow = Depends(get_workflow)):
    await wf.delete_estimate_line(assessment_id, line_id)


@router.put("/{assessment_id}/estimate/rates")
async def set_estimate_rates(
    assessment_id: str,
    rates: Dict[str, Decimal] = Body(...),
    wf: AssessmentWorkflow = Depends(get_workflow),
):
    return _plain(await wf.set_estimate_rates(assessment_id, rates))


@router.put("/{assessment_id}/betterment/{line_id}")
async def set_betterment(
    assessment_id: str,
    line_id: str,
    req: BettermentRequest,
    wf: AssessmentWorkflow = Depends(get_workflow),
):
    return _plain(await wf.apply_betterment(assessment_id, line_id, req.betterment, req.source))


@router.post("/{assessment_id}/estimate/finalize")
async def finalize_estimate(
    assessment_id: str,
    req: Optional[ReasonRequest] = None,
    wf: AssessmentWorkflow = Depends(get_workflow),
):
    return _ledger_payload(await wf.finalize_estimate(assessment_id, req.changed_by if req else None))


# ── Additionals ──────────────────────────────────────────────────────────────

@router.post("/{assessment_id}/additionals", status_code=201)
async def open_additionals(assessment_id: str, wf: AssessmentWorkflow = Depends(get_workflow)):
    return _plain(await wf.open_additionals(assessment_id))


@router.get("/{assessment_id}/additionals")
async def get_additionals(assessment_id: str, wf: AssessmentWorkflow = Depends(get_workflow)):
    overlay = await wf.load_overlay(assessment_id)
    if overlay is None:
        return {"assessment_id": assessment_id, "items": [], "approved_totals": None}
    return _plain({
        "assessment_id": assessment_id,
        "rates": overlay.rates,
        "items": [{"item": item, "cost": overlay.item_cost(item)} for item in overlay.items],
        "removed_original_ids": sorted(overlay.removed_original_ids),
        "approved_totals": overlay.approved_totals(),
    })


@router.post("/{assessment_id}/additionals/lines", status_code=201)
async def add_additional(
    assessment_id: str,
    payload: Dict[str, Any] = Body(...),
    wf: AssessmentWorkflow = Depends(get_workflow),
):
    return _plain(await wf.add_additional(assessment_id, payload))


@router.post("/{assessment_id}/additionals/removals", status_code=201)
async def remove_estimate_line(
    assessment_id: str, req: RemovalRequest, wf: AssessmentWorkflow = Depends(get_workflow),
):
    return _plain(await wf.remove_estimate_line(assessment_id, req.line_id, req.item_id, req.changed_by))


@router.post("/{assessment_id}/additionals/{item_id}/approve")
async def approve_additional(assessment_id: str, item_id: str, wf: AssessmentWorkflow = Depends(get_workflow)):
    return _plain(await wf.approve_additional(assessment_id, item_id))


@router.post("/{assessment_id}/additionals/{item_id}/decline")
async def decline_additional(
    assessment_id: str, item_id: str, req: DeclineRequest, wf: AssessmentWorkflow = Depends(get_workflow)
):
    return _plain(await wf.decline_additional(assessment_id, item_id, req.reason, req.changed_by))


@router.post("/{assessment_id}/additionals/{item_id}/reinstate")
async def reinstate_additional(assessment_id: str, item_id: str, wf: AssessmentWorkflow = Depends(get_workflow)):
    return _plain(await wf.reinstate_additional(assessment_id, item_id))


@router.post("/{assessment_id}/additionals/{item_id}/reverse", status_code=201)
async def reverse_additional(
    assessment_id: str, item_id: str, req: ReverseRequest, wf: AssessmentWorkflow = Depends(get_workflow)
):
    return _plain(await wf.reverse_additional(assessment_id, item_id, req.reason, req.item_id, req.changed_by))


@router.delete("/{assessment_id}/additionals/{item_id}", status_code=204)
async def delete_pending_additional(
    assessment_id: str, item_id: str, wf: AssessmentWorkflow = Depends(get_workflow),
):
    await wf.delete_pending_additional(assessment_id, item_id)


# ── Reconciled set ───────────────────────────────────────────────────────────

@router.get("/{assessment_id}/reconciled")
async def get_reconciled(assessment_id: str, wf: AssessmentWorkflow = Depends(get_workflow)):
    reconciled = await wf.reconciled_lines(assessment_id)
    return reconciled.model_dump(mode="json")


# ── FRC ──────────────────────────────────────────────────────────────────────

@router.post("/{assessment_id}/frc/start", status_code=201)
async def start_frc(assessment_id: str, wf: AssessmentWorkflow = Depends(get_workflow)):
    return _plain(await wf.start_frc(assessment_id))


@router.get("/{assessment_id}/frc")
async def get_frc(assessment_id: str, wf: AssessmentWorkflow = Depends(get_workflow)):
    snapshot = await wf.load_snapshot(assessment_id)
    return {**_plain(snapshot), "needs_sync": await wf.frc_needs_sync(assessment_id)}


@router.post("/{assessment_id}/frc/merge")
async def merge_additionals(assessment_id: str, wf: AssessmentWorkflow = Depends(get_workflow)):
    return _plain(await wf.merge_additionals(assessment_id))


@router.patch("/{assessment_id}/frc/lines/{key}")
async def update_frc_line(
    assessment_id: str, key: str, req: FRCLineUpdateRequest, wf: AssessmentWorkflow = Depends(get_workflow)
):
    return _plain(await wf.update_frc_line(
        assessment_id, key, req.actual_total, req.decision, req.note, req.actual_components
    ))


@router.post("/{assessment_id}/frc/complete")
async def complete_frc(assessment_id: str, req: SignOffRequest, wf: AssessmentWorkflow = Depends(get_workflow)):
    return _plain(await wf.complete_frc(assessment_id, req.name, req.role, req.email, req.notes))


@router.post("/{assessment_id}/frc/reopen")
async def reopen_frc(assessment_id: str, req: ReasonRequest, wf: AssessmentWorkflow = Depends(get_workflow)):
    return _plain(await wf.reopen_frc(assessment_id, req.reason, req.changed_by))


@router.get("/{assessment_id}/frc/breakdown")
async def frc_breakdown(assessment_id: str, wf: AssessmentWorkflow = Depends(get_workflow)):
    return _plain(await wf.frc_breakdown(assessment_id))
