"""
Reconciliation composer — merges the estimate ledger and the additionals overlay
into the single line set used for display, totals and the FRC baseline.

Composition rules:
  1. R = base ids referenced by a removal additional (any status, unless reversed).
  2. Every base line is carried forward, marked ``removed_via_additionals`` if in R.
  3. Every added/removed additional is carried forward whatever its status, marked
     ``declined_via_additionals`` when declined. Removals carry negative totals.
  4. Reversal items, and the items an approved reversal targets, are omitted.

Whether a line counts toward money is decided by ``is_payable`` and nothing
else. Markers are presentation metadata and are never used as a filter.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, computed_field

from app.models.assessment import RateSnapshot
from app.models.line_items import (
    AdditionalAction,
    AdditionalStatus,
    LineSource,
    ReconciledLineItem,
)
from app.services.calculation_engine import CalculationEngine
from app.services.errors import ReconciliationInvariantViolation

logger = logging.getLogger("costing-reconciliation")

_ZERO = Decimal("0.00")


# ---------------------------------------------------------------------------
# The shared predicate
# ---------------------------------------------------------------------------

def is_payable(line: ReconciledLineItem) -> bool:
    """
    True when ``line`` contributes to a payable total.

    Base lines are implicitly approved and always count (a removal is paid back
    by its negative counterpart, not by hiding the original). Additional lines
    count only when approved. Declined lines never count.
    """
    if line.declined_via_additionals or line.status == AdditionalStatus.DECLINED:
        return False
    if line.source == LineSource.ESTIMATE:
        return True
    return line.status == AdditionalStatus.APPROVED and line.action != AdditionalAction.REVERSAL


def payable_lines(lines: Iterable[ReconciledLineItem]) -> List[ReconciledLineItem]:
    return [line for line in lines if is_payable(line)]


def payable_total(lines: Iterable[ReconciledLineItem]) -> Decimal:
    return sum((line.total for line in lines if is_payable(line)), _ZERO)


def badge_counts(lines: Iterable[ReconciledLineItem]) -> Dict[str, int]:
    counts = {"removed": 0, "declined": 0, "pending": 0, "approved": 0, "payable": 0}
    for line in lines:
        if line.removed_via_additionals:
            counts["removed"] += 1
        if line.declined_via_additionals:
            counts["declined"] += 1
        if line.source == LineSource.ADDITIONAL and line.status == AdditionalStatus.PENDING:
            counts["pending"] += 1
        if line.source == LineSource.ADDITIONAL and line.status == AdditionalStatus.APPROVED:
            counts["approved"] += 1
        if is_payable(line):
            counts["payable"] += 1
    return counts


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------

def compose(ledger, overlay=None) -> List[ReconciledLineItem]:
    """Pure composition of base ledger + overlay into reconciled lines."""
    removed_ids = overlay.removed_original_ids if overlay is not None else set()
    lines: List[ReconciledLineItem] = []

    engine = ledger.engine
    for base in ledger.lines:
        lines.append(ReconciledLineItem(
            id=base.id,
            source=LineSource.ESTIMATE,
            line=base,
            cost=engine.line_cost(base),
            status=AdditionalStatus.APPROVED,
            removed_via_additionals=base.id in removed_ids,
        ))

    if overlay is None:
        return lines

    reversed_ids = overlay.approved_reversal_targets()
    for item in overlay.items:
        if item.action == AdditionalAction.REVERSAL or item.id in reversed_ids:
            continue
        declined = item.status == AdditionalStatus.DECLINED
        lines.append(ReconciledLineItem(
            id=item.id,
            source=LineSource.ADDITIONAL,
            line=item.line,
            cost=overlay.item_cost(item),
            action=item.action,
            status=item.status,
            original_line_item_id=item.original_line_item_id,
            declined_via_additionals=declined,
            decline_reason=item.decline_reason if declined else None,
        ))
    return lines


def verify_invariants(lines: List[ReconciledLineItem]) -> None:
    """
    Assert the money rules on a composed set. Raises
    ReconciliationInvariantViolation; callers must not persist the set then.
    """
    base_by_id = {line.id: line for line in lines if line.source == LineSource.ESTIMATE}
    for line in lines:
        if line.status == AdditionalStatus.DECLINED and not line.declined_via_additionals:
            raise ReconciliationInvariantViolation(
                f"Declined line {line.id} is missing its declined marker", line_id=line.id,
            )
        if line.declined_via_additionals and is_payable(line):
            raise ReconciliationInvariantViolation(
                f"Declined line {line.id} would be counted", line_id=line.id,
            )
        if line.action == AdditionalAction.REMOVED and line.status == AdditionalStatus.APPROVED:
            original = base_by_id.get(line.original_line_item_id)
            if original is None:
                raise ReconciliationInvariantViolation(
                    f"Removal {line.id} references line {line.original_line_item_id} "
                    "which is missing from the reconciled set",
                    line_id=line.id,
                )
            if not original.removed_via_additionals:
                raise ReconciliationInvariantViolation(
                    f"Line {original.id} is removed by {line.id} but not marked", line_id=original.id,
                )
            net = original.total + line.total
            if net != 0:
                raise ReconciliationInvariantViolation(
                    f"Removal pair {original.id}/{line.id} nets to {net}, expected 0",
                    line_id=line.id,
                    net=str(net),
                )


class ReconciledLineSet(BaseModel):
    """Composed lines plus payable totals, as plain data for renderers."""

    assessment_id: str
    rates: RateSnapshot
    lines: List[ReconciledLineItem]

    @computed_field
    @property
    def totals(self) -> Dict[str, Decimal]:
        engine = CalculationEngine(self.rates)
        return engine.document_totals(line.total for line in self.lines if is_payable(line))

    @computed_field
    @property
    def badge_counts(self) -> Dict[str, int]:
        return badge_counts(self.lines)

    @property
    def payable_subtotal(self) -> Decimal:
        return self.totals["subtotal"]

    @property
    def vat_amount(self) -> Decimal:
        return self.totals["vat_amount"]

    @property
    def payable_total(self) -> Decimal:
        return self.totals["total"]

    def find(self, key: str) -> Optional[ReconciledLineItem]:
        return next((line for line in self.lines if line.key == key), None)


def reconcile(ledger, overlay=None) -> ReconciledLineSet:
    """Compose, verify and wrap. The entry point for display, totals and FRC start."""
    lines = compose(ledger, overlay)
    verify_invariants(lines)
    logger.debug(
        "reconciled line set composed",
        extra={"assessment_id": ledger.assessment_id},
    )
    return ReconciledLineSet(assessment_id=ledger.assessment_id, rates=ledger.rates, lines=lines)
