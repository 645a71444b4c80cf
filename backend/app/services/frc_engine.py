"""
FRC engine — final repair costing: quoted baseline vs actual repair cost.

Covers:
  - Snapshot of the reconciled line set at FRC start (quoted = actual = line total)
  - Per-line actual cost (per component or as a total) and decisions
    (accepted / adjusted / disputed)
  - Idempotent merge of additionals approved after FRC started
  - Quoted vs actual breakdown per source and per cost category, both sides
  - Sign-off and administrative reopen

The snapshot owns copies of the reconciled lines. Later edits to the ledger or
the overlay reach it only through an explicit merge.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from app.models.assessment import AssessmentStage, FRCStatus, RateSnapshot, SignOff
from app.models.line_items import (
    AdditionalStatus,
    FRCDecision,
    FRCLineItem,
    LineCost,
    LineSource,
    ReconciledLineItem,
)
from app.services.calculation_engine import CalculationEngine, money
from app.services.errors import LineItemNotFound, StageViolation, ValidationError
from app.services.reconciliation import ReconciledLineSet, is_payable, verify_invariants

logger = logging.getLogger("costing-frc")

_ZERO = Decimal("0.00")

# FRC status -> the assessment stage it corresponds to, for error reporting
_STATUS_STAGE = {
    FRCStatus.NOT_STARTED: AssessmentStage.ESTIMATE_FINALIZED,
    FRCStatus.IN_PROGRESS: AssessmentStage.FRC_IN_PROGRESS,
    FRCStatus.COMPLETED: AssessmentStage.ARCHIVED,
}

# Breakdown categories -> LineCost fields summed into them
_CATEGORIES = {
    "parts": ("part_price",),
    "labour": ("strip_assemble", "labour"),
    "paint": ("paint",),
    "outwork": ("outwork",),
}

# Payable components of a line; their sum is the line total
_PAYABLE = ("part_price", "strip_assemble", "labour", "paint", "outwork")
# Payable component -> the nett and markup it is made of
_DETAIL = {
    "part_price": ("part_price_nett", "part_markup"),
    "outwork": ("outwork_nett", "outwork_markup"),
}
ACTUAL_COMPONENTS = _PAYABLE + _DETAIL["part_price"] + _DETAIL["outwork"]


def _frc_line(line: ReconciledLineItem) -> FRCLineItem:
    fields = {name: getattr(line, name) for name in ReconciledLineItem.model_fields}
    return FRCLineItem(**fields, quoted_total=line.total, actual_cost=line.cost)


def _amount(value: Any, key: str, name: str) -> Decimal:
    try:
        return money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{name} must be a number, got {value!r}", key=key) from None


def _actual_cost(line: FRCLineItem, components: Optional[Dict[str, Any]], actual_total: Any) -> LineCost:
    """
    Actual cost of ``line`` from reported components, a reported total, or both.

    Components not reported keep their current actual value. A part price or
    outwork charge that is not reported itself follows its reported nett and
    markup, less the betterment deducted on the quote. A total reported on its
    own moves the largest component by the difference. When both are reported
    they must agree.
    """
    components = dict(components or {})
    unknown = set(components) - set(ACTUAL_COMPONENTS)
    if unknown:
        raise ValidationError(
            f"Unknown actual cost components: {', '.join(sorted(unknown))}",
            key=line.key,
            allowed=list(ACTUAL_COMPONENTS),
        )
    reported = {name: _amount(value, line.key, name) for name, value in components.items()}
    values = line.actual_cost.model_dump()
    values.update(reported)

    quoted = line.cost
    for payable, (nett, markup) in _DETAIL.items():
        if payable not in reported and (nett in reported or markup in reported):
            deduction = getattr(quoted, nett) + getattr(quoted, markup) - getattr(quoted, payable)
            values[payable] = values[nett] + values[markup] - deduction

    total = sum((values[name] for name in _PAYABLE), _ZERO)
    if actual_total is not None:
        target = _amount(actual_total, line.key, "actual_total")
        if reported and target != total:
            raise ValidationError(
                f"Actual components of {line.key} add up to {total}, not {target}",
                key=line.key,
            )
        delta = target - total
        if delta:
            largest = max(_PAYABLE, key=lambda name: abs(values[name]))
            values[largest] += delta
            if largest in _DETAIL:
                values[_DETAIL[largest][0]] += delta
        total = target
    values["total"] = total
    return LineCost(**values)


class FRCSnapshot(BaseModel):
    assessment_id: str
    status: FRCStatus = FRCStatus.NOT_STARTED
    rates: RateSnapshot
    lines: List[FRCLineItem] = Field(default_factory=list)
    line_items_version: int = 0
    started_at: Optional[datetime] = None
    last_merge_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    sign_off: Optional[SignOff] = None
    # line_items_version counts line-set changes; version counts stored writes
    version: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def start_from(cls, reconciled: ReconciledLineSet, at: datetime) -> "FRCSnapshot":
        """Freeze the reconciled set as the quoted baseline."""
        verify_invariants(reconciled.lines)
        return cls(
            assessment_id=reconciled.assessment_id,
            status=FRCStatus.IN_PROGRESS,
            rates=reconciled.rates.model_copy(),
            lines=[_frc_line(line) for line in reconciled.lines],
            line_items_version=1,
            started_at=at,
            last_merge_at=at,
        )

    def _require_status(self, operation: str, status: FRCStatus) -> None:
        if self.status != status:
            raise StageViolation(
                operation,
                _STATUS_STAGE[self.status].value,
                [_STATUS_STAGE[status].value],
                message=f"{operation} requires FRC {status.value}, FRC for assessment "
                        f"{self.assessment_id} is {self.status.value}",
            )

    def complete(self, sign_off: SignOff) -> None:
        """Sign off: freezes every actual total and decision."""
        self._require_status("frc.complete", FRCStatus.IN_PROGRESS)
        self.status = FRCStatus.COMPLETED
        self.sign_off = sign_off
        self.completed_at = sign_off.signed_off_at

    def reopen(self) -> None:
        """Administrative override: back to in progress, sign-off cleared."""
        self._require_status("frc.reopen", FRCStatus.COMPLETED)
        self.status = FRCStatus.IN_PROGRESS
        self.sign_off = None
        self.completed_at = None

    # ------------------------------------------------------------------
    # Lines
    # ------------------------------------------------------------------

    def _index_of(self, key: str) -> int:
        for idx, line in enumerate(self.lines):
            if line.key == key:
                return idx
        raise LineItemNotFound(key, owner="frc")

    def get_line(self, key: str) -> FRCLineItem:
        return self.lines[self._index_of(key)]

    def update_line(
        self,
        key: str,
        actual_total: Any = None,
        decision: Optional[FRCDecision] = None,
        note: Optional[str] = None,
        actual_components: Optional[Dict[str, Any]] = None,
    ) -> FRCLineItem:
        """
        Record the actual cost of one line.

        The actual cost can be given as a total, per component
        (``ACTUAL_COMPONENTS``), or both. Accepted resets actual to quoted.
        Adjusted needs an actual cost (one given without a decision is treated
        as an adjustment). Disputed needs a note.
        """
        self._require_status("frc.update_line", FRCStatus.IN_PROGRESS)
        idx = self._index_of(key)
        line = self.lines[idx]
        if line.declined_via_additionals:
            raise ValidationError(f"Declined line {key} is not part of the repair costing", key=key)

        reported = actual_total is not None or bool(actual_components)
        decision = FRCDecision(decision) if decision is not None else None
        if decision is None:
            if not reported:
                raise ValidationError("Nothing to update: give an actual cost or a decision", key=key)
            decision = FRCDecision.ADJUSTED

        if decision == FRCDecision.ACCEPTED:
            actual = line.cost
        elif decision == FRCDecision.ADJUSTED:
            if not reported:
                raise ValidationError("An adjusted line needs an actual total or actual components", key=key)
            actual = _actual_cost(line, actual_components, actual_total)
        elif decision == FRCDecision.DISPUTED:
            if not (note or "").strip():
                raise ValidationError("A disputed line needs a note", key=key)
            actual = _actual_cost(line, actual_components, actual_total) if reported else line.actual_cost
        else:
            if reported:
                raise ValidationError("A pending line keeps its quoted cost", key=key)
            actual = line.cost

        updated = line.model_copy(update={
            "actual_cost": actual,
            "decision": decision,
            "decision_note": (note or "").strip() or None,
        })
        if updated != line:
            self.lines[idx] = updated
            self.line_items_version += 1
        return updated

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def _merged_lines(self, reconciled: ReconciledLineSet) -> List[FRCLineItem]:
        incoming = {line.key: line for line in reconciled.lines}
        merged: List[FRCLineItem] = []
        for line in self.lines:
            fresh = incoming.get(line.key)
            if line.source == LineSource.ESTIMATE:
                if fresh is not None and fresh.removed_via_additionals != line.removed_via_additionals:
                    line = line.model_copy(update={"removed_via_additionals": fresh.removed_via_additionals})
                merged.append(line)
                continue
            if fresh is None:
                # reversed or deleted since the last merge
                continue
            refreshed = _frc_line(fresh)
            if line.decision != FRCDecision.PENDING:
                kept = {"decision": line.decision, "decision_note": line.decision_note}
                # an accepted line stays at its quote
                if line.decision != FRCDecision.ACCEPTED:
                    kept["actual_cost"] = line.actual_cost
                refreshed = refreshed.model_copy(update=kept)
            merged.append(refreshed)

        known = {line.key for line in self.lines}
        merged.extend(
            _frc_line(line) for line in reconciled.lines
            if line.source == LineSource.ADDITIONAL and line.key not in known
        )
        return merged

    def needs_sync(self, reconciled: ReconciledLineSet) -> bool:
        """True when a merge would change the snapshot's line set."""
        return self._merged_lines(reconciled) != self.lines

    def merge_additionals(self, reconciled: ReconciledLineSet, at: datetime) -> bool:
        """
        Pull additionals approved (or declined, or reversed) since FRC started.

        Additional lines take status, markers and quoted cost from the overlay
        on every merge. A decision already made on one is kept, together with
        its actual cost unless the line was accepted. Returns whether anything
        changed. A merge with nothing new leaves the snapshot untouched,
        version included.
        """
        self._require_status("frc.merge_additionals", FRCStatus.IN_PROGRESS)
        merged = self._merged_lines(reconciled)
        if merged == self.lines:
            return False
        verify_invariants(merged)
        self.lines = merged
        self.line_items_version += 1
        self.last_merge_at = at
        logger.info(
            "additionals merged into FRC",
            extra={"assessment_id": self.assessment_id, "operation": "frc.merge_additionals"},
        )
        return True

    # ------------------------------------------------------------------
    # Totals
    # ------------------------------------------------------------------

    @property
    def engine(self) -> CalculationEngine:
        return CalculationEngine(self.rates)

    def payable_lines(self, source: Optional[LineSource] = None) -> List[FRCLineItem]:
        return [
            line for line in self.lines
            if is_payable(line) and (source is None or line.source == source)
        ]

    def quoted_totals(self) -> Dict[str, Decimal]:
        return self.engine.document_totals(line.quoted_total for line in self.payable_lines())

    def actual_totals(self) -> Dict[str, Decimal]:
        return self.engine.document_totals(line.actual_total for line in self.payable_lines())

    @staticmethod
    def _sum(values: Iterable[Decimal]) -> Decimal:
        return sum(values, _ZERO)

    def _categories(self, lines: List[FRCLineItem], side: str = "cost") -> Dict[str, Decimal]:
        costs = [getattr(line, side) for line in lines]
        result = {
            name: self._sum(getattr(cost, f) for cost in costs for f in fields)
            for name, fields in _CATEGORIES.items()
        }
        result["parts_nett"] = self._sum(cost.part_price_nett for cost in costs)
        result["outwork_nett"] = self._sum(cost.outwork_nett for cost in costs)
        result["markup"] = self._sum(cost.part_markup + cost.outwork_markup for cost in costs)
        result["betterment"] = self._sum(cost.betterment_total for cost in costs)
        return result

    def breakdown(self) -> Dict[str, Any]:
        """Quoted vs actual per source and per category, as plain data."""
        per_source = {}
        for source in LineSource:
            lines = self.payable_lines(source)
            per_source[source.value] = {
                "quoted": self._sum(line.quoted_total for line in lines),
                "actual": self._sum(line.actual_total for line in lines),
                "categories": self._categories(lines),
                "actual_categories": self._categories(lines, "actual_cost"),
            }
        quoted = self.quoted_totals()
        actual = self.actual_totals()
        return {
            "assessment_id": self.assessment_id,
            "status": self.status.value,
            "line_items_version": self.line_items_version,
            "sources": per_source,
            "categories": self._categories(self.payable_lines()),
            "actual_categories": self._categories(self.payable_lines(), "actual_cost"),
            "quoted": quoted,
            "actual": actual,
            "variance": actual["total"] - quoted["total"],
            "decisions": {
                d.value: sum(1 for line in self.payable_lines() if line.decision == d)
                for d in FRCDecision
            },
            "pending_additionals": sum(
                1 for line in self.lines
                if line.source == LineSource.ADDITIONAL and line.status == AdditionalStatus.PENDING
            ),
        }
