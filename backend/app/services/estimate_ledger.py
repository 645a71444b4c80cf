"""
EstimateLedger — the base set of estimate lines for one assessment.

The ledger owns its lines exclusively. Lines are editable until the ledger is
finalised; finalising copies the rate snapshot onto the ledger permanently.
Stage legality of each operation is enforced by the workflow through the stage
gate; the ledger itself refuses edits once it has been finalised.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from app.models.assessment import AssessmentStage, RateSnapshot
from app.models.line_items import Betterment, LineCost, LineItem, parse_line_item, replace_fields
from app.services.calculation_engine import CalculationEngine
from app.services.errors import LineItemNotFound, StageViolation, ValidationError
from app.services.stage_gate import ESTIMATE_EDIT_STAGES

logger = logging.getLogger("costing-ledger")


class EstimateLedger(BaseModel):
    assessment_id: str
    lines: List[LineItem] = Field(default_factory=list)
    rates: RateSnapshot = Field(default_factory=RateSnapshot)
    rate_overrides: Dict[str, Decimal] = Field(default_factory=dict)
    finalized_at: Optional[datetime] = None
    # stored-write counter, checked on save
    version: int = 0

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None

    def _ensure_editable(self, operation: str) -> None:
        if self.is_finalized:
            raise StageViolation(
                operation,
                AssessmentStage.ESTIMATE_FINALIZED.value,
                (s.value for s in ESTIMATE_EDIT_STAGES),
                message=f"{operation} is not allowed: estimate for assessment "
                        f"{self.assessment_id} is finalized",
            )

    def _index_of(self, line_id: str) -> int:
        for idx, line in enumerate(self.lines):
            if line.id == line_id:
                return idx
        raise LineItemNotFound(line_id, owner="estimate")

    # ------------------------------------------------------------------
    # Line operations
    # ------------------------------------------------------------------

    def get_line(self, line_id: str):
        return self.lines[self._index_of(line_id)]

    def has_line(self, line_id: str) -> bool:
        return any(line.id == line_id for line in self.lines)

    def add_line(self, data: Any):
        self._ensure_editable("estimate.add_line")
        line = parse_line_item(data)
        if self.has_line(line.id):
            raise ValidationError(f"Duplicate line id {line.id}", line_id=line.id)
        self.lines.append(line)
        logger.debug("estimate line added", extra={"assessment_id": self.assessment_id})
        return line

    def update_line(self, line_id: str, changes: Dict[str, Any]):
        """Apply field changes to a line; the result is re-validated as a whole."""
        self._ensure_editable("estimate.update_line")
        idx = self._index_of(line_id)
        if "id" in changes and changes["id"] != line_id:
            raise ValidationError("Line id cannot be changed", line_id=line_id)
        current = self.lines[idx]
        if changes.get("process_type", current.process_type) != current.process_type:
            # A new variant keeps nothing of the old cost inputs
            payload = {"id": line_id, "description": current.description, **changes}
        else:
            payload = {**current.model_dump(exclude_none=True), **changes}
        updated = parse_line_item(payload)
        self.lines[idx] = updated
        return updated

    def delete_line(self, line_id: str) -> None:
        self._ensure_editable("estimate.delete_line")
        del self.lines[self._index_of(line_id)]

    def set_betterment(self, line_id: str, betterment: Optional[Betterment]):
        self._ensure_editable("estimate.set_betterment")
        idx = self._index_of(line_id)
        self.lines[idx] = replace_fields(self.lines[idx], betterment=betterment)
        return self.lines[idx]

    def set_rates(self, rates: Union[RateSnapshot, Dict[str, Any]]) -> RateSnapshot:
        """
        Override rates for this assessment only. Overrides survive later
        refreshes of the global rate card and are applied again at finalize.
        """
        self._ensure_editable("estimate.set_rates")
        overrides = rates.model_dump() if isinstance(rates, RateSnapshot) else dict(rates)
        unknown = set(overrides) - set(RateSnapshot.model_fields)
        if unknown:
            raise ValidationError(f"Unknown rate field(s): {', '.join(sorted(unknown))}")
        merged = {**self.rate_overrides, **overrides}
        self.rates = replace_fields(self.rates, **merged)
        self.rate_overrides = {k: getattr(self.rates, k) for k in merged}
        return self.rates

    def apply_global_rates(self, global_rates: RateSnapshot) -> RateSnapshot:
        """Re-base unfinalised pricing on the current global card plus overrides."""
        if not self.is_finalized:
            self.rates = replace_fields(global_rates, **self.rate_overrides)
        return self.rates

    def finalize(self, global_rates: RateSnapshot, at: datetime) -> RateSnapshot:
        """Freeze the rates onto the ledger. Only the workflow calls this, inside a CAS."""
        self._ensure_editable("estimate.finalize")
        self.apply_global_rates(global_rates)
        self.finalized_at = at
        return self.rates

    # ------------------------------------------------------------------
    # Costing
    # ------------------------------------------------------------------

    @property
    def engine(self) -> CalculationEngine:
        return CalculationEngine(self.rates)

    def line_cost(self, line_id: str) -> LineCost:
        return self.engine.line_cost(self.get_line(line_id))

    def priced_lines(self) -> List[Tuple[Any, LineCost]]:
        engine = self.engine
        return [(line, engine.line_cost(line)) for line in self.lines]

    def totals(self) -> Dict[str, Decimal]:
        return self.engine.document_totals(cost.total for _, cost in self.priced_lines())
