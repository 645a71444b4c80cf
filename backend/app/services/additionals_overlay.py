"""
AdditionalsOverlay — work discovered after the estimate, layered over the ledger.

Every overlay item carries an ``action`` (added / removed / reversal) and a
``status`` (pending / approved / declined). The overlay owns its items and only
references base estimate lines by id.

Removing base scope follows the dual-line pattern: the removal item copies the
base line's inputs and is priced with sign -1, so the original (+X) and the
approved removal (-X) net to exactly zero.

Lifecycle (per item):
    pending  → approved | declined
    declined → approved                      (reinstate)
    approved → omitted by an approved reversal item
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from app.models.assessment import AssessmentStage, RateSnapshot, utcnow
from app.models.line_items import (
    AdditionalAction,
    AdditionalLineItem,
    AdditionalStatus,
    Betterment,
    LineCost,
    build_model,
    parse_line_item,
    replace_fields,
)
from app.services.calculation_engine import CalculationEngine
from app.services.errors import (
    LineItemNotFound,
    ReconciliationInvariantViolation,
    StageViolation,
    ValidationError,
)

logger = logging.getLogger("costing-additionals")


def _new_item_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class AdditionalsOverlay(BaseModel):
    assessment_id: str
    rates: RateSnapshot
    items: List[AdditionalLineItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @classmethod
    def open_for(cls, ledger) -> "AdditionalsOverlay":
        """Create the overlay for a finalised ledger, copying its frozen rates."""
        if not ledger.is_finalized:
            raise StageViolation(
                "additionals.open",
                AssessmentStage.ESTIMATE_SENT.value,
                [AssessmentStage.ESTIMATE_FINALIZED.value],
                message=f"Estimate for assessment {ledger.assessment_id} must be finalized "
                        "before additionals can be opened",
            )
        return cls(assessment_id=ledger.assessment_id, rates=ledger.rates.model_copy())

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _index_of(self, item_id: str) -> int:
        for idx, item in enumerate(self.items):
            if item.id == item_id:
                return idx
        raise LineItemNotFound(item_id, owner="additionals")

    def get(self, item_id: str) -> AdditionalLineItem:
        return self.items[self._index_of(item_id)]

    def has_item(self, item_id: str) -> bool:
        return any(item.id == item_id for item in self.items)

    def _store(self, idx: int, item: AdditionalLineItem) -> AdditionalLineItem:
        self.items[idx] = item
        return item

    def approved_reversal_targets(self) -> Set[str]:
        return {
            item.reversal_target_id
            for item in self.items
            if item.action == AdditionalAction.REVERSAL and item.status == AdditionalStatus.APPROVED
        }

    def open_reversal_targets(self) -> Set[str]:
        """Targets of reversals that are pending or approved."""
        return {
            item.reversal_target_id
            for item in self.items
            if item.action == AdditionalAction.REVERSAL and item.status != AdditionalStatus.DECLINED
        }

    @property
    def removed_original_ids(self) -> Set[str]:
        """Base line ids referenced by a removal, whatever its status, unless reversed."""
        reversed_ids = self.approved_reversal_targets()
        return {
            item.original_line_item_id
            for item in self.items
            if item.action == AdditionalAction.REMOVED and item.id not in reversed_ids
        }

    # ------------------------------------------------------------------
    # Costing
    # ------------------------------------------------------------------

    @property
    def engine(self) -> CalculationEngine:
        return CalculationEngine(self.rates)

    @staticmethod
    def sign_of(item: AdditionalLineItem) -> int:
        return -1 if item.action == AdditionalAction.REMOVED else 1

    def item_cost(self, item: AdditionalLineItem) -> LineCost:
        return self.engine.line_cost(item.line, self.sign_of(item))

    def approved_totals(self) -> Dict[str, Decimal]:
        """Subtotal / VAT / total of approved additionals still in effect."""
        reversed_ids = self.approved_reversal_targets()
        totals = (
            self.item_cost(item).total
            for item in self.items
            if item.status == AdditionalStatus.APPROVED
            and item.action != AdditionalAction.REVERSAL
            and item.id not in reversed_ids
        )
        return self.engine.document_totals(totals)

    def verify_removal_pair(self, item: AdditionalLineItem, ledger) -> None:
        """The removal and its base line must net to exactly zero."""
        original = ledger.get_line(item.original_line_item_id)
        base_total = ledger.engine.line_total(original)
        removal_total = self.item_cost(item).total
        if base_total + removal_total != 0:
            raise ReconciliationInvariantViolation(
                f"Removal {item.id} does not cancel line {original.id}: "
                f"{base_total} + {removal_total} != 0",
                item_id=item.id,
                original_line_item_id=original.id,
                net=str(base_total + removal_total),
            )

    # ------------------------------------------------------------------
    # Item operations
    # ------------------------------------------------------------------

    def add_line(self, data: Any) -> AdditionalLineItem:
        line = parse_line_item(data)
        if self.has_item(line.id):
            raise ValidationError(f"Duplicate additional id {line.id}", line_id=line.id)
        item = build_model(AdditionalLineItem, line=line, action=AdditionalAction.ADDED)
        self.items.append(item)
        return item

    def remove_base_line(self, ledger, line_id: str, item_id: Optional[str] = None) -> AdditionalLineItem:
        """Raise the negative counterpart that removes base line ``line_id``."""
        original = ledger.get_line(line_id)
        for item in self.items:
            if (
                item.action == AdditionalAction.REMOVED
                and item.original_line_item_id == line_id
                and item.status != AdditionalStatus.DECLINED
                and item.id not in self.approved_reversal_targets()
            ):
                raise ValidationError(
                    f"Line {line_id} already has an open removal ({item.id})",
                    line_id=line_id,
                    removal_id=item.id,
                )
        new_id = item_id or _new_item_id(f"rm-{line_id}")
        if self.has_item(new_id):
            raise ValidationError(f"Duplicate additional id {new_id}", line_id=new_id)
        item = build_model(
            AdditionalLineItem,
            line=original.model_copy(update={"id": new_id}),
            action=AdditionalAction.REMOVED,
            original_line_item_id=line_id,
        )
        self.items.append(item)
        return item

    def approve(self, item_id: str, ledger=None) -> AdditionalLineItem:
        idx = self._index_of(item_id)
        item = self.items[idx]
        if item.status != AdditionalStatus.PENDING:
            raise ValidationError(
                f"Only pending additionals can be approved ({item_id} is {item.status.value})",
                item_id=item_id,
            )
        if item.action == AdditionalAction.REVERSAL:
            self._check_reversible(item.reversal_target_id, ignore=item_id)
        approved = replace_fields(item, status=AdditionalStatus.APPROVED)
        if approved.action == AdditionalAction.REMOVED:
            if ledger is None:
                raise ValidationError("Approving a removal needs the base ledger", item_id=item_id)
            self.verify_removal_pair(approved, ledger)
        return self._store(idx, approved)

    def decline(self, item_id: str, reason: str) -> AdditionalLineItem:
        idx = self._index_of(item_id)
        item = self.items[idx]
        if item.status != AdditionalStatus.PENDING:
            raise ValidationError(
                f"Only pending additionals can be declined ({item_id} is {item.status.value}); "
                "reverse an approved item instead",
                item_id=item_id,
            )
        if not (reason or "").strip():
            raise ValidationError("A decline reason is required", item_id=item_id)
        return self._store(idx, replace_fields(
            item, status=AdditionalStatus.DECLINED, decline_reason=reason.strip(),
        ))

    def reinstate(self, item_id: str, ledger=None) -> AdditionalLineItem:
        """Bring a declined item back as approved."""
        idx = self._index_of(item_id)
        item = self.items[idx]
        if item.status != AdditionalStatus.DECLINED:
            raise ValidationError(f"Only declined additionals can be reinstated ({item_id})", item_id=item_id)
        if item.action == AdditionalAction.REVERSAL:
            self._check_reversible(item.reversal_target_id, ignore=item_id)
        reinstated = replace_fields(item, status=AdditionalStatus.APPROVED, decline_reason=None)
        if reinstated.action == AdditionalAction.REMOVED:
            if ledger is None:
                raise ValidationError("Reinstating a removal needs the base ledger", item_id=item_id)
            self.verify_removal_pair(reinstated, ledger)
        return self._store(idx, reinstated)

    def _check_reversible(self, target_id: str, ignore: Optional[str] = None) -> AdditionalLineItem:
        target = self.get(target_id)
        if target.action == AdditionalAction.REVERSAL:
            raise ValidationError("A reversal cannot itself be reversed", item_id=target_id)
        if target.status != AdditionalStatus.APPROVED:
            raise ValidationError(
                f"Only approved additionals can be reversed ({target_id} is {target.status.value})",
                item_id=target_id,
            )
        others = {
            item.id for item in self.items
            if item.action == AdditionalAction.REVERSAL
            and item.reversal_target_id == target_id
            and item.status != AdditionalStatus.DECLINED
            and item.id != ignore
        }
        if others:
            raise ValidationError(
                f"Additional {target_id} already has a reversal ({', '.join(sorted(others))})",
                item_id=target_id,
            )
        return target

    def reverse(self, target_id: str, reason: str = "", item_id: Optional[str] = None) -> AdditionalLineItem:
        """Raise a pending reversal of an approved added/removed item."""
        target = self._check_reversible(target_id)
        new_id = item_id or _new_item_id(f"rev-{target_id}")
        if self.has_item(new_id):
            raise ValidationError(f"Duplicate additional id {new_id}", line_id=new_id)
        item = build_model(
            AdditionalLineItem,
            line=target.line.model_copy(update={"id": new_id}),
            action=AdditionalAction.REVERSAL,
            reversal_target_id=target_id,
            reversal_reason=(reason or "").strip() or None,
            original_line_item_id=target.original_line_item_id,
        )
        self.items.append(item)
        return item

    def delete_pending(self, item_id: str) -> None:
        idx = self._index_of(item_id)
        if self.items[idx].status != AdditionalStatus.PENDING:
            raise ValidationError(f"Only pending additionals can be deleted ({item_id})", item_id=item_id)
        del self.items[idx]

    def set_betterment(self, item_id: str, betterment: Optional[Betterment]) -> AdditionalLineItem:
        idx = self._index_of(item_id)
        item = self.items[idx]
        if item.status == AdditionalStatus.DECLINED:
            raise ValidationError("Betterment cannot be applied to a declined additional", item_id=item_id)
        if item.action != AdditionalAction.ADDED:
            raise ValidationError(
                f"Betterment cannot be applied to a {item.action.value} additional", item_id=item_id,
            )
        return self._store(idx, replace_fields(item, line=replace_fields(item.line, betterment=betterment)))

    def items_with_status(self, statuses: Iterable[AdditionalStatus]) -> List[AdditionalLineItem]:
        wanted = set(statuses)
        return [item for item in self.items if item.status in wanted]
