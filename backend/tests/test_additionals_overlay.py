"""
test_additionals_overlay.py — Unit tests for AdditionalsOverlay.

Tests cover:
  - Opening only on a finalised ledger, with the ledger's frozen rates
  - Added items and the approve / decline / reinstate lifecycle
  - Removal of base lines as priced negative counterparts
  - Reversal of approved items (no double reversal, no reversal of a reversal)
  - Deleting pending items and betterment restrictions
  - Approved totals

All tests are pure unit tests; no database or external services required.
"""

from decimal import Decimal

import pytest

from app.models.line_items import (
    AdditionalAction,
    AdditionalStatus,
    Betterment,
    replace_fields,
)
from app.services.additionals_overlay import AdditionalsOverlay
from app.services.errors import (
    LineItemNotFound,
    ReconciliationInvariantViolation,
    StageViolation,
    ValidationError,
)
from app.services.estimate_ledger import EstimateLedger


_EXTRA = {"id": "X1", "process_type": "align", "labour_hours": "2"}


# ===========================================================================
# Class 1: Opening
# ===========================================================================

class TestOpen:

    def test_requires_finalised_ledger(self, rates):
        with pytest.raises(StageViolation):
            AdditionalsOverlay.open_for(EstimateLedger(assessment_id="A-2", rates=rates))

    def test_copies_ledger_rates(self, overlay, finalized_ledger):
        assert overlay.rates == finalized_ledger.rates
        assert overlay.items == []


# ===========================================================================
# Class 2: Added items
# ===========================================================================

class TestAddedItems:

    def test_add_is_pending(self, overlay):
        item = overlay.add_line(_EXTRA)
        assert item.action == AdditionalAction.ADDED
        assert item.status == AdditionalStatus.PENDING
        assert overlay.item_cost(item).total == Decimal("1000.00")

    def test_duplicate_id(self, overlay):
        overlay.add_line(_EXTRA)
        with pytest.raises(ValidationError):
            overlay.add_line(_EXTRA)

    def test_pending_not_in_approved_totals(self, overlay):
        overlay.add_line(_EXTRA)
        assert overlay.approved_totals()["total"] == Decimal("0.00")

    def test_approve(self, overlay):
        overlay.add_line(_EXTRA)
        overlay.approve("X1")
        totals = overlay.approved_totals()
        assert totals["subtotal"] == Decimal("1000.00")
        assert totals["vat_amount"] == Decimal("150.00")
        assert totals["total"] == Decimal("1150.00")

    def test_approve_twice(self, overlay):
        overlay.add_line(_EXTRA)
        overlay.approve("X1")
        with pytest.raises(ValidationError):
            overlay.approve("X1")

    def test_decline_needs_reason(self, overlay):
        overlay.add_line(_EXTRA)
        with pytest.raises(ValidationError):
            overlay.decline("X1", "  ")
        assert overlay.get("X1").status == AdditionalStatus.PENDING

    def test_decline_then_reinstate(self, overlay):
        overlay.add_line(_EXTRA)
        declined = overlay.decline("X1", " not covered ")
        assert declined.decline_reason == "not covered"
        reinstated = overlay.reinstate("X1")
        assert reinstated.status == AdditionalStatus.APPROVED
        assert reinstated.decline_reason is None

    def test_approved_item_cannot_be_declined(self, overlay):
        overlay.add_line(_EXTRA)
        overlay.approve("X1")
        with pytest.raises(ValidationError) as exc_info:
            overlay.decline("X1", "changed mind")
        assert "reverse" in exc_info.value.message

    def test_only_declined_can_be_reinstated(self, overlay):
        overlay.add_line(_EXTRA)
        with pytest.raises(ValidationError):
            overlay.reinstate("X1")

    def test_unknown_item(self, overlay):
        with pytest.raises(LineItemNotFound):
            overlay.approve("missing")


# ===========================================================================
# Class 3: Removals
# ===========================================================================

class TestRemovals:

    def test_removal_is_negative_copy(self, overlay, finalized_ledger):
        item = overlay.remove_base_line(finalized_ledger, "L1", item_id="R1")
        assert item.action == AdditionalAction.REMOVED
        assert item.original_line_item_id == "L1"
        assert item.line.part_price_nett == Decimal("8000")
        assert overlay.item_cost(item).total == Decimal("-11000.00")
        assert "L1" in overlay.removed_original_ids

    def test_generated_removal_id(self, overlay, finalized_ledger):
        item = overlay.remove_base_line(finalized_ledger, "L2")
        assert item.id.startswith("rm-L2-")

    def test_unknown_base_line(self, overlay, finalized_ledger):
        with pytest.raises(LineItemNotFound):
            overlay.remove_base_line(finalized_ledger, "L9")

    def test_one_open_removal_per_line(self, overlay, finalized_ledger):
        overlay.remove_base_line(finalized_ledger, "L1", item_id="R1")
        with pytest.raises(ValidationError):
            overlay.remove_base_line(finalized_ledger, "L1", item_id="R2")

    def test_declined_removal_can_be_raised_again(self, overlay, finalized_ledger):
        overlay.remove_base_line(finalized_ledger, "L1", item_id="R1")
        overlay.decline("R1", "keep the part")
        overlay.remove_base_line(finalized_ledger, "L1", item_id="R2")
        assert overlay.has_item("R2")

    def test_approved_removal_nets_to_zero(self, overlay, finalized_ledger):
        overlay.remove_base_line(finalized_ledger, "L1", item_id="R1")
        overlay.approve("R1", finalized_ledger)
        assert overlay.approved_totals()["subtotal"] == Decimal("-11000.00")

    def test_approving_removal_needs_ledger(self, overlay, finalized_ledger):
        overlay.remove_base_line(finalized_ledger, "L1", item_id="R1")
        with pytest.raises(ValidationError):
            overlay.approve("R1")

    def test_tampered_removal_breaks_pair(self, overlay, finalized_ledger):
        item = overlay.remove_base_line(finalized_ledger, "L1", item_id="R1")
        overlay.items[0] = replace_fields(item, line=replace_fields(item.line, part_price_nett=Decimal("1")))
        with pytest.raises(ReconciliationInvariantViolation):
            overlay.approve("R1", finalized_ledger)
        assert overlay.get("R1").status == AdditionalStatus.PENDING

    def test_reinstated_removal_is_verified(self, overlay, finalized_ledger):
        overlay.remove_base_line(finalized_ledger, "L2", item_id="R1")
        overlay.decline("R1", "not now")
        reinstated = overlay.reinstate("R1", finalized_ledger)
        assert reinstated.status == AdditionalStatus.APPROVED


# ===========================================================================
# Class 4: Reversals
# ===========================================================================

class TestReversals:

    @pytest.fixture
    def approved(self, overlay):
        overlay.add_line(_EXTRA)
        overlay.approve("X1")
        return overlay

    def test_reverse_creates_pending_reversal(self, approved):
        rev = approved.reverse("X1", "duplicate", item_id="V1")
        assert rev.action == AdditionalAction.REVERSAL
        assert rev.status == AdditionalStatus.PENDING
        assert rev.reversal_target_id == "X1"
        assert rev.reversal_reason == "duplicate"
        assert approved.approved_reversal_targets() == set()

    def test_approved_reversal_drops_target_from_totals(self, approved):
        approved.reverse("X1", item_id="V1")
        approved.approve("V1")
        assert approved.approved_reversal_targets() == {"X1"}
        assert approved.approved_totals()["total"] == Decimal("0.00")

    def test_pending_item_cannot_be_reversed(self, overlay):
        overlay.add_line(_EXTRA)
        with pytest.raises(ValidationError):
            overlay.reverse("X1")

    def test_no_double_reversal(self, approved):
        approved.reverse("X1", item_id="V1")
        with pytest.raises(ValidationError) as exc_info:
            approved.reverse("X1", item_id="V2")
        assert "V1" in exc_info.value.message

    def test_declined_reversal_frees_target(self, approved):
        approved.reverse("X1", item_id="V1")
        approved.decline("V1", "reversal not needed")
        approved.reverse("X1", item_id="V2")
        assert approved.has_item("V2")

    def test_reversal_cannot_be_reversed(self, approved):
        approved.reverse("X1", item_id="V1")
        approved.approve("V1")
        with pytest.raises(ValidationError):
            approved.reverse("V1")

    def test_reversed_removal_restores_base_line(self, overlay, finalized_ledger):
        overlay.remove_base_line(finalized_ledger, "L1", item_id="R1")
        overlay.approve("R1", finalized_ledger)
        overlay.reverse("R1", item_id="V1")
        overlay.approve("V1")
        assert "L1" not in overlay.removed_original_ids
        assert overlay.approved_totals()["total"] == Decimal("0.00")


# ===========================================================================
# Class 5: Delete and betterment
# ===========================================================================

class TestDeleteAndBetterment:

    def test_delete_pending(self, overlay):
        overlay.add_line(_EXTRA)
        overlay.delete_pending("X1")
        assert overlay.items == []

    def test_approved_cannot_be_deleted(self, overlay):
        overlay.add_line(_EXTRA)
        overlay.approve("X1")
        with pytest.raises(ValidationError):
            overlay.delete_pending("X1")

    def test_betterment_on_added_item(self, overlay):
        overlay.add_line(_EXTRA)
        item = overlay.set_betterment("X1", Betterment(labour=Decimal("50")))
        assert overlay.item_cost(item).total == Decimal("500.00")

    def test_betterment_on_declined_item(self, overlay):
        overlay.add_line(_EXTRA)
        overlay.decline("X1", "no")
        with pytest.raises(ValidationError):
            overlay.set_betterment("X1", Betterment(labour=Decimal("50")))

    def test_betterment_on_removal(self, overlay, finalized_ledger):
        overlay.remove_base_line(finalized_ledger, "L2", item_id="R1")
        with pytest.raises(ValidationError):
            overlay.set_betterment("R1", Betterment(labour=Decimal("10")))

    def test_items_with_status(self, overlay):
        overlay.add_line(_EXTRA)
        overlay.add_line({**_EXTRA, "id": "X2"})
        overlay.approve("X2")
        assert [i.id for i in overlay.items_with_status([AdditionalStatus.APPROVED])] == ["X2"]
