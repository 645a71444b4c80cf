"""
test_estimate_ledger.py — Unit tests for EstimateLedger.

Tests cover:
  - Add / update / delete lines, duplicate and unknown ids
  - Variant change on update
  - Betterment on base lines
  - Per-assessment rate overrides and re-basing on the global card
  - Finalisation freezes rates and refuses further edits
  - Document totals

All tests are pure unit tests; no database or external services required.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.models.assessment import RateSnapshot
from app.models.line_items import AlignLine, Betterment, RepairLine
from app.services.errors import LineItemNotFound, StageViolation, ValidationError
from app.services.estimate_ledger import EstimateLedger

_AT = datetime(2025, 3, 1, tzinfo=timezone.utc)


@pytest.fixture
def ledger(rates):
    ledger = EstimateLedger(assessment_id="A-1", rates=rates)
    ledger.add_line({"id": "L1", "process_type": "repair", "labour_hours": "3", "paint_panels": "1"})
    return ledger


# ===========================================================================
# Class 1: Line operations
# ===========================================================================

class TestLineOperations:

    def test_add_line_parses_variant(self, ledger):
        line = ledger.add_line({"id": "L2", "process_type": "align", "labour_hours": "1"})
        assert isinstance(line, AlignLine)
        assert [l.id for l in ledger.lines] == ["L1", "L2"]

    def test_duplicate_id_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.add_line({"id": "L1", "process_type": "align", "labour_hours": "1"})
        assert len(ledger.lines) == 1

    def test_update_merges_changes(self, ledger):
        updated = ledger.update_line("L1", {"labour_hours": "4"})
        assert isinstance(updated, RepairLine)
        assert updated.labour_hours == Decimal("4")
        assert updated.paint_panels == Decimal("1")

    def test_update_to_other_variant_drops_old_inputs(self, ledger):
        updated = ledger.update_line("L1", {"process_type": "align", "labour_hours": "2"})
        assert isinstance(updated, AlignLine)
        assert ledger.line_cost("L1").total == Decimal("1000.00")

    def test_update_cannot_change_id(self, ledger):
        with pytest.raises(ValidationError):
            ledger.update_line("L1", {"id": "L9"})

    def test_invalid_update_leaves_line_untouched(self, ledger):
        with pytest.raises(ValidationError):
            ledger.update_line("L1", {"labour_hours": "-1"})
        assert ledger.get_line("L1").labour_hours == Decimal("3")

    def test_delete_line(self, ledger):
        ledger.delete_line("L1")
        assert ledger.lines == []

    def test_unknown_line(self, ledger):
        with pytest.raises(LineItemNotFound):
            ledger.delete_line("nope")
        with pytest.raises(LineItemNotFound):
            ledger.get_line("nope")

    def test_set_and_clear_betterment(self, ledger):
        ledger.set_betterment("L1", Betterment(labour=Decimal("10")))
        assert ledger.line_cost("L1").total == Decimal("3350.00")
        ledger.set_betterment("L1", None)
        assert ledger.line_cost("L1").total == Decimal("3500.00")

    def test_betterment_on_absent_component(self, ledger):
        ledger.add_line({"id": "L2", "process_type": "align", "labour_hours": "1"})
        with pytest.raises(ValidationError):
            ledger.set_betterment("L2", Betterment(paint=Decimal("10")))


# ===========================================================================
# Class 2: Rates
# ===========================================================================

class TestRates:

    def test_set_rates_overrides_single_field(self, ledger):
        rates = ledger.set_rates({"labour_rate": "600"})
        assert rates.labour_rate == Decimal("600")
        assert rates.paint_rate == Decimal("2000.00")
        assert ledger.line_cost("L1").total == Decimal("3800.00")

    def test_unknown_rate_field(self, ledger):
        with pytest.raises(ValidationError):
            ledger.set_rates({"hourly": "600"})

    def test_invalid_rate_value(self, ledger):
        with pytest.raises(ValidationError):
            ledger.set_rates({"vat_percentage": "150"})

    def test_overrides_survive_global_refresh(self, ledger, rates):
        ledger.set_rates({"labour_rate": "600"})
        ledger.apply_global_rates(rates.model_copy(update={"paint_rate": Decimal("2500")}))
        assert ledger.rates.labour_rate == Decimal("600")
        assert ledger.rates.paint_rate == Decimal("2500")

    def test_finalize_applies_global_card_and_overrides(self, ledger, rates):
        ledger.set_rates({"vat_percentage": "0"})
        frozen = ledger.finalize(rates.model_copy(update={"labour_rate": Decimal("550")}), _AT)
        assert frozen.labour_rate == Decimal("550")
        assert frozen.vat_percentage == Decimal("0")
        assert ledger.finalized_at == _AT

    def test_global_refresh_ignored_after_finalize(self, ledger, rates):
        ledger.finalize(rates, _AT)
        ledger.apply_global_rates(RateSnapshot(labour_rate=Decimal("999")))
        assert ledger.rates.labour_rate == Decimal("500.00")


# ===========================================================================
# Class 3: Finalised ledger
# ===========================================================================

class TestFinalized:

    @pytest.mark.parametrize("edit", [
        lambda l: l.add_line({"id": "L9", "process_type": "align", "labour_hours": "1"}),
        lambda l: l.update_line("L1", {"labour_hours": "1"}),
        lambda l: l.delete_line("L1"),
        lambda l: l.set_rates({"labour_rate": "1"}),
        lambda l: l.set_betterment("L1", None),
    ])
    def test_edits_refused_after_finalize(self, ledger, rates, edit):
        ledger.finalize(rates, _AT)
        with pytest.raises(StageViolation) as exc_info:
            edit(ledger)
        assert exc_info.value.current_stage == "estimate_finalized"
        assert len(ledger.lines) == 1

    def test_finalize_twice_refused(self, ledger, rates):
        ledger.finalize(rates, _AT)
        with pytest.raises(StageViolation):
            ledger.finalize(rates, _AT)


# ===========================================================================
# Class 4: Totals
# ===========================================================================

class TestTotals:

    def test_totals_of_standard_ledger(self, finalized_ledger):
        totals = finalized_ledger.totals()
        assert totals["subtotal"] == Decimal("15700.00")
        assert totals["vat_amount"] == Decimal("2355.00")
        assert totals["total"] == Decimal("18055.00")

    def test_priced_lines_follow_line_order(self, finalized_ledger):
        priced = finalized_ledger.priced_lines()
        assert [(line.id, cost.total) for line, cost in priced] == [
            ("L1", Decimal("11000.00")),
            ("L2", Decimal("3500.00")),
            ("L3", Decimal("1200.00")),
        ]

    def test_json_round_trip_keeps_variants(self, finalized_ledger):
        restored = EstimateLedger.model_validate(finalized_ledger.model_dump(mode="json"))
        assert restored.totals() == finalized_ledger.totals()
        assert restored.finalized_at == finalized_ledger.finalized_at
