"""
test_calculation_engine.py — Unit tests for CalculationEngine.

Tests cover:
  - New parts: markup by part type, strip/assemble, optional paint
  - Repair / paint / blend / align labour and paint
  - Outwork with outwork markup
  - Per-component betterment deductions and betterment_total
  - Removal counterpart pricing (sign -1), including no negative zeros
  - Decimal rounding (ROUND_HALF_UP per component, no drift across many lines)
  - Document rollup: lines total, sundries, VAT, total
  - Rate card export

All tests are pure unit tests; no database or external services required.
"""

from decimal import Decimal

import pytest

from app.models.line_items import parse_line_item
from app.services.calculation_engine import CalculationEngine, money, percentage_of
from app.services.errors import ValidationError


# ---------------------------------------------------------------------------
# Module-level constants mirrored from the conftest ``rates`` fixture
# ---------------------------------------------------------------------------
_LABOUR_RATE = Decimal("500.00")
_PAINT_RATE = Decimal("2000.00")
_VAT_PCT = Decimal("15")


def _line(**fields):
    return parse_line_item(fields)


# ===========================================================================
# Class 1: Money helpers
# ===========================================================================

class TestMoneyHelpers:

    @pytest.mark.parametrize("raw, expected", [
        ("1.005", "1.01"),
        ("1.004", "1.00"),
        ("-1.005", "-1.01"),
        (0.1, "0.10"),
        (3, "3.00"),
    ])
    def test_money_quantises_half_up(self, raw, expected):
        assert money(raw) == Decimal(expected)

    def test_percentage_of(self):
        assert percentage_of(Decimal("8000"), Decimal("25")) == Decimal("2000.00")
        assert percentage_of(Decimal("33.33"), Decimal("15")) == Decimal("5.00")


# ===========================================================================
# Class 2: Line costing per process type
# ===========================================================================

class TestLineCost:

    def test_new_oem_part_with_strip_assemble(self, engine):
        """8000 nett × 1.25 = 10000 part price; 2h × 500 = 1000 strip/assemble."""
        cost = engine.line_cost(_line(id="L1", process_type="new", part_type="oem",
                                      part_price_nett="8000", strip_assemble_hours="2"))
        assert cost.part_price_nett == Decimal("8000.00")
        assert cost.part_markup == Decimal("2000.00")
        assert cost.part_price == Decimal("10000.00")
        assert cost.strip_assemble == Decimal("1000.00")
        assert cost.paint == Decimal("0.00")
        assert cost.total == Decimal("11000.00")

    @pytest.mark.parametrize("part_type, expected", [
        ("oem", "1250.00"),
        ("alternative", "1150.00"),
        ("second_hand", "1100.00"),
    ])
    def test_markup_follows_part_type(self, engine, part_type, expected):
        cost = engine.line_cost(_line(id="p", process_type="new", part_type=part_type, part_price_nett="1000"))
        assert cost.part_price == Decimal(expected)
        assert cost.total == Decimal(expected)

    def test_new_part_with_paint(self, engine):
        cost = engine.line_cost(_line(id="p", process_type="new", part_type="alternative",
                                      part_price_nett="1000", paint_panels="0.5"))
        assert cost.paint == Decimal("1000.00")
        assert cost.total == Decimal("2150.00")

    def test_repair_labour_and_paint(self, engine):
        cost = engine.line_cost(_line(id="r", process_type="repair", labour_hours="3", paint_panels="1"))
        assert cost.labour == 3 * _LABOUR_RATE
        assert cost.paint == _PAINT_RATE
        assert cost.total == Decimal("3500.00")

    def test_paint_only(self, engine):
        cost = engine.line_cost(_line(id="p", process_type="paint", paint_panels="1.5"))
        assert cost.labour == Decimal("0.00")
        assert cost.total == Decimal("3000.00")

    def test_blend_labour_only(self, engine):
        cost = engine.line_cost(_line(id="b", process_type="blend", labour_hours="2.5"))
        assert cost.total == Decimal("1250.00")

    def test_align_is_labour_only(self, engine):
        cost = engine.line_cost(_line(id="a", process_type="align", labour_hours="1"))
        assert cost.labour == Decimal("500.00")
        assert cost.part_price == cost.paint == cost.outwork == Decimal("0.00")

    def test_outwork_markup(self, engine):
        cost = engine.line_cost(_line(id="o", process_type="outwork", outwork_charge_nett="1000"))
        assert cost.outwork_nett == Decimal("1000.00")
        assert cost.outwork_markup == Decimal("200.00")
        assert cost.outwork == Decimal("1200.00")
        assert cost.total == Decimal("1200.00")

    def test_zero_input_contributes_zero(self, engine):
        cost = engine.line_cost(_line(id="z", process_type="repair", labour_hours="0"))
        assert cost.total == Decimal("0.00")

    def test_line_total_matches_line_cost(self, engine):
        line = _line(id="r", process_type="repair", labour_hours="3", paint_panels="1")
        assert engine.line_total(line) == engine.line_cost(line).total


# ===========================================================================
# Class 3: Betterment
# ===========================================================================

class TestBetterment:

    def test_part_betterment(self, engine):
        """20% off a 10000 part price → 8000; strip/assemble untouched."""
        cost = engine.line_cost(_line(id="L1", process_type="new", part_type="oem", part_price_nett="8000",
                                      strip_assemble_hours="2", betterment={"part": "20"}))
        assert cost.part_price == Decimal("8000.00")
        assert cost.strip_assemble == Decimal("1000.00")
        assert cost.betterment_total == Decimal("2000.00")
        assert cost.total == Decimal("9000.00")

    def test_betterment_per_component(self, engine):
        """Labour 1500 less 10% and paint 2000 less 50%."""
        cost = engine.line_cost(_line(id="r", process_type="repair", labour_hours="3", paint_panels="1",
                                      betterment={"labour": "10", "paint": "50"}))
        assert cost.labour == Decimal("1350.00")
        assert cost.paint == Decimal("1000.00")
        assert cost.betterment_total == Decimal("1150.00")
        assert cost.total == Decimal("2350.00")

    def test_full_betterment_zeroes_component(self, engine):
        cost = engine.line_cost(_line(id="o", process_type="outwork", outwork_charge_nett="1000",
                                      betterment={"outwork": "100"}))
        assert cost.total == Decimal("0.00")
        assert cost.betterment_total == Decimal("1200.00")


# ===========================================================================
# Class 4: Removal counterpart pricing
# ===========================================================================

class TestNegativeCounterpart:

    def test_sign_minus_one_negates_every_component(self, engine):
        line = _line(id="L1", process_type="new", part_type="oem", part_price_nett="8000",
                     strip_assemble_hours="2", betterment={"part": "20"})
        pos = engine.line_cost(line)
        neg = engine.line_cost(line, sign=-1)
        for field in ("part_price_nett", "part_markup", "part_price", "strip_assemble", "betterment_total", "total"):
            assert getattr(neg, field) == -getattr(pos, field)
        assert pos.total + neg.total == 0

    def test_no_negative_zero(self, engine):
        neg = engine.line_cost(_line(id="a", process_type="align", labour_hours="1"), sign=-1)
        assert str(neg.paint) == "0.00"
        assert str(neg.part_price) == "0.00"
        assert neg.labour == Decimal("-500.00")

    @pytest.mark.parametrize("sign", [0, 2, -2])
    def test_invalid_sign(self, engine, sign):
        with pytest.raises(ValidationError):
            engine.line_cost(_line(id="a", process_type="align", labour_hours="1"), sign=sign)


# ===========================================================================
# Class 5: Rounding
# ===========================================================================

class TestRounding:

    @pytest.fixture
    def odd_engine(self, rates):
        return CalculationEngine(rates.model_copy(update={"labour_rate": Decimal("333.33")}))

    def test_component_rounds_half_up(self, odd_engine):
        """1.5h × 333.33 = 499.995 → 500.00."""
        cost = odd_engine.line_cost(_line(id="a", process_type="align", labour_hours="1.5"))
        assert cost.total == Decimal("500.00")

    def test_no_drift_across_many_lines(self, odd_engine):
        """0.1h × 333.33 = 33.333 → 33.33 each; a hundred lines sum to exactly 3333.00."""
        line = _line(id="a", process_type="align", labour_hours="0.1")
        totals = [odd_engine.line_total(line) for _ in range(100)]
        assert odd_engine.document_totals(totals)["lines_total"] == Decimal("3333.00")


# ===========================================================================
# Class 6: Document rollup
# ===========================================================================

class TestDocumentTotals:

    def test_vat_on_subtotal(self, engine):
        totals = engine.document_totals([Decimal("11000"), Decimal("3500"), Decimal("1200")])
        assert totals["lines_total"] == Decimal("15700.00")
        assert totals["sundries_amount"] == Decimal("0.00")
        assert totals["subtotal"] == Decimal("15700.00")
        assert totals["vat_percentage"] == _VAT_PCT
        assert totals["vat_amount"] == Decimal("2355.00")
        assert totals["total"] == Decimal("18055.00")

    def test_sundries_before_vat(self, rates):
        engine = CalculationEngine(rates.model_copy(update={"sundries_percentage": Decimal("2")}))
        totals = engine.document_totals([Decimal("15700")])
        assert totals["sundries_amount"] == Decimal("314.00")
        assert totals["subtotal"] == Decimal("16014.00")
        assert totals["vat_amount"] == Decimal("2402.10")
        assert totals["total"] == Decimal("18416.10")

    def test_empty_document(self, engine):
        totals = engine.document_totals([])
        assert totals["total"] == Decimal("0.00")

    def test_float_inputs_do_not_drift(self, engine):
        assert engine.document_totals([0.1, 0.2])["lines_total"] == Decimal("0.30")

    def test_negative_lines_reduce_total(self, engine):
        totals = engine.document_totals([Decimal("1000"), Decimal("-1000")])
        assert totals["total"] == Decimal("0.00")


# ===========================================================================
# Class 7: Rate card
# ===========================================================================

class TestRateCard:

    def test_rate_card_is_plain_data(self, engine):
        card = engine.rate_card()
        assert card["currency"] == "ZAR"
        assert card["labour_rate"] == "500.00"
        assert card["vat_percentage"] == "15"

    def test_default_engine_uses_configured_defaults(self):
        from app import config
        engine = CalculationEngine()
        assert engine.rates.labour_rate == config.DEFAULT_LABOUR_RATE
        assert engine.rates.vat_percentage == config.DEFAULT_VAT_PERCENTAGE
