"""
CalculationEngine — line-item and document costing for vehicle-damage estimates.

Covers:
  - New parts (marked-up by part type), strip/assemble labour, optional paint
  - Repair / paint / blend labour and paint panels
  - Alignment labour
  - Outwork (sublet) with outwork markup
  - Per-component betterment deductions
  - Document rollup (lines, sundries, VAT, total)

All money is Decimal, quantised to cents with ROUND_HALF_UP per component so
that a document of many lines never drifts.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Optional

from app import config
from app.models.assessment import RateSnapshot
from app.models.line_items import LineCost, PartType, ProcessType
from app.services.errors import ValidationError


_ZERO = Decimal("0.00")
_HUNDRED = Decimal("100")


def money(value: Any) -> Decimal:
    """Quantise any numeric input to cents."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(config.MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def percentage_of(amount: Decimal, percentage: Decimal) -> Decimal:
    return money(amount * percentage / _HUNDRED)


class CalculationEngine:
    """
    Stateless costing against one frozen RateSnapshot.

    The engine never reads global settings: every caller passes the snapshot
    that applies to the document being priced.
    """

    def __init__(self, rates: Optional[RateSnapshot] = None) -> None:
        self.rates: RateSnapshot = rates or RateSnapshot()

    # ------------------------------------------------------------------
    # Markups
    # ------------------------------------------------------------------

    def part_markup_percentage(self, part_type: PartType) -> Decimal:
        if part_type == PartType.OEM:
            return self.rates.oem_markup_percentage
        if part_type == PartType.ALTERNATIVE:
            return self.rates.alt_markup_percentage
        if part_type == PartType.SECOND_HAND:
            return self.rates.second_hand_markup_percentage
        raise ValidationError(f"Unknown part type {part_type!r}")

    # ------------------------------------------------------------------
    # 1. Line costing
    # ------------------------------------------------------------------

    def line_cost(self, line, sign: int = 1) -> LineCost:
        """
        Compute the cost breakdown of a single line.

        Args:
            line: Any LineItem variant.
            sign: +1 for normal lines, -1 for the negative counterpart of a
                  removal (every component is negated, so the pair nets to 0).

        Returns:
            LineCost with per-component amounts, betterment_total and total.
        """
        if sign not in (1, -1):
            raise ValidationError(f"sign must be +1 or -1, got {sign}")

        components: Dict[str, Decimal] = {}
        extra: Dict[str, Decimal] = {}
        process = ProcessType(line.process_type)

        if process == ProcessType.NEW:
            nett = money(line.part_price_nett)
            markup = percentage_of(nett, self.part_markup_percentage(line.part_type))
            extra["part_price_nett"] = nett
            extra["part_markup"] = markup
            components["part"] = nett + markup
            if line.strip_assemble_hours is not None:
                components["strip_assemble"] = money(line.strip_assemble_hours * self.rates.labour_rate)
            if line.paint_panels is not None:
                components["paint"] = money(line.paint_panels * self.rates.paint_rate)

        elif process in (ProcessType.REPAIR, ProcessType.PAINT, ProcessType.BLEND):
            if line.labour_hours is not None:
                components["labour"] = money(line.labour_hours * self.rates.labour_rate)
            if line.paint_panels is not None:
                components["paint"] = money(line.paint_panels * self.rates.paint_rate)

        elif process == ProcessType.ALIGN:
            components["labour"] = money(line.labour_hours * self.rates.labour_rate)

        elif process == ProcessType.OUTWORK:
            nett = money(line.outwork_charge_nett)
            markup = percentage_of(nett, self.rates.outwork_markup_percentage)
            extra["outwork_nett"] = nett
            extra["outwork_markup"] = markup
            components["outwork"] = nett + markup

        # Betterment comes off each component before it is summed
        betterment_total = _ZERO
        configured = line.betterment.configured() if line.betterment else {}
        for comp, pct in configured.items():
            if comp not in components:
                raise ValidationError(
                    f"Betterment on '{comp}' does not apply to a {process.value} line",
                    line_id=line.id,
                )
            deduction = percentage_of(components[comp], pct)
            components[comp] -= deduction
            betterment_total += deduction

        total = sum(components.values(), _ZERO)

        def signed(value: Decimal) -> Decimal:
            return -value if sign < 0 and value else value

        return LineCost(
            part_price_nett=signed(extra.get("part_price_nett", _ZERO)),
            part_markup=signed(extra.get("part_markup", _ZERO)),
            part_price=signed(components.get("part", _ZERO)),
            strip_assemble=signed(components.get("strip_assemble", _ZERO)),
            labour=signed(components.get("labour", _ZERO)),
            paint=signed(components.get("paint", _ZERO)),
            outwork_nett=signed(extra.get("outwork_nett", _ZERO)),
            outwork_markup=signed(extra.get("outwork_markup", _ZERO)),
            outwork=signed(components.get("outwork", _ZERO)),
            betterment_total=signed(betterment_total),
            total=signed(total),
        )

    def line_total(self, line, sign: int = 1) -> Decimal:
        return self.line_cost(line, sign).total

    # ------------------------------------------------------------------
    # 2. Document rollup
    # ------------------------------------------------------------------

    def document_totals(self, line_totals: Iterable[Decimal]) -> Dict[str, Decimal]:
        """
        Roll line totals up into a document total.

            lines_total     = Σ line.total
            sundries_amount = lines_total × sundries% / 100
            subtotal        = lines_total + sundries_amount
            vat_amount      = subtotal × vat% / 100
            total           = subtotal + vat_amount
        """
        lines_total = sum((money(t) for t in line_totals), _ZERO)
        sundries_amount = percentage_of(lines_total, self.rates.sundries_percentage)
        subtotal = lines_total + sundries_amount
        vat_amount = percentage_of(subtotal, self.rates.vat_percentage)
        return {
            "lines_total": lines_total,
            "sundries_amount": sundries_amount,
            "subtotal": subtotal,
            "vat_percentage": self.rates.vat_percentage,
            "vat_amount": vat_amount,
            "total": subtotal + vat_amount,
        }

    # ------------------------------------------------------------------
    # 3. Rate card export
    # ------------------------------------------------------------------

    def rate_card(self) -> Dict[str, Any]:
        """Export the rates this engine prices with, as plain JSON data."""
        return {
            "currency": config.CURRENCY,
            **self.rates.model_dump(mode="json"),
        }
