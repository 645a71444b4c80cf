"""
Line-item data model for assessment estimates, additionals and FRC.

A line item is a tagged union keyed on ``process_type``: each variant carries only
the cost inputs that make sense for it, so "not applicable" is a missing field
rather than a zero. Totals are never stored on the input models; they are derived
by the CalculationEngine into a ``LineCost`` whenever they are needed.

Usage:
    from app.models.line_items import parse_line_item

    line = parse_line_item({
        "id": "L1",
        "process_type": "new",
        "part_type": "oem",
        "part_price_nett": "1000.00",
        "strip_assemble_hours": "1.5",
    })
"""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, Literal, Optional, Tuple, Type, TypeVar, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, computed_field, model_validator

from app.services.errors import ValidationError


# ── Enumerations ──────────────────────────────────────────────────────────────

class ProcessType(str, Enum):
    NEW = "new"
    REPAIR = "repair"
    PAINT = "paint"
    BLEND = "blend"
    ALIGN = "align"
    OUTWORK = "outwork"


class PartType(str, Enum):
    OEM = "oem"
    ALTERNATIVE = "alternative"
    SECOND_HAND = "second_hand"


class AdditionalAction(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    REVERSAL = "reversal"


class AdditionalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class LineSource(str, Enum):
    ESTIMATE = "estimate"
    ADDITIONAL = "additional"


class FRCDecision(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    ADJUSTED = "adjusted"
    DISPUTED = "disputed"


# Cost components a betterment percentage can be attached to
COMPONENTS: Tuple[str, ...] = ("part", "strip_assemble", "labour", "paint", "outwork")

Money = Decimal
Hours = Annotated[Decimal, Field(ge=0)]

M = TypeVar("M", bound=BaseModel)


# ── Betterment ────────────────────────────────────────────────────────────────

class Betterment(BaseModel):
    """Per-component wear-and-tear deduction, as a percentage (0–100)."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    part: Optional[Decimal] = Field(None, ge=0, le=100)
    strip_assemble: Optional[Decimal] = Field(None, ge=0, le=100)
    labour: Optional[Decimal] = Field(None, ge=0, le=100)
    paint: Optional[Decimal] = Field(None, ge=0, le=100)
    outwork: Optional[Decimal] = Field(None, ge=0, le=100)

    def configured(self) -> Dict[str, Decimal]:
        return {c: getattr(self, c) for c in COMPONENTS if getattr(self, c) is not None}


# ── Line item variants ────────────────────────────────────────────────────────

class _LineBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # component name -> input field that must be present for the component to apply
    COMPONENT_INPUTS: ClassVar[Dict[str, str]] = {}

    id: str = Field(..., min_length=1)
    description: str = ""
    betterment: Optional[Betterment] = None

    def applicable_components(self) -> Tuple[str, ...]:
        return tuple(
            comp for comp, field_name in self.COMPONENT_INPUTS.items()
            if getattr(self, field_name) is not None
        )

    @model_validator(mode="after")
    def _betterment_on_present_components(self):
        if self.betterment is not None:
            stray = set(self.betterment.configured()) - set(self.applicable_components())
            if stray:
                raise ValueError(
                    f"betterment set on non-applicable component(s): {', '.join(sorted(stray))}"
                )
        return self


class NewPartLine(_LineBase):
    """Replacement part: marked-up part price, strip/assemble labour, optional paint."""
    COMPONENT_INPUTS: ClassVar[Dict[str, str]] = {
        "part": "part_price_nett",
        "strip_assemble": "strip_assemble_hours",
        "paint": "paint_panels",
    }

    process_type: Literal["new"] = "new"
    part_type: PartType
    part_price_nett: Money = Field(..., ge=0)
    strip_assemble_hours: Optional[Hours] = None
    paint_panels: Optional[Hours] = None


class _LabourPaintLine(_LineBase):
    COMPONENT_INPUTS: ClassVar[Dict[str, str]] = {
        "labour": "labour_hours",
        "paint": "paint_panels",
    }

    labour_hours: Optional[Hours] = None
    paint_panels: Optional[Hours] = None

    @model_validator(mode="after")
    def _needs_labour_or_paint(self):
        if self.labour_hours is None and self.paint_panels is None:
            raise ValueError(f"{self.process_type} line needs labour_hours or paint_panels")
        return self


class RepairLine(_LabourPaintLine):
    process_type: Literal["repair"] = "repair"


class PaintLine(_LabourPaintLine):
    process_type: Literal["paint"] = "paint"


class BlendLine(_LabourPaintLine):
    process_type: Literal["blend"] = "blend"


class AlignLine(_LineBase):
    COMPONENT_INPUTS: ClassVar[Dict[str, str]] = {"labour": "labour_hours"}

    process_type: Literal["align"] = "align"
    labour_hours: Hours


class OutworkLine(_LineBase):
    """Sublet work charged by a third party, marked up by the outwork markup."""
    COMPONENT_INPUTS: ClassVar[Dict[str, str]] = {"outwork": "outwork_charge_nett"}

    process_type: Literal["outwork"] = "outwork"
    outwork_charge_nett: Money = Field(..., ge=0)


_VARIANTS = {
    ProcessType.NEW.value: NewPartLine,
    ProcessType.REPAIR.value: RepairLine,
    ProcessType.PAINT.value: PaintLine,
    ProcessType.BLEND.value: BlendLine,
    ProcessType.ALIGN.value: AlignLine,
    ProcessType.OUTWORK.value: OutworkLine,
}


def _process_type_of(value: Any) -> Optional[str]:
    raw = value.get("process_type") if isinstance(value, dict) else getattr(value, "process_type", None)
    return raw.value if isinstance(raw, ProcessType) else raw


LineItem = Annotated[
    Union[
        Annotated[NewPartLine, pydantic.Tag("new")],
        Annotated[RepairLine, pydantic.Tag("repair")],
        Annotated[PaintLine, pydantic.Tag("paint")],
        Annotated[BlendLine, pydantic.Tag("blend")],
        Annotated[AlignLine, pydantic.Tag("align")],
        Annotated[OutworkLine, pydantic.Tag("outwork")],
    ],
    pydantic.Discriminator(_process_type_of),
]

_LINE_ITEM_ADAPTER: TypeAdapter = TypeAdapter(LineItem)


def _format_pydantic_error(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def parse_line_item(data: Any):
    """Validate raw input into the matching LineItem variant."""
    if isinstance(data, _LineBase):
        return data
    if isinstance(data, dict):
        if _process_type_of(data) not in _VARIANTS:
            raise ValidationError(
                f"Unknown process_type {data.get('process_type')!r}",
                allowed=sorted(_VARIANTS),
            )
        data = {**data, "process_type": _process_type_of(data)}
    try:
        return _LINE_ITEM_ADAPTER.validate_python(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid line item: {_format_pydantic_error(exc)}") from exc


def build_model(cls: Type[M], **fields: Any) -> M:
    """Construct a model, reporting failures as the core ValidationError."""
    try:
        return cls.model_validate(fields)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid {cls.__name__}: {_format_pydantic_error(exc)}") from exc


def replace_fields(model: M, **changes: Any) -> M:
    """Return a re-validated copy of a frozen model with ``changes`` applied."""
    payload = {name: getattr(model, name) for name in type(model).model_fields}
    payload.update(changes)
    return build_model(type(model), **payload)


# ── Derived cost breakdown ────────────────────────────────────────────────────

class LineCost(BaseModel):
    """Per-component money breakdown of one line at a given rate snapshot."""
    model_config = ConfigDict(frozen=True)

    part_price_nett: Money = Decimal("0.00")
    part_markup: Money = Decimal("0.00")
    part_price: Money = Decimal("0.00")
    strip_assemble: Money = Decimal("0.00")
    labour: Money = Decimal("0.00")
    paint: Money = Decimal("0.00")
    outwork_nett: Money = Decimal("0.00")
    outwork_markup: Money = Decimal("0.00")
    outwork: Money = Decimal("0.00")
    betterment_total: Money = Decimal("0.00")
    total: Money = Decimal("0.00")


# ── Additionals ───────────────────────────────────────────────────────────────

class AdditionalLineItem(BaseModel):
    """A line raised after the original estimate, subject to separate approval."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    line: LineItem
    action: AdditionalAction = AdditionalAction.ADDED
    status: AdditionalStatus = AdditionalStatus.PENDING
    decline_reason: Optional[str] = None
    original_line_item_id: Optional[str] = None
    reversal_target_id: Optional[str] = None
    reversal_reason: Optional[str] = None

    @property
    def id(self) -> str:
        return self.line.id

    @model_validator(mode="after")
    def _action_references(self):
        if self.action == AdditionalAction.REMOVED and not self.original_line_item_id:
            raise ValueError("removed additional needs original_line_item_id")
        if self.action == AdditionalAction.REVERSAL and not self.reversal_target_id:
            raise ValueError("reversal additional needs reversal_target_id")
        if self.status == AdditionalStatus.DECLINED and not (self.decline_reason or "").strip():
            raise ValueError("declined additional needs a decline_reason")
        return self


# ── Reconciled projection ─────────────────────────────────────────────────────

class ReconciledLineItem(BaseModel):
    """
    Output-only view of a base or additional line after composition.

    ``removed_via_additionals`` / ``declined_via_additionals`` are presentation
    markers. Whether the line counts toward money is decided by
    ``app.services.reconciliation.is_payable`` from ``source`` and ``status``.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    source: LineSource
    line: LineItem
    cost: LineCost
    action: Optional[AdditionalAction] = None
    status: AdditionalStatus = AdditionalStatus.APPROVED
    original_line_item_id: Optional[str] = None
    removed_via_additionals: bool = False
    declined_via_additionals: bool = False
    decline_reason: Optional[str] = None

    @computed_field
    @property
    def total(self) -> Money:
        return self.cost.total

    @property
    def key(self) -> str:
        return f"{self.source.value}:{self.id}"


class FRCLineItem(ReconciledLineItem):
    """
    Reconciled line frozen into an FRC snapshot, with quoted vs actual cost.

    ``actual_cost`` starts as a copy of ``cost`` and carries what the repair
    actually cost, per component. Its components are payable amounts, after any
    betterment deduction.
    """

    quoted_total: Money
    actual_cost: LineCost
    decision: FRCDecision = FRCDecision.PENDING
    decision_note: Optional[str] = None

    @computed_field
    @property
    def actual_total(self) -> Money:
        return self.actual_cost.total
