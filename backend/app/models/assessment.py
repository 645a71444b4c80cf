"""
Assessment-level models: lifecycle stage, frozen rate snapshot, sign-off and
audit event payloads.

All models serialise to plain JSON (``model_dump(mode="json")``) so document
renderers and the audit sink never hold references to core state.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app import config


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssessmentStage(str, Enum):
    REQUEST_SUBMITTED = "request_submitted"
    REQUEST_REVIEWED = "request_reviewed"
    INSPECTION_SCHEDULED = "inspection_scheduled"
    APPOINTMENT_SCHEDULED = "appointment_scheduled"
    ASSESSMENT_IN_PROGRESS = "assessment_in_progress"
    ESTIMATE_REVIEW = "estimate_review"
    ESTIMATE_SENT = "estimate_sent"
    ESTIMATE_FINALIZED = "estimate_finalized"
    FRC_IN_PROGRESS = "frc_in_progress"
    ARCHIVED = "archived"
    CANCELLED = "cancelled"


class AssessmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FRCStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class RateSnapshot(BaseModel):
    """
    Immutable copy of the labour/paint rates, markups and VAT in force when a
    document was created or finalised. Later changes to the global rate card
    never reach a snapshot.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    labour_rate: Decimal = Field(config.DEFAULT_LABOUR_RATE, ge=0)
    paint_rate: Decimal = Field(config.DEFAULT_PAINT_RATE, ge=0)
    oem_markup_percentage: Decimal = Field(config.DEFAULT_OEM_MARKUP_PERCENTAGE, ge=0)
    alt_markup_percentage: Decimal = Field(config.DEFAULT_ALT_MARKUP_PERCENTAGE, ge=0)
    second_hand_markup_percentage: Decimal = Field(config.DEFAULT_SECOND_HAND_MARKUP_PERCENTAGE, ge=0)
    outwork_markup_percentage: Decimal = Field(config.DEFAULT_OUTWORK_MARKUP_PERCENTAGE, ge=0)
    vat_percentage: Decimal = Field(config.DEFAULT_VAT_PERCENTAGE, ge=0, le=100)
    sundries_percentage: Decimal = Field(config.DEFAULT_SUNDRIES_PERCENTAGE, ge=0, le=100)


class SignOff(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    role: str
    email: Optional[str] = None
    notes: Optional[str] = None
    signed_off_at: datetime

    @field_validator("name", "role")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class Assessment(BaseModel):
    """The stage-gated record every ledger, overlay and FRC hangs off."""
    model_config = ConfigDict(frozen=True)

    id: str
    assessment_number: str = ""
    stage: AssessmentStage = AssessmentStage.REQUEST_SUBMITTED
    status: AssessmentStatus = AssessmentStatus.ACTIVE
    estimate_finalized_at: Optional[datetime] = None
    finalized_rates: Optional[RateSnapshot] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class AuditEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_type: str
    entity_id: str
    action: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    changed_by: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
