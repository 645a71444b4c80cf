"""ORM Models for the assessment costing core — SQLAlchemy 2.0"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db import Base


def gen_uuid():
    return str(uuid.uuid4())


# ── ASSESSMENTS ───────────────────────────────────────────────────────────────
class AssessmentRow(Base):
    __tablename__ = "assessments"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=gen_uuid)
    assessment_number: Mapped[str] = mapped_column(String(50), default="")
    # CAS target: every transition is UPDATE ... WHERE stage = :expected
    stage: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    estimate_finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    finalized_rates: Mapped[Optional[dict]] = mapped_column(JSON)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ── ESTIMATES ─────────────────────────────────────────────────────────────────
class EstimateRow(Base):
    __tablename__ = "estimates"
    assessment_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("assessments.id", ondelete="CASCADE"), primary_key=True
    )
    line_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    rates: Mapped[dict] = mapped_column(JSON, nullable=False)
    # Per-assessment overrides layered on the global card until finalize
    rate_overrides: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ── ADDITIONALS ───────────────────────────────────────────────────────────────
class AdditionalsRow(Base):
    __tablename__ = "additionals"
    assessment_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("assessments.id", ondelete="CASCADE"), primary_key=True
    )
    line_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    rates: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ── FRC ───────────────────────────────────────────────────────────────────────
class FRCRow(Base):
    __tablename__ = "frc"
    assessment_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("assessments.id", ondelete="CASCADE"), primary_key=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    line_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    line_items_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rates: Mapped[dict] = mapped_column(JSON, nullable=False)
    # Denormalised for reporting; the line items are authoritative
    quoted_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    actual_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_merge_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sign_off: Mapped[Optional[dict]] = mapped_column(JSON)
    # Optimistic-concurrency counter for the whole row
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ── AUDIT LOG ─────────────────────────────────────────────────────────────────
class AuditLogRow(Base):
    __tablename__ = "audit_logs"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=gen_uuid)
    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    event_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    changed_by: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── COMPANY SETTINGS (global rate card) ───────────────────────────────────────
class CompanySettingsRow(Base):
    __tablename__ = "company_settings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    labour_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    paint_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    oem_markup_percentage: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    alt_markup_percentage: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    second_hand_markup_percentage: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    outwork_markup_percentage: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    vat_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    sundries_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
